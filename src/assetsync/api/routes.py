from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request

from assetsync import __version__
from assetsync.api.errors import ApiError
from assetsync.config import SyncConfig
from assetsync.ipfs import IpfsConfig, ipfs_gateway_url
from assetsync.scanner import is_published, list_bundle_ids
from assetsync.schemas import AssetView
from assetsync.state_store import StateStore, validate_namespace

Json = Dict[str, Any]

router = APIRouter()


def _cfg(request: Request) -> SyncConfig:
    cfg = getattr(request.app.state, "cfg", None)
    if cfg is None:
        raise ApiError.internal("not_ready", "sync config not attached to app.state")
    return cfg


def _namespace(namespace: str) -> str:
    try:
        return validate_namespace(namespace)
    except ValueError:
        raise ApiError.bad_request("invalid_namespace", "namespace must match [A-Za-z0-9_.-]+", {"namespace": namespace})


def _view(asset_id: str, record: Any, has_bundle: bool, ipfs_cfg: Optional[IpfsConfig]) -> AssetView:
    published = is_published(record)
    uri = str(record["uri"]).strip() if published else None
    return AssetView(
        asset_id=asset_id,
        published=published,
        uri=uri,
        gateway_url=ipfs_gateway_url(uri, ipfs_cfg) if uri else None,
        has_bundle=has_bundle,
        record=record if isinstance(record, dict) else None,
    )


def _snapshot(request: Request, namespace: str) -> tuple[Json, List[str]]:
    cfg = _cfg(request)
    ns = _namespace(namespace)
    state = StateStore(cfg.assets_root, state_dir=cfg.state_dir).load(ns)
    bundles = list_bundle_ids(cfg.resolved_bundles_root, exclude=cfg.scan_excludes())
    return state, bundles


@router.get("/health")
def health() -> Json:
    return {"ok": True, "version": __version__}


@router.get("/namespaces/{namespace}/assets")
def list_assets(namespace: str, request: Request) -> Json:
    """All assets known to a namespace: bundles on disk plus recorded entries.

    Records without a bundle directory are kept (assets retired from disk
    after publication are still minted against their recorded uri).
    """
    state, bundles = _snapshot(request, namespace)
    ipfs_cfg = getattr(request.app.state, "ipfs_cfg", None)
    on_disk = set(bundles)

    views = [
        _view(asset_id, state.get(asset_id), asset_id in on_disk, ipfs_cfg).model_dump()
        for asset_id in sorted(on_disk | set(state))
    ]
    published = sum(1 for v in views if v["published"])
    return {
        "ok": True,
        "namespace": namespace,
        "counts": {"total": len(views), "published": published, "pending": len(views) - published},
        "assets": views,
    }


@router.get("/namespaces/{namespace}/assets/{asset_id}")
def get_asset(namespace: str, asset_id: str, request: Request) -> Json:
    state, bundles = _snapshot(request, namespace)
    has_bundle = asset_id in set(bundles)
    if asset_id not in state and not has_bundle:
        raise ApiError.not_found("asset_not_found", "no bundle or record for asset", {"namespace": namespace, "asset_id": asset_id})

    view = _view(asset_id, state.get(asset_id), has_bundle, getattr(request.app.state, "ipfs_cfg", None))
    return {"ok": True, "namespace": namespace, "asset": view.model_dump()}
