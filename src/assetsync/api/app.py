from __future__ import annotations

import os
from typing import Optional

from fastapi import FastAPI

from assetsync import __version__
from assetsync.api.errors import ApiError, api_error_handler
from assetsync.api.request_log import RequestLogMiddleware
from assetsync.api.routes import router
from assetsync.config import SyncConfig, load_sync_config
from assetsync.ipfs import IpfsConfig, load_ipfs_config


def create_app(*, cfg: Optional[SyncConfig] = None, ipfs_cfg: Optional[IpfsConfig] = None) -> FastAPI:
    """Create the read-only state API.

    cfg supplies assets_root / state_dir / bundles_root; the namespace is
    taken from each request path, so cfg.namespace is unused here.

    Tests rely on:
      - /v1/health
      - /v1/namespaces/{namespace}/assets[/{asset_id}]
      - error envelope {"ok": false, "error": {"code", "message", "details"}}
    """
    if cfg is None:
        cfg = load_sync_config(overrides={"namespace": os.environ.get("ASSETSYNC_NETWORK") or "default"})

    # Docs are only useful when poking at a local node.
    if (os.environ.get("ASSETSYNC_API_DOCS") or "").strip().lower() in {"1", "true", "yes", "y", "on"}:
        app = FastAPI(title="assetsync state API", version=__version__)
    else:
        app = FastAPI(title="assetsync state API", version=__version__, docs_url=None, redoc_url=None, openapi_url=None)

    app.state.cfg = cfg
    app.state.ipfs_cfg = ipfs_cfg or load_ipfs_config()

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_middleware(RequestLogMiddleware)

    app.include_router(router, prefix="/v1")
    return app
