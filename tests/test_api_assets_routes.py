from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from fastapi.testclient import TestClient

from assetsync.api.app import create_app
from assetsync.config import default_sync_config
from assetsync.ipfs import IpfsConfig
from assetsync.state_store import StateStore


def _client(tmp_path: Path) -> TestClient:
    cfg = replace(default_sync_config("default"), assets_root=str(tmp_path))
    ipfs_cfg = IpfsConfig(api_base="http://127.0.0.1:5001", gateway_base="https://gw.example")
    return TestClient(create_app(cfg=cfg, ipfs_cfg=ipfs_cfg))


def _seed(tmp_path: Path) -> None:
    for a in ("1", "2"):
        (tmp_path / a).mkdir()
    StateStore(tmp_path).save(
        "goerli",
        {
            "1": {"uri": "ipfs://cid1/metadata.json", "tokenId": 1},
            "retired": {"uri": "ipfs://cidr/metadata.json"},
        },
    )


def test_health(tmp_path: Path) -> None:
    r = _client(tmp_path).get("/v1/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert "x-request-id" in r.headers


def test_list_assets(tmp_path: Path) -> None:
    _seed(tmp_path)
    r = _client(tmp_path).get("/v1/namespaces/goerli/assets")
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["counts"] == {"total": 3, "published": 2, "pending": 1}

    by_id = {a["asset_id"]: a for a in j["assets"]}
    assert list(by_id) == ["1", "2", "retired"]
    assert by_id["1"]["gateway_url"] == "https://gw.example/ipfs/cid1/metadata.json"
    assert by_id["1"]["record"] == {"uri": "ipfs://cid1/metadata.json", "tokenId": 1}
    assert by_id["2"]["published"] is False
    assert by_id["2"]["uri"] is None
    assert by_id["retired"]["has_bundle"] is False


def test_unknown_namespace_lists_bundles_as_pending(tmp_path: Path) -> None:
    _seed(tmp_path)
    j = _client(tmp_path).get("/v1/namespaces/mainnet/assets").json()
    assert j["counts"] == {"total": 2, "published": 0, "pending": 2}


def test_get_asset(tmp_path: Path) -> None:
    _seed(tmp_path)
    c = _client(tmp_path)

    r = c.get("/v1/namespaces/goerli/assets/1")
    assert r.status_code == 200
    asset = r.json()["asset"]
    assert asset["published"] is True
    assert asset["uri"] == "ipfs://cid1/metadata.json"
    assert asset["has_bundle"] is True

    r = c.get("/v1/namespaces/goerli/assets/404")
    assert r.status_code == 404
    err = r.json()
    assert err["ok"] is False
    assert err["error"]["code"] == "asset_not_found"


def test_invalid_namespace(tmp_path: Path) -> None:
    r = _client(tmp_path).get("/v1/namespaces/bad%20name/assets")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_namespace"
