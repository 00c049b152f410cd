from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest

from assetsync.config import SyncConfig, default_sync_config
from assetsync.errors import StateSaveError
from assetsync.state_store import StateStore
from assetsync.sync import STATUS_DRY_RUN, STATUS_NOOP, STATUS_OK, STATUS_PARTIAL, SyncOrchestrator, merge_publication


def _cfg(tmp_path: Path, **changes: Any) -> SyncConfig:
    base = replace(
        default_sync_config("goerli"),
        assets_root=str(tmp_path),
        max_attempts=1,
        backoff_base_ms=0,
        publish_timeout_s=5.0,
    )
    return replace(base, **changes)


def _mk_bundle(root: Path, asset_id: str) -> None:
    d = root / asset_id
    d.mkdir(parents=True)
    (d / "metadata.json").write_text(json.dumps({"name": asset_id, "image": "image.png"}), encoding="utf-8")
    (d / "image.png").write_bytes(asset_id.encode("utf-8"))


class FakeStore:
    """Content store keyed on the bundle's metadata "name" (== asset id in these tests)."""

    def __init__(self, *, fail: Set[str] = frozenset(), delay_s: float = 0.0) -> None:
        self.fail = set(fail)
        self.delay_s = delay_s
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def store(self, *, name, payload, media_type, fields, timeout_s) -> str:
        asset_id = fields["name"]
        with self._lock:
            self.calls.append(asset_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            if asset_id in self.fail:
                raise ConnectionError(f"upload of {asset_id} refused")
            return f"ipfs://cid-{asset_id}/metadata.json"
        finally:
            with self._lock:
                self.active -= 1


class CountingStateStore(StateStore):
    def __init__(self, *args: Any, fail_on_save: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.saves: List[Dict[str, Any]] = []
        self.fail_on_save = fail_on_save

    def save(self, namespace, state):
        if self.fail_on_save:
            raise StateSaveError("write_failed", {"error": "disk full"})
        self.saves.append(json.loads(json.dumps(state)))
        return super().save(namespace, state)


def _read_state(tmp_path: Path, ns: str = "goerli") -> Dict[str, Any]:
    return json.loads((tmp_path / "data" / ns / "state.json").read_text(encoding="utf-8"))


def test_first_sync_publishes_everything(tmp_path: Path) -> None:
    for a in ("1", "2", "3"):
        _mk_bundle(tmp_path, a)
    store = FakeStore()

    report = SyncOrchestrator(_cfg(tmp_path), store).run()

    assert report.status == STATUS_OK
    assert report.exit_code == 0
    assert report.saved is True
    assert sorted(store.calls) == ["1", "2", "3"]
    assert _read_state(tmp_path) == {
        "1": {"uri": "ipfs://cid-1/metadata.json"},
        "2": {"uri": "ipfs://cid-2/metadata.json"},
        "3": {"uri": "ipfs://cid-3/metadata.json"},
    }
    assert "3 published successfully" in report.summary()


def test_second_run_is_a_noop_and_does_not_touch_state(tmp_path: Path) -> None:
    for a in ("1", "2"):
        _mk_bundle(tmp_path, a)
    SyncOrchestrator(_cfg(tmp_path), FakeStore()).run()

    path = tmp_path / "data" / "goerli" / "state.json"
    before = path.read_bytes()
    old = time.time() - 3600
    os.utime(path, (old, old))
    mtime = path.stat().st_mtime

    store = FakeStore()
    states = CountingStateStore(tmp_path)
    report = SyncOrchestrator(_cfg(tmp_path), store, state_store=states).run()

    assert report.status == STATUS_NOOP
    assert report.saved is False
    assert report.summary() == "[goerli] no new assets"
    assert store.calls == []
    assert states.saves == []
    assert path.read_bytes() == before
    assert path.stat().st_mtime == mtime


def test_only_new_and_uri_less_assets_are_published(tmp_path: Path) -> None:
    for a in ("1", "2", "3", "4"):
        _mk_bundle(tmp_path, a)
    StateStore(tmp_path).save(
        "goerli",
        {
            "1": {"uri": "ipfs://existing/metadata.json", "tokenId": 1},
            "2": {"uri": "", "tokenId": 2, "note": "retry me"},
            "3": {"tokenId": 3},
            "legacy": {"uri": "ipfs://retired/metadata.json", "extra": True},
        },
    )
    store = FakeStore()

    report = SyncOrchestrator(_cfg(tmp_path), store).run()

    assert sorted(store.calls) == ["2", "3", "4"]
    assert report.pending == ["2", "3", "4"]
    assert _read_state(tmp_path) == {
        "1": {"uri": "ipfs://existing/metadata.json", "tokenId": 1},
        "2": {"uri": "ipfs://cid-2/metadata.json", "tokenId": 2, "note": "retry me"},
        "3": {"uri": "ipfs://cid-3/metadata.json", "tokenId": 3},
        "4": {"uri": "ipfs://cid-4/metadata.json"},
        "legacy": {"uri": "ipfs://retired/metadata.json", "extra": True},
    }


def test_partial_failure_records_successes_only(tmp_path: Path) -> None:
    for a in ("a", "b", "c"):
        _mk_bundle(tmp_path, a)

    report = SyncOrchestrator(_cfg(tmp_path), FakeStore(fail={"c"})).run()

    assert report.status == STATUS_PARTIAL
    assert report.exit_code == 1
    assert report.failed == {"c": "store_error"}
    assert set(report.published) == {"a", "b"}
    state = _read_state(tmp_path)
    assert set(state) == {"a", "b"}
    assert "1 failed (c: store_error)" in report.summary()

    # The failed asset is picked up again by the next run.
    again = SyncOrchestrator(_cfg(tmp_path), FakeStore()).run()
    assert again.status == STATUS_OK
    assert list(again.published) == ["c"]
    assert set(_read_state(tmp_path)) == {"a", "b", "c"}


def test_unreadable_bundle_fails_alone(tmp_path: Path) -> None:
    _mk_bundle(tmp_path, "good")
    (tmp_path / "broken").mkdir()
    (tmp_path / "broken" / "metadata.json").write_text("{nope", encoding="utf-8")

    store = FakeStore()
    report = SyncOrchestrator(_cfg(tmp_path), store).run()

    assert report.failed == {"broken": "metadata_malformed"}
    assert store.calls == ["good"]
    assert set(_read_state(tmp_path)) == {"good"}


def test_concurrency_is_bounded(tmp_path: Path) -> None:
    for i in range(8):
        _mk_bundle(tmp_path, f"asset{i}")
    store = FakeStore(delay_s=0.05)

    report = SyncOrchestrator(_cfg(tmp_path, concurrency=2), store).run()

    assert report.status == STATUS_OK
    assert len(store.calls) == 8
    assert 1 <= store.max_active <= 2


def test_flush_each_saves_incrementally(tmp_path: Path) -> None:
    for a in ("1", "2", "3"):
        _mk_bundle(tmp_path, a)
    states = CountingStateStore(tmp_path)

    SyncOrchestrator(_cfg(tmp_path, concurrency=1), FakeStore(delay_s=0.1), state_store=states).run()

    # One worker completes one asset at a time, so state grows save by save.
    assert len(states.saves) >= 2
    assert set(states.saves[0]) == {"1"}
    for prev, cur in zip(states.saves, states.saves[1:]):
        assert set(prev) < set(cur)
    assert set(states.saves[-1]) == {"1", "2", "3"}


def test_without_flush_each_saves_once(tmp_path: Path) -> None:
    for a in ("1", "2", "3"):
        _mk_bundle(tmp_path, a)
    states = CountingStateStore(tmp_path)

    report = SyncOrchestrator(_cfg(tmp_path, flush_each=False), FakeStore(), state_store=states).run()

    assert report.saved is True
    assert len(states.saves) == 1
    assert set(states.saves[0]) == {"1", "2", "3"}


def test_all_failed_does_not_write_state(tmp_path: Path) -> None:
    _mk_bundle(tmp_path, "1")
    states = CountingStateStore(tmp_path)

    report = SyncOrchestrator(_cfg(tmp_path), FakeStore(fail={"1"}), state_store=states).run()

    assert report.status == STATUS_PARTIAL
    assert report.saved is False
    assert states.saves == []
    assert not (tmp_path / "data" / "goerli" / "state.json").exists()


def test_state_save_failure_aborts_run(tmp_path: Path) -> None:
    _mk_bundle(tmp_path, "1")
    states = CountingStateStore(tmp_path, fail_on_save=True)

    with pytest.raises(StateSaveError):
        SyncOrchestrator(_cfg(tmp_path), FakeStore(), state_store=states).run()


def test_dry_run_publishes_nothing(tmp_path: Path) -> None:
    for a in ("1", "2"):
        _mk_bundle(tmp_path, a)
    store = FakeStore()

    report = SyncOrchestrator(_cfg(tmp_path), store).run(dry_run=True)

    assert report.status == STATUS_DRY_RUN
    assert report.exit_code == 0
    assert report.pending == ["1", "2"]
    assert store.calls == []
    assert not (tmp_path / "data").exists()


def test_run_overrides_root_and_namespace(tmp_path: Path) -> None:
    other = tmp_path / "other"
    _mk_bundle(other, "9")

    report = SyncOrchestrator(_cfg(tmp_path / "unused"), FakeStore()).run(str(other), "mainnet")

    assert report.namespace == "mainnet"
    assert _read_state(other, "mainnet") == {"9": {"uri": "ipfs://cid-9/metadata.json"}}


def test_separate_bundles_root(tmp_path: Path) -> None:
    bundles = tmp_path / "bundles"
    _mk_bundle(bundles, "1")
    # "data" is a legitimate bundle name when bundles live outside the assets root.
    _mk_bundle(bundles, "data")
    cfg = _cfg(tmp_path / "assets", bundles_root=str(bundles))

    report = SyncOrchestrator(cfg, FakeStore()).run()

    assert sorted(report.published) == ["1", "data"]
    assert set(_read_state(tmp_path / "assets")) == {"1", "data"}


def test_interrupt_keeps_completed_work(tmp_path: Path) -> None:
    for a in ("1", "2"):
        _mk_bundle(tmp_path, a)

    class InterruptingStateStore(CountingStateStore):
        def save(self, namespace, state):
            path = super().save(namespace, state)
            if len(self.saves) == 1:
                raise KeyboardInterrupt
            return path

    states = InterruptingStateStore(tmp_path)
    with pytest.raises(KeyboardInterrupt):
        SyncOrchestrator(_cfg(tmp_path, concurrency=1), FakeStore(delay_s=0.1), state_store=states).run()

    assert set(_read_state(tmp_path)) == {"1"}


def test_merge_publication_is_additive() -> None:
    state: Dict[str, Optional[Any]] = {"1": {"uri": "", "tokenId": 1}, "2": "garbage"}
    merge_publication(state, "1", "ipfs://x")
    merge_publication(state, "2", "ipfs://y")
    merge_publication(state, "3", "ipfs://z")

    assert state == {
        "1": {"uri": "ipfs://x", "tokenId": 1},
        "2": {"uri": "ipfs://y"},
        "3": {"uri": "ipfs://z"},
    }
