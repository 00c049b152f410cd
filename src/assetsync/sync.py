"""Asset sync orchestration: scan -> bounded publish fan-out -> merge -> persist."""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from assetsync.config import SyncConfig, validate_sync_config, with_namespace
from assetsync.errors import AssetError, PublishError, StateSaveError
from assetsync.publisher import ContentStore, Publisher
from assetsync.scanner import find_pending
from assetsync.state_store import PublicationState, StateStore
from assetsync.structured_logging import log_event

logger = logging.getLogger("assetsync.sync")

STATUS_NOOP = "noop"
STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_DRY_RUN = "dry_run"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SyncReport:
    namespace: str
    status: str
    pending: List[str] = field(default_factory=list)
    published: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    state_path: str = ""
    saved: bool = False
    duration_ms: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.status == STATUS_PARTIAL else 0

    def summary(self) -> str:
        if self.status == STATUS_NOOP:
            return f"[{self.namespace}] no new assets"
        if self.status == STATUS_DRY_RUN:
            return f"[{self.namespace}] {len(self.pending)} pending (dry run): {', '.join(self.pending)}"
        parts = [f"[{self.namespace}] {len(self.published)} published successfully"]
        if self.failed:
            reasons = "; ".join(f"{k}: {v}" for k, v in sorted(self.failed.items()))
            parts.append(f"{len(self.failed)} failed ({reasons})")
        return ", ".join(parts)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "status": self.status,
            "pending": list(self.pending),
            "published": dict(self.published),
            "failed": dict(self.failed),
            "state_path": self.state_path,
            "saved": self.saved,
            "duration_ms": self.duration_ms,
        }


def merge_publication(state: PublicationState, asset_id: str, uri: str) -> None:
    """Additive merge: keep every prior field, always take the fresh uri."""
    prior = state.get(asset_id)
    record: Dict[str, Any] = dict(prior) if isinstance(prior, dict) else {}
    record["uri"] = uri
    state[asset_id] = record


def _failure_reason(err: BaseException) -> str:
    if isinstance(err, AssetError):
        return err.reason
    return f"{type(err).__name__}: {err}"


class SyncOrchestrator:
    """Runs one sync for one namespace.

    Only this object touches the in-memory state: workers return
    (asset_id, address) pairs and all merges/saves happen on the calling
    thread. At most one run per namespace is assumed (see SingleWriterLock).
    """

    def __init__(
        self,
        cfg: SyncConfig,
        store: ContentStore,
        *,
        state_store: Optional[StateStore] = None,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.cfg = cfg
        self.content_store = store
        self.state_store = state_store
        self.publisher = publisher

    def _state_store_for(self, cfg: SyncConfig) -> StateStore:
        if self.state_store is not None:
            return self.state_store
        return StateStore(cfg.assets_root, state_dir=cfg.state_dir)

    def _publisher_for(self, cfg: SyncConfig) -> Publisher:
        if self.publisher is not None:
            return self.publisher
        return Publisher(
            self.content_store,
            publish_timeout_s=cfg.publish_timeout_s,
            max_attempts=cfg.max_attempts,
            backoff_base_ms=cfg.backoff_base_ms,
            backoff_cap_ms=cfg.backoff_cap_ms,
            metadata_filename=cfg.metadata_filename,
            # Slack for calls abandoned after a timeout.
            max_workers=cfg.concurrency * 2,
        )

    def run(
        self,
        assets_root: Optional[str] = None,
        namespace: Optional[str] = None,
        *,
        dry_run: bool = False,
    ) -> SyncReport:
        cfg = self.cfg
        if namespace is not None:
            cfg = with_namespace(cfg, namespace)
        if assets_root is not None:
            # Bundles follow the assets root unless bundles_root was set explicitly.
            cfg = replace(cfg, assets_root=str(assets_root))
            validate_sync_config(cfg)

        started = _now_ms()
        ns = cfg.namespace
        states = self._state_store_for(cfg)
        state_path = str(states.state_path(ns))

        # 1. load
        state = states.load(ns)

        # 2. scan
        bundles_root = cfg.resolved_bundles_root
        pending = find_pending(bundles_root, state, exclude=cfg.scan_excludes())
        report = SyncReport(namespace=ns, status=STATUS_NOOP, pending=pending, state_path=state_path)

        if not pending:
            report.duration_ms = _now_ms() - started
            log_event(logger, "sync_noop", namespace=ns, records=len(state))
            return report

        if dry_run:
            report.status = STATUS_DRY_RUN
            report.duration_ms = _now_ms() - started
            log_event(logger, "sync_dry_run", namespace=ns, pending=pending)
            return report

        log_event(
            logger,
            "sync_start",
            namespace=ns,
            pending=len(pending),
            concurrency=cfg.concurrency,
            bundles_root=str(bundles_root),
        )

        # 3-6. fan-out, serialized merge, persist
        publisher = self._publisher_for(cfg)
        try:
            self._fan_out(cfg, publisher, states, state, pending, report)
        finally:
            if self.publisher is None:
                publisher.close()

        report.status = STATUS_PARTIAL if report.failed else STATUS_OK
        report.duration_ms = _now_ms() - started
        log_event(
            logger,
            "sync_done",
            level=logging.WARNING if report.failed else logging.INFO,
            namespace=ns,
            status=report.status,
            published=len(report.published),
            failed=len(report.failed),
            saved=report.saved,
            duration_ms=report.duration_ms,
        )
        return report

    def _fan_out(
        self,
        cfg: SyncConfig,
        publisher: Publisher,
        states: StateStore,
        state: PublicationState,
        pending: List[str],
        report: SyncReport,
    ) -> None:
        ns = cfg.namespace
        bundles_root = cfg.resolved_bundles_root
        dirty = False

        pool = ThreadPoolExecutor(max_workers=min(cfg.concurrency, len(pending)), thread_name_prefix="assetsync-sync")
        futures: Dict[Future, str] = {
            pool.submit(publisher.publish_asset, bundles_root, asset_id): asset_id for asset_id in pending
        }
        outstanding = set(futures)
        try:
            while outstanding:
                done, outstanding = wait(outstanding, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: futures[f]):
                    asset_id = futures[fut]
                    err = fut.exception()
                    if err is not None:
                        if not isinstance(err, AssetError):
                            err = PublishError(asset_id, "unexpected_error", details={"error": f"{type(err).__name__}: {err}"})
                        report.failed[asset_id] = _failure_reason(err)
                        log_event(
                            logger,
                            "asset_failed",
                            level=logging.ERROR,
                            namespace=ns,
                            asset_id=asset_id,
                            code=getattr(err, "code", ""),
                            reason=_failure_reason(err),
                            details=getattr(err, "details", None),
                        )
                        continue

                    uri = fut.result()
                    merge_publication(state, asset_id, uri)
                    report.published[asset_id] = uri
                    dirty = True
                    log_event(logger, "asset_published", namespace=ns, asset_id=asset_id, uri=uri)

                if dirty and cfg.flush_each:
                    states.save(ns, state)
                    report.saved = True
                    dirty = False
        except StateSaveError:
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        except BaseException:
            # KeyboardInterrupt and the like: stop queued work, keep whatever
            # was merged so far.
            pool.shutdown(wait=False, cancel_futures=True)
            if dirty:
                states.save(ns, state)
                report.saved = True
            raise
        else:
            pool.shutdown(wait=True)

        if dirty:
            states.save(ns, state)
            report.saved = True
