"""
assetsync CLI.

Commands:
  assetsync sync   --network NAME   Publish new asset bundles and update state.json
  assetsync status --network NAME   Show published / pending assets for a network
  assetsync serve                   Start the read-only state API

Exit codes:
  0  success, or nothing to publish
  1  at least one asset failed to publish
  2  usage / configuration error
  3  state could not be saved after publishing (uploads may need re-recording)
  4  another sync run holds the namespace lock
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from assetsync import LOCK_FILENAME
from assetsync.config import SyncConfig, load_sync_config
from assetsync.env import load_dotenv_if_present
from assetsync.errors import ConfigError, StateSaveError, SyncLockedError
from assetsync.scanner import find_pending, list_bundle_ids
from assetsync.single_writer import SingleWriterLock
from assetsync.state_store import StateStore
from assetsync.structured_logging import configure_structured_logging, log_event

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_USAGE = 2
EXIT_SAVE_FAILED = 3
EXIT_LOCKED = 4

logger = logging.getLogger("assetsync.cli")


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--network", dest="namespace", help="Network / namespace name (or set ASSETSYNC_NETWORK)")
    p.add_argument("--config", dest="config_path", help="JSON config file (or set ASSETSYNC_CONFIG_PATH)")
    p.add_argument("--assets-root", dest="assets_root", help="Assets root holding data/<network>/state.json")
    p.add_argument("--bundles-root", dest="bundles_root", help="Directory of asset bundles (default: assets root)")
    p.add_argument("--log-level", dest="log_level")


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="assetsync", description="Publish NFT asset bundles to IPFS")
    sub = ap.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Publish pending assets and update state")
    _add_config_args(p_sync)
    p_sync.add_argument("--concurrency", type=int)
    p_sync.add_argument("--timeout", dest="publish_timeout_s", type=float, help="Per-attempt publish timeout (s)")
    p_sync.add_argument("--max-attempts", dest="max_attempts", type=int)
    p_sync.add_argument("--no-flush-each", dest="flush_each", action="store_false", default=None,
                        help="Save state once at the end instead of after each publish")
    p_sync.add_argument("--dry-run", dest="dry_run", action="store_true", help="List pending assets only")

    p_status = sub.add_parser("status", help="Show published / pending assets")
    _add_config_args(p_status)

    p_serve = sub.add_parser("serve", help="Start the read-only state API")
    p_serve.add_argument("--host", default=os.getenv("ASSETSYNC_API_HOST", "127.0.0.1"))
    p_serve.add_argument("--port", type=int, default=int(os.getenv("ASSETSYNC_API_PORT", "8090") or "8090"))
    p_serve.add_argument("--config", dest="config_path")
    p_serve.add_argument("--assets-root", dest="assets_root")
    p_serve.add_argument("--log-level", dest="log_level")

    return ap.parse_args(argv)


def _load_cfg(args: argparse.Namespace, *, require_namespace: bool = True) -> SyncConfig:
    overrides: Dict[str, Any] = {}
    for key in (
        "namespace",
        "assets_root",
        "bundles_root",
        "log_level",
        "concurrency",
        "publish_timeout_s",
        "max_attempts",
        "flush_each",
    ):
        v = getattr(args, key, None)
        if v is not None:
            overrides[key] = v
    if not require_namespace and not (overrides.get("namespace") or os.environ.get("ASSETSYNC_NETWORK")):
        # The API takes the namespace per request.
        overrides["namespace"] = "default"
    return load_sync_config(config_path=getattr(args, "config_path", None), overrides=overrides)


def cmd_sync(args: argparse.Namespace, cfg: SyncConfig) -> int:
    from assetsync.ipfs import IpfsContentStore
    from assetsync.sync import SyncOrchestrator

    states = StateStore(cfg.assets_root, state_dir=cfg.state_dir)
    lock = SingleWriterLock(str(states.namespace_dir(cfg.namespace) / LOCK_FILENAME))

    try:
        with lock:
            report = SyncOrchestrator(cfg, IpfsContentStore(), state_store=states).run(dry_run=bool(args.dry_run))
    except SyncLockedError as e:
        print(f"ERROR: another sync is running for {cfg.namespace!r} ({e.details['lock_path']})", file=sys.stderr)
        return EXIT_LOCKED
    except StateSaveError as e:
        log_event(logger, "sync_aborted", level=logging.CRITICAL, namespace=cfg.namespace, reason=e.reason, details=e.details)
        print(
            f"FATAL: assets were published but state could not be saved to {states.state_path(cfg.namespace)}: {e.details}",
            file=sys.stderr,
        )
        return EXIT_SAVE_FAILED

    print(report.summary())
    print(json.dumps(report.as_dict(), indent=2))
    return EXIT_PARTIAL if report.exit_code else EXIT_OK


def cmd_status(args: argparse.Namespace, cfg: SyncConfig) -> int:
    states = StateStore(cfg.assets_root, state_dir=cfg.state_dir)
    state = states.load(cfg.namespace)
    exclude = cfg.scan_excludes()
    bundles = list_bundle_ids(cfg.resolved_bundles_root, exclude=exclude)
    pending = find_pending(cfg.resolved_bundles_root, state, exclude=exclude)
    out = {
        "namespace": cfg.namespace,
        "state_path": str(states.state_path(cfg.namespace)),
        "bundles": len(bundles),
        "records": len(state),
        "published": sorted(k for k in bundles if k not in pending),
        "pending": pending,
    }
    print(json.dumps(out, indent=2))
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, cfg: SyncConfig) -> int:
    import uvicorn

    from assetsync.api.app import create_app

    uvicorn.run(create_app(cfg=cfg), host=args.host, port=int(args.port), log_level="info")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env early so ASSETSYNC_* vars exist before anything reads them.
    load_dotenv_if_present()

    args = _parse_args(list(sys.argv[1:] if argv is None else argv))
    configure_structured_logging(getattr(args, "log_level", None))

    try:
        cfg = _load_cfg(args, require_namespace=args.command != "serve")
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "sync":
        return cmd_sync(args, cfg)
    if args.command == "status":
        return cmd_status(args, cfg)
    return cmd_serve(args, cfg)


def entrypoint() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    entrypoint()
