# src/assetsync/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from assetsync import DEFAULT_METADATA_FILENAME, DEFAULT_STATE_DIR
from assetsync.errors import ConfigError
from assetsync.state_store import validate_namespace

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class SyncConfig:
    # Network / deployment target; partitions state.json.
    namespace: str

    assets_root: str
    # Where bundle directories live. Empty means "same as assets_root".
    bundles_root: str
    state_dir: str
    metadata_filename: str

    concurrency: int
    publish_timeout_s: float

    # Retry / backoff
    max_attempts: int
    backoff_base_ms: int
    backoff_cap_ms: int

    # Persist after every merged success instead of once per run.
    flush_each: bool

    log_level: str

    @property
    def resolved_bundles_root(self) -> str:
        return self.bundles_root or self.assets_root

    def scan_excludes(self) -> Tuple[str, ...]:
        """Directory names under the bundles root that are never bundles."""
        if Path(self.resolved_bundles_root).resolve() == Path(self.assets_root).resolve():
            return (self.state_dir,)
        return ()


_ENV_KEYS: Dict[str, str] = {
    "namespace": "ASSETSYNC_NETWORK",
    "assets_root": "ASSETSYNC_ASSETS_ROOT",
    "bundles_root": "ASSETSYNC_BUNDLES_ROOT",
    "state_dir": "ASSETSYNC_STATE_DIR",
    "metadata_filename": "ASSETSYNC_METADATA_FILENAME",
    "concurrency": "ASSETSYNC_CONCURRENCY",
    "publish_timeout_s": "ASSETSYNC_PUBLISH_TIMEOUT_S",
    "max_attempts": "ASSETSYNC_MAX_ATTEMPTS",
    "backoff_base_ms": "ASSETSYNC_BACKOFF_BASE_MS",
    "backoff_cap_ms": "ASSETSYNC_BACKOFF_CAP_MS",
    "flush_each": "ASSETSYNC_FLUSH_EACH",
    "log_level": "ASSETSYNC_LOG_LEVEL",
}

MAX_CONCURRENCY = 64


def validate_sync_config(cfg: SyncConfig) -> None:
    """Fail-fast validation for operator config."""

    try:
        validate_namespace(cfg.namespace)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    if not isinstance(cfg.assets_root, str) or not cfg.assets_root.strip():
        raise ConfigError("assets_root must be a non-empty string")

    try:
        validate_namespace(cfg.state_dir)
    except ValueError as e:
        raise ConfigError(f"state_dir must be a plain directory name; got: {cfg.state_dir!r}") from e

    name = str(cfg.metadata_filename or "")
    if not name.strip() or "/" in name or "\\" in name:
        raise ConfigError(f"metadata_filename must be a plain file name; got: {cfg.metadata_filename!r}")

    if int(cfg.concurrency) < 1 or int(cfg.concurrency) > MAX_CONCURRENCY:
        raise ConfigError(f"concurrency must be 1..{MAX_CONCURRENCY}; got: {cfg.concurrency}")

    if float(cfg.publish_timeout_s) <= 0:
        raise ConfigError(f"publish_timeout_s must be > 0; got: {cfg.publish_timeout_s}")

    if int(cfg.max_attempts) < 1:
        raise ConfigError(f"max_attempts must be >= 1; got: {cfg.max_attempts}")

    if int(cfg.backoff_base_ms) < 0 or int(cfg.backoff_cap_ms) < 0:
        raise ConfigError("backoff_base_ms and backoff_cap_ms must be >= 0")


def default_sync_config(namespace: str = "") -> SyncConfig:
    return SyncConfig(
        namespace=namespace,
        assets_root="./assets",
        bundles_root="",
        state_dir=DEFAULT_STATE_DIR,
        metadata_filename=DEFAULT_METADATA_FILENAME,
        concurrency=4,
        publish_timeout_s=60.0,
        max_attempts=3,
        backoff_base_ms=500,
        backoff_cap_ms=10_000,
        flush_each=True,
        log_level="INFO",
    )


def _coerce(raw: Mapping[str, Any], base: SyncConfig) -> SyncConfig:
    return SyncConfig(
        namespace=_as_str(raw.get("namespace"), base.namespace).strip(),
        assets_root=_as_str(raw.get("assets_root"), base.assets_root),
        bundles_root=_as_str(raw.get("bundles_root"), base.bundles_root),
        state_dir=_as_str(raw.get("state_dir"), base.state_dir),
        metadata_filename=_as_str(raw.get("metadata_filename"), base.metadata_filename),
        concurrency=_as_int(raw.get("concurrency"), base.concurrency),
        publish_timeout_s=_as_float(raw.get("publish_timeout_s"), base.publish_timeout_s),
        max_attempts=_as_int(raw.get("max_attempts"), base.max_attempts),
        backoff_base_ms=_as_int(raw.get("backoff_base_ms"), base.backoff_base_ms),
        backoff_cap_ms=_as_int(raw.get("backoff_cap_ms"), base.backoff_cap_ms),
        flush_each=_as_bool(raw.get("flush_each"), base.flush_each),
        log_level=_as_str(raw.get("log_level"), base.log_level),
    )


def read_sync_config_file(path: str, base: Optional[SyncConfig] = None) -> SyncConfig:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config file {path!r}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("sync config must be a JSON object")
    # "network" is accepted as an alias, matching the CLI flag.
    if "namespace" not in raw and "network" in raw:
        raw["namespace"] = raw["network"]
    return _coerce(raw, base or default_sync_config())


def _env_overrides() -> Json:
    out: Json = {}
    for key, env_name in _ENV_KEYS.items():
        v = os.environ.get(env_name)
        if v is not None and v.strip():
            out[key] = v.strip()
    return out


def load_sync_config(
    *,
    config_path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> SyncConfig:
    """Resolve config: defaults < JSON file < ASSETSYNC_* env < explicit overrides."""
    cfg = default_sync_config()

    p = config_path or os.environ.get("ASSETSYNC_CONFIG_PATH")
    if p:
        cfg = read_sync_config_file(p, base=cfg)

    cfg = _coerce(_env_overrides(), cfg)

    if overrides:
        known = {f.name for f in fields(SyncConfig)}
        picked = {k: v for k, v in overrides.items() if k in known and v is not None}
        cfg = _coerce(picked, cfg)

    validate_sync_config(cfg)
    return cfg


def with_namespace(cfg: SyncConfig, namespace: str) -> SyncConfig:
    out = replace(cfg, namespace=str(namespace).strip())
    validate_sync_config(out)
    return out
