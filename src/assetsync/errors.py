from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class SyncError(Exception):
    """Canonical error type for asset sync failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class StateLoadError(SyncError):
    """Persisted state could not be read. Callers degrade to empty state."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("state_load_failed", reason, details)


class StateSaveError(SyncError):
    """Persisted state could not be written. Always fatal for a run."""

    def __init__(self, reason: str, details: Any | None = None) -> None:
        super().__init__("state_save_failed", reason, details)


class SyncLockedError(SyncError):
    def __init__(self, lock_path: str) -> None:
        super().__init__("sync_locked", "single-writer lock already held", {"lock_path": lock_path})


class AssetError(SyncError):
    """Base for errors scoped to a single asset."""

    asset_id: str = ""

    def __init__(self, code: str, asset_id: str, reason: str, details: Any | None = None) -> None:
        super().__init__(code, reason, details)
        self.asset_id = asset_id

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}:{self.asset_id}:{self.reason}"


class BundleReadError(AssetError):
    def __init__(self, asset_id: str, reason: str, details: Any | None = None) -> None:
        super().__init__("bundle_read_failed", asset_id, reason, details)


class PublishError(AssetError):
    def __init__(self, asset_id: str, reason: str, *, attempts: int = 0, details: Any | None = None) -> None:
        super().__init__("publish_failed", asset_id, reason, details)
        self.attempts = int(attempts)


class ConfigError(ValueError):
    """Invalid operator configuration."""
