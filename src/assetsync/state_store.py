"""
Per-namespace publication state.

Storage layout:
    <assets_root>/<state_dir>/<namespace>/state.json   asset_id -> record

The file is always rewritten in full (temp file + fsync + os.replace), so a
crash mid-write leaves either the old or the new mapping, never a torn one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict

from assetsync import DEFAULT_STATE_DIR, STATE_FILENAME
from assetsync.errors import StateLoadError, StateSaveError
from assetsync.structured_logging import log_event

PublicationState = Dict[str, Any]

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

logger = logging.getLogger("assetsync.state")


def validate_namespace(namespace: str) -> str:
    """Return the namespace unchanged or raise ValueError. Prevents path traversal."""
    if not isinstance(namespace, str) or not _NAMESPACE_RE.match(namespace) or namespace in {".", ".."}:
        raise ValueError(f"Invalid namespace: must match [A-Za-z0-9_.-]+, got {namespace!r}")
    return namespace


class StateStore:
    """JSON file store for PublicationState, one file per namespace.

    Usage:
        store = StateStore("./assets")
        state = store.load("goerli")
        state["1"] = {"uri": "ipfs://..."}
        store.save("goerli", state)
    """

    def __init__(self, assets_root: str | Path, state_dir: str = DEFAULT_STATE_DIR) -> None:
        self.assets_root = Path(assets_root)
        self.state_dir = state_dir

    def namespace_dir(self, namespace: str) -> Path:
        return self.assets_root / self.state_dir / validate_namespace(namespace)

    def state_path(self, namespace: str) -> Path:
        return self.namespace_dir(namespace) / STATE_FILENAME

    def _read(self, path: Path) -> PublicationState:
        if not path.is_file():
            raise StateLoadError("missing", {"path": str(path)})
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateLoadError("unreadable", {"path": str(path), "error": str(e)}) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateLoadError("malformed", {"path": str(path), "error": str(e)}) from e
        if not isinstance(data, dict):
            raise StateLoadError("not_an_object", {"path": str(path), "type": type(data).__name__})
        return data

    def load(self, namespace: str) -> PublicationState:
        """Read the mapping for a namespace. Any read failure yields an empty mapping."""
        path = self.state_path(namespace)
        try:
            return self._read(path)
        except StateLoadError as e:
            # A missing file is the normal fresh-namespace case; anything else
            # is worth a warning because the next save will replace the file.
            level = logging.INFO if e.reason == "missing" else logging.WARNING
            log_event(
                logger,
                "state_load_degraded",
                level=level,
                namespace=namespace,
                reason=e.reason,
                details=e.details,
            )
            return {}

    def save(self, namespace: str, state: PublicationState) -> Path:
        """Atomically replace the namespace's state file with the full mapping.

        Raises StateSaveError on any failure; the previous file is left intact.
        """
        path = self.state_path(namespace)
        try:
            data = json.dumps(state, indent=2, ensure_ascii=False) + "\n"
        except (TypeError, ValueError) as e:
            raise StateSaveError("not_serializable", {"path": str(path), "error": str(e)}) from e

        tmp_path = ""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".state_")
            with os.fdopen(fd, "wb") as f:
                f.write(data.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(path))
            tmp_path = ""
        except OSError as e:
            log_event(logger, "state_save_failed", level=logging.ERROR, namespace=namespace, path=str(path), error=str(e))
            raise StateSaveError("write_failed", {"path": str(path), "error": str(e)}) from e
        finally:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

        log_event(logger, "state_saved", namespace=namespace, path=str(path), records=len(state))
        return path
