from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Mapping

from assetsync import DEFAULT_STATE_DIR


def is_published(record: Any) -> bool:
    """A record counts as published only when it is a mapping with a non-empty uri."""
    if not isinstance(record, Mapping):
        return False
    uri = record.get("uri")
    return isinstance(uri, str) and bool(uri.strip())


def list_bundle_ids(bundles_root: str | Path, *, exclude: Iterable[str] = (DEFAULT_STATE_DIR,)) -> List[str]:
    """Immediate subdirectories of bundles_root, sorted by name.

    Hidden directories and the state directory are never bundles.
    """
    root = Path(bundles_root)
    if not root.is_dir():
        return []
    skip = set(exclude)
    out: List[str] = []
    for entry in root.iterdir():
        name = entry.name
        if name.startswith(".") or name in skip:
            continue
        if entry.is_dir():
            out.append(name)
    return sorted(out)


def find_pending(
    bundles_root: str | Path,
    state: Mapping[str, Any],
    *,
    exclude: Iterable[str] = (DEFAULT_STATE_DIR,),
) -> List[str]:
    """Bundle ids that have no record, or whose record lacks a uri."""
    return [asset_id for asset_id in list_bundle_ids(bundles_root, exclude=exclude) if not is_published(state.get(asset_id))]
