from __future__ import annotations

import json
import logging
import mimetypes
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from pydantic import ValidationError

from assetsync import DEFAULT_MEDIA_TYPE, DEFAULT_METADATA_FILENAME
from assetsync.errors import BundleReadError, PublishError
from assetsync.schemas import AssetMetadata
from assetsync.structured_logging import log_event

Json = Dict[str, Any]

logger = logging.getLogger("assetsync.publisher")


@dataclass(frozen=True)
class AssetBundle:
    asset_id: str
    directory: Path
    metadata: Json
    image_name: str
    payload: bytes = field(repr=False)
    media_type: str = DEFAULT_MEDIA_TYPE


class ContentStore(Protocol):
    def store(
        self,
        *,
        name: str,
        payload: bytes,
        media_type: str,
        fields: Mapping[str, Any],
        timeout_s: float,
    ) -> str:
        ...


def _media_type_for(name: str) -> str:
    guessed = mimetypes.guess_type(name)[0]
    if guessed and guessed.startswith("image/"):
        return guessed
    return DEFAULT_MEDIA_TYPE


def load_bundle(
    bundles_root: str | Path,
    asset_id: str,
    metadata_filename: str = DEFAULT_METADATA_FILENAME,
) -> AssetBundle:
    """Read <bundles_root>/<asset_id>/metadata.json and the image it names.

    Raises BundleReadError for a missing file, malformed JSON, or an
    invalid "image" field.
    """
    directory = Path(bundles_root) / asset_id
    meta_path = directory / metadata_filename

    try:
        raw = meta_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise BundleReadError(asset_id, "metadata_missing", {"path": str(meta_path)}) from e
    except (OSError, UnicodeDecodeError) as e:
        raise BundleReadError(asset_id, "metadata_unreadable", {"path": str(meta_path), "error": str(e)}) from e

    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BundleReadError(asset_id, "metadata_malformed", {"path": str(meta_path), "error": str(e)}) from e
    if not isinstance(metadata, dict):
        raise BundleReadError(asset_id, "metadata_not_an_object", {"path": str(meta_path)})

    try:
        parsed = AssetMetadata.model_validate(metadata)
    except ValidationError as e:
        raise BundleReadError(
            asset_id,
            "metadata_invalid",
            {"path": str(meta_path), "errors": e.errors(include_url=False)},
        ) from e

    image_path = directory / parsed.image
    try:
        payload = image_path.read_bytes()
    except FileNotFoundError as e:
        raise BundleReadError(asset_id, "payload_missing", {"path": str(image_path)}) from e
    except OSError as e:
        raise BundleReadError(asset_id, "payload_unreadable", {"path": str(image_path), "error": str(e)}) from e

    return AssetBundle(
        asset_id=asset_id,
        directory=directory,
        metadata=metadata,
        image_name=parsed.image,
        payload=payload,
        media_type=_media_type_for(parsed.image),
    )


class Publisher:
    """Submits bundles to a ContentStore with a per-attempt timeout and capped retries.

    Every attempt runs on a dedicated call pool so a hung store request is
    abandoned after publish_timeout_s instead of stalling its worker forever.
    """

    def __init__(
        self,
        store: ContentStore,
        *,
        publish_timeout_s: float = 60.0,
        max_attempts: int = 3,
        backoff_base_ms: int = 500,
        backoff_cap_ms: int = 10_000,
        metadata_filename: str = DEFAULT_METADATA_FILENAME,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.publish_timeout_s = max(0.01, float(publish_timeout_s))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_cap_ms = max(self.backoff_base_ms, int(backoff_cap_ms))
        self.metadata_filename = metadata_filename
        self._sleep = sleep
        self._calls = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="assetsync-store")

    def close(self) -> None:
        self._calls.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Publisher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def compute_backoff_ms(self, attempts: int) -> int:
        # base * 2^(attempts-1), capped; attempts starts at 1 for first failure.
        a = max(1, int(attempts))
        delay = self.backoff_base_ms * (2 ** (a - 1))
        return int(min(delay, self.backoff_cap_ms))

    def _attempt(self, bundle: AssetBundle) -> str:
        future = self._calls.submit(
            self.store.store,
            name=bundle.image_name,
            payload=bundle.payload,
            media_type=bundle.media_type,
            fields=dict(bundle.metadata),
            timeout_s=self.publish_timeout_s,
        )
        try:
            address = future.result(timeout=self.publish_timeout_s)
        except TimeoutError:
            future.cancel()
            raise PublishError(bundle.asset_id, "publish_timeout", details={"timeout_s": self.publish_timeout_s})
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(bundle.asset_id, "store_error", details={"error": f"{type(e).__name__}: {e}"}) from e

        if not isinstance(address, str) or not address.strip():
            raise PublishError(bundle.asset_id, "empty_address", details={"address": repr(address)})
        return address.strip()

    def publish(self, bundle: AssetBundle) -> str:
        """Store the bundle and return its content address.

        Raises PublishError once max_attempts attempts have failed.
        """
        last: Optional[PublishError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(bundle)
            except PublishError as e:
                last = e
                if attempt >= self.max_attempts:
                    break
                delay_ms = self.compute_backoff_ms(attempt)
                log_event(
                    logger,
                    "publish_retry",
                    level=logging.WARNING,
                    asset_id=bundle.asset_id,
                    attempt=attempt,
                    reason=e.reason,
                    details=e.details,
                    delay_ms=delay_ms,
                )
                if delay_ms > 0:
                    self._sleep(delay_ms / 1000.0)

        assert last is not None
        raise PublishError(bundle.asset_id, last.reason, attempts=self.max_attempts, details=last.details)

    def publish_asset(self, bundles_root: str | Path, asset_id: str) -> str:
        """load_bundle + publish; the unit of work run by sync workers."""
        bundle = load_bundle(bundles_root, asset_id, self.metadata_filename)
        log_event(logger, "asset_publish_start", asset_id=asset_id, image=bundle.image_name, size=len(bundle.payload))
        return self.publish(bundle)
