# src/assetsync/ipfs.py
from __future__ import annotations

"""IPFS (Kubo HTTP API) content store.

Each asset is published as two directory-wrapped uploads:

    ipfs://<image_dir_cid>/<image_name>        the payload
    ipfs://<meta_dir_cid>/metadata.json        descriptor with "image" rewritten

and the metadata address is what gets recorded in state.json.

CID validation is lightweight and dependency-free:
  - CIDv0 (base58btc) starts with "Qm" and is length 46.
  - CIDv1 (base32 lowercase) starts with "b" and uses a-z2-7.
This is NOT a full multiformats parser; it fails closed on obviously bad
responses from the node.
"""

import json
import os
import re
import urllib.parse
from dataclasses import dataclass
from io import BytesIO
from typing import Any, BinaryIO, Mapping, Optional, Tuple
import http.client

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bagy...)


class IpfsError(RuntimeError):
    """Kubo API call failed. Message is a machine-readable code prefix + detail."""


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str


def validate_ipfs_cid(cid: str, *, max_len: int = 128) -> CidValidation:
    c = (cid or "").strip()
    if not c:
        return CidValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return CidValidation(False, "cid_too_long", c)

    if _CIDV0_RE.match(c):
        return CidValidation(True, "ok", c)
    if _CIDV1_BASE32_RE.match(c):
        return CidValidation(True, "ok", c)
    return CidValidation(False, "invalid_cid_format", c)


def _truthy(v: Optional[str], default: bool) -> bool:
    if v is None or not v.strip():
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class IpfsConfig:
    api_base: str
    gateway_base: str
    pin: bool = True


def load_ipfs_config() -> IpfsConfig:
    api_base = (os.getenv("ASSETSYNC_IPFS_API_BASE") or "http://127.0.0.1:5001").strip()
    gateway_base = (os.getenv("ASSETSYNC_IPFS_GATEWAY_BASE") or "http://127.0.0.1:8080").strip()
    return IpfsConfig(
        api_base=api_base.rstrip("/"),
        gateway_base=gateway_base.rstrip("/"),
        pin=_truthy(os.getenv("ASSETSYNC_IPFS_PIN"), True),
    )


def ipfs_gateway_url(uri: str, cfg: Optional[IpfsConfig] = None) -> str:
    """Map ipfs://<cid>/<path> (or a bare CID) to an HTTP gateway URL."""
    u = (uri or "").strip()
    if not u:
        return ""
    cfg = cfg or load_ipfs_config()
    if not cfg.gateway_base:
        return ""
    if u.startswith("ipfs://"):
        u = u[len("ipfs://"):]
    return f"{cfg.gateway_base}/ipfs/{u.lstrip('/')}"


def sanitize_filename(name: str) -> str:
    name = (name or "").strip()
    if not name:
        return "upload"
    name = re.sub(r"[^a-zA-Z0-9._-]+", "_", name)
    return name[:128] or "upload"


def _send_chunk(conn: http.client.HTTPConnection, data: bytes) -> None:
    if not data:
        return
    conn.send(f"{len(data):X}\r\n".encode("ascii"))
    conn.send(data)
    conn.send(b"\r\n")


def _finish_chunks(conn: http.client.HTTPConnection) -> None:
    conn.send(b"0\r\n\r\n")


def parse_ipfs_add_response(raw: bytes) -> Tuple[str, int]:
    """
    IPFS /api/v0/add returns NDJSON (one JSON per line).
    We take the last valid JSON object and extract Hash + Size. With
    wrap-with-directory the last object is the wrapping directory.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise IpfsError("ipfs_add_failed:empty_response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if not isinstance(last_obj, dict):
        raise IpfsError(f"ipfs_add_failed:bad_response:{txt[:200]}")

    cid = str(last_obj.get("Hash") or "").strip()
    try:
        size = int(str(last_obj.get("Size") or "0").strip())
    except ValueError:
        size = 0

    if not cid:
        raise IpfsError(f"ipfs_add_failed:missing_hash:{last_obj!r}")

    return cid, size


def ipfs_add_fileobj(
    cfg: IpfsConfig,
    *,
    name: str,
    fileobj: BinaryIO,
    content_type: str = "application/octet-stream",
    wrap_with_directory: bool = False,
    timeout_s: float = 30.0,
) -> Tuple[str, int]:
    """
    Stream a file-like object to IPFS via HTTP API without loading into memory.

    Uses chunked transfer encoding to avoid buffering the whole multipart body.

    Returns (cid, size)
    """
    if not cfg.api_base:
        raise IpfsError("ipfs_disabled:ASSETSYNC_IPFS_API_BASE is empty")

    u = urllib.parse.urlparse(cfg.api_base)
    scheme = (u.scheme or "http").lower()
    host = u.hostname or "127.0.0.1"
    port = int(u.port or (443 if scheme == "https" else 80))

    qs = urllib.parse.urlencode(
        {
            "pin": "true" if cfg.pin else "false",
            "wrap-with-directory": "true" if wrap_with_directory else "false",
            "progress": "false",
        }
    )
    path = f"/api/v0/add?{qs}"

    conn: http.client.HTTPConnection
    if scheme == "https":
        conn = http.client.HTTPSConnection(host, port, timeout=timeout_s)
    else:
        conn = http.client.HTTPConnection(host, port, timeout=timeout_s)

    boundary = "----assetsync-ipfs-boundary-4c1d9e2a7f3b6058"
    filename = sanitize_filename(name)

    preamble = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        f"Content-Type: {content_type or 'application/octet-stream'}\r\n"
        f"\r\n"
    ).encode("utf-8")

    epilogue = f"\r\n--{boundary}--\r\n".encode("utf-8")

    try:
        conn.putrequest("POST", path, skip_host=True)
        conn.putheader("Host", u.netloc or host)
        conn.putheader("Content-Type", f"multipart/form-data; boundary={boundary}")
        conn.putheader("Transfer-Encoding", "chunked")
        conn.endheaders()

        _send_chunk(conn, preamble)

        while True:
            chunk = fileobj.read(1024 * 256)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            _send_chunk(conn, chunk)

        _send_chunk(conn, epilogue)
        _finish_chunks(conn)

        resp = conn.getresponse()
        body = resp.read()

        if resp.status < 200 or resp.status >= 300:
            # Try to surface IPFS error payload if any.
            msg = body.decode("utf-8", errors="replace").strip()
            raise IpfsError(f"ipfs_add_failed:http_{resp.status}:{msg[:300]}")

        return parse_ipfs_add_response(body)
    except OSError as e:
        # socket.timeout, ConnectionRefusedError, ssl errors, ...
        raise IpfsError(f"ipfs_add_failed:{type(e).__name__}:{e}") from e
    except http.client.HTTPException as e:
        raise IpfsError(f"ipfs_add_failed:{type(e).__name__}:{e}") from e
    finally:
        conn.close()


def ipfs_add_bytes(cfg: IpfsConfig, *, name: str, data: bytes, **kwargs: Any) -> Tuple[str, int]:
    return ipfs_add_fileobj(cfg, name=name, fileobj=BytesIO(data), **kwargs)


class IpfsContentStore:
    """ContentStore backed by a Kubo node."""

    def __init__(self, cfg: Optional[IpfsConfig] = None) -> None:
        self.cfg = cfg or load_ipfs_config()

    def _add_wrapped(self, *, name: str, data: bytes, content_type: str, timeout_s: float) -> str:
        cid, _ = ipfs_add_bytes(
            self.cfg,
            name=name,
            data=data,
            content_type=content_type,
            wrap_with_directory=True,
            timeout_s=timeout_s,
        )
        v = validate_ipfs_cid(cid)
        if not v.ok:
            raise IpfsError(f"ipfs_add_failed:invalid_cid_from_ipfs:{v.reason}")
        return v.cid

    def store(
        self,
        *,
        name: str,
        payload: bytes,
        media_type: str,
        fields: Mapping[str, Any],
        timeout_s: float,
    ) -> str:
        image_name = sanitize_filename(name)
        image_dir = self._add_wrapped(name=image_name, data=payload, content_type=media_type, timeout_s=timeout_s)

        metadata = dict(fields)
        metadata["image"] = f"ipfs://{image_dir}/{image_name}"
        meta_bytes = json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8")

        meta_dir = self._add_wrapped(
            name="metadata.json",
            data=meta_bytes,
            content_type="application/json",
            timeout_s=timeout_s,
        )
        return f"ipfs://{meta_dir}/metadata.json"
