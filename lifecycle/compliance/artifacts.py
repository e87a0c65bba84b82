"""Artifact store for export snapshots.

Export and portability requests write a snapshot here and hand the subject
a time-boxed retrieval reference. The reference is an HMAC-SHA256 signed URL:

    {base_url}/{key}?expires={unix_ts}&signature={hex}

so the API can serve the file without any session state, and a reference
stops working once ``expires`` has passed or if any part of it is altered.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog

from lifecycle.compliance.errors import ArtifactNotFound
from lifecycle.core.clock import Clock, utc_now

log = structlog.get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,200}$")


class ArtifactStore(Protocol):
    """Interface the engine uses to persist export snapshots."""

    async def write(self, key: str, content: bytes) -> str:
        """Store ``content`` under ``key`` and return the stored key."""
        ...

    def retrieval_reference(self, key: str, expires_at: datetime) -> str:
        """Signed, time-boxed URL for downloading ``key``."""
        ...

    async def open(self, key: str, *, expires: int, signature: str) -> bytes:
        """Return the artifact if the signature is valid and unexpired."""
        ...

    async def delete(self, key: str) -> bool:
        ...


class LocalArtifactStore:
    """Filesystem-backed artifact store.

    File IO runs in a worker thread so the event loop never blocks on disk.

    Usage:
        store = LocalArtifactStore("./exports", secret=b"...", base_url="/api/v1/privacy/artifacts")
        key = await store.write("export-123.json", payload)
        url = store.retrieval_reference(key, expires_at)
    """

    def __init__(
        self,
        root: str | Path,
        *,
        secret: bytes,
        base_url: str,
        clock: Clock = utc_now,
    ) -> None:
        self._root = Path(root)
        self._secret = secret
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key) or ".." in key:
            raise ArtifactNotFound(f"Invalid artifact key {key!r}")
        return self._root / key

    # ------------------------------------------------------------------ #
    # Signing
    # ------------------------------------------------------------------ #

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def retrieval_reference(self, key: str, expires_at: datetime) -> str:
        expires = int(expires_at.timestamp())
        return f"{self._base_url}/{key}?expires={expires}&signature={self._sign(key, expires)}"

    def verify_signature(self, key: str, expires: int, signature: str) -> bool:
        expected = self._sign(key, expires)
        if not hmac.compare_digest(expected, signature):
            return False
        return datetime.fromtimestamp(expires, UTC) > self._clock()

    # ------------------------------------------------------------------ #
    # IO
    # ------------------------------------------------------------------ #

    async def write(self, key: str, content: bytes) -> str:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".part")
            tmp.write_bytes(content)
            tmp.replace(path)

        await asyncio.to_thread(_write)
        log.info("artifacts.written", key=key, size_bytes=len(content))
        return key

    async def open(self, key: str, *, expires: int, signature: str) -> bytes:
        if not self.verify_signature(key, expires, signature):
            log.warning("artifacts.signature_rejected", key=key)
            raise ArtifactNotFound("Artifact reference is invalid or expired")
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise ArtifactNotFound(f"Artifact {key!r} no longer exists") from None

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)

        def _delete() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        removed = await asyncio.to_thread(_delete)
        if removed:
            log.info("artifacts.deleted", key=key)
        return removed
