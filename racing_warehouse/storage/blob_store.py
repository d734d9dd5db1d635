"""
Blob store contract and the filesystem-backed implementation.

``BlobStore`` is the only way pipeline stages touch object storage. It is
injected into every stage so tests (and alternative deployments) can swap the
backend without touching pipeline code.

Streams are UTF-8 text by default; pass ``binary=True`` for raw bytes (the
merger copies shards byte for byte and the cleaner decodes line by line).

Write semantics:
  ``open_write()`` yields a stream; the object becomes visible only when
  the ``with`` block exits cleanly. If the block raises, nothing is published.
  Objects are write-once: writing to an existing key raises ``BlobStoreError``.

Filesystem layout (``LocalBlobStore``)::

    <root>/
      horse_data/
        shard_1_1000_2025_06_01_10:15:30.ndjson
        MASTERFILE_HORSEDATA_2025-06-01T10_20_00_000Z.ndjson
        CLEANED_MASTERFILE_HORSEDATA_2025-06-01T10_20_00_000Z.ndjson
      .tmp/            ← in-flight writes, renamed into place on success
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterator, Optional
from uuid import uuid4

from racing_warehouse.errors import BlobStoreError
from racing_warehouse.storage.naming import NDJSON_CONTENT_TYPE

logger = logging.getLogger(__name__)

_TMP_DIR_NAME = ".tmp"


@dataclass(frozen=True)
class BlobMetadata:
    """Metadata for a stored object.

    Attributes:
        key: Object key (path relative to the store root / bucket).
        size: Object size in bytes.
        created_at: UTC time the object was published.
        content_type: Stored content type, when the backend records one.
    """

    key: str
    size: int
    created_at: datetime
    content_type: Optional[str] = None


class BlobStore(ABC):
    """Abstract durable key/value object storage addressed by path."""

    @abstractmethod
    def list_keys(self, prefix: str, pattern: Optional[str] = None) -> list[str]:
        """List object keys under ``prefix``, sorted lexicographically.

        Args:
            prefix: Key prefix (e.g. ``"horse_data/"``).
            pattern: Optional regex searched against the key with ``prefix``
                stripped.
        """

    @abstractmethod
    def open_read(self, key: str, binary: bool = False) -> "contextmanager[IO[Any]]":
        """Context manager yielding a UTF-8 text (or raw byte) stream over the object."""

    @abstractmethod
    def open_write(
        self, key: str, content_type: str = NDJSON_CONTENT_TYPE, binary: bool = False
    ) -> "contextmanager[IO[Any]]":
        """Context manager yielding a text (or byte) stream; publishes on clean exit."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return ``True`` if an object is published under ``key``."""

    @abstractmethod
    def metadata(self, key: str) -> BlobMetadata:
        """Return metadata for ``key``.

        Raises:
            BlobStoreError: If the object does not exist.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete the object under ``key`` (missing objects are ignored)."""

    @abstractmethod
    def uri_for(self, key: str) -> str:
        """Return the external URI of ``key`` (used for warehouse bulk loads)."""

    @abstractmethod
    def key_for_uri(self, uri: str) -> str:
        """Inverse of ``uri_for()``.

        Raises:
            BlobStoreError: If ``uri`` does not belong to this store.
        """


def filter_keys(keys: list[str], prefix: str, pattern: Optional[str]) -> list[str]:
    """Apply the optional name pattern (prefix stripped) and sort."""
    if pattern is None:
        return sorted(keys)
    regex = re.compile(pattern)
    return sorted(k for k in keys if regex.search(k[len(prefix):]))


def iter_byte_lines(stream: IO[bytes], chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    """Yield newline-terminated lines from a binary stream that only has ``read()``.

    The last line is yielded without a terminator if the stream does not end
    with one; a trailing newline does not produce an extra empty line.
    """
    pending = b""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line + b"\n"
    if pending:
        yield pending


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store rooted at a directory.

    Creation time is the file's modification time: objects are published by
    an atomic rename of a fully written temp file and never modified after.
    The filesystem has no content-type attribute, so ``content_type`` is
    accepted on write but reported as ``None``.

    Attributes:
        root: Store root directory (created if missing).
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    # ── Reads ──────────────────────────────────────────────────────────────────

    def list_keys(self, prefix: str, pattern: Optional[str] = None) -> list[str]:
        directory, _, _ = prefix.rpartition("/")
        base = self.root / directory if directory else self.root
        if not base.is_dir():
            return []
        keys: list[str] = []
        for path in base.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(_TMP_DIR_NAME + "/"):
                continue
            if key.startswith(prefix):
                keys.append(key)
        return filter_keys(keys, prefix, pattern)

    @contextmanager
    def open_read(self, key: str, binary: bool = False) -> Iterator[IO[Any]]:
        path = self._path(key)
        try:
            fh = open(path, "rb") if binary else open(path, "r", encoding="utf-8", newline="")
        except OSError as exc:
            raise BlobStoreError(f"Cannot open blob '{key}' for reading: {exc}") from exc
        with fh:
            yield fh

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def metadata(self, key: str) -> BlobMetadata:
        path = self._path(key)
        try:
            stat = path.stat()
        except OSError as exc:
            raise BlobStoreError(f"Cannot stat blob '{key}': {exc}") from exc
        created_at = datetime.fromtimestamp(stat.st_mtime_ns / 1e9, tz=timezone.utc)
        return BlobMetadata(key=key, size=stat.st_size, created_at=created_at)

    # ── Writes ─────────────────────────────────────────────────────────────────

    @contextmanager
    def open_write(
        self, key: str, content_type: str = NDJSON_CONTENT_TYPE, binary: bool = False
    ) -> Iterator[IO[Any]]:
        target = self._path(key)
        if target.exists():
            raise BlobStoreError(f"Blob '{key}' already exists; objects are write-once.")
        tmp_dir = self.root / _TMP_DIR_NAME
        tmp_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = tmp_dir / f"{uuid4().hex}.part"

        try:
            fh = open(tmp_path, "wb") if binary else open(
                tmp_path, "w", encoding="utf-8", newline=""
            )
            with fh:
                yield fh
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                raise BlobStoreError(
                    f"Blob '{key}' was created concurrently; objects are write-once."
                )
            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug("Blob published: %s (%s)", key, content_type)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    # ── URIs ───────────────────────────────────────────────────────────────────

    def uri_for(self, key: str) -> str:
        return f"file://{self.root.as_posix()}/{key}"

    def key_for_uri(self, uri: str) -> str:
        base = f"file://{self.root.as_posix()}/"
        if not uri.startswith(base):
            raise BlobStoreError(f"URI '{uri}' is not inside blob store root {self.root}.")
        return uri[len(base):]

    # ── Private helpers ────────────────────────────────────────────────────────

    def _path(self, key: str) -> Path:
        """Resolve ``key`` to a path inside ``root``, rejecting escapes."""
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise BlobStoreError(f"Invalid blob key '{key}'.")
        return self.root / key
