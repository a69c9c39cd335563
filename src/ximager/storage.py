from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol

import httpx

from .errors import KeywordStoreError

logger = logging.getLogger(__name__)

Document = dict[str, Any]

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive lock on a ``.lock`` sidecar next to *path*.

    The sidecar keeps the lock handle valid while the data file itself is
    swapped out by ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file in the same directory, then rename it over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _parse_document(text: str, source: str) -> Document:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise KeywordStoreError(f"{source} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise KeywordStoreError(f"{source} must contain a JSON object, got {type(payload).__name__}")
    return payload


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class DocumentStore(Protocol):
    """Whole-document key-value store: ``GET`` returns the table, ``POST`` replaces it."""

    async def load(self) -> Document: ...

    async def save(self, document: Document) -> None: ...


class JsonFileStore:
    """Flat JSON document on disk.

    A missing file is created as ``{}`` on first load. Writes are atomic and
    serialized across processes with an exclusive sidecar lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load_sync(self) -> Document:
        with _locked_file(self.path):
            if not self.path.is_file():
                atomic_write_text(self.path, "{}")
                return {}
            try:
                text = self.path.read_text(encoding="utf-8")
            except UnicodeDecodeError as exc:
                raise KeywordStoreError(f"{self.path} contains invalid UTF-8 data") from exc
        if not text.strip():
            return {}
        return _parse_document(text, str(self.path))

    def _save_sync(self, document: Document) -> None:
        content = json.dumps(document, indent=2, ensure_ascii=False)
        with _locked_file(self.path):
            atomic_write_text(self.path, content)

    async def load(self) -> Document:
        try:
            return await asyncio.to_thread(self._load_sync)
        except OSError as exc:
            raise KeywordStoreError(f"Failed to read {self.path}: {exc}") from exc

    async def save(self, document: Document) -> None:
        if not isinstance(document, dict):
            raise KeywordStoreError(f"document must be a JSON object, got {type(document).__name__}")
        try:
            await asyncio.to_thread(self._save_sync, document)
        except (OSError, TypeError, ValueError) as exc:
            raise KeywordStoreError(f"Failed to write {self.path}: {exc}") from exc
        logger.debug("Wrote %d entries to %s", len(document), self.path)


class HttpDocumentStore:
    """Document served by a relay endpoint (``GET/POST /api/keywords``)."""

    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self.client = client
        self.url = url

    async def load(self) -> Document:
        try:
            response = await self.client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise KeywordStoreError(
                f"HTTP {exc.response.status_code} loading {self.url}: {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise KeywordStoreError(f"Failed to reach {self.url}: {exc}") from exc
        return _parse_document(response.text or "{}", self.url)

    async def save(self, document: Document) -> None:
        try:
            response = await self.client.post(self.url, json=document)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise KeywordStoreError(
                f"HTTP {exc.response.status_code} saving {self.url}: {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise KeywordStoreError(f"Failed to reach {self.url}: {exc}") from exc
