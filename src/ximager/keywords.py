"""Prompt keyword statistics and ``@macro`` expansion.

Two independent documents back this module: the frequency table
(``{text: {text, count, lastUsed}}``) used for autocomplete, and the macro
table (``{key: expansion}``) used to rewrite ``@key`` tokens before a prompt
is submitted.

Both follow the same persistence rule: a mutation builds a new table, writes
the whole document, and only replaces the in-memory cache once the store has
accepted the write. A failed write raises ``KeywordStoreError`` and the cache
keeps its previous contents.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from .errors import KeywordStoreError
from .models import KeywordMacro, KeywordStat
from .storage import Document, DocumentStore

logger = logging.getLogger(__name__)

SUGGEST_MIN_CHARS = 3
SUGGEST_LIMIT = 10

_MACRO_KEY_RE = re.compile(r"\w+")
_MACRO_TOKEN_RE = re.compile(r"(?<![\w@])@(\w+)\b")


def _now_ms() -> int:
    return int(time.time() * 1000)


def split_prompt_tokens(prompt_text: str) -> list[str]:
    """Comma-separated segments of a prompt, trimmed, empties dropped."""
    if not prompt_text:
        return []
    return [part.strip() for part in prompt_text.split(",") if part.strip()]


def expand_macros(text: str, macros: Mapping[str, str]) -> str:
    """Replace each word-bounded ``@key`` with its expansion; unknown keys stay as typed."""

    def _replace(match: re.Match[str]) -> str:
        return macros.get(match.group(1), match.group(0))

    return _MACRO_TOKEN_RE.sub(_replace, text)


def _clean_text(text: str) -> str:
    cleaned = text.strip()
    if not cleaned:
        raise ValueError("keyword text must be non-empty")
    return cleaned


def _check_count(count: int) -> int:
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValueError(f"keyword count must be an integer, got: {count!r}")
    if count < 0:
        raise ValueError(f"keyword count must be >= 0, got: {count}")
    return count


def _ranking_key(stat: KeywordStat) -> tuple[int, int]:
    return (-stat.count, -stat.last_used_ms)


def _table_from_document(document: Document) -> dict[str, KeywordStat]:
    table: dict[str, KeywordStat] = {}
    for key, raw in document.items():
        if not isinstance(raw, dict):
            logger.warning("Skipping keyword entry %r: expected an object", key)
            continue
        try:
            stat = KeywordStat.model_validate({**raw, "text": key})
        except ValidationError as exc:
            logger.warning("Skipping keyword entry %r: %s", key, exc.errors()[0]["msg"])
            continue
        table[key] = stat
    return table


class KeywordIndex:
    """In-memory keyword statistics, lazily hydrated from a document store."""

    def __init__(self, store: DocumentStore, *, clock: Callable[[], int] | None = None) -> None:
        self.store = store
        self._clock = clock if clock is not None else _now_ms
        self._cache: dict[str, KeywordStat] = {}
        self._loaded = False
        self._generation = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, text: object) -> bool:
        return text in self._cache

    async def hydrate(self) -> None:
        """Load the table once. Later calls are no-ops.

        A load that finishes after a local mutation is discarded so it cannot
        clobber the newer cache.
        """
        if self._loaded:
            return
        generation = self._generation
        document = await self.store.load()
        if self._generation != generation:
            return
        self._cache = _table_from_document(document)
        self._loaded = True
        logger.debug("Hydrated keyword index with %d entries", len(self._cache))

    async def refresh(self) -> None:
        """Reload from the store, replacing the cache unconditionally."""
        document = await self.store.load()
        self._cache = _table_from_document(document)
        self._loaded = True
        self._generation += 1

    def get(self, text: str) -> KeywordStat | None:
        return self._cache.get(text)

    def entries(self) -> list[KeywordStat]:
        return sorted(self._cache.values(), key=_ranking_key)

    def suggest(self, partial: str) -> list[KeywordStat]:
        if not partial or len(partial) < SUGGEST_MIN_CHARS:
            return []
        needle = partial.lower()
        matches = [stat for stat in self._cache.values() if stat.text.lower().startswith(needle)]
        matches.sort(key=_ranking_key)
        return matches[:SUGGEST_LIMIT]

    def _snapshot(self) -> dict[str, KeywordStat]:
        return dict(self._cache)

    async def _commit(self, table: dict[str, KeywordStat]) -> None:
        document = {text: stat.model_dump(by_alias=True) for text, stat in table.items()}
        try:
            await self.store.save(document)
        except KeywordStoreError as exc:
            logger.warning("Keyword table not persisted, keeping previous cache: %s", exc)
            raise
        self._cache = table
        self._loaded = True
        self._generation += 1

    async def record(self, prompt_text: str) -> list[str]:
        """Count each comma-separated token of a prompt. One flush per call."""
        tokens = split_prompt_tokens(prompt_text)
        if not tokens:
            return []
        await self.hydrate()
        table = self._snapshot()
        now = self._clock()
        for token in tokens:
            existing = table.get(token)
            if existing is None:
                table[token] = KeywordStat(text=token, count=1, last_used_ms=now)
            else:
                table[token] = existing.model_copy(update={"count": existing.count + 1, "last_used_ms": now})
        await self._commit(table)
        return tokens

    async def rename(self, old_text: str, new_text: str, count_for_old: int) -> KeywordStat | None:
        """Rename ``old_text`` to ``new_text``, merging into an existing target.

        Merge: target count += ``count_for_old``; last-used is the later of the
        two; the old entry is removed. Plain rename: the new entry takes
        ``count_for_old`` and the old entry's last-used (or now). Same text:
        only the count is replaced.
        """
        old = _clean_text(old_text)
        new = _clean_text(new_text)
        count = _check_count(count_for_old)
        await self.hydrate()
        table = self._snapshot()

        if old == new:
            existing = table.get(old)
            if existing is None:
                return None
            table[old] = existing.model_copy(update={"count": count})
        else:
            source = table.pop(old, None)
            source_last_used = source.last_used_ms if source is not None else None
            target = table.get(new)
            if target is not None:
                table[new] = target.model_copy(
                    update={
                        "count": target.count + count,
                        "last_used_ms": max(target.last_used_ms, source_last_used or 0),
                    }
                )
            else:
                table[new] = KeywordStat(
                    text=new,
                    count=count,
                    last_used_ms=source_last_used if source_last_used is not None else self._clock(),
                )

        await self._commit(table)
        return table[new]

    async def remove(self, text: str) -> bool:
        cleaned = text.strip()
        await self.hydrate()
        if cleaned not in self._cache:
            return False
        table = self._snapshot()
        del table[cleaned]
        await self._commit(table)
        return True

    async def add(self, text: str, count: int = 1) -> KeywordStat:
        """Insert ``text`` or add ``count`` to its existing count."""
        cleaned = _clean_text(text)
        amount = _check_count(count)
        await self.hydrate()
        table = self._snapshot()
        now = self._clock()
        existing = table.get(cleaned)
        if existing is None:
            table[cleaned] = KeywordStat(text=cleaned, count=amount, last_used_ms=now)
        else:
            table[cleaned] = existing.model_copy(update={"count": existing.count + amount, "last_used_ms": now})
        await self._commit(table)
        return table[cleaned]


class MacroTable:
    """User-curated ``@key -> expansion`` mappings."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._cache: dict[str, str] = {}
        self._loaded = False

    @staticmethod
    def normalize_key(key: str) -> str:
        cleaned = key.strip().removeprefix("@")
        if not _MACRO_KEY_RE.fullmatch(cleaned):
            raise ValueError(f"macro key must contain only letters, digits or underscores, got: {key!r}")
        return cleaned

    @staticmethod
    def _from_document(document: Document) -> dict[str, str]:
        table: dict[str, str] = {}
        for key, value in document.items():
            if not isinstance(value, str) or not _MACRO_KEY_RE.fullmatch(key):
                logger.warning("Skipping macro entry %r", key)
                continue
            table[key] = value
        return table

    async def hydrate(self) -> None:
        if self._loaded:
            return
        document: Any = await self.store.load()
        self._cache = self._from_document(document)
        self._loaded = True

    def get(self, key: str) -> str | None:
        return self._cache.get(key)

    def items(self) -> list[KeywordMacro]:
        return [KeywordMacro(key=key, expansion=value) for key, value in sorted(self._cache.items())]

    def expand(self, text: str) -> str:
        return expand_macros(text, self._cache)

    async def _commit(self, table: dict[str, str]) -> None:
        await self.store.save(dict(table))
        self._cache = table

    async def set(self, key: str, expansion: str) -> KeywordMacro:
        cleaned_key = self.normalize_key(key)
        cleaned_expansion = expansion.strip()
        if not cleaned_expansion:
            raise ValueError("macro expansion must be non-empty")
        await self.hydrate()
        table = dict(self._cache)
        table[cleaned_key] = cleaned_expansion
        await self._commit(table)
        return KeywordMacro(key=cleaned_key, expansion=cleaned_expansion)

    async def remove(self, key: str) -> bool:
        cleaned_key = self.normalize_key(key)
        await self.hydrate()
        if cleaned_key not in self._cache:
            return False
        table = dict(self._cache)
        del table[cleaned_key]
        await self._commit(table)
        return True
