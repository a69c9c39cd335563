from __future__ import annotations

import copy
from typing import Any

import pytest

from ximager.errors import KeywordStoreError


class MemoryStore:
    """In-memory document store that records every saved document."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document = copy.deepcopy(document or {})
        self.saves: list[dict[str, Any]] = []
        self.loads = 0
        self.fail_saves = False

    async def load(self) -> dict[str, Any]:
        self.loads += 1
        return copy.deepcopy(self.document)

    async def save(self, document: dict[str, Any]) -> None:
        if self.fail_saves:
            raise KeywordStoreError("store offline")
        self.document = copy.deepcopy(document)
        self.saves.append(copy.deepcopy(document))


@pytest.fixture
def memory_store_factory():
    return MemoryStore
