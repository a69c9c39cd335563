from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from ximager.errors import KeywordStoreError
from ximager.storage import HttpDocumentStore, JsonFileStore


def test_json_file_store_creates_missing_document(tmp_path: Path) -> None:
    path = tmp_path / "data" / "keywords.json"
    store = JsonFileStore(path)

    assert asyncio.run(store.load()) == {}
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_json_file_store_round_trips_unicode(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path / "keywords.json")
    document = {"café": {"text": "café", "count": 2, "lastUsed": 10}}

    asyncio.run(store.save(document))

    assert "café" in (tmp_path / "keywords.json").read_text(encoding="utf-8")
    assert asyncio.run(store.load()) == document
    assert not list(tmp_path.glob("*.tmp"))


def test_json_file_store_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "keywords.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(KeywordStoreError, match="JSON object"):
        asyncio.run(JsonFileStore(path).load())


def test_json_file_store_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "keywords.json"
    path.write_text("{nope", encoding="utf-8")
    with pytest.raises(KeywordStoreError, match="not valid JSON"):
        asyncio.run(JsonFileStore(path).load())


def test_json_file_store_wraps_write_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = JsonFileStore(blocker / "keywords.json")
    with pytest.raises(KeywordStoreError, match="Failed to write"):
        asyncio.run(store.save({"a": "b"}))


def _http_store(handler) -> tuple[HttpDocumentStore, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDocumentStore(client, "http://relay.local/api/keywords"), client


def test_http_store_get_and_post() -> None:
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"cat": {"text": "cat", "count": 1, "lastUsed": 3}})
        received.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})

    async def scenario() -> dict:
        store, client = _http_store(handler)
        async with client:
            document = await store.load()
            await store.save({"dog": {"text": "dog", "count": 2, "lastUsed": 4}})
        return document

    assert asyncio.run(scenario())["cat"]["count"] == 1
    assert received == [{"dog": {"text": "dog", "count": 2, "lastUsed": 4}}]


def test_http_store_error_status_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async def scenario() -> None:
        store, client = _http_store(handler)
        async with client:
            await store.save({})

    with pytest.raises(KeywordStoreError, match="HTTP 500"):
        asyncio.run(scenario())


def test_http_store_connection_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def scenario() -> None:
        store, client = _http_store(handler)
        async with client:
            await store.load()

    with pytest.raises(KeywordStoreError, match="Failed to reach"):
        asyncio.run(scenario())
