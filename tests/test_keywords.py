from __future__ import annotations

import asyncio

import pytest

from ximager.errors import KeywordStoreError
from ximager.keywords import KeywordIndex, MacroTable, expand_macros, split_prompt_tokens


def _entry(text: str, count: int, last_used: int) -> dict:
    return {"text": text, "count": count, "lastUsed": last_used}


def _clock(value: int = 5_000):
    return lambda: value


def test_split_prompt_tokens_trims_and_drops_empties() -> None:
    assert split_prompt_tokens(" forest , , red fox,") == ["forest", "red fox"]
    assert split_prompt_tokens("") == []
    assert split_prompt_tokens(" , ") == []


def test_expand_macros_word_bounded() -> None:
    table = {"rb": "remove background", "hq": "high quality"}
    assert expand_macros("@rb, forest", table) == "remove background, forest"
    assert expand_macros("@hq @unknown", table) == "high quality @unknown"
    assert expand_macros("@rbx, mail@rb.com", table) == "@rbx, mail@rb.com"


def test_record_counts_tokens_with_single_flush(memory_store_factory) -> None:
    store = memory_store_factory({"forest": _entry("forest", 2, 100)})
    index = KeywordIndex(store, clock=_clock())

    tokens = asyncio.run(index.record("forest, red fox, forest"))

    assert tokens == ["forest", "red fox", "forest"]
    assert len(store.saves) == 1
    assert store.document["forest"] == _entry("forest", 4, 5_000)
    assert store.document["red fox"] == _entry("red fox", 1, 5_000)


def test_record_without_tokens_does_not_flush(memory_store_factory) -> None:
    store = memory_store_factory()
    index = KeywordIndex(store)
    assert asyncio.run(index.record(" , ")) == []
    assert store.saves == []


def test_rename_merges_into_existing_target(memory_store_factory) -> None:
    store = memory_store_factory({"dog": _entry("dog", 3, 900), "cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store, clock=_clock())

    merged = asyncio.run(index.rename("dog", "cat", 3))

    assert merged is not None
    assert merged.count == 8
    assert merged.last_used_ms == 900
    assert index.get("dog") is None
    assert "dog" not in store.document
    assert store.document["cat"]["count"] == 8


def test_rename_to_new_text_inherits_last_used(memory_store_factory) -> None:
    store = memory_store_factory({"dog": _entry("dog", 3, 900)})
    index = KeywordIndex(store, clock=_clock())

    renamed = asyncio.run(index.rename("dog", "puppy", 7))

    assert renamed is not None
    assert (renamed.text, renamed.count, renamed.last_used_ms) == ("puppy", 7, 900)
    assert "dog" not in index


def test_rename_missing_source_uses_now(memory_store_factory) -> None:
    index = KeywordIndex(memory_store_factory(), clock=_clock(42))
    renamed = asyncio.run(index.rename("ghost", "spirit", 2))
    assert renamed is not None
    assert renamed.last_used_ms == 42


def test_rename_same_text_replaces_count_only(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store, clock=_clock())

    updated = asyncio.run(index.rename("cat", "cat", 2))

    assert updated is not None
    assert (updated.count, updated.last_used_ms) == (2, 400)


def test_rename_rejects_negative_count(memory_store_factory) -> None:
    index = KeywordIndex(memory_store_factory())
    with pytest.raises(ValueError, match=">= 0"):
        asyncio.run(index.rename("a", "b", -1))


def test_remove_absent_is_noop(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store)

    assert asyncio.run(index.remove("dog")) is False
    assert store.saves == []
    assert asyncio.run(index.remove(" cat ")) is True
    assert store.document == {}


def test_add_is_additive(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store, clock=_clock(700))

    assert asyncio.run(index.add("cat", 3)).count == 8
    added = asyncio.run(index.add("owl"))
    assert (added.count, added.last_used_ms) == (1, 700)


def test_suggest_prefix_ranking_and_minimum_length(memory_store_factory) -> None:
    store = memory_store_factory(
        {
            "cat": _entry("cat", 8, 100),
            "Catalog": _entry("Catalog", 2, 300),
            "catnip": _entry("catnip", 2, 200),
            "dog": _entry("dog", 50, 100),
        }
    )
    index = KeywordIndex(store)
    asyncio.run(index.hydrate())

    assert index.suggest("ca") == []
    assert [stat.text for stat in index.suggest("CAT")] == ["cat", "Catalog", "catnip"]


def test_suggest_limit(memory_store_factory) -> None:
    store = memory_store_factory({f"tree {i}": _entry(f"tree {i}", i, 0) for i in range(15)})
    index = KeywordIndex(store)
    asyncio.run(index.hydrate())

    results = index.suggest("tree")
    assert len(results) == 10
    assert results[0].text == "tree 14"


def test_failed_flush_keeps_previous_cache(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store)
    asyncio.run(index.hydrate())
    store.fail_saves = True

    with pytest.raises(KeywordStoreError, match="offline"):
        asyncio.run(index.add("cat", 10))

    assert index.get("cat").count == 5


def test_hydrate_is_lazy_and_idempotent(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store)

    asyncio.run(index.hydrate())
    asyncio.run(index.hydrate())

    assert store.loads == 1
    assert len(index) == 1


def test_hydrate_skips_invalid_entries(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400), "bad": {"count": -3}, "worse": 7})
    index = KeywordIndex(store)
    asyncio.run(index.hydrate())
    assert [stat.text for stat in index.entries()] == ["cat"]


def test_macro_table_set_expand_remove(memory_store_factory) -> None:
    store = memory_store_factory()
    table = MacroTable(store)

    macro = asyncio.run(table.set("@rb", " remove background "))
    assert (macro.key, macro.expansion) == ("rb", "remove background")
    assert store.document == {"rb": "remove background"}
    assert table.expand("@rb, forest") == "remove background, forest"

    assert asyncio.run(table.remove("rb")) is True
    assert asyncio.run(table.remove("rb")) is False
    assert store.document == {}


def test_macro_key_validation(memory_store_factory) -> None:
    table = MacroTable(memory_store_factory())
    with pytest.raises(ValueError, match="macro key"):
        asyncio.run(table.set("bad key", "x"))
    with pytest.raises(ValueError, match="non-empty"):
        asyncio.run(table.set("ok", "  "))


def test_refresh_reloads_external_changes(memory_store_factory) -> None:
    store = memory_store_factory({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store)
    asyncio.run(index.hydrate())

    store.document["owl"] = _entry("owl", 9, 500)
    asyncio.run(index.hydrate())
    assert index.get("owl") is None

    asyncio.run(index.refresh())
    assert index.get("owl").count == 9
    assert store.loads == 2


def test_hydrate_racing_mutation_keeps_local_write(memory_store_factory) -> None:
    class GatedStore(memory_store_factory):
        gate: asyncio.Event

        async def load(self) -> dict:
            snapshot = await super().load()
            if self.loads == 1:
                await self.gate.wait()
            return snapshot

    store = GatedStore({"cat": _entry("cat", 5, 400)})
    index = KeywordIndex(store, clock=_clock())

    async def scenario() -> None:
        store.gate = asyncio.Event()
        slow_hydrate = asyncio.create_task(index.hydrate())
        while store.loads == 0:
            await asyncio.sleep(0)
        await index.add("owl", 2)
        store.gate.set()
        await slow_hydrate

    asyncio.run(scenario())

    assert {stat.text: stat.count for stat in index.entries()} == {"cat": 5, "owl": 2}
    assert store.document["owl"]["count"] == 2
