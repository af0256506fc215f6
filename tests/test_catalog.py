"""Tests for termrelay.catalog.JsonCatalogStore."""

from __future__ import annotations

import json
from pathlib import Path

from termrelay.catalog import CatalogEntry, CatalogPatch, CatalogStore, JsonCatalogStore


def _entry(session_id: str = "s1", **kwargs) -> CatalogEntry:
    return CatalogEntry(id=session_id, name=kwargs.pop("name", "work"), **kwargs)


class TestCatalogEntry:
    def test_camel_case_dump(self) -> None:
        data = _entry(working_dir="/tmp", custom_name="Nice").model_dump(by_alias=True)
        assert data["workingDir"] == "/tmp"
        assert data["customName"] == "Nice"
        assert "working_dir" not in data

    def test_display_name(self) -> None:
        assert _entry().display_name == "work"
        assert _entry(custom_name="Nice").display_name == "Nice"

    def test_patch_apply(self) -> None:
        entry = _entry(group="a", modified_at=1.0)
        patched = CatalogPatch(project="b", pinned=True).apply(entry)
        assert patched.group == "b"
        assert patched.pinned
        assert patched.modified_at > 1.0
        assert entry.group == "a"

    def test_patch_from_camel_case(self) -> None:
        patch = CatalogPatch.model_validate({"customName": "x", "archived": True})
        assert patch.custom_name == "x"
        assert patch.archived


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------


class TestJsonCatalogStore:
    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(JsonCatalogStore(tmp_path / "c.json"), CatalogStore)

    async def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        store = JsonCatalogStore(tmp_path / "c.json")
        assert await store.list_catalog_sessions() == []
        assert await store.get_session("s1") is None

    async def test_save_and_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "c.json"
        await JsonCatalogStore(path).save_session(_entry(working_dir="/tmp"))

        raw = json.loads(path.read_text())
        assert raw["sessions"]["s1"]["workingDir"] == "/tmp"

        entry = await JsonCatalogStore(path).get_session("s1")
        assert entry is not None
        assert entry.working_dir == "/tmp"

    async def test_archived_filter(self, tmp_path: Path) -> None:
        store = JsonCatalogStore(tmp_path / "c.json")
        await store.save_session(_entry("a"))
        await store.save_session(_entry("b", archived=True))
        assert [e.id for e in await store.list_catalog_sessions()] == ["a"]
        assert len(await store.list_catalog_sessions(include_archived=True)) == 2

    async def test_save_keeps_user_metadata(self, tmp_path: Path) -> None:
        store = JsonCatalogStore(tmp_path / "c.json")
        await store.save_session(_entry())
        await store.patch_session_meta("s1", CatalogPatch(custom_name="Mine", pinned=True))
        await store.save_session(_entry(modified_at=99.0))
        entry = await store.get_session("s1")
        assert entry.display_name == "Mine"
        assert entry.pinned
        assert entry.modified_at == 99.0

    async def test_patch_unknown(self, tmp_path: Path) -> None:
        store = JsonCatalogStore(tmp_path / "c.json")
        assert await store.patch_session_meta("nope", CatalogPatch(pinned=True)) is None

    async def test_remove(self, tmp_path: Path) -> None:
        store = JsonCatalogStore(tmp_path / "c.json")
        await store.save_session(_entry())
        await store.remove_session("s1")
        await store.remove_session("s1")
        assert await store.get_session("s1") is None

    async def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "c.json"
        path.write_text("{not json")
        assert await JsonCatalogStore(path).list_catalog_sessions() == []

    async def test_malformed_entry_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "c.json"
        path.write_text(
            json.dumps({"sessions": {"ok": {"name": "fine"}, "bad": {"pinned": "maybe"}}})
        )
        entries = await JsonCatalogStore(path).list_catalog_sessions()
        assert [e.id for e in entries] == ["ok"]
