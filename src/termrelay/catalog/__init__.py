"""Catalog — persisted, human-facing session metadata.

The relay consults the catalog to list sessions it has not touched in this
lifetime (e.g. after a restart) and to keep names, groups and pin/archive
flags. Live state (status, activity, preview) never comes from here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class CatalogEntry(BaseModel):
    """One persisted session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str = ""
    group: str | None = None
    working_dir: str = ""
    created_at: float = Field(default_factory=time.time)
    modified_at: float = Field(default_factory=time.time)
    message_count: int = 0
    pinned: bool = False
    archived: bool = False
    custom_name: str | None = None

    @property
    def display_name(self) -> str:
        return self.custom_name or self.name


class CatalogPatch(BaseModel):
    """Partial metadata update. ``None`` fields are left untouched."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    custom_name: str | None = None
    project: str | None = None
    pinned: bool | None = None
    archived: bool | None = None

    def apply(self, entry: CatalogEntry) -> CatalogEntry:
        updates = {}
        if self.custom_name is not None:
            updates["custom_name"] = self.custom_name or None
        if self.project is not None:
            # An empty project clears the group
            updates["group"] = self.project or None
        if self.pinned is not None:
            updates["pinned"] = self.pinned
        if self.archived is not None:
            updates["archived"] = self.archived
        updates["modified_at"] = time.time()
        return entry.model_copy(update=updates)


@runtime_checkable
class CatalogStore(Protocol):
    """Protocol for catalog stores."""

    async def list_catalog_sessions(
        self, include_archived: bool = False
    ) -> list[CatalogEntry]: ...

    async def get_session(self, session_id: str) -> CatalogEntry | None: ...

    async def patch_session_meta(
        self, session_id: str, patch: CatalogPatch
    ) -> CatalogEntry | None: ...

    async def save_session(self, entry: CatalogEntry) -> None: ...

    async def remove_session(self, session_id: str) -> None: ...


class JsonCatalogStore:
    """Catalog kept in a single JSON file.

    Every mutation rewrites the file through a temp file and ``os.replace``
    so a crash never leaves a half-written catalog behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, CatalogEntry]:
        if not self.path.exists():
            return {}
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read() or "{}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load catalog %s: %s", self.path, e)
            return {}

        entries: dict[str, CatalogEntry] = {}
        for session_id, data in raw.get("sessions", {}).items():
            try:
                entries[session_id] = CatalogEntry.model_validate(
                    {**data, "id": session_id}
                )
            except ValidationError as e:
                logger.warning("Skipping malformed catalog entry %s: %s", session_id, e)
        return entries

    async def _save(self, entries: dict[str, CatalogEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "sessions": {
                sid: entry.model_dump(by_alias=True) for sid, entry in entries.items()
            }
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.path)

    async def list_catalog_sessions(
        self, include_archived: bool = False
    ) -> list[CatalogEntry]:
        async with self._lock:
            entries = await self._load()
        return [e for e in entries.values() if include_archived or not e.archived]

    async def get_session(self, session_id: str) -> CatalogEntry | None:
        async with self._lock:
            entries = await self._load()
        return entries.get(session_id)

    async def patch_session_meta(
        self, session_id: str, patch: CatalogPatch
    ) -> CatalogEntry | None:
        async with self._lock:
            entries = await self._load()
            entry = entries.get(session_id)
            if entry is None:
                return None
            entries[session_id] = patch.apply(entry)
            await self._save(entries)
            return entries[session_id]

    async def save_session(self, entry: CatalogEntry) -> None:
        async with self._lock:
            entries = await self._load()
            previous = entries.get(entry.id)
            if previous is not None:
                # Keep user-owned metadata
                entry = entry.model_copy(
                    update={
                        "custom_name": previous.custom_name,
                        "pinned": previous.pinned,
                        "archived": previous.archived,
                        "message_count": max(
                            previous.message_count, entry.message_count
                        ),
                    }
                )
            entries[entry.id] = entry
            await self._save(entries)

    async def remove_session(self, session_id: str) -> None:
        async with self._lock:
            entries = await self._load()
            if entries.pop(session_id, None) is not None:
                await self._save(entries)
