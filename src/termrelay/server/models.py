"""Request and response bodies of the administrative API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from termrelay.catalog import CatalogPatch
from termrelay.model.session import SessionRecord, SessionStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(_CamelModel):
    name: str | None = None
    group: str | None = None
    working_dir: str | None = None
    message: str | None = None


class PatchMetaRequest(_CamelModel):
    custom_name: str | None = None
    project: str | None = None
    pinned: bool | None = None
    archived: bool | None = None

    def to_patch(self) -> CatalogPatch:
        return CatalogPatch(**self.model_dump())


class SessionOut(_CamelModel):
    id: str
    name: str
    group: str | None = None
    status: SessionStatus
    created_at: float
    last_activity: float
    preview: str | None = None
    working_dir: str
    pinned: bool = False
    archived: bool = False

    @classmethod
    def from_record(cls, record: SessionRecord) -> SessionOut:
        return cls(
            id=record.id,
            name=record.name,
            group=record.group,
            status=record.status,
            created_at=record.created_at,
            last_activity=record.last_activity,
            preview=record.preview,
            working_dir=record.working_dir,
            pinned=record.pinned,
            archived=record.archived,
        )


class HealthOut(BaseModel):
    status: str = "ok"
    sessions: int


class OkOut(BaseModel):
    ok: bool = True
