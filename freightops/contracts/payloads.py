from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class CreateDocumentRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    document_id: str | None = None


class EditDocumentRequest(BaseModel):
    fields: dict[str, Any] = Field(min_length=1)


class TransitionRequest(BaseModel):
    expected_from: str = Field(min_length=1)
    to: str = Field(min_length=1)
    comment: str | None = None

    @field_validator("expected_from", "to")
    @classmethod
    def _strip_status(cls, value: str) -> str:
        return value.strip()


class SideEffectOut(BaseModel):
    dedup_key: str
    kind: str
    status: str
    error: str | None = None


class TransitionResponse(BaseModel):
    ok: bool = True
    document_id: str
    new_status: str
    side_effects: list[SideEffectOut] = Field(default_factory=list)


class EdgeOut(BaseModel):
    edge_id: str
    from_status: str
    to_status: str
    required_capability: str
    requires_comment: bool = False
    side_effects: list[str] = Field(default_factory=list)


class CatalogOut(BaseModel):
    document_type: str
    initial_status: str
    statuses: list[str]
    terminal_statuses: list[str]
    edges: list[EdgeOut]


class AuditEntryOut(BaseModel):
    document_type: str
    document_id: str
    actor_id: str
    action: str
    from_status: str
    to_status: str
    comment: str | None = None
    timestamp: str
    seq: int | None = None


class ErrorOut(BaseModel):
    ok: bool = False
    error: str
    detail: str
    current_status: str | None = None
