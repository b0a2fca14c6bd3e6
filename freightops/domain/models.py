from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from freightops.domain import catalog
from freightops.domain.states import DocumentType


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditAction(str, Enum):
    ATTEMPT = "attempt"
    SUCCESS = "success"
    REJECT = "reject"


@dataclass
class WorkflowDocument:
    """A workflow document and its actor stamps.

    Fresh documents come from ``new``, which always starts them in the
    type's initial status. ``from_row`` loads a persisted document in
    whatever status it has reached. The constructor itself only checks that
    the status belongs to the type.
    """

    document_type: DocumentType
    status: str
    created_by: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    submitted_by: str | None = None
    submitted_at: str | None = None
    checked_by: str | None = None
    checked_at: str | None = None
    approved_by: str | None = None
    approved_at: str | None = None
    rejected_by: str | None = None
    rejected_at: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.document_type = DocumentType(self.document_type)
        if not catalog.is_valid_status(self.document_type, self.status):
            raise ValueError(f"Status {self.status!r} is not valid for {self.document_type.value}")

    @classmethod
    def new(
        cls,
        document_type: DocumentType | str,
        created_by: str,
        payload: dict[str, Any] | None = None,
        document_id: str | None = None,
    ) -> "WorkflowDocument":
        doc_type = DocumentType(document_type)
        kwargs: dict[str, Any] = {}
        if document_id:
            kwargs["id"] = document_id
        return cls(
            document_type=doc_type,
            status=catalog.initial_status(doc_type),
            created_by=created_by,
            payload=dict(payload or {}),
            **kwargs,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WorkflowDocument":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["payload"] = dict(data.get("payload") or {})
        return cls(**data)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["document_type"] = self.document_type.value
        return row


@dataclass(frozen=True)
class AuditEntry:
    document_type: str
    document_id: str
    actor_id: str
    action: AuditAction
    from_status: str
    to_status: str
    comment: str | None = None
    timestamp: str = field(default_factory=utc_now)
    seq: int | None = None

    def to_row(self) -> dict[str, Any]:
        row = {
            "document_type": self.document_type,
            "document_id": self.document_id,
            "actor_id": self.actor_id,
            "action": AuditAction(self.action).value,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "comment": self.comment,
            "timestamp": self.timestamp,
        }
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AuditEntry":
        seq = row.get("seq")
        return cls(
            document_type=str(row.get("document_type", "")),
            document_id=str(row.get("document_id", "")),
            actor_id=str(row.get("actor_id", "")),
            action=AuditAction(row.get("action")),
            from_status=str(row.get("from_status", "")),
            to_status=str(row.get("to_status", "")),
            comment=row.get("comment"),
            timestamp=str(row.get("timestamp", "")),
            seq=int(seq) if seq is not None else None,
        )


@dataclass
class Notification:
    recipient: str
    title: str
    message: str
    document_type: str
    document_id: str
    dedup_key: str
    recipient_type: str = "user"
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: str = field(default_factory=utc_now)
