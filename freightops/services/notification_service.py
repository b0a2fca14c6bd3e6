from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from freightops.domain.catalog import SideEffectSpec
from freightops.domain.models import Notification
from freightops.infra.repositories import WorkflowRepository

logger = logging.getLogger(__name__)

RECIPIENT_CREATOR = "creator"
RECIPIENT_ROLES = "roles"


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return ""


def document_label(document: dict[str, Any]) -> str:
    payload = document.get("payload") or {}
    number = payload.get("number") or payload.get("document_number")
    doc_type = str(document.get("document_type", "document")).replace("-", " ")
    if number:
        return f"{doc_type} {number}"
    return f"{doc_type} {str(document.get('id', ''))[:8]}".strip()


class NotificationService:
    """Queues in-app notifications; delivery transports live elsewhere."""

    def __init__(self, repo: WorkflowRepository) -> None:
        self.repo = repo

    def notify(
        self,
        spec: SideEffectSpec,
        document: dict[str, Any],
        dedup_key: str,
        comment: str | None = None,
    ) -> list[dict[str, Any]]:
        recipients = self._recipients(spec, document)
        if not recipients:
            raise ValueError(f"No recipients resolved for {dedup_key}")

        values = _TemplateValues(label=document_label(document), comment=comment or "", status=document.get("status", ""))
        title = str(spec.params.get("title", "")).format_map(values)
        message = str(spec.params.get("message", "")).format_map(values)

        created: list[dict[str, Any]] = []
        for recipient_type, recipient in recipients:
            note = Notification(
                recipient=recipient,
                recipient_type=recipient_type,
                title=title,
                message=message,
                document_type=str(document.get("document_type", "")),
                document_id=str(document.get("id", "")),
                dedup_key=f"{dedup_key}:{recipient_type}:{recipient}",
            )
            row = self.repo.create_notification(asdict(note))
            if row is None:
                logger.debug("Notification %s already queued", note.dedup_key)
                continue
            created.append(row)
        return created

    def _recipients(self, spec: SideEffectSpec, document: dict[str, Any]) -> list[tuple[str, str]]:
        target = spec.params.get("recipient")
        if target == RECIPIENT_CREATOR:
            creator = document.get("created_by")
            return [("user", str(creator))] if creator else []
        if target == RECIPIENT_ROLES:
            return [("role", str(role)) for role in spec.params.get("roles", ())]
        raise ValueError(f"Unsupported notification recipient: {target}")
