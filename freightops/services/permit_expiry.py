from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from freightops.domain.capabilities import Actor
from freightops.domain.errors import StaleStateError, WorkflowError
from freightops.domain.models import WorkflowDocument
from freightops.domain.states import DocumentType, WorkPermitStatus
from freightops.services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


def parse_valid_to(raw: Any) -> datetime | None:
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def expire_overdue_permits(
    service: WorkflowService,
    actor: Actor,
    now: datetime | None = None,
    limit: int = 500,
) -> dict[str, Any]:
    """Move active permits past ``payload.valid_to`` to ``expired``.

    Each permit goes through the ordinary transition call. A permit that
    changed status since it was listed is counted as stale and left alone.
    """
    now = now or datetime.now(timezone.utc)
    active = service.list_documents(DocumentType.WORK_PERMIT, status=WorkPermitStatus.ACTIVE.value, limit=limit)

    summary: dict[str, Any] = {"inspected": len(active), "expired": 0, "stale": 0, "skipped": 0, "failures": []}
    for row in active:
        permit = WorkflowDocument.from_row(row)
        document_id = permit.id
        valid_to = parse_valid_to(permit.payload.get("valid_to"))
        if valid_to is None or valid_to >= now:
            summary["skipped"] += 1
            continue
        try:
            service.transition(
                DocumentType.WORK_PERMIT,
                document_id,
                WorkPermitStatus.ACTIVE.value,
                WorkPermitStatus.EXPIRED.value,
                actor,
            )
            summary["expired"] += 1
        except StaleStateError:
            summary["stale"] += 1
        except WorkflowError as exc:
            logger.warning("Could not expire work permit %s: %s", document_id, exc.message)
            summary["failures"].append({"document_id": document_id, "error": exc.code, "detail": exc.message})
    return summary
