from __future__ import annotations

import logging
from typing import Any

from freightops.domain.errors import AuditAppendError, PersistenceError
from freightops.domain.models import AuditEntry
from freightops.domain.states import DocumentType
from freightops.infra.repositories import RepositoryError, WorkflowRepository

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only ledger of transition attempts.

    An append that fails raises; an unaudited status change is a compliance
    violation, so callers must fail the request rather than continue.
    """

    def __init__(self, repo: WorkflowRepository) -> None:
        self.repo = repo

    def append(self, entry: AuditEntry) -> dict[str, Any]:
        try:
            row = self.repo.append_audit(entry.to_row())
        except RepositoryError as exc:
            logger.error(
                "Audit append failed for %s/%s (%s): %s",
                entry.document_type,
                entry.document_id,
                entry.action.value,
                exc,
            )
            raise AuditAppendError(f"Audit append failed: {exc}") from exc
        if not row:
            raise AuditAppendError(f"Audit append returned nothing for {entry.document_id}")
        return row

    def history(self, document_type: DocumentType | str, document_id: str) -> list[AuditEntry]:
        doc_type = DocumentType(document_type).value
        try:
            rows = self.repo.list_audit(doc_type, document_id)
        except RepositoryError as exc:
            raise PersistenceError(f"Audit history unavailable: {exc}") from exc
        entries = [AuditEntry.from_row(r) for r in rows]
        entries.sort(key=lambda e: (e.timestamp, e.seq if e.seq is not None else 0))
        return entries
