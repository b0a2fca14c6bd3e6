"""Transition executor for workflow documents.

``transition`` is the single way a document's status changes:

1. read the persisted status and compare it with ``expected_from``;
2. ask the guard whether the actor may fire the edge;
3. commit the status change and its ``success`` audit entry atomically,
   conditioned on the status still being ``expected_from``;
4. dispatch the edge's side effects.

Every call leaves exactly one audit entry behind: ``success`` for a
committed change, ``reject`` for a caller error and ``attempt`` for a lost
race or a storage failure. The engine never retries on its own.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable

from freightops.config import Settings, settings
from freightops.domain import catalog
from freightops.domain.capabilities import Actor, Capability, capabilities_of
from freightops.domain.catalog import TransitionEdge, UnknownDocumentTypeError
from freightops.domain.errors import (
    DocumentNotEditableError,
    DocumentNotFoundError,
    InsufficientCapabilityError,
    NoSuchTransitionError,
    PersistenceError,
    StaleStateError,
    WorkflowError,
)
from freightops.domain.guard import WorkflowGuard
from freightops.domain.models import AuditAction, AuditEntry, WorkflowDocument, utc_now
from freightops.domain.states import DocumentType
from freightops.events.bus import EventBus, InMemoryEventBus, build_event_bus
from freightops.infra.repositories import InMemoryRepository, RepositoryError, WorkflowRepository, build_repository
from freightops.services.audit_service import AuditLog
from freightops.services.notification_service import NotificationService
from freightops.services.side_effects import (
    OUTCOME_FAILED,
    SideEffectContext,
    SideEffectDispatcher,
    SideEffectOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionOutcome:
    document: dict[str, Any]
    edge: TransitionEdge
    side_effects: list[SideEffectOutcome] = field(default_factory=list)

    @property
    def new_status(self) -> str:
        return str(self.document["status"])

    @property
    def side_effect_failures(self) -> list[SideEffectOutcome]:
        return [o for o in self.side_effects if o.status == OUTCOME_FAILED]


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    new_status: str | None = None
    error: str | None = None
    detail: str | None = None
    current_status: str | None = None
    side_effects: list[SideEffectOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {
                "ok": True,
                "new_status": self.new_status,
                "side_effects": [
                    {"dedup_key": o.dedup_key, "kind": o.kind, "status": o.status, "error": o.error}
                    for o in self.side_effects
                ],
            }
        out: dict[str, Any] = {"ok": False, "error": self.error, "detail": self.detail}
        if self.current_status is not None:
            out["current_status"] = self.current_status
        return out


class WorkflowService:
    def __init__(
        self,
        repo: WorkflowRepository | None = None,
        *,
        guard: WorkflowGuard | None = None,
        event_bus: EventBus | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        using_supabase: bool = False,
        persistence_warning: str | None = None,
    ) -> None:
        self.repo = repo or InMemoryRepository()
        self.guard = guard or WorkflowGuard()
        self.audit = AuditLog(self.repo)
        self.event_bus = event_bus or InMemoryEventBus()
        self.notifications = NotificationService(self.repo)
        self.dispatcher = dispatcher or SideEffectDispatcher(self.repo, self.notifications, self.event_bus)
        self.using_supabase = using_supabase
        self.persistence_warning = persistence_warning

    def close(self) -> None:
        """Wait for scheduled side effects and release the background executor."""
        self.dispatcher.close()

    # -- documents ---------------------------------------------------------

    def create_document(
        self,
        document_type: DocumentType | str,
        actor: Actor,
        payload: dict[str, Any] | None = None,
        document_id: str | None = None,
    ) -> dict[str, Any]:
        doc_type = DocumentType(document_type)
        if Capability.CREATE not in capabilities_of(actor):
            raise InsufficientCapabilityError(f"Role '{actor.role}' lacks 'create' for {doc_type.value}")

        doc = WorkflowDocument.new(doc_type, created_by=actor.id, payload=payload, document_id=document_id)
        try:
            row = self.repo.create_document(doc.to_row())
        except RepositoryError as exc:
            raise PersistenceError(f"Could not create {doc_type.value}: {exc}") from exc
        logger.info("Created %s %s in %s by %s", doc_type.value, row.get("id"), doc.status, actor.id)
        return row

    def get_document(self, document_type: DocumentType | str, document_id: str) -> dict[str, Any]:
        doc_type = DocumentType(document_type)
        try:
            row = self.repo.get_document(doc_type.value, document_id)
        except RepositoryError as exc:
            raise PersistenceError(f"Could not read {document_id}: {exc}") from exc
        if not row:
            raise DocumentNotFoundError(f"{doc_type.value} {document_id} not found")
        return row

    def list_documents(
        self,
        document_type: DocumentType | str,
        status: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        try:
            return self.repo.list_documents(DocumentType(document_type).value, status=status, limit=limit)
        except RepositoryError as exc:
            raise PersistenceError(f"Could not list documents: {exc}") from exc

    def edit_document(
        self,
        document_type: DocumentType | str,
        document_id: str,
        actor: Actor,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        doc_type = DocumentType(document_type)
        doc = self.get_document(doc_type, document_id)
        decision = self.guard.authorize_edit(doc_type, str(doc["status"]), actor)
        if not decision.allowed:
            raise decision.to_error()

        payload = {**(doc.get("payload") or {}), **fields}
        try:
            updated = self.repo.update_payload_if_status(
                doc_type.value, document_id, catalog.initial_status(doc_type), payload
            )
        except RepositoryError as exc:
            raise PersistenceError(f"Could not edit {document_id}: {exc}") from exc
        if updated is None:
            # Status moved on between the read and the conditional write.
            raise DocumentNotEditableError(f"{doc_type.value} {document_id} is no longer editable")
        logger.info("Edited %s %s fields=%s by %s", doc_type.value, document_id, sorted(fields), actor.id)
        return updated

    def history(self, document_type: DocumentType | str, document_id: str) -> list[AuditEntry]:
        return self.audit.history(document_type, document_id)

    def available_transitions(
        self,
        document_type: DocumentType | str,
        document_id: str,
        actor: Actor,
    ) -> list[TransitionEdge]:
        doc = self.get_document(document_type, document_id)
        return self.guard.available_transitions(document_type, str(doc["status"]), actor, doc.get("created_by"))

    # -- transitions -------------------------------------------------------

    def transition(
        self,
        document_type: DocumentType | str,
        document_id: str,
        expected_from: str,
        to: str,
        actor: Actor,
        comment: str | None = None,
    ) -> TransitionOutcome:
        doc_type = catalog.spec_for(document_type).document_type

        def entry(action: AuditAction, timestamp: str | None = None) -> AuditEntry:
            return AuditEntry(
                document_type=doc_type.value,
                document_id=document_id,
                actor_id=actor.id,
                action=action,
                from_status=expected_from,
                to_status=to,
                comment=comment,
                timestamp=timestamp or utc_now(),
            )

        try:
            doc = self.repo.get_document(doc_type.value, document_id)
        except RepositoryError as exc:
            self._record_after_storage_failure(entry(AuditAction.ATTEMPT))
            raise PersistenceError(f"Could not read {document_id}: {exc}") from exc

        if not doc:
            self.audit.append(entry(AuditAction.REJECT))
            raise DocumentNotFoundError(f"{doc_type.value} {document_id} not found")

        current = str(doc["status"])
        if current != expected_from:
            self.audit.append(entry(AuditAction.ATTEMPT))
            raise StaleStateError(
                f"{doc_type.value} {document_id} is '{current}', not '{expected_from}'",
                current_status=current,
            )

        decision = self.guard.authorize(doc_type, expected_from, to, actor, doc.get("created_by"), comment)
        if not decision.allowed:
            self.audit.append(entry(AuditAction.REJECT))
            logger.info(
                "Denied %s %s %s->%s for %s: %s",
                doc_type.value,
                document_id,
                expected_from,
                to,
                actor.id,
                decision.reason.value if decision.reason else "",
            )
            raise decision.to_error()

        edge = decision.edge
        if edge is None:
            self.audit.append(entry(AuditAction.REJECT))
            raise NoSuchTransitionError(f"No {doc_type.value} edge {expected_from}->{to}")

        now = utc_now()
        updates: dict[str, Any] = {}
        if edge.stamp:
            updates[f"{edge.stamp}_by"] = actor.id
            updates[f"{edge.stamp}_at"] = now

        success = entry(AuditAction.SUCCESS, timestamp=now)
        try:
            committed = self.repo.commit_transition(
                doc_type.value, document_id, expected_from, to, updates, success.to_row()
            )
        except RepositoryError as exc:
            self._record_after_storage_failure(entry(AuditAction.ATTEMPT))
            raise PersistenceError(f"Could not commit {edge.edge_id} for {document_id}: {exc}") from exc

        if not committed:
            self.audit.append(entry(AuditAction.ATTEMPT))
            raise StaleStateError(
                f"{doc_type.value} {document_id} changed concurrently; expected '{expected_from}'",
                current_status=self._current_status_or_none(doc_type, document_id),
            )

        logger.info("Transitioned %s %s %s->%s by %s", doc_type.value, document_id, expected_from, to, actor.id)
        updated = {**doc, **updates, "status": to, "updated_at": now}
        context = SideEffectContext(document=updated, edge=edge, actor_id=actor.id, comment=comment, occurred_at=now)
        outcomes, _ = self.dispatcher.schedule_all(document_id, context)
        for outcome in outcomes:
            if outcome.status == OUTCOME_FAILED:
                logger.warning(
                    "Side effect %s failed after committed %s: %s", outcome.dedup_key, edge.edge_id, outcome.error
                )
        return TransitionOutcome(document=updated, edge=edge, side_effects=outcomes)

    def request_transition(
        self,
        document_type: DocumentType | str,
        document_id: str,
        expected_from: str,
        to: str,
        actor_id: str,
        effective_role: str,
        comment: str | None = None,
        flags: Iterable[str] = (),
    ) -> TransitionResult:
        actor = Actor.of(actor_id, effective_role, flags)
        try:
            outcome = self.transition(document_type, document_id, expected_from, to, actor, comment)
        except UnknownDocumentTypeError:
            # No catalog, so no edge; nothing of this type can be stored or audited.
            return TransitionResult(
                ok=False,
                error=NoSuchTransitionError.code,
                detail=f"Unknown document type {document_type!r}",
            )
        except StaleStateError as exc:
            return TransitionResult(ok=False, error=exc.code, detail=exc.message, current_status=exc.current_status)
        except WorkflowError as exc:
            return TransitionResult(ok=False, error=exc.code, detail=exc.message)
        return TransitionResult(ok=True, new_status=outcome.new_status, side_effects=outcome.side_effects)

    def _record_after_storage_failure(self, entry: AuditEntry) -> None:
        try:
            self.audit.append(entry)
        except PersistenceError:
            logger.error("Audit entry for %s/%s lost with the storage failure", entry.document_type, entry.document_id)

    def _current_status_or_none(self, doc_type: DocumentType, document_id: str) -> str | None:
        try:
            return self.repo.read_status(doc_type.value, document_id)
        except RepositoryError:
            return None


def build_workflow_service(cfg: Settings | None = None) -> WorkflowService:
    cfg = cfg or settings
    repo, using_supabase, warning = build_repository(cfg)
    bus = build_event_bus(cfg)
    notifications = NotificationService(repo)
    executor = ThreadPoolExecutor(max_workers=max(1, cfg.side_effect_workers)) if cfg.side_effects_async else None
    dispatcher = SideEffectDispatcher(repo, notifications, bus, executor=executor)
    return WorkflowService(
        repo,
        event_bus=bus,
        dispatcher=dispatcher,
        using_supabase=using_supabase,
        persistence_warning=warning,
    )
