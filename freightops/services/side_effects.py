from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Callable

from freightops.domain.catalog import (
    SIDE_EFFECT_NOTIFY,
    SIDE_EFFECT_PARENT_FLAG,
    SIDE_EFFECT_PUBLISH_EVENT,
    SideEffectSpec,
    TransitionEdge,
)
from freightops.events.bus import EventBus
from freightops.events.contracts import build_event_envelope
from freightops.infra.repositories import RepositoryError, WorkflowRepository
from freightops.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"
OUTCOME_SCHEDULED = "scheduled"


@dataclass(frozen=True)
class SideEffectContext:
    document: dict[str, Any]
    edge: TransitionEdge
    actor_id: str
    comment: str | None = None
    occurred_at: str | None = None


@dataclass(frozen=True)
class SideEffectOutcome:
    dedup_key: str
    kind: str
    status: str
    error: str | None = None
    result: Any = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.status in {OUTCOME_APPLIED, OUTCOME_DUPLICATE, OUTCOME_SCHEDULED}


SideEffectHandler = Callable[[SideEffectSpec, SideEffectContext, str], Any]


def dedup_key_for(document_id: str, edge: TransitionEdge, index: int) -> str:
    return f"{document_id}:{edge.edge_id}:{index}"


class SideEffectDispatcher:
    """Runs the side effects declared on a committed transition edge.

    Every effect is claimed in the store under ``(document, edge, index)``
    before it runs, so a repeated dispatch never applies it twice. A failed
    effect gives its claim back and can be dispatched again.
    """

    def __init__(
        self,
        repo: WorkflowRepository,
        notifications: NotificationService,
        event_bus: EventBus,
        executor: Executor | None = None,
    ) -> None:
        self.repo = repo
        self.notifications = notifications
        self.event_bus = event_bus
        self.executor = executor
        self._handlers: dict[str, SideEffectHandler] = {
            SIDE_EFFECT_PARENT_FLAG: self._apply_parent_flag,
            SIDE_EFFECT_NOTIFY: self._apply_notify,
            SIDE_EFFECT_PUBLISH_EVENT: self._apply_publish,
        }

    def register(self, kind: str, handler: SideEffectHandler) -> None:
        self._handlers[kind] = handler

    def dispatch(
        self,
        document_id: str,
        spec: SideEffectSpec,
        context: SideEffectContext,
        index: int = 0,
    ) -> SideEffectOutcome:
        key = dedup_key_for(document_id, context.edge, index)
        handler = self._handlers.get(spec.kind)
        if handler is None:
            logger.error("No handler registered for side effect %s (%s)", spec.kind, key)
            return SideEffectOutcome(key, spec.kind, OUTCOME_FAILED, error=f"No handler for {spec.kind}")

        try:
            claimed = self.repo.claim_side_effect(key, document_id, context.edge.edge_id, spec.kind)
        except RepositoryError as exc:
            logger.error("Could not claim side effect %s: %s", key, exc)
            return SideEffectOutcome(key, spec.kind, OUTCOME_FAILED, error=str(exc))
        if not claimed:
            logger.info("Side effect %s already dispatched; skipping", key)
            return SideEffectOutcome(key, spec.kind, OUTCOME_DUPLICATE)

        try:
            result = handler(spec, context, key)
        except Exception as exc:
            logger.exception("Side effect %s failed", key)
            self._release(key)
            return SideEffectOutcome(key, spec.kind, OUTCOME_FAILED, error=str(exc))

        try:
            self.repo.complete_side_effect(key)
        except RepositoryError as exc:
            # Applied; the claim row still blocks a second run.
            logger.warning("Side effect %s applied but not marked done: %s", key, exc)
        return SideEffectOutcome(key, spec.kind, OUTCOME_APPLIED, result=result)

    def dispatch_all(self, document_id: str, context: SideEffectContext) -> list[SideEffectOutcome]:
        return [
            self.dispatch(document_id, spec, context, index)
            for index, spec in enumerate(context.edge.side_effects)
        ]

    def schedule_all(self, document_id: str, context: SideEffectContext) -> tuple[list[SideEffectOutcome], Future | None]:
        """Hand the already-decided effects to the executor and return at once."""
        if self.executor is None:
            return self.dispatch_all(document_id, context), None
        outcomes = [
            SideEffectOutcome(dedup_key_for(document_id, context.edge, i), spec.kind, OUTCOME_SCHEDULED)
            for i, spec in enumerate(context.edge.side_effects)
        ]
        if not outcomes:
            return [], None
        future = self.executor.submit(self.dispatch_all, document_id, context)
        future.add_done_callback(self._report_background)
        return outcomes, future

    def close(self, wait: bool = True) -> None:
        if self.executor is None:
            return
        self.executor.shutdown(wait=wait)
        logger.info("Side-effect executor shut down")

    @staticmethod
    def _report_background(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background side-effect dispatch crashed: %s", exc)
            return
        for outcome in future.result():
            if outcome.status == OUTCOME_FAILED:
                logger.error("Side effect %s failed in background: %s", outcome.dedup_key, outcome.error)

    def _release(self, key: str) -> None:
        try:
            self.repo.release_side_effect(key)
        except RepositoryError as exc:
            logger.error("Could not release side effect claim %s: %s", key, exc)

    def _apply_parent_flag(self, spec: SideEffectSpec, context: SideEffectContext, key: str) -> dict[str, Any]:
        via = str(spec.params["via"])
        record_id = (context.document.get("payload") or {}).get(via)
        if not record_id:
            raise ValueError(f"Document payload has no '{via}' to propagate to {spec.params['table']}")
        return self.repo.set_parent_flag(
            str(spec.params["table"]),
            str(record_id),
            str(spec.params["column"]),
            spec.params.get("value", True),
        )

    def _apply_notify(self, spec: SideEffectSpec, context: SideEffectContext, key: str) -> list[dict[str, Any]]:
        return self.notifications.notify(spec, context.document, key, comment=context.comment)

    def _apply_publish(self, spec: SideEffectSpec, context: SideEffectContext, key: str) -> dict[str, Any]:
        event_type = str(spec.params["event_type"])
        envelope = build_event_envelope(
            event_type=event_type,
            document_type=str(context.document.get("document_type", "")),
            document_id=str(context.document.get("id", "")),
            actor_id=context.actor_id,
            payload={
                "from_status": context.edge.from_status,
                "to_status": context.edge.to_status,
                "edge_id": context.edge.edge_id,
                "comment": context.comment,
            },
            dedup_key=key,
            occurred_at=context.occurred_at,
        )
        self.event_bus.publish(event_type, envelope)
        return envelope
