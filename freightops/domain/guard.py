from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from freightops.domain import catalog
from freightops.domain.capabilities import SEGREGATED_CAPABILITIES, Actor, Capability, capabilities_of
from freightops.domain.catalog import TransitionEdge
from freightops.domain.errors import (
    CallerError,
    CommentRequiredError,
    DocumentNotEditableError,
    InsufficientCapabilityError,
    NoSuchTransitionError,
    SelfApprovalForbiddenError,
)
from freightops.domain.states import DocumentType


class DenyReason(str, Enum):
    NO_SUCH_TRANSITION = "NoSuchTransition"
    INSUFFICIENT_CAPABILITY = "InsufficientCapability"
    SELF_APPROVAL_FORBIDDEN = "SelfApprovalForbidden"
    COMMENT_REQUIRED = "CommentRequired"
    DOCUMENT_NOT_EDITABLE = "DocumentNotEditable"


_ERROR_FOR_REASON: dict[DenyReason, type[CallerError]] = {
    DenyReason.NO_SUCH_TRANSITION: NoSuchTransitionError,
    DenyReason.INSUFFICIENT_CAPABILITY: InsufficientCapabilityError,
    DenyReason.SELF_APPROVAL_FORBIDDEN: SelfApprovalForbiddenError,
    DenyReason.COMMENT_REQUIRED: CommentRequiredError,
    DenyReason.DOCUMENT_NOT_EDITABLE: DocumentNotEditableError,
}


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: DenyReason | None = None
    detail: str = ""
    edge: TransitionEdge | None = None

    @classmethod
    def allow(cls, edge: TransitionEdge | None = None) -> "AuthorizationDecision":
        return cls(allowed=True, edge=edge)

    @classmethod
    def deny(cls, reason: DenyReason, detail: str, edge: TransitionEdge | None = None) -> "AuthorizationDecision":
        return cls(allowed=False, reason=reason, detail=detail, edge=edge)

    def to_error(self) -> CallerError:
        if self.allowed or self.reason is None:
            raise ValueError("An allowed decision has no error")
        return _ERROR_FOR_REASON[self.reason](self.detail)


class WorkflowGuard:
    def authorize(
        self,
        document_type: DocumentType | str,
        from_status: str,
        to_status: str,
        actor: Actor,
        document_created_by: str | None,
        comment: str | None = None,
        *,
        enforce_comment: bool = True,
    ) -> AuthorizationDecision:
        edge = catalog.find_edge(document_type, from_status, to_status)
        if edge is None:
            return AuthorizationDecision.deny(
                DenyReason.NO_SUCH_TRANSITION,
                f"No transition {from_status} -> {to_status} for {DocumentType(document_type).value}",
            )

        caps = capabilities_of(actor)
        if edge.required_capability not in caps:
            return AuthorizationDecision.deny(
                DenyReason.INSUFFICIENT_CAPABILITY,
                f"Role '{actor.role}' lacks '{edge.required_capability.value}' for {edge.edge_id}",
                edge,
            )

        if edge.required_capability in SEGREGATED_CAPABILITIES and document_created_by and actor.id == document_created_by:
            return AuthorizationDecision.deny(
                DenyReason.SELF_APPROVAL_FORBIDDEN,
                f"Actor {actor.id} authored this document and cannot {edge.required_capability.value} it",
                edge,
            )

        if enforce_comment and edge.requires_comment and not str(comment or "").strip():
            return AuthorizationDecision.deny(
                DenyReason.COMMENT_REQUIRED,
                f"A comment is required for {edge.edge_id}",
                edge,
            )

        return AuthorizationDecision.allow(edge)

    def authorize_edit(self, document_type: DocumentType | str, status: str, actor: Actor) -> AuthorizationDecision:
        if status != catalog.initial_status(document_type):
            return AuthorizationDecision.deny(
                DenyReason.DOCUMENT_NOT_EDITABLE,
                f"Document can only be edited in {catalog.initial_status(document_type)} status (current: {status})",
            )
        if Capability.EDIT not in capabilities_of(actor):
            return AuthorizationDecision.deny(
                DenyReason.INSUFFICIENT_CAPABILITY,
                f"Role '{actor.role}' lacks 'edit'",
            )
        return AuthorizationDecision.allow()

    def available_transitions(
        self,
        document_type: DocumentType | str,
        status: str,
        actor: Actor,
        document_created_by: str | None,
    ) -> list[TransitionEdge]:
        edges = sorted(catalog.edges_for(document_type, status), key=lambda e: e.to_status)
        return [
            e
            for e in edges
            if self.authorize(document_type, status, e.to_status, actor, document_created_by, enforce_comment=False).allowed
        ]
