"""Static transition tables for every workflow document type.

Each document type is pure data: its status set, initial status, terminal
statuses and the edges between them. The engine never branches on the
document type; adding a type means adding a ``DocumentTypeSpec`` here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from freightops.domain.capabilities import Capability
from freightops.domain.states import (
    STATUS_ENUMS,
    DeliveryNoteStatus,
    DocumentType,
    GeneratedDocumentStatus,
    HandoverStatus,
    VoucherStatus,
    WorkPermitStatus,
)


class UnknownDocumentTypeError(KeyError):
    pass


SIDE_EFFECT_PARENT_FLAG = "parent_flag"
SIDE_EFFECT_NOTIFY = "notify"
SIDE_EFFECT_PUBLISH_EVENT = "publish_event"

SIDE_EFFECT_KINDS = frozenset({SIDE_EFFECT_PARENT_FLAG, SIDE_EFFECT_NOTIFY, SIDE_EFFECT_PUBLISH_EVENT})


@dataclass(frozen=True)
class SideEffectSpec:
    kind: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in SIDE_EFFECT_KINDS:
            raise ValueError(f"Unsupported side effect kind: {self.kind}")
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __hash__(self) -> int:
        return hash((self.kind, tuple(sorted(self.params.items(), key=lambda kv: kv[0]))))


def parent_flag(table: str, column: str, *, via: str, value: Any = True) -> SideEffectSpec:
    return SideEffectSpec(SIDE_EFFECT_PARENT_FLAG, {"table": table, "column": column, "via": via, "value": value})


def notify_roles(*roles: str, title: str, message: str) -> SideEffectSpec:
    return SideEffectSpec(SIDE_EFFECT_NOTIFY, {"recipient": "roles", "roles": tuple(roles), "title": title, "message": message})


def notify_creator(*, title: str, message: str) -> SideEffectSpec:
    return SideEffectSpec(SIDE_EFFECT_NOTIFY, {"recipient": "creator", "title": title, "message": message})


def publish(event_type: str) -> SideEffectSpec:
    return SideEffectSpec(SIDE_EFFECT_PUBLISH_EVENT, {"event_type": event_type})


@dataclass(frozen=True)
class TransitionEdge:
    document_type: DocumentType
    from_status: str
    to_status: str
    required_capability: Capability
    side_effects: tuple[SideEffectSpec, ...] = ()
    requires_comment: bool = False
    # Actor columns the commit sets: ``<stamp>_by`` and ``<stamp>_at``.
    stamp: str | None = None

    @property
    def edge_id(self) -> str:
        return f"{self.document_type.value}:{self.from_status}->{self.to_status}"


@dataclass(frozen=True)
class DocumentTypeSpec:
    document_type: DocumentType
    statuses: frozenset[str]
    initial_status: str
    terminal_statuses: frozenset[str]
    edges: tuple[TransitionEdge, ...]


STAMP_SUBMITTED = "submitted"
STAMP_CHECKED = "checked"
STAMP_APPROVED = "approved"
STAMP_REJECTED = "rejected"

STAMPS = frozenset({STAMP_SUBMITTED, STAMP_CHECKED, STAMP_APPROVED, STAMP_REJECTED})


def _edge(
    doc_type: DocumentType,
    src: Any,
    dst: Any,
    capability: Capability,
    *side_effects: SideEffectSpec,
    stamp: str | None = None,
) -> TransitionEdge:
    return TransitionEdge(
        document_type=doc_type,
        from_status=src.value,
        to_status=dst.value,
        required_capability=capability,
        side_effects=tuple(side_effects),
        requires_comment=capability == Capability.REJECT,
        stamp=stamp,
    )


def _spec(doc_type: DocumentType, initial: Any, terminal: set[Any], edges: list[TransitionEdge]) -> DocumentTypeSpec:
    return DocumentTypeSpec(
        document_type=doc_type,
        statuses=frozenset(s.value for s in STATUS_ENUMS[doc_type]),
        initial_status=initial.value,
        terminal_statuses=frozenset(s.value for s in terminal),
        edges=tuple(edges),
    )


_DV = DocumentType.DISBURSEMENT_VOUCHER
_DN = DocumentType.DELIVERY_NOTE
_HC = DocumentType.HANDOVER_CERTIFICATE
_GD = DocumentType.GENERATED_DOCUMENT
_WP = DocumentType.WORK_PERMIT

_CREATOR_REJECTED = notify_creator(title="Document rejected", message="Your {label} was rejected: {comment}")

CATALOG: dict[DocumentType, DocumentTypeSpec] = {
    _HC: _spec(
        _HC,
        HandoverStatus.DRAFT,
        {HandoverStatus.SIGNED, HandoverStatus.ARCHIVED},
        [
            _edge(
                _HC, HandoverStatus.DRAFT, HandoverStatus.PENDING_SIGNATURE, Capability.SUBMIT, stamp=STAMP_SUBMITTED
            ),
            _edge(
                _HC,
                HandoverStatus.PENDING_SIGNATURE,
                HandoverStatus.SIGNED,
                Capability.APPROVE,
                parent_flag("job_orders", "has_berita_acara", via="jo_id"),
                stamp=STAMP_APPROVED,
            ),
            _edge(_HC, HandoverStatus.PENDING_SIGNATURE, HandoverStatus.ARCHIVED, Capability.APPROVE),
        ],
    ),
    _DN: _spec(
        _DN,
        DeliveryNoteStatus.ISSUED,
        {DeliveryNoteStatus.DELIVERED, DeliveryNoteStatus.RETURNED},
        [
            _edge(
                _DN, DeliveryNoteStatus.ISSUED, DeliveryNoteStatus.IN_TRANSIT, Capability.SUBMIT, stamp=STAMP_SUBMITTED
            ),
            _edge(
                _DN,
                DeliveryNoteStatus.IN_TRANSIT,
                DeliveryNoteStatus.DELIVERED,
                Capability.APPROVE,
                parent_flag("job_orders", "has_surat_jalan", via="jo_id"),
                stamp=STAMP_APPROVED,
            ),
            _edge(_DN, DeliveryNoteStatus.IN_TRANSIT, DeliveryNoteStatus.RETURNED, Capability.APPROVE),
        ],
    ),
    _DV: _spec(
        _DV,
        VoucherStatus.DRAFT,
        {VoucherStatus.APPROVED, VoucherStatus.REJECTED},
        [
            _edge(
                _DV,
                VoucherStatus.DRAFT,
                VoucherStatus.PENDING_CHECK,
                Capability.SUBMIT,
                notify_roles(
                    "manager",
                    "finance_manager",
                    title="Disbursement awaiting check",
                    message="{label} was submitted and needs checking.",
                ),
                stamp=STAMP_SUBMITTED,
            ),
            _edge(
                _DV,
                VoucherStatus.PENDING_CHECK,
                VoucherStatus.CHECKED,
                Capability.CHECK,
                notify_roles(
                    "director",
                    "owner",
                    title="Disbursement awaiting approval",
                    message="{label} was checked and needs approval.",
                ),
                stamp=STAMP_CHECKED,
            ),
            _edge(
                _DV,
                VoucherStatus.PENDING_CHECK,
                VoucherStatus.REJECTED,
                Capability.REJECT,
                _CREATOR_REJECTED,
                stamp=STAMP_REJECTED,
            ),
            _edge(
                _DV,
                VoucherStatus.CHECKED,
                VoucherStatus.APPROVED,
                Capability.APPROVE,
                notify_creator(title="Disbursement approved", message="Your {label} was approved."),
                publish("disbursement.approved"),
                stamp=STAMP_APPROVED,
            ),
            _edge(
                _DV,
                VoucherStatus.CHECKED,
                VoucherStatus.REJECTED,
                Capability.REJECT,
                _CREATOR_REJECTED,
                stamp=STAMP_REJECTED,
            ),
        ],
    ),
    _GD: _spec(
        _GD,
        GeneratedDocumentStatus.DRAFT,
        {GeneratedDocumentStatus.ARCHIVED},
        [
            _edge(
                _GD, GeneratedDocumentStatus.DRAFT, GeneratedDocumentStatus.FINAL, Capability.APPROVE, stamp=STAMP_APPROVED
            ),
            _edge(_GD, GeneratedDocumentStatus.DRAFT, GeneratedDocumentStatus.ARCHIVED, Capability.APPROVE),
            _edge(
                _GD,
                GeneratedDocumentStatus.FINAL,
                GeneratedDocumentStatus.SENT,
                Capability.SUBMIT,
                publish("generated_document.sent"),
                stamp=STAMP_SUBMITTED,
            ),
            _edge(_GD, GeneratedDocumentStatus.FINAL, GeneratedDocumentStatus.ARCHIVED, Capability.APPROVE),
            _edge(_GD, GeneratedDocumentStatus.SENT, GeneratedDocumentStatus.ARCHIVED, Capability.APPROVE),
        ],
    ),
    _WP: _spec(
        _WP,
        WorkPermitStatus.PENDING,
        {WorkPermitStatus.COMPLETED, WorkPermitStatus.EXPIRED, WorkPermitStatus.CANCELLED},
        [
            _edge(
                _WP,
                WorkPermitStatus.PENDING,
                WorkPermitStatus.SUPERVISOR_APPROVED,
                Capability.CHECK,
                notify_roles("hse", title="Work permit awaiting HSE approval", message="{label} was approved by a supervisor."),
                stamp=STAMP_CHECKED,
            ),
            _edge(
                _WP,
                WorkPermitStatus.SUPERVISOR_APPROVED,
                WorkPermitStatus.APPROVED,
                Capability.APPROVE,
                notify_creator(title="Work permit approved", message="Your {label} was approved."),
                stamp=STAMP_APPROVED,
            ),
            _edge(_WP, WorkPermitStatus.APPROVED, WorkPermitStatus.ACTIVE, Capability.SUBMIT),
            _edge(_WP, WorkPermitStatus.ACTIVE, WorkPermitStatus.COMPLETED, Capability.APPROVE),
            _edge(_WP, WorkPermitStatus.ACTIVE, WorkPermitStatus.EXPIRED, Capability.APPROVE),
            *[
                _edge(_WP, src, WorkPermitStatus.CANCELLED, Capability.REJECT, _CREATOR_REJECTED, stamp=STAMP_REJECTED)
                for src in (
                    WorkPermitStatus.PENDING,
                    WorkPermitStatus.SUPERVISOR_APPROVED,
                    WorkPermitStatus.APPROVED,
                    WorkPermitStatus.ACTIVE,
                )
            ],
        ],
    ),
}


def _validate(spec: DocumentTypeSpec) -> None:
    name = spec.document_type.value
    if spec.initial_status not in spec.statuses:
        raise ValueError(f"{name}: initial status {spec.initial_status} is not a declared status")
    if spec.initial_status in spec.terminal_statuses:
        raise ValueError(f"{name}: initial status cannot be terminal")
    seen: set[tuple[str, str]] = set()
    graph: dict[str, set[str]] = {s: set() for s in spec.statuses}
    for edge in spec.edges:
        if edge.document_type != spec.document_type:
            raise ValueError(f"{name}: edge {edge.edge_id} declared under the wrong type")
        if edge.from_status not in spec.statuses or edge.to_status not in spec.statuses:
            raise ValueError(f"{name}: edge {edge.edge_id} uses an undeclared status")
        if edge.from_status in spec.terminal_statuses:
            raise ValueError(f"{name}: edge {edge.edge_id} leaves a terminal status")
        if edge.stamp is not None and edge.stamp not in STAMPS:
            raise ValueError(f"{name}: edge {edge.edge_id} has unknown stamp {edge.stamp}")
        key = (edge.from_status, edge.to_status)
        if key in seen:
            raise ValueError(f"{name}: duplicate edge {edge.edge_id}")
        seen.add(key)
        graph[edge.from_status].add(edge.to_status)

    # Acyclic: an edge fires at most once per document, which side-effect
    # de-duplication relies on.
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in visiting:
            raise ValueError(f"{name}: transition graph has a cycle through {node}")
        visiting.add(node)
        for nxt in graph[node]:
            visit(nxt)
        visiting.discard(node)
        done.add(node)

    for status in spec.statuses:
        visit(status)

    for status in spec.terminal_statuses:
        if status not in spec.statuses:
            raise ValueError(f"{name}: terminal status {status} is not a declared status")


for _s in CATALOG.values():
    _validate(_s)


def _coerce_type(document_type: DocumentType | str) -> DocumentType:
    try:
        return DocumentType(document_type)
    except ValueError as exc:
        raise UnknownDocumentTypeError(str(document_type)) from exc


def spec_for(document_type: DocumentType | str) -> DocumentTypeSpec:
    doc_type = _coerce_type(document_type)
    try:
        return CATALOG[doc_type]
    except KeyError as exc:
        raise UnknownDocumentTypeError(doc_type.value) from exc


def edges_for(document_type: DocumentType | str, from_status: str) -> frozenset[TransitionEdge]:
    spec = spec_for(document_type)
    return frozenset(e for e in spec.edges if e.from_status == from_status)


def find_edge(document_type: DocumentType | str, from_status: str, to_status: str) -> TransitionEdge | None:
    for edge in spec_for(document_type).edges:
        if edge.from_status == from_status and edge.to_status == to_status:
            return edge
    return None


def is_terminal(document_type: DocumentType | str, status: str) -> bool:
    return status in spec_for(document_type).terminal_statuses


def initial_status(document_type: DocumentType | str) -> str:
    return spec_for(document_type).initial_status


def statuses_of(document_type: DocumentType | str) -> frozenset[str]:
    return spec_for(document_type).statuses


def is_valid_status(document_type: DocumentType | str, status: str) -> bool:
    return status in statuses_of(document_type)
