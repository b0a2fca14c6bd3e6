from __future__ import annotations

from enum import Enum


class DocumentType(str, Enum):
    DISBURSEMENT_VOUCHER = "disbursement-voucher"
    DELIVERY_NOTE = "delivery-note"
    HANDOVER_CERTIFICATE = "handover-certificate"
    GENERATED_DOCUMENT = "generated-document"
    WORK_PERMIT = "work-permit"


class VoucherStatus(str, Enum):
    DRAFT = "draft"
    PENDING_CHECK = "pending_check"
    CHECKED = "checked"
    APPROVED = "approved"
    REJECTED = "rejected"


class DeliveryNoteStatus(str, Enum):
    ISSUED = "issued"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"


class HandoverStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"
    ARCHIVED = "archived"


class GeneratedDocumentStatus(str, Enum):
    DRAFT = "draft"
    FINAL = "final"
    SENT = "sent"
    ARCHIVED = "archived"


class WorkPermitStatus(str, Enum):
    PENDING = "pending"
    SUPERVISOR_APPROVED = "supervisor_approved"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


STATUS_ENUMS: dict[DocumentType, type[Enum]] = {
    DocumentType.DISBURSEMENT_VOUCHER: VoucherStatus,
    DocumentType.DELIVERY_NOTE: DeliveryNoteStatus,
    DocumentType.HANDOVER_CERTIFICATE: HandoverStatus,
    DocumentType.GENERATED_DOCUMENT: GeneratedDocumentStatus,
    DocumentType.WORK_PERMIT: WorkPermitStatus,
}
