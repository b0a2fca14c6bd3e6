from __future__ import annotations

from typing import Any

CORE_EVENTS = {
    "disbursement.approved",
    "generated_document.sent",
}

EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    "disbursement.approved": {"from_status", "to_status", "edge_id"},
    "generated_document.sent": {"from_status", "to_status", "edge_id"},
}


def is_valid_event_type(event_type: str) -> bool:
    return event_type in CORE_EVENTS


def validate_event_payload(event_type: str, payload: dict[str, Any]) -> None:
    if not is_valid_event_type(event_type):
        raise ValueError(f"Unsupported event type: {event_type}")

    required = EVENT_REQUIRED_KEYS.get(event_type)
    if not required:
        return

    missing = sorted(k for k in required if k not in payload)
    if missing:
        raise ValueError(f"Event payload missing required keys for {event_type}: {missing}")


def build_event_envelope(
    *,
    event_type: str,
    document_type: str,
    document_id: str,
    actor_id: str | None,
    payload: dict[str, Any],
    dedup_key: str | None = None,
    occurred_at: str | None = None,
) -> dict[str, Any]:
    validate_event_payload(event_type, payload)
    return {
        "event_type": event_type,
        "document_type": document_type,
        "document_id": document_id,
        "actor_id": actor_id,
        "payload": payload,
        "dedup_key": dedup_key,
        "occurred_at": occurred_at,
    }
