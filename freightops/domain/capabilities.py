from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class Capability(str, Enum):
    CREATE = "create"
    SUBMIT = "submit"
    CHECK = "check"
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


# Capabilities whose holder may never act on a document they authored.
SEGREGATED_CAPABILITIES = frozenset({Capability.CHECK, Capability.APPROVE})

MAKER = frozenset({Capability.CREATE, Capability.SUBMIT, Capability.EDIT})
CHECKER = frozenset({Capability.CHECK, Capability.REJECT})
APPROVER = frozenset({Capability.APPROVE, Capability.REJECT})

ROLE_OWNER = "owner"
ROLE_DIRECTOR = "director"
ROLE_SYSTEM = "system"

MAKER_ROLES = frozenset(
    {"administration", "finance", "ops", "sales", "hse", "engineer", "customs", "hr", "admin"}
)
CHECKER_ROLES = frozenset(
    {"manager", "finance_manager", "operations_manager", "marketing_manager", "supervisor"}
)
APPROVER_ROLES = frozenset({ROLE_DIRECTOR})

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    **{role: MAKER for role in MAKER_ROLES},
    **{role: CHECKER for role in CHECKER_ROLES},
    **{role: APPROVER for role in APPROVER_ROLES},
    ROLE_OWNER: frozenset(Capability),
    ROLE_SYSTEM: frozenset({Capability.SUBMIT, Capability.APPROVE}),
}

FLAG_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "can_create": MAKER,
    "can_check": CHECKER,
    "can_approve": APPROVER,
}


def normalize_role(role: str | None) -> str:
    return str(role or "").strip().lower()


@dataclass(frozen=True)
class Actor:
    """An acting principal.

    ``role`` is the effective role for this request (it may differ from the
    persisted role during preview or impersonation). ``flags`` are
    instance-specific grants such as ``can_check``.
    """

    id: str
    role: str
    flags: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, actor_id: str, role: str, flags: Iterable[str] = ()) -> "Actor":
        cleaned = frozenset(str(f).strip().lower() for f in flags if str(f).strip())
        return cls(id=str(actor_id).strip(), role=normalize_role(role), flags=cleaned)


def capabilities_of(actor: Actor) -> frozenset[Capability]:
    # Derived on every call; the effective role can change between requests.
    caps: set[Capability] = set(ROLE_CAPABILITIES.get(normalize_role(actor.role), frozenset()))
    for flag in actor.flags:
        caps |= FLAG_CAPABILITIES.get(flag, frozenset())
    return frozenset(caps)


def has_capability(actor: Actor, capability: Capability) -> bool:
    return capability in capabilities_of(actor)
