"""Closed role and capability model used by the authorization gate."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Final, Protocol
from uuid import UUID


class Role(str, enum.Enum):
    """Roles an acting identity can hold."""

    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    STAFF = "STAFF"
    SYSTEM = "SYSTEM"


class Action(str, enum.Enum):
    """Guarded operations of the booking engine."""

    MANAGE_SLOTS = "MANAGE_SLOTS"
    CONFIRM_BOOKING = "CONFIRM_BOOKING"
    CANCEL_BOOKING = "CANCEL_BOOKING"
    COMPLETE_BOOKING = "COMPLETE_BOOKING"
    RECORD_PAYMENT = "RECORD_PAYMENT"
    ISSUE_INVOICE = "ISSUE_INVOICE"
    MANAGE_PHOTOS = "MANAGE_PHOTOS"
    VIEW_BOOKINGS = "VIEW_BOOKINGS"


_LEGACY_ROLES: Final[dict[str, Role]] = {"admin": Role.ADMIN, "staff": Role.STAFF}

CAPABILITIES: Final[dict[Role, frozenset[Action]]] = {
    Role.SUPER_ADMIN: frozenset(Action),
    Role.ADMIN: frozenset(Action),
    Role.MANAGER: frozenset({Action.VIEW_BOOKINGS}),
    Role.STAFF: frozenset(
        {Action.COMPLETE_BOOKING, Action.VIEW_BOOKINGS, Action.MANAGE_PHOTOS}
    ),
    Role.SYSTEM: frozenset({Action.CANCEL_BOOKING}),
}

# Roles whose capabilities only apply to their assigned provider.
SCOPED_ROLES: Final[frozenset[Role]] = frozenset({Role.STAFF})


def normalize_role(raw: str | None) -> Role:
    """Map a raw role string onto the closed role set, defaulting to STAFF."""

    if not raw:
        return Role.STAFF
    try:
        return Role(raw.strip().upper())
    except ValueError:
        return _LEGACY_ROLES.get(raw.strip().lower(), Role.STAFF)


@dataclass(frozen=True)
class Actor:
    """Identity performing an operation."""

    id: str
    role: Role
    provider_id: UUID | None = None

    @property
    def label(self) -> str:
        return f"{self.role.value}:{self.id}"


SYSTEM_ACTOR: Final[Actor] = Actor(id="scheduler", role=Role.SYSTEM)


class AuthorizationGate(Protocol):
    def is_allowed(self, actor: Actor, action: Action, scope_id: UUID | None) -> bool:
        ...


class CapabilityGate:
    """Authorization gate backed by the static capability table."""

    def is_allowed(self, actor: Actor, action: Action, scope_id: UUID | None) -> bool:
        if action not in CAPABILITIES.get(actor.role, frozenset()):
            return False
        if actor.role in SCOPED_ROLES and scope_id is not None:
            return actor.provider_id == scope_id
        return True


__all__ = [
    "Action",
    "Actor",
    "AuthorizationGate",
    "CAPABILITIES",
    "CapabilityGate",
    "Role",
    "SYSTEM_ACTOR",
    "normalize_role",
]
