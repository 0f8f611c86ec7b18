"""Role capabilities and the check deciding who may decide on a record."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, FrozenSet, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from .variants import WorkflowVariant


class Capability(str, Enum):
    DECIDE_ANY_APPLICATION = "decide_any_application"
    DECIDE_OWNED_APPLICATION = "decide_owned_application"
    RESPOND_ANY_BOOKING = "respond_any_booking"
    RESPOND_ADDRESSED_BOOKING = "respond_addressed_booking"


class Role(str, Enum):
    ADMIN = "admin"
    BRAND = "brand"
    DJ = "dj"

    @classmethod
    def parse(cls, value: str | None) -> "Role":
        # Profiles without a role predate role assignment and belong to staff.
        if value is None or not value.strip():
            return cls.ADMIN
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown role '{value}'") from exc

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return ROLE_CAPABILITIES[self]


ROLE_CAPABILITIES: Mapping[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset({Capability.DECIDE_ANY_APPLICATION, Capability.RESPOND_ANY_BOOKING}),
    Role.DJ: frozenset({Capability.DECIDE_ANY_APPLICATION, Capability.RESPOND_ADDRESSED_BOOKING}),
    Role.BRAND: frozenset({Capability.DECIDE_OWNED_APPLICATION}),
}


@dataclass(frozen=True)
class Actor:
    """The authenticated user acting on a record."""

    user_id: str
    role: Role
    display_name: str | None = None

    @classmethod
    def from_profile(cls, profile: Mapping[str, object]) -> "Actor":
        role = Role.parse(profile.get("role"))  # type: ignore[arg-type]
        name_keys = ("brand_name",) if role is Role.BRAND else ("dj_name",)
        display_name = None
        for key in name_keys + ("first_name",):
            value = profile.get(key)
            if isinstance(value, str) and value.strip():
                display_name = value.strip()
                break
        return cls(user_id=str(profile["id"]), role=role, display_name=display_name)


@dataclass(frozen=True)
class OwningResource:
    """Who owns the thing being decided on, and what to call it."""

    owner_id: str | None
    title: str | None = None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None


def can_decide(actor: Actor, variant: "WorkflowVariant", resource: OwningResource | None) -> AccessDecision:
    """Return whether *actor* may move a *variant* record to a terminal state."""

    capabilities = actor.role.capabilities
    if variant.unrestricted_capability in capabilities:
        return AccessDecision(allowed=True)

    if variant.owned_capability not in capabilities:
        return AccessDecision(
            allowed=False,
            reason=f"Your account cannot respond to {variant.plural_label}.",
        )

    if resource is None or not resource.owner_id:
        return AccessDecision(
            allowed=False,
            reason=f"We couldn't verify that this {variant.label} belongs to you.",
        )

    if resource.owner_id != actor.user_id:
        return AccessDecision(allowed=False, reason=variant.denied_message)

    return AccessDecision(allowed=True)
