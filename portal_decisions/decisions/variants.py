"""Pydantic models describing the decision workflow variants."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .authorization import Capability


class OwnerLookup(BaseModel):
    """Where the owning resource of a record lives.

    With a ``table`` the owner and title are read from that table through
    ``reference_field`` on the record; without one they are read from the
    record itself.
    """

    model_config = ConfigDict(frozen=True)

    table: str | None = None
    reference_field: str | None = None
    owner_field: str
    title_field: str

    @model_validator(mode="after")
    def ensure_reference(self):
        if self.table and not self.reference_field:
            raise ValueError("owner lookups through a table need a reference_field")
        return self


class WorkflowVariant(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    table: str
    label: str
    plural_label: str
    notification_prefix: str
    initial_status: str = "pending"
    states: List[str]
    decisions: Dict[str, str]
    timestamp_fields: List[str] = Field(default_factory=lambda: ["updated_at"])
    response_timestamp_field: str
    notes_field: str | None = None
    procedure: str | None = None
    subject_field: str
    recipient_field: str
    owner: OwnerLookup
    unrestricted_capability: Capability
    owned_capability: Capability
    denied_message: str

    @field_validator("states")
    @classmethod
    def validate_states(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("states must be unique")
        return value

    @model_validator(mode="after")
    def validate_decisions(self):
        if self.initial_status not in self.states:
            raise ValueError("initial_status must be one of the states")
        for decision, target in self.decisions.items():
            if target not in self.states or target == self.initial_status:
                raise ValueError(f"decision '{decision}' must target a terminal state")
        if self.response_timestamp_field not in self.timestamp_fields:
            raise ValueError("response_timestamp_field must be listed in timestamp_fields")
        return self

    @property
    def terminal_states(self) -> frozenset[str]:
        return frozenset(state for state in self.states if state != self.initial_status)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal_states

    def current_status(self, record: Mapping[str, Any]) -> str:
        # Rows written before the status column was enforced read as pending.
        return record.get("status") or self.initial_status

    def target_for(self, decision: str) -> str:
        try:
            return self.decisions[decision]
        except KeyError as exc:
            raise ValueError(f"{self.name} records cannot be '{decision}'") from exc

    def transition_fields(self, target_status: str, *, at: datetime, notes: str | None = None) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"status": target_status}
        for field in self.timestamp_fields:
            fields[field] = at
        if self.notes_field:
            fields[self.notes_field] = (notes or "").strip() or None
        return fields


APPLICATIONS = WorkflowVariant(
    name="applications",
    table="applications",
    label="application",
    plural_label="applications",
    notification_prefix="application",
    states=["pending", "approved", "rejected"],
    decisions={"approve": "approved", "reject": "rejected"},
    timestamp_fields=["updated_at", "reviewed_at"],
    response_timestamp_field="reviewed_at",
    procedure="admin_update_application_status",
    subject_field="user_id",
    recipient_field="user_id",
    owner=OwnerLookup(
        table="opportunities",
        reference_field="opportunity_id",
        owner_field="organizer_id",
        title_field="title",
    ),
    unrestricted_capability=Capability.DECIDE_ANY_APPLICATION,
    owned_capability=Capability.DECIDE_OWNED_APPLICATION,
    denied_message="You can only review applications to your own opportunities.",
)

FORM_RESPONSES = WorkflowVariant(
    name="form_responses",
    table="application_form_responses",
    label="brief response",
    plural_label="brief responses",
    notification_prefix="form_response",
    states=["pending", "approved", "rejected"],
    decisions={"approve": "approved", "reject": "rejected"},
    timestamp_fields=["updated_at", "reviewed_at"],
    response_timestamp_field="reviewed_at",
    procedure="admin_update_form_response_status",
    subject_field="user_id",
    recipient_field="user_id",
    owner=OwnerLookup(
        table="opportunities",
        reference_field="opportunity_id",
        owner_field="organizer_id",
        title_field="title",
    ),
    unrestricted_capability=Capability.DECIDE_ANY_APPLICATION,
    owned_capability=Capability.DECIDE_OWNED_APPLICATION,
    denied_message="You can only review brief responses to your own opportunities.",
)

BOOKING_REQUESTS = WorkflowVariant(
    name="booking_requests",
    table="booking_requests",
    label="booking request",
    plural_label="booking requests",
    notification_prefix="booking",
    states=["pending", "accepted", "declined", "cancelled"],
    decisions={"accept": "accepted", "decline": "declined"},
    timestamp_fields=["updated_at", "dj_response_at"],
    response_timestamp_field="dj_response_at",
    notes_field="dj_response_notes",
    subject_field="dj_id",
    recipient_field="brand_id",
    owner=OwnerLookup(owner_field="dj_id", title_field="event_title"),
    unrestricted_capability=Capability.RESPOND_ANY_BOOKING,
    owned_capability=Capability.RESPOND_ADDRESSED_BOOKING,
    denied_message="You don't have access to this booking request.",
)

VARIANTS: Dict[str, WorkflowVariant] = {
    variant.name: variant for variant in (APPLICATIONS, FORM_RESPONSES, BOOKING_REQUESTS)
}


def get_variant(name: str) -> WorkflowVariant:
    try:
        return VARIANTS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown workflow variant '{name}'") from exc
