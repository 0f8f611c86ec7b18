"""Decision workflow variants, transition and side effects."""

from .authorization import Actor, Capability, Role, can_decide
from .errors import (
    AccessDenied,
    AlreadyDecided,
    DecisionError,
    DecisionTimeout,
    InvalidDecision,
    RecordNotFound,
    SchemaHazard,
    SideEffectFailed,
    TransitionFailed,
)
from .variants import APPLICATIONS, BOOKING_REQUESTS, FORM_RESPONSES, VARIANTS, WorkflowVariant, get_variant
from .workflow import (
    ApplicationWorkflow,
    BookingRequestWorkflow,
    DecisionResult,
    DecisionWorkflow,
    build_transition,
    build_workflows,
)

__all__ = [
    "Actor",
    "Capability",
    "Role",
    "can_decide",
    "AccessDenied",
    "AlreadyDecided",
    "DecisionError",
    "DecisionTimeout",
    "InvalidDecision",
    "RecordNotFound",
    "SchemaHazard",
    "SideEffectFailed",
    "TransitionFailed",
    "APPLICATIONS",
    "BOOKING_REQUESTS",
    "FORM_RESPONSES",
    "VARIANTS",
    "WorkflowVariant",
    "get_variant",
    "ApplicationWorkflow",
    "BookingRequestWorkflow",
    "DecisionResult",
    "DecisionWorkflow",
    "build_transition",
    "build_workflows",
]
