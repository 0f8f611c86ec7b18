"""Typed decision errors and their user-facing wording."""

from __future__ import annotations


class DecisionError(Exception):
    """Base class for errors surfaced to the acting user."""

    code = "decision_error"
    title = "Error"
    retryable = False

    def __init__(self, message: str, *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.record_id = record_id


class RecordNotFound(DecisionError):
    code = "not_found"
    title = "Not Found"


class AccessDenied(DecisionError):
    code = "access_denied"
    title = "Access Denied"


class InvalidDecision(DecisionError):
    code = "invalid_decision"
    title = "Invalid Decision"


class AlreadyDecided(DecisionError):
    code = "already_decided"
    title = "Already Decided"

    def __init__(self, message: str, *, record_id: str | None = None, current_status: str | None = None) -> None:
        super().__init__(message, record_id=record_id)
        self.current_status = current_status


class SchemaHazard(DecisionError):
    """The backend rejected the write because a policy or view references a missing column."""

    code = "schema_hazard"
    title = "Database Update Required"

    def __init__(self, message: str, *, record_id: str | None = None, migration: str, detail: str | None = None) -> None:
        super().__init__(message, record_id=record_id)
        self.migration = migration
        self.detail = detail

    @property
    def remediation(self) -> str:
        return (
            f"Apply the migration {self.migration} to the database, "
            "then confirm the acting account has the correct role."
        )


class TransitionFailed(DecisionError):
    code = "transition_failed"
    title = "Update Failed"

    def __init__(self, message: str, *, record_id: str | None = None, errors: list[str] | None = None) -> None:
        super().__init__(message, record_id=record_id)
        self.errors = list(errors or [])


class DecisionTimeout(DecisionError):
    code = "timeout"
    title = "Request Timed Out"
    retryable = True


class SideEffectFailed(DecisionError):
    """A notification or email failed after the decision was committed."""

    code = "side_effect_failed"
    title = "Follow-up Not Sent"

    def __init__(self, message: str, *, record_id: str | None = None, effect: str) -> None:
        super().__init__(message, record_id=record_id)
        self.effect = effect
