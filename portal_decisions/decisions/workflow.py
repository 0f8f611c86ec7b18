"""Decision workflows exposed to the portal: approve, reject, accept, decline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from portal_decisions.config import AppSettings, get_settings
from portal_decisions.feedback import DESTRUCTIVE, WARNING, Feedback, FeedbackSink, NullFeedback
from portal_decisions.store import Record, StatusStore, StoreError

from .authorization import Actor
from .errors import DecisionError, SchemaHazard
from .procedures import default_procedures
from .side_effects import DecisionMailer, SideEffectDispatcher
from .transition import DecisionTransition, TransitionOutcome
from .variants import APPLICATIONS, BOOKING_REQUESTS, FORM_RESPONSES, WorkflowVariant

_WARNING_TITLES = {
    "notification": "Notification Not Sent",
    "email": "Email Not Sent",
}


@dataclass
class DecisionResult:
    ok: bool
    outcome: TransitionOutcome | None = None
    record: Record | None = None
    error: DecisionError | None = None
    feedback: List[Feedback] = field(default_factory=list)

    @property
    def warnings(self) -> List[Feedback]:
        return [item for item in self.feedback if item.variant == WARNING]


class DecisionWorkflow:
    """Run a decision end to end and tell the acting user how it went."""

    def __init__(
        self,
        variant: WorkflowVariant,
        *,
        transition: DecisionTransition,
        feedback: FeedbackSink | None = None,
        on_refresh: Callable[[], None] | None = None,
    ) -> None:
        self.variant = variant
        self._transition = transition
        self._feedback = feedback or NullFeedback()
        self._on_refresh = on_refresh

    @property
    def store(self) -> StatusStore:
        return self._transition.store

    def decide(
        self,
        decision: str,
        record_id: str,
        *,
        actor: Actor,
        notes: str | None = None,
        feedback: FeedbackSink | None = None,
    ) -> DecisionResult:
        sink = feedback or self._feedback
        trace_id = str(uuid4())
        bind_contextvars(trace_id=trace_id)
        log = structlog.get_logger().bind(
            workflow=self.variant.name,
            record_id=record_id,
            decision=decision,
            actor_id=actor.user_id,
        )
        result = DecisionResult(ok=False)

        def push(item: Feedback) -> None:
            result.feedback.append(item)
            sink.push(item)

        try:
            try:
                outcome = self._transition.run(self.variant, record_id, decision, actor=actor, notes=notes)
            except SchemaHazard as exc:
                push(Feedback(exc.title, f"{exc.message} {exc.remediation}", DESTRUCTIVE))
                result.error = exc
                return result
            except DecisionError as exc:
                log.info("decision_rejected", code=exc.code, retryable=exc.retryable)
                push(Feedback(exc.title, exc.message, DESTRUCTIVE))
                result.error = exc
                return result

            result.ok = True
            result.outcome = outcome
            label = self.variant.label.capitalize()
            if outcome.changed:
                push(Feedback("Success", f"{label} {outcome.status} successfully!"))
            else:
                push(Feedback("No Change", f"This {self.variant.label} is already {outcome.status}."))

            for failure in outcome.dispatch.failures if outcome.dispatch else []:
                push(Feedback(_WARNING_TITLES.get(failure.effect, failure.title), failure.message, WARNING))

            log.info("decision_recorded", status=outcome.status, changed=outcome.changed, write_path=outcome.write_path)
            result.record = self._refresh(record_id, log)
            return result
        finally:
            unbind_contextvars("trace_id")

    def list_records(self, *, status: str | None = None, limit: int | None = None) -> List[Record]:
        """Re-read the variant's records, newest first."""

        if status is not None and status not in self.variant.states:
            raise ValueError(f"Unknown {self.variant.label} status '{status}'")
        return self.store.list_records(self.variant.table, status=status, limit=limit)

    def _refresh(self, record_id: str, log) -> Record | None:
        if self._on_refresh is not None:
            self._on_refresh()
        try:
            return self.store.get_record(self.variant.table, record_id)
        except StoreError as exc:
            log.warning("decision_refresh_failed", error=str(exc))
            return None


class ApplicationWorkflow(DecisionWorkflow):
    def approve(self, record_id: str, *, actor: Actor, feedback: FeedbackSink | None = None) -> DecisionResult:
        return self.decide("approve", record_id, actor=actor, feedback=feedback)

    def reject(self, record_id: str, *, actor: Actor, feedback: FeedbackSink | None = None) -> DecisionResult:
        return self.decide("reject", record_id, actor=actor, feedback=feedback)


class BookingRequestWorkflow(DecisionWorkflow):
    def accept(
        self,
        record_id: str,
        *,
        actor: Actor,
        notes: str | None = None,
        feedback: FeedbackSink | None = None,
    ) -> DecisionResult:
        return self.decide("accept", record_id, actor=actor, notes=notes, feedback=feedback)

    def decline(
        self,
        record_id: str,
        *,
        actor: Actor,
        notes: str | None = None,
        feedback: FeedbackSink | None = None,
    ) -> DecisionResult:
        return self.decide("decline", record_id, actor=actor, notes=notes, feedback=feedback)


def build_transition(settings: AppSettings | None = None, *, store: StatusStore | None = None) -> DecisionTransition:
    """Wire the store, mailer and dispatcher from configuration."""

    settings = settings or get_settings()
    if store is None:
        procedures = default_procedures() if settings.privileged_updates_enabled else None
        store = StatusStore(procedures=procedures)
    dispatcher = SideEffectDispatcher(
        store=store,
        mailer=DecisionMailer.from_settings(settings),
        timeout=settings.remote_call_timeout,
    )
    return DecisionTransition(
        store=store,
        dispatcher=dispatcher,
        schema_fix_migration=settings.schema_fix_migration,
        timeout=settings.remote_call_timeout,
    )


def build_workflows(
    settings: AppSettings | None = None,
    *,
    transition: DecisionTransition | None = None,
) -> Dict[str, DecisionWorkflow]:
    transition = transition or build_transition(settings)
    return {
        APPLICATIONS.name: ApplicationWorkflow(APPLICATIONS, transition=transition),
        FORM_RESPONSES.name: ApplicationWorkflow(FORM_RESPONSES, transition=transition),
        BOOKING_REQUESTS.name: BookingRequestWorkflow(BOOKING_REQUESTS, transition=transition),
    }
