"""Tests for decision transitions against the status store."""

from pathlib import Path
import sys
import time

import pytest
import structlog
from sqlalchemy import func, select, update
from structlog.testing import capture_logs

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal_decisions import config  # noqa: E402
from portal_decisions.db import Base, get_engine, get_session_factory, session_scope  # noqa: E402
from portal_decisions.decisions.authorization import Actor, Role  # noqa: E402
from portal_decisions.decisions.errors import (  # noqa: E402
    AccessDenied,
    AlreadyDecided,
    DecisionTimeout,
    InvalidDecision,
    RecordNotFound,
    SchemaHazard,
    TransitionFailed,
)
from portal_decisions.decisions.procedures import default_procedures  # noqa: E402
from portal_decisions.decisions.side_effects import DecisionMailer, SideEffectDispatcher  # noqa: E402
from portal_decisions.decisions.transition import DecisionTransition, is_schema_hazard  # noqa: E402
from portal_decisions.decisions.variants import APPLICATIONS, BOOKING_REQUESTS, FORM_RESPONSES  # noqa: E402
from portal_decisions.email_client import EmailClient  # noqa: E402
from portal_decisions.models import (  # noqa: E402
    Application,
    BookingRequest,
    DecisionHistory,
    FormResponse,
    Notification,
    Opportunity,
    UserProfile,
)
from portal_decisions.store import ProcedureResult, StatusStore, StoreError, WriteResult  # noqa: E402

STAFF = Actor("ADMIN1", Role.ADMIN, display_name="Sam")
OWNER = Actor("BRAND1", Role.BRAND, display_name="Warehouse")
OTHER_BRAND = Actor("BRAND2", Role.BRAND, display_name="Basement")
DJ = Actor("DJ1", Role.DJ, display_name="Nova")
OTHER_DJ = Actor("DJ2", Role.DJ, display_name="Echo")


class RecordingSender:
    def __init__(self, error: Exception | None = None):
        self.calls: list[dict] = []
        self.error = error

    def __call__(self, params: dict):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return {"id": f"email-{len(self.calls)}"}


@pytest.fixture(autouse=True)
def setup_database(monkeypatch, tmp_path):
    db_path = tmp_path / "transitions.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()

    engine = get_engine()
    Base.metadata.create_all(engine)

    with session_scope() as session:
        session.add_all(
            [
                UserProfile(id="ADMIN1", role="admin", email="staff@rhood.io", first_name="Sam"),
                UserProfile(id="BRAND1", role="brand", email="brand@example.com", brand_name="Warehouse"),
                UserProfile(id="BRAND2", role="brand", email="other@example.com", brand_name="Basement"),
                UserProfile(
                    id="DJ1",
                    role="dj",
                    email="dj@example.com",
                    first_name="Alex",
                    last_name="Rivera",
                    dj_name="Nova",
                ),
                Opportunity(id="O1", title="Friday Warehouse Rave", organizer_id="BRAND1"),
                Application(id="A1", opportunity_id="O1", user_id="DJ1"),
                Application(id="A2", opportunity_id="GONE", user_id="DJ1"),
                FormResponse(id="F1", form_id="FORM1", user_id="DJ1", opportunity_id="O1"),
                BookingRequest(id="B1", brand_id="BRAND1", dj_id="DJ1", event_title="Summer Terrace"),
            ]
        )

    yield

    Base.metadata.drop_all(engine)
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


@pytest.fixture
def sender():
    return RecordingSender()


def _transition(*, store=None, sender=None, timeout=2.0):
    store = store or StatusStore(procedures=default_procedures())
    client = EmailClient(from_address="R/HOOD <hello@rhood.io>", sender=sender or RecordingSender())
    dispatcher = SideEffectDispatcher(
        store=store,
        mailer=DecisionMailer(client=client, portal_url="https://portal.test"),
        timeout=timeout,
    )
    return DecisionTransition(
        store=store,
        dispatcher=dispatcher,
        schema_fix_migration="20250601000000_fix_status_update_policies.sql",
        timeout=timeout,
    )


def _row(model, record_id):
    with session_scope() as session:
        row = session.get(model, record_id)
        return {column.key: getattr(row, column.key) for column in model.__table__.columns}


def _notifications():
    with session_scope() as session:
        return [(row.user_id, row.type, row.message) for row in session.scalars(select(Notification)).all()]


def _count(model):
    with session_scope() as session:
        return session.scalar(select(func.count()).select_from(model))


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def _clear_status(model, record_id):
    with session_scope() as session:
        session.execute(update(model).where(model.id == record_id).values(status=None))


def test_staff_approval_uses_privileged_procedure(sender):
    transition = _transition(sender=sender)

    with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
        outcome = transition.run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert outcome.changed
    assert (outcome.previous_status, outcome.status) == ("pending", "approved")
    assert outcome.write_path == "privileged"
    assert outcome.dispatch.ok

    application = _row(Application, "A1")
    assert application["status"] == "approved"
    assert application["reviewed_at"] is not None

    assert _notifications() == [
        (
            "DJ1",
            "application_approved",
            'Congratulations! Your application for "Friday Warehouse Rave" has been approved. '
            "Check your dashboard for next steps.",
        )
    ]
    assert [call["to"] for call in sender.calls] == [["dj@example.com"]]

    with session_scope() as session:
        history = session.scalars(select(DecisionHistory)).one()
        assert (history.record_id, history.changed_by, history.write_path) == ("A1", "ADMIN1", "privileged")

    committed = [entry for entry in logs if entry["event"] == "decision_write_committed"]
    assert committed and committed[0]["write_path"] == "privileged"


def test_missing_procedure_falls_back_to_direct_update(sender):
    transition = _transition(store=StatusStore(), sender=sender)

    outcome = transition.run(APPLICATIONS, "A1", "reject", actor=STAFF)

    assert outcome.write_path == "direct"
    application = _row(Application, "A1")
    assert application["status"] == "rejected"
    assert application["reviewed_at"] is not None
    assert [entry[1] for entry in _notifications()] == ["application_rejected"]
    assert sender.calls[0]["subject"] == "Update on Friday Warehouse Rave"


def test_procedure_reporting_unknown_function_falls_back():
    def not_deployed(session, record_id, new_status):
        return ProcedureResult(
            success=False,
            error="Could not find the function public.admin_update_application_status in the schema cache",
        )

    store = StatusStore(procedures={"admin_update_application_status": not_deployed})

    outcome = _transition(store=store).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert outcome.write_path == "direct"
    assert _row(Application, "A1")["status"] == "approved"


def test_privileged_and_direct_paths_leave_same_state():
    _transition().run(APPLICATIONS, "A1", "approve", actor=STAFF)
    _transition(store=StatusStore()).run(FORM_RESPONSES, "F1", "approve", actor=STAFF)

    application = _row(Application, "A1")
    form_response = _row(FormResponse, "F1")
    assert application["status"] == form_response["status"] == "approved"
    assert application["reviewed_at"] is not None
    assert form_response["reviewed_at"] is not None


def test_brand_owner_may_approve_application():
    outcome = _transition().run(APPLICATIONS, "A1", "approve", actor=OWNER)

    assert outcome.status == "approved"


def test_brand_cannot_decide_on_another_brands_application(sender):
    before = _row(Application, "A1")

    with pytest.raises(AccessDenied) as err:
        _transition(sender=sender).run(APPLICATIONS, "A1", "approve", actor=OTHER_BRAND)

    assert err.value.message == "You can only review applications to your own opportunities."
    assert _row(Application, "A1") == before
    assert _notifications() == []
    assert sender.calls == []
    assert _count(DecisionHistory) == 0


def test_unresolvable_opportunity_denies_brands_but_not_staff():
    with pytest.raises(AccessDenied):
        _transition().run(APPLICATIONS, "A2", "approve", actor=OWNER)

    outcome = _transition().run(APPLICATIONS, "A2", "approve", actor=STAFF)

    assert outcome.status == "approved"
    assert [entry[2] for entry in _notifications()][0].startswith('Congratulations! Your application for "this opportunity"')


def test_dj_declines_booking_with_notes(sender):
    outcome = _transition(sender=sender).run(
        BOOKING_REQUESTS,
        "B1",
        "decline",
        actor=DJ,
        notes="schedule conflict",
    )

    assert outcome.write_path == "direct"
    booking = _row(BookingRequest, "B1")
    assert booking["status"] == "declined"
    assert booking["dj_response_notes"] == "schedule conflict"
    assert booking["dj_response_at"] is not None

    assert _notifications() == [
        (
            "BRAND1",
            "booking_declined",
            'DJ Nova declined your booking request for "Summer Terrace". Notes: schedule conflict',
        )
    ]
    assert sender.calls[0]["to"] == ["brand@example.com"]
    assert sender.calls[0]["subject"] == "Booking declined: Summer Terrace"


def test_only_addressed_dj_may_respond_to_booking():
    for actor in (OTHER_DJ, OWNER):
        with pytest.raises(AccessDenied):
            _transition().run(BOOKING_REQUESTS, "B1", "accept", actor=actor)

    assert _row(BookingRequest, "B1")["status"] == "pending"


def test_missing_record_is_not_found(sender):
    with pytest.raises(RecordNotFound):
        _transition(sender=sender).run(APPLICATIONS, "NOPE", "approve", actor=STAFF)

    assert _count(Application) == 2
    assert _notifications() == []
    assert sender.calls == []


def test_unknown_decision_is_invalid():
    with pytest.raises(InvalidDecision):
        _transition().run(BOOKING_REQUESTS, "B1", "approve", actor=DJ)


def test_notification_failure_keeps_decision(monkeypatch, sender):
    store = StatusStore(procedures=default_procedures())

    def failing_notification(**kwargs):
        raise StoreError("new row violates row-level security policy")

    monkeypatch.setattr(store, "create_notification", failing_notification)

    outcome = _transition(store=store, sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert _row(Application, "A1")["status"] == "approved"
    assert [failure.effect for failure in outcome.dispatch.failures] == ["notification"]
    assert len(sender.calls) == 1


def test_email_failure_keeps_decision_and_notification():
    sender = RecordingSender(error=OSError("connection reset"))

    outcome = _transition(sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert _row(Application, "A1")["status"] == "approved"
    assert len(_notifications()) == 1
    assert [failure.effect for failure in outcome.dispatch.failures] == ["email"]


def test_schema_hazard_when_every_path_trips_on_missing_column(monkeypatch, sender):
    store = StatusStore()
    monkeypatch.setattr(
        store,
        "update_record",
        lambda *args, **kwargs: WriteResult(error='record "new" has no field "venue"'),
    )

    with pytest.raises(SchemaHazard) as err:
        _transition(store=store, sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.migration == "20250601000000_fix_status_update_policies.sql"
    assert "20250601000000_fix_status_update_policies.sql" in err.value.remediation
    assert err.value.detail == 'record "new" has no field "venue"'
    assert _row(Application, "A1")["status"] == "pending"
    assert _notifications() == []
    assert sender.calls == []


def test_generic_write_failures_are_reported_together(monkeypatch):
    def denied(session, record_id, new_status):
        return ProcedureResult(success=False, error="permission denied for function")

    store = StatusStore(procedures={"admin_update_application_status": denied})
    monkeypatch.setattr(
        store,
        "update_record",
        lambda *args, **kwargs: WriteResult(error="permission denied for table applications"),
    )

    with pytest.raises(TransitionFailed) as err:
        _transition(store=store).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.errors == ["permission denied for function", "permission denied for table applications"]


def test_requesting_current_state_is_a_no_op(sender):
    _transition().run(APPLICATIONS, "A1", "approve", actor=STAFF)
    before = _row(Application, "A1")

    outcome = _transition(sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert not outcome.changed
    assert outcome.status == "approved"
    assert outcome.dispatch is None
    assert _row(Application, "A1") == before
    assert len(_notifications()) == 1
    assert sender.calls == []


def test_other_terminal_state_is_already_decided():
    _transition().run(APPLICATIONS, "A1", "reject", actor=STAFF)

    with pytest.raises(AlreadyDecided) as err:
        _transition().run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.current_status == "rejected"


def test_cancelled_booking_cannot_be_accepted():
    with session_scope() as session:
        session.get(BookingRequest, "B1").status = "cancelled"

    with pytest.raises(AlreadyDecided) as err:
        _transition().run(BOOKING_REQUESTS, "B1", "accept", actor=DJ)

    assert err.value.current_status == "cancelled"


def test_concurrent_decision_loses_race(monkeypatch, sender):
    store = StatusStore()
    original_update = store.update_record

    def racing_update(table, record_id, fields, *, expected_status=None):
        with session_scope() as session:
            session.get(Application, record_id).status = "rejected"
        return original_update(table, record_id, fields, expected_status=expected_status)

    monkeypatch.setattr(store, "update_record", racing_update)

    with pytest.raises(AlreadyDecided) as err:
        _transition(store=store, sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.current_status == "rejected"
    assert _row(Application, "A1")["status"] == "rejected"
    assert _notifications() == []
    assert sender.calls == []


def test_slow_write_times_out_without_side_effects(monkeypatch, sender):
    store = StatusStore(procedures=default_procedures())

    def slow_procedure(name, *, record_id, new_status):
        time.sleep(0.5)
        return ProcedureResult(success=False, error="too late")

    monkeypatch.setattr(store, "call_procedure", slow_procedure)

    with pytest.raises(DecisionTimeout) as err:
        _transition(store=store, sender=sender, timeout=0.05).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.retryable
    assert err.value.record_id == "A1"
    assert _row(Application, "A1")["status"] == "pending"
    assert _notifications() == []
    assert sender.calls == []


def test_timed_out_write_that_lands_later_completes_side_effects(monkeypatch, sender):
    store = StatusStore(procedures=default_procedures())
    original_procedure = store.call_procedure

    def slow_commit(name, *, record_id, new_status):
        time.sleep(0.6)
        return original_procedure(name, record_id=record_id, new_status=new_status)

    monkeypatch.setattr(store, "call_procedure", slow_commit)

    with capture_logs() as logs:
        with pytest.raises(DecisionTimeout):
            _transition(store=store, sender=sender, timeout=0.2).run(APPLICATIONS, "A1", "approve", actor=STAFF)

        assert _wait_for(lambda: len(sender.calls) == 1)

    assert _row(Application, "A1")["status"] == "approved"
    assert [entry[1] for entry in _notifications()] == ["application_approved"]
    assert sender.calls[0]["to"] == ["dj@example.com"]
    with session_scope() as session:
        history = session.scalars(select(DecisionHistory)).one()
        assert (history.from_status, history.to_status, history.write_path) == ("pending", "approved", "privileged")
    assert any(entry["event"] == "decision_write_landed_late" for entry in logs)

    retry = _transition(sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert not retry.changed
    assert len(_notifications()) == 1
    assert len(sender.calls) == 1
    assert _count(DecisionHistory) == 1


def test_unexpected_notification_error_still_sends_email(monkeypatch, sender):
    store = StatusStore(procedures=default_procedures())

    def exploding_notification(**kwargs):
        raise RuntimeError("sink exploded")

    monkeypatch.setattr(store, "create_notification", exploding_notification)

    outcome = _transition(store=store, sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert outcome.changed
    assert _row(Application, "A1")["status"] == "approved"
    assert [failure.effect for failure in outcome.dispatch.failures] == ["notification"]
    assert len(sender.calls) == 1
    assert _count(DecisionHistory) == 1


def test_null_status_is_decided_as_pending_by_direct_update(sender):
    _clear_status(Application, "A1")

    outcome = _transition(store=StatusStore(), sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert outcome.write_path == "direct"
    assert (outcome.previous_status, outcome.status) == ("pending", "approved")
    assert _row(Application, "A1")["status"] == "approved"
    assert len(sender.calls) == 1


def test_null_status_is_decided_by_privileged_procedure():
    _clear_status(Application, "A1")

    outcome = _transition().run(APPLICATIONS, "A1", "reject", actor=STAFF)

    assert outcome.write_path == "privileged"
    assert _row(Application, "A1")["status"] == "rejected"


def test_null_status_still_detects_concurrent_decision(monkeypatch, sender):
    _clear_status(Application, "A1")
    store = StatusStore()
    original_update = store.update_record

    def racing_update(table, record_id, fields, **kwargs):
        with session_scope() as session:
            session.get(Application, record_id).status = "rejected"
        return original_update(table, record_id, fields, **kwargs)

    monkeypatch.setattr(store, "update_record", racing_update)

    with pytest.raises(AlreadyDecided) as err:
        _transition(store=store, sender=sender).run(APPLICATIONS, "A1", "approve", actor=STAFF)

    assert err.value.current_status == "rejected"
    assert _row(Application, "A1")["status"] == "rejected"
    assert sender.calls == []


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ('record "new" has no field "venue"', True),
        ("column applications.venue does not exist", True),
        ("no such column: venue", True),
        ("permission denied for table applications", False),
        (None, False),
    ],
)
def test_is_schema_hazard(error, expected):
    assert is_schema_hazard(error) is expected
