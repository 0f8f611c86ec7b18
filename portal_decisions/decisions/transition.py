"""The decision state machine: fetch, authorize, write, then hand off side effects."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, List, Mapping

import structlog

from portal_decisions.background import RemoteCallTimeout, call_with_timeout
from portal_decisions.store import Record, StatusStore, StoreError

from .authorization import Actor, OwningResource, can_decide
from .errors import (
    AccessDenied,
    AlreadyDecided,
    DecisionTimeout,
    InvalidDecision,
    RecordNotFound,
    SchemaHazard,
    TransitionFailed,
)
from .side_effects import CommittedDecision, DecisionContext, DispatchReport, SideEffectDispatcher
from .variants import WorkflowVariant

WRITE_PATH_PRIVILEGED = "privileged"
WRITE_PATH_DIRECT = "direct"

_SCHEMA_HAZARD_PATTERN = re.compile(
    r"has no field|column \S+ does not exist|no such column|\bvenue\b",
    re.IGNORECASE,
)


def is_schema_hazard(error: str | None) -> bool:
    return bool(error and _SCHEMA_HAZARD_PATTERN.search(error))


@dataclass(frozen=True)
class WriteAttempt:
    path: str
    committed: bool
    error: str | None = None
    unavailable: bool = False
    conflict: bool = False


@dataclass(frozen=True)
class TransitionOutcome:
    variant: WorkflowVariant
    record_id: str
    previous_status: str
    status: str
    changed: bool
    write_path: str | None = None
    dispatch: DispatchReport | None = None


LateCommit = Callable[[str], None]
WriteStrategy = Callable[[WorkflowVariant, Record, str, Mapping[str, Any], LateCommit], WriteAttempt]


class DecisionTransition:
    """Move one record from its pending state to a terminal state.

    Steps run in a fixed order: fetch, authorize, resolve context, write
    (privileged procedure, then one direct conditional update), side effects.
    Nothing is written unless authorization passes, and nothing after the write
    can undo it.

    A write that times out raises ``DecisionTimeout``. If that write still
    commits afterwards, history and side effects run when it lands, so a
    retry that finds the record already decided has nothing left to do.
    """

    def __init__(
        self,
        *,
        store: StatusStore,
        dispatcher: SideEffectDispatcher,
        schema_fix_migration: str,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._schema_fix_migration = schema_fix_migration
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def store(self) -> StatusStore:
        return self._store

    def run(
        self,
        variant: WorkflowVariant,
        record_id: str,
        decision: str,
        *,
        actor: Actor,
        notes: str | None = None,
    ) -> TransitionOutcome:
        log = structlog.get_logger().bind(workflow=variant.name, record_id=record_id, actor_id=actor.user_id)

        try:
            target = variant.target_for(decision)
        except ValueError as exc:
            raise InvalidDecision(str(exc), record_id=record_id) from exc

        record = self._fetch(variant, record_id)
        resource = self._resolve_owner(variant, record, log)

        access = can_decide(actor, variant, resource)
        if not access.allowed:
            log.warning("decision_denied", role=actor.role.value, reason=access.reason)
            raise AccessDenied(access.reason or "Access denied.", record_id=record_id)

        current = variant.current_status(record)
        if current == target:
            log.info("decision_already_applied", status=current)
            return TransitionOutcome(
                variant=variant,
                record_id=record_id,
                previous_status=current,
                status=current,
                changed=False,
            )
        if variant.is_terminal(current):
            log.info("decision_already_recorded", status=current, requested=target)
            raise AlreadyDecided(
                f"This {variant.label} has already been {current}.",
                record_id=record_id,
                current_status=current,
            )

        context = self._resolve_context(variant, record, resource, log)

        def complete(write_path: str) -> DispatchReport:
            committed = CommittedDecision(
                variant=variant,
                record_id=record_id,
                previous_status=current,
                status=target,
                actor=actor,
                write_path=write_path,
                notes=notes if variant.notes_field else None,
            )
            self._record_history(committed, log)
            return self._dispatcher.dispatch(committed, context)

        def complete_late(write_path: str) -> None:
            log.warning("decision_write_landed_late", write_path=write_path, from_status=current, to_status=target)
            try:
                complete(write_path)
            except Exception as exc:
                log.error("late_decision_follow_up_failed", error=str(exc), exc_info=True)

        fields = variant.transition_fields(target, at=self._clock(), notes=notes)
        attempts: List[WriteAttempt] = []
        for strategy in self._write_strategies(variant):
            attempt = strategy(variant, record, target, fields, complete_late)
            attempts.append(attempt)
            if attempt.committed:
                break
        else:
            self._raise_write_failure(variant, record_id, attempts, log)

        write_path = attempts[-1].path
        log.info("decision_write_committed", write_path=write_path, from_status=current, to_status=target)
        report = complete(write_path)

        return TransitionOutcome(
            variant=variant,
            record_id=record_id,
            previous_status=current,
            status=target,
            changed=True,
            write_path=write_path,
            dispatch=report,
        )

    def _call(
        self,
        record_id: str,
        operation: str,
        func: Callable[..., Any],
        /,
        *args: Any,
        on_late_result: Callable[[Any], None] | None = None,
        **kwargs: Any,
    ) -> Any:
        try:
            return call_with_timeout(
                func,
                *args,
                timeout=self._timeout,
                operation=operation,
                on_late_result=on_late_result,
                **kwargs,
            )
        except RemoteCallTimeout as exc:
            raise DecisionTimeout(
                "The portal took too long to respond. Please try again.",
                record_id=record_id,
            ) from exc

    def _fetch(self, variant: WorkflowVariant, record_id: str) -> Record:
        try:
            record = self._call(record_id, "fetch_record", self._store.get_record, variant.table, record_id)
        except StoreError as exc:
            raise TransitionFailed(
                f"Failed to load this {variant.label}. Please try again.",
                record_id=record_id,
                errors=[str(exc)],
            ) from exc
        if record is None:
            raise RecordNotFound(f"This {variant.label} could not be found.", record_id=record_id)
        return record

    def _resolve_owner(self, variant: WorkflowVariant, record: Record, log) -> OwningResource | None:
        lookup = variant.owner
        if lookup.table is None:
            return OwningResource(owner_id=record.get(lookup.owner_field), title=record.get(lookup.title_field))

        reference = record.get(lookup.reference_field)
        if not reference:
            log.info("owning_resource_missing", reason="no_reference")
            return None
        try:
            resource = self._call(record["id"], "fetch_owner", self._store.get_record, lookup.table, reference)
        except (StoreError, DecisionTimeout) as exc:
            log.warning("owning_resource_unavailable", error=str(exc))
            return None
        if resource is None:
            log.info("owning_resource_missing", reason="not_found", reference=reference)
            return None
        return OwningResource(owner_id=resource.get(lookup.owner_field), title=resource.get(lookup.title_field))

    def _resolve_context(
        self,
        variant: WorkflowVariant,
        record: Record,
        resource: OwningResource | None,
        log,
    ) -> DecisionContext:
        recipient_id = record.get(variant.recipient_field)
        title = resource.title if resource else None
        profile = None
        if recipient_id:
            try:
                profile = self._call(
                    record["id"], "fetch_profile", self._store.get_record, "user_profiles", recipient_id
                )
            except (StoreError, DecisionTimeout) as exc:
                log.warning("recipient_profile_unavailable", recipient_id=recipient_id, error=str(exc))
            else:
                if profile is None:
                    log.info("recipient_profile_missing", recipient_id=recipient_id)
        return DecisionContext(recipient_id=recipient_id, recipient_profile=profile, resource_title=title)

    def _write_strategies(self, variant: WorkflowVariant) -> List[WriteStrategy]:
        strategies: List[WriteStrategy] = []
        if variant.procedure:
            strategies.append(self._privileged_write)
        strategies.append(self._direct_write)
        return strategies

    def _privileged_write(
        self,
        variant: WorkflowVariant,
        record: Record,
        target: str,
        fields: Mapping[str, Any],
        on_late_commit: LateCommit,
    ) -> WriteAttempt:
        log = structlog.get_logger().bind(workflow=variant.name, record_id=record["id"], procedure=variant.procedure)

        def landed(result) -> None:
            if result.success:
                on_late_commit(WRITE_PATH_PRIVILEGED)

        result = self._call(
            record["id"],
            "privileged_update",
            self._store.call_procedure,
            variant.procedure,
            record_id=record["id"],
            new_status=target,
            on_late_result=landed,
        )
        if result.success:
            return WriteAttempt(path=WRITE_PATH_PRIVILEGED, committed=True)
        if result.unavailable:
            log.info("privileged_update_unavailable", error=result.error)
        else:
            log.warning("privileged_update_failed", error=result.error)
        return WriteAttempt(
            path=WRITE_PATH_PRIVILEGED,
            committed=False,
            error=result.error,
            unavailable=result.unavailable,
        )

    def _direct_write(
        self,
        variant: WorkflowVariant,
        record: Record,
        target: str,
        fields: Mapping[str, Any],
        on_late_commit: LateCommit,
    ) -> WriteAttempt:
        log = structlog.get_logger().bind(workflow=variant.name, record_id=record["id"])

        def landed(result) -> None:
            if result.committed:
                on_late_commit(WRITE_PATH_DIRECT)

        # The guard is the raw stored value: a NULL status only matches NULL.
        result = self._call(
            record["id"],
            "direct_update",
            self._store.update_record,
            variant.table,
            record["id"],
            fields,
            expected_status=record.get("status"),
            on_late_result=landed,
        )
        if result.error:
            log.warning("direct_update_failed", error=result.error)
            return WriteAttempt(path=WRITE_PATH_DIRECT, committed=False, error=result.error)
        if result.rowcount != 1:
            log.info("direct_update_conflict", rowcount=result.rowcount)
            return WriteAttempt(path=WRITE_PATH_DIRECT, committed=False, conflict=True)
        return WriteAttempt(path=WRITE_PATH_DIRECT, committed=True)

    def _raise_write_failure(self, variant: WorkflowVariant, record_id: str, attempts: List[WriteAttempt], log) -> None:
        errors = [attempt.error for attempt in attempts if attempt.error]

        hazard = next((error for error in errors if is_schema_hazard(error)), None)
        if hazard is not None:
            log.error("decision_schema_hazard", error=hazard, migration=self._schema_fix_migration)
            raise SchemaHazard(
                "The database rejected this update because a policy references a column that no longer exists.",
                record_id=record_id,
                migration=self._schema_fix_migration,
                detail=hazard,
            )

        if attempts and attempts[-1].conflict:
            current = None
            try:
                latest = self._call(record_id, "fetch_record", self._store.get_record, variant.table, record_id)
            except (StoreError, DecisionTimeout) as exc:
                log.warning("decision_conflict_reload_failed", error=str(exc))
            else:
                if latest is None:
                    raise RecordNotFound(f"This {variant.label} could not be found.", record_id=record_id)
                current = variant.current_status(latest)
            log.warning("decision_lost_race", current_status=current)
            raise AlreadyDecided(
                f"This {variant.label} was decided by someone else. Refresh to see the latest status.",
                record_id=record_id,
                current_status=current,
            )

        log.error("decision_write_failed", errors=errors)
        raise TransitionFailed(
            f"Failed to update {variant.label} status. Please try again.",
            record_id=record_id,
            errors=errors,
        )

    def _record_history(self, decision: CommittedDecision, log) -> None:
        try:
            self._call(
                decision.record_id,
                "record_history",
                self._store.record_history,
                table=decision.variant.table,
                record_id=decision.record_id,
                from_status=decision.previous_status,
                to_status=decision.status,
                changed_by=decision.actor.user_id,
                write_path=decision.write_path,
            )
        except (StoreError, DecisionTimeout) as exc:
            log.warning("decision_history_failed", error=str(exc))
