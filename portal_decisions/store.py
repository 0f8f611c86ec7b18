"""Status Store access: record reads, privileged procedures and direct updates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal_decisions.db import session_scope
from portal_decisions.models import DecisionHistory, Notification, model_for_table, row_to_dict

Record = Dict[str, Any]

_MISSING_FUNCTION_PATTERN = re.compile(
    r"could not find the function|function \S+ does not exist|function not found|PGRST202",
    re.IGNORECASE,
)


class StoreError(Exception):
    """Raised when the Status Store rejects a read or an insert."""


@dataclass(frozen=True)
class ProcedureResult:
    """Outcome of a privileged procedure call."""

    success: bool
    error: str | None = None
    missing: bool = False

    @property
    def unavailable(self) -> bool:
        """True when the procedure is not deployed, as opposed to having failed."""

        if self.missing:
            return True
        return bool(self.error and _MISSING_FUNCTION_PATTERN.search(self.error))


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a direct conditional update."""

    rowcount: int = 0
    error: str | None = None

    @property
    def committed(self) -> bool:
        return self.error is None and self.rowcount == 1


Procedure = Callable[[Session, str, str], ProcedureResult]


class _AnyStatus:
    def __repr__(self) -> str:
        return "ANY_STATUS"


ANY_STATUS = _AnyStatus()


def _error_text(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original) if original is not None else str(exc)


class StatusStore:
    """SQLAlchemy-backed view of the tables decision workflows touch.

    Privileged procedures are registered by name; calling an unregistered name
    behaves like calling a function the backend has not deployed.
    """

    def __init__(self, *, procedures: Mapping[str, Procedure] | None = None) -> None:
        self._procedures: Dict[str, Procedure] = dict(procedures or {})

    @property
    def procedures(self) -> List[str]:
        return sorted(self._procedures)

    def register_procedure(self, name: str, procedure: Procedure) -> None:
        self._procedures[name] = procedure

    def get_record(self, table: str, record_id: str) -> Record | None:
        model = model_for_table(table)
        try:
            with session_scope() as session:
                row = session.get(model, record_id)
                return row_to_dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(_error_text(exc)) from exc

    def list_records(self, table: str, *, status: str | None = None, limit: int | None = None) -> List[Record]:
        model = model_for_table(table)
        statement = select(model).order_by(model.created_at.desc())
        if status:
            statement = statement.where(model.status == status)
        if limit:
            statement = statement.limit(limit)
        try:
            with session_scope() as session:
                return [row_to_dict(row) for row in session.scalars(statement).all()]
        except SQLAlchemyError as exc:
            raise StoreError(_error_text(exc)) from exc

    def call_procedure(self, name: str, *, record_id: str, new_status: str) -> ProcedureResult:
        procedure = self._procedures.get(name)
        if procedure is None:
            return ProcedureResult(
                success=False,
                error=f"Could not find the function public.{name}(record_id, new_status)",
                missing=True,
            )

        try:
            with session_scope() as session:
                return procedure(session, record_id, new_status)
        except SQLAlchemyError as exc:
            return ProcedureResult(success=False, error=_error_text(exc))

    def update_record(
        self,
        table: str,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: str | None | _AnyStatus = ANY_STATUS,
    ) -> WriteResult:
        """Issue a single update keyed by id, guarded by *expected_status* when given.

        ``None`` guards on a NULL status; ``ANY_STATUS`` leaves the status unguarded.
        """

        model = model_for_table(table)
        statement = update(model).where(model.id == record_id)
        if expected_status is None:
            statement = statement.where(model.status.is_(None))
        elif not isinstance(expected_status, _AnyStatus):
            statement = statement.where(model.status == expected_status)
        statement = statement.values(**dict(fields)).execution_options(synchronize_session=False)

        try:
            with session_scope() as session:
                result = session.execute(statement)
                return WriteResult(rowcount=result.rowcount)
        except SQLAlchemyError as exc:
            return WriteResult(error=_error_text(exc))

    def create_notification(
        self,
        *,
        title: str,
        message: str,
        type: str,
        user_id: str,
        related_id: str | None = None,
    ) -> Record:
        try:
            with session_scope() as session:
                notification = Notification(
                    title=title,
                    message=message,
                    type=type,
                    user_id=user_id,
                    related_id=related_id,
                    is_read=False,
                )
                session.add(notification)
                session.flush()
                session.refresh(notification)
                return row_to_dict(notification)
        except SQLAlchemyError as exc:
            raise StoreError(_error_text(exc)) from exc

    def record_history(
        self,
        *,
        table: str,
        record_id: str,
        from_status: str,
        to_status: str,
        changed_by: str,
        write_path: str,
    ) -> None:
        try:
            with session_scope() as session:
                session.add(
                    DecisionHistory(
                        table_name=table,
                        record_id=record_id,
                        from_status=from_status,
                        to_status=to_status,
                        changed_by=changed_by,
                        write_path=write_path,
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(_error_text(exc)) from exc
