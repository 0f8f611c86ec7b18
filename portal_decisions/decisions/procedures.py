"""Privileged status-update procedures registered on the Status Store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Dict, Iterable

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from portal_decisions.models import model_for_table
from portal_decisions.store import Procedure, ProcedureResult

from .variants import VARIANTS, WorkflowVariant


def make_status_procedure(variant: WorkflowVariant) -> Procedure:
    """Build the procedure that moves a pending *variant* record to a terminal state."""

    model = model_for_table(variant.table)

    def procedure(session: Session, record_id: str, new_status: str) -> ProcedureResult:
        if not variant.is_terminal(new_status):
            return ProcedureResult(success=False, error=f"invalid status '{new_status}'")

        now = datetime.now(UTC)
        values = {"status": new_status}
        values.update({field: now for field in variant.timestamp_fields})
        statement = (
            update(model)
            .where(
                model.id == record_id,
                or_(model.status == variant.initial_status, model.status.is_(None)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        if result.rowcount != 1:
            return ProcedureResult(
                success=False,
                error=f"{variant.label} {record_id} is not {variant.initial_status}",
            )
        return ProcedureResult(success=True)

    procedure.__name__ = variant.procedure or f"update_{variant.name}_status"
    return procedure


def default_procedures(variants: Iterable[WorkflowVariant] | None = None) -> Dict[str, Procedure]:
    """Return the deployed procedures for every variant that declares one."""

    selected = VARIANTS.values() if variants is None else variants
    return {
        variant.procedure: make_status_procedure(variant)
        for variant in selected
        if variant.procedure
    }
