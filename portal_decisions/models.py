"""SQLAlchemy models for the records decision workflows read and write."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, inspect
from sqlalchemy.orm import Mapped, mapped_column

from portal_decisions.db import Base


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class UserProfile(Base):
    """Portal member profile; role decides what the member may decide on."""

    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    role: Mapped[str | None] = mapped_column(String(16), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    dj_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    brand_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Opportunity(Base):
    """A gig posted by a brand; its organizer reviews applications to it."""

    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    organizer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    organizer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    event_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Application(Base):
    """A DJ's application to an opportunity."""

    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    opportunity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True, default="pending")
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class FormResponse(Base):
    """A DJ's response to an opportunity's application form (brief response)."""

    __tablename__ = "application_form_responses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    form_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    opportunity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    response_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class BookingRequest(Base):
    """A brand's direct booking offer addressed to one DJ."""

    __tablename__ = "booking_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(36), nullable=False)
    dj_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_title: Mapped[str] = mapped_column(String(255), nullable=False)
    event_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    payment_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    payment_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    dj_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dj_response_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Notification(Base):
    """In-app notification shown in the member's notification centre."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    related_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class DecisionHistory(Base):
    """Audit log of committed decision transitions."""

    __tablename__ = "decision_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    record_id: Mapped[str] = mapped_column(String(36), nullable=False)
    from_status: Mapped[str] = mapped_column(String(32), nullable=False)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    write_path: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


TABLE_MODELS: Dict[str, type] = {
    model.__tablename__: model
    for model in (
        UserProfile,
        Opportunity,
        Application,
        FormResponse,
        BookingRequest,
        Notification,
        DecisionHistory,
    )
}


def model_for_table(table: str) -> type:
    try:
        return TABLE_MODELS[table]
    except KeyError as exc:
        raise ValueError(f"Unknown table '{table}'") from exc


def row_to_dict(row: Any) -> Dict[str, Any]:
    """Return the column values of an ORM row as a plain dict."""

    return {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}
