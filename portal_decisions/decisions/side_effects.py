"""Notification and email side effects fired after a committed decision."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

import structlog
from resend.exceptions import ResendError

from portal_decisions.background import RemoteCallTimeout, call_with_timeout
from portal_decisions.config import AppSettings
from portal_decisions.email_client import EmailClient
from portal_decisions.store import StatusStore

from .authorization import Actor
from .errors import SideEffectFailed
from .messages import build_decision_email, build_notification
from .variants import WorkflowVariant

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class CommittedDecision:
    """A transition that the Status Store has accepted."""

    variant: WorkflowVariant
    record_id: str
    previous_status: str
    status: str
    actor: Actor
    write_path: str
    notes: str | None = None


@dataclass(frozen=True)
class DecisionContext:
    """Denormalised data the side effects need, resolved before the write."""

    recipient_id: str | None = None
    recipient_profile: Mapping[str, Any] | None = None
    resource_title: str | None = None

    @property
    def recipient_email(self) -> str | None:
        email = (self.recipient_profile or {}).get("email")
        return email if isinstance(email, str) and email.strip() else None

    @property
    def recipient_name(self) -> str | None:
        profile = self.recipient_profile or {}
        full_name = " ".join(
            part.strip()
            for part in (profile.get("first_name"), profile.get("last_name"))
            if isinstance(part, str) and part.strip()
        )
        if full_name:
            return full_name
        for key in ("dj_name", "brand_name"):
            value = profile.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


@dataclass(frozen=True)
class DecisionEmail:
    email: str | None
    recipient_name: str | None
    status: str
    resource_title: str | None
    record_id: str
    actor_name: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: str | None = None
    message_id: str | None = None
    to: str | None = None


@dataclass
class DispatchReport:
    notification: Dict[str, Any] | None = None
    email: EmailResult | None = None
    failures: List[SideEffectFailed] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class DecisionMailer:
    """Validate and send decision emails through the Resend client."""

    def __init__(self, *, client: EmailClient | None, portal_url: str) -> None:
        self._client = client
        self._portal_url = portal_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "DecisionMailer":
        client = None
        if settings.resend_api_key:
            client = EmailClient(from_address=settings.email_from_address, api_key=settings.resend_api_key)
        return cls(client=client, portal_url=settings.portal_url)

    def send(self, variant: WorkflowVariant, message: DecisionEmail) -> EmailResult:
        log = structlog.get_logger().bind(record_id=message.record_id, workflow=variant.name, status=message.status)

        if not message.email:
            return EmailResult(success=False, error="Missing recipient email")

        address = message.email.strip().lower()
        if not _EMAIL_PATTERN.match(address):
            return EmailResult(success=False, error="Invalid email address format", to=address)

        if message.status not in variant.decisions.values():
            allowed = ", ".join(sorted(variant.decisions.values()))
            return EmailResult(success=False, error=f"Status must be one of: {allowed}", to=address)

        if self._client is None:
            log.warning("email_service_not_configured")
            return EmailResult(success=False, error="Email service not configured", to=address)

        content = build_decision_email(
            variant,
            status=message.status,
            recipient_name=message.recipient_name,
            resource_title=message.resource_title,
            record_id=message.record_id,
            portal_url=self._portal_url,
            actor_name=message.actor_name,
            notes=message.notes,
        )
        try:
            response = self._client.send_email(
                to=address,
                subject=content.subject,
                html=content.html,
                text=content.text,
                headers={"X-Entity-Ref-ID": content.entity_ref},
            )
        except (ResendError, OSError) as exc:
            log.error("decision_email_send_failed", error=str(exc))
            return EmailResult(success=False, error=str(exc), to=address)

        message_id = response.get("id") if response else None
        log.info("decision_email_sent", message_id=message_id)
        return EmailResult(success=True, message_id=message_id, to=address)


class SideEffectDispatcher:
    """Fire the notification, then the email, for a committed decision.

    Neither step can undo the decision; each is attempted regardless of how the
    other went and failures are reported rather than raised.
    """

    def __init__(self, *, store: StatusStore, mailer: DecisionMailer, timeout: float | None = None) -> None:
        self._store = store
        self._mailer = mailer
        self._timeout = timeout

    def dispatch(self, decision: CommittedDecision, context: DecisionContext) -> DispatchReport:
        variant = decision.variant
        report = DispatchReport()
        log = structlog.get_logger().bind(
            record_id=decision.record_id,
            workflow=variant.name,
            status=decision.status,
            recipient_id=context.recipient_id,
        )

        if not context.recipient_id:
            log.warning("notification_skipped", reason="missing_recipient")
            report.failures.append(
                SideEffectFailed(
                    "The decision was saved, but nobody could be notified.",
                    record_id=decision.record_id,
                    effect="notification",
                )
            )
        else:
            content = build_notification(
                variant,
                status=decision.status,
                resource_title=context.resource_title,
                actor_name=decision.actor.display_name,
                notes=decision.notes,
            )
            try:
                report.notification = call_with_timeout(
                    self._store.create_notification,
                    title=content.title,
                    message=content.message,
                    type=content.type,
                    user_id=context.recipient_id,
                    related_id=decision.record_id,
                    timeout=self._timeout,
                    operation="create_notification",
                )
                log.info("notification_created", notification_type=content.type)
            except Exception as exc:
                log.error("notification_failed", error=str(exc), exc_info=True)
                report.failures.append(
                    SideEffectFailed(
                        "The decision was saved, but the in-app notification could not be created.",
                        record_id=decision.record_id,
                        effect="notification",
                    )
                )

        if not context.recipient_email:
            log.info("decision_email_skipped", reason="no_email")
            return report

        message = DecisionEmail(
            email=context.recipient_email,
            recipient_name=context.recipient_name,
            status=decision.status,
            resource_title=context.resource_title,
            record_id=decision.record_id,
            actor_name=decision.actor.display_name,
            notes=decision.notes,
        )
        try:
            result = call_with_timeout(
                self._mailer.send,
                variant,
                message,
                timeout=self._timeout,
                operation="send_decision_email",
            )
        except RemoteCallTimeout as exc:
            result = EmailResult(success=False, error=str(exc))
        except Exception as exc:
            log.error("decision_email_crashed", error=str(exc), exc_info=True)
            result = EmailResult(success=False, error=str(exc))
        report.email = result

        if not result.success:
            log.warning("decision_email_failed", error=result.error)
            report.failures.append(
                SideEffectFailed(
                    "The decision was saved, but the email could not be sent.",
                    record_id=decision.record_id,
                    effect="email",
                )
            )
        return report
