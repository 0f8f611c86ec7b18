"""Notification and email content builders for decision outcomes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape

from .variants import WorkflowVariant

_FALLBACK_TITLE = "this opportunity"
_FALLBACK_FIRST_NAME = "there"


@dataclass(frozen=True)
class NotificationContent:
    title: str
    message: str
    type: str


@dataclass(frozen=True)
class EmailContent:
    subject: str
    heading: str
    body: str
    cta_label: str
    cta_url: str
    preview_text: str
    html: str
    text: str
    entity_ref: str


def first_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        return _FALLBACK_FIRST_NAME
    return cleaned.split()[0]


def _positive(variant: WorkflowVariant, status: str) -> bool:
    # The first declared decision is the favourable one (approve, accept).
    return status == next(iter(variant.decisions.values()))


def _entity_ref(*parts: str) -> str:
    joined = "-".join(part for part in parts if part)
    return re.sub(r"\s+", "-", joined).lower()[:50]


def build_notification(
    variant: WorkflowVariant,
    *,
    status: str,
    resource_title: str | None,
    actor_name: str | None = None,
    notes: str | None = None,
) -> NotificationContent:
    """Return the in-app notification announcing *status* to the recipient."""

    title = resource_title or _FALLBACK_TITLE
    notification_type = f"{variant.notification_prefix}_{status}"

    if variant.notes_field:
        dj = f"DJ {actor_name}" if actor_name else "The DJ"
        message = f'{dj} {status} your {variant.label} for "{title}".'
        if notes and notes.strip():
            message = f"{message} Notes: {notes.strip()}"
        heading = "✅ Booking Accepted" if _positive(variant, status) else "❌ Booking Declined"
        return NotificationContent(title=heading, message=message, type=notification_type)

    label = variant.label.title()
    if _positive(variant, status):
        return NotificationContent(
            title=f"🎉 {label} Approved!",
            message=(
                f'Congratulations! Your {variant.label} for "{title}" has been approved. '
                "Check your dashboard for next steps."
            ),
            type=notification_type,
        )
    return NotificationContent(
        title=f"{label} Update",
        message=(
            f'Your {variant.label} for "{title}" was not selected this time. '
            "Don't worry, keep applying to other opportunities!"
        ),
        type=notification_type,
    )


def _render_html(*, greeting: str, heading: str, body: str, cta_label: str, cta_url: str, footer: str) -> str:
    year = datetime.now(UTC).year
    return (
        '<table role="presentation" width="100%" cellpadding="0" cellspacing="0">'
        f"<tr><td><h1>{escape(heading)}</h1></td></tr>"
        f"<tr><td>Hey {escape(greeting)},<br/><br/>{escape(body)}</td></tr>"
        f'<tr><td><a href="{escape(cta_url, quote=True)}">{escape(cta_label)}</a></td></tr>'
        f"<tr><td>{footer}<br/>"
        "Need help? Reply to this email or contact the R/HOOD team in the Portal.</td></tr>"
        f'<tr><td align="center">&copy; {year} R/HOOD. All rights reserved.</td></tr>'
        "</table>"
    )


def build_decision_email(
    variant: WorkflowVariant,
    *,
    status: str,
    recipient_name: str | None,
    resource_title: str | None,
    record_id: str,
    portal_url: str,
    actor_name: str | None = None,
    notes: str | None = None,
) -> EmailContent:
    """Return the decision email sent to the notification recipient."""

    title = resource_title or _FALLBACK_TITLE
    greeting = first_name(recipient_name)
    positive = _positive(variant, status)

    if variant.notes_field:
        dj = f"DJ {actor_name}" if actor_name else "The DJ"
        subject = f"Booking {status}: {title}"
        heading = "Your booking was accepted" if positive else "Your booking was declined"
        body = f'{dj} {status} your booking request for "{title}".'
        if notes and notes.strip():
            body = f"{body} Their note: {notes.strip()}"
        cta_label = "View booking request"
        cta_url = f"{portal_url}/admin/booking-requests/{record_id}"
        preview_text = f"{dj} responded to your booking request"
    elif positive:
        subject = f"Congrats! You're booked for {title}!"
        heading = "You've been selected!"
        body = (
            f'Fantastic news, the team behind "{title}" would love to work with you. '
            "Log in to the Portal to review the details and confirm next steps."
        )
        cta_label = "Open the Portal"
        cta_url = portal_url
        preview_text = "You've been booked, view the opportunity in the Portal"
    else:
        subject = f"Update on {title}"
        heading = f"Thanks for your {variant.label}"
        body = (
            f'Thanks for putting yourself forward for "{title}". The organiser went in a '
            "different direction this time, but we'd love to see you pitch again."
        )
        cta_label = "Find more gigs"
        cta_url = portal_url
        preview_text = "You're still on our radar, check other live gigs."

    footer = (
        f"This notification was sent because your {variant.label} for "
        f"<strong>{escape(title)}</strong> was marked as {escape(status)}."
    )
    html = _render_html(
        greeting=greeting,
        heading=heading,
        body=body,
        cta_label=cta_label,
        cta_url=cta_url,
        footer=footer,
    )
    text = f"Hey {greeting},\n\n{body}\n\n{cta_label}: {cta_url}"

    return EmailContent(
        subject=subject,
        heading=heading,
        body=body,
        cta_label=cta_label,
        cta_url=cta_url,
        preview_text=preview_text,
        html=html,
        text=text,
        entity_ref=_entity_ref(variant.notification_prefix, status, title),
    )
