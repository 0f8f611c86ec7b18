"""Thin wrapper utilities around the Resend email API."""

from __future__ import annotations

from typing import Any, Callable, Mapping

import resend

Sender = Callable[[dict], Mapping[str, Any]]


class EmailClient:
    """Encapsulate Resend interactions for easier testing."""

    def __init__(
        self,
        *,
        from_address: str,
        api_key: str | None = None,
        sender: Sender | None = None,
    ) -> None:
        if sender is None and api_key is None:
            raise ValueError("Either a sender callable or a Resend API key must be provided.")

        self._api_key = api_key
        self._sender = sender
        self.from_address = from_address

    def send_email(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str,
        headers: Mapping[str, str] | None = None,
    ) -> Mapping[str, Any]:
        """Send one transactional email and return the provider response."""

        params: dict = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        if headers:
            params["headers"] = dict(headers)

        if self._sender is not None:
            return self._sender(params)

        resend.api_key = self._api_key
        return resend.Emails.send(params)
