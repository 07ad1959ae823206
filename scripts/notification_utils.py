#!/usr/bin/env python3
"""
notification_utils.py - E-mail delivery of benchmark reports

Sends benchmark reports through the Postmark e-mail HTTP API.
"""

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

POSTMARK_ENDPOINT = "https://api.postmarkapp.com/email"
TIMEOUT_SECONDS = 30.0


class NotificationError(Exception):
    """Raised when a report could not be delivered."""


class Notifier(Protocol):
    """Delivers an HTML report to a list of recipients."""

    def send(self, from_address: str, to_addresses: list[str], subject: str, html_body: str) -> None: ...


class PostmarkNotifier:
    """Notifier backed by the Postmark e-mail API."""

    def __init__(
        self,
        server_token: str,
        endpoint: str = POSTMARK_ENDPOINT,
        timeout: float = TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_token = server_token
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport

    def send(self, from_address: str, to_addresses: list[str], subject: str, html_body: str) -> None:
        """
        Send one e-mail to all recipients.

        Args:
            from_address: Sender address
            to_addresses: Recipient addresses
            subject: Subject line
            html_body: HTML body

        Raises:
            NotificationError: If the request fails or Postmark rejects it
        """
        if not self.server_token:
            msg = "Postmark server token is not configured"
            raise NotificationError(msg)

        payload = {
            "From": from_address,
            "To": ",".join(to_addresses),
            "Subject": subject,
            "HtmlBody": html_body,
        }
        headers = {
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.server_token,
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            msg = f"Postmark request timed out after {self.timeout}s"
            raise NotificationError(msg) from exc
        except httpx.RequestError as exc:
            msg = f"Network error while sending e-mail: {exc}"
            raise NotificationError(msg) from exc

        if not resp.is_success:
            msg = f"Postmark rejected e-mail (HTTP {resp.status_code}): {resp.text}"
            raise NotificationError(msg)

        logger.info("Sent %r to %d recipient(s)", subject, len(to_addresses))
