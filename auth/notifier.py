"""
auth/notifier.py -- Outbound email delivery.

Notifier is the seam: anything with send(to_email, subject, body) works.
send() returns None on delivery and raises DeliveryError otherwise -- timeouts
included, with their own message -- so callers can tell "stored but not
delivered" apart from a storage failure.

ResendNotifier -- production. POSTs to the Resend HTTP API with a module-level
    requests.Session (connection pooling) and a bounded timeout.
LogNotifier    -- development fallback when RESEND_API_KEY is empty. Logs the
    message instead of sending it, so local sign-ups can be completed from the
    server log.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from auth.errors import DeliveryError

logger = logging.getLogger("sessiongate.auth.notifier")

RESEND_API_URL = "https://api.resend.com/emails"

# Shared across all notifier instances. Resend is a known endpoint; 3 redirect
# hops is generous.
_session = requests.Session()
_session.max_redirects = 3


class Notifier(Protocol):
    def send(self, to_email: str, subject: str, body: str) -> None: ...


class ResendNotifier:
    """Deliver email through the Resend API."""

    def __init__(self, api_key: str, sender: str, timeout: float = 10.0, api_url: str = RESEND_API_URL) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.api_url = api_url

    def send(self, to_email: str, subject: str, body: str) -> None:
        try:
            resp = _session.post(
                self.api_url,
                json={"from": self.sender, "to": [to_email], "subject": subject, "html": body},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.Timeout as e:
            logger.warning("Email delivery to %s timed out after %.1fs", to_email, self.timeout)
            raise DeliveryError("Email delivery timed out") from e
        except requests.RequestException as e:
            logger.warning("Email delivery to %s failed: %s", to_email, e)
            raise DeliveryError() from e
        logger.info("Email '%s' sent to %s", subject, to_email)


class LogNotifier:
    """Write emails to the log instead of sending them. Development only."""

    def send(self, to_email: str, subject: str, body: str) -> None:
        logger.info("[dev mail] to=%s subject=%r body=%r", to_email, subject, body)
