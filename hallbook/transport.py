"""Outbound push and e-mail delivery.

Delivery is handed to external gateways over HTTP. When a gateway URL is not
configured the message is only logged, which is what development and tests
use. Sending never raises: a failed push must not fail the booking change
that caused it.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from circuitbreaker import CircuitBreakerError, circuit

from .config import get_settings

logger = logging.getLogger(__name__)


class HttpTransport:
    def __init__(
        self,
        push_url: Optional[str] = None,
        email_url: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.push_url = push_url
        self.email_url = email_url
        self._client = client or httpx.Client(timeout=timeout)

    @circuit(failure_threshold=5, recovery_timeout=60, expected_exception=httpx.HTTPError)
    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        response = self._client.post(url, json=payload)
        response.raise_for_status()

    def _deliver(self, channel: str, url: Optional[str], payload: Dict[str, Any]) -> bool:
        if not url:
            logger.info("[%s] gateway not configured, would send %s", channel, payload)
            return False
        try:
            self._post(url, payload)
        except CircuitBreakerError:
            logger.warning("[%s] circuit open, dropped message %s", channel, payload)
            return False
        except httpx.HTTPError as exc:
            logger.warning("[%s] delivery failed: %s", channel, exc)
            return False
        return True

    def send_push(self, user_id: int, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self._deliver("push", self.push_url, {"user_id": user_id, "title": title, "body": body, "data": data or {}})

    def send_email(self, address: str, template: str, data: Dict[str, Any]) -> bool:
        return self._deliver("email", self.email_url, {"to": address, "template": template, "data": data})

    def close(self) -> None:
        self._client.close()


_transport: Optional[HttpTransport] = None


def get_transport() -> HttpTransport:
    global _transport
    if _transport is None:
        settings = get_settings()
        _transport = HttpTransport(
            push_url=settings.push_webhook_url,
            email_url=settings.email_webhook_url,
            timeout=settings.transport_timeout_seconds,
        )
    return _transport


def set_transport(transport: Optional[HttpTransport]) -> None:
    """Swap the process-wide transport (``None`` rebuilds it from settings)."""

    global _transport
    _transport = transport
