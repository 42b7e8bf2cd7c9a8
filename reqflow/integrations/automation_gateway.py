"""
Automation Consumer Gateway — outbox delivery.

Every lifecycle event leaving the platform is POSTed through this class.

Contract:
  - URL:      <AUTOMATION_WEBHOOK_BASE_URL>/<eventType>
  - Body:     the outbox payload (JSON, already carries eventId)
  - Headers:  X-Webhook-Secret (shared secret), X-Event-Id (dedup key)
  - Timeout:  OUTBOX_DELIVERY_TIMEOUT seconds; a timeout is a failed delivery
  - 2xx is an acknowledgement; anything else is a failure

The gateway performs exactly one attempt per call. Retry scheduling belongs
to the outbox dispatcher, which persists retry state between attempts.

Testability: pass a fake `session` to AutomationGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time

import requests

from reqflow.core.exceptions import DeliveryError

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10
_MAX_ERROR_BODY = 500


class DeliveryResult:
    """Structured return value from AutomationGateway.deliver().

    Attributes:
        ok:             True if the consumer acknowledged (HTTP 2xx).
        status_code:    HTTP status code (None if network-level failure).
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
    """

    def __init__(self, ok: bool, status_code: int | None, error: str | None, duration_ms: int) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms

    def __repr__(self):
        return f"<DeliveryResult ok={self.ok} status={self.status_code} error={self.error!r}>"


class AutomationGateway:
    """HTTP client for the automation consumer.

    Usage:
        gateway = AutomationGateway.from_config(current_app.config)
        result = gateway.deliver(event)
    """

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        timeout: float = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.secret = secret or ""
        self.timeout = timeout
        self._session: requests.Session | None = session

    @classmethod
    def from_config(cls, config, session: requests.Session | None = None) -> "AutomationGateway":
        return cls(
            base_url=config.get("AUTOMATION_WEBHOOK_BASE_URL", ""),
            secret=config.get("AUTOMATION_WEBHOOK_SECRET", ""),
            timeout=config.get("OUTBOX_DELIVERY_TIMEOUT", _DEFAULT_TIMEOUT),
            session=session,
        )

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def url_for(self, event_type: str) -> str:
        if not self.is_configured:
            raise DeliveryError("AUTOMATION_WEBHOOK_BASE_URL is not configured")
        return f"{self.base_url}/{event_type}"

    # ── Delivery ─────────────────────────────────────────────────────────────

    def deliver(self, event) -> DeliveryResult:
        """
        POST one outbox event to the consumer.

        Args:
            event: OutboxEvent (uses id, event_type, payload).

        Returns:
            DeliveryResult; never raises for HTTP or network failures.

        Raises:
            DeliveryError: the gateway has no base URL.
        """
        url = self.url_for(event.event_type)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Secret": self.secret,
            "X-Event-Id": event.id,
        }

        start = time.monotonic()
        try:
            resp = self.session.post(url, json=event.payload, headers=headers, timeout=self.timeout)
        except requests.Timeout:
            duration_ms = int((time.monotonic() - start) * 1000)
            return self._failure(event, None, f"Timeout after {self.timeout}s", duration_ms)
        except requests.RequestException as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            return self._failure(event, None, f"{type(exc).__name__}: {exc}", duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        if 200 <= resp.status_code < 300:
            logger.debug(
                "Delivered %s event=%s status=%s",
                event.event_type, event.id, resp.status_code,
                extra={"event_type": event.event_type, "event_id": event.id, "duration_ms": duration_ms},
            )
            return DeliveryResult(True, resp.status_code, None, duration_ms)

        body = (resp.text or "")[:_MAX_ERROR_BODY]
        return self._failure(event, resp.status_code, f"HTTP {resp.status_code}: {body}", duration_ms)

    def _failure(self, event, status_code, error, duration_ms) -> DeliveryResult:
        logger.warning(
            "Delivery failed for %s event=%s: %s",
            event.event_type, event.id, error,
            extra={"event_type": event.event_type, "event_id": event.id, "duration_ms": duration_ms},
        )
        return DeliveryResult(False, status_code, error, duration_ms)
