"""External collaborators of the engine: payment processor, inventory, event sink.

The engine only depends on the small protocols below. Concrete
implementations cover the HTTP processor, scripted processors for tests
and local runs, and the transactional outbox.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable, Mapping, Optional, Protocol

import httpx
from sqlalchemy import Table
from sqlalchemy.engine import Connection

from backend.core.config import settings
from backend.core.observability.logging import get_trace_id
from backend.core.outbox.publisher import enqueue_event

from .dto import ChargeResponse

logger = logging.getLogger(__name__)


class PaymentProcessor(Protocol):
    def charge(
        self, amount_cents: int, currency: str, reference: str, token: Optional[str]
    ) -> ChargeResponse: ...


class Inventory(Protocol):
    def can_fulfill(self, product_id: str, quantity: int) -> bool: ...

    def release(self, order_id: str) -> None: ...


class EventSink(Protocol):
    def emit(
        self,
        event_name: str,
        context: Mapping[str, Any],
        *,
        conn: Optional[Connection] = None,
        idempotency_key: Optional[str] = None,
    ) -> None: ...


class HttpPaymentProcessor:
    """Charge through a processor's JSON HTTP API.

    Expects ``POST {base_url}/charges`` to answer 2xx with
    ``{"status": "succeeded"}`` on success and an ``{"error": {"code": ...}}``
    body otherwise. Transport failures never raise; they come back as
    failed responses with a normalized retryable code.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.PROCESSOR_URL or "").rstrip("/")
        timeout_s = (timeout_ms or settings.PROCESSOR_TIMEOUT_MS) / 1000.0
        self.timeout = httpx.Timeout(timeout_s, connect=timeout_s, read=timeout_s)
        headers = {"Accept": "application/json"}
        key = api_key or settings.PROCESSOR_API_KEY
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self.client = client or httpx.Client(
            timeout=self.timeout, headers=headers, verify=True, follow_redirects=False
        )

    def charge(
        self, amount_cents: int, currency: str, reference: str, token: Optional[str]
    ) -> ChargeResponse:
        if not token:
            return ChargeResponse(success=False, error_code="missing_payment_method")
        try:
            resp = self.client.post(
                f"{self.base_url}/charges",
                json={
                    "amount": amount_cents,
                    "currency": currency,
                    "reference": reference,
                    "payment_method": token,
                },
                # retries of one attempt must not charge twice
                headers={"Idempotency-Key": reference},
            )
        except httpx.TimeoutException:
            logger.warning("Processor timeout", extra={"reference": reference})
            return ChargeResponse(success=False, error_code="timeout")
        except httpx.TransportError as exc:
            logger.warning(
                "Processor connection failed",
                extra={"reference": reference, "error": type(exc).__name__},
            )
            return ChargeResponse(success=False, error_code="connection_error")

        try:
            body = resp.json()
        except ValueError:
            body = {"text": resp.text[:500]}
        if not isinstance(body, dict):
            body = {"body": body}
        raw = {"http_status": resp.status_code, **body}

        if resp.is_success and body.get("status") == "succeeded":
            return ChargeResponse(success=True, raw=raw)

        error = body.get("error")
        code = error.get("code") if isinstance(error, dict) else error
        if not code:
            if resp.status_code == 429:
                code = "rate_limited"
            elif resp.status_code >= 500:
                code = "processor_unavailable"
            else:
                code = "invalid_request"
        return ChargeResponse(success=False, error_code=str(code), raw=raw)

    def close(self) -> None:
        self.client.close()


class StaticPaymentProcessor:
    """Scripted processor: returns queued responses, then the default.

    A queued exception instance is raised instead of returned.
    """

    def __init__(
        self,
        responses: Iterable[ChargeResponse | Exception] = (),
        default: Optional[ChargeResponse] = None,
    ):
        self._queue = deque(responses)
        self.default = default or ChargeResponse(success=True, raw={"status": "succeeded"})
        self.calls: list[dict[str, Any]] = []

    def push(self, *responses: ChargeResponse | Exception) -> None:
        self._queue.extend(responses)

    def charge(
        self, amount_cents: int, currency: str, reference: str, token: Optional[str]
    ) -> ChargeResponse:
        self.calls.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "reference": reference,
                "token": token,
            }
        )
        response = self._queue.popleft() if self._queue else self.default
        if isinstance(response, Exception):
            raise response
        return response


class NullInventory:
    """Everything is always in stock; releases are no-ops."""

    def can_fulfill(self, product_id: str, quantity: int) -> bool:
        return True

    def release(self, order_id: str) -> None:
        return None


class StaticInventory:
    """Inventory with a fixed set of unavailable products; records releases."""

    def __init__(self, unavailable: Iterable[str] = ()):
        self.unavailable = set(unavailable)
        self.released: list[str] = []

    def can_fulfill(self, product_id: str, quantity: int) -> bool:
        return product_id not in self.unavailable

    def release(self, order_id: str) -> None:
        self.released.append(order_id)


class OutboxEventSink:
    """Write notification events to the outbox on the caller's connection."""

    def __init__(self, events: Table, tenant_id: str):
        self.events = events
        self.tenant_id = tenant_id

    def emit(
        self,
        event_name: str,
        context: Mapping[str, Any],
        *,
        conn: Optional[Connection] = None,
        idempotency_key: Optional[str] = None,
    ) -> None:
        if conn is None:
            raise ValueError("OutboxEventSink requires the transaction's connection")
        enqueue_event(
            conn,
            self.events,
            tenant_id=self.tenant_id,
            event_type=event_name,
            payload=context,
            idempotency_key=idempotency_key,
            trace_id=get_trace_id(),
        )


class RecordingEventSink:
    """Keep emitted events in memory (tests, dry runs)."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._keys: set[str] = set()

    def emit(
        self,
        event_name: str,
        context: Mapping[str, Any],
        *,
        conn: Optional[Connection] = None,
        idempotency_key: Optional[str] = None,
    ) -> None:
        if idempotency_key is not None:
            if idempotency_key in self._keys:
                return
            self._keys.add(idempotency_key)
        self.events.append((event_name, dict(context)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]
