"""Outbox publisher helper for enqueueing events.

Events are written on the caller's connection so they commit (or roll back)
together with the state change that produced them.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Mapping
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import MetaData, Table
from sqlalchemy.engine import Connection

from backend.core.config import settings
from backend.core.observability.logging import logger


def get_outbox_events_table(metadata: MetaData) -> Table:
    """Return the event_outbox table definition for the given metadata."""
    return sa.Table(
        "event_outbox",
        metadata,
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("schema_version", sa.String(16), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=True, unique=True),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Index("ix_event_outbox_status_created", "status", "created_at"),
        extend_existing=True,
    )


def enqueue_event(
    conn: Connection,
    events: Table,
    *,
    tenant_id: str,
    event_type: str,
    payload: Mapping[str, Any],
    idempotency_key: str | None = None,
    trace_id: str | None = None,
) -> str | None:
    """Persist an event into the outbox and return its id.

    Returns None when an event with the same idempotency key was already
    enqueued.
    """
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValueError("event_type must be a non-empty string")
    if not isinstance(payload, Mapping):
        raise ValueError("payload must be a mapping")

    try:
        payload_json = json.dumps(dict(payload), sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise ValueError("payload must be JSON serializable") from exc

    if idempotency_key is not None:
        existing = conn.execute(
            sa.select(events.c.id).where(events.c.idempotency_key == idempotency_key)
        ).first()
        if existing is not None:
            return None

    event_id = str(uuid4())
    conn.execute(
        sa.insert(events).values(
            id=event_id,
            tenant_id=tenant_id,
            event_type=event_type,
            schema_version=settings.OUTBOX_SCHEMA_VERSION,
            idempotency_key=idempotency_key,
            trace_id=trace_id,
            payload_json=payload_json,
            status="pending",
            created_at=datetime.now(UTC),
        )
    )

    logger.info(
        "outbox_event_enqueued",
        extra={"event_id": event_id, "event_type": event_type},
    )
    return event_id


__all__ = ["enqueue_event", "get_outbox_events_table"]
