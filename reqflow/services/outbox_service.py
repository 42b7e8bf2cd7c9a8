"""
Event Outbox service — enqueue and dispatch lifecycle events.

Enqueue:
  Called inside the transaction of the mutation that produced the event.
  The insert runs in its own SAVEPOINT: a failure is logged and swallowed,
  the primary mutation is never rolled back because of it.

Dispatch (``dispatch_pending``):
  1. Select ``pending`` events whose ``next_retry_at`` is unset or due.
  2. Claim each one before delivery: a conditional UPDATE pushes its
     ``next_retry_at`` out by ``OUTBOX_CLAIM_LEASE_SECONDS`` and is committed
     at once. A dispatcher that loses the claim skips the event. A claim
     left behind by a crashed worker lapses when the lease runs out.
  3. Deliver it through the AutomationGateway (one attempt, with timeout).
  4. Success  → ``sent`` + ``sent_at``.
     Failure  → ``retry_count += 1``; below ``max_retries`` the event stays
                ``pending`` with ``next_retry_at = now + backoff``; otherwise
                it becomes ``failed`` and is never retried automatically.
  Every outcome is written with a conditional UPDATE on the observed
  (status, retry_count), and committed per event, so an event handled by
  another worker in the meantime is skipped rather than double-written.

Delivery is at-least-once: a crash between a successful POST and the
commit re-sends the event; consumers dedupe on ``eventId``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from flask import current_app
from sqlalchemy import func, or_, select, update

from reqflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from reqflow.core.identifiers import new_id, require_valid_id
from reqflow.integrations.automation_gateway import AutomationGateway
from reqflow.models import db
from reqflow.models.outbox import EVENT_TYPES, OUTBOX_STATUSES, OutboxEvent

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Payload & enqueue ─────────────────────────────────────────────────────────


def build_payload(
    event_id: str,
    event_type: str,
    *,
    program_id: str,
    request_id: str,
    data: dict | None,
    performed_by,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Return the delivery body for one event.

    ``performed_by`` is a Principal (or anything with ``id`` and ``name``).
    """
    return {
        "eventId": event_id,
        "eventType": event_type,
        "programId": program_id,
        "requestId": request_id,
        "data": data or {},
        "performedBy": {
            "userId": performed_by.id,
            "name": getattr(performed_by, "name", "") or "",
        },
        "timestamp": (timestamp or _utcnow()).isoformat(),
    }


def enqueue_event(
    event_type: str,
    *,
    program_id: str,
    request_id: str,
    data: dict | None,
    performed_by,
    max_retries: int | None = None,
) -> OutboxEvent | None:
    """
    Insert a pending outbox row in the current transaction.

    Returns the flushed OutboxEvent, or None if the insert failed (the
    failure is logged; the caller's transaction is untouched).
    """
    if event_type not in EVENT_TYPES:
        logger.error("Refusing to enqueue unknown event type %s", event_type)
        return None

    if max_retries is None:
        max_retries = current_app.config.get("OUTBOX_MAX_RETRIES", 3)

    event_id = new_id()
    try:
        with db.session.begin_nested():
            event = OutboxEvent(
                id=event_id,
                event_type=event_type,
                payload=build_payload(
                    event_id, event_type,
                    program_id=program_id,
                    request_id=request_id,
                    data=data,
                    performed_by=performed_by,
                ),
                status="pending",
                retry_count=0,
                max_retries=max_retries,
            )
            db.session.add(event)
            db.session.flush()
        return event
    except Exception:
        logger.exception(
            "Failed to enqueue outbox event %s for request %s", event_type, request_id,
            extra={"event_type": event_type, "program_id": program_id},
        )
        return None


# ── Dispatch ─────────────────────────────────────────────────────────────────


def backoff(retry_count: int, base_seconds: int | None = None, max_seconds: int | None = None) -> timedelta:
    """Exponential delay before the next attempt: base * 2^(retry_count-1), capped."""
    if base_seconds is None:
        base_seconds = current_app.config.get("OUTBOX_BACKOFF_BASE_SECONDS", 30)
    if max_seconds is None:
        max_seconds = current_app.config.get("OUTBOX_BACKOFF_MAX_SECONDS", 3600)
    exponent = max(retry_count, 1) - 1
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))


def select_due_events(now: datetime | None = None, limit: int | None = None) -> list[OutboxEvent]:
    """Pending events with no scheduled retry or a retry time in the past."""
    now = now or _utcnow()
    if limit is None:
        limit = current_app.config.get("OUTBOX_BATCH_SIZE", 100)
    stmt = (
        select(OutboxEvent)
        .where(
            OutboxEvent.status == "pending",
            or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now),
        )
        .order_by(OutboxEvent.created_at, OutboxEvent.id)
        .limit(limit)
    )
    return list(db.session.execute(stmt).scalars())


def _conditional_update(event_id: str, observed_retry_count: int, **values) -> bool:
    """Apply ``values`` only if the row is still pending at the observed count."""
    result = db.session.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.id == event_id,
            OutboxEvent.status == "pending",
            OutboxEvent.retry_count == observed_retry_count,
        )
        .values(updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_event(event: OutboxEvent, observed_retry_count: int, now: datetime) -> bool:
    """
    Lease a due event to this dispatcher and commit the lease.

    The UPDATE only matches while the event is still pending, still at the
    observed retry count and still due, so of two dispatchers that selected
    the same row exactly one wins. The loser gets False.
    """
    lease = timedelta(seconds=current_app.config.get("OUTBOX_CLAIM_LEASE_SECONDS", 120))
    result = db.session.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.id == event.id,
            OutboxEvent.status == "pending",
            OutboxEvent.retry_count == observed_retry_count,
            or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now),
        )
        .values(next_retry_at=now + lease, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _record_success(event: OutboxEvent, observed: int, now: datetime) -> bool:
    return _conditional_update(
        event.id, observed,
        status="sent", sent_at=now, next_retry_at=None, last_error=None,
    )


def _record_failure(event: OutboxEvent, observed: int, error: str, now: datetime) -> str | None:
    """Persist a failed attempt. Returns the resulting status, or None if skipped."""
    attempts = observed + 1
    if attempts < event.max_retries:
        applied = _conditional_update(
            event.id, observed,
            retry_count=attempts, last_error=error,
            next_retry_at=now + backoff(attempts),
        )
        return "pending" if applied else None

    applied = _conditional_update(
        event.id, observed,
        status="failed", retry_count=attempts, last_error=error, next_retry_at=None,
    )
    if applied:
        logger.error(
            "Outbox event %s (%s) failed permanently after %d attempts: %s",
            event.id, event.event_type, attempts, error,
            extra={"event_type": event.event_type, "event_id": event.id},
        )
    return "failed" if applied else None


def dispatch_pending(gateway: AutomationGateway | None = None, now: datetime | None = None) -> dict[str, int]:
    """
    Run one dispatch pass over the due events.

    Returns:
        Counters: selected, sent, retried, failed, skipped.
    """
    gateway = gateway or AutomationGateway.from_config(current_app.config)
    results = {"selected": 0, "sent": 0, "retried": 0, "failed": 0, "skipped": 0}

    if not gateway.is_configured:
        logger.debug("AUTOMATION_WEBHOOK_BASE_URL not set -- skipping outbox dispatch")
        return results

    events = select_due_events(now)
    results["selected"] = len(events)

    for event in events:
        event_id, observed = event.id, event.retry_count
        try:
            claimed = claim_event(event, observed, now or _utcnow())
        except Exception:
            db.session.rollback()
            logger.exception("Could not claim outbox event %s", event_id)
            claimed = False
        if not claimed:
            logger.debug("Outbox event %s claimed elsewhere -- skipping", event_id)
            results["skipped"] += 1
            continue

        try:
            outcome = gateway.deliver(event)
            ok, error = outcome.ok, outcome.error
        except Exception as exc:
            logger.exception("Unexpected delivery error for outbox event %s", event.id)
            ok, error = False, f"{type(exc).__name__}: {exc}"

        attempt_time = now or _utcnow()
        try:
            if ok:
                status = "sent" if _record_success(event, observed, attempt_time) else None
            else:
                status = _record_failure(event, observed, error or "Unknown error", attempt_time)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Could not record delivery outcome for outbox event %s", event.id)
            results["skipped"] += 1
            continue

        if status is None:
            results["skipped"] += 1
        elif status == "sent":
            results["sent"] += 1
        elif status == "pending":
            results["retried"] += 1
        else:
            results["failed"] += 1

    if events:
        logger.info("Outbox dispatch: %s", results)
    return results


# ── Operator tooling ─────────────────────────────────────────────────────────


def requeue_failed(event_id: str) -> dict:
    """
    Return a ``failed`` event to ``pending`` with a fresh retry budget.

    Raises:
        ValidationError: malformed id.
        NotFoundError: no such event.
        ConflictError: event is not in ``failed`` (sent events are final).
    """
    event_id = require_valid_id(event_id, "event ID")
    event = db.session.get(OutboxEvent, event_id)
    if not event:
        raise NotFoundError(resource="OutboxEvent", resource_id=event_id)
    if event.status != "failed":
        raise ConflictError(f"Only failed events can be requeued (status={event.status})")

    result = db.session.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == "failed")
        .values(status="pending", retry_count=0, next_retry_at=None, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise ConflictError("Event changed while requeueing", retryable=True)
    db.session.commit()
    db.session.refresh(event)
    logger.info("Requeued outbox event %s", event_id, extra={"event_id": event_id})
    return event.to_dict()


def list_events(status: str | None = None, page: int = 1, per_page: int = 20) -> dict:
    if status is not None and status not in OUTBOX_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(OUTBOX_STATUSES)}")
    stmt = select(OutboxEvent)
    if status:
        stmt = stmt.where(OutboxEvent.status == status)
    stmt = stmt.order_by(OutboxEvent.created_at.desc())
    paginated = db.paginate(stmt, page=page, per_page=per_page, error_out=False)
    return {
        "events": [e.to_dict() for e in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    }


def outbox_stats() -> dict[str, int]:
    rows = db.session.execute(
        select(OutboxEvent.status, func.count()).group_by(OutboxEvent.status)
    ).all()
    stats = {status: 0 for status in OUTBOX_STATUSES}
    stats.update({status: count for status, count in rows})
    return stats
