"""
Event store: durable, deduplicated inbound payment-provider events.

ingest() is the webhook entry point:
1. parse and verify the signature
2. store the event as received and commit, so it survives any later failure
3. reconcile and mark it processed in one transaction

Redelivery of a processed (or rejected) event returns the stored outcome;
redelivery of an event still in received (an earlier attempt hit a
transient error) reconciles it again. Events stuck in received are retried
by replay_pending_events and promoted to failed after
EVENT_ANOMALY_AFTER_HOURS so an operator sees them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from storefront.api.errors import (
    IdempotencyNoOp,
    NotFound,
    SignatureInvalid,
    StateConflict,
    TerminalRejection,
    TransientDependencyError,
    ValidationError,
)
from storefront.core.config import settings
from storefront.core.security import verify_signature_header
from storefront.enums import EventStatus
from storefront.models import InboundEvent, ensure_utc, utc_now
from storefront.services import reconciler

logger = logging.getLogger(__name__)

SIGNATURE_INVALID = "signature_invalid"
REPLAY_BATCH_SIZE = 100


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    status: str
    duplicate: bool = False
    error: str | None = None


def _result(event: InboundEvent, *, duplicate: bool) -> IngestResult:
    return IngestResult(
        event_id=event.event_id,
        status=EventStatus(event.status).value,
        duplicate=duplicate,
        error=event.error,
    )


def get_by_event_id(session: Session, event_id: str) -> InboundEvent | None:
    return session.exec(select(InboundEvent).where(InboundEvent.event_id == event_id)).first()


def parse_event(raw_body: bytes) -> tuple[str, str, dict]:
    """
    Returns:
        (event id, event type, decoded payload)

    Raises:
        ValidationError: body is not a JSON object with an id and a type
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Event body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Event body must be a JSON object")
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Event id is missing")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Event type is missing")
    return event_id, event_type, payload


def _signature_ok(raw_body: bytes, signature_header: str | None, now: datetime) -> bool:
    secret = settings.PAYMENT_WEBHOOK_SECRET
    if not secret:
        return True
    return verify_signature_header(
        secret=secret,
        header=signature_header,
        body=raw_body,
        now=now,
        tolerance_seconds=settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
    )


def _store_rejected(session: Session, event_id: str, event_type: str, payload: dict, now: datetime) -> None:
    session.add(
        InboundEvent(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=EventStatus.failed,
            error=SIGNATURE_INVALID,
            received_at=now,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        # stored concurrently; nothing to record
        session.rollback()


def ingest(
    session: Session,
    raw_body: bytes,
    signature_header: str | None,
    *,
    now: datetime | None = None,
) -> IngestResult:
    """
    Store and reconcile one provider event.

    Returns:
        IngestResult; duplicate=True when the event id was already stored

    Raises:
        ValidationError: malformed body (nothing is stored)
        SignatureInvalid: bad signature (stored as failed, never processed)
    """
    now = now or utc_now()
    event_id, event_type, payload = parse_event(raw_body)
    existing = get_by_event_id(session, event_id)

    if not _signature_ok(raw_body, signature_header, now):
        logger.warning(f"Rejected event {event_id}: invalid signature")
        if existing is None:
            _store_rejected(session, event_id, event_type, payload, now)
        raise SignatureInvalid()

    if existing is not None:
        if existing.status == EventStatus.failed and existing.error == SIGNATURE_INVALID:
            # a forged or corrupted copy got here first; the genuine event replaces it
            logger.info(f"Event {event_id}: valid delivery replaces a signature-rejected copy")
            existing.event_type = event_type
            existing.payload = payload
            existing.status = EventStatus.received
            existing.error = None
            existing.received_at = now
            session.add(existing)
            session.commit()
            return _process(session, existing, now=now, duplicate=False)
        if existing.status != EventStatus.received:
            logger.info(f"Duplicate event {event_id} ({EventStatus(existing.status).value}), skipping")
            return _result(existing, duplicate=True)
        return _process(session, existing, now=now, duplicate=True)

    event = InboundEvent(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        status=EventStatus.received,
        received_at=now,
    )
    session.add(event)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        event = get_by_event_id(session, event_id)
        if event is None:
            raise TransientDependencyError(f"Could not store event {event_id}")
        if event.status != EventStatus.received:
            return _result(event, duplicate=True)
        return _process(session, event, now=now, duplicate=True)
    logger.info(f"Stored event {event_id} ({event_type})")
    return _process(session, event, now=now, duplicate=False)


def _process(session: Session, event: InboundEvent, *, now: datetime, duplicate: bool) -> IngestResult:
    """
    Reconcile a stored event and record the outcome.

    Transient failures leave the event in received for replay; permanent
    ones mark it failed. Either way the event row itself is never lost.
    """
    event_pk = event.id
    try:
        reconciler.reconcile(session, event, now=now)
        event.status = EventStatus.processed
        event.processed_at = now
        event.error = None
        event.attempts += 1
        session.add(event)
        session.commit()
    except (IdempotencyNoOp, StateConflict) as e:
        session.rollback()
        logger.info(f"Event {event_pk} already applied: {e.message}")
        _record_outcome(session, event_pk, status=EventStatus.processed, error=None, now=now)
    except (ValidationError, TerminalRejection) as e:
        session.rollback()
        logger.warning(f"Event {event_pk} rejected: {e.message}")
        _record_outcome(session, event_pk, status=EventStatus.failed, error=e.message, now=now)
    except (TransientDependencyError, OperationalError) as e:
        session.rollback()
        logger.warning(f"Event {event_pk} deferred: {e}")
        _record_outcome(session, event_pk, status=EventStatus.received, error=str(e), now=now)
    except Exception as e:
        session.rollback()
        logger.exception(f"Unexpected error reconciling event {event_pk}")
        _record_outcome(
            session, event_pk, status=EventStatus.received, error=f"{type(e).__name__}: {e}", now=now
        )
    stored = session.get(InboundEvent, event_pk)
    return _result(stored, duplicate=duplicate)


def _record_outcome(
    session: Session, event_pk: int, *, status: EventStatus, error: str | None, now: datetime
) -> None:
    event = session.get(InboundEvent, event_pk)
    event.status = status
    event.error = error
    event.attempts += 1
    if status == EventStatus.processed:
        event.processed_at = now
    session.add(event)
    session.commit()


def replay(session: Session, event_pk: int, *, now: datetime | None = None) -> IngestResult:
    """
    Operator replay of one stored event.

    Safe to call any number of times: every reconciliation step is a no-op
    on state it already produced.

    Raises:
        NotFound: unknown event
        StateConflict: the event was rejected for its signature
    """
    now = now or utc_now()
    event = session.get(InboundEvent, event_pk)
    if event is None:
        raise NotFound(f"Event {event_pk} not found")
    if event.error == SIGNATURE_INVALID:
        raise StateConflict("Signature-rejected events cannot be replayed")
    logger.info(f"Replaying event {event.event_id} ({EventStatus(event.status).value})")
    return _process(session, event, now=now, duplicate=event.status != EventStatus.received)


def replay_pending_events(session: Session, *, now: datetime | None = None) -> dict[str, int]:
    """
    Scheduler sweep over events stuck in received.

    Returns:
        Counts of replayed, processed and anomalous events
    """
    now = now or utc_now()
    ready_before = now - timedelta(seconds=settings.EVENT_REPLAY_DELAY_SECONDS)
    anomaly_before = now - timedelta(hours=settings.EVENT_ANOMALY_AFTER_HOURS)

    events = session.exec(
        select(InboundEvent)
        .where(
            InboundEvent.status == EventStatus.received,
            col(InboundEvent.received_at) <= ready_before,
        )
        .order_by(col(InboundEvent.received_at))
        .limit(REPLAY_BATCH_SIZE)
    ).all()
    pending = [(e.id, ensure_utc(e.received_at)) for e in events]

    counts = {"replayed": 0, "processed": 0, "anomalies": 0}
    for event_pk, received_at in pending:
        event = session.get(InboundEvent, event_pk)
        if event is None or event.status != EventStatus.received:
            continue
        if received_at < anomaly_before:
            event.status = EventStatus.failed
            reason = f"anomaly: unreconciled after {settings.EVENT_ANOMALY_AFTER_HOURS}h"
            event.error = f"{reason}: {event.error}" if event.error else reason
            session.add(event)
            session.commit()
            counts["anomalies"] += 1
            logger.warning(f"Event {event.event_id} marked failed: still unreconciled")
            continue
        result = _process(session, event, now=now, duplicate=True)
        counts["replayed"] += 1
        if result.status == EventStatus.processed:
            counts["processed"] += 1
    if counts["replayed"] or counts["anomalies"]:
        logger.info(f"Event replay sweep: {counts}")
    return counts


def list_events(
    session: Session,
    *,
    status: EventStatus | None = None,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[InboundEvent], int]:
    filters = []
    if status is not None:
        filters.append(InboundEvent.status == status)
    if event_type:
        filters.append(InboundEvent.event_type == event_type)
    count = session.exec(select(func.count()).select_from(InboundEvent).where(*filters)).one()
    rows = session.exec(
        select(InboundEvent)
        .where(*filters)
        .order_by(col(InboundEvent.received_at).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    return list(rows), count
