"""
Operator routes for the creator dashboard.

Dead jobs and failed events are the only things the engine surfaces to a
human; these endpoints list them and retry, dead-letter or replay.
All routes require an operator bearer token.
"""
from fastapi import APIRouter, Query

from storefront.api.deps import OperatorDep, SessionDep
from storefront.api.schemas import (
    ApiEnvelope,
    EventPublic,
    EventReceiptData,
    EventsData,
    JobPublic,
    JobsData,
    MarkDeadRequest,
)
from storefront.enums import EventStatus, JobStatus
from storefront.services import event_store, job_ledger

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/jobs", response_model=ApiEnvelope)
def list_jobs(
    session: SessionDep,
    _: OperatorDep,
    status: JobStatus | None = None,
    job_type: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> ApiEnvelope:
    """GET /api/v1/admin/jobs?status=dead&page=1&page_size=50"""
    jobs, count = job_ledger.list_jobs(
        session,
        status=status,
        job_type=job_type,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return ApiEnvelope(
        data=JobsData(data=[JobPublic.model_validate(job) for job in jobs], count=count)
    )


@router.post("/jobs/{job_id}/retry", response_model=ApiEnvelope)
def retry_job(session: SessionDep, _: OperatorDep, job_id: int) -> ApiEnvelope:
    """Requeue a dead or parked job with a fresh attempt budget."""
    job = job_ledger.retry_job(session, job_id)
    return ApiEnvelope(data=JobPublic.model_validate(job))


@router.post("/jobs/{job_id}/dead", response_model=ApiEnvelope)
def mark_job_dead(
    session: SessionDep, _: OperatorDep, job_id: int, body: MarkDeadRequest | None = None
) -> ApiEnvelope:
    job = job_ledger.mark_dead(session, job_id, reason=body.reason if body else None)
    return ApiEnvelope(data=JobPublic.model_validate(job))


@router.get("/events", response_model=ApiEnvelope)
def list_events(
    session: SessionDep,
    _: OperatorDep,
    status: EventStatus | None = None,
    event_type: str | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> ApiEnvelope:
    """GET /api/v1/admin/events?status=failed"""
    events, count = event_store.list_events(
        session,
        status=status,
        event_type=event_type,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return ApiEnvelope(
        data=EventsData(data=[EventPublic.model_validate(e) for e in events], count=count)
    )


@router.post("/events/{event_pk}/replay", response_model=ApiEnvelope)
def replay_event(session: SessionDep, _: OperatorDep, event_pk: int) -> ApiEnvelope:
    """Reconcile a stored event again; safe to repeat."""
    result = event_store.replay(session, event_pk)
    return ApiEnvelope(
        data=EventReceiptData(
            duplicate=result.duplicate,
            event_id=result.event_id,
            status=result.status,
        )
    )
