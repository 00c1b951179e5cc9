"""
Payment provider webhook.

The raw body is needed byte-for-byte for signature verification, so this
route reads the request itself instead of declaring a body model.
"""
from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from storefront.api.deps import SessionDep
from storefront.api.schemas import ApiEnvelope, EventReceiptData
from storefront.services import event_store

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", response_model=ApiEnvelope)
async def payment_webhook(
    request: Request,
    session: SessionDep,
    payment_signature: str | None = Header(default=None),
) -> ApiEnvelope:
    """
    Store and reconcile one provider event.

    Answers 200 as soon as the event is durably stored, even when
    reconciliation was deferred (status "received"); the provider must not
    redeliver because of our own transient failures. Malformed or badly
    signed bodies get 400.

    POST /api/v1/webhooks/payments
    """
    raw_body = await request.body()
    result = await run_in_threadpool(event_store.ingest, session, raw_body, payment_signature)
    return ApiEnvelope(
        data=EventReceiptData(
            duplicate=result.duplicate,
            event_id=result.event_id,
            status=result.status,
        )
    )
