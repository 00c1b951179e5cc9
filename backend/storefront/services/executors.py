"""
Fulfillment executors.

Jobs are tagged variants: job_type selects a handler from HANDLERS, payload
carries its arguments. Handlers receive the worker's session and must be
idempotent (a lease can expire mid-run and the job run again elsewhere).

Outcome mapping in run_job:
- handler returns: success
- TerminalRejection: dead, never retried
- StateConflict / IdempotencyNoOp: target state already reached, success
- anything else: transient, retried with backoff until max_attempts
- no handler for the type: parked as failed
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlmodel import Session, select

from storefront.api.errors import (
    IdempotencyNoOp,
    NotFound,
    RaceLossError,
    StateConflict,
    TerminalRejection,
    TransientDependencyError,
)
from storefront.enums import TERMINAL_ORDER_STATUSES, EntitlementStatus, JobType
from storefront.integrations.github import get_github_client
from storefront.integrations.mailer import ReceiptLine, get_mailer, render_receipt
from storefront.models import (
    Entitlement,
    Job,
    License,
    Order,
    OrderItem,
    Product,
    ProductVersion,
    utc_now,
)
from storefront.services import (
    affiliate_service,
    job_ledger,
    license_service,
    webhook_service,
)
from storefront.services.job_ledger import JobOutcome

logger = logging.getLogger(__name__)

JobHandler = Callable[[Session, Job, datetime], None]

HANDLERS: dict[str, JobHandler] = {}


def job_handler(job_type: JobType) -> Callable[[JobHandler], JobHandler]:
    """Register the decorated function as the handler of ``job_type``."""

    def decorator(func: JobHandler) -> JobHandler:
        HANDLERS[job_type.value] = func
        return func

    return decorator


def _order(session: Session, job: Job) -> Order:
    order_id = job.payload.get("order_id")
    order = session.get(Order, int(order_id)) if order_id is not None else None
    if order is None:
        raise TerminalRejection(f"Job {job.id}: order {order_id} not found")
    return order


def _fulfillable(session: Session, order: Order) -> bool:
    """False once the order was refunded, disputed or had its entitlements revoked."""
    if order.status in TERMINAL_ORDER_STATUSES:
        return False
    entitlement = session.exec(
        select(Entitlement).where(
            Entitlement.order_id == order.id,
            Entitlement.status == EntitlementStatus.active,
        )
    ).first()
    return entitlement is not None


def _licensed_versions(session: Session, order: Order) -> list[ProductVersion]:
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    versions = [session.get(ProductVersion, item.version_id) for item in items]
    return [v for v in versions if v is not None and v.licensing_enabled]


def _ensure_licenses(session: Session, order: Order, now: datetime) -> list[License]:
    return [
        license_service.issue_license(session, order, version, now=now)
        for version in _licensed_versions(session, order)
    ]


@job_handler(JobType.issue_license)
def issue_license(session: Session, job: Job, now: datetime) -> None:
    order = _order(session, job)
    if not _fulfillable(session, order):
        logger.info(f"Order {order.id} is no longer fulfillable, not issuing licenses")
        return
    _ensure_licenses(session, order, now)


@job_handler(JobType.send_receipt_email)
def send_receipt_email(session: Session, job: Job, now: datetime) -> None:
    order = _order(session, job)
    licenses = {}
    if _fulfillable(session, order):
        # the receipt carries the key, so issue it here if that job has not run yet
        licenses = {lic.version_id: lic for lic in _ensure_licenses(session, order, now)}

    lines = []
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    for item in items:
        version = session.get(ProductVersion, item.version_id)
        product = session.get(Product, item.product_id)
        license = licenses.get(item.version_id)
        lines.append(
            ReceiptLine(
                product_name=product.name if product else str(item.product_id),
                version_name=version.name if version else str(item.version_id),
                amount_cents=item.unit_price_cents * item.quantity,
                license_key=license.license_key if license else None,
            )
        )
    subject, text = render_receipt(
        order_id=order.id, currency=order.currency, total_cents=order.total_cents, lines=lines
    )
    get_mailer().send(to=order.customer_email, subject=subject, text=text)


@job_handler(JobType.github_invite)
def github_invite(session: Session, job: Job, now: datetime) -> None:
    order = _order(session, job)
    repo = job.payload.get("repo")
    if not repo:
        raise TerminalRejection(f"Job {job.id}: no repository in payload")
    if not _fulfillable(session, order):
        logger.info(f"Order {order.id} is no longer fulfillable, skipping repository invite")
        return
    if not order.github_username:
        raise TerminalRejection(f"Order {order.id} has no GitHub username")
    get_github_client().invite_collaborator(repo=repo, username=order.github_username)


@job_handler(JobType.deliver_outbound_webhooks)
def deliver_outbound_webhooks(session: Session, job: Job, now: datetime) -> None:
    order = _order(session, job)
    event_type = job.payload.get("event_type") or webhook_service.ORDER_PAID
    event_id = job.payload.get("event_id") or webhook_service.outbound_event_id(order, event_type)
    deliveries = webhook_service.record_deliveries(
        session,
        event_id=event_id,
        event_type=event_type,
        data=webhook_service.order_event_data(session, order),
        now=now,
    )
    # first attempt inline; later ones belong to the retry sweep
    webhook_service.deliver_due(session, now=now, delivery_ids=[d.id for d in deliveries])


@job_handler(JobType.reverse_on_refund)
def reverse_on_refund(session: Session, job: Job, now: datetime) -> None:
    order = _order(session, job)
    license_service.revoke_licenses_for_order(session, order.id, now=now)
    job_ledger.enqueue(
        session,
        JobType.affiliate_compute_commission,
        {"order_id": order.id, "action": "reverse"},
        idempotency_key=f"reverse:{order.id}",
    )


@job_handler(JobType.affiliate_compute_commission)
def affiliate_compute_commission(session: Session, job: Job, now: datetime) -> None:
    action = job.payload.get("action", "accrue")
    order = _order(session, job)
    if action == "accrue":
        affiliate_service.accrue_commission(session, order.id, now=now)
    elif action == "reverse":
        affiliate_service.reverse_commission(session, order.id, now=now)
    else:
        raise TerminalRejection(f"Job {job.id}: unknown commission action {action!r}")


@job_handler(JobType.affiliate_payout)
def affiliate_payout(session: Session, job: Job, now: datetime) -> None:
    affiliate_service.create_payouts(session, now=now)


def run_job(
    session: Session,
    job: Job,
    *,
    worker_id: str,
    now: datetime | None = None,
) -> Job:
    """
    Run one claimed job and record its outcome.

    The handler's writes and the completion commit together; on failure the
    handler's writes are rolled back first.
    """
    now = now or utc_now()
    job_id = job.id
    handler = HANDLERS.get(job.job_type)
    if handler is None:
        outcome = JobOutcome.park(f"no handler registered for job type {job.job_type!r}")
    else:
        try:
            handler(session, job, now)
            outcome = JobOutcome.success()
        except TerminalRejection as e:
            session.rollback()
            outcome = JobOutcome.dead(e.message)
        except (StateConflict, IdempotencyNoOp) as e:
            session.rollback()
            logger.info(f"Job {job_id}: already in target state ({e.message})")
            outcome = JobOutcome.success()
        except (TransientDependencyError, RaceLossError, NotFound) as e:
            session.rollback()
            outcome = JobOutcome.retry(e.message)
        except Exception as e:
            session.rollback()
            logger.exception(f"Job {job_id} raised an unexpected error")
            outcome = JobOutcome.retry(f"{type(e).__name__}: {e}")
    return job_ledger.complete(session, job_id, outcome, worker_id=worker_id, now=now)
