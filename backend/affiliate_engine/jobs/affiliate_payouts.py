from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from affiliate_engine.core.commissions import list_available
from affiliate_engine.core.config import settings
from affiliate_engine.core.db import SessionLocal
from affiliate_engine.core.errors import PayoutConfigurationError, PayoutRunInProgress, TransferFailed
from affiliate_engine.core.logging import configure_logging
from affiliate_engine.core.metrics import record_job_run, record_payout_amount, record_payout_outcome
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import get_affiliates_by_ids
from affiliate_engine.crud.commissions import (
    count_still_payable,
    create_commission_entry,
    create_payout,
    get_last_sent_payout,
    mark_entries_paid,
    sum_paid_for_payout,
)
from affiliate_engine.crud.job_locks import get_lock, release_lock, try_acquire_lock
from affiliate_engine.models.affiliates import Affiliate, CommissionLedger
from affiliate_engine.models.enums import AffiliateStatusEnum, CommissionEventTypeEnum, PayoutStatusEnum
from affiliate_engine.payouts import TransferClient, get_transfer_client


logger = logging.getLogger(__name__)

JOB_NAME = "affiliate_payouts"

SKIP_BELOW_MINIMUM = "below_minimum"
SKIP_NO_ACCOUNT = "no_payout_account"
SKIP_ACCOUNT_NOT_READY = "payout_account_not_ready"
SKIP_INACTIVE = "affiliate_inactive"
SKIP_MISSING = "affiliate_missing"
SKIP_MIXED_CURRENCY = "mixed_currency"

# Stands in for "no client given"; an explicit None is a missing provider.
DEFAULT_TRANSFER_CLIENT = object()


@dataclass
class PayoutRunSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    payouts: list[dict] = field(default_factory=list)
    skips: list[dict] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _AffiliateBatch:
    affiliate_id: int
    affiliate: Affiliate | None
    entry_ids: list[int]
    amount_cents: int
    currency: str


def _snapshot(db: Session, now: datetime) -> list[_AffiliateBatch]:
    grouped = list_available(db, now=now)
    affiliates = get_affiliates_by_ids(db, list(grouped))
    batches = []
    for affiliate_id, entries in grouped.items():
        batches.append(
            _AffiliateBatch(
                affiliate_id=affiliate_id,
                affiliate=affiliates.get(affiliate_id),
                entry_ids=[entry.id for entry in entries],
                amount_cents=sum(int(entry.amount_cents) for entry in entries),
                currency=_batch_currency(entries),
            )
        )
    return batches


def _batch_currency(entries: list[CommissionLedger]) -> str:
    currencies = {(entry.currency or settings.PAYOUT_CURRENCY).lower() for entry in entries}
    if len(currencies) == 1:
        return currencies.pop()
    # Mixed-currency batches are not settled in one transfer.
    return ""


def skip_reason(batch: _AffiliateBatch) -> str | None:
    if not batch.currency:
        return SKIP_MIXED_CURRENCY
    if batch.amount_cents < settings.MIN_PAYOUT_AMOUNT_CENTS:
        return SKIP_BELOW_MINIMUM
    affiliate = batch.affiliate
    if affiliate is None:
        return SKIP_MISSING
    if affiliate.status != AffiliateStatusEnum.ACTIVE:
        return SKIP_INACTIVE
    if not affiliate.payout_account_id:
        return SKIP_NO_ACCOUNT
    if not affiliate.payout_account_ready:
        return SKIP_ACCOUNT_NOT_READY
    return None


def _skip_message(batch: _AffiliateBatch, reason: str) -> str:
    if reason == SKIP_NO_ACCOUNT:
        return f"Affiliate {batch.affiliate_id} has no Stripe Connect account"
    if reason == SKIP_ACCOUNT_NOT_READY:
        return f"Affiliate {batch.affiliate_id} has not completed Stripe Connect onboarding"
    if reason == SKIP_INACTIVE:
        return f"Affiliate {batch.affiliate_id} is not active"
    if reason == SKIP_MIXED_CURRENCY:
        return f"Affiliate {batch.affiliate_id} has entries in more than one currency"
    return f"Affiliate {batch.affiliate_id} not found"


def compute_period(db: Session, *, affiliate_id: int, now: datetime) -> tuple[datetime, datetime]:
    last_sent = get_last_sent_payout(db, affiliate_id=affiliate_id)
    if last_sent is not None:
        period_start = last_sent.period_end + timedelta(milliseconds=1)
    else:
        period_start = now - timedelta(days=settings.PAYOUT_LOOKBACK_DAYS)
    return period_start, now


def build_idempotency_key(affiliate_id: int, period_start: datetime, period_end: datetime) -> str:
    fmt = "%Y%m%dT%H%M%S%f"
    return f"affiliate-payout-{affiliate_id}-{period_start.strftime(fmt)}-{period_end.strftime(fmt)}"


def _record_failed_payout(
    db: Session,
    *,
    batch: _AffiliateBatch,
    idempotency_key: str,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    reason: str,
) -> None:
    if batch.amount_cents <= 0:
        return
    try:
        create_payout(
            db,
            affiliate_id=batch.affiliate_id,
            amount_cents=batch.amount_cents,
            currency=batch.currency,
            status=PayoutStatusEnum.FAILED,
            transfer_id=None,
            # FAILED rows never block a later SENT payout for the same period.
            idempotency_key=f"{idempotency_key}-failed-{uuid.uuid4().hex[:8]}",
            entry_count=0,
            period_start=period_start,
            period_end=period_end,
            created_at=now,
            failure_reason=reason[:1000],
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("affiliate_payout.audit_failed", extra={"affiliate_id": batch.affiliate_id})


def _fail(summary: PayoutRunSummary, batch: _AffiliateBatch, message: str, reason: str) -> None:
    summary.failed += 1
    summary.errors.append(message)
    record_payout_outcome(outcome="failed", reason=reason)
    logger.warning(
        "affiliate_payout.failed",
        extra={"affiliate_id": batch.affiliate_id, "amount_cents": batch.amount_cents, "reason": reason},
    )


def _settle(
    db: Session,
    *,
    batch: _AffiliateBatch,
    client: TransferClient,
    now: datetime,
    summary: PayoutRunSummary,
) -> None:
    period_start, period_end = compute_period(db, affiliate_id=batch.affiliate_id, now=now)
    idempotency_key = build_idempotency_key(batch.affiliate_id, period_start, period_end)

    if count_still_payable(db, entry_ids=batch.entry_ids) != len(batch.entry_ids):
        # Something voided or paid part of the snapshot; do not transfer a stale total.
        db.rollback()
        _fail(
            summary,
            batch,
            f"Affiliate {batch.affiliate_id}: ledger changed since snapshot, payout deferred",
            "snapshot_changed",
        )
        return

    try:
        result = client.transfer(
            destination=batch.affiliate.payout_account_id,
            amount_cents=batch.amount_cents,
            currency=batch.currency,
            idempotency_key=idempotency_key,
            metadata={
                "affiliate_id": str(batch.affiliate_id),
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "entry_count": str(len(batch.entry_ids)),
            },
        )
    except TransferFailed as exc:
        db.rollback()
        _fail(summary, batch, f"Affiliate {batch.affiliate_id}: transfer failed: {exc}", "transfer_failed")
        _record_failed_payout(
            db,
            batch=batch,
            idempotency_key=idempotency_key,
            period_start=period_start,
            period_end=period_end,
            now=now,
            reason=str(exc),
        )
        return

    try:
        payout = create_payout(
            db,
            affiliate_id=batch.affiliate_id,
            amount_cents=batch.amount_cents,
            currency=batch.currency,
            status=PayoutStatusEnum.SENT,
            transfer_id=result.transfer_id,
            idempotency_key=idempotency_key,
            entry_count=len(batch.entry_ids),
            period_start=period_start,
            period_end=period_end,
            created_at=now,
        )
        updated = mark_entries_paid(db, entry_ids=batch.entry_ids, payout_id=payout.id, paid_at=now)
        unsettled_cents = 0
        if updated != len(batch.entry_ids):
            # The transfer already went out: the surviving entries stay PAID
            # against it and the uncovered part is booked as a clawback.
            unsettled_cents = batch.amount_cents - sum_paid_for_payout(db, payout_id=payout.id)
            payout.entry_count = updated
            payout.failure_reason = "reconciliation_required"
            if unsettled_cents > 0:
                create_commission_entry(
                    db,
                    affiliate_id=batch.affiliate_id,
                    event_id=f"payout-{payout.id}-clawback",
                    event_type=CommissionEventTypeEnum.MANUAL_ADJUSTMENT,
                    amount_cents=-unsettled_cents,
                    currency=batch.currency,
                    available_at=now,
                    meta={
                        "payout_id": payout.id,
                        "transfer_id": result.transfer_id,
                        "snapshot_entry_ids": batch.entry_ids,
                    },
                    commit=False,
                )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "affiliate_payout.persist_failed",
            extra={"affiliate_id": batch.affiliate_id, "transfer_id": result.transfer_id},
        )
        _fail(
            summary,
            batch,
            f"Affiliate {batch.affiliate_id}: transfer {result.transfer_id} sent but payout not recorded; "
            "reconciliation required",
            "persist_failed",
        )
        return

    summary.processed += 1
    summary.payouts.append(
        {
            "affiliate_id": batch.affiliate_id,
            "payout_id": payout.id,
            "amount_cents": batch.amount_cents,
            "currency": batch.currency,
            "transfer_id": result.transfer_id,
            "entry_count": updated,
        }
    )
    record_payout_amount(currency=batch.currency, amount_cents=batch.amount_cents)
    if unsettled_cents:
        summary.errors.append(
            f"Affiliate {batch.affiliate_id}: transfer {result.transfer_id} covered {unsettled_cents} cents "
            "no longer payable; clawback recorded, reconciliation required"
        )
        record_payout_outcome(outcome="sent", reason="reconciliation_required")
        logger.error(
            "affiliate_payout.reconciliation_required",
            extra={
                "affiliate_id": batch.affiliate_id,
                "payout_id": payout.id,
                "transfer_id": result.transfer_id,
                "expected": len(batch.entry_ids),
                "updated": updated,
                "unsettled_cents": unsettled_cents,
            },
        )
        return
    record_payout_outcome(outcome="sent")
    logger.info(
        "affiliate_payout.sent",
        extra={
            "affiliate_id": batch.affiliate_id,
            "payout_id": payout.id,
            "amount_cents": batch.amount_cents,
            "transfer_id": result.transfer_id,
        },
    )


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def run_payout_batch(
    db: Session,
    *,
    now: datetime | None = None,
    transfer_client=DEFAULT_TRANSFER_CLIENT,
    should_continue: Callable[[], bool] | None = None,
) -> PayoutRunSummary:
    """Settle every affiliate's matured commissions in one pass.

    Entry ids are fixed at the snapshot. Each affiliate is settled on its
    own: a skip or failure for one never stops the others, and nothing is
    marked PAID unless its transfer succeeded.
    """
    now = now or utcnow()
    client = transfer_client
    if client is DEFAULT_TRANSFER_CLIENT:
        client = get_transfer_client("stripe")
    if client is None:
        raise PayoutConfigurationError("No transfer client configured")
    client.ensure_configured()

    owner = _lock_owner()
    if not try_acquire_lock(
        db,
        job_name=JOB_NAME,
        owner=owner,
        now=utcnow(),
        ttl_seconds=settings.PAYOUT_LOCK_TTL_SECONDS,
    ):
        lock = get_lock(db, job_name=JOB_NAME)
        raise PayoutRunInProgress(lock.locked_by if lock else None)

    summary = PayoutRunSummary()
    try:
        batches = _snapshot(db, now)
        logger.info("affiliate_payout.snapshot", extra={"affiliates": len(batches)})

        payable: list[_AffiliateBatch] = []
        for batch in batches:
            reason = skip_reason(batch)
            if reason is None:
                payable.append(batch)
                continue
            summary.skipped += 1
            summary.skips.append(
                {"affiliate_id": batch.affiliate_id, "amount_cents": batch.amount_cents, "reason": reason}
            )
            # Below the threshold is a normal carry-over, not an error.
            if reason != SKIP_BELOW_MINIMUM:
                summary.errors.append(_skip_message(batch, reason))
            record_payout_outcome(outcome="skipped", reason=reason)
            logger.info(
                "affiliate_payout.skipped",
                extra={"affiliate_id": batch.affiliate_id, "amount_cents": batch.amount_cents, "reason": reason},
            )

        for index, batch in enumerate(payable):
            if should_continue is not None and not should_continue():
                summary.cancelled = True
                logger.info("affiliate_payout.cancelled", extra={"remaining": len(payable) - index})
                break
            try:
                _settle(db, batch=batch, client=client, now=now, summary=summary)
            except Exception as exc:
                db.rollback()
                logger.exception("affiliate_payout.unexpected_error", extra={"affiliate_id": batch.affiliate_id})
                _fail(summary, batch, f"Affiliate {batch.affiliate_id}: {exc}", "unexpected_error")
    finally:
        release_lock(db, job_name=JOB_NAME, owner=owner)

    logger.info(
        "affiliate_payout.run_complete",
        extra={
            "processed": summary.processed,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "cancelled": summary.cancelled,
        },
    )
    return summary


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pay out matured affiliate commissions.")
    parser.add_argument("--provider", default="stripe", help="Transfer provider to use.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_logging()
    success = True
    try:
        client = get_transfer_client(args.provider)
        if client is None:
            raise PayoutConfigurationError(f"Unknown transfer provider: {args.provider}")
        with SessionLocal() as db:
            summary = run_payout_batch(db, transfer_client=client)
        logger.info(
            "Affiliate payout run complete. processed=%s skipped=%s failed=%s",
            summary.processed,
            summary.skipped,
            summary.failed,
        )
    except (PayoutConfigurationError, PayoutRunInProgress) as exc:
        success = False
        logger.error("Affiliate payout run aborted: %s", exc.message)
        sys.exit(2)
    except Exception:
        success = False
        logger.exception("Affiliate payout run failed")
        raise
    finally:
        record_job_run(job_name=JOB_NAME, success=success)


if __name__ == "__main__":
    main()
