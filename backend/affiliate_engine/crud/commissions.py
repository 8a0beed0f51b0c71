from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session

from affiliate_engine.models.affiliates import AffiliatePayout, CommissionLedger
from affiliate_engine.models.enums import (
    PAYABLE_COMMISSION_STATUSES,
    CommissionEventTypeEnum,
    CommissionStatusEnum,
    PayoutStatusEnum,
)


def create_commission_entry(
    db: Session,
    *,
    affiliate_id: int,
    event_id: str,
    event_type: CommissionEventTypeEnum,
    amount_cents: int,
    currency: str,
    available_at: datetime | None,
    attribution_id: int | None = None,
    meta: dict | None = None,
    commit: bool = True,
) -> CommissionLedger:
    entry = CommissionLedger(
        affiliate_id=affiliate_id,
        event_id=event_id,
        event_type=event_type,
        amount_cents=int(amount_cents),
        currency=currency,
        status=CommissionStatusEnum.PENDING,
        available_at=available_at,
        attribution_id=attribution_id,
        meta_json=meta or {},
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    return entry


def get_commission_by_event(db: Session, *, event_id: str) -> CommissionLedger | None:
    return db.query(CommissionLedger).filter(CommissionLedger.event_id == event_id).first()


def list_commissions_for_affiliate(
    db: Session,
    *,
    affiliate_id: int,
    limit: int = 100,
) -> list[CommissionLedger]:
    return (
        db.query(CommissionLedger)
        .filter(CommissionLedger.affiliate_id == affiliate_id)
        .order_by(CommissionLedger.created_at.desc(), CommissionLedger.id.desc())
        .limit(limit)
        .all()
    )


def _payable_filter(now: datetime):
    return and_(
        CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES),
        CommissionLedger.available_at.isnot(None),
        CommissionLedger.available_at <= now,
        CommissionLedger.amount_cents > 0,
    )


def select_payable_entries(db: Session, *, now: datetime) -> list[CommissionLedger]:
    return (
        db.query(CommissionLedger)
        .filter(_payable_filter(now))
        .order_by(CommissionLedger.affiliate_id.asc(), CommissionLedger.id.asc())
        .all()
    )


def count_still_payable(db: Session, *, entry_ids: list[int]) -> int:
    if not entry_ids:
        return 0
    return int(
        db.query(func.count(CommissionLedger.id))
        .filter(
            CommissionLedger.id.in_(entry_ids),
            CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES),
        )
        .scalar()
        or 0
    )


def mark_entries_paid(
    db: Session,
    *,
    entry_ids: list[int],
    payout_id: int,
    paid_at: datetime,
) -> int:
    """Flip the given entries to PAID, but only those still payable.

    Does not commit; the caller owns the settlement transaction and
    compares the returned row count against the snapshot size.
    """
    if not entry_ids:
        return 0
    return (
        db.query(CommissionLedger)
        .filter(
            CommissionLedger.id.in_(entry_ids),
            CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES),
        )
        .update(
            {
                CommissionLedger.status: CommissionStatusEnum.PAID,
                CommissionLedger.payout_id: payout_id,
                CommissionLedger.paid_at: paid_at,
            },
            synchronize_session=False,
        )
    )


def list_voidable_for_events(db: Session, *, event_ids: list[str]) -> list[CommissionLedger]:
    return (
        db.query(CommissionLedger)
        .filter(CommissionLedger.event_id.in_(event_ids))
        .order_by(CommissionLedger.id.asc())
        .all()
    )


def void_entries(db: Session, *, entry_ids: list[int], reason: str) -> int:
    if not entry_ids:
        return 0
    updated = (
        db.query(CommissionLedger)
        .filter(
            CommissionLedger.id.in_(entry_ids),
            CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES),
        )
        .update(
            {CommissionLedger.status: CommissionStatusEnum.VOID, CommissionLedger.void_reason: reason},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated


def sum_commissions_by_state(db: Session, *, affiliate_id: int, now: datetime) -> dict[str, int]:
    """Totals per effective state; PENDING entries past holdback count as available."""
    matured = and_(
        CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES),
        CommissionLedger.available_at.isnot(None),
        CommissionLedger.available_at <= now,
    )
    payable = CommissionLedger.status.in_(PAYABLE_COMMISSION_STATUSES)

    def _total(condition):
        return func.coalesce(func.sum(case((condition, CommissionLedger.amount_cents), else_=0)), 0)

    row = (
        db.query(
            _total(and_(payable, ~matured)),
            _total(matured),
            _total(CommissionLedger.status == CommissionStatusEnum.PAID),
            _total(CommissionLedger.status == CommissionStatusEnum.VOID),
        )
        .filter(CommissionLedger.affiliate_id == affiliate_id)
        .one()
    )
    pending, available, paid, void = (int(value or 0) for value in row)
    return {"pending": pending, "available": available, "paid": paid, "void": void}


def create_payout(
    db: Session,
    *,
    affiliate_id: int,
    amount_cents: int,
    currency: str,
    status: PayoutStatusEnum,
    transfer_id: str | None,
    idempotency_key: str,
    entry_count: int,
    period_start: datetime,
    period_end: datetime,
    created_at: datetime,
    failure_reason: str | None = None,
) -> AffiliatePayout:
    """Stage a payout row; flushed so its id can be threaded into the ledger update."""
    payout = AffiliatePayout(
        affiliate_id=affiliate_id,
        amount_cents=int(amount_cents),
        currency=currency,
        status=status,
        transfer_id=transfer_id,
        idempotency_key=idempotency_key,
        entry_count=entry_count,
        period_start=period_start,
        period_end=period_end,
        created_at=created_at,
        failure_reason=failure_reason,
    )
    db.add(payout)
    db.flush()
    return payout


def get_last_sent_payout(db: Session, *, affiliate_id: int) -> AffiliatePayout | None:
    return (
        db.query(AffiliatePayout)
        .filter(
            AffiliatePayout.affiliate_id == affiliate_id,
            AffiliatePayout.status == PayoutStatusEnum.SENT,
        )
        .order_by(AffiliatePayout.period_end.desc(), AffiliatePayout.id.desc())
        .first()
    )


def list_payouts_for_affiliate(db: Session, *, affiliate_id: int, limit: int = 50) -> list[AffiliatePayout]:
    return (
        db.query(AffiliatePayout)
        .filter(AffiliatePayout.affiliate_id == affiliate_id)
        .order_by(AffiliatePayout.created_at.desc(), AffiliatePayout.id.desc())
        .limit(limit)
        .all()
    )


def sum_paid_for_payout(db: Session, *, payout_id: int) -> int:
    total = (
        db.query(func.coalesce(func.sum(CommissionLedger.amount_cents), 0))
        .filter(
            CommissionLedger.payout_id == payout_id,
            CommissionLedger.status == CommissionStatusEnum.PAID,
        )
        .scalar()
    )
    return int(total or 0)


