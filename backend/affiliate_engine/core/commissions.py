from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_engine.core.affiliates import affiliate_tier, build_affiliate_link
from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import AffiliateNotFound, AffiliateValidationError
from affiliate_engine.core.metrics import record_commission_accrued
from affiliate_engine.core.money import percent_of
from affiliate_engine.core.promo_codes import quote_business_subscription
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import (
    count_attributions,
    get_active_attribution_for_user,
    get_affiliate,
)
from affiliate_engine.crud.commissions import (
    create_commission_entry,
    get_commission_by_event,
    list_voidable_for_events,
    select_payable_entries,
    sum_commissions_by_state,
    void_entries,
)
from affiliate_engine.models.affiliates import Affiliate, Attribution, CommissionLedger, PromoCode
from affiliate_engine.models.enums import (
    PAYABLE_COMMISSION_STATUSES,
    AffiliateTierEnum,
    AttributionTypeEnum,
    CommissionEventTypeEnum,
    CommissionStatusEnum,
)


logger = logging.getLogger(__name__)

PARENT_EVENT_SUFFIX = "_parent"


def parent_event_id(event_id: str) -> str:
    return f"{event_id}{PARENT_EVENT_SUFFIX}"


def accrue(
    db: Session,
    *,
    affiliate_id: int,
    amount_cents: int,
    event_id: str,
    event_type: CommissionEventTypeEnum,
    holdback_days: int | None = None,
    currency: str | None = None,
    attribution_id: int | None = None,
    meta: dict | None = None,
    now: datetime | None = None,
) -> CommissionLedger:
    """Record a commission entry, PENDING until the holdback elapses.

    ``event_id`` is the idempotency key: replaying the same earning event
    returns the entry written the first time.
    """
    if not event_id:
        raise AffiliateValidationError("event_id is required", code="missing_event_id")
    amount_cents = int(amount_cents)
    if amount_cents == 0:
        raise AffiliateValidationError("Commission amount cannot be zero", code="zero_commission")
    if amount_cents < 0 and event_type != CommissionEventTypeEnum.MANUAL_ADJUSTMENT:
        raise AffiliateValidationError(
            "Negative commissions are only allowed as manual adjustments",
            code="negative_commission",
        )

    existing = get_commission_by_event(db, event_id=event_id)
    if existing:
        logger.info("commission.duplicate_event", extra={"event_id": event_id, "entry_id": existing.id})
        return existing

    if not get_affiliate(db, affiliate_id=affiliate_id):
        raise AffiliateNotFound()

    now = now or utcnow()
    if holdback_days is None:
        holdback_days = settings.LEDGER_PENDING_DAYS
    if holdback_days < 0:
        raise AffiliateValidationError("holdback_days cannot be negative", code="invalid_holdback")

    try:
        entry = create_commission_entry(
            db,
            affiliate_id=affiliate_id,
            event_id=event_id,
            event_type=event_type,
            amount_cents=amount_cents,
            currency=(currency or settings.PAYOUT_CURRENCY).lower(),
            available_at=now + timedelta(days=int(holdback_days)),
            attribution_id=attribution_id,
            meta=meta,
        )
    except IntegrityError:
        # A concurrent accrual for the same event won the unique constraint.
        db.rollback()
        existing = get_commission_by_event(db, event_id=event_id)
        if existing:
            return existing
        raise

    record_commission_accrued(event_type=event_type.value)
    logger.info(
        "commission.accrued",
        extra={
            "entry_id": entry.id,
            "affiliate_id": affiliate_id,
            "event_id": event_id,
            "event_type": event_type.value,
            "amount_cents": amount_cents,
            "available_at": entry.available_at.isoformat() if entry.available_at else None,
        },
    )
    return entry


def list_available(db: Session, *, now: datetime | None = None) -> "OrderedDict[int, list[CommissionLedger]]":
    """Payable entries grouped by affiliate, evaluated once against ``now``."""
    now = now or utcnow()
    grouped: OrderedDict[int, list[CommissionLedger]] = OrderedDict()
    for entry in select_payable_entries(db, now=now):
        grouped.setdefault(entry.affiliate_id, []).append(entry)
    return grouped


def effective_status(entry: CommissionLedger, now: datetime | None = None) -> CommissionStatusEnum:
    now = now or utcnow()
    if entry.status.value in PAYABLE_COMMISSION_STATUSES:
        if entry.available_at is not None and entry.available_at <= now:
            return CommissionStatusEnum.AVAILABLE
        return CommissionStatusEnum.PENDING
    return entry.status


def user_commission_pct(affiliate: Affiliate):
    if affiliate.custom_user_commission_pct is not None:
        return affiliate.custom_user_commission_pct
    if affiliate_tier(affiliate) == AffiliateTierEnum.SUB:
        return settings.SUB_AFFILIATE_USER_COMMISSION_PCT
    return settings.AFFILIATE_USER_COMMISSION_PCT


def parent_user_commission_pct(affiliate: Affiliate):
    if affiliate.custom_parent_user_commission_pct is not None:
        return affiliate.custom_parent_user_commission_pct
    return settings.PARENT_AFFILIATE_USER_COMMISSION_PCT


def parent_business_commission_pct(affiliate: Affiliate):
    if affiliate.custom_parent_business_commission_pct is not None:
        return affiliate.custom_parent_business_commission_pct
    return settings.PARENT_AFFILIATE_BUSINESS_COMMISSION_PCT


def _existing_for_event(db: Session, event_id: str) -> list[CommissionLedger]:
    entries = []
    for key in (event_id, parent_event_id(event_id)):
        entry = get_commission_by_event(db, event_id=key)
        if entry:
            entries.append(entry)
    return entries


def process_order_commission(
    db: Session,
    *,
    order_id: str,
    platform_fee_cents: int,
    buyer_id: int,
    seller_id: int,
    now: datetime | None = None,
) -> list[CommissionLedger]:
    """Credit the affiliate behind the buyer (or else the seller) for a paid order.

    Each attributed side earns the affiliate's per-side percentage of the
    platform fee. When the earner is a sub-affiliate its parent gets a
    separate ``<order>_parent`` entry.
    """
    existing = _existing_for_event(db, order_id)
    if existing:
        return existing

    now = now or utcnow()
    buyer_attribution = get_active_attribution_for_user(
        db, user_id=buyer_id, attribution_type=AttributionTypeEnum.USER_SIGNUP, now=now
    )
    seller_attribution = get_active_attribution_for_user(
        db, user_id=seller_id, attribution_type=AttributionTypeEnum.USER_SIGNUP, now=now
    )
    if not buyer_attribution and not seller_attribution:
        logger.info("commission.order_unattributed", extra={"order_id": order_id})
        return []

    attribution = buyer_attribution or seller_attribution
    affiliate = attribution.affiliate
    sides = int(bool(buyer_attribution)) + int(bool(seller_attribution))
    meta = {
        "order_id": order_id,
        "buyer_id": buyer_id,
        "seller_id": seller_id,
        "platform_fee_cents": int(platform_fee_cents),
        "buyer_attributed": bool(buyer_attribution),
        "seller_attributed": bool(seller_attribution),
        "tier": affiliate_tier(affiliate).value,
    }

    entries: list[CommissionLedger] = []
    direct_cents = percent_of(platform_fee_cents, user_commission_pct(affiliate)) * sides
    if direct_cents > 0:
        entries.append(
            accrue(
                db,
                affiliate_id=affiliate.id,
                amount_cents=direct_cents,
                event_id=order_id,
                event_type=CommissionEventTypeEnum.ORDER_PAID,
                attribution_id=attribution.id,
                meta=meta,
                now=now,
            )
        )

    if affiliate.parent_affiliate_id is not None:
        parent_cents = percent_of(platform_fee_cents, parent_user_commission_pct(affiliate)) * sides
        if parent_cents > 0:
            entries.append(
                accrue(
                    db,
                    affiliate_id=affiliate.parent_affiliate_id,
                    amount_cents=parent_cents,
                    event_id=parent_event_id(order_id),
                    event_type=CommissionEventTypeEnum.ORDER_PAID,
                    attribution_id=attribution.id,
                    meta={**meta, "tier": "PARENT", "sub_affiliate_id": affiliate.id},
                    now=now,
                )
            )
    return entries


def process_invoice_commission(
    db: Session,
    *,
    invoice_id: str,
    subscription_fee_cents: int,
    attribution: Attribution,
    promo_code: PromoCode | None = None,
    now: datetime | None = None,
) -> list[CommissionLedger]:
    existing = _existing_for_event(db, invoice_id)
    if existing:
        return existing

    now = now or utcnow()
    if attribution.ends_at <= now:
        logger.info(
            "commission.invoice_window_expired",
            extra={"invoice_id": invoice_id, "attribution_id": attribution.id},
        )
        return []

    affiliate = attribution.affiliate
    discount_pct = promo_code.discount_share_pct if promo_code is not None else 0
    quote = quote_business_subscription(subscription_fee_cents, discount_pct, affiliate)
    meta = {
        "invoice_id": invoice_id,
        "subscription_fee_cents": int(subscription_fee_cents),
        "affiliate_commission_cents": quote.affiliate_commission_cents,
        "discount_cents": quote.discount_cents,
        "platform_share_cents": quote.platform_share_cents,
        "promo_code_id": promo_code.id if promo_code is not None else None,
        "tier": affiliate_tier(affiliate).value,
    }

    entries: list[CommissionLedger] = []
    if quote.final_affiliate_commission_cents > 0:
        entries.append(
            accrue(
                db,
                affiliate_id=affiliate.id,
                amount_cents=quote.final_affiliate_commission_cents,
                event_id=invoice_id,
                event_type=CommissionEventTypeEnum.INVOICE_PAID,
                attribution_id=attribution.id,
                meta=meta,
                now=now,
            )
        )

    if affiliate.parent_affiliate_id is not None:
        parent_cents = percent_of(subscription_fee_cents, parent_business_commission_pct(affiliate))
        if parent_cents > 0:
            entries.append(
                accrue(
                    db,
                    affiliate_id=affiliate.parent_affiliate_id,
                    amount_cents=parent_cents,
                    event_id=parent_event_id(invoice_id),
                    event_type=CommissionEventTypeEnum.INVOICE_PAID,
                    attribution_id=attribution.id,
                    meta={**meta, "tier": "PARENT", "sub_affiliate_id": affiliate.id},
                    now=now,
                )
            )
    return entries


def void_commissions(db: Session, *, event_id: str, reason: str) -> dict:
    """Void the unpaid entries of a refunded event and its parent twin.

    PAID entries are terminal; they are reported back for manual recovery.
    """
    entries = list_voidable_for_events(db, event_ids=[event_id, parent_event_id(event_id)])
    payable_ids = [entry.id for entry in entries if entry.status.value in PAYABLE_COMMISSION_STATUSES]
    paid_ids = [entry.id for entry in entries if entry.status == CommissionStatusEnum.PAID]
    voided = void_entries(db, entry_ids=payable_ids, reason=reason)
    if paid_ids:
        logger.warning(
            "commission.void_after_payout",
            extra={"event_id": event_id, "entry_ids": paid_ids, "reason": reason},
        )
    logger.info("commission.voided", extra={"event_id": event_id, "voided": voided, "reason": reason})
    return {"event_id": event_id, "voided": voided, "already_paid": paid_ids}


def build_affiliate_summary(db: Session, *, affiliate_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    affiliate = get_affiliate(db, affiliate_id=affiliate_id)
    if not affiliate:
        raise AffiliateNotFound()
    totals = sum_commissions_by_state(db, affiliate_id=affiliate_id, now=now)
    return {
        "affiliate_id": affiliate.id,
        "code": affiliate.code,
        "link": build_affiliate_link(affiliate.code),
        "tier": affiliate_tier(affiliate).value,
        "status": affiliate.status.value,
        "currency": settings.PAYOUT_CURRENCY,
        "pending_cents": totals["pending"],
        "available_cents": totals["available"],
        "paid_cents": totals["paid"],
        "void_cents": totals["void"],
        "attributions_total": count_attributions(db, affiliate_id=affiliate_id),
        "attributions_active": count_attributions(db, affiliate_id=affiliate_id, now=now),
        "payout_threshold_cents": settings.MIN_PAYOUT_AMOUNT_CENTS,
    }
