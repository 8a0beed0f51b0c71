from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_engine.core.affiliates import affiliate_tier
from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import (
    AffiliateValidationError,
    DiscountRejected,
    PromoCodeConflict,
    PromoCodeNotFound,
    PromoCodeNotRedeemable,
)
from affiliate_engine.core.money import percent_of, round_half_up, to_decimal
from affiliate_engine.core.time import normalize_ts, utcnow
from affiliate_engine.crud import promo_codes as crud
from affiliate_engine.models.affiliates import Affiliate, PromoCode
from affiliate_engine.models.enums import AffiliateTierEnum, PromoCodeStatusEnum


logger = logging.getLogger(__name__)

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{2,31}$")
UPDATABLE_FIELDS = {"discount_share_pct", "status", "starts_at", "ends_at", "max_redemptions"}


def max_allowed_discount_pct(affiliate: Affiliate) -> int:
    if affiliate_tier(affiliate) == AffiliateTierEnum.SUB:
        return int(settings.SUB_AFFILIATE_MAX_DISCOUNT_PCT)
    return int(settings.MAIN_AFFILIATE_MAX_DISCOUNT_PCT)


def min_retention_pct(affiliate: Affiliate) -> int:
    return 100 - max_allowed_discount_pct(affiliate)


def validate_discount(affiliate: Affiliate, requested_pct) -> int:
    """Return the stored discount share or raise DiscountRejected.

    The 0-100 range is checked before the tier cap, so an out-of-range
    value is never reported as a cap violation.
    """
    try:
        value = to_decimal(requested_pct)
    except (ArithmeticError, TypeError, ValueError):
        raise DiscountRejected("Discount percentage must be a number between 0 and 100")
    if not value.is_finite() or value < 0 or value > 100:
        raise DiscountRejected("Discount percentage must be between 0 and 100")

    max_pct = max_allowed_discount_pct(affiliate)
    retention = 100 - max_pct
    if value > max_pct:
        raise DiscountRejected(
            f"You must always keep at least {retention}% of your commission. "
            f"Maximum discount is {max_pct}%",
            max_allowed_pct=max_pct,
            min_retention_pct=retention,
        )
    return round_half_up(value)


def normalize_promo_code(code: str | None) -> str:
    value = (code or "").strip().upper()
    if not PROMO_CODE_PATTERN.match(value):
        raise AffiliateValidationError(
            "Promo code must be 3-32 characters of letters, digits, '-' or '_'",
            code="invalid_promo_code",
        )
    return value


def _check_window(starts_at: datetime | None, ends_at: datetime | None) -> None:
    if starts_at and ends_at and ends_at <= starts_at:
        raise AffiliateValidationError("ends_at must be after starts_at", code="invalid_promo_window")


def get_owned_promo_code(db: Session, *, affiliate: Affiliate, promo_code_id: int) -> PromoCode:
    # A code owned by someone else is indistinguishable from a missing one.
    promo_code = crud.get_promo_code_for_affiliate(db, promo_code_id=promo_code_id, affiliate_id=affiliate.id)
    if not promo_code:
        raise PromoCodeNotFound()
    return promo_code


def list_promo_codes(db: Session, *, affiliate: Affiliate) -> list[PromoCode]:
    return crud.list_promo_codes_for_affiliate(db, affiliate_id=affiliate.id)


def create_promo_code(
    db: Session,
    *,
    affiliate: Affiliate,
    code: str,
    discount_share_pct=0,
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    max_redemptions: int | None = None,
) -> PromoCode:
    normalized = normalize_promo_code(code)
    pct = validate_discount(affiliate, discount_share_pct)
    starts_at = normalize_ts(starts_at) or utcnow()
    ends_at = normalize_ts(ends_at)
    _check_window(starts_at, ends_at)
    if max_redemptions is not None and max_redemptions < 1:
        raise AffiliateValidationError("max_redemptions must be at least 1", code="invalid_max_redemptions")
    if crud.get_promo_code_by_code(db, code=normalized):
        raise PromoCodeConflict(f"Promo code {normalized} already exists")
    try:
        promo_code = crud.create_promo_code(
            db,
            affiliate_id=affiliate.id,
            code=normalized,
            discount_share_pct=pct,
            starts_at=starts_at,
            ends_at=ends_at,
            max_redemptions=max_redemptions,
        )
    except IntegrityError:
        db.rollback()
        raise PromoCodeConflict(f"Promo code {normalized} already exists")
    logger.info(
        "promo_code.created",
        extra={"affiliate_id": affiliate.id, "promo_code_id": promo_code.id, "discount_share_pct": pct},
    )
    return promo_code


def update_promo_code(
    db: Session,
    *,
    affiliate: Affiliate,
    promo_code_id: int,
    updates: dict,
) -> PromoCode:
    promo_code = get_owned_promo_code(db, affiliate=affiliate, promo_code_id=promo_code_id)
    changes = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}

    if "discount_share_pct" in changes:
        if changes["discount_share_pct"] is None:
            raise DiscountRejected("Discount percentage must be between 0 and 100")
        changes["discount_share_pct"] = validate_discount(affiliate, changes["discount_share_pct"])

    if "status" in changes:
        try:
            changes["status"] = PromoCodeStatusEnum(changes["status"])
        except ValueError:
            raise AffiliateValidationError("status must be ACTIVE or DISABLED", code="invalid_status")

    if "starts_at" in changes:
        if changes["starts_at"] is None:
            raise AffiliateValidationError("starts_at cannot be cleared", code="invalid_promo_window")
        changes["starts_at"] = normalize_ts(changes["starts_at"])
    if "ends_at" in changes:
        changes["ends_at"] = normalize_ts(changes["ends_at"])
    _check_window(
        changes.get("starts_at", promo_code.starts_at),
        changes.get("ends_at", promo_code.ends_at),
    )

    if changes.get("max_redemptions") is not None:
        if changes["max_redemptions"] < promo_code.redemption_count or changes["max_redemptions"] < 1:
            raise AffiliateValidationError(
                f"max_redemptions cannot be below the current redemption count ({promo_code.redemption_count})",
                code="invalid_max_redemptions",
            )

    promo_code = crud.update_promo_code(db, promo_code=promo_code, updates=changes)
    logger.info(
        "promo_code.updated",
        extra={"affiliate_id": affiliate.id, "promo_code_id": promo_code.id, "fields": sorted(changes)},
    )
    return promo_code


def delete_promo_code(db: Session, *, affiliate: Affiliate, promo_code_id: int) -> str:
    """Hard-delete an unused code; a redeemed one is only disabled."""
    promo_code = get_owned_promo_code(db, affiliate=affiliate, promo_code_id=promo_code_id)
    if (promo_code.redemption_count or 0) > 0:
        crud.update_promo_code(db, promo_code=promo_code, updates={"status": PromoCodeStatusEnum.DISABLED})
        action = "disabled"
    else:
        crud.delete_promo_code(db, promo_code=promo_code)
        action = "deleted"
    logger.info(
        "promo_code.removed",
        extra={"affiliate_id": affiliate.id, "promo_code_id": promo_code_id, "action": action},
    )
    return action


def check_redeemable(db: Session, code: str, now: datetime | None = None) -> PromoCode:
    now = now or utcnow()
    promo_code = crud.get_promo_code_by_code(db, code=(code or "").strip().upper())
    if not promo_code:
        raise PromoCodeNotFound()
    if promo_code.status != PromoCodeStatusEnum.ACTIVE:
        raise PromoCodeNotRedeemable("disabled")
    if promo_code.starts_at and promo_code.starts_at > now:
        raise PromoCodeNotRedeemable("not_started")
    if promo_code.ends_at and promo_code.ends_at <= now:
        raise PromoCodeNotRedeemable("expired")
    if promo_code.max_redemptions is not None and promo_code.redemption_count >= promo_code.max_redemptions:
        raise PromoCodeNotRedeemable("max_redemptions_reached")
    return promo_code


def record_redemption(db: Session, promo_code: PromoCode) -> PromoCode:
    if not crud.increment_redemption_count(db, promo_code_id=promo_code.id):
        raise PromoCodeNotRedeemable("max_redemptions_reached")
    db.refresh(promo_code)
    return promo_code


@dataclass(frozen=True)
class BusinessSubscriptionQuote:
    affiliate_commission_cents: int
    discount_cents: int
    final_price_cents: int
    platform_share_cents: int
    final_affiliate_commission_cents: int


def business_commission_pct(affiliate: Affiliate):
    if affiliate.custom_business_commission_pct is not None:
        return affiliate.custom_business_commission_pct
    if affiliate_tier(affiliate) == AffiliateTierEnum.SUB:
        return settings.SUB_AFFILIATE_BUSINESS_COMMISSION_PCT
    return settings.AFFILIATE_BUSINESS_COMMISSION_PCT


def quote_business_subscription(
    subscription_fee_cents: int,
    discount_share_pct,
    affiliate: Affiliate,
) -> BusinessSubscriptionQuote:
    """Split a subscription fee between platform, affiliate and discount.

    The discount comes out of the affiliate's own commission and is capped
    so the affiliate always keeps its tier's minimum retention.
    """
    fee = int(subscription_fee_cents)
    commission = percent_of(fee, business_commission_pct(affiliate))
    platform_share = fee - percent_of(fee, settings.AFFILIATE_BUSINESS_COMMISSION_PCT)

    pct = min(max(to_decimal(discount_share_pct or 0), to_decimal(0)), to_decimal(max_allowed_discount_pct(affiliate)))
    discount = percent_of(commission, pct / 100)
    min_commission = percent_of(commission, to_decimal(min_retention_pct(affiliate)) / 100)
    if commission - discount < min_commission:
        discount = commission - min_commission

    return BusinessSubscriptionQuote(
        affiliate_commission_cents=commission,
        discount_cents=discount,
        final_price_cents=fee - discount,
        platform_share_cents=platform_share,
        final_affiliate_commission_cents=commission - discount,
    )
