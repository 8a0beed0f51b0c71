from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import (
    AffiliateInactive,
    AffiliateNotFound,
    AffiliateValidationError,
    AttributionConflict,
    HierarchyViolation,
    SelfReferralRejected,
)
from affiliate_engine.core.metrics import record_attribution_created
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import (
    count_children,
    create_affiliate,
    get_active_attribution_for_triple,
    get_active_attribution_for_user,
    get_affiliate,
    get_affiliate_by_code,
    get_affiliate_for_user,
    insert_attribution,
    list_attributions,
    lock_affiliate,
)
from affiliate_engine.models.affiliates import Affiliate, Attribution
from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    AffiliateTierEnum,
    AttributionSourceEnum,
    AttributionTypeEnum,
)


logger = logging.getLogger(__name__)


def generate_affiliate_code() -> str:
    token = secrets.token_urlsafe(6).replace("-", "").replace("_", "")
    return f"aff_{token.lower()}"


def normalize_code(code: str | None) -> str | None:
    if not code:
        return None
    value = code.strip().lower()
    return value or None


def build_affiliate_link(code: str) -> str:
    base = settings.APP_BASE_URL or "http://localhost:3000"
    return f"{base.rstrip('/')}/signup?ref={code}"


def affiliate_tier(affiliate: Affiliate) -> AffiliateTierEnum:
    return AffiliateTierEnum.SUB if affiliate.parent_affiliate_id is not None else AffiliateTierEnum.TOP


def validate_parent_assignment(
    db: Session,
    *,
    affiliate_id: int | None,
    parent_affiliate_id: int | None,
) -> Affiliate | None:
    """Enforce the depth-1 hierarchy before a parent link is written.

    ``affiliate_id`` is None when the affiliate does not exist yet.
    """
    if parent_affiliate_id is None:
        return None
    if affiliate_id is not None and parent_affiliate_id == affiliate_id:
        raise HierarchyViolation("An affiliate cannot be its own parent")
    parent = get_affiliate(db, affiliate_id=parent_affiliate_id)
    if not parent:
        raise AffiliateNotFound("Parent affiliate not found", code="parent_affiliate_not_found")
    if parent.parent_affiliate_id is not None:
        raise HierarchyViolation("Sub-affiliates cannot have sub-affiliates of their own")
    if affiliate_id is not None and count_children(db, affiliate_id=affiliate_id) > 0:
        raise HierarchyViolation("An affiliate with sub-affiliates cannot become a sub-affiliate")
    return parent


def register_affiliate(
    db: Session,
    *,
    user_id: int,
    code: str | None = None,
    status: AffiliateStatusEnum = AffiliateStatusEnum.ACTIVE,
    parent_affiliate_id: int | None = None,
    payout_account_id: str | None = None,
    payout_account_ready: bool = False,
) -> Affiliate:
    if get_affiliate_for_user(db, user_id=user_id):
        raise AffiliateValidationError("User already has an affiliate account", code="affiliate_exists")
    validate_parent_assignment(db, affiliate_id=None, parent_affiliate_id=parent_affiliate_id)
    normalized = normalize_code(code) or generate_affiliate_code()
    if get_affiliate_by_code(db, code=normalized):
        raise AffiliateValidationError("Referral code already in use", code="affiliate_code_taken")
    affiliate = create_affiliate(
        db,
        user_id=user_id,
        code=normalized,
        status=status,
        parent_affiliate_id=parent_affiliate_id,
        payout_account_id=payout_account_id,
        payout_account_ready=payout_account_ready,
    )
    logger.info(
        "affiliate.registered",
        extra={"affiliate_id": affiliate.id, "tier": affiliate_tier(affiliate).value},
    )
    return affiliate


def resolve_affiliate(db: Session, code: str | None) -> int | None:
    """Map a referral code to an active affiliate id. Read-only."""
    normalized = normalize_code(code)
    if not normalized:
        return None
    affiliate = get_affiliate_by_code(db, code=normalized)
    if not affiliate or affiliate.status != AffiliateStatusEnum.ACTIVE:
        return None
    return affiliate.id


def attribution_window_end(created_at: datetime) -> datetime:
    return created_at + timedelta(days=int(settings.ATTRIBUTION_WINDOW_DAYS))


def create_attribution(
    db: Session,
    *,
    user_id: int,
    affiliate_id: int,
    attribution_type: AttributionTypeEnum,
    source: AttributionSourceEnum,
    created_by_user_id: int | None = None,
    now: datetime | None = None,
) -> Attribution:
    """Create the attribution or raise AttributionConflict with the live one.

    An existing active attribution is never overwritten: that would restart
    the window and move future commissions across settlement periods.
    """
    now = now or utcnow()
    try:
        # Row lock serialises creations per affiliate.
        affiliate = lock_affiliate(db, affiliate_id=affiliate_id)
        if not affiliate:
            raise AffiliateNotFound()
        if affiliate.status != AffiliateStatusEnum.ACTIVE:
            raise AffiliateInactive(affiliate.id, affiliate.status.value)
        if affiliate.user_id == user_id:
            raise SelfReferralRejected(user_id, affiliate_id)

        existing = get_active_attribution_for_triple(
            db,
            user_id=user_id,
            affiliate_id=affiliate_id,
            attribution_type=attribution_type,
            now=now,
        )
        if existing:
            raise AttributionConflict(existing)

        attribution = insert_attribution(
            db,
            user_id=user_id,
            affiliate_id=affiliate_id,
            attribution_type=attribution_type,
            source=source,
            created_at=now,
            ends_at=attribution_window_end(now),
            created_by_user_id=created_by_user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(attribution)
    record_attribution_created(attribution_type=attribution_type.value, source=source.value)
    logger.info(
        "attribution.created",
        extra={
            "attribution_id": attribution.id,
            "affiliate_id": affiliate_id,
            "attribution_type": attribution_type.value,
            "source": source.value,
        },
    )
    return attribution


def attribute_signup(
    db: Session,
    *,
    user_id: int,
    referral_code: str | None,
    is_business: bool = False,
    now: datetime | None = None,
) -> Attribution | None:
    """Signup hook: a bad cookie or an existing attribution never fails signup."""
    affiliate_id = resolve_affiliate(db, referral_code)
    if affiliate_id is None:
        return None
    attribution_type = AttributionTypeEnum.BUSINESS_SIGNUP if is_business else AttributionTypeEnum.USER_SIGNUP
    try:
        return create_attribution(
            db,
            user_id=user_id,
            affiliate_id=affiliate_id,
            attribution_type=attribution_type,
            source=AttributionSourceEnum.ORGANIC,
            now=now,
        )
    except AttributionConflict as exc:
        return exc.existing
    except SelfReferralRejected:
        logger.info("attribution.self_referral_ignored", extra={"affiliate_id": affiliate_id})
        return None


def clamp_page_size(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return settings.ATTRIBUTION_PAGE_SIZE_DEFAULT
    return min(int(limit), settings.ATTRIBUTION_PAGE_SIZE_MAX)


def search_attributions(
    db: Session,
    *,
    user_id: int | None = None,
    affiliate_id: int | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[Attribution]:
    return list_attributions(
        db,
        user_id=user_id,
        affiliate_id=affiliate_id,
        limit=clamp_page_size(limit),
        offset=offset,
    )


def get_active_attribution(
    db: Session,
    *,
    user_id: int,
    attribution_type: AttributionTypeEnum,
    now: datetime | None = None,
) -> Attribution | None:
    return get_active_attribution_for_user(
        db,
        user_id=user_id,
        attribution_type=attribution_type,
        now=now or utcnow(),
    )
