from __future__ import annotations

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from affiliate_engine.models.affiliates import Affiliate, Attribution
from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    AttributionSourceEnum,
    AttributionTypeEnum,
)


def create_affiliate(
    db: Session,
    *,
    user_id: int,
    code: str,
    status: AffiliateStatusEnum = AffiliateStatusEnum.ACTIVE,
    parent_affiliate_id: int | None = None,
    payout_account_id: str | None = None,
    payout_account_ready: bool = False,
    commit: bool = True,
) -> Affiliate:
    affiliate = Affiliate(
        user_id=user_id,
        code=code,
        status=status,
        parent_affiliate_id=parent_affiliate_id,
        payout_account_id=payout_account_id,
        payout_account_ready=payout_account_ready,
    )
    db.add(affiliate)
    if commit:
        db.commit()
        db.refresh(affiliate)
    else:
        db.flush()
    return affiliate


def get_affiliate(db: Session, *, affiliate_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()


def get_affiliate_by_code(db: Session, *, code: str) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.code == code).first()


def get_affiliate_for_user(db: Session, *, user_id: int) -> Affiliate | None:
    return db.query(Affiliate).filter(Affiliate.user_id == user_id).first()


def get_affiliates_by_ids(db: Session, ids: list[int]) -> dict[int, Affiliate]:
    if not ids:
        return {}
    rows = db.query(Affiliate).filter(Affiliate.id.in_(ids)).all()
    return {row.id: row for row in rows}


def count_children(db: Session, *, affiliate_id: int) -> int:
    return int(
        db.query(func.count(Affiliate.id))
        .filter(Affiliate.parent_affiliate_id == affiliate_id)
        .scalar()
        or 0
    )


def lock_affiliate(db: Session, *, affiliate_id: int) -> Affiliate | None:
    """Row-lock the affiliate for the rest of the transaction (no-op on SQLite)."""
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).with_for_update().first()


def get_active_attribution_for_triple(
    db: Session,
    *,
    user_id: int,
    affiliate_id: int,
    attribution_type: AttributionTypeEnum,
    now: datetime,
) -> Attribution | None:
    return (
        db.query(Attribution)
        .filter(
            Attribution.user_id == user_id,
            Attribution.affiliate_id == affiliate_id,
            Attribution.type == attribution_type,
            Attribution.ends_at > now,
        )
        .order_by(Attribution.created_at.desc(), Attribution.id.desc())
        .first()
    )


def get_active_attribution_for_user(
    db: Session,
    *,
    user_id: int,
    attribution_type: AttributionTypeEnum,
    now: datetime,
) -> Attribution | None:
    return (
        db.query(Attribution)
        .filter(
            Attribution.user_id == user_id,
            Attribution.type == attribution_type,
            Attribution.created_at <= now,
            Attribution.ends_at > now,
        )
        .order_by(Attribution.created_at.desc(), Attribution.id.desc())
        .first()
    )


def insert_attribution(
    db: Session,
    *,
    user_id: int,
    affiliate_id: int,
    attribution_type: AttributionTypeEnum,
    source: AttributionSourceEnum,
    created_at: datetime,
    ends_at: datetime,
    created_by_user_id: int | None = None,
) -> Attribution:
    attribution = Attribution(
        user_id=user_id,
        affiliate_id=affiliate_id,
        type=attribution_type,
        source=source,
        created_at=created_at,
        ends_at=ends_at,
        created_by_user_id=created_by_user_id,
    )
    db.add(attribution)
    db.flush()
    return attribution


def list_attributions(
    db: Session,
    *,
    user_id: int | None = None,
    affiliate_id: int | None = None,
    limit: int,
    offset: int = 0,
) -> list[Attribution]:
    query = db.query(Attribution)
    if user_id is not None:
        query = query.filter(Attribution.user_id == user_id)
    if affiliate_id is not None:
        query = query.filter(Attribution.affiliate_id == affiliate_id)
    return (
        query.order_by(Attribution.created_at.desc(), Attribution.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def count_attributions(db: Session, *, affiliate_id: int, now: datetime | None = None) -> int:
    query = db.query(func.count(Attribution.id)).filter(Attribution.affiliate_id == affiliate_id)
    if now is not None:
        query = query.filter(Attribution.ends_at > now)
    return int(query.scalar() or 0)
