from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session

from affiliate_engine.models.affiliates import PromoCode
from affiliate_engine.models.enums import PromoCodeStatusEnum


def create_promo_code(
    db: Session,
    *,
    affiliate_id: int,
    code: str,
    discount_share_pct: int,
    starts_at: datetime,
    ends_at: datetime | None,
    max_redemptions: int | None,
) -> PromoCode:
    promo_code = PromoCode(
        affiliate_id=affiliate_id,
        code=code,
        discount_share_pct=discount_share_pct,
        starts_at=starts_at,
        ends_at=ends_at,
        max_redemptions=max_redemptions,
        redemption_count=0,
        status=PromoCodeStatusEnum.ACTIVE,
    )
    db.add(promo_code)
    db.commit()
    db.refresh(promo_code)
    return promo_code


def get_promo_code(db: Session, *, promo_code_id: int) -> PromoCode | None:
    return db.query(PromoCode).filter(PromoCode.id == promo_code_id).first()


def get_promo_code_for_affiliate(db: Session, *, promo_code_id: int, affiliate_id: int) -> PromoCode | None:
    return (
        db.query(PromoCode)
        .filter(PromoCode.id == promo_code_id, PromoCode.affiliate_id == affiliate_id)
        .first()
    )


def get_promo_code_by_code(db: Session, *, code: str) -> PromoCode | None:
    return db.query(PromoCode).filter(PromoCode.code == code).first()


def list_promo_codes_for_affiliate(db: Session, *, affiliate_id: int) -> list[PromoCode]:
    return (
        db.query(PromoCode)
        .filter(PromoCode.affiliate_id == affiliate_id)
        .order_by(PromoCode.created_at.desc(), PromoCode.id.desc())
        .all()
    )


def update_promo_code(db: Session, *, promo_code: PromoCode, updates: dict) -> PromoCode:
    for key, value in updates.items():
        setattr(promo_code, key, value)
    db.commit()
    db.refresh(promo_code)
    return promo_code


def delete_promo_code(db: Session, *, promo_code: PromoCode) -> None:
    db.delete(promo_code)
    db.commit()


def increment_redemption_count(db: Session, *, promo_code_id: int) -> bool:
    """Conditional increment; refuses once max_redemptions is reached."""
    updated = (
        db.query(PromoCode)
        .filter(
            PromoCode.id == promo_code_id,
            PromoCode.status == PromoCodeStatusEnum.ACTIVE,
            or_(
                PromoCode.max_redemptions.is_(None),
                PromoCode.redemption_count < PromoCode.max_redemptions,
            ),
        )
        .update(
            {PromoCode.redemption_count: PromoCode.redemption_count + 1},
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1
