from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from affiliate_engine.api.dependencies import require_affiliate_owner
from affiliate_engine.core import promo_codes as engine
from affiliate_engine.core.db import get_db
from affiliate_engine.schemas.promo_codes import (
    PromoCodeCreate,
    PromoCodeDeleteResult,
    PromoCodeRead,
    PromoCodeUpdate,
)


router = APIRouter(prefix="/affiliate/promo-codes", tags=["promo-codes"])


@router.get("", response_model=list[PromoCodeRead])
def list_my_promo_codes(
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    return [PromoCodeRead.model_validate(row) for row in engine.list_promo_codes(db, affiliate=affiliate)]


@router.post("", response_model=PromoCodeRead, status_code=status.HTTP_201_CREATED)
def create_my_promo_code(
    payload: PromoCodeCreate,
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    promo_code = engine.create_promo_code(
        db,
        affiliate=affiliate,
        code=payload.code,
        discount_share_pct=payload.discount_share_pct,
        starts_at=payload.starts_at,
        ends_at=payload.ends_at,
        max_redemptions=payload.max_redemptions,
    )
    return PromoCodeRead.model_validate(promo_code)


@router.get("/{promo_code_id}", response_model=PromoCodeRead)
def get_my_promo_code(
    promo_code_id: int,
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    promo_code = engine.get_owned_promo_code(db, affiliate=affiliate, promo_code_id=promo_code_id)
    return PromoCodeRead.model_validate(promo_code)


@router.put("/{promo_code_id}", response_model=PromoCodeRead)
def update_my_promo_code(
    promo_code_id: int,
    payload: PromoCodeUpdate,
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    promo_code = engine.update_promo_code(
        db,
        affiliate=affiliate,
        promo_code_id=promo_code_id,
        updates=payload.model_dump(exclude_unset=True),
    )
    return PromoCodeRead.model_validate(promo_code)


@router.delete("/{promo_code_id}", response_model=PromoCodeDeleteResult)
def delete_my_promo_code(
    promo_code_id: int,
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    action = engine.delete_promo_code(db, affiliate=affiliate, promo_code_id=promo_code_id)
    return PromoCodeDeleteResult(id=promo_code_id, action=action)
