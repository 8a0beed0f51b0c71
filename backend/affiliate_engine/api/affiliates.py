from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from affiliate_engine.api.dependencies import require_affiliate_owner
from affiliate_engine.core.affiliates import normalize_code, resolve_affiliate
from affiliate_engine.core.commissions import build_affiliate_summary
from affiliate_engine.core.config import settings
from affiliate_engine.core.db import get_db
from affiliate_engine.schemas.affiliates import AffiliateResolveRead, AffiliateSummary


router = APIRouter(prefix="/affiliates", tags=["affiliates"])


REFERRAL_COOKIE_NAME = "affiliate_ref"


@router.get("/resolve/{code}", response_model=AffiliateResolveRead)
def resolve_referral_code(code: str, response: Response, db: Session = Depends(get_db)):
    affiliate_id = resolve_affiliate(db, code)
    normalized = normalize_code(code) or ""
    if affiliate_id is not None:
        # Read back at signup by attribute_signup.
        response.set_cookie(
            REFERRAL_COOKIE_NAME,
            normalized,
            max_age=settings.REFERRAL_COOKIE_TTL_DAYS * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
        )
    return AffiliateResolveRead(
        code=normalized,
        affiliate_id=affiliate_id,
        valid=affiliate_id is not None,
    )


@router.get("/me/summary", response_model=AffiliateSummary)
def my_affiliate_summary(
    db: Session = Depends(get_db),
    affiliate=Depends(require_affiliate_owner()),
):
    return AffiliateSummary(**build_affiliate_summary(db, affiliate_id=affiliate.id))
