from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from affiliate_engine.api.dependencies import require_platform_admin
from affiliate_engine.core.affiliates import (
    affiliate_tier,
    build_affiliate_link,
    create_attribution,
    register_affiliate,
    search_attributions,
)
from affiliate_engine.core.commissions import effective_status, void_commissions
from affiliate_engine.core.db import get_db
from affiliate_engine.core.errors import AffiliateNotFound, AttributionConflict
from affiliate_engine.core.time import utcnow
from affiliate_engine.crud.affiliates import get_affiliate
from affiliate_engine.crud.commissions import list_commissions_for_affiliate, list_payouts_for_affiliate
from affiliate_engine.schemas.affiliates import (
    AffiliateCreate,
    AffiliateLedgerRead,
    AffiliateRead,
    AttributionCreate,
    AttributionRead,
    CommissionRead,
    CommissionVoidRequest,
    CommissionVoidResult,
    PayoutRead,
)


router = APIRouter(prefix="/admin/affiliates", tags=["admin"])


def _affiliate_read(affiliate) -> AffiliateRead:
    return AffiliateRead(
        id=affiliate.id,
        user_id=affiliate.user_id,
        code=affiliate.code,
        status=affiliate.status,
        parent_affiliate_id=affiliate.parent_affiliate_id,
        payout_account_id=affiliate.payout_account_id,
        payout_account_ready=bool(affiliate.payout_account_ready),
        link=build_affiliate_link(affiliate.code),
        tier=affiliate_tier(affiliate).value,
        created_at=affiliate.created_at,
    )


def _commission_read(entry, now) -> CommissionRead:
    return CommissionRead(
        id=entry.id,
        affiliate_id=entry.affiliate_id,
        event_id=entry.event_id,
        event_type=entry.event_type,
        amount_cents=int(entry.amount_cents),
        currency=entry.currency,
        status=entry.status,
        effective_status=effective_status(entry, now),
        available_at=entry.available_at,
        attribution_id=entry.attribution_id,
        payout_id=entry.payout_id,
        paid_at=entry.paid_at,
        void_reason=entry.void_reason,
    )


@router.post("", response_model=AffiliateRead, status_code=status.HTTP_201_CREATED)
def create_affiliate_account(
    payload: AffiliateCreate,
    db: Session = Depends(get_db),
    _current_user=Depends(require_platform_admin()),
):
    affiliate = register_affiliate(
        db,
        user_id=payload.user_id,
        code=payload.code,
        status=payload.status,
        parent_affiliate_id=payload.parent_affiliate_id,
        payout_account_id=payload.payout_account_id,
        payout_account_ready=payload.payout_account_ready,
    )
    return _affiliate_read(affiliate)


@router.post("/attributions", response_model=AttributionRead, status_code=status.HTTP_201_CREATED)
def create_manual_attribution(
    payload: AttributionCreate,
    db: Session = Depends(get_db),
    current_user=Depends(require_platform_admin()),
):
    try:
        attribution = create_attribution(
            db,
            user_id=payload.user_id,
            affiliate_id=payload.affiliate_id,
            attribution_type=payload.type,
            source=payload.source,
            created_by_user_id=current_user.id,
        )
    except AttributionConflict as exc:
        body = exc.to_payload()
        body["existing"] = jsonable_encoder(AttributionRead.model_validate(exc.existing))
        return JSONResponse(status_code=exc.status_code, content=body, headers={"X-Error-Code": exc.code})
    return AttributionRead.model_validate(attribution)


@router.get("/attributions", response_model=list[AttributionRead])
def list_affiliate_attributions(
    user_id: Optional[int] = None,
    affiliate_id: Optional[int] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _current_user=Depends(require_platform_admin()),
):
    rows = search_attributions(db, user_id=user_id, affiliate_id=affiliate_id, limit=limit, offset=offset)
    return [AttributionRead.model_validate(row) for row in rows]


@router.get("/{affiliate_id}/ledger", response_model=AffiliateLedgerRead)
def get_affiliate_ledger(
    affiliate_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    _current_user=Depends(require_platform_admin()),
):
    if not get_affiliate(db, affiliate_id=affiliate_id):
        raise AffiliateNotFound()
    now = utcnow()
    entries = list_commissions_for_affiliate(db, affiliate_id=affiliate_id, limit=limit)
    payouts = list_payouts_for_affiliate(db, affiliate_id=affiliate_id)
    return AffiliateLedgerRead(
        affiliate_id=affiliate_id,
        entries=[_commission_read(entry, now) for entry in entries],
        payouts=[PayoutRead.model_validate(payout) for payout in payouts],
    )


@router.post("/ledger/void", response_model=CommissionVoidResult)
def void_ledger_event(
    payload: CommissionVoidRequest,
    db: Session = Depends(get_db),
    _current_user=Depends(require_platform_admin()),
):
    result = void_commissions(db, event_id=payload.event_id, reason=payload.reason)
    return CommissionVoidResult(**result)
