from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from affiliate_engine.models.enums import (
    AffiliateStatusEnum,
    AttributionSourceEnum,
    AttributionTypeEnum,
    CommissionEventTypeEnum,
    CommissionStatusEnum,
    PayoutStatusEnum,
)


class AffiliateCreate(BaseModel):
    user_id: int
    code: Optional[str] = None
    status: AffiliateStatusEnum = AffiliateStatusEnum.ACTIVE
    parent_affiliate_id: Optional[int] = None
    payout_account_id: Optional[str] = None
    payout_account_ready: bool = False


class AffiliateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    code: str
    status: AffiliateStatusEnum
    parent_affiliate_id: Optional[int] = None
    payout_account_id: Optional[str] = None
    payout_account_ready: bool
    link: str
    tier: str
    created_at: datetime


class AffiliateResolveRead(BaseModel):
    code: str
    affiliate_id: Optional[int] = None
    valid: bool


class AttributionCreate(BaseModel):
    user_id: int
    affiliate_id: int
    type: AttributionTypeEnum = AttributionTypeEnum.USER_SIGNUP
    source: AttributionSourceEnum = AttributionSourceEnum.MANUAL


class AttributionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    affiliate_id: int
    type: AttributionTypeEnum
    source: AttributionSourceEnum
    created_at: datetime
    ends_at: datetime
    created_by_user_id: Optional[int] = None


class CommissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    affiliate_id: int
    event_id: str
    event_type: CommissionEventTypeEnum
    amount_cents: int
    currency: str
    status: CommissionStatusEnum
    effective_status: CommissionStatusEnum
    available_at: Optional[datetime] = None
    attribution_id: Optional[int] = None
    payout_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    void_reason: Optional[str] = None


class CommissionVoidRequest(BaseModel):
    event_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=500)


class CommissionVoidResult(BaseModel):
    event_id: str
    voided: int
    already_paid: list[int]


class PayoutRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    affiliate_id: int
    amount_cents: int
    currency: str
    status: PayoutStatusEnum
    transfer_id: Optional[str] = None
    entry_count: int
    period_start: datetime
    period_end: datetime
    failure_reason: Optional[str] = None
    created_at: datetime


class AffiliateLedgerRead(BaseModel):
    affiliate_id: int
    entries: list[CommissionRead]
    payouts: list[PayoutRead]


class AffiliateSummary(BaseModel):
    affiliate_id: int
    code: str
    link: str
    tier: str
    status: str
    currency: str
    pending_cents: int
    available_cents: int
    paid_cents: int
    void_cents: int
    attributions_total: int
    attributions_active: int
    payout_threshold_cents: int
