from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from affiliate_engine.models.enums import PromoCodeStatusEnum


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    # Range and tier cap are checked by the discount engine so the caller
    # gets the cap and retention in the rejection.
    discount_share_pct: float = 0
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = None


class PromoCodeUpdate(BaseModel):
    discount_share_pct: Optional[float] = None
    status: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = None


class PromoCodeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    affiliate_id: int
    code: str
    discount_share_pct: int
    starts_at: datetime
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = None
    redemption_count: int
    status: PromoCodeStatusEnum
    created_at: datetime
    updated_at: datetime


class PromoCodeDeleteResult(BaseModel):
    id: int
    action: Literal["deleted", "disabled"]
