from __future__ import annotations

from pydantic import BaseModel


class PayoutSent(BaseModel):
    affiliate_id: int
    payout_id: int
    amount_cents: int
    currency: str
    transfer_id: str
    entry_count: int


class PayoutSkip(BaseModel):
    affiliate_id: int
    amount_cents: int
    reason: str


class PayoutRunRead(BaseModel):
    processed: int
    skipped: int
    failed: int
    errors: list[str]
    payouts: list[PayoutSent]
    skips: list[PayoutSkip]
    cancelled: bool = False
