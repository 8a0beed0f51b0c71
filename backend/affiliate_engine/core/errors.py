"""
Domain errors raised by the attribution, discount, ledger and payout code.

Every error carries a stable ``code`` and a human readable ``message`` so
business-rule rejections reach callers as structured payloads instead of a
generic failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AffiliateError(Exception):
    code: str
    message: str
    status_code: int = 400
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class AffiliateValidationError(AffiliateError):
    def __init__(self, message: str, *, code: str = "validation_error", details: dict | None = None):
        super().__init__(code=code, message=message, status_code=422, details=details or {})


class AffiliateNotFound(AffiliateError):
    def __init__(self, message: str = "Affiliate not found", *, code: str = "affiliate_not_found"):
        super().__init__(code=code, message=message, status_code=404)


class AffiliateInactive(AffiliateError):
    def __init__(self, affiliate_id: int, status: str):
        super().__init__(
            code="affiliate_inactive",
            message=f"Affiliate {affiliate_id} is not active (status={status})",
            status_code=422,
            details={"affiliate_id": affiliate_id, "status": status},
        )


class HierarchyViolation(AffiliateError):
    """Raised when a write would give an affiliate a grandparent."""

    def __init__(self, message: str):
        super().__init__(code="hierarchy_violation", message=message, status_code=422)


class SelfReferralRejected(AffiliateError):
    def __init__(self, user_id: int, affiliate_id: int):
        super().__init__(
            code="self_referral",
            message="An affiliate cannot be attributed to their own account",
            status_code=422,
            details={"user_id": user_id, "affiliate_id": affiliate_id},
        )


class AttributionConflict(AffiliateError):
    """Raised when an active attribution already exists for the triple."""

    def __init__(self, existing):
        self.existing = existing
        super().__init__(
            code="attribution_conflict",
            message="An active attribution already exists for this user, affiliate and type",
            status_code=409,
        )


class DiscountRejected(AffiliateError):
    def __init__(self, message: str, *, max_allowed_pct: int | None = None, min_retention_pct: int | None = None):
        details: dict[str, Any] = {}
        if max_allowed_pct is not None:
            details["max_allowed_pct"] = max_allowed_pct
        if min_retention_pct is not None:
            details["min_retention_pct"] = min_retention_pct
        super().__init__(code="discount_rejected", message=message, status_code=400, details=details)


class PromoCodeNotFound(AffiliateError):
    def __init__(self):
        super().__init__(code="promo_code_not_found", message="Promo code not found", status_code=404)


class PromoCodeConflict(AffiliateError):
    def __init__(self, message: str):
        super().__init__(code="promo_code_conflict", message=message, status_code=409)


class PromoCodeNotRedeemable(AffiliateError):
    def __init__(self, reason: str):
        super().__init__(
            code="promo_code_not_redeemable",
            message=f"Promo code cannot be redeemed: {reason}",
            status_code=422,
            details={"reason": reason},
        )


class PayoutConfigurationError(AffiliateError):
    """Fatal: the transfer service is missing or unconfigured."""

    def __init__(self, message: str):
        super().__init__(code="payout_not_configured", message=message, status_code=503)


class PayoutRunInProgress(AffiliateError):
    def __init__(self, locked_by: str | None):
        super().__init__(
            code="payout_run_in_progress",
            message="Another payout run holds the single-flight lock",
            status_code=409,
            details={"locked_by": locked_by},
        )


class TransferFailed(Exception):
    """Raised by transfer clients when a transfer was not observably created."""
