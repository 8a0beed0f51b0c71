from __future__ import annotations

import stripe

from affiliate_engine.core.config import settings
from affiliate_engine.core.errors import PayoutConfigurationError, TransferFailed
from affiliate_engine.payouts.base import TransferClient, TransferResult


def _require_stripe_key() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise PayoutConfigurationError("Stripe is not configured")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.max_network_retries = int(settings.STRIPE_MAX_NETWORK_RETRIES)
    stripe.default_http_client = stripe.RequestsClient(timeout=int(settings.STRIPE_TIMEOUT_SECONDS))


class StripeTransferClient(TransferClient):
    name = "stripe"

    def ensure_configured(self) -> None:
        _require_stripe_key()

    def transfer(
        self,
        *,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        _require_stripe_key()
        try:
            transfer = stripe.Transfer.create(
                amount=int(amount_cents),
                currency=currency,
                destination=destination,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise TransferFailed(getattr(exc, "user_message", None) or str(exc)) from exc
        transfer_id = transfer.get("id") if hasattr(transfer, "get") else getattr(transfer, "id", None)
        if not transfer_id:
            raise TransferFailed("Stripe returned a transfer without an id")
        return TransferResult(
            transfer_id=transfer_id,
            amount_cents=int(amount_cents),
            currency=currency,
            raw={"id": transfer_id, "destination": destination},
        )
