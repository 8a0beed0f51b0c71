from affiliate_engine.payouts.base import TransferClient, TransferResult
from affiliate_engine.payouts.stripe_connect import StripeTransferClient


_CLIENT_REGISTRY: dict[str, TransferClient] = {
    "stripe": StripeTransferClient(),
}


def get_transfer_client(provider: str = "stripe") -> TransferClient | None:
    if not provider:
        return None
    return _CLIENT_REGISTRY.get(str(provider).strip().lower())


__all__ = ["TransferClient", "TransferResult", "StripeTransferClient", "get_transfer_client"]
