from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount_cents: int
    currency: str
    raw: dict[str, Any] = field(default_factory=dict)


class TransferClient:
    """Moves money to an affiliate's connected account.

    Implementations raise ``TransferFailed`` when the transfer was not
    observably created, including timeouts.
    """

    name = "base"

    def ensure_configured(self) -> None:
        return None

    def transfer(
        self,
        *,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        raise NotImplementedError
