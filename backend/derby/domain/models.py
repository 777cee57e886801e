"""Typed domain representations shared by the chain client, services, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class HorseTotal:
    """Summed confirmed stake placed on one horse in one race."""

    horse_id: int
    total: float


@dataclass(slots=True)
class StakeView:
    """Detached copy of a confirmed bet used for payout computation."""

    bet_id: str
    horse_id: int
    wallet: str
    amount: float


@dataclass(slots=True)
class PayoutShare:
    bet_id: str
    wallet: str
    amount: float


@dataclass(slots=True)
class WalletPayout:
    wallet: str
    amount: float


@dataclass(slots=True)
class SettlementResult:
    """Immutable outcome of a finished race."""

    race_id: str
    winning_horse_id: int
    winning_horse_name: str
    positions: list[int]
    payouts: list[WalletPayout] = field(default_factory=list)
    # False when the result was read back from storage instead of computed by this call.
    fresh: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "race_id": self.race_id,
            "winning_horse_id": self.winning_horse_id,
            "winning_horse_name": self.winning_horse_name,
            "positions": list(self.positions),
            "payouts": [
                {"wallet": payout.wallet, "amount": payout.amount} for payout in self.payouts
            ],
        }


@dataclass(slots=True)
class SignatureInfo:
    """One entry of an address's transaction history, most recent first."""

    signature: str
    block_time: datetime | None = None
    err: Any = None


@dataclass(slots=True)
class SignatureStatus:
    """Cluster view of a submitted signature."""

    signature: str
    confirmation: str | None = None
    err: Any = None

    @property
    def confirmed(self) -> bool:
        return self.err is None and self.confirmation in ("confirmed", "finalized")


@dataclass(slots=True)
class TransactionDetail:
    """Balance-level view of a confirmed transaction."""

    signature: str
    account_keys: list[str]
    pre_balances: list[int]
    post_balances: list[int]
    block_time: datetime | None = None
    err: Any = None

    def account_index(self, address: str) -> int | None:
        try:
            return self.account_keys.index(address)
        except ValueError:
            return None

    def balance_delta(self, address: str) -> int | None:
        """Net lamports received by ``address``; ``None`` if it is not a party."""

        index = self.account_index(address)
        if index is None:
            return None
        pre = self.pre_balances[index] if index < len(self.pre_balances) else 0
        post = self.post_balances[index] if index < len(self.post_balances) else 0
        return post - pre

    @property
    def sender(self) -> str | None:
        return self.account_keys[0] if self.account_keys else None


@dataclass(slots=True)
class PayoutRequest:
    """A transfer the disbursement pipeline should make."""

    recipient: str
    amount: float
    reference: str | None = None


@dataclass(slots=True)
class PayoutOutcome:
    request: PayoutRequest
    success: bool
    signature: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DisbursementSummary:
    successful: int = 0
    failed: int = 0
    signatures: list[str] = field(default_factory=list)
    aborted_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "signatures": list(self.signatures),
            "aborted_reason": self.aborted_reason,
        }


@dataclass(slots=True)
class GeneratedWallet:
    public_key: str
    private_key: str
    api_key: str | None = None
    source: str = "local"
