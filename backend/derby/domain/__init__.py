"""Domain models shared across the settlement engine and chain client."""

from .models import (
    DisbursementSummary,
    GeneratedWallet,
    HorseTotal,
    PayoutOutcome,
    PayoutRequest,
    PayoutShare,
    SettlementResult,
    SignatureInfo,
    SignatureStatus,
    StakeView,
    TransactionDetail,
    WalletPayout,
)

__all__ = [
    "DisbursementSummary",
    "GeneratedWallet",
    "HorseTotal",
    "PayoutOutcome",
    "PayoutRequest",
    "PayoutShare",
    "SettlementResult",
    "SignatureInfo",
    "SignatureStatus",
    "StakeView",
    "TransactionDetail",
    "WalletPayout",
]
