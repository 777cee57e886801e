"""Contract between the settlement services and the blockchain."""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from derby.domain import SignatureInfo, SignatureStatus, TransactionDetail


class ChainError(Exception):
    """Transport failure or JSON-RPC error returned by the node."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class ConfirmationTimeout(ChainError):
    """A transaction was sent but not seen confirmed in time; it may still land."""

    def __init__(self, message: str, *, signature: str) -> None:
        super().__init__(message)
        self.signature = signature


class ChainClient(Protocol):
    """Operations the engine needs from a chain node."""

    def get_recent_transaction_refs(self, address: str, limit: int) -> list[SignatureInfo]:
        """Return the address's latest signatures, most recent first."""

    def get_transaction_detail(self, signature: str) -> TransactionDetail | None:
        """Return balances for a confirmed transaction, ``None`` if not yet visible."""

    def get_balance(self, address: str) -> int:
        """Return the address balance in lamports."""

    def get_recency_token(self) -> str:
        """Return a fresh recent blockhash."""

    def is_recency_token_valid(self, recency_token: str) -> bool:
        """Return whether transactions built on ``recency_token`` can still be processed."""

    def get_signature_status(self, signature: str) -> SignatureStatus | None:
        """Return the cluster's status for ``signature``, ``None`` if it was never seen."""

    def submit_transaction(
        self,
        signer_key: str,
        instructions: Sequence[Any],
        *,
        recency_token: str,
        wait_for_confirmation: bool = True,
    ) -> str:
        """Sign, send and optionally confirm a transaction; return its signature."""

    def close(self) -> None:
        """Release transport resources."""
