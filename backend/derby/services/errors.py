"""Exceptions raised by the settlement services."""

from __future__ import annotations


class DerbyError(Exception):
    """Base class for expected, caller-facing failures."""


class NotFoundError(DerbyError):
    """A race, horse or bet referenced by a request does not exist."""


class BetRejected(DerbyError):
    """A bet request failed validation and was not recorded."""


class InsufficientFundsError(DerbyError):
    """The paying wallet cannot cover a disbursement run."""

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(
            f"paying wallet holds {balance} lamports but {required} are required"
        )
        self.balance = balance
        self.required = required


class ConfigurationError(DerbyError):
    """A required setting (secret key, wallet) is missing."""
