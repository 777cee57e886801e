"""Repository abstractions for database interactions."""

from .bet_repository import BetRepository
from .horse_repository import HorseRepository
from .payout_repository import PayoutRepository
from .race_repository import RaceRepository

__all__ = [
    "BetRepository",
    "HorseRepository",
    "PayoutRepository",
    "RaceRepository",
]
