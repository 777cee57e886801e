"""Explicit bet placement backed by on-chain transfer verification."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chain.base import ChainClient
from chain.normalize import lamports_to_sol
from derby.core.config import Settings, get_settings
from derby.db import session_scope
from derby.models import RaceStatus, as_utc, utcnow
from derby.repositories import BetRepository, HorseRepository, RaceRepository

from .errors import BetRejected, NotFoundError
from .notifications import ChangeFeed, change_feed


@dataclass(slots=True)
class TransferVerification:
    valid: bool
    amount: float = 0.0
    sender: str | None = None
    block_time: datetime | None = None


@dataclass(slots=True)
class PlacedBet:
    bet_id: str
    race_id: str
    horse_id: int
    amount: float
    tx_signature: str
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "bet_id": self.bet_id,
            "race_id": self.race_id,
            "horse_id": self.horse_id,
            "amount": self.amount,
            "tx_signature": self.tx_signature,
            "duplicate": self.duplicate,
        }


def _short(value: str | None, size: int = 10) -> str:
    if not value:
        return "<missing>"
    return value if len(value) <= size else f"{value[:size]}..."


class BettingService:
    """Record a bet once its transfer to the horse wallet is visible on chain."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        chain: ChainClient,
        *,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._chain = chain
        self._feed = feed or change_feed
        self._clock = clock
        self._sleep = sleep

    def verify_transfer(self, signature: str, recipient: str) -> TransferVerification:
        """Check that ``signature`` moved a positive amount into ``recipient``.

        Freshly sent transactions may not be visible yet, so lookups that
        return nothing or fail are retried a bounded number of times.
        """

        attempts = self.settings.verify_attempts
        for attempt in range(1, attempts + 1):
            try:
                detail = self._chain.get_transaction_detail(signature)
            except Exception as exc:  # noqa: BLE001 - treated like "not visible yet"
                logger.warning("Verification lookup {}/{} for {} failed: {}", attempt, attempts, _short(signature), exc)
                detail = None

            if detail is None:
                if attempt < attempts:
                    self._sleep(self.settings.verify_delay_seconds)
                    continue
                return TransferVerification(valid=False)

            if detail.err:
                return TransferVerification(valid=False)
            delta = detail.balance_delta(recipient)
            if delta is None:
                return TransferVerification(valid=False)
            return TransferVerification(
                valid=delta > 0,
                amount=lamports_to_sol(delta),
                sender=detail.sender,
                block_time=detail.block_time,
            )

        return TransferVerification(valid=False)

    def place_bet(
        self,
        *,
        race_id: str | None,
        horse_id: int | None,
        tx_signature: str | None,
        bettor_wallet: str | None,
    ) -> PlacedBet:
        if not race_id or not horse_id or not tx_signature or not bettor_wallet:
            raise BetRejected("Missing required fields")

        logger.info(
            "Bet request: race={} horse={} tx={} wallet={}",
            race_id,
            horse_id,
            _short(tx_signature, 20),
            _short(bettor_wallet),
        )

        with session_scope(self._session_factory) as session:
            existing = BetRepository(session).get_by_signature(tx_signature)
            if existing is not None:
                if existing.race_id != race_id or existing.horse_id != horse_id:
                    raise BetRejected("Transaction already recorded for a different bet")
                logger.info("Transaction {} already recorded as bet {}", _short(tx_signature, 20), existing.id)
                return self._placed(existing, duplicate=True)

            horse = HorseRepository(session).get(horse_id)
            if horse is None:
                raise NotFoundError("Horse not found")
            horse_wallet = horse.wallet_address

            race = RaceRepository(session).get(race_id)
            if race is None:
                raise NotFoundError("Race not found")

        verification = self.verify_transfer(tx_signature, horse_wallet)
        if not verification.valid:
            raise BetRejected("Transaction verification failed")
        if verification.sender != bettor_wallet:
            logger.warning(
                "Sender mismatch for {}: expected {} got {}",
                _short(tx_signature, 20),
                _short(bettor_wallet),
                _short(verification.sender),
            )
            raise BetRejected("Sender wallet mismatch")

        return self._record(
            race_id, horse_id, bettor_wallet, verification.amount, tx_signature, sent_at=verification.block_time
        )

    def _record(
        self,
        race_id: str,
        horse_id: int,
        wallet: str,
        amount: float,
        signature: str,
        *,
        sent_at: datetime | None = None,
    ) -> PlacedBet:
        session = self._session_factory()
        try:
            race = RaceRepository(session).get(race_id)
            if race is None:
                raise NotFoundError("Race not found")
            if race.status != RaceStatus.BETTING.value or self._clock() > as_utc(race.betting_ends_at):
                raise BetRejected("Failed to record bet - race may have ended")
            if sent_at is not None and sent_at < as_utc(race.started_at):
                raise BetRejected("Transaction was sent before this race opened")

            bet = BetRepository(session).add_confirmed(
                race_id=race_id,
                horse_id=horse_id,
                bettor_wallet=wallet,
                amount=amount,
                tx_signature=signature,
            )
            if not RaceRepository(session).add_to_pool(race_id, amount):
                raise BetRejected("Failed to record bet - race may have ended")
            placed = self._placed(bet)
            session.commit()
        except IntegrityError:
            # The deposit reconciler or a retried request stored this signature first.
            session.rollback()
            with session_scope(self._session_factory) as lookup:
                existing = BetRepository(lookup).get_by_signature(signature)
                if existing is None:
                    raise
                placed = self._placed(existing, duplicate=True)
            logger.info("Transaction {} recorded concurrently as bet {}", _short(signature, 20), placed.bet_id)
            return placed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("Bet {} recorded: {} SOL on horse {} in race {}", placed.bet_id, amount, horse_id, race_id)
        self._feed.publish(
            "bet.recorded",
            {
                "race_id": race_id,
                "horse_id": horse_id,
                "bettor_wallet": wallet,
                "amount": amount,
                "tx_signature": signature,
                "source": "api",
            },
        )
        return placed

    @staticmethod
    def _placed(bet, *, duplicate: bool = False) -> PlacedBet:
        return PlacedBet(
            bet_id=bet.id,
            race_id=bet.race_id,
            horse_id=bet.horse_id,
            amount=float(bet.amount),
            tx_signature=bet.tx_signature,
            duplicate=duplicate,
        )
