"""Turn direct transfers to horse wallets into confirmed bets."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chain.base import ChainClient
from chain.normalize import lamports_to_sol
from derby.core.config import Settings, get_settings
from derby.db import session_scope
from derby.models import as_utc, utcnow
from derby.repositories import BetRepository, HorseRepository, RaceRepository

from .notifications import ChangeFeed, change_feed


@dataclass(slots=True)
class ReconcileSummary:
    recorded: int = 0
    skipped_known: int = 0
    skipped_early: int = 0
    skipped_late: int = 0
    skipped_other: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "ReconcileSummary") -> None:
        self.recorded += other.recorded
        self.skipped_known += other.skipped_known
        self.skipped_early += other.skipped_early
        self.skipped_late += other.skipped_late
        self.skipped_other += other.skipped_other
        self.failures.extend(other.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recorded": self.recorded,
            "skipped_known": self.skipped_known,
            "skipped_early": self.skipped_early,
            "skipped_late": self.skipped_late,
            "skipped_other": self.skipped_other,
            "failures": self.failures,
        }


class DepositReconciler:
    """Scan horse wallets and record unseen incoming transfers as bets.

    The confirmed-bet set is the only source of truth for who bet what; a
    transfer straight to a horse wallet counts the same as a bet placed
    through the API. Each signature is recorded at most once, and only when it
    landed inside the race's own betting window.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        chain: ChainClient,
        *,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._chain = chain
        self._feed = feed or change_feed
        self._clock = clock

    def reconcile(
        self,
        race_id: str,
        betting_ends_at: datetime,
        *,
        started_at: datetime | None = None,
    ) -> ReconcileSummary:
        summary = ReconcileSummary()
        deadline = as_utc(betting_ends_at)

        with session_scope(self._session_factory) as session:
            if started_at is None:
                race = RaceRepository(session).get(race_id)
                if race is None:
                    logger.debug("Race {} not found; nothing to reconcile", race_id)
                    return summary
                started_at = race.started_at
            horses = [
                (horse.id, horse.name, horse.wallet_address)
                for horse in HorseRepository(session).list_all()
                if horse.wallet_address
            ]
        window = (as_utc(started_at), deadline)

        for horse_id, horse_name, wallet in horses:
            try:
                summary.merge(self._scan_wallet(race_id, window, horse_id, wallet))
            except Exception as exc:  # noqa: BLE001 - one wallet must not stop the scan
                logger.exception("Deposit scan failed for horse {} ({})", horse_name, wallet)
                summary.failures.append({"horse_id": horse_id, "reason": str(exc)})

        if summary.recorded:
            logger.info("Race {}: recorded {} direct deposits", race_id, summary.recorded)
        return summary

    def _scan_wallet(
        self,
        race_id: str,
        window: tuple[datetime, datetime],
        horse_id: int,
        wallet: str,
    ) -> ReconcileSummary:
        opens_at, deadline = window
        summary = ReconcileSummary()
        refs = self._chain.get_recent_transaction_refs(wallet, self.settings.deposit_scan_limit)
        if not refs:
            return summary

        with session_scope(self._session_factory) as session:
            known = BetRepository(session).known_signatures(ref.signature for ref in refs)

        for ref in refs:
            if ref.signature in known:
                summary.skipped_known += 1
                continue
            if ref.err:
                summary.skipped_other += 1
                continue

            detail = self._chain.get_transaction_detail(ref.signature)
            if detail is None or detail.err:
                summary.skipped_other += 1
                continue

            delta = detail.balance_delta(wallet)
            sender = detail.sender
            if delta is None or delta <= 0 or not sender:
                summary.skipped_other += 1
                continue

            observed_at = detail.block_time or ref.block_time or self._clock()
            if observed_at < opens_at:
                logger.info(
                    "Skipping deposit {} to horse {}: observed at {} before betting opened at {}",
                    ref.signature,
                    horse_id,
                    observed_at.isoformat(),
                    opens_at.isoformat(),
                )
                summary.skipped_early += 1
                continue
            if observed_at > deadline:
                logger.info(
                    "Skipping deposit {} to horse {}: observed at {} after betting closed at {}",
                    ref.signature,
                    horse_id,
                    observed_at.isoformat(),
                    deadline.isoformat(),
                )
                summary.skipped_late += 1
                continue

            amount = lamports_to_sol(delta)
            if self._record(race_id, horse_id, sender, amount, ref.signature):
                summary.recorded += 1
                self._feed.publish(
                    "bet.recorded",
                    {
                        "race_id": race_id,
                        "horse_id": horse_id,
                        "bettor_wallet": sender,
                        "amount": amount,
                        "tx_signature": ref.signature,
                        "source": "deposit",
                    },
                )
            else:
                summary.skipped_other += 1
        return summary

    def _record(self, race_id: str, horse_id: int, sender: str, amount: float, signature: str) -> bool:
        session = self._session_factory()
        try:
            BetRepository(session).add_confirmed(
                race_id=race_id,
                horse_id=horse_id,
                bettor_wallet=sender,
                amount=amount,
                tx_signature=signature,
            )
            if not RaceRepository(session).add_to_pool(race_id, amount):
                session.rollback()
                logger.info("Race {} closed before deposit {} could be recorded", race_id, signature)
                return False
            session.commit()
        except IntegrityError:
            # Another reconciler or the bet endpoint recorded this signature first.
            session.rollback()
            logger.debug("Deposit {} already recorded concurrently", signature)
            return False
        finally:
            session.close()
        logger.info("Recorded deposit {}: {} SOL from {} on horse {}", signature, amount, sender, horse_id)
        return True
