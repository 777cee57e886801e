"""Race settlement: winner selection, finishing order, payouts and the locked finalize."""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from derby.core.config import Settings, get_settings
from derby.db import session_scope
from derby.domain import HorseTotal, PayoutShare, SettlementResult, StakeView, WalletPayout
from derby.models import Race, RaceStatus, utcnow
from derby.repositories import BetRepository, HorseRepository, PayoutRepository, RaceRepository

from .errors import DerbyError, NotFoundError
from .notifications import ChangeFeed, change_feed

# Payout amounts are stored with lamport precision.
_AMOUNT_DECIMALS = 9


class RandomSource(Protocol):
    """Subset of :class:`random.Random` the engine draws from."""

    def random(self) -> float: ...

    def randrange(self, stop: int) -> int: ...


def select_winner(horse_totals: Sequence[HorseTotal], rng: RandomSource | None = None) -> int:
    """Pick the winning horse, favouring horses that attracted less money.

    Each horse gets weight ``T - s_i + T / n``; the ``T / n`` floor keeps every
    horse in contention. With nothing staked the pick is uniform.
    """

    if not horse_totals:
        raise ValueError("cannot select a winner without horses")
    rng = rng or random

    total = sum(entry.total for entry in horse_totals)
    if total <= 0:
        return horse_totals[rng.randrange(len(horse_totals))].horse_id

    floor = total / len(horse_totals)
    weights = [total - entry.total + floor for entry in horse_totals]
    draw = rng.random() * sum(weights)

    cumulative = 0.0
    for entry, weight in zip(horse_totals, weights):
        cumulative += weight
        if draw <= cumulative:
            return entry.horse_id
    return horse_totals[-1].horse_id


def generate_positions(
    winner_id: int,
    horse_ids: Sequence[int],
    rng: RandomSource | None = None,
) -> list[int]:
    """Winner first, everyone else in a uniformly shuffled (Fisher-Yates) order."""

    rng = rng or random
    rest = [horse_id for horse_id in horse_ids if horse_id != winner_id]
    for index in range(len(rest) - 1, 0, -1):
        swap = rng.randrange(index + 1)
        rest[index], rest[swap] = rest[swap], rest[index]
    return [winner_id, *rest]


def calculate_payouts(
    winner_id: int,
    stakes: Sequence[StakeView],
    fee_rate: float,
) -> list[PayoutShare]:
    """Return each winning stake plus its pro-rata share of the losing pool after fees.

    No winning stakes means no payouts; the house keeps the pool.
    """

    winners = [stake for stake in stakes if stake.horse_id == winner_id]
    if not winners:
        return []

    loser_pool = sum(stake.amount for stake in stakes if stake.horse_id != winner_id)
    house_fee = loser_pool * fee_rate
    distributable = loser_pool - house_fee
    winning_total = sum(stake.amount for stake in winners)

    shares: list[PayoutShare] = []
    for stake in winners:
        share = (stake.amount / winning_total) * distributable if winning_total > 0 else 0.0
        shares.append(PayoutShare(bet_id=stake.bet_id, wallet=stake.wallet, amount=stake.amount + share))
    return shares


def stored_result(session: Session, race: Race, *, fresh: bool = False) -> SettlementResult | None:
    """Rebuild the persisted result of a finished race."""

    if race.status != RaceStatus.FINISHED.value or race.winning_horse_id is None:
        return None
    horse = HorseRepository(session).get(race.winning_horse_id)
    payouts = PayoutRepository(session).list_for_race(race.id)
    return SettlementResult(
        race_id=race.id,
        winning_horse_id=race.winning_horse_id,
        winning_horse_name=horse.name if horse else "Unknown",
        positions=list(race.final_positions or []),
        payouts=[WalletPayout(wallet=row.recipient_wallet, amount=row.amount) for row in payouts],
        fresh=fresh,
    )


class SettlementEngine:
    """Exactly-once race settlement built on compare-and-set status updates.

    ``settle`` may be called any number of times, concurrently, for the same
    race. Only the caller whose ``betting -> racing`` update succeeds computes a
    result; everyone else gets ``None`` or the stored result of a finished race.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: Settings | None = None,
        rng: RandomSource | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._rng = rng or random.Random()
        self._feed = feed or change_feed
        self._clock = clock

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.settling_timeout_seconds)

    def settle(self, race_id: str) -> SettlementResult | None:
        with session_scope(self._session_factory) as session:
            races = RaceRepository(session)
            race = races.get(race_id)
            if race is None:
                logger.debug("Race {} not found; nothing to settle", race_id)
                return None

            if race.status == RaceStatus.FINISHED.value and race.winning_horse_id is not None:
                return stored_result(session, race)

            now = self._clock()
            if race.status == RaceStatus.BETTING.value:
                if not races.compare_and_set_status(
                    race_id, expected=RaceStatus.OPEN, new=RaceStatus.SETTLING, now=now
                ):
                    logger.debug("Race {} already locked by another caller", race_id)
                    return None
                logger.info("Race {} locked for settlement", race_id)
            elif race.status == RaceStatus.RACING.value:
                if not races.claim_stale_racing(race_id, stale_before=now - self.stale_after, now=now):
                    logger.debug("Race {} is being settled by another caller", race_id)
                    return None
                logger.warning("Race {} was stuck in racing; resuming settlement", race_id)
            else:
                logger.warning("Race {} has unexpected status {}; aborting settlement", race_id, race.status)
                return None

        # The lock is committed; outcomes and bets are read only now so the
        # computation sees every bet accepted before betting closed.
        with session_scope(self._session_factory) as session:
            result = self._finalize(session, race_id)

        if result is not None and result.fresh:
            self._feed.publish("race.finished", result.to_dict())
        return result

    def _finalize(self, session: Session, race_id: str) -> SettlementResult | None:
        races = RaceRepository(session)
        bets = BetRepository(session)

        race = races.get(race_id)
        if race is None:
            raise NotFoundError(f"race {race_id} disappeared while locked")

        horses = list(HorseRepository(session).list_all())
        if not horses:
            raise DerbyError("cannot settle a race without horses")

        stakes = [
            StakeView(bet_id=bet.id, horse_id=bet.horse_id, wallet=bet.bettor_wallet, amount=float(bet.amount))
            for bet in bets.confirmed_for_race(race_id)
        ]
        totals = [
            HorseTotal(
                horse_id=horse.id,
                total=sum(stake.amount for stake in stakes if stake.horse_id == horse.id),
            )
            for horse in horses
        ]

        winner_id = select_winner(totals, self._rng)
        positions = generate_positions(winner_id, [horse.id for horse in horses], self._rng)
        shares = [
            PayoutShare(bet_id=share.bet_id, wallet=share.wallet, amount=round(share.amount, _AMOUNT_DECIMALS))
            for share in calculate_payouts(winner_id, stakes, self.settings.fee_rate)
        ]

        finished_at = self._clock()
        if not races.finalize(
            race_id,
            winning_horse_id=winner_id,
            positions=positions,
            finished_at=finished_at,
        ):
            # Another settler finished first; its stored result is authoritative.
            session.rollback()
            logger.info("Race {} was finalized concurrently; returning stored result", race_id)
            race = races.get(race_id)
            return stored_result(session, race) if race is not None else None

        payout_by_bet = {share.bet_id: share.amount for share in shares}
        for stake in stakes:
            bets.resolve(
                stake.bet_id,
                won=stake.horse_id == winner_id,
                payout=payout_by_bet.get(stake.bet_id, 0.0),
            )
        PayoutRepository(session).add_pending(race_id, shares)

        winner = next(horse for horse in horses if horse.id == winner_id)
        logger.info(
            "Race {} finished: winner={} ({}), bets={}, payouts={}",
            race_id,
            winner.name,
            winner_id,
            len(stakes),
            len(shares),
        )
        return SettlementResult(
            race_id=race_id,
            winning_horse_id=winner_id,
            winning_horse_name=winner.name,
            positions=positions,
            payouts=[WalletPayout(wallet=share.wallet, amount=share.amount) for share in shares],
        )
