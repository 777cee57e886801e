"""Bet persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Sequence

from sqlalchemy import desc, func, select, update
from sqlalchemy.orm import Session

from derby.models import Bet, BetStatus


class BetRepository:
    """Encapsulate bet lookups, inserts and the one-time settlement update."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def get_by_signature(self, tx_signature: str) -> Bet | None:
        query = select(Bet).where(Bet.tx_signature == tx_signature)
        return self._session.execute(query).scalar_one_or_none()

    def known_signatures(self, signatures: Iterable[str]) -> set[str]:
        candidates = {signature for signature in signatures if signature}
        if not candidates:
            return set()

        query = select(Bet.tx_signature).where(Bet.tx_signature.in_(candidates))
        rows = self._session.execute(query).scalars().all()
        return {row for row in rows if row is not None}

    def confirmed_for_race(self, race_id: str) -> Sequence[Bet]:
        query = (
            select(Bet)
            .where(Bet.race_id == race_id, Bet.status == BetStatus.CONFIRMED.value)
            .order_by(Bet.created_at, Bet.id)
        )
        return self._session.execute(query).scalars().all()

    def totals_by_horse(self, race_id: str) -> dict[int, float]:
        query = (
            select(Bet.horse_id, func.coalesce(func.sum(Bet.amount), 0))
            .where(Bet.race_id == race_id, Bet.status == BetStatus.CONFIRMED.value)
            .group_by(Bet.horse_id)
        )
        return {horse_id: float(total) for horse_id, total in self._session.execute(query).all()}

    def list_bets(
        self,
        *,
        race_id: str | None = None,
        wallet: str | None = None,
        limit: int = 100,
    ) -> Sequence[Bet]:
        query = select(Bet)
        if race_id:
            query = query.where(Bet.race_id == race_id)
        if wallet:
            query = query.where(Bet.bettor_wallet == wallet)
        query = query.order_by(desc(Bet.created_at)).limit(limit)
        return self._session.execute(query).scalars().all()

    # ------------------------------------------------------------------
    # Mutations

    def add_confirmed(
        self,
        *,
        race_id: str,
        horse_id: int,
        bettor_wallet: str,
        amount: float,
        tx_signature: str | None,
    ) -> Bet:
        bet = Bet(
            race_id=race_id,
            horse_id=horse_id,
            bettor_wallet=bettor_wallet,
            amount=amount,
            tx_signature=tx_signature,
            status=BetStatus.CONFIRMED.value,
            payout=0.0,
        )
        self._session.add(bet)
        self._session.flush()
        return bet

    def resolve(self, bet_id: str, *, won: bool, payout: float) -> bool:
        """Settle a confirmed bet as paid or lost; already-settled bets are left alone."""

        status = BetStatus.PAID if won else BetStatus.LOST
        statement = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.status == BetStatus.CONFIRMED.value)
            .values(status=status.value, payout=payout)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount == 1
