"""Read-only views of races, pools and implied odds used by the API."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy.orm import Session

from derby import schemas
from derby.models import Bet, Race
from derby.repositories import BetRepository, HorseRepository, PayoutRepository, RaceRepository


def implied_odds(horse_total: float, pool: float) -> float | None:
    """Decimal odds ``pool / horse_total``; ``None`` until the horse has backing."""

    if horse_total <= 0 or pool <= 0:
        return None
    return round(pool / horse_total, 2)


class RaceViewService:
    """Read-only facade over races, horses and bets for the HTTP layer."""

    def __init__(self, session: Session):
        self._session = session
        self._races = RaceRepository(session)
        self._bets = BetRepository(session)
        self._horses = HorseRepository(session)

    def current_race(self) -> schemas.Race | None:
        race = self._races.current()
        return schemas.Race.model_validate(race) if race else None

    def race_detail(self, race_id: str) -> schemas.RaceDetail | None:
        race = self._races.get(race_id)
        if race is None:
            return None
        return self._detail(race)

    def recent_results(self, limit: int = 10) -> list[schemas.RaceDetail]:
        return [self._detail(race) for race in self._races.recent_finished(limit)]

    def horses(self, race_id: str | None = None) -> schemas.HorseList:
        horses = self._horses.list_all()
        if not race_id:
            return schemas.HorseList(
                horses=[schemas.HorseWithOdds.model_validate(horse) for horse in horses]
            )

        # Confirmed bets are the source of truth, not the race's running pool.
        totals = self._bets.totals_by_horse(race_id)
        pool = sum(totals.values())
        items = []
        for horse in horses:
            horse_total = totals.get(horse.id, 0.0)
            item = schemas.HorseWithOdds.model_validate(horse)
            item.total_bets = horse_total
            item.odds = implied_odds(horse_total, pool)
            item.percentage = round(horse_total / pool * 100, 1) if pool > 0 else 0.0
            items.append(item)
        return schemas.HorseList(horses=items, total_pool=pool)

    def bets(
        self,
        *,
        race_id: str | None = None,
        wallet: str | None = None,
        limit: int = 100,
    ) -> list[schemas.Bet]:
        rows: Sequence[Bet] = self._bets.list_bets(race_id=race_id, wallet=wallet, limit=limit)
        return [schemas.Bet.model_validate(row) for row in rows]

    def _detail(self, race: Race) -> schemas.RaceDetail:
        detail = schemas.RaceDetail(**schemas.Race.model_validate(race).model_dump())
        if race.winning_horse_id is not None:
            winner = self._horses.get(race.winning_horse_id)
            detail.winning_horse_name = winner.name if winner else None
            detail.payouts = [
                schemas.PayoutEntry(
                    wallet=row.recipient_wallet,
                    amount=float(row.amount),
                    status=row.status,
                    tx_signature=row.tx_signature,
                )
                for row in PayoutRepository(self._session).list_for_race(race.id)
            ]
        return detail
