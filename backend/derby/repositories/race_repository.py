"""Race persistence and the compare-and-set transitions of the race lifecycle."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import desc, func, select, update
from sqlalchemy.orm import Session

from derby.models import Race, RaceStatus, utcnow

_ACTIVE_STATUSES = (RaceStatus.BETTING.value, RaceStatus.RACING.value)


class RaceRepository:
    """Encapsulate race lookups and guarded status updates."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def get(self, race_id: str) -> Race | None:
        return self._session.get(Race, race_id)

    def current(self) -> Race | None:
        query = (
            select(Race)
            .where(Race.status.in_(_ACTIVE_STATUSES))
            .order_by(desc(Race.started_at))
            .limit(1)
        )
        return self._session.execute(query).scalars().first()

    def list_by_status(self, status: RaceStatus | str) -> Sequence[Race]:
        value = status.value if isinstance(status, RaceStatus) else status
        query = select(Race).where(Race.status == value).order_by(Race.started_at)
        return self._session.execute(query).scalars().all()

    def list_expired_betting(self, now: datetime) -> Sequence[Race]:
        query = (
            select(Race)
            .where(Race.status == RaceStatus.BETTING.value, Race.betting_ends_at < now)
            .order_by(Race.betting_ends_at)
        )
        return self._session.execute(query).scalars().all()

    def list_stuck_racing(self, cutoff: datetime) -> Sequence[Race]:
        query = (
            select(Race)
            .where(Race.status == RaceStatus.RACING.value, Race.updated_at < cutoff)
            .order_by(Race.updated_at)
        )
        return self._session.execute(query).scalars().all()

    def has_active(self) -> bool:
        query = select(Race.id).where(Race.status.in_(_ACTIVE_STATUSES)).limit(1)
        return self._session.execute(query).first() is not None

    def latest(self) -> Race | None:
        query = select(Race).order_by(desc(Race.race_number)).limit(1)
        return self._session.execute(query).scalars().first()

    def recent_finished(self, limit: int = 10) -> Sequence[Race]:
        query = (
            select(Race)
            .where(Race.status == RaceStatus.FINISHED.value)
            .order_by(desc(Race.finished_at))
            .limit(limit)
        )
        return self._session.execute(query).scalars().all()

    # ------------------------------------------------------------------
    # Mutations

    def create_race(
        self,
        *,
        started_at: datetime,
        betting_ends_at: datetime,
        race_number: int | None = None,
    ) -> Race:
        """Insert a betting race.

        Callers that pass the number they derived from :meth:`latest` get a
        unique-constraint failure if another caller opened that race first.
        """

        next_number = race_number or (self._session.execute(select(func.max(Race.race_number))).scalar() or 0) + 1
        race = Race(
            race_number=next_number,
            status=RaceStatus.BETTING.value,
            started_at=started_at,
            betting_ends_at=betting_ends_at,
            total_pool=0.0,
            final_positions=[],
            updated_at=started_at,
        )
        self._session.add(race)
        self._session.flush()
        return race

    def compare_and_set_status(
        self,
        race_id: str,
        *,
        expected: RaceStatus,
        new: RaceStatus,
        now: datetime | None = None,
    ) -> bool:
        """Move ``race_id`` from ``expected`` to ``new``; False means another caller won."""

        statement = (
            update(Race)
            .where(Race.id == race_id, Race.status == expected.value)
            .values(status=new.value, updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount == 1

    def claim_stale_racing(self, race_id: str, *, stale_before: datetime, now: datetime) -> bool:
        """Take over a race whose settlement attempt stopped making progress.

        Bumping ``updated_at`` makes the claim exclusive: concurrent recoverers
        see a fresh timestamp and back off.
        """

        statement = (
            update(Race)
            .where(
                Race.id == race_id,
                Race.status == RaceStatus.RACING.value,
                Race.updated_at < stale_before,
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def finalize(
        self,
        race_id: str,
        *,
        winning_horse_id: int,
        positions: list[int],
        finished_at: datetime,
    ) -> bool:
        statement = (
            update(Race)
            .where(Race.id == race_id, Race.status == RaceStatus.RACING.value)
            .values(
                status=RaceStatus.FINISHED.value,
                winning_horse_id=winning_horse_id,
                final_positions=list(positions),
                finished_at=finished_at,
                updated_at=finished_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount == 1

    def add_to_pool(self, race_id: str, amount: float) -> bool:
        """Grow the pool of a race still taking bets.

        Run in the same transaction as the bet insert: a False result means the
        race was locked for settlement first and the insert must be rolled back.
        """

        statement = (
            update(Race)
            .where(Race.id == race_id, Race.status == RaceStatus.BETTING.value)
            .values(total_pool=Race.total_pool + amount)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount == 1
