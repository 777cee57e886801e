"""The round control loop driven by an external cron trigger."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from derby.core.config import Settings, get_settings
from derby.db import session_scope
from derby.models import RaceStatus, as_utc, utcnow
from derby.repositories import RaceRepository

from .deposits import DepositReconciler
from .notifications import ChangeFeed, change_feed
from .settlement import SettlementEngine


@dataclass(slots=True)
class TickSummary:
    settled: int = 0
    started_race_id: str | None = None
    deposits_recorded: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "settled": self.settled,
            "started_race_id": self.started_race_id,
            "deposits_recorded": self.deposits_recorded,
            "errors": self.errors,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.elapsed_ms,
        }


class RoundScheduler:
    """One invocation: reconcile deposits, settle due races, open the next race.

    Overlapping invocations are expected. Every state change goes through the
    settlement engine's compare-and-set updates or the unique race number, so
    running two ticks at once settles each race once and opens at most one race.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        engine: SettlementEngine,
        reconciler: DepositReconciler,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._engine = engine
        self._reconciler = reconciler
        self._feed = feed or change_feed
        self._clock = clock

    def tick(self, now: datetime | None = None) -> TickSummary:
        started = time.perf_counter()
        now = now or self._clock()
        summary = TickSummary(timestamp=now)

        self._reconcile_betting(summary)
        self._settle_expired(now, summary)
        self._settle_stuck(now, summary)
        self._maybe_start_race(now, summary)

        summary.elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Tick done: settled={} started={} deposits={} errors={} in {}ms",
            summary.settled,
            summary.started_race_id,
            summary.deposits_recorded,
            len(summary.errors),
            summary.elapsed_ms,
        )
        return summary

    def _reconcile_betting(self, summary: TickSummary) -> None:
        with session_scope(self._session_factory) as session:
            races = [
                (race.id, race.started_at, race.betting_ends_at)
                for race in RaceRepository(session).list_by_status(RaceStatus.BETTING)
            ]

        for race_id, started_at, betting_ends_at in races:
            try:
                result = self._reconciler.reconcile(race_id, betting_ends_at, started_at=started_at)
            except Exception as exc:  # noqa: BLE001 - isolate per race
                logger.exception("Deposit reconciliation failed for race {}", race_id)
                summary.errors.append({"step": "reconcile", "race_id": race_id, "reason": str(exc)})
                continue
            summary.deposits_recorded += result.recorded
            for failure in result.failures:
                summary.errors.append({"step": "reconcile", "race_id": race_id, **failure})

    def _settle_expired(self, now: datetime, summary: TickSummary) -> None:
        with session_scope(self._session_factory) as session:
            race_ids = [race.id for race in RaceRepository(session).list_expired_betting(now)]
        self._settle_all(race_ids, "settle", summary)

    def _settle_stuck(self, now: datetime, summary: TickSummary) -> None:
        cutoff = now - timedelta(seconds=self.settings.settling_timeout_seconds)
        with session_scope(self._session_factory) as session:
            race_ids = [race.id for race in RaceRepository(session).list_stuck_racing(cutoff)]
        if race_ids:
            logger.warning("Found {} race(s) stuck in racing since before {}", len(race_ids), cutoff.isoformat())
        self._settle_all(race_ids, "recover", summary)

    def _settle_all(self, race_ids: list[str], step: str, summary: TickSummary) -> None:
        for race_id in race_ids:
            try:
                result = self._engine.settle(race_id)
            except Exception as exc:  # noqa: BLE001 - the race stays racing and is retried later
                logger.exception("Settlement failed for race {}", race_id)
                summary.errors.append({"step": step, "race_id": race_id, "reason": str(exc)})
                continue
            # Stored results returned to a late caller are not new settlements.
            if result is not None and result.fresh:
                summary.settled += 1

    def _maybe_start_race(self, now: datetime, summary: TickSummary) -> None:
        duration = timedelta(seconds=self.settings.round_duration_seconds)
        spacing = timedelta(seconds=self.settings.min_round_spacing_seconds or 0)

        session = self._session_factory()
        try:
            races = RaceRepository(session)
            if races.has_active():
                return
            latest = races.latest()
            if latest is not None:
                if latest.status != RaceStatus.FINISHED.value:
                    return
                if as_utc(latest.started_at) > now - spacing:
                    logger.debug(
                        "Race {} started at {}; waiting before opening another",
                        latest.id,
                        as_utc(latest.started_at).isoformat(),
                    )
                    return
            # Numbering from the race we just inspected makes overlapping ticks
            # collide on the unique race number instead of both opening a race.
            race = races.create_race(
                started_at=now,
                betting_ends_at=now + duration,
                race_number=(latest.race_number if latest is not None else 0) + 1,
            )
            race_id, race_number = race.id, race.race_number
            session.commit()
        except IntegrityError:
            # An overlapping tick claimed the same race number first.
            session.rollback()
            logger.info("Another tick opened the next race concurrently")
            return
        except Exception as exc:  # noqa: BLE001 - reported in the tick summary
            session.rollback()
            logger.exception("Could not open a new race")
            summary.errors.append({"step": "start", "reason": str(exc)})
            return
        finally:
            session.close()

        summary.started_race_id = race_id
        logger.info("Race #{} ({}) open for betting until {}", race_number, race_id, (now + duration).isoformat())
        self._feed.publish(
            "race.started",
            {
                "race_id": race_id,
                "race_number": race_number,
                "started_at": now.isoformat(),
                "betting_ends_at": (now + duration).isoformat(),
            },
        )
