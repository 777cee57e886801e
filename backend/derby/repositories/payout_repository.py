"""Payout (disbursement record) persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from derby.domain import PayoutShare
from derby.models import Bet, Payout, PayoutStatus, new_id, utcnow


class PayoutRepository:
    """Owns payout rows: bulk creation at settlement and guarded status moves."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def list_for_race(self, race_id: str) -> Sequence[Payout]:
        # Same order the settlement engine computed them in: by originating bet.
        query = (
            select(Payout)
            .join(Bet, Bet.id == Payout.bet_id)
            .where(Payout.race_id == race_id)
            .order_by(Bet.created_at, Bet.id)
        )
        return self._session.execute(query).scalars().all()

    def list_pending(self, race_id: str) -> Sequence[Payout]:
        query = (
            select(Payout)
            .where(Payout.race_id == race_id, Payout.status == PayoutStatus.PENDING.value)
            .order_by(Payout.created_at, Payout.id)
        )
        return self._session.execute(query).scalars().all()

    def races_with_pending(self) -> list[str]:
        query = (
            select(Payout.race_id)
            .where(Payout.status == PayoutStatus.PENDING.value)
            .distinct()
        )
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Mutations

    def add_pending(self, race_id: str, shares: Iterable[PayoutShare]) -> int:
        now = utcnow()
        rows = [
            {
                "id": new_id(),
                "race_id": race_id,
                "bet_id": share.bet_id,
                "recipient_wallet": share.wallet,
                "amount": share.amount,
                "status": PayoutStatus.PENDING.value,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
            for share in shares
        ]
        if not rows:
            return 0
        self._session.execute(insert(Payout), rows)
        return len(rows)

    def claim(self, payout_id: str, *, now: datetime | None = None) -> bool:
        """Move a pending payout to sent before any transfer is attempted.

        Overlapping payout runs race on this update; only the winner may pay.
        """

        statement = (
            update(Payout)
            .where(Payout.id == payout_id, Payout.status == PayoutStatus.PENDING.value)
            .values(
                status=PayoutStatus.SENT.value,
                attempts=Payout.attempts + 1,
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def mark_confirmed(self, payout_id: str, *, tx_signature: str, now: datetime | None = None) -> bool:
        statement = (
            update(Payout)
            .where(Payout.id == payout_id, Payout.status == PayoutStatus.SENT.value)
            .values(
                status=PayoutStatus.CONFIRMED.value,
                tx_signature=tx_signature,
                error=None,
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def mark_failed(self, payout_id: str, *, error: str | None, now: datetime | None = None) -> bool:
        statement = (
            update(Payout)
            .where(Payout.id == payout_id, Payout.status == PayoutStatus.SENT.value)
            .values(
                status=PayoutStatus.FAILED.value,
                error=error,
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def reset_failed(self, race_id: str) -> int:
        statement = (
            update(Payout)
            .where(Payout.race_id == race_id, Payout.status == PayoutStatus.FAILED.value)
            .values(status=PayoutStatus.PENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount
