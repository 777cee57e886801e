"""Horse (betting outcome) persistence helpers."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from derby.models import Horse


class HorseRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, horse_id: int) -> Horse | None:
        return self._session.get(Horse, horse_id)

    def list_all(self) -> Sequence[Horse]:
        return self._session.execute(select(Horse).order_by(Horse.id)).scalars().all()

    def add(self, *, name: str, color: str | None = None, emoji: str | None = None) -> Horse:
        horse = Horse(name=name, color=color, emoji=emoji, wallet_address="")
        self._session.add(horse)
        self._session.flush()
        return horse

    def replace_wallet(
        self,
        horse: Horse,
        *,
        wallet_address: str,
        wallet_private_key: str,
        api_key: str | None,
    ) -> None:
        horse.wallet_address = wallet_address
        horse.wallet_private_key = wallet_private_key
        horse.api_key = api_key
        self._session.flush()
