"""Administrative (re)initialization of horse receiving wallets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from chain.keys import WalletProvider, is_valid_address
from derby.db import session_scope
from derby.repositories import HorseRepository


@dataclass(slots=True)
class WalletInitResult:
    horse_id: int
    horse_name: str
    success: bool
    wallet_address: str | None = None
    previous_wallet: str | None = None
    source: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "horse_id": self.horse_id,
            "horse_name": self.horse_name,
            "success": self.success,
            "wallet_address": self.wallet_address,
            "previous_wallet": self.previous_wallet,
            "source": self.source,
            "error": self.error,
        }


class WalletService:
    """Replace each horse's wallet and signing key in place.

    Rotating a wallet while a race is open strands deposits sent to the old
    address; run this between races.
    """

    def __init__(self, session_factory: sessionmaker[Session], provider: WalletProvider) -> None:
        self._session_factory = session_factory
        self._provider = provider

    def initialize(self, *, only_placeholders: bool = False) -> list[WalletInitResult]:
        with session_scope(self._session_factory) as session:
            horses = [
                (horse.id, horse.name, horse.wallet_address)
                for horse in HorseRepository(session).list_all()
            ]

        results: list[WalletInitResult] = []
        for horse_id, name, previous in horses:
            if only_placeholders and is_valid_address(previous):
                continue
            try:
                wallet = self._provider.create_wallet()
                with session_scope(self._session_factory) as session:
                    repo = HorseRepository(session)
                    horse = repo.get(horse_id)
                    if horse is None:
                        raise LookupError(f"horse {horse_id} disappeared")
                    repo.replace_wallet(
                        horse,
                        wallet_address=wallet.public_key,
                        wallet_private_key=wallet.private_key,
                        api_key=wallet.api_key,
                    )
            except Exception as exc:  # noqa: BLE001 - reported per horse
                logger.exception("Wallet initialization failed for horse {}", name)
                results.append(
                    WalletInitResult(horse_id=horse_id, horse_name=name, success=False, error=str(exc))
                )
                continue

            logger.info("Horse {} now receives at {} ({})", name, wallet.public_key, wallet.source)
            results.append(
                WalletInitResult(
                    horse_id=horse_id,
                    horse_name=name,
                    success=True,
                    wallet_address=wallet.public_key,
                    previous_wallet=previous or None,
                    source=wallet.source,
                )
            )
        return results

    def add_horses(self, entries: list[tuple[str, str | None, str | None]]) -> list[int]:
        """Register horses by ``(name, color, emoji)``; they start with a placeholder wallet."""

        with session_scope(self._session_factory) as session:
            repo = HorseRepository(session)
            existing = {horse.name for horse in repo.list_all()}
            created = []
            for name, color, emoji in entries:
                if name in existing:
                    logger.info("Horse {} already exists; skipping", name)
                    continue
                created.append(repo.add(name=name, color=color, emoji=emoji).id)
                existing.add(name)
        return created
