from __future__ import annotations

import itertools
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from solders.keypair import Keypair

from chain.keys import encode_secret, generate_local_wallet
from chain.normalize import LAMPORTS_PER_SOL
from derby.core.config import Settings
from derby.db import create_db_engine, create_session_factory, init_db, session_scope
from derby.domain import SignatureInfo, SignatureStatus, TransactionDetail
from derby.models import Horse
from derby.repositories import BetRepository, RaceRepository

HORSE_NAMES = ["Thunder", "Lightning", "Storm", "Blaze", "Shadow"]


class FixedRandom:
    """Random source returning the same draw and index every time."""

    def __init__(self, value: float = 0.5, index: int = 0) -> None:
        self.value = value
        self.index = index

    def random(self) -> float:
        return self.value

    def randrange(self, stop: int) -> int:
        return min(self.index, stop - 1)


@dataclass
class SeededHorse:
    id: int
    name: str
    wallet_address: str


class FakeChainClient:
    """In-memory stand-in for the Solana RPC client."""

    def __init__(self) -> None:
        self.refs: dict[str, list[SignatureInfo]] = {}
        self.details: dict[str, TransactionDetail | None] = {}
        self.balance = 0
        self.failing_addresses: set[str] = set()
        self.submit_results: list[Any] = []
        self.submitted: list[dict[str, Any]] = []
        self.detail_calls: list[str] = []
        self.recency_calls = 0
        # Successive answers per signature; the last one repeats.
        self.statuses: dict[str, list[SignatureStatus | None]] = {}
        self.expired_tokens: set[str] = set()
        self.status_calls: list[str] = []
        self._signatures = itertools.count(1)

    def add_transfer(
        self,
        recipient: str,
        sender: str,
        lamports: int,
        *,
        block_time: datetime | None,
        signature: str | None = None,
        err: Any = None,
    ) -> str:
        signature = signature or f"sig-{next(self._signatures)}"
        self.refs.setdefault(recipient, []).insert(
            0, SignatureInfo(signature=signature, block_time=block_time, err=err)
        )
        self.details[signature] = TransactionDetail(
            signature=signature,
            account_keys=[sender, recipient],
            pre_balances=[50 * LAMPORTS_PER_SOL, 0],
            post_balances=[50 * LAMPORTS_PER_SOL - lamports - 5000, lamports],
            block_time=block_time,
            err=err,
        )
        return signature

    def get_recent_transaction_refs(self, address: str, limit: int) -> list[SignatureInfo]:
        if address in self.failing_addresses:
            raise RuntimeError(f"rpc unavailable for {address}")
        return list(self.refs.get(address, []))[:limit]

    def get_transaction_detail(self, signature: str) -> TransactionDetail | None:
        self.detail_calls.append(signature)
        return self.details.get(signature)

    def get_balance(self, address: str) -> int:
        if isinstance(self.balance, Exception):
            raise self.balance
        return self.balance

    def get_recency_token(self) -> str:
        self.recency_calls += 1
        return f"blockhash-{self.recency_calls}"

    def is_recency_token_valid(self, recency_token: str) -> bool:
        return recency_token not in self.expired_tokens

    def get_signature_status(self, signature: str) -> SignatureStatus | None:
        self.status_calls.append(signature)
        answers = self.statuses.get(signature) or [None]
        return answers.pop(0) if len(answers) > 1 else answers[0]

    def submit_transaction(
        self,
        signer_key: str,
        instructions: Sequence[Any],
        *,
        recency_token: str,
        wait_for_confirmation: bool = True,
    ) -> str:
        self.submitted.append(
            {
                "signer_key": signer_key,
                "instructions": list(instructions),
                "recency_token": recency_token,
                "wait_for_confirmation": wait_for_confirmation,
            }
        )
        outcome = self.submit_results.pop(0) if self.submit_results else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or f"payout-{len(self.submitted)}"

    def close(self) -> None:
        pass


@pytest.fixture
def house_secret() -> str:
    return encode_secret(Keypair())


@pytest.fixture
def test_settings(tmp_path, monkeypatch, house_secret) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'derby.db'}",
        house_fee_percent=5.0,
        round_duration_seconds=300,
        settling_timeout_seconds=120,
        payout_max_transfers_per_tx=20,
        payout_max_retries=3,
        payout_retry_backoff_seconds=[1, 2, 4],
        payout_batch_delay_seconds=0.5,
        verify_attempts=3,
        verify_delay_seconds=0,
        house_wallet_private_key=house_secret,
        cron_secret=None,
        admin_secret="let-me-in",
        wallet_provider_url="",
    )
    monkeypatch.setattr("derby.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("derby.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(str(test_settings.database_url))
    init_db(bind=engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def horses(session_factory) -> list[SeededHorse]:
    seeded: list[SeededHorse] = []
    with session_scope(session_factory) as session:
        for name in HORSE_NAMES:
            wallet = generate_local_wallet()
            horse = Horse(name=name, wallet_address=wallet.public_key, wallet_private_key=wallet.private_key)
            session.add(horse)
            session.flush()
            seeded.append(SeededHorse(id=horse.id, name=name, wallet_address=wallet.public_key))
    return seeded


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_race(session_factory, now):
    """Create a betting race that started ``age`` ago with the usual 300s window."""

    def _make(age: timedelta = timedelta(seconds=0), duration: timedelta = timedelta(seconds=300)) -> str:
        started_at = now - age
        with session_scope(session_factory) as session:
            race = RaceRepository(session).create_race(
                started_at=started_at, betting_ends_at=started_at + duration
            )
            return race.id

    return _make


@pytest.fixture
def add_bet(session_factory):
    """Insert a confirmed bet and grow the race pool the way deposits do."""

    counter = itertools.count(1)

    def _add(race_id: str, horse_id: int, amount: float, wallet: str | None = None) -> str:
        wallet = wallet or str(Keypair().pubkey())
        with session_scope(session_factory) as session:
            bet = BetRepository(session).add_confirmed(
                race_id=race_id,
                horse_id=horse_id,
                bettor_wallet=wallet,
                amount=amount,
                tx_signature=f"bet-{race_id[:6]}-{next(counter)}",
            )
            RaceRepository(session).add_to_pool(race_id, amount)
            return bet.id

    return _add
