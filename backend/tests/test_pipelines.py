from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import timedelta

import pytest

from chain.normalize import LAMPORTS_PER_SOL
from conftest import FixedRandom
from derby.db import session_scope
from derby.models import utcnow
from derby.repositories import BetRepository, RaceRepository
from derby.services.notifications import ChangeFeed
from derby.services.settlement import SettlementEngine
from pipelines import init_wallets, payout_run, round_tick


@pytest.fixture
def wired_jobs(monkeypatch, session_factory, fake_chain, test_settings):
    """Point both jobs at the temporary database and the fake chain."""

    @contextmanager
    def _fake_client(**kwargs):
        yield fake_chain

    for module in (round_tick, payout_run):
        monkeypatch.setattr(module, "get_session_factory", lambda: session_factory)
        monkeypatch.setattr(module, "init_db", lambda: None)
        monkeypatch.setattr(module, "get_settings", lambda: test_settings)
        monkeypatch.setattr(module, "SolanaRpcClient", _fake_client)
    return fake_chain


def test_round_tick_opens_a_race_and_writes_summary(wired_jobs, horses, tmp_path):
    summary_path = tmp_path / "reports" / "tick.json"

    summary = round_tick.main(["--summary-path", str(summary_path)])

    assert summary.ok
    assert summary.started_race_id is not None
    written = json.loads(summary_path.read_text())
    assert written["started_race_id"] == summary.started_race_id
    assert written["ok"] is True


def test_payout_run_pays_pending_rows(wired_jobs, session_factory, horses, tmp_path, test_settings):
    started = utcnow() - timedelta(seconds=400)
    with session_scope(session_factory) as session:
        race = RaceRepository(session).create_race(started_at=started, betting_ends_at=started + timedelta(seconds=300))
        race_id = race.id
        for horse, amount in ((horses[0], 3.0), (horses[1], 1.0)):
            BetRepository(session).add_confirmed(
                race_id=race_id,
                horse_id=horse.id,
                bettor_wallet=horses[4].wallet_address,
                amount=amount,
                tx_signature=f"deposit-{horse.id}",
            )
    SettlementEngine(session_factory, settings=test_settings, rng=FixedRandom(0.2), feed=ChangeFeed()).settle(race_id)
    wired_jobs.balance = 10 * LAMPORTS_PER_SOL
    summary_path = tmp_path / "payouts.json"

    summary = payout_run.main(["--race-id", race_id, "--summary-path", str(summary_path)])

    assert summary.successful == 1
    assert json.loads(summary_path.read_text())["successful"] == 1


def test_retry_failed_requires_race_id():
    with pytest.raises(SystemExit):
        payout_run._parse_args(["--retry-failed"])


def test_init_wallets_registers_and_funds_horses(monkeypatch, session_factory, test_settings, tmp_path):
    monkeypatch.setattr(init_wallets, "get_session_factory", lambda: session_factory)
    monkeypatch.setattr(init_wallets, "init_db", lambda: None)
    monkeypatch.setattr(init_wallets, "get_settings", lambda: test_settings)
    summary_path = tmp_path / "wallets.json"

    results = init_wallets.main(
        ["--add-horse", "Thunder:#ef4444:⚡", "--add-horse", "Storm", "--summary-path", str(summary_path)]
    )

    assert [result.horse_name for result in results] == ["Thunder", "Storm"]
    assert all(result.success and result.source == "local" for result in results)
    written = json.loads(summary_path.read_text())
    assert all("private" not in key for entry in written for key in entry)

    # Running again with --only-placeholders leaves funded horses alone.
    assert init_wallets.main(["--add-horse", "Storm", "--only-placeholders"]) == []
