from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from chain.normalize import LAMPORTS_PER_SOL
from derby.db import session_scope
from derby.models import Bet, BetStatus, Race, RaceStatus
from derby.repositories import RaceRepository
from derby.services.deposits import DepositReconciler
from derby.services.notifications import ChangeFeed

SENDER = "4Nd1mYQwQx2ZfGmRwGkz3r6hTqfWzXXG8sYvHUP1pump"


@pytest.fixture
def reconciler(session_factory, fake_chain, test_settings, now):
    return DepositReconciler(
        session_factory,
        fake_chain,
        settings=test_settings,
        feed=ChangeFeed(),
        clock=lambda: now,
    )


def _bets(session_factory) -> list[Bet]:
    with session_scope(session_factory) as session:
        rows = session.execute(select(Bet).order_by(Bet.created_at)).scalars().all()
        session.expunge_all()
        return list(rows)


def _pool(session_factory, race_id) -> float:
    with session_scope(session_factory) as session:
        return session.get(Race, race_id).total_pool


def _deadline(session_factory, race_id):
    with session_scope(session_factory) as session:
        return session.get(Race, race_id).betting_ends_at


def test_reconcile_records_a_direct_deposit(session_factory, reconciler, fake_chain, horses, make_race, now):
    race_id = make_race(age=timedelta(seconds=60))
    signature = fake_chain.add_transfer(
        horses[2].wallet_address, SENDER, int(1.5 * LAMPORTS_PER_SOL), block_time=now - timedelta(seconds=30)
    )

    summary = reconciler.reconcile(race_id, _deadline(session_factory, race_id))

    assert summary.recorded == 1
    bets = _bets(session_factory)
    assert len(bets) == 1
    assert bets[0].tx_signature == signature
    assert bets[0].horse_id == horses[2].id
    assert bets[0].bettor_wallet == SENDER
    assert bets[0].amount == pytest.approx(1.5)
    assert bets[0].status == BetStatus.CONFIRMED.value
    assert _pool(session_factory, race_id) == pytest.approx(1.5)


def test_reconcile_is_idempotent(session_factory, reconciler, fake_chain, horses, make_race, now):
    race_id = make_race(age=timedelta(seconds=60))
    fake_chain.add_transfer(horses[0].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=now)
    deadline = _deadline(session_factory, race_id)

    first = reconciler.reconcile(race_id, deadline)
    fake_chain.detail_calls.clear()
    second = reconciler.reconcile(race_id, deadline)

    assert first.recorded == 1
    assert second.recorded == 0
    assert second.skipped_known == 1
    # Known signatures are skipped before any detail lookup.
    assert fake_chain.detail_calls == []
    assert len(_bets(session_factory)) == 1
    assert _pool(session_factory, race_id) == pytest.approx(1.0)


def test_reconcile_excludes_late_deposits(session_factory, reconciler, fake_chain, horses, make_race, now):
    race_id = make_race(age=timedelta(seconds=299))
    deadline = _deadline(session_factory, race_id)
    fake_chain.add_transfer(
        horses[1].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=now + timedelta(seconds=5)
    )

    summary = reconciler.reconcile(race_id, deadline)

    assert summary.recorded == 0
    assert summary.skipped_late == 1
    assert _bets(session_factory) == []
    assert _pool(session_factory, race_id) == 0


def test_late_deposit_does_not_roll_into_the_next_race(
    session_factory, reconciler, fake_chain, horses, make_race, now
):
    first_race = make_race(age=timedelta(seconds=600))
    fake_chain.add_transfer(
        horses[0].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=now - timedelta(seconds=200)
    )
    assert reconciler.reconcile(first_race, _deadline(session_factory, first_race)).skipped_late == 1

    next_race = make_race()
    summary = reconciler.reconcile(next_race, _deadline(session_factory, next_race))

    assert summary.recorded == 0
    assert summary.skipped_early == 1
    assert _bets(session_factory) == []
    assert _pool(session_factory, next_race) == 0


def test_reconcile_uses_the_window_start_it_is_given(
    session_factory, reconciler, fake_chain, horses, make_race, now
):
    race_id = make_race(age=timedelta(seconds=60))
    fake_chain.add_transfer(
        horses[0].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=now - timedelta(seconds=30)
    )

    summary = reconciler.reconcile(
        race_id, _deadline(session_factory, race_id), started_at=now - timedelta(seconds=10)
    )

    assert summary.recorded == 0
    assert summary.skipped_early == 1


def test_reconcile_treats_missing_block_time_as_now(session_factory, reconciler, fake_chain, horses, make_race):
    race_id = make_race(age=timedelta(seconds=10))
    fake_chain.add_transfer(horses[1].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=None)

    summary = reconciler.reconcile(race_id, _deadline(session_factory, race_id))

    assert summary.recorded == 1


def test_reconcile_skips_failed_and_outgoing_transactions(
    session_factory, reconciler, fake_chain, horses, make_race, now
):
    race_id = make_race(age=timedelta(seconds=60))
    wallet = horses[0].wallet_address
    fake_chain.add_transfer(wallet, SENDER, LAMPORTS_PER_SOL, block_time=now, err={"InstructionError": [0, "x"]})
    outgoing = fake_chain.add_transfer(wallet, SENDER, LAMPORTS_PER_SOL, block_time=now)
    fake_chain.details[outgoing].pre_balances[1] = 3 * LAMPORTS_PER_SOL
    fake_chain.add_transfer(wallet, SENDER, LAMPORTS_PER_SOL, block_time=now, signature="not-visible")
    fake_chain.details["not-visible"] = None

    summary = reconciler.reconcile(race_id, _deadline(session_factory, race_id))

    assert summary.recorded == 0
    assert summary.skipped_other == 3
    assert _bets(session_factory) == []


def test_one_failing_wallet_does_not_stop_the_scan(
    session_factory, reconciler, fake_chain, horses, make_race, now
):
    race_id = make_race(age=timedelta(seconds=60))
    fake_chain.failing_addresses.add(horses[0].wallet_address)
    fake_chain.add_transfer(horses[3].wallet_address, SENDER, 2 * LAMPORTS_PER_SOL, block_time=now)

    summary = reconciler.reconcile(race_id, _deadline(session_factory, race_id))

    assert summary.recorded == 1
    assert len(summary.failures) == 1
    assert summary.failures[0]["horse_id"] == horses[0].id


def test_deposit_is_not_recorded_once_the_race_is_locked(
    session_factory, reconciler, fake_chain, horses, make_race, now
):
    race_id = make_race(age=timedelta(seconds=60))
    deadline = _deadline(session_factory, race_id)
    fake_chain.add_transfer(horses[0].wallet_address, SENDER, LAMPORTS_PER_SOL, block_time=now)
    with session_scope(session_factory) as session:
        RaceRepository(session).compare_and_set_status(race_id, expected=RaceStatus.OPEN, new=RaceStatus.SETTLING)

    summary = reconciler.reconcile(race_id, deadline)

    assert summary.recorded == 0
    assert _bets(session_factory) == []
