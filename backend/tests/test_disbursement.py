from __future__ import annotations

from datetime import timedelta

import pytest
from solders.keypair import Keypair
from sqlalchemy import select

from chain.base import ChainError, ConfirmationTimeout
from chain.normalize import LAMPORTS_PER_SOL
from conftest import FixedRandom
from derby.db import session_scope
from derby.domain import PayoutRequest, SignatureStatus
from derby.models import Payout, PayoutStatus
from derby.repositories import PayoutRepository
from derby.services.disbursement import DisbursementPipeline, PayoutService
from derby.services.errors import ConfigurationError
from derby.services.notifications import ChangeFeed
from derby.services.settlement import SettlementEngine


def _requests(count: int, amount: float = 0.1) -> list[PayoutRequest]:
    return [
        PayoutRequest(recipient=str(Keypair().pubkey()), amount=amount, reference=f"payout-{index}")
        for index in range(count)
    ]


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def pipeline(fake_chain, test_settings, sleeps):
    return DisbursementPipeline(fake_chain, settings=test_settings, sleep=sleeps.append)


def test_insufficient_balance_submits_nothing(pipeline, fake_chain, house_secret):
    fake_chain.balance = LAMPORTS_PER_SOL // 2
    outcomes = []

    summary = pipeline.disburse(house_secret, _requests(10), on_result=outcomes.append)

    assert fake_chain.submitted == []
    assert summary.successful == 0
    assert summary.failed == 10
    assert summary.signatures == []
    assert "lamports" in summary.aborted_reason
    assert len(outcomes) == 10
    assert not any(outcome.success for outcome in outcomes)


def test_balance_check_includes_fee_estimate(pipeline, fake_chain, house_secret, test_settings):
    requests = _requests(25)
    # Exactly the transfers, without the fee for two batches.
    fake_chain.balance = 25 * LAMPORTS_PER_SOL // 10

    summary = pipeline.disburse(house_secret, requests)

    assert pipeline.required_lamports(requests) == fake_chain.balance + 2 * test_settings.payout_fee_estimate_lamports
    assert summary.failed == 25
    assert fake_chain.submitted == []


def test_unreadable_balance_aborts_the_run(pipeline, fake_chain, house_secret):
    fake_chain.balance = ChainError("getBalance transport error")

    summary = pipeline.disburse(house_secret, _requests(3))

    assert summary.failed == 3
    assert summary.aborted_reason.startswith("balance check failed")
    assert fake_chain.submitted == []


def test_payouts_are_batched_sequentially(pipeline, fake_chain, house_secret, sleeps):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    outcomes = []

    summary = pipeline.disburse(house_secret, _requests(45), on_result=outcomes.append)

    assert summary.successful == 45
    assert summary.failed == 0
    assert summary.signatures == ["payout-1", "payout-2", "payout-3"]
    # One compute-price instruction plus one transfer per recipient.
    assert [len(call["instructions"]) for call in fake_chain.submitted] == [21, 21, 6]
    assert all(call["wait_for_confirmation"] for call in fake_chain.submitted)
    assert [call["recency_token"] for call in fake_chain.submitted] == ["blockhash-1", "blockhash-2", "blockhash-3"]
    # Fixed delay between successful batches, none after the last one.
    assert sleeps == [0.5, 0.5]
    assert [outcome.signature for outcome in outcomes] == ["payout-1"] * 20 + ["payout-2"] * 20 + ["payout-3"] * 5


def test_failed_batch_is_retried_with_fresh_blockhash(pipeline, fake_chain, house_secret, sleeps):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    fake_chain.submit_results = [ChainError("blockhash not found"), ChainError("timeout"), "sig-ok"]

    summary = pipeline.disburse(house_secret, _requests(3))

    assert summary.successful == 3
    assert summary.signatures == ["sig-ok"]
    assert [call["recency_token"] for call in fake_chain.submitted] == ["blockhash-1", "blockhash-2", "blockhash-3"]
    assert sleeps == [1.0, 2.0]


def test_exhausted_batch_fails_without_blocking_the_next(pipeline, fake_chain, house_secret, test_settings, sleeps):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    attempts = test_settings.payout_max_retries + 1
    fake_chain.submit_results = [ChainError("node unhealthy")] * attempts + ["sig-second"]
    outcomes = []

    summary = pipeline.disburse(house_secret, _requests(25), on_result=outcomes.append)

    assert summary.successful == 5
    assert summary.failed == 20
    assert summary.signatures == ["sig-second"]
    assert len(fake_chain.submitted) == attempts + 1
    assert sleeps == [1.0, 2.0, 4.0]
    failed = [outcome for outcome in outcomes if not outcome.success]
    assert len(failed) == 20
    assert failed[0].error == "node unhealthy"


def test_unconfirmed_batch_that_lands_is_not_sent_again(pipeline, fake_chain, house_secret, test_settings, sleeps):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    fake_chain.submit_results = [ConfirmationTimeout("not confirmed in 60s", signature="sig-slow")]
    fake_chain.statuses["sig-slow"] = [None, SignatureStatus("sig-slow", confirmation="confirmed")]
    outcomes = []

    summary = pipeline.disburse(house_secret, _requests(3), on_result=outcomes.append)

    assert len(fake_chain.submitted) == 1
    assert summary.successful == 3
    assert summary.signatures == ["sig-slow"]
    assert all(outcome.signature == "sig-slow" for outcome in outcomes)
    assert sleeps == [test_settings.confirmation_poll_seconds]


def test_unconfirmed_batch_is_resent_once_its_blockhash_expired(pipeline, fake_chain, house_secret):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    fake_chain.submit_results = [ConfirmationTimeout("not confirmed in 60s", signature="sig-dropped"), "sig-ok"]
    fake_chain.expired_tokens.add("blockhash-1")

    summary = pipeline.disburse(house_secret, _requests(3))

    assert summary.successful == 3
    assert summary.signatures == ["sig-ok"]
    assert [call["recency_token"] for call in fake_chain.submitted] == ["blockhash-1", "blockhash-2"]
    assert fake_chain.status_calls == ["sig-dropped"]


def test_unconfirmed_batch_that_failed_on_chain_is_resent(pipeline, fake_chain, house_secret):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    fake_chain.submit_results = [ConfirmationTimeout("not confirmed in 60s", signature="sig-bad"), "sig-ok"]
    fake_chain.statuses["sig-bad"] = [SignatureStatus("sig-bad", confirmation="confirmed", err={"InstructionError": [0, "x"]})]

    summary = pipeline.disburse(house_secret, _requests(2))

    assert summary.successful == 2
    assert summary.signatures == ["sig-ok"]
    assert len(fake_chain.submitted) == 2


def test_unresolved_batch_fails_without_resending(pipeline, fake_chain, house_secret, test_settings, sleeps):
    pipeline.settings = test_settings.model_copy(
        update={"payout_resolution_timeout_seconds": 3.0, "confirmation_poll_seconds": 1.0}
    )
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    fake_chain.submit_results = [ConfirmationTimeout("not confirmed in 60s", signature="sig-unknown")]
    outcomes = []

    summary = pipeline.disburse(house_secret, _requests(2), on_result=outcomes.append)

    assert len(fake_chain.submitted) == 1
    assert summary.failed == 2
    assert summary.signatures == []
    assert fake_chain.status_calls == ["sig-unknown"] * 3
    assert sleeps == [1.0, 1.0]
    assert "not resent" in outcomes[0].error

def test_callback_errors_do_not_stop_disbursement(pipeline, fake_chain, house_secret):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL

    def _explode(outcome):
        raise RuntimeError("ledger unavailable")

    summary = pipeline.disburse(house_secret, _requests(25), on_result=_explode)

    assert summary.successful == 25
    assert len(fake_chain.submitted) == 2


def test_empty_payout_list_touches_nothing(pipeline, fake_chain, house_secret):
    summary = pipeline.disburse(house_secret, [])

    assert summary.successful == summary.failed == 0
    assert fake_chain.submitted == []


# ----------------------------------------------------------------------
# Ledger wiring


@pytest.fixture
def settled_race(session_factory, test_settings, horses, make_race, add_bet, now):
    race_id = make_race(age=timedelta(seconds=301))
    add_bet(race_id, horses[0].id, 3.0)
    add_bet(race_id, horses[1].id, 1.0, wallet=str(Keypair().pubkey()))
    add_bet(race_id, horses[1].id, 1.0, wallet=str(Keypair().pubkey()))
    result = SettlementEngine(
        session_factory, settings=test_settings, rng=FixedRandom(0.2), feed=ChangeFeed(), clock=lambda: now
    ).settle(race_id)
    assert result is not None and len(result.payouts) == 2
    return race_id


@pytest.fixture
def payout_service(session_factory, pipeline, test_settings):
    return PayoutService(session_factory, pipeline, settings=test_settings, feed=ChangeFeed())


def _payout_rows(session_factory, race_id) -> list[dict]:
    with session_scope(session_factory) as session:
        rows = session.execute(select(Payout).where(Payout.race_id == race_id)).scalars().all()
        return [
            {"status": row.status, "tx_signature": row.tx_signature, "error": row.error, "attempts": row.attempts}
            for row in rows
        ]


def test_payout_run_confirms_rows(session_factory, payout_service, fake_chain, settled_race):
    fake_chain.balance = 100 * LAMPORTS_PER_SOL

    summary = payout_service.run()

    assert summary.ok
    assert summary.races == 1
    assert summary.successful == 2
    rows = _payout_rows(session_factory, settled_race)
    assert {row["status"] for row in rows} == {PayoutStatus.CONFIRMED.value}
    assert {row["tx_signature"] for row in rows} == {"payout-1"}
    assert {row["attempts"] for row in rows} == {1}

    # Nothing is pending any more, so a second run pays nobody.
    again = payout_service.run()
    assert again.races == 0
    assert len(fake_chain.submitted) == 1


def test_payout_run_marks_failures_and_retry_requeues_them(
    session_factory, payout_service, fake_chain, settled_race
):
    fake_chain.balance = 0

    summary = payout_service.run(settled_race)

    assert not summary.ok
    assert summary.failed == 2
    rows = _payout_rows(session_factory, settled_race)
    assert {row["status"] for row in rows} == {PayoutStatus.FAILED.value}
    assert all("lamports" in row["error"] for row in rows)

    assert payout_service.retry_failed(settled_race) == 2
    fake_chain.balance = 100 * LAMPORTS_PER_SOL
    retried = payout_service.run(settled_race)

    assert retried.successful == 2
    rows = _payout_rows(session_factory, settled_race)
    assert {row["status"] for row in rows} == {PayoutStatus.CONFIRMED.value}
    assert {row["attempts"] for row in rows} == {2}
    assert {row["error"] for row in rows} == {None}


def test_claimed_payouts_cannot_be_claimed_twice(session_factory, settled_race):
    with session_scope(session_factory) as session:
        repo = PayoutRepository(session)
        payout_id = repo.list_pending(settled_race)[0].id
        assert repo.claim(payout_id)
        assert not repo.claim(payout_id)


def test_payout_run_requires_house_wallet(session_factory, pipeline, test_settings):
    settings = test_settings.model_copy(update={"house_wallet_private_key": None})
    service = PayoutService(session_factory, pipeline, settings=settings, feed=ChangeFeed())

    with pytest.raises(ConfigurationError):
        service.run()
