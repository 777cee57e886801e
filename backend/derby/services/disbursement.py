"""Batched on-chain payouts and the ledger bookkeeping around them."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from solders.pubkey import Pubkey
from sqlalchemy.orm import Session, sessionmaker

from chain.base import ChainClient, ConfirmationTimeout
from chain.keys import build_transfer_instructions, keypair_from_secret
from chain.normalize import sol_to_lamports
from derby.core.config import Settings, get_settings
from derby.db import session_scope
from derby.domain import DisbursementSummary, PayoutOutcome, PayoutRequest
from derby.repositories import PayoutRepository

from .errors import ConfigurationError, InsufficientFundsError
from .notifications import ChangeFeed, change_feed

OutcomeCallback = Callable[[PayoutOutcome], None]


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


class DisbursementPipeline:
    """Pay a list of recipients from one wallet, one batch transaction at a time.

    Batches are never submitted concurrently: parallel transactions from the
    same payer can conflict on ordering. A failed batch is retried with
    backoff and then reported failed; later batches still go out.
    """

    def __init__(
        self,
        chain: ChainClient,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._chain = chain
        self._sleep = sleep

    def required_lamports(self, payouts: Sequence[PayoutRequest]) -> int:
        batch_count = -(-len(payouts) // self.settings.payout_max_transfers_per_tx)
        transfers = sum(sol_to_lamports(payout.amount) for payout in payouts)
        return transfers + batch_count * self.settings.payout_fee_estimate_lamports

    def disburse(
        self,
        signer_key: str,
        payouts: Sequence[PayoutRequest],
        on_result: OutcomeCallback | None = None,
    ) -> DisbursementSummary:
        summary = DisbursementSummary()
        if not payouts:
            return summary

        payer = keypair_from_secret(signer_key).pubkey()
        batches = list(_chunked(list(payouts), self.settings.payout_max_transfers_per_tx))
        required = self.required_lamports(payouts)

        try:
            balance = self._chain.get_balance(str(payer))
        except Exception as exc:  # noqa: BLE001 - no balance, no payouts
            logger.exception("Could not read paying wallet balance; aborting {} payouts", len(payouts))
            return self._abort(summary, payouts, f"balance check failed: {exc}", on_result)

        if balance < required:
            error = InsufficientFundsError(balance=balance, required=required)
            logger.error("Aborting disbursement of {} payouts: {}", len(payouts), error)
            return self._abort(summary, payouts, str(error), on_result)

        logger.info(
            "Disbursing {} payouts in {} batch(es); balance={} required={}",
            len(payouts),
            len(batches),
            balance,
            required,
        )

        for index, batch in enumerate(batches, start=1):
            signature, error = self._send_batch(signer_key, payer, batch, index, len(batches))
            if signature is not None:
                summary.successful += len(batch)
                summary.signatures.append(signature)
                for payout in batch:
                    self._report(on_result, PayoutOutcome(request=payout, success=True, signature=signature))
                if index < len(batches) and self.settings.payout_batch_delay_seconds > 0:
                    self._sleep(self.settings.payout_batch_delay_seconds)
            else:
                summary.failed += len(batch)
                for payout in batch:
                    self._report(on_result, PayoutOutcome(request=payout, success=False, error=error))

        logger.info(
            "Disbursement done: {} succeeded, {} failed, {} transaction(s)",
            summary.successful,
            summary.failed,
            len(summary.signatures),
        )
        return summary

    def _send_batch(
        self,
        signer_key: str,
        payer: Pubkey,
        batch: Sequence[PayoutRequest],
        index: int,
        total: int,
    ) -> tuple[str | None, str | None]:
        transfers = [(payout.recipient, sol_to_lamports(payout.amount)) for payout in batch]
        attempts = self.settings.payout_max_retries + 1
        last_error: str | None = None

        for attempt in range(1, attempts + 1):
            recency_token = ""
            try:
                # Blockhashes expire within about a minute; fetch one per attempt.
                recency_token = self._chain.get_recency_token()
                instructions = build_transfer_instructions(
                    payer,
                    transfers,
                    priority_fee_micro_lamports=self.settings.payout_priority_fee_micro_lamports,
                )
                signature = self._chain.submit_transaction(
                    signer_key,
                    instructions,
                    recency_token=recency_token,
                    wait_for_confirmation=True,
                )
            except ConfirmationTimeout as exc:
                # The batch was sent and may still land; never resend before that is ruled out.
                logger.warning("Payout batch {}/{} attempt {}/{} unconfirmed: {}", index, total, attempt, attempts, exc)
                landed, unresolved = self._resolve_in_flight(exc.signature, recency_token)
                if landed:
                    logger.info("Payout batch {}/{} landed late: signature={}", index, total, exc.signature)
                    return exc.signature, None
                if unresolved:
                    logger.error("Payout batch {}/{} not resent: {}", index, total, unresolved)
                    return None, unresolved
                last_error = str(exc)
                continue
            except Exception as exc:  # noqa: BLE001 - retried, then reported per payout
                last_error = str(exc) or exc.__class__.__name__
                retryable = attempt < attempts
                logger.warning(
                    "Payout batch {}/{} attempt {}/{} failed: {} retryable={}",
                    index,
                    total,
                    attempt,
                    attempts,
                    last_error,
                    retryable,
                )
                if retryable:
                    self._sleep(self.settings.payout_backoff_delay(attempt))
                continue

            logger.info("Payout batch {}/{} confirmed: {} transfers, signature={}", index, total, len(batch), signature)
            return signature, None

        logger.error("Payout batch {}/{} failed after {} attempts", index, total, attempts)
        return None, last_error

    def _resolve_in_flight(self, signature: str, recency_token: str) -> tuple[bool, str | None]:
        """Wait until a timed-out transaction has either landed or can no longer land.

        Returns ``(True, None)`` when it confirmed, ``(False, None)`` when
        resending is safe (it failed on chain, or its blockhash expired without
        it being seen), and ``(False, reason)`` when neither could be
        established in time.
        """

        poll = self.settings.confirmation_poll_seconds
        checks = max(1, math.ceil(self.settings.payout_resolution_timeout_seconds / poll))
        for check in range(1, checks + 1):
            try:
                # Expiry is read first so a missing status afterwards is final.
                expired = not self._chain.is_recency_token_valid(recency_token)
                status = self._chain.get_signature_status(signature)
            except Exception as exc:  # noqa: BLE001 - keep polling until the deadline
                logger.warning("Status lookup {}/{} for {} failed: {}", check, checks, signature, exc)
            else:
                if status is not None and status.err:
                    logger.warning("Transaction {} failed on chain: {}", signature, status.err)
                    return False, None
                if status is not None and status.confirmed:
                    return True, None
                if status is None and expired:
                    logger.info("Transaction {} expired without landing; safe to resend", signature)
                    return False, None
            if check < checks:
                self._sleep(poll)
        return False, f"transaction {signature} still unresolved; not resent to avoid paying twice"

    def _abort(
        self,
        summary: DisbursementSummary,
        payouts: Sequence[PayoutRequest],
        reason: str,
        on_result: OutcomeCallback | None,
    ) -> DisbursementSummary:
        summary.failed = len(payouts)
        summary.aborted_reason = reason
        for payout in payouts:
            self._report(on_result, PayoutOutcome(request=payout, success=False, error=reason))
        return summary

    @staticmethod
    def _report(on_result: OutcomeCallback | None, outcome: PayoutOutcome) -> None:
        if on_result is None:
            return
        try:
            on_result(outcome)
        except Exception:  # noqa: BLE001 - the transfer already happened; keep going
            logger.exception(
                "Recording payout outcome failed for {} (success={}, signature={})",
                outcome.request.reference,
                outcome.success,
                outcome.signature,
            )


@dataclass(slots=True)
class PayoutRunSummary:
    races: int = 0
    claimed: int = 0
    successful: int = 0
    failed: int = 0
    signatures: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "races": self.races,
            "claimed": self.claimed,
            "successful": self.successful,
            "failed": self.failed,
            "signatures": list(self.signatures),
            "errors": self.errors,
        }


class PayoutService:
    """Drive pending payout rows through the disbursement pipeline.

    Rows are claimed (pending -> sent) before any transfer and end as
    confirmed or failed. Failed rows wait for an operator to call
    :meth:`retry_failed`.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        pipeline: DisbursementPipeline,
        *,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._feed = feed or change_feed

    def run(self, race_id: str | None = None) -> PayoutRunSummary:
        signer_key = self.settings.house_wallet_private_key
        if not signer_key:
            raise ConfigurationError("HOUSE_WALLET_PRIVATE_KEY is not configured")

        summary = PayoutRunSummary()
        if race_id:
            race_ids = [race_id]
        else:
            with session_scope(self._session_factory) as session:
                race_ids = PayoutRepository(session).races_with_pending()

        for current in race_ids:
            summary.races += 1
            try:
                self._run_race(signer_key, current, summary)
            except Exception as exc:  # noqa: BLE001 - one race must not block the others
                logger.exception("Payout run failed for race {}", current)
                summary.errors.append({"race_id": current, "reason": str(exc)})
        return summary

    def retry_failed(self, race_id: str) -> int:
        with session_scope(self._session_factory) as session:
            reset = PayoutRepository(session).reset_failed(race_id)
        logger.info("Race {}: {} failed payouts queued for retry", race_id, reset)
        return reset

    def _run_race(self, signer_key: str, race_id: str, summary: PayoutRunSummary) -> None:
        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            requests = [
                PayoutRequest(recipient=payout.recipient_wallet, amount=float(payout.amount), reference=payout.id)
                for payout in repo.list_pending(race_id)
                if repo.claim(payout.id)
            ]
        if not requests:
            return

        summary.claimed += len(requests)
        logger.info("Race {}: paying {} winners", race_id, len(requests))
        result = self._pipeline.disburse(signer_key, requests, on_result=self._record_outcome)
        summary.successful += result.successful
        summary.failed += result.failed
        summary.signatures.extend(result.signatures)
        self._feed.publish("race.paid", {"race_id": race_id, **result.to_dict()})

    def _record_outcome(self, outcome: PayoutOutcome) -> None:
        payout_id = outcome.request.reference
        if payout_id is None:
            return
        with session_scope(self._session_factory) as session:
            repo = PayoutRepository(session)
            if outcome.success and outcome.signature:
                repo.mark_confirmed(payout_id, tx_signature=outcome.signature)
            else:
                repo.mark_failed(payout_id, error=outcome.error)
