"""Standalone job that pays out settled races from the house wallet."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from chain.client import SolanaRpcClient
from derby.core.config import get_settings
from derby.db import get_session_factory, init_db
from derby.services.disbursement import DisbursementPipeline, PayoutRunSummary, PayoutService


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Disburse pending payouts for finished races")
    parser.add_argument("--race-id", default=None, help="Only pay out this race")
    parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Requeue the race's failed payouts before paying (requires --race-id)",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    args = parser.parse_args(argv)
    if args.retry_failed and not args.race_id:
        parser.error("--retry-failed requires --race-id")
    return args


def _write_summary(summary: PayoutRunSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Payout summary written to {}", path)


def main(argv: list[str] | None = None) -> PayoutRunSummary:
    args = _parse_args(argv)
    settings = get_settings()
    init_db()

    factory = get_session_factory()
    with SolanaRpcClient(rpc_url=str(settings.solana_rpc_url)) as chain:
        service = PayoutService(factory, DisbursementPipeline(chain, settings=settings), settings=settings)
        if args.retry_failed:
            service.retry_failed(args.race_id)
        summary = service.run(args.race_id)

    logger.info(
        "Payout run: {} race(s), {} succeeded, {} failed",
        summary.races,
        summary.successful,
        summary.failed,
    )
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    result = main()
    sys.exit(0 if result.ok else 1)
