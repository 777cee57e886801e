"""Standalone job that runs one scheduler tick, for cron hosts without HTTP."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from chain.client import SolanaRpcClient
from derby.core.config import Settings, get_settings
from derby.db import get_session_factory, init_db
from derby.services.deposits import DepositReconciler
from derby.services.scheduler import RoundScheduler, TickSummary
from derby.services.settlement import SettlementEngine


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile deposits, settle due races and open the next race once",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def _write_summary(summary: TickSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Tick summary written to {}", path)


def run_tick(settings: Settings, chain: SolanaRpcClient) -> TickSummary:
    factory = get_session_factory()
    scheduler = RoundScheduler(
        factory,
        engine=SettlementEngine(factory, settings=settings),
        reconciler=DepositReconciler(factory, chain, settings=settings),
        settings=settings,
    )
    return scheduler.tick()


def main(argv: list[str] | None = None) -> TickSummary:
    args = _parse_args(argv)
    settings = get_settings()
    init_db()

    with SolanaRpcClient(rpc_url=str(settings.solana_rpc_url)) as chain:
        summary = run_tick(settings, chain)

    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    result = main()
    sys.exit(0 if result.ok else 1)
