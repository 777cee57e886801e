"""Standalone job that registers horses and (re)creates their receiving wallets."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from loguru import logger

from chain.keys import WalletProvider
from derby.core.config import get_settings
from derby.db import get_session_factory, init_db
from derby.services.wallets import WalletInitResult, WalletService


def _parse_horse(value: str) -> tuple[str, str | None, str | None]:
    name, _, rest = value.partition(":")
    color, _, emoji = rest.partition(":")
    if not name.strip():
        raise argparse.ArgumentTypeError("horse name must not be empty")
    return name.strip(), color.strip() or None, emoji.strip() or None


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register horses and initialize their receiving wallets")
    parser.add_argument(
        "--add-horse",
        dest="horses",
        action="append",
        type=_parse_horse,
        default=[],
        metavar="NAME[:COLOR[:EMOJI]]",
        help="Register a horse before initializing wallets (can be provided multiple times)",
    )
    parser.add_argument(
        "--only-placeholders",
        action="store_true",
        help="Leave horses that already have a valid wallet untouched",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> list[WalletInitResult]:
    args = _parse_args(argv)
    settings = get_settings()
    init_db()

    factory = get_session_factory()
    url = str(settings.wallet_provider_url) if settings.wallet_provider_url else None
    with WalletProvider(url=url, timeout=settings.rpc_timeout_seconds) as provider:
        service = WalletService(factory, provider)
        if args.horses:
            created = service.add_horses(args.horses)
            logger.info("Registered {} new horse(s)", len(created))
        results = service.initialize(only_placeholders=args.only_placeholders)

    failed = [result for result in results if not result.success]
    logger.info("Initialized {} wallet(s), {} failed", len(results) - len(failed), len(failed))
    if args.summary_path:
        args.summary_path.parent.mkdir(parents=True, exist_ok=True)
        # Public addresses only; private keys stay in the database.
        args.summary_path.write_text(json.dumps([result.to_dict() for result in results], indent=2))
    return results


if __name__ == "__main__":
    main()
