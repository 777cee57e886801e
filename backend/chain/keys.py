"""Keypair helpers and the remote wallet provider used for horse wallets."""

from __future__ import annotations

import json
from typing import Sequence

import base58
import httpx
from loguru import logger
from solders.compute_budget import set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from derby.domain import GeneratedWallet


def keypair_from_secret(secret: str) -> Keypair:
    """Decode a 64-byte secret key.

    Accepts base58 as exported by Phantom/PumpPortal, or the JSON byte array
    written by ``solana-keygen``.
    """

    text = secret.strip()
    if text.startswith("["):
        try:
            raw = bytes(json.loads(text))
        except (ValueError, TypeError) as exc:
            raise ValueError("secret key is not a valid JSON byte array") from exc
    else:
        raw = base58.b58decode(text)
    if len(raw) != 64:
        raise ValueError("secret key must decode to 64 bytes")
    return Keypair.from_bytes(raw)


def encode_secret(keypair: Keypair) -> str:
    return base58.b58encode(bytes(keypair)).decode("ascii")


def is_valid_address(address: str | None) -> bool:
    if not address:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def generate_local_wallet() -> GeneratedWallet:
    keypair = Keypair()
    return GeneratedWallet(
        public_key=str(keypair.pubkey()),
        private_key=encode_secret(keypair),
        source="local",
    )


def build_transfer_instructions(
    payer: Pubkey,
    transfers: Sequence[tuple[str, int]],
    *,
    priority_fee_micro_lamports: int,
) -> list[Instruction]:
    """One compute-price instruction followed by a system transfer per recipient."""

    instructions: list[Instruction] = []
    if priority_fee_micro_lamports > 0:
        instructions.append(set_compute_unit_price(priority_fee_micro_lamports))
    for recipient, lamports in transfers:
        instructions.append(
            transfer(
                TransferParams(
                    from_pubkey=payer,
                    to_pubkey=Pubkey.from_string(recipient),
                    lamports=lamports,
                )
            )
        )
    return instructions


class WalletProvider:
    """Create wallets through a PumpPortal-style HTTP endpoint."""

    def __init__(self, *, url: str | None, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def create_wallet(self) -> GeneratedWallet:
        """Return a provider wallet, or a locally generated one when the provider fails."""

        if not self.url:
            return generate_local_wallet()

        try:
            response = self._client.get(self.url)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("wallet provider returned an unexpected payload")
            public_key = payload.get("walletPublicKey")
            private_key = payload.get("privateKey")
            if not public_key or not private_key:
                raise ValueError("wallet provider response is missing keys")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Wallet provider failed ({}); generating wallet locally", exc)
            return generate_local_wallet()

        logger.info("Wallet provider created wallet {}", public_key)
        return GeneratedWallet(
            public_key=str(public_key),
            private_key=str(private_key),
            api_key=payload.get("apiKey"),
            source="provider",
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WalletProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
