from __future__ import annotations

import base64
import itertools
import time
from typing import Any, Callable, Sequence

import httpx
from loguru import logger
from solders.hash import Hash
from solders.message import Message
from solders.transaction import Transaction

from derby.core.config import settings
from derby.domain import SignatureInfo, SignatureStatus, TransactionDetail

from .base import ChainError, ConfirmationTimeout
from .keys import keypair_from_secret
from .normalize import normalize_signature_info, normalize_signature_status, normalize_transaction


class SolanaRpcClient:
    """Thin wrapper around the Solana JSON-RPC methods the engine relies on."""

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        commitment: str | None = None,
        timeout: float | None = None,
        confirmation_timeout: float | None = None,
        confirmation_poll: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url or str(settings.solana_rpc_url)
        self.commitment = commitment or settings.rpc_commitment
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.confirmation_timeout = confirmation_timeout or settings.confirmation_timeout_seconds
        self.confirmation_poll = confirmation_poll or settings.confirmation_poll_seconds
        self._sleep = sleep
        self._ids = itertools.count(1)
        self.client = httpx.Client(timeout=self.timeout, transport=transport)

    def _call(self, method: str, params: list[Any]) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        logger.debug("Solana RPC {} id={}", method, request_id)
        try:
            response = self.client.post(self.rpc_url, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise ChainError(f"{method} transport error: {exc}") from exc
        except ValueError as exc:
            raise ChainError(f"{method} returned invalid JSON") from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            data = error.get("data") if isinstance(error, dict) else None
            raise ChainError(f"{method} failed: {message}", code=code, data=data)
        if not isinstance(payload, dict) or "result" not in payload:
            raise ChainError(f"{method} returned no result")
        return payload["result"]

    # ------------------------------------------------------------------
    # Reads

    def get_recent_transaction_refs(self, address: str, limit: int) -> list[SignatureInfo]:
        result = self._call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        refs: list[SignatureInfo] = []
        for entry in result or []:
            info = normalize_signature_info(entry) if isinstance(entry, dict) else None
            if info is not None:
                refs.append(info)
        return refs

    def get_transaction_detail(self, signature: str) -> TransactionDetail | None:
        result = self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        return normalize_transaction(signature, result)

    def get_balance(self, address: str) -> int:
        result = self._call("getBalance", [address, {"commitment": self.commitment}])
        value = result.get("value") if isinstance(result, dict) else result
        return int(value or 0)

    def get_recency_token(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        try:
            return str(result["value"]["blockhash"])
        except (KeyError, TypeError) as exc:
            raise ChainError("getLatestBlockhash returned no blockhash") from exc

    def is_recency_token_valid(self, recency_token: str) -> bool:
        result = self._call("isBlockhashValid", [recency_token, {"commitment": self.commitment}])
        value = result.get("value") if isinstance(result, dict) else result
        return bool(value)

    def get_signature_status(self, signature: str, *, search_history: bool = True) -> SignatureStatus | None:
        result = self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_history}],
        )
        statuses = result.get("value") if isinstance(result, dict) else None
        return normalize_signature_status(signature, statuses[0] if statuses else None)

    # ------------------------------------------------------------------
    # Writes

    def submit_transaction(
        self,
        signer_key: str,
        instructions: Sequence[Any],
        *,
        recency_token: str,
        wait_for_confirmation: bool = True,
    ) -> str:
        keypair = keypair_from_secret(signer_key)
        blockhash = Hash.from_string(recency_token)
        message = Message.new_with_blockhash(list(instructions), keypair.pubkey(), blockhash)
        transaction = Transaction([keypair], message, blockhash)
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")

        signature = str(
            self._call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        )
        logger.info("Submitted transaction {}", signature)
        if wait_for_confirmation:
            self.confirm_transaction(signature)
        return signature

    def confirm_transaction(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            status = self.get_signature_status(signature, search_history=False)
            if status is not None:
                if status.err:
                    raise ChainError(f"transaction {signature} failed: {status.err}", data=status.err)
                if status.confirmed:
                    return
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    f"transaction {signature} not confirmed in {self.confirmation_timeout}s",
                    signature=signature,
                )
            self._sleep(self.confirmation_poll)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SolanaRpcClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
