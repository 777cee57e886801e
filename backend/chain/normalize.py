from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from derby.domain import SignatureInfo, SignatureStatus, TransactionDetail

LAMPORTS_PER_SOL = 1_000_000_000


def sol_to_lamports(amount: float) -> int:
    # Truncate sub-lamport dust; the inner round absorbs float error such as 3.85 * 1e9.
    return int(round(amount * LAMPORTS_PER_SOL, 6))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def _parse_block_time(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _coerce_int_list(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    result: list[int] = []
    for value in values:
        try:
            result.append(int(value))
        except (TypeError, ValueError):
            result.append(0)
    return result


def _account_keys(message: Mapping[str, Any]) -> list[str]:
    keys = message.get("accountKeys") or message.get("staticAccountKeys") or []
    normalized: list[str] = []
    for key in keys:
        # jsonParsed encoding returns {"pubkey": ..., "signer": ...} objects.
        if isinstance(key, Mapping):
            pubkey = key.get("pubkey")
            if pubkey:
                normalized.append(str(pubkey))
        elif key:
            normalized.append(str(key))
    return normalized


def normalize_signature_info(payload: Mapping[str, Any]) -> SignatureInfo | None:
    signature = payload.get("signature")
    if not signature:
        return None
    return SignatureInfo(
        signature=str(signature),
        block_time=_parse_block_time(payload.get("blockTime")),
        err=payload.get("err"),
    )


def normalize_signature_status(signature: str, payload: Any) -> SignatureStatus | None:
    """Flatten one ``getSignatureStatuses`` entry; ``None`` when the cluster has not seen it."""

    if not isinstance(payload, Mapping):
        return None
    confirmation = payload.get("confirmationStatus")
    return SignatureStatus(
        signature=signature,
        confirmation=str(confirmation) if confirmation else None,
        err=payload.get("err"),
    )


def normalize_transaction(signature: str, payload: Mapping[str, Any] | None) -> TransactionDetail | None:
    """Flatten a ``getTransaction`` result; ``None`` when meta is not available yet."""

    if not payload:
        return None
    meta = payload.get("meta")
    if not isinstance(meta, Mapping):
        return None

    transaction = payload.get("transaction") or {}
    message = transaction.get("message") if isinstance(transaction, Mapping) else None
    if not isinstance(message, Mapping):
        return None

    account_keys = _account_keys(message)
    # Versioned transactions append address-table lookups after the static keys.
    loaded = meta.get("loadedAddresses")
    if isinstance(loaded, Mapping):
        account_keys.extend(str(key) for key in loaded.get("writable") or [])
        account_keys.extend(str(key) for key in loaded.get("readonly") or [])

    return TransactionDetail(
        signature=signature,
        account_keys=account_keys,
        pre_balances=_coerce_int_list(meta.get("preBalances")),
        post_balances=_coerce_int_list(meta.get("postBalances")),
        block_time=_parse_block_time(payload.get("blockTime")),
        err=meta.get("err"),
    )
