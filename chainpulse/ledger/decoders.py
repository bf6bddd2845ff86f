"""
Decode raw EVM logs into canonical LedgerEvents.

Indexed parameters come from topics[1:], the rest from the ABI-encoded data
field. Token amounts are converted from wei to Decimal; addresses are
lower-cased. Anything that does not fit the signature raises DecodeError.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from chainpulse.exceptions import DecodeError
from chainpulse.ledger.abi import EventSignature
from chainpulse.ledger.base import RawLog
from chainpulse.models import EventKind, LedgerEvent

ZERO = Decimal(0)


def wei_to_decimal(value: int, decimals: int = 18) -> Decimal:
    """Exact conversion of an integer base-unit amount to token units."""
    if value < 0:
        raise DecodeError(f"Negative token amount: {value}")
    return Decimal(value).scaleb(-decimals)


def decode_args(log: RawLog, signature: EventSignature) -> dict[str, Any]:
    """Decode a log's indexed topics and data into {input name: value}."""
    if log.topic0 != signature.topic0:
        raise DecodeError(
            f"topic0 mismatch for {signature.name}",
            details={"expected": signature.topic0, "got": log.topic0},
        )

    indexed = signature.indexed_inputs
    if len(log.topics) != len(indexed) + 1:
        raise DecodeError(
            f"{signature.name} expects {len(indexed)} indexed topics, got {len(log.topics) - 1}",
            details={"tx_hash": log.tx_hash},
        )

    args: dict[str, Any] = {}
    try:
        for inp, topic in zip(indexed, log.topics[1:]):
            (args[inp.name],) = abi_decode([inp.type], bytes.fromhex(topic.removeprefix("0x")))

        data_inputs = signature.data_inputs
        if data_inputs:
            raw_data = bytes.fromhex(log.data.removeprefix("0x"))
            values = abi_decode([i.type for i in data_inputs], raw_data)
            args.update(zip((i.name for i in data_inputs), values))
    except (DecodingError, ValueError, TypeError) as e:
        raise DecodeError(
            f"Failed to decode {signature.name}: {e}",
            details={"tx_hash": log.tx_hash, "log_index": log.log_index},
        ) from e

    return {k: v.lower() if isinstance(v, str) else v for k, v in args.items()}


# ── Kind-specific field mapping ───────────────────────────────────────────────
# Each builder returns (subject, counterparty, amount, payload).

_Fields = tuple[str, str | None, Decimal, dict[str, Any]]


def _staked(a: dict[str, Any], dec: int) -> _Fields:
    return a["user"], None, wei_to_decimal(a["amount"], dec), {
        "level_id": int(a["levelId"]),
        "is_lp": bool(a["isLP"]),
    }


def _user_amount(a: dict[str, Any], dec: int) -> _Fields:
    return a["user"], None, wei_to_decimal(a["amount"], dec), {}


def _referral(a: dict[str, Any], dec: int) -> _Fields:
    # The referrer earns; the referred user is the counterparty.
    return a["referrer"], a["user"], wei_to_decimal(a["amount"], dec), {"level": int(a["level"])}


def _team(a: dict[str, Any], dec: int) -> _Fields:
    return a["user"], None, wei_to_decimal(a["amount"], dec), {"team_level": int(a["level"])}


def _node(a: dict[str, Any], dec: int) -> _Fields:
    return a["owner"], None, ZERO, {"token_id": int(a["tokenId"]), "tier": int(a["tier"])}


def _swap(a: dict[str, Any], dec: int) -> _Fields:
    return a["user"], None, wei_to_decimal(a["usdtIn"], 18), {
        "hcf_out": str(wei_to_decimal(a["hcfOut"], dec)),
    }


def _transfer(a: dict[str, Any], dec: int) -> _Fields:
    return a["from"], a["to"], wei_to_decimal(a["value"], dec), {}


def _burn(a: dict[str, Any], dec: int) -> _Fields:
    return a["from"], None, wei_to_decimal(a["value"], dec), {}


def _ownership(a: dict[str, Any], dec: int) -> _Fields:
    return a["newOwner"], a["previousOwner"], ZERO, {}


_BUILDERS: dict[EventKind, Callable[[dict[str, Any], int], _Fields]] = {
    EventKind.STAKED: _staked,
    EventKind.UNSTAKED: _user_amount,
    EventKind.REWARD_CLAIMED: _user_amount,
    EventKind.REFERRAL_PAID: _referral,
    EventKind.TEAM_LEVEL_UP: _team,
    EventKind.NODE_ACTIVATED: _node,
    EventKind.SWAPPED: _swap,
    EventKind.TRANSFER: _transfer,
    EventKind.BURNED: _burn,
    EventKind.OWNERSHIP_CHANGED: _ownership,
}


def decode_log(
    log: RawLog,
    signature: EventSignature,
    observed_at: str,
    token_decimals: int = 18,
    block_time: str | None = None,
) -> LedgerEvent:
    """
    Build the canonical LedgerEvent for one raw log.

    Raises:
        DecodeError: topic/data layout does not match `signature`.
    """
    if log.removed:
        raise DecodeError("Log was removed by a chain reorganization", details={"tx_hash": log.tx_hash})

    args = decode_args(log, signature)
    try:
        subject, counterparty, amount, payload = _BUILDERS[signature.kind](args, token_decimals)
    except (KeyError, ValueError, TypeError) as e:
        raise DecodeError(f"Unexpected fields for {signature.name}: {e}") from e

    payload = {"contract": log.address, "event": signature.name, **payload}
    if block_time:
        payload["block_time"] = block_time
    return LedgerEvent(
        kind=signature.kind,
        subject_address=subject.lower(),
        counterparty_address=counterparty.lower() if counterparty else None,
        amount=amount,
        tx_hash=log.tx_hash,
        block_number=log.block_number,
        log_index=log.log_index,
        observed_at=observed_at,
        payload=payload,
    )
