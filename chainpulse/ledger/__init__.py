"""Ledger access: event signature table, log decoders and the JSON-RPC source."""

from chainpulse.ledger.abi import EVENT_SIGNATURES, EventSignature, signatures_for
from chainpulse.ledger.base import LedgerSource, RawLog
from chainpulse.ledger.decoders import decode_log, wei_to_decimal

__all__ = [
    "EVENT_SIGNATURES",
    "EventSignature",
    "LedgerSource",
    "RawLog",
    "decode_log",
    "signatures_for",
    "wei_to_decimal",
]
