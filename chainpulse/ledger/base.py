"""Ledger source protocol and the raw log shape it emits."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, runtime_checkable

from chainpulse.exceptions import DecodeError


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise TypeError(f"expected hex string or int, got {type(value).__name__}")


@dataclass
class RawLog:
    """
    One undecoded EVM log as delivered by eth_subscribe or eth_getLogs.

    Hex quantities are already converted to ints; hashes and addresses are
    lower-case 0x strings.
    """

    address: str
    topics: list[str]
    data: str
    block_number: int
    tx_hash: str
    log_index: int
    removed: bool = False
    block_timestamp: int | None = None     # present when the node includes blockTimestamp
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_rpc(cls, entry: dict[str, Any]) -> RawLog:
        """Parse a JSON-RPC log object. Raises DecodeError on missing fields."""
        try:
            return cls(
                address=str(entry["address"]).lower(),
                topics=[str(t).lower() for t in entry.get("topics", [])],
                data=str(entry.get("data") or "0x"),
                block_number=_hex_to_int(entry["blockNumber"]),
                tx_hash=str(entry["transactionHash"]).lower(),
                log_index=_hex_to_int(entry.get("logIndex", 0)),
                removed=bool(entry.get("removed", False)),
                block_timestamp=(
                    _hex_to_int(entry["blockTimestamp"]) if entry.get("blockTimestamp") is not None else None
                ),
                raw=entry,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed log object: {e}", details={"log": entry}) from e

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None


@runtime_checkable
class LedgerSource(Protocol):
    """
    What the listener and samplers need from a ledger node.

    Implementations map network failures to TransientIOError. They do NOT
    decode logs (that's ledger.decoders) and do NOT persist anything.
    """

    async def block_number(self) -> int:
        """Current chain head."""
        ...

    async def get_logs(
        self, address: str, topics: list[str], from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        """Historical raw log objects in [from_block, to_block], ordered by block/log index."""
        ...

    def subscribe_logs(
        self,
        address: str,
        topics: list[str],
        on_subscribed: Callable[[], Awaitable[None]] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Push feed of raw log objects. Ends (or raises TransientIOError) on disconnect."""
        ...

    async def block_timestamp(self, number: int) -> int:
        """Unix timestamp of block `number`."""
        ...

    async def get_reserves(self, pair_address: str) -> tuple[int, int]:
        """Raw (reserve0, reserve1) of a constant-product pair."""
        ...

    async def failure_counts(self, n_blocks: int, watched: set[str]) -> tuple[int, int]:
        """(failed, total) transactions sent to `watched` over the last n blocks."""
        ...

    async def close(self) -> None:
        ...
