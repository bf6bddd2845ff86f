"""
Event signature table for the watched contracts.

Each entry maps one (contract role, solidity event) pair to a canonical
EventKind. topic0 is keccak256 of the canonical signature. Contract roles
match the keys of `ledger.contracts` in config.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property

from eth_utils import keccak

from chainpulse.models import EventKind

# getReserves() selector on constant-product pairs
GET_RESERVES_SELECTOR = "0x0902f1ac"


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSignature:
    """One solidity event on one watched contract."""

    contract: str
    name: str
    kind: EventKind
    inputs: tuple[EventInput, ...]

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @cached_property
    def topic0(self) -> str:
        return "0x" + keccak(text=self.canonical).hex()

    @property
    def indexed_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)

    @property
    def subscription(self) -> str:
        """Watermark key for this (contract, event) pair."""
        return f"{self.contract}:{self.name}"


def _sig(contract: str, name: str, kind: EventKind, *inputs: tuple[str, str, bool]) -> EventSignature:
    return EventSignature(
        contract=contract,
        name=name,
        kind=kind,
        inputs=tuple(EventInput(n, t, idx) for n, t, idx in inputs),
    )


EVENT_SIGNATURES: tuple[EventSignature, ...] = (
    _sig(
        "staking", "Staked", EventKind.STAKED,
        ("user", "address", True),
        ("amount", "uint256", False),
        ("levelId", "uint256", False),
        ("isLP", "bool", False),
    ),
    _sig(
        "staking", "Withdrawn", EventKind.UNSTAKED,
        ("user", "address", True),
        ("amount", "uint256", False),
    ),
    _sig(
        "staking", "RewardsClaimed", EventKind.REWARD_CLAIMED,
        ("user", "address", True),
        ("amount", "uint256", False),
    ),
    _sig(
        "referral", "ReferralRewardDistributed", EventKind.REFERRAL_PAID,
        ("user", "address", True),
        ("referrer", "address", True),
        ("level", "uint256", False),
        ("amount", "uint256", False),
    ),
    _sig(
        "referral", "TeamRewardDistributed", EventKind.TEAM_LEVEL_UP,
        ("user", "address", True),
        ("level", "uint256", False),
        ("amount", "uint256", False),
    ),
    _sig(
        "node_nft", "NodeActivated", EventKind.NODE_ACTIVATED,
        ("tokenId", "uint256", True),
        ("owner", "address", True),
        ("tier", "uint256", False),
    ),
    _sig(
        "exchange", "SwapUSDTToHCF", EventKind.SWAPPED,
        ("user", "address", True),
        ("usdtIn", "uint256", False),
        ("hcfOut", "uint256", False),
    ),
    _sig(
        "token", "Transfer", EventKind.TRANSFER,
        ("from", "address", True),
        ("to", "address", True),
        ("value", "uint256", False),
    ),
    _sig(
        "token", "Burn", EventKind.BURNED,
        ("from", "address", True),
        ("value", "uint256", False),
    ),
    *(
        _sig(
            contract, "OwnershipTransferred", EventKind.OWNERSHIP_CHANGED,
            ("previousOwner", "address", True),
            ("newOwner", "address", True),
        )
        for contract in ("token", "staking", "referral", "exchange", "node_nft")
    ),
)


def signatures_for(contracts: dict[str, str]) -> list[EventSignature]:
    """Signatures whose contract role has a configured address."""
    return [s for s in EVENT_SIGNATURES if contracts.get(s.contract)]


def find_signature(topic0: str, contract: str | None = None) -> EventSignature | None:
    topic0 = topic0.lower()
    for sig in EVENT_SIGNATURES:
        if sig.topic0 == topic0 and (contract is None or sig.contract == contract):
            return sig
    return None
