"""Event ABIs of the LoanPool and StakingPool contracts, plus topic helpers."""

from __future__ import annotations

from typing import Any

import eth_abi.abi
from eth_utils.conversions import to_bytes, to_hex
from eth_utils.crypto import keccak

from yield_reconciler.models.events import EventInput, EventSpec

# LoanPool
LOAN_REPAYMENT_MADE = EventSpec(
    name="LoanRepaymentMade",
    inputs=(
        EventInput("loanId", "bytes32"),
        EventInput("borrower", "address"),
        EventInput("repaymentAmount", "uint256"),
        EventInput("interestAmount", "uint256"),
    ),
)

# StakingPool
STAKED = EventSpec(
    name="Staked",
    inputs=(
        EventInput("poolId", "bytes32", indexed=True),
        EventInput("user", "address", indexed=True),
        EventInput("amount", "uint256"),
        EventInput("shares", "uint256"),
        EventInput("fee", "uint256"),
    ),
)

UNSTAKE_REQUESTED = EventSpec(
    name="UnstakeRequested",
    inputs=(
        EventInput("poolId", "bytes32", indexed=True),
        EventInput("user", "address", indexed=True),
        EventInput("amount", "uint256"),
        EventInput("unlockTime", "uint256"),
    ),
)

UNSTAKED = EventSpec(
    name="Unstaked",
    inputs=(
        EventInput("poolId", "bytes32", indexed=True),
        EventInput("user", "address", indexed=True),
        EventInput("amount", "uint256"),
    ),
)


def event_topic(event: EventSpec) -> str:
    """topic0 of an event: keccak256 of its canonical signature."""
    return to_hex(keccak(text=event.signature))


def hash_loan_id(loan_id: str) -> str:
    """On-chain loan id for an internal loan id (keccak256 of its UTF-8 bytes)."""
    return to_hex(keccak(text=loan_id)).lower()


def encode_topic(abi_type: str, value: Any) -> str:
    """ABI-encode one indexed argument into a 32-byte topic."""
    if isinstance(value, str) and value.startswith("0x") and abi_type.startswith("bytes"):
        value = to_bytes(hexstr=value)
    return to_hex(eth_abi.abi.encode([abi_type], [value]))


def normalize_value(value: Any) -> Any:
    """Decoded ABI values as stored: bytes become 0x hex, addresses lowercase."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if isinstance(value, str) and value.startswith("0x"):
        return value.lower()
    return value
