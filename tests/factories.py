"""Synthetic event and record factories for testing."""

from __future__ import annotations

import hashlib

from yield_reconciler.chain.abi import (
    LOAN_REPAYMENT_MADE,
    STAKED,
    UNSTAKE_REQUESTED,
    UNSTAKED,
    hash_loan_id,
)
from yield_reconciler.models.events import RawEvent
from yield_reconciler.models.records import LoanMatch

LOAN_POOL_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
STAKING_POOL_ADDRESS = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
CONTRACT_POOL_ID = "0x" + "11" * 32
OTHER_CONTRACT_POOL_ID = "0x" + "22" * 32
BORROWER = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
STAKER = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"


def make_tx_hash(block_number: int, log_index: int = 0, salt: str = "") -> str:
    material = f"{block_number}:{log_index}:{salt}".encode("utf-8")
    return "0x" + hashlib.sha256(material).hexdigest()


def make_loan(
    loan_id: str = "loan-1",
    pool_id: str = "pool-1",
    contract_pool_id: str | None = CONTRACT_POOL_ID,
    status: str = "ACTIVE",
) -> LoanMatch:
    return LoanMatch(
        loan_id=loan_id,
        pool_id=pool_id,
        contract_pool_id=contract_pool_id,
        status=status,
        loan_hash=hash_loan_id(loan_id),
    )


def make_repayment_event(
    loan_id: str = "loan-1",
    block_number: int = 130,
    log_index: int = 0,
    repayment_amount: int = 10_500,
    interest_amount: int = 500,
    transaction_hash: str | None = None,
    borrower: str = BORROWER,
) -> RawEvent:
    return RawEvent(
        contract_address=LOAN_POOL_ADDRESS,
        event_name=LOAN_REPAYMENT_MADE.name,
        block_number=block_number,
        transaction_hash=transaction_hash or make_tx_hash(block_number, log_index),
        log_index=log_index,
        args=(hash_loan_id(loan_id), borrower, repayment_amount, interest_amount),
        arg_names=LOAN_REPAYMENT_MADE.arg_names,
    )


def make_staked_event(
    block_number: int = 120,
    log_index: int = 0,
    pool_id: str = CONTRACT_POOL_ID,
    user: str = STAKER,
    amount: int = 1_000_000,
    shares: int = 990_000,
    fee: int = 10_000,
) -> RawEvent:
    return RawEvent(
        contract_address=STAKING_POOL_ADDRESS,
        event_name=STAKED.name,
        block_number=block_number,
        transaction_hash=make_tx_hash(block_number, log_index, "staked"),
        log_index=log_index,
        args=(pool_id, user, amount, shares, fee),
        arg_names=STAKED.arg_names,
    )


def make_unstake_requested_event(
    block_number: int = 125,
    log_index: int = 0,
    pool_id: str = CONTRACT_POOL_ID,
    user: str = STAKER,
    amount: int = 400_000,
    unlock_time: int = 1_767_225_600,  # 2026-01-01T00:00:00Z
) -> RawEvent:
    return RawEvent(
        contract_address=STAKING_POOL_ADDRESS,
        event_name=UNSTAKE_REQUESTED.name,
        block_number=block_number,
        transaction_hash=make_tx_hash(block_number, log_index, "requested"),
        log_index=log_index,
        args=(pool_id, user, amount, unlock_time),
        arg_names=UNSTAKE_REQUESTED.arg_names,
    )


def make_unstaked_event(
    block_number: int = 140,
    log_index: int = 0,
    pool_id: str = CONTRACT_POOL_ID,
    user: str = STAKER,
    amount: int = 400_000,
) -> RawEvent:
    return RawEvent(
        contract_address=STAKING_POOL_ADDRESS,
        event_name=UNSTAKED.name,
        block_number=block_number,
        transaction_hash=make_tx_hash(block_number, log_index, "unstaked"),
        log_index=log_index,
        args=(pool_id, user, amount),
        arg_names=UNSTAKED.arg_names,
    )
