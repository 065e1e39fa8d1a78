"""Stream handlers: what each stream's events mean and what they cause."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from yield_reconciler.chain.abi import (
    LOAN_REPAYMENT_MADE,
    STAKED,
    UNSTAKE_REQUESTED,
    UNSTAKED,
)
from yield_reconciler.coordination.idempotency import event_fingerprint
from yield_reconciler.errors import ActionFailure
from yield_reconciler.interfaces.action import TransferAction
from yield_reconciler.interfaces.store import StateStore
from yield_reconciler.models.events import EventSpec, RawEvent
from yield_reconciler.models.records import (
    ActionResult,
    ApplyOutcome,
    DistributionRecord,
    DistributionStatus,
    Effect,
    LoanMatch,
    StakingEventRecord,
)

log = logging.getLogger(__name__)


class YieldDistributionHandler:
    """LoanRepaymentMade -> distribute the interest portion to the loan's pool."""

    events = (LOAN_REPAYMENT_MADE,)

    def __init__(
        self,
        stream: str,
        store: StateStore,
        action: TransferAction,
        action_timeout: float = 60.0,
    ) -> None:
        self._stream = stream
        self._store = store
        self._action = action
        self._action_timeout = action_timeout

    def indexed_filter(self, event: EventSpec) -> Mapping[str, Any] | None:
        return None

    async def match(self, event: RawEvent) -> Effect | None:
        loan_hash = str(event.arg("loanId")).lower()
        loan = await self._store.find_loan_by_hash(loan_hash)
        if loan is None:
            log.warning("No active loan for on-chain id %s (tx %s)",
                        loan_hash, event.transaction_hash)
            return None
        if not loan.contract_pool_id:
            log.warning("Pool %s of loan %s has no contract pool id, skipping",
                        loan.pool_id, loan.loan_id)
            return None

        interest = int(event.arg("interestAmount"))
        fingerprint = event_fingerprint(
            self._stream, event.block_number, event.transaction_hash,
            event.log_index, loan.loan_id,
        )
        return Effect(
            fingerprint=fingerprint,
            event=event,
            amount=interest,
            noop=interest <= 0,
            subject=loan,
        )

    async def apply(self, effect: Effect) -> ApplyOutcome:
        loan: LoanMatch = effect.subject
        event = effect.event
        repayment = int(event.arg("repaymentAmount"))

        record = await self._store.begin_distribution(DistributionRecord(
            fingerprint=effect.fingerprint,
            stream=self._stream,
            pool_id=loan.pool_id,
            contract_pool_id=loan.contract_pool_id,
            loan_id=loan.loan_id,
            principal_amount=repayment - effect.amount,
            interest_amount=effect.amount,
            total_amount=repayment,
            source_block_number=event.block_number,
            source_tx_hash=event.transaction_hash,
            source_log_index=event.log_index,
        ))
        if record.status == DistributionStatus.COMPLETED:
            log.warning("Distribution %s already completed, not re-applying", effect.fingerprint)
            return ApplyOutcome(
                result=ActionResult(success=True, action_ref=record.action_ref),
                attempts=record.attempts,
                duplicate=True,
            )

        metadata = {
            "fingerprint": effect.fingerprint,
            "loanId": loan.loan_id,
            "poolId": loan.pool_id,
            "sourceTxHash": event.transaction_hash,
            "sourceBlockNumber": event.block_number,
            "principalAmount": str(record.principal_amount),
        }
        try:
            result = await asyncio.wait_for(
                self._action.apply_effect(loan.contract_pool_id, effect.amount, metadata),
                timeout=self._action_timeout,
            )
        except asyncio.TimeoutError:
            result = ActionResult(success=False, error=f"timeout after {self._action_timeout}s")
        except ActionFailure as exc:
            result = ActionResult(success=False, error=str(exc))
        except Exception as exc:
            log.exception("Transfer action for loan %s raised", loan.loan_id)
            result = ActionResult(success=False, error=f"{type(exc).__name__}: {exc}")

        if result.success:
            await self._store.complete_distribution(effect.fingerprint, result.action_ref)
            log.info("Distributed %d interest for loan %s (ref %s)",
                     effect.amount, loan.loan_id, result.action_ref)
        else:
            await self._store.fail_distribution(effect.fingerprint, result.error or "unknown error")
            log.error("Distribution for loan %s failed: %s", loan.loan_id, result.error)
        return ApplyOutcome(result=result, attempts=record.attempts)


# StakingPool event name -> stored event type
_STAKING_EVENT_TYPES = {
    STAKED.name: "STAKED",
    UNSTAKE_REQUESTED.name: "UNSTAKE_REQUESTED",
    UNSTAKED.name: "UNSTAKED",
}


def _unix_to_iso(value: Any) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


class StakingEventsHandler:
    """Persists StakingPool Staked / UnstakeRequested / Unstaked events."""

    events = (STAKED, UNSTAKE_REQUESTED, UNSTAKED)

    def __init__(
        self,
        stream: str,
        store: StateStore,
        pool_filter: str | None = None,
    ) -> None:
        self._stream = stream
        self._store = store
        self._pool_filter = pool_filter

    def indexed_filter(self, event: EventSpec) -> Mapping[str, Any] | None:
        if self._pool_filter:
            return {"poolId": self._pool_filter}
        return None

    async def match(self, event: RawEvent) -> Effect | None:
        if event.event_name not in _STAKING_EVENT_TYPES:
            return None
        fingerprint = event_fingerprint(
            self._stream, event.block_number, event.transaction_hash,
            event.log_index, event.event_name,
        )
        return Effect(fingerprint=fingerprint, event=event, amount=int(event.arg("amount")))

    async def apply(self, effect: Effect) -> ApplyOutcome:
        event = effect.event
        args = event.named_args()
        record = StakingEventRecord(
            event_type=_STAKING_EVENT_TYPES[event.event_name],
            pool_id=str(args["poolId"]),
            user_address=str(args["user"]),
            amount=effect.amount,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            shares=args.get("shares"),
            fee=args.get("fee"),
            unlock_time=_unix_to_iso(args.get("unlockTime")),
        )
        inserted = await self._store.save_staking_event(record)
        if inserted:
            log.debug("Indexed %s event for %s in block %d",
                      record.event_type, record.user_address, record.block_number)
        return ApplyOutcome(
            result=ActionResult(success=True, action_ref=f"{event.transaction_hash}:{event.log_index}"),
            duplicate=not inserted,
        )
