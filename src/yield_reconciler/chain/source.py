"""EVM event source - reads contract logs over JSON-RPC with web3."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Mapping, TypeVar

import aiohttp
import eth_abi.abi
import eth_abi.exceptions
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import Web3Exception, Web3RPCError
from web3.types import FilterParams, LogReceipt

from yield_reconciler.chain.abi import encode_topic, event_topic, normalize_value
from yield_reconciler.errors import RpcRejected, RpcTransient
from yield_reconciler.models.events import EventSpec, RawEvent

log = logging.getLogger(__name__)

T = TypeVar("T")

# Provider messages that mean "the request itself is unacceptable"
_REJECTION_MARKERS = (
    "block range",
    "range is too large",
    "range too large",
    "exceed",
    "more than",
    "too many",
    "limit",
    "-32005",
    "-32602",
    "invalid params",
)


def classify_rpc_error(exc: BaseException) -> RpcTransient | RpcRejected:
    """Map a provider failure to RpcRejected (needs a smaller request) or RpcTransient."""
    if isinstance(exc, Web3RPCError):
        text = str(exc).lower()
        if any(marker in text for marker in _REJECTION_MARKERS):
            return RpcRejected(str(exc))
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return RpcTransient("RPC request timed out")
    return RpcTransient(str(exc) or type(exc).__name__)


def decode_log(event: EventSpec, entry: LogReceipt | Mapping[str, Any]) -> RawEvent:
    """Decode one log entry of a known event into a RawEvent.

    Indexed arguments come from topics[1:], the rest from the data field.
    Arguments are returned in ABI order.
    """
    topics = [HexBytes(t) for t in entry["topics"]]
    indexed = [i for i in event.inputs if i.indexed]
    plain = [i for i in event.inputs if not i.indexed]
    if len(topics) != len(indexed) + 1:
        raise ValueError(
            f"{event.name}: expected {len(indexed) + 1} topics, got {len(topics)}"
        )

    values: dict[str, Any] = {}
    for item, topic in zip(indexed, topics[1:]):
        values[item.name] = eth_abi.abi.decode([item.type], bytes(topic))[0]
    if plain:
        decoded = eth_abi.abi.decode([i.type for i in plain], bytes(HexBytes(entry["data"])))
        values.update(zip((i.name for i in plain), decoded))

    return RawEvent(
        contract_address=str(entry["address"]).lower(),
        event_name=event.name,
        block_number=int(entry["blockNumber"]),
        transaction_hash=Web3.to_hex(HexBytes(entry["transactionHash"])),
        log_index=int(entry["logIndex"]),
        args=tuple(normalize_value(values[name]) for name in event.arg_names),
        arg_names=event.arg_names,
    )


def build_topics(
    event: EventSpec, indexed_filter: Mapping[str, Any] | None = None,
) -> list[str | None]:
    """topic0 followed by encoded indexed filter values; unfiltered slots are None."""
    topics: list[str | None] = [event_topic(event)]
    indexed_filter = indexed_filter or {}
    unknown = set(indexed_filter) - {i.name for i in event.inputs if i.indexed}
    if unknown:
        raise ValueError(f"{event.name}: not indexed: {', '.join(sorted(unknown))}")
    for item in (i for i in event.inputs if i.indexed):
        value = indexed_filter.get(item.name)
        topics.append(None if value is None else encode_topic(item.type, value))
    while topics[-1] is None:
        topics.pop()
    return topics


class Web3EventSource:
    """Reads the current head and decoded contract logs from an EVM node.

    Ranges are inclusive on both ends. Every call is bounded by ``timeout``.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._timeout = timeout

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (Web3Exception, aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise classify_rpc_error(exc) from exc

    async def get_current_head(self) -> int:
        async def _head() -> int:
            return await self._w3.eth.block_number

        head = await self._call(_head())
        return int(head)

    async def query_logs(
        self,
        contract: str,
        event: EventSpec,
        from_block: int,
        to_block: int,
        indexed_filter: Mapping[str, Any] | None = None,
    ) -> list[RawEvent]:
        if to_block < from_block:
            raise ValueError("to_block cannot be earlier than from_block")

        params = FilterParams(
            address=Web3.to_checksum_address(contract),
            fromBlock=from_block,
            toBlock=to_block,
            topics=build_topics(event, indexed_filter),
        )
        log.debug(
            "Fetching %s logs for range %d-%d (%d blocks)",
            event.name, from_block, to_block, to_block - from_block + 1,
        )
        entries = await self._call(self._w3.eth.get_logs(params))

        events: list[RawEvent] = []
        for entry in entries:
            if entry.get("removed"):
                continue
            try:
                events.append(decode_log(event, entry))
            except (ValueError, eth_abi.exceptions.DecodingError) as exc:
                # a log that matches topic0 but not the ABI is not ours to handle
                log.warning(
                    "Could not decode %s log in tx %s: %s",
                    event.name, Web3.to_hex(HexBytes(entry["transactionHash"])), exc,
                )
        return events
