"""Chain event models produced by the event source."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EventInput:
    """One argument of an event ABI."""

    name: str
    type: str  # solidity ABI type, e.g. "uint256"
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """Event ABI: enough to build topic filters and decode log data."""

    name: str
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def arg_names(self) -> tuple[str, ...]:
        return tuple(i.name for i in self.inputs)

    def input(self, name: str) -> EventInput:
        for item in self.inputs:
            if item.name == name:
                return item
        raise KeyError(name)


@dataclass(frozen=True)
class RawEvent:
    """A decoded log entry. Ephemeral, never persisted as-is."""

    contract_address: str
    event_name: str
    block_number: int
    transaction_hash: str  # 0x-prefixed hex
    log_index: int
    args: tuple[Any, ...]  # in ABI order
    arg_names: tuple[str, ...] = ()

    def arg(self, name: str) -> Any:
        return self.args[self.arg_names.index(name)]

    def named_args(self) -> dict[str, Any]:
        return dict(zip(self.arg_names, self.args))

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)
