from __future__ import annotations

from typing import Protocol

from keeper.domain.models import EventKind, LogEntry, Position


class EventSource(Protocol):
    def block_number(self) -> int: ...

    def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LogEntry]: ...


class LedgerPort(EventSource, Protocol):
    def positions(self, trader: str) -> Position: ...

    def can_liquidate(self, trader: str) -> bool: ...

    def should_close(self, trader: str) -> tuple[bool, bool, bool]: ...

    def get_stops(self, trader: str) -> tuple[int, int]: ...

    def taker_fee_bps(self) -> int: ...

    def get_price(self) -> int: ...

    def treasury_balance(self) -> int: ...

    def liquidate(self, trader: str, gas_limit: int | None = None) -> str: ...

    def close_if_triggered(self, trader: str, gas_limit: int | None = None) -> str: ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict: ...
