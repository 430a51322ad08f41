from __future__ import annotations

from collections import defaultdict

import pytest

from keeper.domain.models import EventKind, LogEntry, Position
from keeper.utils import database


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


class FakeLedger:
    """In-memory LedgerPort. Records writes; event queries can be made to fail."""

    def __init__(self, head: int = 0):
        self.head = head
        self.events: list[LogEntry] = []
        self.positions_by_trader: dict[str, Position] = {}
        self.liquidatable: set[str] = set()
        self.stop_flags: dict[str, tuple[bool, bool, bool]] = {}
        self.fee_bps = 10
        self.price = 60 * 10**8
        self.balance = 10**30
        self.liquidated: list[str] = []
        self.closed: list[str] = []
        self.failing_writes: set[str] = set()
        self.failing_views: set[str] = set()
        # view name -> number of upcoming calls that fail with a rate-limit error
        self.flaky_views: dict[str, int] = {}
        self.view_calls: list[tuple[str, str | None]] = []
        # kind -> (from_block, to_block) range in which queries raise
        self.failing_queries: dict[EventKind, tuple[int, int]] = {}
        self.query_calls: dict[EventKind, int] = defaultdict(int)

    def emit(self, kind: EventKind, trader, block: int, log_index: int = 0) -> None:
        self.events.append(LogEntry(kind=kind, trader=trader, block_number=block, log_index=log_index))
        self.head = max(self.head, block)

    def open_position(self, trader: str, **kwargs) -> None:
        row = dict(is_open=True, is_long=True, leverage=10, margin=10**18, entry_price=60 * 10**8, last_update=0)
        row.update(kwargs)
        self.positions_by_trader[trader] = Position(**row)

    # ----- EventSource -----

    def block_number(self) -> int:
        return self.head

    def query_events(self, kind: EventKind, from_block: int, to_block: int) -> list[LogEntry]:
        self.query_calls[kind] += 1
        failing = self.failing_queries.get(kind)
        if failing is not None and not (to_block < failing[0] or from_block > failing[1]):
            raise ConnectionError(f"{kind.value} query failed")
        return [e for e in self.events if e.kind == kind and from_block <= e.block_number <= to_block]

    # ----- Views -----

    def _view(self, name: str, trader: str | None = None) -> None:
        self.view_calls.append((name, trader))
        if self.flaky_views.get(name, 0) > 0:
            self.flaky_views[name] -= 1
            raise ConnectionError("429 Too Many Requests")
        if name in self.failing_views or (trader is not None and trader in self.failing_views):
            raise RuntimeError(f"{name} reverted")

    def positions(self, trader: str) -> Position:
        self._view("positions", trader)
        return self.positions_by_trader.get(
            trader,
            Position(is_open=False, is_long=False, leverage=0, margin=0, entry_price=0, last_update=0),
        )

    def can_liquidate(self, trader: str) -> bool:
        self._view("canLiquidate", trader)
        return trader in self.liquidatable

    def should_close(self, trader: str) -> tuple[bool, bool, bool]:
        self._view("shouldClose", trader)
        return self.stop_flags.get(trader, (False, False, False))

    def get_stops(self, trader: str) -> tuple[int, int]:
        return 0, 0

    def taker_fee_bps(self) -> int:
        self._view("takerFeeBps")
        return self.fee_bps

    def get_price(self) -> int:
        self._view("getPrice")
        return self.price

    def treasury_balance(self) -> int:
        self._view("balance")
        return self.balance

    # ----- Writes -----

    def liquidate(self, trader: str, gas_limit: int | None = None) -> str:
        if trader in self.failing_writes:
            raise RuntimeError("execution reverted: not liquidatable")
        self.liquidated.append(trader)
        return "0x" + f"{len(self.liquidated):064x}"

    def close_if_triggered(self, trader: str, gas_limit: int | None = None) -> str:
        if trader in self.failing_writes:
            raise RuntimeError("execution reverted: no trigger")
        self.closed.append(trader)
        return "0x" + f"{len(self.closed) + 1000:064x}"

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict:
        return {"transactionHash": tx_hash, "status": 1}

    @property
    def write_calls(self) -> int:
        return len(self.liquidated) + len(self.closed)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture(autouse=True)
def keeper_db(tmp_path):
    database.configure(str(tmp_path / "keeper.db"))
    database.init_db()
    yield database.DB_PATH
    database.close_write_conn()


def no_sleep(_seconds: float) -> None:
    return None
