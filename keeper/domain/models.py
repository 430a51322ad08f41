from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar


PRICE_SCALE = 10**8
BPS_DENOMINATOR = 10_000


class EventKind(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"
    STOP_CLOSED = "stop_closed"
    STOPS_UPDATED = "stops_updated"

    @property
    def adds(self) -> bool:
        """Opening or updating stops implies the position is alive."""
        return self in (EventKind.OPENED, EventKind.STOPS_UPDATED)


@dataclass(frozen=True)
class LogEntry:
    kind: EventKind
    trader: Any
    block_number: int = 0
    log_index: int = 0
    tx_hash: str | None = None


@dataclass(frozen=True)
class Position:
    is_open: bool
    is_long: bool
    leverage: int
    margin: int
    entry_price: int
    last_update: int

    @classmethod
    def from_tuple(cls, row: tuple | list) -> "Position":
        is_open, is_long, leverage, margin, entry_price, last_update = row
        return cls(
            is_open=bool(is_open),
            is_long=bool(is_long),
            leverage=int(leverage),
            margin=int(margin),
            entry_price=int(entry_price),
            last_update=int(last_update),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "is_long": self.is_long,
            "leverage": self.leverage,
            "margin": self.margin,
            "entry_price": self.entry_price,
            "last_update": self.last_update,
        }


@dataclass(frozen=True)
class TriggerEvaluation:
    can_liquidate: bool
    should_close: bool
    hit_stop_loss: bool = False
    hit_take_profit: bool = False


@dataclass(frozen=True)
class PayoutEstimate:
    notional: int
    fee: int
    pnl: int
    settle: int
    payout: int


@dataclass(frozen=True)
class Liquidate:
    trader: str
    name: ClassVar[str] = "liquidate"


@dataclass(frozen=True)
class CloseIfTriggered:
    trader: str
    name: ClassVar[str] = "closeIfTriggered"


KeeperAction = Liquidate | CloseIfTriggered


@dataclass(frozen=True)
class ActionResult:
    action: KeeperAction
    tx_hash: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trader": self.action.trader,
            "action": self.action.name,
            "tx_hash": self.tx_hash,
            "status": "SENT" if self.ok else "FAILED",
            "error": self.error,
        }
