from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from keeper.domain.models import BPS_DENOMINATOR, PayoutEstimate, Position, TriggerEvaluation
from keeper.ports.ledger import LedgerPort
from keeper.trader.retry import DEFAULT_MAX_ATTEMPTS, call_with_retry

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _div_trunc(n: int, d: int) -> int:
    """Integer division truncating toward zero (EVM signed division semantics)."""
    q = abs(n) // abs(d)
    return q if (n >= 0) == (d > 0) else -q


def compute_payout(position: Position, price: int, taker_fee_bps: int) -> PayoutEstimate:
    """
    Settlement estimate for closing `position` at `price`.

    Integer fixed-point only, mirroring the ledger's own settlement arithmetic.
    """
    margin = int(position.margin)
    entry = int(position.entry_price)
    notional = margin * int(position.leverage)
    fee = notional * int(taker_fee_bps) // BPS_DENOMINATOR
    pnl = 0
    if entry != 0:
        diff = int(price) - entry
        if not position.is_long:
            diff = -diff
        pnl = _div_trunc(notional * diff, entry)
    settle = margin + pnl - fee
    return PayoutEstimate(notional=notional, fee=fee, pnl=pnl, settle=settle, payout=max(settle, 0))


class TriggerEvaluator:
    """
    Read-only per-trader checks. Thresholds are the ledger's; this only asks.

    Every view goes through `call_with_retry`, so a rate-limited read is retried
    within the iteration instead of dropping the trader until the next loop.
    """

    def __init__(
        self,
        ledger: LedgerPort,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.max_attempts = int(max_attempts)
        self._sleep = sleep

    def _read(self, label: str, fn: Callable[[], T]) -> T:
        return call_with_retry(fn, label, max_attempts=self.max_attempts, sleep=self._sleep)

    def can_liquidate(self, trader: str) -> bool:
        return bool(self._read(f"canLiquidate({trader})", lambda: self.ledger.can_liquidate(trader)))

    def should_close(self, trader: str) -> tuple[bool, bool, bool]:
        trigger, hit_sl, hit_tp = self._read(f"shouldClose({trader})", lambda: self.ledger.should_close(trader))
        return bool(trigger), bool(hit_sl), bool(hit_tp)

    def evaluate(self, trader: str) -> TriggerEvaluation:
        if self.can_liquidate(trader):
            return TriggerEvaluation(can_liquidate=True, should_close=False)
        trigger, hit_sl, hit_tp = self.should_close(trader)
        return TriggerEvaluation(
            can_liquidate=False,
            should_close=trigger,
            hit_stop_loss=hit_sl,
            hit_take_profit=hit_tp,
        )

    def estimate_payout(self, trader: str) -> PayoutEstimate | None:
        position = self._read(f"positions({trader})", lambda: self.ledger.positions(trader))
        if not position.is_open:
            return None
        fee_bps = int(self._read("takerFeeBps", self.ledger.taker_fee_bps))
        price = int(self._read("getPrice", self.ledger.get_price))
        return compute_payout(position, price, fee_bps)

    def close_is_affordable(self, trader: str) -> tuple[bool, PayoutEstimate | None, int | None]:
        """
        Solvency preflight for closeIfTriggered.

        Returns (affordable, estimate, treasury_balance). A position that is no
        longer open has nothing to pay out and is left to the ledger to reject.
        """
        estimate = self.estimate_payout(trader)
        if estimate is None:
            return True, None, None
        balance = int(self._read("treasury balance", self.ledger.treasury_balance))
        affordable = estimate.payout <= balance
        if not affordable:
            logger.debug(
                "Insufficient treasury for %s: payout=%s balance=%s",
                trader,
                estimate.payout,
                balance,
            )
        return affordable, estimate, balance
