"""
Keeper action scheduler.

One iteration is Scanning -> Evaluating -> Acting; `run_forever` adds the
Sleeping phase. Iterations never overlap. Scanning is throttled separately
from the loop cadence because a log scan costs far more than a round of views.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from keeper.domain.models import ActionResult, CloseIfTriggered, KeeperAction, Liquidate
from keeper.ports.ledger import LedgerPort
from keeper.trader.actions import submit_action
from keeper.trader.evaluator import TriggerEvaluator
from keeper.trader.projection import OpenPositionProjection
from keeper.trader.retry import DEFAULT_MAX_ATTEMPTS
from keeper.utils.database import log_event, record_action

logger = logging.getLogger(__name__)

# After a failed scan, allow the next attempt this many seconds later instead of a full interval.
SCAN_RETRY_SECONDS = 5.0


@dataclass
class IterationReport:
    # deferred: traders not evaluated because the action budget ran out.
    scanned_blocks: int = 0
    scan_error: str | None = None
    traders: int = 0
    submitted: int = 0
    deferred: int = 0
    skipped_unaffordable: int = 0
    failures: int = 0
    results: list[ActionResult] = field(default_factory=list)


class ActionScheduler:
    def __init__(
        self,
        ledger: LedgerPort,
        projection: OpenPositionProjection,
        evaluator: TriggerEvaluator | None = None,
        *,
        max_tx_per_loop: int = 5,
        loop_interval_seconds: float = 10.0,
        scan_interval_seconds: float = 60.0,
        gas_limit: int | None = None,
        wait_for_receipt: bool = False,
        receipt_timeout_seconds: float = 60.0,
        scan_enabled: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_scan: Callable[[OpenPositionProjection], None] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.projection = projection
        self.evaluator = evaluator or TriggerEvaluator(ledger, max_attempts=max_attempts, sleep=sleep)
        self.max_tx_per_loop = int(max_tx_per_loop)
        self.loop_interval_seconds = float(loop_interval_seconds)
        self.scan_interval_seconds = float(scan_interval_seconds)
        self.gas_limit = gas_limit
        self.wait_for_receipt = wait_for_receipt
        self.receipt_timeout_seconds = float(receipt_timeout_seconds)
        self.scan_enabled = scan_enabled
        self.on_scan = on_scan
        self._clock = clock
        self._sleep = sleep
        self._last_scan_at: float | None = None
        self._running = False

    # ----- Scanning -----

    def scan_due(self, now: float) -> bool:
        if not self.scan_enabled:
            return False
        return self._last_scan_at is None or now - self._last_scan_at >= self.scan_interval_seconds

    def maybe_scan(self, now: float | None = None) -> int:
        """
        Catch the projection up to the chain head if the scan governor allows it.

        Raises on failure; the caller decides whether that aborts anything.
        """
        now = self._clock() if now is None else now
        if not self.scan_due(now):
            return 0
        try:
            head = int(self.ledger.block_number())
            scanned = self.projection.advance(head)
        except Exception:
            # Retry soon rather than waiting a full scan interval.
            self._last_scan_at = now - max(0.0, self.scan_interval_seconds - SCAN_RETRY_SECONDS)
            raise
        self._last_scan_at = now
        if scanned and self.on_scan is not None:
            self.on_scan(self.projection)
        return scanned

    # ----- Evaluating -----

    def select_action(self, trader: str, report: IterationReport) -> tuple[KeeperAction | None, dict[str, Any]]:
        """
        Pick at most one action for `trader`: liquidation first, then a stop close
        that passes the solvency preflight.

        Returns the action (or None) and the evaluation details stored with it.
        """
        evaluation = self.evaluator.evaluate(trader)
        if evaluation.can_liquidate:
            return Liquidate(trader), {"can_liquidate": True}
        if not evaluation.should_close:
            return None, {}

        affordable, estimate, balance = self.evaluator.close_is_affordable(trader)
        details: dict[str, Any] = {
            "hit_stop_loss": evaluation.hit_stop_loss,
            "hit_take_profit": evaluation.hit_take_profit,
            "payout": estimate.payout if estimate else None,
            "treasury": balance,
        }
        if not affordable:
            report.skipped_unaffordable += 1
            msg = (
                f"Skipping closeIfTriggered: payout {estimate.payout if estimate else '?'} "
                f"exceeds treasury {balance}"
            )
            logger.info("%s (%s)", msg, trader)
            _log_event_safe("WARN", msg, trader=trader, step="Preflight")
            return None, details
        logger.debug(
            "closeIfTriggered preflight ok for %s (sl=%s tp=%s payout=%s balance=%s)",
            trader,
            evaluation.hit_stop_loss,
            evaluation.hit_take_profit,
            details["payout"],
            balance,
        )
        return CloseIfTriggered(trader), details

    # ----- Acting -----

    def run_iteration(self, now: float | None = None) -> IterationReport:
        report = IterationReport()

        try:
            report.scanned_blocks = self.maybe_scan(now)
        except Exception as e:
            report.scan_error = f"{type(e).__name__}: {str(e)[:200]}"
            logger.warning("Scan logs error: %s", report.scan_error)
            _log_event_safe("ERROR", f"Scan logs error: {report.scan_error}", step="Scan")

        traders = self.projection.snapshot()
        report.traders = len(traders)

        for index, trader in enumerate(traders):
            if report.submitted >= self.max_tx_per_loop:
                # Not evaluated this iteration; some may have nothing to do.
                report.deferred = len(traders) - index
                logger.info(
                    "Action budget reached (%s); %s trader(s) left unevaluated until next iteration",
                    self.max_tx_per_loop,
                    report.deferred,
                )
                break
            try:
                action, details = self.select_action(trader, report)
            except Exception as e:
                report.failures += 1
                logger.warning("Keeper evaluation error for %s: %s", trader, e)
                continue
            if action is None:
                continue

            result = submit_action(
                self.ledger,
                action,
                gas_limit=self.gas_limit,
                wait_for_receipt=self.wait_for_receipt,
                receipt_timeout=self.receipt_timeout_seconds,
            )
            report.results.append(result)
            if result.tx_hash is not None:
                report.submitted += 1
            if not result.ok:
                report.failures += 1
            _record_result_safe(result, details)

        return report

    def run_forever(self) -> None:
        self._running = True
        logger.info(
            "Keeper loop started (loop=%ss scan=%ss budget=%s)",
            self.loop_interval_seconds,
            self.scan_interval_seconds,
            self.max_tx_per_loop,
        )
        while self._running:
            report = self.run_iteration()
            if report.submitted or report.failures or report.scanned_blocks:
                logger.info(
                    "Iteration: scanned=%s open=%s submitted=%s deferred=%s skipped=%s failures=%s cursor=%s",
                    report.scanned_blocks,
                    report.traders,
                    report.submitted,
                    report.deferred,
                    report.skipped_unaffordable,
                    report.failures,
                    self.projection.cursor,
                )
            if not self._running:
                break
            self._sleep(self.loop_interval_seconds)
        logger.info("Keeper loop stopped")

    def stop(self) -> None:
        self._running = False


def _log_event_safe(level: str, message: str, trader: str | None = None, step: str | None = None) -> None:
    try:
        log_event(level, message, trader=trader, step=step)
    except Exception as e:
        # Do not block acting on store issues
        logger.debug("Event log write failed: %s", e)


def _record_result_safe(result: ActionResult, details: dict[str, Any] | None = None) -> None:
    row = result.to_dict()
    try:
        record_action(
            row["trader"], row["action"], row["tx_hash"], row["status"], error=row["error"], details=details
        )
        _log_event_safe(
            "INFO" if result.ok else "ERROR",
            f"{row['action']} {row['status']}" + (f": {row['error']}" if row["error"] else f" tx={row['tx_hash']}"),
            trader=row["trader"],
            step="Act",
        )
    except Exception as e:
        logger.debug("Action record write failed: %s", e)
