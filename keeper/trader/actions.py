from __future__ import annotations

import logging

from keeper.domain.models import ActionResult, CloseIfTriggered, KeeperAction, Liquidate
from keeper.ports.ledger import LedgerPort

logger = logging.getLogger(__name__)


def submit_action(
    ledger: LedgerPort,
    action: KeeperAction,
    *,
    gas_limit: int | None = None,
    wait_for_receipt: bool = False,
    receipt_timeout: float = 60.0,
) -> ActionResult:
    """
    Submit one corrective transaction. Never raises; failures come back on the result.

    Submissions are sequential; nonce handling is left to the ledger client.
    """
    try:
        if isinstance(action, Liquidate):
            tx_hash = ledger.liquidate(action.trader, gas_limit=gas_limit)
        elif isinstance(action, CloseIfTriggered):
            tx_hash = ledger.close_if_triggered(action.trader, gas_limit=gas_limit)
        else:
            raise TypeError(f"Unsupported keeper action: {type(action).__name__}")
    except Exception as e:
        msg = f"{type(e).__name__}: {str(e)[:200]}"
        logger.warning("%s failed for %s: %s", action.name, action.trader, msg)
        return ActionResult(action=action, error=msg)

    logger.info("%s %s tx=%s", action.name, action.trader, tx_hash)

    if wait_for_receipt:
        try:
            receipt = ledger.wait_for_receipt(tx_hash, timeout=receipt_timeout)
            status = receipt.get("status") if isinstance(receipt, dict) else getattr(receipt, "status", None)
            if status == 0:
                return ActionResult(action=action, tx_hash=tx_hash, error="transaction reverted")
        except Exception as e:
            # The transaction was broadcast; an unknown outcome is re-evaluated next iteration.
            logger.warning("Receipt wait failed for %s tx=%s: %s", action.trader, tx_hash, e)

    return ActionResult(action=action, tx_hash=tx_hash)
