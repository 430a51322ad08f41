from __future__ import annotations

import logging

from keeper.trader.projection import OpenPositionProjection
from keeper.utils.database import force_commit, log_event, save_checkpoint, update_live_status

logger = logging.getLogger(__name__)


def snapshot_projection(projection: OpenPositionProjection, perps_address: str | None = None) -> None:
    """Write the scan cursor and open-trader set into the DB for the status API and restarts."""
    traders = projection.snapshot()
    try:
        save_checkpoint(projection.cursor, traders, perps_address=perps_address)
        update_live_status("Scan", f"cursor={projection.cursor} open={len(traders)}")
        log_event("INFO", f"Scanned to block {projection.cursor}; {len(traders)} open trader(s)", step="Scan")
        force_commit()
    except Exception as e:
        # The store is a convenience; the keeper keeps running without it.
        logger.warning(f"Failed to snapshot projection: {e}")


def restore_projection(
    projection: OpenPositionProjection,
    checkpoint: tuple[int, list[str]] | None,
    min_cursor: int | None = None,
) -> bool:
    """
    Seed the projection from a stored checkpoint. Returns True when one was applied.

    A checkpoint behind `min_cursor` (the block before an explicit start block)
    is ignored.
    """
    if checkpoint is None:
        return False
    cursor, traders = checkpoint
    if min_cursor is not None and cursor < min_cursor:
        logger.info(f"Ignoring checkpoint at block {cursor}; configured replay starts after block {min_cursor}")
        return False
    projection.seed(cursor, traders)
    logger.info(f"Restored checkpoint: cursor={projection.cursor} open={projection.size}")
    return True
