import logging
from functools import partial
import signal
import time

from keeper.ledger.connection import LedgerConnection
from keeper.ledger.perps import PerpsLedger
from keeper.ports.ledger import LedgerPort
from keeper.trader.evaluator import TriggerEvaluator
from keeper.trader.projection import OpenPositionProjection
from keeper.trader.retry import call_with_retry
from keeper.trader.scheduler import ActionScheduler
from keeper.trader.snapshots import restore_projection, snapshot_projection
from keeper.utils import database
from keeper.utils.config_loader import KeeperSettings, load_config, load_keeper_settings, private_key_from_env

logger = logging.getLogger(__name__)

# How long to keep retrying the RPC endpoint at startup before giving up.
STARTUP_CONNECT_SECONDS = 300


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)
    # web3/urllib3 are chatty at DEBUG; keep them at INFO.
    for noisy in ("web3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.INFO)


def initial_cursor(ledger: LedgerPort, settings: KeeperSettings) -> int:
    """Block before the first one to replay: explicit start block, else head minus lookback."""
    if settings.start_block is not None:
        return max(0, settings.start_block - 1)
    latest = call_with_retry(ledger.block_number, "eth_blockNumber", max_attempts=settings.max_attempts)
    return max(0, int(latest) - settings.lookback_blocks)


def build_scheduler(ledger: LedgerPort, settings: KeeperSettings) -> ActionScheduler:
    projection = OpenPositionProjection(
        ledger,
        initial_cursor(ledger, settings),
        scan_chunk=settings.scan_chunk,
        max_attempts=settings.max_attempts,
    )
    if settings.persist_cursor:
        try:
            min_cursor = max(0, settings.start_block - 1) if settings.start_block is not None else None
            restore_projection(projection, database.load_checkpoint(settings.perps_address), min_cursor=min_cursor)
        except Exception as e:
            logger.warning(f"Could not load scan checkpoint; replaying from block {projection.cursor + 1}: {e}")
    logger.info(f"Replaying ledger events from block {projection.cursor + 1}")

    return ActionScheduler(
        ledger,
        projection,
        TriggerEvaluator(ledger, max_attempts=settings.max_attempts),
        max_tx_per_loop=settings.max_tx_per_loop,
        loop_interval_seconds=settings.loop_interval_seconds,
        scan_interval_seconds=settings.scan_interval_seconds,
        gas_limit=settings.gas_limit,
        wait_for_receipt=settings.wait_for_receipt,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        max_attempts=settings.max_attempts,
        on_scan=partial(snapshot_projection, perps_address=settings.perps_address),
    )


def connect_ledger(settings: KeeperSettings) -> PerpsLedger | None:
    conn = LedgerConnection(
        settings.rpc_url,
        private_key=private_key_from_env(),
        request_timeout=settings.request_timeout_seconds,
    )
    if conn.read_only:
        logger.warning("No signer key configured (KEEPER_PRIVATE_KEY); liquidations and closes will fail")

    # Retry connection for up to 5 minutes (node restarts, provider outages).
    start_time = time.time()
    while not conn.connect():
        if time.time() - start_time >= STARTUP_CONNECT_SECONDS:
            return None
        logger.warning("RPC connection failed, retrying in 10 seconds...")
        time.sleep(10)

    return PerpsLedger(conn, settings.perps_address, settings.event_signatures)


def main() -> int:
    configure_logging()

    try:
        settings = load_keeper_settings(load_config())
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(settings.debug)
    database.configure(settings.database_path)
    database.init_db()

    ledger = connect_ledger(settings)
    if ledger is None:
        logger.error(f"Could not reach {settings.rpc_url} after {STARTUP_CONNECT_SECONDS}s. Exiting.")
        return 1

    scheduler = build_scheduler(ledger, settings)

    def _handle_stop(signum, frame):
        logger.info(f"Received signal {signum}; stopping after the current iteration")
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)

    database.update_live_status("Running", f"perps={settings.perps_address}")
    try:
        scheduler.run_forever()
    finally:
        database.force_commit()
        database.close_write_conn()
    return 0
