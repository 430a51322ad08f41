import argparse
import fcntl
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler("keeper_api.log", mode="a"),
    ],
)
logger = logging.getLogger("keeper_api")

LOCK_PATH = Path(".keeper_api.lock")


def _load_local_env() -> None:
    """Read config/secrets.env so the API and the keeper agree on KEEPER_DATABASE_PATH."""
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def _acquire_single_instance_lock():
    try:
        lock_f = LOCK_PATH.open("w")
        fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        lock_f.write(str(os.getpid()))
        lock_f.flush()
        return lock_f
    except OSError:
        logger.error("Another keeper API instance holds %s. Exiting.", LOCK_PATH)
        sys.exit(1)


def main() -> None:
    _load_local_env()

    parser = argparse.ArgumentParser(description="Read-only status API for the perps keeper.")
    parser.add_argument("--host", default=os.environ.get("KEEPER_API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("KEEPER_API_PORT", "8000")))
    args = parser.parse_args()

    # Held for the process lifetime.
    lock_f = _acquire_single_instance_lock()  # noqa: F841

    logger.info("Starting keeper status API on %s:%s (db=%s)", args.host, args.port, os.environ.get("KEEPER_DATABASE_PATH", "keeper.db"))
    try:
        # The keeper writes the SQLite store; this process only reads it.
        uvicorn.run(
            "keeper.api.app:app",
            host=args.host,
            port=args.port,
            reload=False,
            log_level="info",
            workers=1,
        )
    except Exception as e:
        logger.error(f"Fatal error in keeper API: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
