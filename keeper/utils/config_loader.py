from __future__ import annotations

import logging
import os
import re
import threading
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

_RE_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}

# (section, key, parser, env names in priority order)
_ENV_OVERRIDES: list[tuple[str, str, type, tuple[str, ...]]] = [
    ("ledger", "perps_address", str, ("KEEPER_PERPS_ADDRESS", "PERPS")),
    ("ledger", "rpc_url", str, ("KEEPER_RPC_URL", "RPC_URL")),
    ("keeper", "start_block", int, ("KEEPER_START_BLOCK", "START_BLOCK")),
    ("keeper", "lookback_blocks", int, ("KEEPER_LOOKBACK_BLOCKS", "LOOKBACK_BLOCKS")),
    ("keeper", "loop_interval_seconds", float, ("KEEPER_LOOP_INTERVAL_SECONDS", "KEEPERS_INTERVAL_SEC")),
    ("keeper", "scan_interval_seconds", float, ("KEEPER_SCAN_INTERVAL_SECONDS", "SCAN_EVERY_SEC")),
    ("keeper", "scan_chunk", int, ("KEEPER_SCAN_CHUNK", "SCAN_CHUNK")),
    ("keeper", "max_tx_per_loop", int, ("KEEPER_MAX_TX_PER_LOOP", "MAX_TX_PER_LOOP")),
    ("keeper", "gas_limit", int, ("KEEPER_GAS_LIMIT", "GAS_LIMIT")),
    ("keeper", "debug", bool, ("KEEPER_DEBUG", "DEBUG_KEEPERS")),
    ("database", "path", str, ("KEEPER_DATABASE_PATH",)),
    ("database", "persist_cursor", bool, ("KEEPER_PERSIST_CURSOR",)),
]


def _project_root() -> Path:
    # keeper/utils/config_loader.py -> keeper/utils -> keeper -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _parse_env(raw: str, parser: type) -> Any:
    if parser is bool:
        return raw.strip().lower() in _TRUE_VALUES
    return parser(raw.strip())


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override YAML settings with environment variables.

    Both the KEEPER_* names and the short operational names (PERPS, SCAN_CHUNK, ...)
    are recognised; the KEEPER_* name wins when both are set.
    """
    for section, key, parser, names in _ENV_OVERRIDES:
        for name in names:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                continue
            try:
                cfg.setdefault(section, {})[key] = _parse_env(raw, parser)
            except ValueError as e:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from e
            break


def _require_positive(cfg: dict[str, Any], section: str, key: str) -> None:
    v = (cfg.get(section) or {}).get(key)
    if v is None:
        return
    if isinstance(v, bool) or not isinstance(v, (int, float)) or v <= 0:
        raise ValueError(f"{section}.{key} must be a number > 0")


def validate_config(cfg: dict[str, Any]) -> None:
    """Fail fast on a configuration the keeper cannot run with."""
    required_top = ["ledger", "keeper"]
    missing = [k for k in required_top if not isinstance(cfg.get(k), dict)]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    address = str(cfg["ledger"].get("perps_address") or "").strip()
    if not address:
        raise ValueError("Missing ledger.perps_address (set KEEPER_PERPS_ADDRESS or PERPS)")
    if not _RE_ADDRESS.match(address):
        raise ValueError(f"ledger.perps_address is not a 20-byte hex address: {address!r}")

    for key in ("loop_interval_seconds", "scan_interval_seconds", "scan_chunk", "max_tx_per_loop", "lookback_blocks"):
        _require_positive(cfg, "keeper", key)

    start_block = cfg["keeper"].get("start_block")
    if start_block is not None and (isinstance(start_block, bool) or not isinstance(start_block, int) or start_block < 0):
        raise ValueError("keeper.start_block must be an integer >= 0")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for the operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)


@dataclass(frozen=True)
class KeeperSettings:
    perps_address: str
    rpc_url: str
    request_timeout_seconds: float
    start_block: int | None
    lookback_blocks: int
    loop_interval_seconds: float
    scan_interval_seconds: float
    scan_chunk: int
    max_tx_per_loop: int
    gas_limit: int | None
    wait_for_receipt: bool
    receipt_timeout_seconds: float
    debug: bool
    max_attempts: int
    database_path: str | None
    persist_cursor: bool
    event_signatures: dict[str, str]


def load_keeper_settings(config: dict) -> KeeperSettings:
    ledger = config.get("ledger") or {}
    k = config.get("keeper") or {}
    retry = config.get("retry") or {}
    db = config.get("database") or {}
    start_block = k.get("start_block")
    gas_limit = k.get("gas_limit")
    return KeeperSettings(
        perps_address=str(ledger.get("perps_address") or "").strip(),
        rpc_url=str(ledger.get("rpc_url", "http://127.0.0.1:8545")),
        request_timeout_seconds=float(ledger.get("request_timeout_seconds", 30)),
        start_block=int(start_block) if start_block is not None else None,
        lookback_blocks=int(k.get("lookback_blocks", 20000)),
        loop_interval_seconds=float(k.get("loop_interval_seconds", 10)),
        scan_interval_seconds=float(k.get("scan_interval_seconds", 60)),
        scan_chunk=int(k.get("scan_chunk", 2000)),
        max_tx_per_loop=int(k.get("max_tx_per_loop", 5)),
        gas_limit=int(gas_limit) if gas_limit else None,
        wait_for_receipt=bool(k.get("wait_for_receipt", False)),
        receipt_timeout_seconds=float(k.get("receipt_timeout_seconds", 60)),
        debug=bool(k.get("debug", False)),
        max_attempts=int(retry.get("max_attempts", 5)),
        database_path=str(db["path"]) if db.get("path") else None,
        persist_cursor=bool(db.get("persist_cursor", False)),
        event_signatures={str(kk): str(vv) for kk, vv in (ledger.get("events") or {}).items()},
    )


def private_key_from_env() -> str | None:
    """Signer key is env-only. A 64-hex key without the 0x prefix is accepted."""
    raw = (os.getenv("KEEPER_PRIVATE_KEY") or os.getenv("PRIVATE_KEY") or "").strip()
    if not raw:
        return None
    return raw if raw.startswith("0x") else "0x" + raw
