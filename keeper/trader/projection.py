"""
Open-position projection.

Replays the ledger's position lifecycle events over monotonically advancing
block ranges and keeps the set of traders believed to hold an open position.

The set is a cache of ledger state: stale entries are tolerated (every action
is preceded by live reads), but a trader with a still-open position must never
be dropped. For that reason the scan cursor only moves past a chunk once all
event kinds for that chunk were fetched successfully.
"""
from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable

from keeper.domain.models import EventKind, LogEntry
from keeper.ports.ledger import EventSource
from keeper.trader.retry import DEFAULT_MAX_ATTEMPTS, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_SCAN_CHUNK = 2000

_RE_ADDRESS = re.compile(r"^0x[0-9a-f]{40}$")
_RE_TOPIC = re.compile(r"^0x0{24}([0-9a-f]{40})$")


def parse_trader(raw: Any) -> str | None:
    """
    Normalise a trader field from a log into a lowercase 0x address.

    Accepts a decoded address, a 32-byte left-padded topic (hex or bytes),
    or raw 20-byte address bytes. Anything else yields None.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        b = bytes(raw)
        if len(b) == 32 and b[:12] == b"\x00" * 12:
            b = b[12:]
        if len(b) != 20:
            return None
        return "0x" + b.hex()
    s = str(raw).strip().lower()
    if not s.startswith("0x"):
        s = "0x" + s
    if _RE_ADDRESS.match(s):
        return s
    m = _RE_TOPIC.match(s)
    if m:
        return "0x" + m.group(1)
    return None


def apply_events(open_set: Iterable[str], logs: Iterable[LogEntry]) -> set[str]:
    """
    Pure reducer: return a new set with `logs` applied to `open_set`.

    Adds are applied before removes regardless of raw log order; membership is
    all that matters and a batch that both opens and closes a trader must end
    with the trader absent. Entries with an unparsable trader are skipped.
    """
    out = set(open_set)
    adds: list[str] = []
    removes: list[str] = []
    for entry in logs:
        trader = parse_trader(entry.trader)
        if trader is None:
            logger.debug("Skipping %s log with unparsable trader: %r", entry.kind.value, entry.trader)
            continue
        if entry.kind.adds:
            adds.append(trader)
        else:
            removes.append(trader)
    out.update(adds)
    out.difference_update(removes)
    return out


class OpenPositionProjection:
    def __init__(
        self,
        source: EventSource,
        start_cursor: int,
        *,
        scan_chunk: int = DEFAULT_SCAN_CHUNK,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if scan_chunk <= 0:
            raise ValueError("scan_chunk must be > 0")
        self.source = source
        self.scan_chunk = int(scan_chunk)
        self.max_attempts = int(max_attempts)
        self._sleep = sleep
        self._cursor = max(0, int(start_cursor))
        self._open: set[str] = set()
        self.last_scan_at: float | None = None

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def size(self) -> int:
        return len(self._open)

    def seed(self, cursor: int, traders: Iterable[str]) -> None:
        """Replace cursor and open set with a previously checkpointed replay state."""
        self._cursor = max(0, int(cursor))
        self._open = {t for t in (parse_trader(x) for x in traders) if t}

    def snapshot(self) -> tuple[str, ...]:
        return tuple(sorted(self._open))

    def _query(self, kind: EventKind, start: int, end: int) -> list[LogEntry]:
        return call_with_retry(
            lambda: self.source.query_events(kind, start, end),
            f"{kind.value}[{start}-{end}]",
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )

    def _fetch_chunk(self, pool: ThreadPoolExecutor, start: int, end: int) -> list[LogEntry]:
        futures = [pool.submit(self._query, kind, start, end) for kind in EventKind]
        # Join on every query before raising so no request outlives the chunk.
        errors: list[BaseException] = []
        logs: list[LogEntry] = []
        for fut in futures:
            try:
                logs.extend(fut.result())
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]
        return logs

    def advance(self, to_block: int) -> int:
        """
        Scan `(cursor, to_block]` chunk by chunk. Returns the number of blocks scanned.

        Raises the underlying error if any query for a chunk still fails after
        retries; the cursor then stays at the end of the last complete chunk.
        """
        to_block = int(to_block)
        if to_block <= self._cursor:
            return 0

        from_block = self._cursor + 1
        logger.debug("Scanning logs %s -> %s (chunk %s)", from_block, to_block, self.scan_chunk)
        with ThreadPoolExecutor(max_workers=len(EventKind), thread_name_prefix="logscan") as pool:
            for start in range(from_block, to_block + 1, self.scan_chunk):
                end = min(start + self.scan_chunk - 1, to_block)
                logs = self._fetch_chunk(pool, start, end)
                self._open = apply_events(self._open, logs)
                self._cursor = end

        self.last_scan_at = time.time()
        logger.debug("Open traders: %s (cursor=%s)", len(self._open), self._cursor)
        return to_block - from_block + 1
