"""
Per-address statistics for the portwarden collector.

This module holds the in-memory table of observed source addresses and the
plain-text log store that persists it. The log format is one record per line:

    YYYY-MM-DD HH:MM:SS <address> <hit_count>

``hit_count`` may be absent on read (it defaults to 1) but is always written.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional

from .utils.files import atomic_write_text

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class AddressRecord:
    """
    Aggregate of every connection seen from one source address.

    Inputs (constructor):
        address: Textual peer address (opaque string, unique key).
        last_seen: Local timestamp of the most recent connection.
        hit_count: Number of connections observed (>= 1).

    Example:
        >>> rec = AddressRecord("10.0.0.5", datetime(2024, 1, 1), 3)
        >>> rec.to_line()
        '2024-01-01 00:00:00 10.0.0.5 3'
    """

    address: str
    last_seen: datetime
    hit_count: int = 1

    def to_line(self) -> str:
        """Render the record in log-line form (without newline)."""
        return f"{self.last_seen.strftime(TIMESTAMP_FORMAT)} {self.address} {self.hit_count}"


class Observation(NamedTuple):
    """Result of recording one accepted connection."""

    address: str
    hit_count: int
    last_seen: datetime
    is_new: bool


def parse_log_line(line: str) -> Optional[AddressRecord]:
    """
    Parse one log line into an AddressRecord.

    Inputs:
        line: Raw text line (trailing newline allowed).

    Outputs:
        AddressRecord, or None for blank lines.

    Raises:
        ValueError: when the line has fewer than three fields, an unparseable
        timestamp, or a hit count that is not a positive integer.

    Example:
        >>> parse_log_line("2024-01-01 00:00:00 10.0.0.5").hit_count
        1
    """
    parts = line.split()
    if not parts:
        return None
    if len(parts) < 3:
        raise ValueError(f"expected at least 3 fields, got {len(parts)}")

    last_seen = datetime.strptime(f"{parts[0]} {parts[1]}", TIMESTAMP_FORMAT)
    hit_count = int(parts[3]) if len(parts) >= 4 else 1
    if hit_count < 1:
        raise ValueError(f"hit count must be positive, got {hit_count}")
    return AddressRecord(address=parts[2], last_seen=last_seen, hit_count=hit_count)


def iter_log_records(lines: Iterable[str], source: str = "<log>") -> Iterator[AddressRecord]:
    """Yield well-formed records from *lines*, logging and skipping bad ones."""
    for lineno, line in enumerate(lines, start=1):
        try:
            record = parse_log_line(line)
        except ValueError as exc:
            logger.warning(
                "Skipping malformed line %d in %s: %s (%r)",
                lineno,
                source,
                exc,
                line.rstrip("\n"),
            )
            continue
        if record is not None:
            yield record


class AddressStats:
    """
    Thread-safe table of AddressRecord keyed by address.

    Inputs (constructor):
        records: Optional initial records; later duplicates replace earlier ones.

    Outputs:
        AddressStats instance. Mutation and snapshotting share one lock so a
        snapshot always reflects a consistent set of applied updates.

    Example:
        >>> stats = AddressStats()
        >>> stats.record_hit("203.0.113.9").is_new
        True
        >>> stats.record_hit("203.0.113.9").hit_count
        2
    """

    def __init__(self, records: Optional[Iterable[AddressRecord]] = None) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, AddressRecord] = {}
        for rec in records or ():
            self._records[rec.address] = replace(rec)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._records

    def get(self, address: str) -> Optional[AddressRecord]:
        """Return a copy of the record for *address*, or None."""
        with self._lock:
            rec = self._records.get(address)
            return replace(rec) if rec is not None else None

    def record_hit(self, address: str, now: Optional[datetime] = None) -> Observation:
        """
        Count one connection from *address*.

        Inputs:
            address: Peer address string.
            now: Observation time; defaults to the current local time truncated
                to whole seconds.

        Outputs:
            Observation with the updated count and whether the address is new.
        """
        ts = (now or datetime.now()).replace(microsecond=0)
        with self._lock:
            rec = self._records.get(address)
            if rec is None:
                rec = AddressRecord(address=address, last_seen=ts, hit_count=1)
                self._records[address] = rec
                return Observation(address, 1, ts, True)
            rec.hit_count += 1
            rec.last_seen = ts
            return Observation(address, rec.hit_count, ts, False)

    def snapshot(self) -> List[AddressRecord]:
        """Return copies of all records sorted by address."""
        with self._lock:
            return [replace(self._records[a]) for a in sorted(self._records)]


class AddressLogStore:
    """
    Plain-text persistence for AddressStats.

    Inputs (constructor):
        path: Filesystem path of the log file.

    Outputs:
        AddressLogStore used to load the table at startup and to flush it.
        Saves replace the file atomically (temporary file + rename) and are
        serialized so an older snapshot never overwrites a newer one.

    Example:
        >>> store = AddressLogStore("/var/log/tcpping_ips.log")
        >>> stats = store.load()
        >>> store.save(stats)
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._save_lock = threading.Lock()

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def ensure_directory(self) -> None:
        """Create the parent directory of the log file if it is missing."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

    def iter_records(self) -> Iterator[AddressRecord]:
        """Yield records from the log file; missing file yields nothing."""
        if not self.exists():
            return
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            yield from iter_log_records(f, source=self.path)

    def load(self) -> AddressStats:
        """Build an AddressStats table from the log (empty when absent)."""
        return AddressStats(self.iter_records())

    def save(self, stats: AddressStats) -> int:
        """
        Flush *stats* to the log file.

        Inputs:
            stats: Table to persist.

        Outputs:
            int number of records written. Raises OSError on write failure,
            leaving the previous file intact.
        """
        with self._save_lock:
            records = stats.snapshot()
            text = "".join(rec.to_line() + "\n" for rec in records)
            atomic_write_text(self.path, text)
        return len(records)
