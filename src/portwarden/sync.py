"""
Block-list synchronization: turn collected addresses into firewall DROP rules.

The synchronizer reads the collector's address log, builds the deduplicated
sorted BlockSet, drives a FirewallBackend one address at a time and finally
persists and reloads the ruleset. Per-address failures are recorded in the
returned report and never abort the batch.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .firewall.base import DropRule, FirewallBackend, FirewallError

logger = logging.getLogger(__name__)


class LogFileMissingError(FileNotFoundError):
    """Raised when blocking is requested but the address log does not exist."""


class LogFileUnreadableError(OSError):
    """Raised when the address log exists but cannot be read."""


def load_block_set(log_path: str) -> List[str]:
    """
    Extract the sorted, deduplicated addresses from an address log.

    Inputs:
        log_path: Path of the collector's log file.

    Outputs:
        Sorted list of unique address strings. Lines with fewer than three
        fields carry no address and are skipped.

    Raises:
        LogFileMissingError: when *log_path* is not a file.
        LogFileUnreadableError: when opening or reading the log fails.

    Example:
        >>> load_block_set("/var/log/tcpping_ips.log")
        ['10.0.0.5', '203.0.113.9']
    """
    if not os.path.isfile(log_path):
        raise LogFileMissingError(f"address log not found: {log_path}")

    addresses = set()
    try:
        with open(log_path, "r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                parts = line.split()
                if not parts:
                    continue
                if len(parts) < 3:
                    logger.warning(
                        "Skipping line %d in %s: no address field", lineno, log_path
                    )
                    continue
                addresses.add(parts[2])
    except OSError as exc:
        raise LogFileUnreadableError(
            f"cannot read address log {log_path}: {exc.strerror or exc}"
        ) from exc
    return sorted(addresses)


@dataclass
class BlockReport:
    """Outcome of one block run."""

    processed: int = 0
    added: List[str] = field(default_factory=list)
    already_blocked: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    persisted: bool = False
    persist_error: Optional[str] = None

    @property
    def status(self) -> str:
        """'ok', 'partial' or 'failed'."""
        if not self.persisted:
            return "failed"
        if self.processed and len(self.failed) == self.processed:
            return "failed"
        if self.failed:
            return "partial"
        return "ok"


@dataclass
class ClearReport:
    """Outcome of one clear request."""

    confirmed: bool
    removed: int = 0
    error: Optional[str] = None

    @property
    def status(self) -> str:
        """'cancelled', 'cleared' or 'failed'."""
        if not self.confirmed:
            return "cancelled"
        return "failed" if self.error else "cleared"


@dataclass
class ShowReport:
    """Current DROP entries of the managed chain."""

    rules: List[DropRule] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.rules)


class BlockSynchronizer:
    """
    Reconcile the collector's address log with firewall DROP rules.

    Inputs (constructor):
        firewall: FirewallBackend collaborator.
        log_path: Path of the address log written by the collector.

    Example:
        >>> from portwarden.firewall.memory import InMemoryFirewall
        >>> sync = BlockSynchronizer(InMemoryFirewall(), "/var/log/tcpping_ips.log")
        >>> report = sync.block()
        >>> report.status
        'ok'
    """

    def __init__(self, firewall: FirewallBackend, log_path: str) -> None:
        self.firewall = firewall
        self.log_path = log_path

    def _persist_and_reload(self) -> Optional[str]:
        try:
            self.firewall.persist_ruleset()
            self.firewall.reload()
        except FirewallError as exc:
            logger.error("Persisting firewall ruleset failed: %s", exc)
            return str(exc)
        return None

    def block(self) -> BlockReport:
        """
        Add a DROP rule for every address in the log, then persist and reload.

        Outputs:
            BlockReport with per-address outcomes.

        Raises:
            LogFileMissingError: the log is absent; no firewall call is made.
            LogFileUnreadableError: the log cannot be read; no firewall call
                is made.
            FirewallError: the base table/chain could not be ensured.
        """
        addresses = load_block_set(self.log_path)
        logger.info(
            "Found %d unique addresses in %s; blocking via %s",
            len(addresses),
            self.log_path,
            self.firewall.describe(),
        )
        self.firewall.ensure_base_structure()

        report = BlockReport(processed=len(addresses))
        for address in addresses:
            try:
                added = self.firewall.add_drop_rule(address)
            except FirewallError as exc:
                logger.warning("Could not block %s: %s", address, exc)
                report.failed[address] = str(exc)
                continue
            if added:
                logger.info("[block] %s", address)
                report.added.append(address)
            else:
                logger.debug("%s already blocked", address)
                report.already_blocked.append(address)

        report.persist_error = self._persist_and_reload()
        report.persisted = report.persist_error is None
        logger.info(
            "Block run %s: processed=%d added=%d already=%d failed=%d persisted=%s",
            report.status,
            report.processed,
            len(report.added),
            len(report.already_blocked),
            len(report.failed),
            report.persisted,
        )
        return report

    def clear(self, confirmed: bool = False) -> ClearReport:
        """
        Remove every rule in the managed chain once the caller confirmed.

        Inputs:
            confirmed: Must be exactly True to act; anything else is a no-op.

        Outputs:
            ClearReport; status 'cancelled' when not confirmed.
        """
        if confirmed is not True:
            logger.info("Clear cancelled; firewall left unchanged")
            return ClearReport(confirmed=False)

        report = ClearReport(confirmed=True)
        try:
            self.firewall.ensure_base_structure()
            report.removed = len(self.firewall.list_drop_rules())
            self.firewall.flush_chain()
        except FirewallError as exc:
            logger.error("Clearing firewall rules failed: %s", exc)
            report.error = str(exc)
            return report

        report.error = self._persist_and_reload()
        if report.error is None:
            logger.info("Cleared %d drop rules from %s", report.removed, self.firewall.describe())
        return report

    def show(self) -> ShowReport:
        """Return the current DROP entries; never mutates firewall state."""
        return ShowReport(rules=self.firewall.list_drop_rules())
