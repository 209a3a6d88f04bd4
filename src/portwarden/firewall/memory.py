from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .base import DropRule, FirewallBackend, FirewallError, firewall_aliases

logger = logging.getLogger(__name__)


class InMemoryFirewallConfig(BaseModel):
    """Brief: Typed configuration for InMemoryFirewall.

    Inputs:
      - chain: Name used in log lines.
      - initial: Addresses blocked when the backend is created.
      - fail_on: Addresses whose add_drop_rule() raises FirewallError.
    """

    chain: str = Field(default="input")
    initial: List[str] = Field(default_factory=list)
    fail_on: List[str] = Field(default_factory=list)

    class Config:
        extra = "forbid"


@firewall_aliases("memory", "in_memory", "dry_run")
class InMemoryFirewall(FirewallBackend):
    """
    Firewall backend that keeps its rules in process memory.

    Used for dry runs (nothing touches the host packet filter) and as the
    collaborator in tests. Persist/reload calls are counted so callers can
    assert they happened.

    Example use:
        >>> fw = InMemoryFirewall()
        >>> fw.add_drop_rule("10.0.0.5")
        True
        >>> fw.add_drop_rule("10.0.0.5")
        False
        >>> [r.address for r in fw.list_drop_rules()]
        ['10.0.0.5']
    """

    @classmethod
    def get_config_model(cls):
        return InMemoryFirewallConfig

    def __init__(self, **config) -> None:
        super().__init__(**config)
        self.chain = str(self.config.get("chain", "input"))
        self.fail_on = set(self.config.get("fail_on") or [])
        self._lock = threading.Lock()
        self._rules: Dict[str, int] = {}
        self._next_handle = 1
        self.base_ready = False
        self.persisted: Optional[List[str]] = None
        self.persist_count = 0
        self.reload_count = 0
        for address in self.config.get("initial") or []:
            self.add_drop_rule(address)

    def describe(self) -> str:
        return f"memory chain {self.chain}"

    def ensure_base_structure(self) -> None:
        self.base_ready = True

    def add_drop_rule(self, address: str) -> bool:
        if address in self.fail_on:
            raise FirewallError(f"refusing to block {address}")
        with self._lock:
            if address in self._rules:
                return False
            self._rules[address] = self._next_handle
            self._next_handle += 1
        logger.debug("memory: added drop rule for %s", address)
        return True

    def list_drop_rules(self) -> List[DropRule]:
        with self._lock:
            return [
                DropRule(address=a, text=f"ip saddr {a} drop", handle=h)
                for a, h in sorted(self._rules.items(), key=lambda kv: kv[1])
            ]

    def flush_chain(self) -> None:
        with self._lock:
            self._rules.clear()

    def persist_ruleset(self) -> None:
        with self._lock:
            self.persisted = sorted(self._rules)
            self.persist_count += 1

    def reload(self) -> None:
        self.reload_count += 1
