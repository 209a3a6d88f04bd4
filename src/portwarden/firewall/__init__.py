"""Firewall backends.

Brief: Defines the FirewallBackend interface and the bundled implementations.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

from .base import DropRule, FirewallBackend, FirewallError, firewall_aliases
from .memory import InMemoryFirewall
from .nftables import NftablesFirewall
from .registry import load_firewall_backend

__all__ = [
    "DropRule",
    "FirewallBackend",
    "FirewallError",
    "InMemoryFirewall",
    "NftablesFirewall",
    "firewall_aliases",
    "load_firewall_backend",
]
