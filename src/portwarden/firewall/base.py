from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


class FirewallError(RuntimeError):
    """Raised when a firewall backend operation fails.

    Inputs (constructor):
      - message: Human-readable description.
      - command: Optional argv that was executed.
      - stderr: Optional captured error output.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.command = list(command) if command is not None else None
        self.stderr = stderr


@dataclass(frozen=True)
class DropRule:
    """One DROP entry in the managed chain.

    Inputs (constructor):
      - address: Source address matched by the rule, or None when the rule
        drops on some other criterion.
      - text: Rule text as reported by the backend.
      - handle: Backend-specific rule handle, when available.
    """

    address: Optional[str]
    text: str
    handle: Optional[int] = None


def firewall_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a firewall backend class for discovery.

    Inputs:
      - *aliases: Variable number of alias strings.

    Outputs:
      - Callable that applies the aliases to a FirewallBackend subclass and returns it.

    Example:
      >>> @firewall_aliases('memory', 'dry_run')
      ... class InMemoryFirewall(FirewallBackend):
      ...     pass
      >>> InMemoryFirewall.aliases
      ('memory', 'dry_run')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap


class FirewallBackend:
    """Base class for packet-filter backends.

    Brief:
      FirewallBackend is the narrow capability interface the block
      synchronizer drives. Every method either succeeds or raises
      FirewallError; subclasses must implement all of them.

    Inputs:
      - **config: Backend-specific settings (already validated when the class
        exposes get_config_model()).

    Outputs:
      - FirewallBackend instance.
    """

    aliases: tuple[str, ...] = ()

    def __init__(self, **config: Any) -> None:
        self.config: Dict[str, Any] = dict(config)

    @classmethod
    def get_config_model(cls):
        """Brief: Return an optional Pydantic model used to validate config.

        Inputs:
          - None.

        Outputs:
          - Model class or None when the backend accepts config as-is.
        """

        return None

    def describe(self) -> str:
        """Short human-readable description for log lines."""
        return self.__class__.__name__

    def ensure_base_structure(self) -> None:
        """Create the managed table/chain (default accept) when absent."""
        raise NotImplementedError(
            "FirewallBackend.ensure_base_structure() must be implemented by a subclass"
        )

    def add_drop_rule(self, address: str) -> bool:
        """Brief: Drop all packets whose source is *address*.

        Inputs:
          - address: Source address string.

        Outputs:
          - bool: True when a rule was added, False when one already existed.
        """

        raise NotImplementedError(
            "FirewallBackend.add_drop_rule() must be implemented by a subclass"
        )

    def list_drop_rules(self) -> List[DropRule]:
        """Return the DROP entries of the managed chain (empty when none)."""
        raise NotImplementedError(
            "FirewallBackend.list_drop_rules() must be implemented by a subclass"
        )

    def flush_chain(self) -> None:
        """Remove every rule from the managed chain."""
        raise NotImplementedError(
            "FirewallBackend.flush_chain() must be implemented by a subclass"
        )

    def persist_ruleset(self) -> None:
        """Write the active rules to durable configuration."""
        raise NotImplementedError(
            "FirewallBackend.persist_ruleset() must be implemented by a subclass"
        )

    def reload(self) -> None:
        """Apply the persisted configuration so it is active across restarts."""
        raise NotImplementedError(
            "FirewallBackend.reload() must be implemented by a subclass"
        )
