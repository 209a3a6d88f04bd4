"""nftables backend driving the ``nft`` command-line tool.

Every call runs ``nft`` with an explicit argument vector (never a shell) and
checks the exit status; failures surface as FirewallError carrying the command
and its stderr.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import subprocess
from typing import List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from ..utils.files import atomic_write_text
from .base import DropRule, FirewallBackend, FirewallError, firewall_aliases

logger = logging.getLogger(__name__)

CONF_HEADER = "#!/usr/sbin/nft -f\n# managed by portwarden\n"

_DROP_RE = re.compile(r"\bdrop\b")
_SADDR_RE = re.compile(r"\bip6? saddr (\S+)")
_HANDLE_RE = re.compile(r"\s*# handle (\d+)\s*$")
_MISSING_MARKERS = ("No such file or directory", "does not exist")


class NftablesConfig(BaseModel):
    """Brief: Typed configuration for NftablesFirewall.

    Inputs:
      - nft_binary: Path or name of the nft executable.
      - family/table/chain: Managed chain coordinates.
      - conf_path: Durable configuration file written by persist_ruleset().
      - persist_mode: "replace" writes the whole active ruleset; "merge"
        rewrites only the managed table inside the existing file.
      - reload_command: argv run by reload(); empty disables reloading.
      - timeout: Seconds allowed for each external command.
    """

    nft_binary: str = Field(default="nft")
    family: str = Field(default="inet")
    table: str = Field(default="filter")
    chain: str = Field(default="input")
    conf_path: str = Field(default="/etc/nftables.conf")
    persist_mode: str = Field(default="replace")
    reload_command: List[str] = Field(
        default_factory=lambda: ["systemctl", "restart", "nftables"]
    )
    timeout: float = Field(default=30.0)

    class Config:
        extra = "forbid"


def strip_table_block(text: str, family: str, table: str) -> str:
    """Brief: Remove every ``table <family> <table> { ... }`` block from *text*.

    Inputs:
      - text: nftables configuration source.
      - family: Table family (e.g. "inet").
      - table: Table name (e.g. "filter").

    Outputs:
      - str: *text* without the matching blocks; everything else is kept
        verbatim. An unterminated block is removed through end of text.

    Example:
      >>> strip_table_block("table inet filter {\\n}\\ntable ip nat {\\n}\\n", "inet", "filter")
      'table ip nat {\\n}\\n'
    """

    pattern = re.compile(
        rf"^[ \t]*table[ \t]+{re.escape(family)}[ \t]+{re.escape(table)}[ \t]*\{{",
        re.MULTILINE,
    )
    while True:
        match = pattern.search(text)
        if match is None:
            return text
        depth = 0
        end = len(text)
        for idx in range(match.end() - 1, len(text)):
            ch = text[idx]
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = idx + 1
                    break
        if end < len(text) and text[end] == "\n":
            end += 1
        text = text[: match.start()] + text[end:]


@firewall_aliases("nftables", "nft")
class NftablesFirewall(FirewallBackend):
    """
    Firewall backend for the Linux nftables subsystem.

    Example use:
        In config.yaml:
        firewall:
          module: nftables
          config:
            family: inet
            table: filter
            chain: input
            persist_mode: merge
    """

    @classmethod
    def get_config_model(cls):
        """Brief: Return the Pydantic model used to validate backend configuration.

        Inputs:
          - None.

        Outputs:
          - NftablesConfig class.
        """

        return NftablesConfig

    def __init__(self, **config) -> None:
        super().__init__(**config)
        cfg = NftablesConfig(**self.config)
        mode = cfg.persist_mode.strip().lower()
        if mode not in ("replace", "merge"):
            raise ValueError(
                f"persist_mode must be 'replace' or 'merge', got {cfg.persist_mode!r}"
            )
        self.nft_binary = cfg.nft_binary
        self.family = cfg.family
        self.table = cfg.table
        self.chain = cfg.chain
        self.conf_path = cfg.conf_path
        self.persist_mode = mode
        self.reload_command = list(cfg.reload_command)
        self.timeout = float(cfg.timeout)
        self._known: Optional[Set[str]] = None

    def describe(self) -> str:
        return f"nftables {self.family} {self.table} {self.chain}"

    # -- command helpers -------------------------------------------------

    def _exec(self, argv: Sequence[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FirewallError(
                f"command not found: {argv[0]} (is nftables installed?)",
                command=argv,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise FirewallError(
                f"command timed out after {self.timeout:.0f}s: {' '.join(argv)}",
                command=argv,
            ) from exc

    def _nft(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        argv = [self.nft_binary, *args]
        logger.debug("Running %s", " ".join(argv))
        proc = self._exec(argv)
        if check and proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise FirewallError(
                f"{' '.join(argv)} failed (exit {proc.returncode}): {stderr}",
                command=argv,
                stderr=stderr,
            )
        return proc

    def _chain_args(self) -> Tuple[str, str, str]:
        return (self.family, self.table, self.chain)

    @staticmethod
    def _source_match(address: str) -> Tuple[str, str]:
        try:
            ip = ipaddress.ip_address(address.strip())
        except ValueError as exc:
            raise FirewallError(f"not a valid IP address: {address!r}") from exc
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        return ("ip" if ip.version == 4 else "ip6", str(ip))

    # -- FirewallBackend -------------------------------------------------

    def ensure_base_structure(self) -> None:
        tables = self._nft("list", "tables").stdout or ""
        wanted = f"table {self.family} {self.table}"
        if wanted not in (line.strip() for line in tables.splitlines()):
            logger.info("Creating nftables table %s %s", self.family, self.table)
            self._nft("add", "table", self.family, self.table)

        probe = self._nft("list", "chain", *self._chain_args(), check=False)
        if probe.returncode == 0:
            logger.debug("nftables chain %s already present", self.describe())
            return
        logger.info("Creating nftables chain %s (policy accept)", self.describe())
        self._nft(
            "add",
            "chain",
            *self._chain_args(),
            "{ type filter hook input priority 0 ; policy accept ; }",
        )

    def list_drop_rules(self) -> List[DropRule]:
        proc = self._nft("-a", "list", "chain", *self._chain_args(), check=False)
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            if any(marker in stderr for marker in _MISSING_MARKERS):
                return []
            raise FirewallError(
                f"listing {self.describe()} failed (exit {proc.returncode}): {stderr}",
                stderr=stderr,
            )

        rules: List[DropRule] = []
        for raw in (proc.stdout or "").splitlines():
            line = raw.strip()
            if not line or line.startswith(("table ", "chain ", "type ", "}", "#")):
                continue
            if not _DROP_RE.search(line):
                continue
            handle: Optional[int] = None
            m_handle = _HANDLE_RE.search(line)
            if m_handle:
                handle = int(m_handle.group(1))
                line = line[: m_handle.start()].rstrip()
            m_addr = _SADDR_RE.search(line)
            rules.append(
                DropRule(
                    address=m_addr.group(1) if m_addr else None,
                    text=line,
                    handle=handle,
                )
            )
        return rules

    def _known_drops(self) -> Set[str]:
        if self._known is None:
            self._known = {r.address for r in self.list_drop_rules() if r.address}
        return self._known

    def add_drop_rule(self, address: str) -> bool:
        selector, addr = self._source_match(address)
        known = self._known_drops()
        if addr in known:
            return False
        self._nft("add", "rule", *self._chain_args(), selector, "saddr", addr, "drop")
        known.add(addr)
        return True

    def flush_chain(self) -> None:
        self._nft("flush", "chain", *self._chain_args())
        self._known = set()

    def persist_ruleset(self) -> None:
        if self.persist_mode == "replace":
            listing = self._nft("list", "ruleset").stdout or ""
            text = CONF_HEADER + "flush ruleset\n\n" + listing.strip() + "\n"
        else:
            listing = self._nft("list", "table", self.family, self.table).stdout or ""
            existing = CONF_HEADER + "flush ruleset\n"
            if os.path.isfile(self.conf_path):
                try:
                    with open(self.conf_path, "r", encoding="utf-8") as f:
                        existing = f.read()
                except OSError as exc:
                    raise FirewallError(
                        f"could not read {self.conf_path}: {exc}"
                    ) from exc
            kept = strip_table_block(existing, self.family, self.table).rstrip("\n")
            text = kept + "\n\n" + listing.strip() + "\n"

        try:
            atomic_write_text(self.conf_path, text, mode=0o755)
        except OSError as exc:
            raise FirewallError(f"could not write {self.conf_path}: {exc}") from exc
        logger.info(
            "Persisted nftables ruleset to %s (mode=%s)", self.conf_path, self.persist_mode
        )

    def reload(self) -> None:
        if not self.reload_command:
            logger.debug("No reload_command configured; skipping reload")
            return
        argv = list(self.reload_command)
        proc = self._exec(argv)
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise FirewallError(
                f"{' '.join(argv)} failed (exit {proc.returncode}): {stderr}",
                command=argv,
                stderr=stderr,
            )
        logger.info("Reloaded firewall via %s", " ".join(argv))
