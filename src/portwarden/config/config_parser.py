"""Configuration parsing and normalization helpers for portwarden.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files (or falling back to built-in defaults)
    - JSON Schema validation
    - typed normalization of the collector section
    - building the configured firewall backend

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config objects and constructed firewall backends
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from ..firewall.base import FirewallBackend
from ..firewall.registry import load_firewall_backend
from .config_schema import validate_config

CONFIG_ENV_VAR = "PORTWARDEN_CONFIG"


class CollectorConfig(BaseModel):
    """Brief: Typed settings for the sentinel-port collector.

    Inputs:
      - host: Listen address.
      - port: Sentinel TCP port.
      - log_file: Address log written by the collector and read by "block".
      - save_interval: Flush after this many accepted connections.
      - backlog: Listen queue size.

    Outputs:
      - CollectorConfig instance with normalized types.
    """

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=12345, ge=0, le=65535)
    log_file: str = Field(default="/var/log/tcpping_ips.log")
    save_interval: int = Field(default=10, ge=1)
    backlog: int = Field(default=5, ge=1)

    class Config:
        extra = "forbid"


def resolve_config_path(
    cli_path: Optional[str], environ: Optional[Dict[str, str]] = None
) -> Optional[str]:
    """Brief: Pick the config path from --config or PORTWARDEN_CONFIG.

    Inputs:
      - cli_path: Value of --config (may be None).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - Optional[str]: Path to read, or None to use built-in defaults.
    """

    if cli_path:
        return cli_path
    env = os.environ if environ is None else environ
    value = (env.get(CONFIG_ENV_VAR) or "").strip()
    return value or None


def parse_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Brief: Read and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file, or None for an
        empty configuration (all defaults).

    Outputs:
      - dict: Parsed configuration mapping.

    Raises:
      - OSError: When the file cannot be read.
      - ValueError: When the YAML root is not a mapping or schema
        validation fails.
    """

    if config_path is None:
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    validate_config(cfg, config_path=config_path)
    return cfg


def load_collector_config(cfg: Dict[str, Any]) -> CollectorConfig:
    """Brief: Build CollectorConfig from the ``collector`` section.

    Inputs:
      - cfg: Parsed configuration mapping.

    Outputs:
      - CollectorConfig.

    Raises:
      - ValueError: When the section is not a mapping or fails validation.
    """

    section = cfg.get("collector") or {}
    if not isinstance(section, dict):
        raise ValueError("config.collector must be a mapping")
    try:
        return CollectorConfig(**section)
    except Exception as exc:
        raise ValueError(f"Invalid collector configuration: {exc}") from exc


def build_firewall(cfg: Dict[str, Any]) -> FirewallBackend:
    """Brief: Construct the firewall backend from the ``firewall`` section.

    Inputs:
      - cfg: Parsed configuration mapping.

    Outputs:
      - FirewallBackend instance (nftables by default).
    """

    return load_firewall_backend(cfg.get("firewall"))
