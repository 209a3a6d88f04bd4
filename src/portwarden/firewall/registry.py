from __future__ import annotations

import difflib
import functools
import importlib
import inspect
import pkgutil
import re
from typing import Any, Dict, Iterable, Optional, Type

from .base import FirewallBackend

_CAMEL_1 = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_2 = re.compile(r"([a-z0-9])([A-Z])")

DEFAULT_BACKEND = "nftables"


def _camel_to_snake(name: str) -> str:
    s1 = _CAMEL_1.sub(r"\1_\2", name)
    s2 = _CAMEL_2.sub(r"\1_\2", s1)
    return s2.lower()


def _default_alias_for(cls: Type[FirewallBackend]) -> str:
    name = cls.__name__
    for suffix in ("FirewallBackend", "Firewall", "Backend"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return _camel_to_snake(name)


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _iter_backend_modules(
    package_name: str = "portwarden.firewall",
) -> Iterable[str]:
    pkg = importlib.import_module(package_name)
    for modinfo in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
        yield modinfo.name


@functools.lru_cache(maxsize=4)
def discover_firewall_backends(
    package_name: str = "portwarden.firewall",
) -> Dict[str, Type[FirewallBackend]]:
    """Brief: Discover FirewallBackend subclasses and register them by alias.

    Inputs:
      - package_name: Package path to scan.

    Outputs:
      - Dict[str, Type[FirewallBackend]] mapping normalized aliases to classes.
    """

    registry: Dict[str, Type[FirewallBackend]] = {}

    for modname in _iter_backend_modules(package_name):
        module = importlib.import_module(modname)

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if not issubclass(obj, FirewallBackend) or obj is FirewallBackend:
                continue

            claimed = set(_normalize(a) for a in (getattr(obj, "aliases", ()) or ()))
            claimed.add(_normalize(_default_alias_for(obj)))

            for alias in claimed:
                if alias in registry and registry[alias] is not obj:
                    other = registry[alias]
                    raise ValueError(
                        f"Duplicate firewall backend alias '{alias}' claimed by {obj.__module__}.{obj.__name__} "
                        f"and {other.__module__}.{other.__name__}"
                    )
                registry[alias] = obj

    return registry


def get_firewall_class(identifier: str) -> Type[FirewallBackend]:
    """Brief: Resolve identifier to a firewall backend class.

    Inputs:
      - identifier: Dotted import path or alias.

    Outputs:
      - FirewallBackend subclass.
    """

    ident = str(identifier).strip()
    if "." in ident:
        modname, _, classname = ident.rpartition(".")
        if not modname or not classname:
            raise ValueError(f"Invalid firewall backend path '{identifier}'")
        module = importlib.import_module(modname)
        cls = getattr(module, classname)
        if not (inspect.isclass(cls) and issubclass(cls, FirewallBackend)):
            raise TypeError(f"{identifier} is not a FirewallBackend subclass")
        return cls

    reg = discover_firewall_backends()
    key = _normalize(ident)
    try:
        return reg[key]
    except KeyError:
        suggestions = difflib.get_close_matches(key, list(reg.keys()), n=3)
        raise KeyError(
            f"Unknown firewall backend alias '{identifier}'. "
            f"Known aliases: {', '.join(sorted(reg.keys()))}. "
            f"Suggestions: {suggestions}"
        )


def _validate_backend_config(
    backend_cls: Type[FirewallBackend], config: Optional[dict]
) -> Dict[str, Any]:
    """Brief: Validate backend configuration via its optional Pydantic model.

    Inputs:
      - backend_cls: FirewallBackend subclass.
      - config: Raw config mapping (may be None).

    Outputs:
      - dict: Normalized config mapping to pass into backend_cls.

    Raises:
      - ValueError: when the model rejects the configuration.
    """

    cfg = dict(config or {})
    model_cls = backend_cls.get_config_model()
    if model_cls is None:
        return cfg
    try:
        model_instance = model_cls(**cfg)
    except Exception as exc:
        raise ValueError(
            f"Invalid configuration for firewall backend {backend_cls.__name__}: {exc}"
        ) from exc

    for attr in ("model_dump", "dict"):
        method = getattr(model_instance, attr, None)
        if callable(method):
            return dict(method())
    return cfg


def load_firewall_backend(cfg: Optional[object]) -> FirewallBackend:
    """Brief: Build the configured firewall backend.

    Inputs:
      - cfg: Firewall config. Supported forms:
        - None: Use the default nftables backend.
        - str: Alias or dotted import path.
        - dict: {"module": <str>, "config": <dict>}.

    Outputs:
      - FirewallBackend instance.

    Example:
      firewall:
        module: nftables
        config:
          persist_mode: merge
    """

    if cfg is None:
        module: Any = DEFAULT_BACKEND
        subcfg: Dict[str, Any] = {}
    elif isinstance(cfg, str):
        module = cfg
        subcfg = {}
    elif isinstance(cfg, dict):
        module = cfg.get("module")
        if isinstance(module, str):
            module = module.strip() or None
        if module is None:
            module = DEFAULT_BACKEND
        subcfg = cfg.get("config") if isinstance(cfg.get("config"), dict) else {}
    else:
        raise TypeError("firewall config must be a mapping, string, or null")

    cls = get_firewall_class(str(module))
    return cls(**_validate_backend_config(cls, subcfg))
