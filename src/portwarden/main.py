from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from typing import Any, Callable, Dict, List

import yaml

from .config.config_parser import (
    build_firewall,
    load_collector_config,
    parse_config_file,
    resolve_config_path,
)
from .config.logging_config import init_logging
from .firewall.base import FirewallError
from .servers.collector import CollectorServer, ProbeCollector
from .stats import AddressLogStore
from .sync import BlockSynchronizer, LogFileMissingError, LogFileUnreadableError

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 3

HARD_KILL_TIMEOUT = 10.0

InputFn = Callable[[str], str]


def ask_yes_no(prompt: str, input_fn: InputFn = input) -> bool:
    """Brief: Ask a yes/no question that defaults to no.

    Inputs:
      - prompt: Text shown to the operator.
      - input_fn: Callable used to read the answer (defaults to input()).

    Outputs:
      - bool: True only for an explicit "y" or "yes" (any case); empty input,
        any other text and end-of-input all mean no.
    """

    try:
        answer = input_fn(prompt)
    except EOFError:
        return False
    return str(answer).strip().lower() in ("y", "yes")


def _make_synchronizer(cfg: Dict[str, Any]) -> BlockSynchronizer:
    collector_cfg = load_collector_config(cfg)
    return BlockSynchronizer(build_firewall(cfg), collector_cfg.log_file)


def run_collector(cfg: Dict[str, Any]) -> int:
    """
    Run the sentinel-port collector until a termination signal arrives.

    Inputs:
        cfg: Parsed configuration mapping.

    Returns:
        0 after a clean shutdown with a successful final flush; 1 when the
        log directory or listening socket cannot be set up, the server thread
        dies, or the final flush fails.

    Example use:
        CLI:
            portwarden --config /etc/portwarden.yaml collect
    """
    logger = logging.getLogger("portwarden.main")
    collector_cfg = load_collector_config(cfg)

    store = AddressLogStore(collector_cfg.log_file)
    try:
        store.ensure_directory()
    except OSError as exc:
        logger.error("Cannot create directory for %s: %s", store.path, exc)
        return EXIT_FAILURE

    try:
        stats = store.load()
    except OSError as exc:
        logger.error("Cannot read %s: %s", store.path, exc)
        return EXIT_FAILURE
    logger.info("Loaded %d address records from %s", len(stats), store.path)

    collector = ProbeCollector(stats, store, save_interval=collector_cfg.save_interval)
    try:
        server = CollectorServer(
            collector_cfg.host,
            collector_cfg.port,
            collector,
            backlog=collector_cfg.backlog,
        )
    except OSError:
        return EXIT_FAILURE

    # shutdown_event is set by SIGINT/SIGTERM/SIGHUP; flush_pending by SIGUSR1.
    # Handlers only set events; the flush and teardown run on this thread.
    shutdown_event = threading.Event()
    shutdown_complete = threading.Event()
    flush_pending = threading.Event()
    hard_kill_timer: threading.Timer | None = None
    exit_code = EXIT_OK

    def _request_shutdown(reason: str) -> None:
        nonlocal hard_kill_timer
        if shutdown_event.is_set():
            return
        shutdown_event.set()
        logger.info("Received %s, stopping collector", reason)

        def _force_exit() -> None:
            if shutdown_complete.is_set():
                return
            try:
                logger.error(
                    "Hard-kill timeout exceeded after %s; sending SIGKILL to self",
                    reason,
                )
                os.kill(os.getpid(), signal.SIGKILL)
            except Exception:
                os._exit(EXIT_FAILURE)

        hard_kill_timer = threading.Timer(HARD_KILL_TIMEOUT, _force_exit)
        hard_kill_timer.daemon = True
        hard_kill_timer.start()

    def _sigusr1_handler(_signum, _frame):
        flush_pending.set()

    handlers = {
        "SIGINT": lambda _s, _f: _request_shutdown("SIGINT"),
        "SIGTERM": lambda _s, _f: _request_shutdown("SIGTERM"),
        "SIGHUP": lambda _s, _f: _request_shutdown("SIGHUP"),
        "SIGUSR1": _sigusr1_handler,
    }
    previous: Dict[int, Any] = {}
    for name, handler in handlers.items():
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            previous[signum] = signal.signal(signum, handler)
            logger.debug("Installed %s handler", name)
        except Exception:
            logger.warning("Could not install %s handler on this platform", name)

    server_thread = threading.Thread(
        target=server.serve_forever, name="portwarden-collector", daemon=True
    )
    server_thread.start()
    host, port = server.server_address[:2]
    logger.info("Listening on TCP %s:%d; press Ctrl+C to stop", host, port)

    try:
        while not shutdown_event.wait(0.5):
            if flush_pending.is_set():
                flush_pending.clear()
                try:
                    collector.flush()
                except OSError as exc:
                    logger.error("On-demand flush failed: %s", exc)
            if not server_thread.is_alive():
                logger.error("Collector server thread exited unexpectedly")
                exit_code = EXIT_FAILURE
                break
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        server.stop()
        server_thread.join(timeout=5.0)
        try:
            written = collector.flush()
            logger.info("Collector stopped; %d final records saved", written)
        except OSError as exc:
            logger.error("Final flush to %s failed: %s", store.path, exc)
            exit_code = EXIT_FAILURE
        shutdown_complete.set()
        if hard_kill_timer is not None:
            hard_kill_timer.cancel()
        for signum, old in previous.items():
            try:
                signal.signal(signum, old)
            except Exception:
                logger.debug("Could not restore handler for signal %d", signum)

    return exit_code


def run_block(cfg: Dict[str, Any]) -> int:
    """Block every collected address; 0 ok, 3 partial, 1 failed."""
    logger = logging.getLogger("portwarden.main")
    sync = _make_synchronizer(cfg)
    try:
        report = sync.block()
    except (LogFileMissingError, LogFileUnreadableError) as exc:
        logger.error("%s; no firewall changes made", exc)
        print(f"[ERROR] {exc}; nothing blocked")
        return EXIT_FAILURE
    except FirewallError as exc:
        logger.error("Firewall unavailable: %s", exc)
        print(f"[ERROR] firewall unavailable: {exc}")
        return EXIT_FAILURE

    for address, reason in sorted(report.failed.items()):
        print(f"[FAIL] {address}: {reason}")
    summary = (
        f"{report.processed} addresses processed "
        f"(added {len(report.added)}, already blocked {len(report.already_blocked)}, "
        f"failed {len(report.failed)})"
    )
    if report.status == "ok":
        print(f"[OK] {summary}; ruleset persisted and reloaded")
        return EXIT_OK
    if report.status == "partial":
        print(f"[PARTIAL] {summary}; ruleset persisted and reloaded")
        return EXIT_PARTIAL
    if report.persist_error:
        print(f"[ERROR] {summary}; ruleset NOT persisted: {report.persist_error}")
    else:
        print(f"[ERROR] {summary}")
    return EXIT_FAILURE


def run_clear(
    cfg: Dict[str, Any], assume_yes: bool = False, input_fn: InputFn = input
) -> int:
    """Flush the managed chain after an explicit yes; declining is a no-op."""
    sync = _make_synchronizer(cfg)
    confirmed = assume_yes or ask_yes_no(
        f"Remove ALL drop rules from {sync.firewall.describe()}? [y/N]: ", input_fn
    )
    report = sync.clear(confirmed=confirmed)
    if report.status == "cancelled":
        print("[CANCEL] clear cancelled; no rules changed")
        return EXIT_OK
    if report.status == "cleared":
        print(f"[OK] removed {report.removed} drop rules; ruleset persisted and reloaded")
        return EXIT_OK
    print(f"[ERROR] clear failed: {report.error}")
    return EXIT_FAILURE


def run_show(cfg: Dict[str, Any]) -> int:
    """Print the current DROP entries and their count."""
    logger = logging.getLogger("portwarden.main")
    sync = _make_synchronizer(cfg)
    try:
        report = sync.show()
    except FirewallError as exc:
        logger.error("Could not list firewall rules: %s", exc)
        print(f"[ERROR] could not list rules: {exc}")
        return EXIT_FAILURE

    print(f"Blocked addresses ({sync.firewall.describe()}):")
    if not report.rules:
        print("  (no drop rules)")
    for rule in report.rules:
        print(f"  {rule.text}")
    print(f"Total: {report.count}")
    return EXIT_OK


MENU_TEXT = """==============================
 portwarden
==============================
 1) Collect addresses (foreground)
 2) Block collected addresses
 3) Clear all drop rules
 4) Show blocked addresses
 5) Exit
=============================="""


def run_menu(cfg: Dict[str, Any], input_fn: InputFn = input) -> int:
    """Interactive menu over collect/block/clear/show; returns 0 on exit."""
    actions: Dict[str, Callable[[], int]] = {
        "1": lambda: run_collector(cfg),
        "2": lambda: run_block(cfg),
        "3": lambda: run_clear(cfg, input_fn=input_fn),
        "4": lambda: run_show(cfg),
    }
    while True:
        print(MENU_TEXT)
        try:
            choice = str(input_fn("Choose [1-5]: ")).strip()
        except EOFError:
            print()
            return EXIT_OK
        if choice == "5":
            print("[EXIT] bye")
            return EXIT_OK
        action = actions.get(choice)
        if action is None:
            print(f"[ERROR] invalid choice {choice!r}, please try again")
            continue
        try:
            action()
        except (ValueError, KeyError, TypeError) as exc:
            logging.getLogger("portwarden.main").error("Configuration error: %s", exc)
            print(f"[ERROR] configuration error: {exc}")
        print()


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the portwarden CLI.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        An exit code: 0 success, 1 failure, 3 partial block.

    Example use:
        CLI:
            PYTHONPATH=src python -m portwarden.main --config config.yaml block
    """
    parser = argparse.ArgumentParser(
        description="Collect sentinel-port probes and block their sources"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: $PORTWARDEN_CONFIG or built-in defaults)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("collect", help="Listen on the sentinel port and record peers")
    sub.add_parser("block", help="Add DROP rules for every collected address")
    clear_p = sub.add_parser("clear", help="Remove all DROP rules (asks first)")
    clear_p.add_argument(
        "--yes", action="store_true", help="Do not prompt; confirm the clear"
    )
    sub.add_parser("show", help="List current DROP rules")
    sub.add_parser("menu", help="Interactive menu (default)")
    args = parser.parse_args(argv)

    config_path = resolve_config_path(args.config)
    try:
        cfg = parse_config_file(config_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(str(exc))
        return EXIT_FAILURE

    init_logging(cfg.get("logging"))
    logger = logging.getLogger("portwarden.main")
    logger.info("Loaded config from %s", config_path or "<built-in defaults>")

    command = args.command or "menu"
    try:
        if command == "collect":
            return run_collector(cfg)
        if command == "block":
            return run_block(cfg)
        if command == "clear":
            return run_clear(cfg, assume_yes=args.yes)
        if command == "show":
            return run_show(cfg)
        return run_menu(cfg)
    except (ValueError, KeyError, TypeError) as exc:
        logger.error("Configuration error: %s", exc)
        print(f"[ERROR] configuration error: {exc}")
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
