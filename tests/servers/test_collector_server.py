"""
Brief: Tests for the sentinel-port collector (ProbeCollector and CollectorServer).

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from datetime import datetime

import pytest

import portwarden.servers.collector as collector_mod
from portwarden.servers.collector import CollectorServer, ProbeCollector
from portwarden.stats import AddressLogStore, AddressStats


def _make_collector(tmp_path, save_interval: int = 10) -> ProbeCollector:
    store = AddressLogStore(str(tmp_path / "ips.log"))
    return ProbeCollector(store.load(), store, save_interval=save_interval)


def test_observe_logs_new_then_hit(tmp_path, caplog) -> None:
    """
    Brief: observe() logs [new] for the first connection and [hit] with the count afterwards.

    Inputs:
      - tmp_path, caplog fixtures

    Outputs:
      - None: Asserts log lines and accepted counter
    """
    caplog.set_level(logging.INFO, logger="portwarden.collector")
    collector = _make_collector(tmp_path)
    collector.observe("203.0.113.9", datetime(2024, 3, 1, 12, 0, 0))
    collector.observe("203.0.113.9", datetime(2024, 3, 1, 12, 1, 0))

    assert collector.accepted == 2
    assert "[new] 203.0.113.9" in caplog.text
    assert "[hit] 203.0.113.9" in caplog.text
    assert "(count=2)" in caplog.text


def test_observe_flushes_every_save_interval(tmp_path) -> None:
    """
    Brief: The log is written after every save_interval accepted connections.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts file absent before and present after the interval
    """
    collector = _make_collector(tmp_path, save_interval=3)
    path = tmp_path / "ips.log"

    collector.observe("10.0.0.1", datetime(2024, 3, 1, 12, 0, 0))
    collector.observe("10.0.0.2", datetime(2024, 3, 1, 12, 0, 1))
    assert not path.exists()

    collector.observe("10.0.0.1", datetime(2024, 3, 1, 12, 0, 2))
    assert path.read_text() == (
        "2024-03-01 12:00:02 10.0.0.1 2\n"
        "2024-03-01 12:00:01 10.0.0.2 1\n"
    )


def test_periodic_flush_failure_does_not_stop_collection(tmp_path, caplog) -> None:
    """
    Brief: An OSError during a periodic flush is logged and observe() still returns.

    Inputs:
      - tmp_path, caplog fixtures

    Outputs:
      - None: Asserts the error is logged and the hit was counted
    """
    collector = _make_collector(tmp_path, save_interval=1)

    def failing_save(stats):
        raise OSError("read-only file system")

    collector.store.save = failing_save  # type: ignore[assignment]
    caplog.set_level(logging.ERROR, logger="portwarden.collector")

    obs = collector.observe("10.0.0.9")
    assert obs.hit_count == 1
    assert "Periodic flush" in caplog.text
    assert "read-only file system" in caplog.text


def test_flush_returns_record_count(tmp_path) -> None:
    """
    Brief: flush() writes the table and returns how many records it saved.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts return value
    """
    collector = _make_collector(tmp_path)
    collector.observe("10.0.0.1")
    collector.observe("10.0.0.2")
    assert collector.flush() == 2


def test_server_counts_loopback_connections(tmp_path) -> None:
    """
    Brief: Real loopback connections to CollectorServer are counted per peer.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts 127.0.0.1 recorded with one hit per connection
    """
    collector = _make_collector(tmp_path, save_interval=100)
    server = CollectorServer("127.0.0.1", 0, collector)
    host, port = server.server_address[:2]
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        for _ in range(3):
            with socket.create_connection((host, port), timeout=2.0) as s:
                # Server closes without sending anything.
                s.settimeout(2.0)
                assert s.recv(1) == b""

        deadline = time.time() + 2.0
        while time.time() < deadline and collector.accepted < 3:
            time.sleep(0.01)
    finally:
        server.stop()
        t.join(timeout=2.0)

    rec = collector.stats.get("127.0.0.1")
    assert rec is not None
    assert rec.hit_count == 3
    assert not t.is_alive()


def test_server_bind_failure_is_logged_and_raised(tmp_path, caplog) -> None:
    """
    Brief: Binding to a port that is already in use raises OSError after logging.

    Inputs:
      - tmp_path, caplog fixtures

    Outputs:
      - None: Asserts OSError and error log
    """
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    port = blocker.getsockname()[1]
    caplog.set_level(logging.ERROR, logger="portwarden.collector")
    try:
        with pytest.raises(OSError):
            CollectorServer("127.0.0.1", port, _make_collector(tmp_path))
    finally:
        blocker.close()
    assert f"127.0.0.1:{port}" in caplog.text


def test_server_permission_error_message(tmp_path, monkeypatch, caplog) -> None:
    """
    Brief: PermissionError on bind logs a privileged-port hint and is re-raised.

    Inputs:
      - tmp_path, monkeypatch, caplog fixtures

    Outputs:
      - None: Asserts PermissionError and hint text
    """

    def deny(*a, **kw):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(collector_mod, "CollectorTCPServer", deny)
    caplog.set_level(logging.ERROR, logger="portwarden.collector")
    with pytest.raises(PermissionError):
        CollectorServer("0.0.0.0", 80, _make_collector(tmp_path))
    assert "Permission denied when binding to 0.0.0.0:80" in caplog.text


def test_handler_error_is_logged_not_raised(tmp_path, caplog) -> None:
    """
    Brief: An exception inside the handler is logged by the server and the loop survives.

    Inputs:
      - tmp_path, caplog fixtures

    Outputs:
      - None: Asserts a later connection is still counted
    """
    collector = _make_collector(tmp_path, save_interval=100)
    calls = {"n": 0}
    real_record = collector.record

    def flaky_record(address, now=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return real_record(address, now)

    collector.record = flaky_record  # type: ignore[assignment]
    caplog.set_level(logging.ERROR, logger="portwarden.collector")

    server = CollectorServer("127.0.0.1", 0, collector)
    host, port = server.server_address[:2]
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        for _ in range(2):
            with socket.create_connection((host, port), timeout=2.0) as s:
                s.settimeout(2.0)
                s.recv(1)
        deadline = time.time() + 2.0
        while time.time() < deadline and collector.accepted < 1:
            time.sleep(0.01)
    finally:
        server.stop()
        t.join(timeout=2.0)

    assert collector.accepted == 1
    assert "Error while handling connection" in caplog.text


def test_periodic_flush_runs_after_peer_is_closed(tmp_path) -> None:
    """
    Brief: The server closes the accepted socket before a due flush is written.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts shutdown/close precede the save
    """
    events = []
    collector = _make_collector(tmp_path, save_interval=1)
    real_save = collector.store.save

    def recording_save(stats):
        events.append("save")
        return real_save(stats)

    collector.store.save = recording_save  # type: ignore[assignment]

    class FakeRequest:
        def shutdown(self, how):
            events.append("shutdown")

        def close(self):
            events.append("close")

    server = CollectorServer("127.0.0.1", 0, collector)
    try:
        server.server.process_request(FakeRequest(), ("198.51.100.7", 40001))
    finally:
        server.server.server_close()

    assert events == ["shutdown", "close", "save"]
    assert collector.stats.get("198.51.100.7").hit_count == 1
    assert (tmp_path / "ips.log").read_text().endswith(" 198.51.100.7 1\n")


def test_record_defers_flush_until_flush_if_due(tmp_path) -> None:
    """
    Brief: record() only marks a flush as due; flush_if_due() writes it once.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts file appears only after flush_if_due()
    """
    collector = _make_collector(tmp_path, save_interval=2)
    collector.record("10.0.0.1")
    assert collector.flush_if_due() is False
    collector.record("10.0.0.2")
    assert not (tmp_path / "ips.log").exists()
    assert collector.flush_if_due() is True
    assert (tmp_path / "ips.log").exists()
    assert collector.flush_if_due() is False
