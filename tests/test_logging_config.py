"""
Brief: Tests for portwarden.config.logging_config.init_logging and formatters.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers
from pathlib import Path

from portwarden.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
)


def test_init_logging_adds_stderr_handler():
    """
    Brief: init_logging configures root logger with a stderr handler by default.

    Inputs:
      - cfg: minimal dict with level

    Outputs:
      - None: Asserts StreamHandler present and level applied
    """
    init_logging({"level": "debug"})
    root = logging.getLogger()
    assert any(isinstance(h, logging.StreamHandler) for h in root.handlers)
    assert root.level == logging.DEBUG


def test_init_logging_defaults_and_unknown_level():
    """
    Brief: None config and unknown level names fall back to info.

    Inputs:
      - None

    Outputs:
      - None
    """
    init_logging(None)
    assert logging.getLogger().level == logging.INFO
    init_logging({"level": "chatty", "stderr": False})
    root = logging.getLogger()
    assert root.level == logging.INFO
    assert root.handlers == []


def test_init_logging_file_handler_writes(tmp_path):
    """
    Brief: init_logging creates the log directory and writes formatted entries.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - None: Asserts file created and contains message and tag
    """
    log_path = tmp_path / "logs" / "portwarden.log"
    init_logging({"level": "info", "stderr": False, "file": str(log_path)})
    logging.getLogger("portwarden.test").info("file message")
    for h in logging.getLogger().handlers:
        h.flush()
    content = Path(log_path).read_text()
    assert "file message" in content
    assert "[info] portwarden.test:" in content
    assert content.split(" ", 1)[0].endswith("Z")


def test_init_logging_syslog_success(monkeypatch):
    """
    Brief: init_logging attaches a syslog handler for bool and dict configs.

    Inputs:
      - monkeypatch: replaces SysLogHandler

    Outputs:
      - None: Asserts address, facility and tag handling
    """
    created = {}

    class DummySysLogHandler(logging.Handler):
        LOG_USER = 8
        LOG_DAEMON = 24

        def __init__(self, address=None, facility=None):
            super().__init__()
            created["address"] = address
            created["facility"] = facility

        def setFormatter(self, fmt):
            created["formatter"] = fmt

        def emit(self, record):
            pass

    monkeypatch.setattr(logging.handlers, "SysLogHandler", DummySysLogHandler)
    init_logging({"stderr": False, "syslog": True})
    assert created["address"] == "/dev/log"
    assert created["facility"] == 8
    assert created["formatter"].tag == "portwarden"

    created.clear()
    init_logging(
        {
            "stderr": False,
            "syslog": {"address": ["localhost", 514], "facility": "daemon", "tag": "pw"},
        }
    )
    assert created["address"] == ("localhost", 514)
    assert created["facility"] == 24
    assert created["formatter"].tag == "pw"


def test_init_logging_syslog_failure_warns(monkeypatch):
    """
    Brief: init_logging logs a warning if syslog handler setup fails.

    Inputs:
      - monkeypatch: make SysLogHandler raise OSError

    Outputs:
      - None: Asserts warning emitted
    """

    class FailingSysLogHandler:
        LOG_USER = 8

        def __init__(self, *a, **kw):
            raise OSError("no syslog")

    monkeypatch.setattr(logging.handlers, "SysLogHandler", FailingSysLogHandler)

    caught = {"msg": None}
    root = logging.getLogger()

    def fake_warning(msg, *args, **kwargs):
        caught["msg"] = msg % args if args else str(msg)

    monkeypatch.setattr(root, "warning", fake_warning)

    init_logging({"syslog": True})
    assert caught["msg"] and "Failed to configure syslog" in caught["msg"]


def test_formatters_produce_expected_tags():
    """
    Brief: BracketLevelFormatter and SyslogFormatter include bracketed tags.

    Inputs:
      - LogRecord instances at different levels

    Outputs:
      - None: Asserts formatted strings contain expected tags
    """
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")
    rec = logging.LogRecord("n", logging.ERROR, __file__, 1, "m", (), None)
    out = fmt.format(rec)
    assert "[error]" in out and "n:" in out

    s = SyslogFormatter()
    rec2 = logging.LogRecord("n2", logging.WARNING, __file__, 2, "m2", (), None)
    assert s.format(rec2) == "portwarden: [warn] n2: m2"

    s_untagged = SyslogFormatter(tag="")
    assert s_untagged.format(rec2).startswith("[warn] n2:")
