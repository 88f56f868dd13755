from __future__ import annotations

import io
import logging

from canonledger import logging_setup
from canonledger.logging_setup import resolve_level


def test_resolve_level(monkeypatch):
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(" 15 ") == 15
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level("nonsense") == logging.INFO

    monkeypatch.setenv("CANONLEDGER_LOG_LEVEL", "warning")
    assert resolve_level(None) == logging.WARNING
    monkeypatch.delenv("CANONLEDGER_LOG_LEVEL")
    assert resolve_level(None) == logging.INFO


def test_configure_logging_attaches_one_handler(monkeypatch):
    root = logging.getLogger("canonledger")
    monkeypatch.setattr(logging_setup, "_configured", False)
    monkeypatch.setattr(root, "handlers", [logging.NullHandler()])
    monkeypatch.setattr(root, "level", root.level)
    monkeypatch.setattr(root, "propagate", root.propagate)

    stream = io.StringIO()
    logging_setup.configure_logging("DEBUG", stream=stream)
    logging_setup.configure_logging("ERROR", stream=io.StringIO())
    logging_setup.get_logger("canonledger.sample").debug("ledger:posted txn_id=%s lines=%d", "t1", 2)

    assert len(root.handlers) == 1
    assert not isinstance(root.handlers[0], logging.NullHandler)
    assert "canonledger.sample DEBUG ledger:posted txn_id=t1 lines=2" in stream.getvalue()
