from __future__ import annotations

import logging

from lazymcp.main import _parse_args, _SessionIdFilter
from lazymcp.session_logging import session_extra


def test_session_filter_defaults_to_system() -> None:
    record = logging.LogRecord("lazymcp", logging.INFO, __file__, 1, "hello", None, None)
    assert _SessionIdFilter().filter(record) is True
    assert record.session_id == "system"


def test_session_filter_keeps_existing_id() -> None:
    record = logging.LogRecord("lazymcp", logging.INFO, __file__, 1, "hello", None, None)
    record.session_id = "abc123"
    _SessionIdFilter().filter(record)
    assert record.session_id == "abc123"


def test_session_extra() -> None:
    assert session_extra("abc") == {"session_id": "abc"}
    assert session_extra(None) == {"session_id": "system"}


def test_cli_arguments() -> None:
    args = _parse_args(["--transport", "http", "--port", "9000"])
    assert (args.transport, args.host, args.port) == ("http", None, 9000)
    assert _parse_args([]).transport is None
