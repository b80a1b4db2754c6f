import logging

from vmwatchdog.core.monitoring.error_handler import (
    ApiStatusError,
    AuthenticationError,
    ConfigError,
    ErrorHandler,
    HeartbeatParseError,
    MalformedResponseError,
    RecoverableError,
    TransportError,
)


def test_error_handler_classifies_recoverable():
    handler = ErrorHandler()
    assert handler.handle(RecoverableError("retry"), "unit-test") == "recoverable"
    assert handler.handle(HeartbeatParseError("bad content"), "unit-test") == "recoverable"


def test_error_handler_classifies_fatal():
    handler = ErrorHandler()
    classification = handler.handle(ConfigError("bad config"), "unit-test")
    assert classification == "fatal"


def test_error_handler_classifies_hypervisor_errors():
    handler = ErrorHandler()
    assert handler.classify(TransportError("timed out")) == "transport"
    assert handler.classify(ApiStatusError("HTTP 500", status_code=500)) == "status"
    assert handler.classify(AuthenticationError("HTTP 401", status_code=401)) == "status"
    assert handler.classify(MalformedResponseError("no data")) == "malformed"


def test_unknown_errors_are_logged_with_traceback(caplog):
    handler = ErrorHandler()
    with caplog.at_level(logging.ERROR):
        try:
            raise RuntimeError("boom")
        except RuntimeError as exc:
            classification = handler.handle(exc, "tick for VMID 101")
    assert classification == "unknown"
    record = caplog.records[-1]
    assert "tick for VMID 101" in record.getMessage()
    assert record.exc_info is not None
