from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional


class WatchdogError(Exception):
    pass


class RecoverableError(WatchdogError):
    pass


class FatalError(WatchdogError):
    pass


class HypervisorError(RecoverableError):
    pass


class TransportError(HypervisorError):
    """Network-level failure that survived the client's retries."""


class ApiStatusError(HypervisorError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiStatusError):
    pass


class MalformedResponseError(HypervisorError):
    pass


class HeartbeatParseError(RecoverableError):
    pass


class NotificationError(RecoverableError):
    pass


class ConfigError(FatalError):
    pass


@dataclass
class ErrorHandler:
    logger_name: str = __name__

    def handle(self, exc: Exception, context: str) -> str:
        logger = logging.getLogger(self.logger_name)
        classification = self.classify(exc)
        if classification == "unknown":
            logger.error("Unexpected error in %s: %s", context, exc, exc_info=True)
        elif classification == "fatal":
            logger.critical("Fatal error in %s: %s", context, exc)
        else:
            logger.warning("Error in %s (%s): %s", context, classification, exc)
        return classification

    def classify(self, exc: Exception) -> str:
        if isinstance(exc, FatalError):
            return "fatal"
        if isinstance(exc, TransportError):
            return "transport"
        if isinstance(exc, ApiStatusError):
            return "status"
        if isinstance(exc, MalformedResponseError):
            return "malformed"
        if isinstance(exc, RecoverableError):
            return "recoverable"
        return "unknown"
