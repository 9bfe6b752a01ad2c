"""Login events raised by the login flows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Protocol

logger = logging.getLogger(__name__)


class LoginFailureReason(IntEnum):
    NOUSER = 1
    SUSPENDED = 2
    FAILED = 3
    LOCKOUT = 4
    UNAUTHORISED = 5


@dataclass(frozen=True)
class LoginFailedEvent:
    username: str
    reason: LoginFailureReason
    remote_addr: str = ""
    user_agent: str = ""


class EventSink(Protocol):
    def emit(self, event: LoginFailedEvent) -> None: ...


class LoggingEventSink:
    """Default sink: writes events to the plugin log."""

    def emit(self, event: LoginFailedEvent) -> None:
        logger.warning(
            "user_login_failed username=%s reason=%s remote=%s",
            event.username,
            event.reason.name.lower(),
            event.remote_addr,
        )
