from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class NoData:
    """No heartbeat has been read yet."""


@dataclass(frozen=True)
class Ok:
    """The guest reported a reset deadline inside the allowed window."""

    next_deadline: datetime


@dataclass(frozen=True)
class TooFar:
    """The guest asked for a deadline beyond max_no_warning_interval."""

    deadline: datetime


@dataclass(frozen=True)
class GracePeriod:
    """Heartbeat missing or stale; the machine is reset at ``deadline``."""

    deadline: datetime


@dataclass(frozen=True)
class Resetting:
    """A reset was issued; monitoring resumes at ``resume_at``."""

    resume_at: datetime


@dataclass(frozen=True)
class PowerOff:
    """The machine is powered off and heartbeat checks are suspended."""


MonitorState = Union[NoData, Ok, TooFar, GracePeriod, Resetting, PowerOff]


@dataclass(frozen=True)
class MonitorRuntime:
    state: MonitorState = NoData()
    ping_fail_count: int = 0
    # Smallest threshold (seconds) already announced in the current grace period.
    last_sent_threshold: Optional[int] = None


def state_name(state: MonitorState) -> str:
    return type(state).__name__


def state_timestamp(state: MonitorState) -> Optional[datetime]:
    if isinstance(state, Ok):
        return state.next_deadline
    if isinstance(state, (TooFar, GracePeriod)):
        return state.deadline
    if isinstance(state, Resetting):
        return state.resume_at
    return None
