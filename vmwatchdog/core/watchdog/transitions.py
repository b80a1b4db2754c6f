"""
Pure state-machine phases for one monitored machine.

Each phase takes the current ``MonitorRuntime``, the machine's settings, the
tick time and whatever the hypervisor reported, and returns a ``Step``: the
new runtime, the effects to perform (in order) and whether the tick ends
here. Nothing in this module does I/O; ``MachineMonitor`` runs the phases in
order and executes the effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Union

from vmwatchdog.core.monitoring.error_handler import HeartbeatParseError
from vmwatchdog.core.settings import MachineSettings
from vmwatchdog.core.watchdog.state import (
    GracePeriod,
    MonitorRuntime,
    MonitorState,
    NoData,
    Ok,
    PowerOff,
    Resetting,
    TooFar,
)
from vmwatchdog.core.watchdog.thresholds import pick_threshold

CURRENT_TIME_PATH = "/tmp/watchdog_current_unix_time"
RESET_AFTER_PATH = "/tmp/watchdog_reset_after"
PING_FAILURE_LIMIT = 5

_UNIX_TIME_RE = re.compile(r"\+?[0-9]+")


@dataclass(frozen=True)
class Notify:
    message: str


@dataclass(frozen=True)
class ResetMachine:
    pass


Effect = Union[Notify, ResetMachine]


@dataclass(frozen=True)
class Step:
    runtime: MonitorRuntime
    effects: tuple[Effect, ...] = ()
    halt: bool = False


@dataclass(frozen=True)
class WriteFailed:
    error: str


@dataclass(frozen=True)
class ReadFailed:
    error: str


@dataclass(frozen=True)
class ReadContent:
    text: str


HeartbeatOutcome = Union[WriteFailed, ReadFailed, ReadContent]


def format_deadline(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def seconds_until(deadline: datetime, now: datetime) -> int:
    return max(0, int((deadline - now).total_seconds()))


def parse_reset_after(text: str) -> datetime:
    """Parse the guest's reset-after file: an unsigned decimal Unix time, optionally prefixed with "+"."""
    stripped = text.strip()
    if not _UNIX_TIME_RE.fullmatch(stripped):
        raise HeartbeatParseError(f"not an unsigned integer: {stripped[:50]!r}")
    try:
        return datetime.fromtimestamp(int(stripped), tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise HeartbeatParseError(f"Unix time out of range: {stripped[:50]!r}") from exc


def _enter(runtime: MonitorRuntime, state: MonitorState, **changes) -> MonitorRuntime:
    if not isinstance(state, GracePeriod):
        changes["last_sent_threshold"] = None
    return replace(runtime, state=state, **changes)


def _grace(runtime: MonitorRuntime, machine: MachineSettings, now: datetime) -> MonitorRuntime:
    return _enter(runtime, GracePeriod(now + timedelta(seconds=machine.grace_period)))


def reconcile_power(runtime: MonitorRuntime, machine: MachineSettings, running: bool, now: datetime) -> Step:
    powered_off = isinstance(runtime.state, PowerOff)
    if not running and powered_off:
        return Step(runtime, halt=True)
    if running and powered_off:
        resumed = _enter(
            runtime,
            Resetting(now + timedelta(seconds=machine.reset_duration)),
            ping_fail_count=0,
        )
        return Step(resumed, (Notify("Machine has been powered on, beginning reset timer"),))
    if not running:
        return Step(
            _enter(runtime, PowerOff()),
            (Notify("Machine has been powered off, stopping monitoring"),),
            halt=True,
        )
    return Step(runtime)


def advance_timers(runtime: MonitorRuntime, machine: MachineSettings, now: datetime) -> Step:
    effects: list[Effect] = []
    if not isinstance(runtime.state, GracePeriod):
        runtime = replace(runtime, last_sent_threshold=None)

    state = runtime.state
    if isinstance(state, Resetting) and now >= state.resume_at:
        effects.append(Notify("Machine reset timer has completed, resuming monitoring"))
        runtime = _enter(runtime, NoData())

    # A far-future request has come back inside the allowed window.
    state = runtime.state
    if isinstance(state, TooFar) and now + timedelta(seconds=machine.max_no_warning_interval) >= state.deadline:
        runtime = _enter(runtime, Ok(state.deadline))

    return Step(runtime, tuple(effects))


def apply_ping(runtime: MonitorRuntime, machine: MachineSettings, ok: bool, now: datetime) -> Step:
    if ok:
        return Step(replace(runtime, ping_fail_count=0))

    runtime = replace(runtime, ping_fail_count=runtime.ping_fail_count + 1)
    if isinstance(runtime.state, Ok) and runtime.ping_fail_count >= PING_FAILURE_LIMIT:
        return Step(
            _grace(runtime, machine, now),
            (
                Notify(
                    f"The machine has failed to respond to {PING_FAILURE_LIMIT} QEMU guest-agent pings "
                    "in a row. Grace period started"
                ),
            ),
        )
    return Step(runtime)


def apply_heartbeat(
    runtime: MonitorRuntime,
    machine: MachineSettings,
    outcome: HeartbeatOutcome,
    now: datetime,
) -> Step:
    # Failures only escalate a healthy machine; an already degraded one keeps
    # its current grace period or state.
    healthy = isinstance(runtime.state, Ok)

    if isinstance(outcome, WriteFailed):
        if not healthy:
            return Step(runtime)
        return Step(
            _grace(runtime, machine, now),
            (
                Notify(
                    "Watchdog failed to write the current time to the guest into "
                    f"{CURRENT_TIME_PATH}. Grace period started"
                ),
            ),
        )

    if isinstance(outcome, ReadFailed):
        if not healthy:
            return Step(runtime)
        return Step(
            _grace(runtime, machine, now),
            (
                Notify(
                    f"Watchdog failed to read the reset time from the guest into {RESET_AFTER_PATH}. "
                    "Perhaps the file doesn't exist? Grace period started"
                ),
            ),
        )

    try:
        deadline = parse_reset_after(outcome.text)
    except HeartbeatParseError:
        if not healthy:
            return Step(runtime)
        return Step(
            _grace(runtime, machine, now),
            (
                Notify(f"Watchdog failed to parse {RESET_AFTER_PATH} as a Unix time. Grace period started"),
                Notify(f"The current text in {RESET_AFTER_PATH} is: \n\n```\n{outcome.text}\n```"),
            ),
        )

    remaining = seconds_until(deadline, now)
    if remaining > machine.max_no_warning_interval:
        effects: tuple[Effect, ...] = ()
        if not isinstance(runtime.state, TooFar):
            effects = (
                Notify(
                    f"Machine requested reset at {format_deadline(deadline)}, which is too far into the "
                    "future. This is OK if you are performing manual maintenance."
                ),
            )
        return Step(_enter(runtime, TooFar(deadline)), effects)
    if remaining > 0:
        effects = () if healthy else (Notify("Machine is OK"),)
        return Step(_enter(runtime, Ok(deadline)), effects)
    # Deadline already passed; escalate() turns a stale Ok into a grace period.
    return Step(runtime)


def escalate(runtime: MonitorRuntime, machine: MachineSettings, now: datetime) -> Step:
    effects: list[Effect] = []

    state = runtime.state
    if isinstance(state, Ok) and state.next_deadline <= now:
        runtime = _grace(runtime, machine, now)
        effects.append(
            Notify(
                f"Machine has not updated its {RESET_AFTER_PATH} in a while "
                f"(last update was at {format_deadline(state.next_deadline)}). Grace period started"
            )
        )

    # Never produced a valid heartbeat: every machine ends up in a grace period.
    if isinstance(runtime.state, NoData):
        runtime = _grace(runtime, machine, now)
        effects.append(
            Notify(f"Could not read the next reset time from the file at {RESET_AFTER_PATH}. Grace period started")
        )

    state = runtime.state
    if isinstance(state, GracePeriod) and state.deadline <= now:
        effects.append(Notify("Grace period has expired. Resetting machine now"))
        if machine.dry_run:
            effects.append(Notify("Dry-run mode: not actually resetting the machine"))
        else:
            effects.append(ResetMachine())
        runtime = _enter(runtime, Resetting(now + timedelta(seconds=machine.reset_duration)))

    state = runtime.state
    if isinstance(state, GracePeriod):
        value, label = pick_threshold(seconds_until(state.deadline, now))
        if runtime.last_sent_threshold != value:
            runtime = replace(runtime, last_sent_threshold=value)
            effects.append(Notify(f"Machine will reset in {label} unless the issue is fixed"))

    return Step(runtime, tuple(effects))
