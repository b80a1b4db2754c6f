from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from vmwatchdog.core.hypervisor.client import HypervisorClient
from vmwatchdog.core.monitoring.error_handler import HeartbeatParseError, HypervisorError
from vmwatchdog.core.settings import MachineSettings
from vmwatchdog.core.watchdog.state import MonitorRuntime, MonitorState, state_name, state_timestamp
from vmwatchdog.core.watchdog.transitions import (
    CURRENT_TIME_PATH,
    RESET_AFTER_PATH,
    HeartbeatOutcome,
    Notify,
    ReadContent,
    ReadFailed,
    ResetMachine,
    Step,
    WriteFailed,
    advance_timers,
    apply_heartbeat,
    apply_ping,
    escalate,
    parse_reset_after,
    reconcile_power,
)

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    async def send(self, machine: MachineSettings, message: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MachineMonitor:
    """Owns the watchdog state of one machine. Ticks must not overlap."""

    def __init__(
        self,
        machine: MachineSettings,
        client: HypervisorClient,
        alerts: AlertSink,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.machine = machine
        self.client = client
        self.alerts = alerts
        self.runtime = MonitorRuntime()
        self.last_tick_at: Optional[datetime] = None
        self._clock = clock

    @property
    def state(self) -> MonitorState:
        return self.runtime.state

    async def tick(self) -> None:
        now = self._clock()
        self.last_tick_at = now
        vmid = self.machine.vmid

        try:
            running = await self.client.is_running(self.machine)
        except HypervisorError as exc:
            logger.error("VMID %s failed to get power state: %s", vmid, exc)
            return

        if not await self._apply(reconcile_power(self.runtime, self.machine, running, now)):
            return
        await self._apply(advance_timers(self.runtime, self.machine, now))

        try:
            await self.client.ping_guest_agent(self.machine)
            ping_ok = True
        except HypervisorError as exc:
            logger.info("VMID %s ping failed: %s", vmid, exc)
            ping_ok = False
        await self._apply(apply_ping(self.runtime, self.machine, ping_ok, now))

        if self.runtime.ping_fail_count == 0:
            outcome = await self._exchange_heartbeat(now)
            await self._apply(apply_heartbeat(self.runtime, self.machine, outcome, now))

        await self._apply(escalate(self.runtime, self.machine, now))

    async def _exchange_heartbeat(self, now: datetime) -> HeartbeatOutcome:
        vmid = self.machine.vmid
        current_time = str(int(now.timestamp())).encode("ascii")
        try:
            await self.client.write_guest_file(self.machine, CURRENT_TIME_PATH, current_time)
        except HypervisorError as exc:
            logger.info("VMID %s write_file %s failed: %s", vmid, CURRENT_TIME_PATH, exc)
            return WriteFailed(str(exc))

        try:
            text = await self.client.read_guest_file(self.machine, RESET_AFTER_PATH)
        except HypervisorError as exc:
            logger.info("VMID %s read_file %s failed: %s", vmid, RESET_AFTER_PATH, exc)
            return ReadFailed(str(exc))

        try:
            parse_reset_after(text)
        except HeartbeatParseError as exc:
            logger.info("VMID %s failed to parse reset time: %s", vmid, exc)
        return ReadContent(text)

    async def _apply(self, step: Step) -> bool:
        previous = self.runtime.state
        self.runtime = step.runtime
        if type(previous) is not type(step.runtime.state):
            logger.debug(
                "VMID %s: %s -> %s",
                self.machine.vmid,
                state_name(previous),
                state_name(step.runtime.state),
            )
        for effect in step.effects:
            if isinstance(effect, Notify):
                await self.say(effect.message)
            elif isinstance(effect, ResetMachine):
                await self._reset()
        return not step.halt

    async def _reset(self) -> None:
        try:
            await self.client.reset(self.machine)
        except HypervisorError as exc:
            logger.error("VMID %s reset failed: %s", self.machine.vmid, exc)
            await self.say(f"Failed to reset machine: {exc}")

    async def say(self, message: str) -> None:
        await self.alerts.send(self.machine, message)

    def snapshot(self) -> dict:
        moment = state_timestamp(self.runtime.state)
        return {
            "vmid": self.machine.vmid,
            "node": self.machine.node,
            "friendly_name": self.machine.friendly_name,
            "dry_run": self.machine.dry_run,
            "state": state_name(self.runtime.state),
            "state_at": moment.isoformat() if moment else None,
            "ping_fail_count": self.runtime.ping_fail_count,
            "last_sent_threshold": self.runtime.last_sent_threshold,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }
