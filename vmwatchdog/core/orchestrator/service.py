from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from vmwatchdog.core.monitoring.error_handler import ErrorHandler
from vmwatchdog.core.monitoring.health import HealthMonitor
from vmwatchdog.core.watchdog.monitor import MachineMonitor

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """Runs one tick loop per machine; a machine's ticks never overlap."""

    monitors: list[MachineMonitor]
    health_monitor: HealthMonitor
    error_handler: ErrorHandler = field(default_factory=ErrorHandler)
    tick_interval_seconds: float = 5.0
    status: str = "stopped"

    def __post_init__(self) -> None:
        self._stop = asyncio.Event()

    def find(self, vmid: str) -> MachineMonitor | None:
        for monitor in self.monitors:
            if monitor.machine.vmid == vmid:
                return monitor
        return None

    async def run(self) -> None:
        self._stop.clear()
        self.status = "running"
        logger.info("Orchestrator started with %s machine(s).", len(self.monitors))
        try:
            await asyncio.gather(*(self._machine_loop(monitor) for monitor in self.monitors))
        finally:
            self.status = "stopped"
            logger.info("Orchestrator stopped.")

    async def run_once(self) -> None:
        await asyncio.gather(*(self._safe_tick(monitor) for monitor in self.monitors))

    def stop(self) -> None:
        self._stop.set()

    async def _machine_loop(self, monitor: MachineMonitor) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            started = loop.time()
            await self._safe_tick(monitor)
            remaining = self.tick_interval_seconds - (loop.time() - started)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, remaining))
            except asyncio.TimeoutError:
                pass

    async def _safe_tick(self, monitor: MachineMonitor) -> None:
        try:
            await monitor.tick()
        except Exception as exc:  # noqa: BLE001
            self.error_handler.handle(exc, f"tick for VMID {monitor.machine.vmid}")
        self.health_monitor.tick(monitor.machine.vmid)
