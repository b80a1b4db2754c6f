from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class HealthMonitor:
    started_at: datetime
    last_cycle_at: datetime | None = None
    ticks: dict[str, int] = field(default_factory=dict)

    def status(self) -> dict:
        uptime = datetime.now(timezone.utc) - self.started_at
        return {
            "status": "ok",
            "uptime_seconds": int(uptime.total_seconds()),
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "machines": len(self.ticks),
            "ticks": sum(self.ticks.values()),
        }

    def tick(self, vmid: str) -> None:
        self.last_cycle_at = datetime.now(timezone.utc)
        self.ticks[vmid] = self.ticks.get(vmid, 0) + 1
