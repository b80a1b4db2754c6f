from datetime import datetime, timedelta, timezone

import pytest

from vmwatchdog.core.hypervisor.client import MockHypervisorClient
from vmwatchdog.core.monitoring.error_handler import ApiStatusError, TransportError
from vmwatchdog.core.settings import MachineSettings
from vmwatchdog.core.watchdog.monitor import MachineMonitor
from vmwatchdog.core.watchdog.state import GracePeriod, NoData, Ok, PowerOff, Resetting, TooFar

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def unix(self, offset: int = 0) -> str:
        return str(int(self.now.timestamp()) + offset)


class ScriptedHypervisor:
    def __init__(self) -> None:
        self.running = True
        self.power_error: Exception | None = None
        self.ping_results: list[bool] = []
        self.write_error: Exception | None = None
        self.reset_after: str | Exception = ApiStatusError("file not found", status_code=500)
        self.reset_error: Exception | None = None
        self.written: list[tuple[str, bytes]] = []
        self.reset_calls = 0
        self.ping_calls = 0

    async def is_running(self, machine):
        if self.power_error:
            raise self.power_error
        return self.running

    async def ping_guest_agent(self, machine):
        self.ping_calls += 1
        ok = self.ping_results.pop(0) if self.ping_results else True
        if not ok:
            raise TransportError("guest agent is not running")

    async def write_guest_file(self, machine, path, content):
        if self.write_error:
            raise self.write_error
        self.written.append((path, content))

    async def read_guest_file(self, machine, path):
        if isinstance(self.reset_after, Exception):
            raise self.reset_after
        return self.reset_after

    async def reset(self, machine):
        self.reset_calls += 1
        if self.reset_error:
            raise self.reset_error


class RecordingAlerts:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, machine, message):
        self.messages.append(message)


def build(**overrides):
    params = dict(
        node="pve1",
        vmid="101",
        friendly_name="web",
        max_no_warning_interval=1800,
        grace_period=300,
        reset_duration=120,
    )
    params.update(overrides)
    machine = MachineSettings(**params)
    client = ScriptedHypervisor()
    alerts = RecordingAlerts()
    clock = FakeClock()
    return MachineMonitor(machine, client, alerts, clock=clock), client, alerts, clock


@pytest.mark.asyncio
async def test_healthy_guest_reaches_ok_and_receives_current_time():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(600)
    await monitor.tick()
    assert monitor.state == Ok(clock.now + timedelta(seconds=600))
    assert client.written == [("/tmp/watchdog_current_unix_time", clock.unix().encode())]
    assert alerts.messages == ["Machine is OK"]


@pytest.mark.asyncio
async def test_power_query_failure_changes_nothing():
    monitor, client, alerts, _ = build()
    client.power_error = TransportError("connection refused")
    await monitor.tick()
    assert monitor.state == NoData()
    assert alerts.messages == []
    assert client.ping_calls == 0


@pytest.mark.asyncio
async def test_powered_off_machine_stays_power_off_until_running_again():
    monitor, client, alerts, clock = build()
    client.running = False
    for _ in range(3):
        await monitor.tick()
        clock.advance(5)
        assert monitor.state == PowerOff()
    assert alerts.messages == ["Machine has been powered off, stopping monitoring"]
    assert client.ping_calls == 0

    client.running = True
    await monitor.tick()
    assert monitor.state == Resetting(clock.now + timedelta(seconds=120))
    assert alerts.messages[-1] == "Machine has been powered on, beginning reset timer"


@pytest.mark.asyncio
async def test_five_consecutive_ping_failures_start_grace_period():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(1200)
    await monitor.tick()
    assert isinstance(monitor.state, Ok)

    client.ping_results = [False] * 5
    for _ in range(4):
        clock.advance(5)
        await monitor.tick()
        assert isinstance(monitor.state, Ok)
    clock.advance(5)
    await monitor.tick()
    assert monitor.state == GracePeriod(clock.now + timedelta(seconds=300))
    assert any("5 QEMU guest-agent pings" in message for message in alerts.messages)


@pytest.mark.asyncio
async def test_four_ping_failures_then_success_keep_machine_ok():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(1200)
    await monitor.tick()
    client.ping_results = [False, False, False, False, True]
    for _ in range(5):
        clock.advance(5)
        await monitor.tick()
    assert isinstance(monitor.state, Ok)
    assert monitor.runtime.ping_fail_count == 0
    assert alerts.messages == ["Machine is OK"]


@pytest.mark.asyncio
async def test_write_failure_on_healthy_machine_starts_grace_period():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(1200)
    await monitor.tick()
    client.write_error = ApiStatusError("QEMU guest agent is not running", status_code=500)
    clock.advance(5)
    await monitor.tick()
    assert monitor.state == GracePeriod(clock.now + timedelta(seconds=300))
    assert "/tmp/watchdog_current_unix_time" in alerts.messages[1]
    assert alerts.messages[2] == "Machine will reset in 10 minutes unless the issue is fixed"


@pytest.mark.asyncio
async def test_unparsable_heartbeat_reports_content():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(1200)
    await monitor.tick()
    client.reset_after = "tomorrow\n"
    clock.advance(5)
    await monitor.tick()
    assert isinstance(monitor.state, GracePeriod)
    assert "tomorrow" in alerts.messages[2]


@pytest.mark.asyncio
async def test_guest_without_heartbeat_is_reset_and_resumed():
    monitor, client, alerts, clock = build()

    await monitor.tick()
    assert monitor.state == GracePeriod(START + timedelta(seconds=300))

    while clock.now < START + timedelta(seconds=295):
        clock.advance(5)
        await monitor.tick()
        assert isinstance(monitor.state, GracePeriod)
    assert client.reset_calls == 0

    clock.advance(5)
    await monitor.tick()
    assert client.reset_calls == 1
    assert monitor.state == Resetting(START + timedelta(seconds=420))

    warnings = [message for message in alerts.messages if message.startswith("Machine will reset in")]
    assert warnings == [
        "Machine will reset in 10 minutes unless the issue is fixed",
        "Machine will reset in 5 minutes unless the issue is fixed",
        "Machine will reset in 4 minutes unless the issue is fixed",
        "Machine will reset in 3 minutes unless the issue is fixed",
        "Machine will reset in 2 minutes unless the issue is fixed",
        "Machine will reset in 1 minute unless the issue is fixed",
    ]

    while clock.now < START + timedelta(seconds=415):
        clock.advance(5)
        await monitor.tick()
        assert isinstance(monitor.state, Resetting)

    alerts.messages.clear()
    clock.advance(5)
    await monitor.tick()
    assert alerts.messages[0] == "Machine reset timer has completed, resuming monitoring"
    # Still no heartbeat, so the machine goes straight back into a grace period.
    assert monitor.state == GracePeriod(clock.now + timedelta(seconds=300))
    assert client.reset_calls == 1


@pytest.mark.asyncio
async def test_far_future_deadline_then_normal_deadline():
    monitor, client, alerts, clock = build()
    client.reset_after = clock.unix(2000)
    await monitor.tick()
    assert isinstance(monitor.state, TooFar)

    clock.advance(5)
    client.reset_after = clock.unix(1000)
    await monitor.tick()
    assert monitor.state == Ok(clock.now + timedelta(seconds=1000))
    assert alerts.messages[-1] == "Machine is OK"


@pytest.mark.asyncio
async def test_dry_run_never_calls_reset():
    monitor, client, alerts, clock = build(grace_period=0, dry_run=True)
    await monitor.tick()
    assert client.reset_calls == 0
    assert "Dry-run mode: not actually resetting the machine" in alerts.messages
    assert isinstance(monitor.state, Resetting)


@pytest.mark.asyncio
async def test_reset_failure_is_reported_without_retry():
    monitor, client, alerts, clock = build(grace_period=0)
    client.reset_error = ApiStatusError("HTTP 500", status_code=500)
    await monitor.tick()
    assert client.reset_calls == 1
    assert alerts.messages[-1] == "Failed to reset machine: HTTP 500"
    assert monitor.state == Resetting(clock.now + timedelta(seconds=120))


@pytest.mark.asyncio
async def test_monitor_with_mock_hypervisor_stays_ok():
    machine = MachineSettings(node="pve1", vmid="200", friendly_name="mock")
    clock = FakeClock()
    alerts = RecordingAlerts()
    monitor = MachineMonitor(machine, MockHypervisorClient(heartbeat_seconds=600), alerts, clock=clock)
    for _ in range(3):
        await monitor.tick()
        clock.advance(5)
    assert isinstance(monitor.state, Ok)
    assert alerts.messages == ["Machine is OK"]
    snapshot = monitor.snapshot()
    assert snapshot["state"] == "Ok"
    assert snapshot["vmid"] == "200"
    assert snapshot["ping_fail_count"] == 0
