from __future__ import annotations

import argparse
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import os
import signal
import sys
from typing import Optional, Sequence

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from vmwatchdog.core.hypervisor import (
    HypervisorClient,
    MockHypervisorClient,
    ProxmoxClient,
    ProxmoxCredentials,
    RetryPolicy,
    TicketCache,
)
from vmwatchdog.core.monitoring.alerts import AlertManager
from vmwatchdog.core.monitoring.error_handler import ConfigError, ErrorHandler
from vmwatchdog.core.monitoring.health import HealthMonitor
from vmwatchdog.core.orchestrator.service import Orchestrator
from vmwatchdog.core.settings import Settings, load_settings
from vmwatchdog.core.watchdog.monitor import MachineMonitor

logger = logging.getLogger(__name__)


def _env_mock_mode() -> bool:
    return os.getenv("VMWATCHDOG_MOCK_MODE", "").strip().lower() in {"1", "true", "yes"}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_client(settings: Settings, use_mock: bool = False) -> HypervisorClient:
    if use_mock:
        return MockHypervisorClient()

    password = settings.effective_password()
    if not settings.proxmox.url or not settings.proxmox.user or not password:
        raise ConfigError("proxmox.url, proxmox.user and a password (or PROXMOX_PASSWORD) are required.")
    credentials = ProxmoxCredentials(
        url=settings.proxmox.url,
        user=settings.proxmox.user,
        password=password,
        allow_invalid_cert=settings.proxmox.allow_invalid_cert,
    )
    return ProxmoxClient(
        credentials,
        retry=RetryPolicy(
            base_delay_seconds=settings.retry.base_delay_seconds,
            max_delay_seconds=settings.retry.max_delay_seconds,
            max_attempts=settings.retry.max_attempts,
        ),
        tickets=TicketCache(
            fresh_seconds=settings.ticket.fresh_seconds,
            issued_fresh_seconds=settings.ticket.issued_fresh_seconds,
        ),
        timeout=settings.proxmox.request_timeout_seconds,
    )


def build_orchestrator(
    settings: Settings,
    client: HypervisorClient,
    alerts: AlertManager,
) -> Orchestrator:
    monitors = [MachineMonitor(machine, client, alerts) for machine in settings.machines]
    return Orchestrator(
        monitors=monitors,
        health_monitor=HealthMonitor(started_at=datetime.now(timezone.utc)),
        error_handler=ErrorHandler(logger_name="vmwatchdog.orchestrator"),
        tick_interval_seconds=settings.app.tick_interval_seconds,
    )


def build_alerts(settings: Settings) -> AlertManager:
    token, chat_id = settings.default_alert_target()
    return AlertManager(telegram_token=token, telegram_chat_id=chat_id)


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
    use_mock: Optional[bool] = None,
    start_orchestrator: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    effective_mock = _env_mock_mode() if use_mock is None else use_mock
    client: HypervisorClient | None = None
    alerts: AlertManager | None = None
    if orchestrator is None:
        client = build_client(settings, use_mock=effective_mock)
        alerts = build_alerts(settings)
        orchestrator = build_orchestrator(settings, client, alerts)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        task = asyncio.create_task(orchestrator.run()) if start_orchestrator else None
        try:
            yield
        finally:
            orchestrator.stop()
            if task is not None:
                await task
            if isinstance(client, ProxmoxClient):
                await client.aclose()
            if alerts is not None:
                await alerts.aclose()

    app = FastAPI(title="vmwatchdog", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.get("/health", response_class=JSONResponse)
    def health() -> dict:
        return {**orchestrator.health_monitor.status(), "orchestrator_status": orchestrator.status}

    @app.get("/api/machines", response_class=JSONResponse)
    def machines() -> list[dict]:
        return [monitor.snapshot() for monitor in orchestrator.monitors]

    @app.get("/api/machines/{vmid}", response_class=JSONResponse)
    def machine(vmid: str) -> dict:
        monitor = orchestrator.find(vmid)
        if monitor is None:
            raise HTTPException(status_code=404, detail=f"Unknown VMID {vmid}")
        return monitor.snapshot()

    return app


async def run_headless(settings: Settings, use_mock: bool, once: bool) -> None:
    client = build_client(settings, use_mock=use_mock)
    alerts = build_alerts(settings)
    orchestrator = build_orchestrator(settings, client, alerts)
    try:
        if once:
            await orchestrator.run_once()
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, orchestrator.stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still interrupts.
                pass
        await orchestrator.run()
    finally:
        if isinstance(client, ProxmoxClient):
            await client.aclose()
        await alerts.aclose()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="vmwatchdog", description="Dead-man's-switch watchdog for Proxmox VMs.")
    parser.add_argument("config", nargs="?", default="config/config.yaml", help="Path to the YAML/JSON config file.")
    parser.add_argument("--once", action="store_true", help="Tick every machine once and exit.")
    parser.add_argument("--mock", action="store_true", help="Use the in-memory mock hypervisor.")
    parser.add_argument("--no-api", action="store_true", help="Do not serve the status API.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"vmwatchdog: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.app.log_level)
    use_mock = args.mock or _env_mock_mode()

    try:
        if args.once or args.no_api or not settings.app.status_api_enabled:
            asyncio.run(run_headless(settings, use_mock=use_mock, once=args.once))
            return 0

        import uvicorn

        app = create_app(settings=settings, use_mock=use_mock)
        uvicorn.run(app, host=settings.app.host, port=settings.app.port, log_level=settings.app.log_level.lower())
    except ConfigError as exc:
        print(f"vmwatchdog: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
