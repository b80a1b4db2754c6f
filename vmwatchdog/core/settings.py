from __future__ import annotations

from pathlib import Path
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmwatchdog.core.monitoring.error_handler import ConfigError


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file {path} not found")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping/object. Got: {type(data)}")
    return data


class AppSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"
    tick_interval_seconds: float = 5.0
    status_api_enabled: bool = True


class ProxmoxSettings(BaseModel):
    url: str = ""
    user: str = ""
    password: Optional[str] = None
    allow_invalid_cert: bool = False
    request_timeout_seconds: Optional[float] = None


class RetrySettings(BaseModel):
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 3.0
    max_attempts: int = 3


class TicketSettings(BaseModel):
    fresh_seconds: float = 60
    issued_fresh_seconds: float = 600


class AlertSettings(BaseModel):
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class MachineSettings(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    node: str
    vmid: str
    friendly_name: str = ""

    # How far into the future (seconds) the guest may request its next
    # deadline before we flag it as suspicious. 30 minutes is reasonable.
    max_no_warning_interval: int = Field(default=1800, ge=0)
    # Countdown started once the requested time has passed.
    grace_period: int = Field(default=600, ge=0)
    # Settle time after a reset before heartbeats are checked again.
    reset_duration: int = Field(default=300, ge=0)

    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    # Notify instead of actually resetting the machine.
    dry_run: bool = False

    @property
    def label(self) -> str:
        return f"VMID {self.vmid} ({self.friendly_name})"


class Settings(BaseSettings):
    """
    Precedence:
      - YAML values are passed as init kwargs.
      - Secrets (PROXMOX_PASSWORD, TELEGRAM_*) come from OS env or .env and
        only fill in what the YAML leaves empty.
    """

    app: AppSettings = Field(default_factory=AppSettings)
    proxmox: ProxmoxSettings = Field(default_factory=ProxmoxSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    ticket: TicketSettings = Field(default_factory=TicketSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    machines: List[MachineSettings] = Field(default_factory=list)

    # ---- Secrets (from ENV/.env) ----
    proxmox_password: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def effective_password(self) -> Optional[str]:
        return self.proxmox.password or self.proxmox_password

    def default_alert_target(self) -> tuple[Optional[str], Optional[str]]:
        return (
            self.alerts.telegram_bot_token or self.telegram_bot_token,
            self.alerts.telegram_chat_id or self.telegram_chat_id,
        )


def load_settings(config_path: str = "config/config.yaml") -> Settings:
    """
    Load the YAML (or JSON) config file, apply env/.env secrets and validate.
    Raises ConfigError for anything that should stop the process at startup.
    """
    cfg = _read_yaml(Path(config_path))
    _apply_backward_compat(cfg)
    try:
        settings = Settings(**cfg)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc
    env_level = os.getenv("VMWATCHDOG_LOG_LEVEL")
    if env_level:
        settings.app.log_level = env_level.strip().upper()
    validate_settings(settings)
    return settings


def _apply_backward_compat(cfg: Dict[str, Any]) -> None:
    # Older configs used the flat `proxmox_auth` / `vm_configs` layout.
    auth = cfg.pop("proxmox_auth", None)
    if isinstance(auth, dict):
        cfg.setdefault("proxmox", auth)
    vm_configs = cfg.pop("vm_configs", None)
    if isinstance(vm_configs, list):
        machines = cfg.setdefault("machines", [])
        for vm in vm_configs:
            if isinstance(vm, dict) and "node" not in vm and "host_name" in vm:
                vm = {**vm, "node": vm["host_name"]}
                vm.pop("host_name")
            machines.append(vm)


def validate_settings(settings: Settings) -> None:
    if not settings.machines:
        raise ConfigError("At least one machine must be configured.")
    seen: set[str] = set()
    for machine in settings.machines:
        # VMIDs are unique across a Proxmox cluster.
        if machine.vmid in seen:
            raise ConfigError(f"VMID {machine.vmid} is configured twice.")
        seen.add(machine.vmid)
    if settings.app.tick_interval_seconds <= 0:
        raise ConfigError("tick_interval_seconds must be positive.")
    if not isinstance(logging.getLevelName(settings.app.log_level.upper()), int):
        raise ConfigError(f"Unknown app.log_level {settings.app.log_level!r}.")
    if settings.retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be >= 1.")
    if settings.retry.base_delay_seconds < 0 or settings.retry.max_delay_seconds < 0:
        raise ConfigError("Retry delays must not be negative.")
    if settings.ticket.fresh_seconds < 0 or settings.ticket.issued_fresh_seconds < 0:
        raise ConfigError("Ticket freshness windows must not be negative.")
