from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from vmwatchdog.core.monitoring.error_handler import NotificationError
from vmwatchdog.core.settings import MachineSettings


class Notifier:
    async def send(self, text: str) -> None:
        raise NotImplementedError


class ConsoleNotifier(Notifier):
    async def send(self, text: str) -> None:
        logging.getLogger(__name__).info("MSG: %s", text)


@dataclass
class TelegramNotifier(Notifier):
    token: str
    chat_id: str
    client: httpx.AsyncClient

    async def send(self, text: str) -> None:
        payload = {"chat_id": self.chat_id, "text": text}
        try:
            response = await self.client.post(f"https://api.telegram.org/bot{self.token}/sendMessage", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            # The token is part of the URL; keep it out of the logs.
            raise NotificationError(str(exc).replace(self.token, "***")) from exc


@dataclass
class AlertManager:
    """Best-effort message delivery; failures are logged, never raised."""

    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    client: Optional[httpx.AsyncClient] = None
    _telegram: dict[tuple[str, str], TelegramNotifier] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.console = ConsoleNotifier()
        self._owns_client = self.client is None
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=10.0)

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()

    def _telegram_for(self, machine: MachineSettings) -> Optional[TelegramNotifier]:
        token = machine.telegram_bot_token or self.telegram_token
        chat_id = machine.telegram_chat_id or self.telegram_chat_id
        if not token or not chat_id:
            return None
        key = (token, chat_id)
        if key not in self._telegram:
            self._telegram[key] = TelegramNotifier(token, chat_id, self.client)
        return self._telegram[key]

    async def send(self, machine: MachineSettings, message: str) -> None:
        text = f"{machine.label}: {message}"
        await self.console.send(text)
        telegram = self._telegram_for(machine)
        if telegram is None:
            return
        try:
            await telegram.send(text)
        except Exception as exc:  # noqa: BLE001
            logging.getLogger(__name__).warning("Telegram alert for VMID %s failed: %s", machine.vmid, exc)
