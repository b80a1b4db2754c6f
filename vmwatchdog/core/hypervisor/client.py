from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from vmwatchdog.core.monitoring.error_handler import (
    ApiStatusError,
    AuthenticationError,
    MalformedResponseError,
    TransportError,
)
from vmwatchdog.core.settings import MachineSettings
from vmwatchdog.core.watchdog.transitions import CURRENT_TIME_PATH, RESET_AFTER_PATH

logger = logging.getLogger(__name__)


class HypervisorClient(Protocol):
    async def is_running(self, machine: MachineSettings) -> bool: ...

    async def ping_guest_agent(self, machine: MachineSettings) -> None: ...

    async def write_guest_file(self, machine: MachineSettings, path: str, content: bytes) -> None: ...

    async def read_guest_file(self, machine: MachineSettings, path: str) -> str: ...

    async def reset(self, machine: MachineSettings) -> None: ...


@dataclass(frozen=True)
class ProxmoxCredentials:
    url: str
    user: str
    password: str
    allow_invalid_cert: bool = False


@dataclass(frozen=True)
class AuthTicket:
    ticket: str
    csrf_token: str


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 3.0
    max_attempts: int = 3

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * 2**attempt, self.max_delay_seconds)


class TicketCache:
    """
    Single owner of the authentication ticket.

    Reading, probing and refreshing the ticket all happen under one lock, so
    concurrent machine tasks never log in twice for the same expiry.
    """

    def __init__(
        self,
        fresh_seconds: float = 60,
        issued_fresh_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fresh_seconds = fresh_seconds
        self.issued_fresh_seconds = issued_fresh_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._ticket: Optional[AuthTicket] = None
        self._fresh_until = 0.0

    async def acquire(
        self,
        probe: Callable[[AuthTicket], Awaitable[bool]],
        login: Callable[[], Awaitable[AuthTicket]],
    ) -> AuthTicket:
        async with self._lock:
            if self._ticket is not None and self._clock() < self._fresh_until:
                logger.debug("Reusing cached ticket")
                return self._ticket

            if self._ticket is not None:
                logger.debug("Testing cached ticket")
                if await probe(self._ticket):
                    logger.debug("Cached ticket is still valid")
                    self._fresh_until = self._clock() + self.fresh_seconds
                    return self._ticket

            logger.info("Getting new ticket")
            ticket = await login()
            self._ticket = ticket
            self._fresh_until = self._clock() + self.issued_fresh_seconds
            return ticket

    def invalidate(self, ticket: AuthTicket) -> None:
        # Another task may already have replaced the rejected ticket.
        if self._ticket is ticket:
            self._ticket = None
            self._fresh_until = 0.0


class ProxmoxClient:
    def __init__(
        self,
        credentials: ProxmoxCredentials,
        retry: RetryPolicy | None = None,
        tickets: TicketCache | None = None,
        timeout: Optional[float] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = credentials.url.rstrip("/") + "/api2/json"
        self._credentials = credentials
        self.retry = retry or RetryPolicy()
        self.tickets = tickets or TicketCache()
        self._http = httpx.AsyncClient(
            verify=not credentials.allow_invalid_cert,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def is_running(self, machine: MachineSettings) -> bool:
        logger.debug("Getting VM status from hypervisor")
        response = await self._ticketed("GET", f"{self._vm_path(machine)}/status/current")
        data = self._data(response)
        status = data.get("status") if isinstance(data, dict) else None
        if not isinstance(status, str):
            raise MalformedResponseError(f"VMID {machine.vmid} status response has no status field.")
        return status == "running"

    async def ping_guest_agent(self, machine: MachineSettings) -> None:
        logger.debug("Pinging guest agent")
        await self._ticketed("POST", f"{self._vm_path(machine)}/agent/ping")

    async def write_guest_file(self, machine: MachineSettings, path: str, content: bytes) -> None:
        logger.debug("Writing guest agent file %s", path)
        # encode=0 tells Proxmox the content is already base64, so the guest
        # receives the raw bytes.
        payload = {
            "file": path,
            "content": base64.b64encode(content).decode("ascii"),
            "encode": 0,
        }
        await self._ticketed("POST", f"{self._vm_path(machine)}/agent/file-write", data=payload)

    async def read_guest_file(self, machine: MachineSettings, path: str) -> str:
        logger.debug("Reading guest agent file %s", path)
        response = await self._ticketed(
            "GET",
            f"{self._vm_path(machine)}/agent/file-read",
            params={"file": path},
        )
        data = self._data(response)
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise MalformedResponseError(f"VMID {machine.vmid} file-read response has no content field.")
        return content

    async def reset(self, machine: MachineSettings) -> None:
        logger.debug("Resetting VM in hypervisor")
        await self._ticketed("POST", f"{self._vm_path(machine)}/status/reset")

    @staticmethod
    def _vm_path(machine: MachineSettings) -> str:
        return f"/nodes/{machine.node}/qemu/{machine.vmid}"

    async def _ticketed(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger.debug("Ticketed request %s %s", method, path)
        ticket = await self.tickets.acquire(self._probe, self._login)
        headers = {"CSRFPreventionToken": ticket.csrf_token}
        cookies = {"PVEAuthCookie": ticket.ticket}
        response = await self._send(method, path, headers=headers, cookies=cookies, **kwargs)
        if response.status_code == 401:
            self.tickets.invalidate(ticket)
        self._raise_for_status(response, f"{method} {path}")
        return response

    async def _probe(self, ticket: AuthTicket) -> bool:
        try:
            response = await self._send("GET", "/version", cookies={"PVEAuthCookie": ticket.ticket})
        except TransportError:
            return False
        return response.is_success

    async def _login(self) -> AuthTicket:
        response = await self._send(
            "POST",
            "/access/ticket",
            data={"username": self._credentials.user, "password": self._credentials.password},
        )
        if not response.is_success:
            raise AuthenticationError(
                f"Failed to get ticket: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        data = self._data(response)
        try:
            return AuthTicket(ticket=str(data["ticket"]), csrf_token=str(data["CSRFPreventionToken"]))
        except (KeyError, TypeError) as exc:
            raise MalformedResponseError(f"Ticket response is missing {exc}") from exc

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._base_url + path
        # Cookies go on the request, not the shared client jar.
        cookies = kwargs.pop("cookies", None)
        if cookies:
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())
            kwargs["headers"] = headers
        attempt = 0
        while True:
            try:
                return await self._http.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                attempt += 1
                if attempt >= self.retry.max_attempts:
                    raise TransportError(f"{method} {path} failed after {attempt} attempts: {exc}") from exc
                backoff = self.retry.delay_for(attempt - 1)
                logger.warning(
                    "Transport error on %s %s (attempt %s/%s): %s",
                    method,
                    path,
                    attempt,
                    self.retry.max_attempts,
                    exc,
                )
                await asyncio.sleep(backoff)

    @staticmethod
    def _raise_for_status(response: httpx.Response, context: str) -> None:
        if response.is_error:
            raise ApiStatusError(
                f"{context} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    @staticmethod
    def _data(response: httpx.Response) -> Any:
        try:
            return response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedResponseError(f"Unexpected response body from {response.request.url}") from exc


class MockHypervisorClient:
    """
    In-memory hypervisor whose guests behave like a healthy heartbeat daemon:
    every time the watchdog writes the current time, the guest answers with a
    reset-after deadline ``heartbeat_seconds`` later.
    """

    def __init__(self, heartbeat_seconds: int = 600) -> None:
        self.heartbeat_seconds = heartbeat_seconds
        self.running: dict[str, bool] = {}
        self.files: dict[tuple[str, str], str] = {}
        self.reset_calls: list[str] = []

    async def is_running(self, machine: MachineSettings) -> bool:
        return self.running.get(machine.vmid, True)

    async def ping_guest_agent(self, machine: MachineSettings) -> None:
        return None

    async def write_guest_file(self, machine: MachineSettings, path: str, content: bytes) -> None:
        text = content.decode("utf-8")
        self.files[(machine.vmid, path)] = text
        if path == CURRENT_TIME_PATH and text.isascii() and text.isdigit():
            self.files[(machine.vmid, RESET_AFTER_PATH)] = str(int(text) + self.heartbeat_seconds)

    async def read_guest_file(self, machine: MachineSettings, path: str) -> str:
        try:
            return self.files[(machine.vmid, path)]
        except KeyError as exc:
            raise ApiStatusError(f"{path} does not exist in guest", status_code=500) from exc

    async def reset(self, machine: MachineSettings) -> None:
        self.reset_calls.append(machine.vmid)
