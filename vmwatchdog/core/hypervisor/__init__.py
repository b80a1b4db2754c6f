from vmwatchdog.core.hypervisor.client import (
    AuthTicket,
    HypervisorClient,
    MockHypervisorClient,
    ProxmoxClient,
    ProxmoxCredentials,
    RetryPolicy,
    TicketCache,
)

__all__ = [
    "AuthTicket",
    "HypervisorClient",
    "MockHypervisorClient",
    "ProxmoxClient",
    "ProxmoxCredentials",
    "RetryPolicy",
    "TicketCache",
]
