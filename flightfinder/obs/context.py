"""Request context helpers using ContextVars.

Holds request-scoped identifiers (request id, client address) so log lines
emitted deep inside the cache or generator can be correlated with the HTTP
request that triggered them.
"""

from contextvars import ContextVar
from typing import Optional


# Public ContextVars (names are stable API)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


def bind_request(request_id: str, client_ip: Optional[str] = None) -> None:
    """Attach identifiers for the request being served by this task."""
    request_id_var.set(request_id)
    client_ip_var.set(client_ip)


def clear_context() -> None:
    """Reset context variables to defaults."""
    request_id_var.set(None)
    client_ip_var.set(None)
