"""Per-client rate limiting for the vote endpoint."""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def get_client_ip(request: Request) -> str:
    """
    Address of the caller as reported by the edge proxy.

    Falls back to the socket peer when the proxy header is missing
    (local runs without the proxy in front).
    """
    header = request.app.state.settings.CLIENT_IP_HEADER
    return request.headers.get(header) or get_remote_address(request)


def create_limiter() -> Limiter:
    """Limiter keyed on the caller address. One per application."""
    return Limiter(key_func=get_client_ip)
