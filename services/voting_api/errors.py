"""Application error raised by route handlers and outbound clients."""
from typing import Optional


class InternalError(Exception):
    """
    Error carrying a client-facing message and an optional HTTP status.

    Errors without a status are failures of a collaborator (store or
    captcha service) and are rendered as 500.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def http_status(self) -> int:
        return self.status_code or 500

    def to_response(self) -> dict:
        return {"error": self.message}

    def __repr__(self) -> str:
        return f"InternalError({self.message!r}, status_code={self.status_code})"
