from __future__ import annotations

from typing import Optional


class FundDataError(RuntimeError):
    pass


class TransportError(FundDataError):
    """Network or HTTP failure for one outbound request. Never retried."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(f"request failed: {url} -> {message}")


class ParseError(FundDataError):
    """Payload did not match the shape expected at its call site."""
