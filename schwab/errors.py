from __future__ import annotations

from typing import Optional


class SchwabError(RuntimeError):
    """Base class for every error raised by the collector."""


class SchwabConfigError(SchwabError):
    """Raised when required configuration or credential files are missing or invalid."""


class AuthenticationFailed(SchwabError):
    """Raised when a token exchange, refresh or interactive login fails."""


class LoginFailed(AuthenticationFailed):
    """Raised by a login provider that could not obtain an authorization code."""


class TransientNetworkError(SchwabError):
    """Raised when a request still fails on connection/timeout after its retry."""


class UpstreamRejected(SchwabError):
    """Raised for a non-success HTTP status other than a recoverable 401."""

    def __init__(self, status_code: int, body: str = "", url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        where = f" {url}" if url else ""
        super().__init__(f"HTTP {status_code}{where}: {body[:200]}")


class SeriesCorrupt(SchwabError):
    """An on-disk series file could not be parsed."""


class PersistenceFailure(SchwabError):
    """Raised when writing the token file or a series file fails."""


class Cancelled(SchwabError):
    """Raised at a suspension point once the cancel event is set."""


__all__ = [
    "SchwabError",
    "SchwabConfigError",
    "AuthenticationFailed",
    "LoginFailed",
    "TransientNetworkError",
    "UpstreamRejected",
    "SeriesCorrupt",
    "PersistenceFailure",
    "Cancelled",
]
