from __future__ import annotations

from typing import Optional


class OscwatchError(Exception):
    """Base class for errors raised inside the alert engine."""


class ConfigError(OscwatchError):
    pass


class UpstreamUnavailable(OscwatchError):
    """Network failure, timeout or non-success status from a market-data source."""

    def __init__(self, source: str, detail: str, status: Optional[int] = None):
        super().__init__(f"{source} unavailable: {detail}")
        self.source = source
        self.status = status


class RateLimited(OscwatchError):
    """Upstream answered 429. retry_after is in seconds when the source provided one."""

    def __init__(self, source: str, retry_after: Optional[float] = None):
        super().__init__(f"{source} rate limited")
        self.source = source
        self.retry_after = retry_after


class InsufficientData(OscwatchError):
    """Not enough history to publish an oscillator value yet ("not ready")."""


class InvalidRule(OscwatchError):
    pass


class AuthExpired(OscwatchError):
    """Push backend rejected the bearer token (401)."""


class InvalidDeviceToken(OscwatchError):
    """Push backend reports the device token as permanently unusable."""

    def __init__(self, push_token: str, detail: str = ""):
        super().__init__(f"invalid device token {push_token[:10]}...: {detail}")
        self.push_token = push_token


class TokenExchangeFailed(OscwatchError):
    """The OAuth2 token endpoint refused the signed assertion."""

    def __init__(self, status: int, detail: str = ""):
        super().__init__(f"token exchange failed: HTTP {status} {detail}".rstrip())
        self.status = status
