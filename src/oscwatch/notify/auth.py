# src/oscwatch/notify/auth.py
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import aiohttp
import jwt
import structlog

from oscwatch.errors import ConfigError, TokenExchangeFailed
from oscwatch.ingest.http import maybe_text
from oscwatch.utils.time import utc_now_s
from oscwatch.utils.types import AccessToken
from storage.base import TokenCache

log = structlog.get_logger("push_auth")

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass(slots=True)
class ServiceAccount:
    client_email: str
    private_key: str                 # PEM (PKCS#8)
    project_id: str = ""
    token_uri: str = DEFAULT_TOKEN_URI
    private_key_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str | Mapping[str, Any]) -> "ServiceAccount":
        """Parse a Google service-account key file (JSON text or already-decoded dict)."""
        try:
            data = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"service account JSON is not valid: {e}") from e
        missing = [k for k in ("client_email", "private_key") if not data.get(k)]
        if missing:
            raise ConfigError(f"service account JSON missing: {', '.join(missing)}")
        return cls(
            client_email=data["client_email"],
            # keys pasted into env vars often carry literal "\n"
            private_key=data["private_key"].replace("\\n", "\n"),
            project_id=data.get("project_id", ""),
            token_uri=data.get("token_uri") or DEFAULT_TOKEN_URI,
            private_key_id=data.get("private_key_id"),
        )


class AccessTokenProvider:
    """
    OAuth2 service-account flow for the push backend.

    get_token() returns a bearer token valid for at least refresh_margin_s,
    checking (in order) the in-memory copy, the shared cache, then exchanging
    a freshly signed RS256 assertion at token_uri. force=True skips both caches.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        account: ServiceAccount,
        *,
        cache: Optional[TokenCache] = None,
        clock: Optional[Callable[[], float]] = None,
        timeout_s: float = 10.0,
        refresh_margin_s: float = 60.0,
        assertion_lifetime_s: int = 3600,
    ):
        self._session = session
        self.account = account
        self._cache = cache
        self._clock = clock or utc_now_s
        self.timeout_s = timeout_s
        self.refresh_margin_s = refresh_margin_s
        self.assertion_lifetime_s = assertion_lifetime_s
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()
        self.exchanges = 0

    def build_assertion(self, now: float) -> str:
        iat = int(now)
        claims = {
            "iss": self.account.client_email,
            "scope": FCM_SCOPE,
            "aud": self.account.token_uri,
            "iat": iat,
            "exp": iat + self.assertion_lifetime_s,
        }
        headers = {"kid": self.account.private_key_id} if self.account.private_key_id else None
        return jwt.encode(claims, self.account.private_key, algorithm="RS256", headers=headers)

    async def get_token(self, force: bool = False) -> str:
        async with self._lock:
            now = self._clock()
            if not force:
                if self._token is not None and self._token.valid_for(now, self.refresh_margin_s):
                    return self._token.token
                if self._cache is not None:
                    shared = await self._cache.load()
                    if shared is not None and shared.valid_for(now, self.refresh_margin_s):
                        self._token = shared
                        return shared.token

            return await self._renew(now)

    async def refresh(self, rejected: str) -> str:
        """
        Replace a bearer the push backend refused. Callers that saw the same
        rejected token share one exchange: whoever gets the lock second finds a
        newer token already in place.
        """
        async with self._lock:
            now = self._clock()
            current = self._token
            if current is not None and current.token != rejected and current.valid_for(now, self.refresh_margin_s):
                return current.token
            await self.invalidate()
            return await self._renew(now)

    async def invalidate(self) -> None:
        self._token = None
        if self._cache is not None:
            await self._cache.clear()

    async def _renew(self, now: float) -> str:
        token = await self._exchange(now)
        self._token = token
        if self._cache is not None:
            await self._cache.save(token)
        return token.token

    async def _exchange(self, now: float) -> AccessToken:
        form = {"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion(now)}
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with self._session.post(self.account.token_uri, data=form, timeout=timeout) as resp:
            if resp.status != 200:
                detail = await maybe_text(resp)
                log.error("token_exchange_failed", status=resp.status, body=detail)
                raise TokenExchangeFailed(resp.status, detail)
            payload = await resp.json(content_type=None)

        access = (payload or {}).get("access_token")
        if not access:
            raise TokenExchangeFailed(200, "response without access_token")
        expires_in = float(payload.get("expires_in") or self.assertion_lifetime_s)
        self.exchanges += 1
        log.info("access_token_refreshed", expires_in=expires_in)
        return AccessToken(token=access, expires_at=now + expires_in)
