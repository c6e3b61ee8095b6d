from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import aiohttp

from oscwatch.errors import RateLimited, UpstreamUnavailable

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "application/json",
}


def retry_after_s(resp: aiohttp.ClientResponse) -> Optional[float]:
    raw = resp.headers.get("Retry-After") if resp.headers else None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


async def maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return (await resp.text())[:300]
    except Exception:
        return "<no body>"


async def get_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    source: str,
    params: Optional[Mapping[str, Any]] = None,
    timeout_s: float = 10.0,
    rate_limit_statuses: tuple[int, ...] = (429,),
) -> Any:
    """
    GET url and decode JSON, mapping failures onto the upstream error taxonomy:
      - rate_limit_statuses -> RateLimited (with Retry-After when present)
      - any other non-2xx, network error, timeout or bad JSON -> UpstreamUnavailable
    """
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    try:
        async with session.get(url, params=params, headers=DEFAULT_HEADERS, timeout=timeout) as resp:
            if resp.status in rate_limit_statuses:
                raise RateLimited(source, retry_after_s(resp))
            if resp.status >= 400:
                detail = await maybe_text(resp)
                raise UpstreamUnavailable(source, f"HTTP {resp.status}: {detail}", status=resp.status)
            return await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise UpstreamUnavailable(source, f"{type(e).__name__}: {e}") from e
