# src/oscwatch/notify/push.py
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import structlog

from oscwatch.alerts.events import AlertTrigger
from oscwatch.alerts.formatting import format_title
from oscwatch.errors import AuthExpired, InvalidDeviceToken
from oscwatch.notify.auth import AccessTokenProvider
from oscwatch.utils.backoff import RetryPolicy
from oscwatch.utils.time import utc_now_s
from oscwatch.utils.types import DeviceBinding
from storage.base import AlertStore

log = structlog.get_logger("push")

ANONYMOUS_OWNER_PREFIX = "user_"


@dataclass(slots=True)
class PushConfig:
    project_id: str
    base_url: str = "https://fcm.googleapis.com/v1"
    timeout_s: float = 10.0
    max_age_s: float = 600.0           # drop triggers older than this at dispatch time
    max_retries: int = 3
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0
    token_refresh_margin_s: float = 60.0
    anonymous_prefix: str = ANONYMOUS_OWNER_PREFIX


@dataclass(slots=True)
class DispatchReport:
    rule_id: str
    stale: bool = False
    devices: int = 0
    sent: int = 0
    failed: int = 0
    tokens_removed: int = 0
    owner_purged: bool = False


@dataclass(slots=True)
class _Reply:
    status: int
    body: dict[str, Any] = field(default_factory=dict)
    text: str = ""


def is_anonymous_owner(owner_id: str, prefix: str = ANONYMOUS_OWNER_PREFIX) -> bool:
    return owner_id.startswith(prefix)


def collapse_key(rule_id: str) -> str:
    return f"alert_{rule_id}"


def build_message(push_token: str, trigger: AlertTrigger) -> dict[str, Any]:
    """FCM v1 message body. Data values must all be strings."""
    key = collapse_key(trigger.rule_id)
    return {
        "message": {
            "token": push_token,
            "notification": {
                "title": format_title(trigger.symbol, trigger.timeframe),
                "body": trigger.message,
            },
            "data": {
                "alert_id": str(trigger.rule_id),
                "symbol": trigger.symbol,
                "timeframe": trigger.timeframe,
                "indicator": trigger.indicator.value,
                "value": f"{trigger.value:.4f}",
                "level": f"{trigger.level:g}",
                "type": trigger.transition.value,
                "message": trigger.message,
                "timestamp": str(int(trigger.ts)),
                "bar_ts": str(trigger.bar_ts),
            },
            "android": {"priority": "high", "collapse_key": key},
            "apns": {"headers": {"apns-priority": "10", "apns-collapse-id": key}},
        }
    }


def _is_invalid_token(reply: _Reply) -> bool:
    err = reply.body.get("error") or {}
    status = err.get("status", "")
    message = str(err.get("message", ""))
    codes = {d.get("errorCode") for d in err.get("details") or [] if isinstance(d, dict)}
    if reply.status == 404:
        return status == "NOT_FOUND" or "UNREGISTERED" in codes or "UNREGISTERED" in message
    if reply.status == 400 and status == "INVALID_ARGUMENT":
        return "registration token" in message.lower()
    return False


class PushDispatcher:
    """
    Sends one FCM v1 message per device binding of the trigger's owner.

    Per device:
      - 200 → sent
      - 401 → refresh the rejected bearer (shared across concurrent sends), retry once
        (second 401 → AuthExpired)
      - 404 NOT_FOUND/UNREGISTERED, 400 invalid token → binding removed; anonymous
        owners left without devices get their alerts purged
      - 429 / 5xx / network → retried with capped exponential backoff + jitter
      - other 4xx → logged, dropped
    Nothing raises out of send_alert().
    """

    def __init__(
        self,
        store: AlertStore,
        tokens: AccessTokenProvider,
        session: aiohttp.ClientSession,
        cfg: PushConfig,
        *,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.store = store
        self.tokens = tokens
        self._session = session
        self.cfg = cfg
        self._clock = clock or utc_now_s
        self._sleep = sleep or asyncio.sleep
        self.retry = RetryPolicy(cfg.max_retries, cfg.initial_backoff_s, cfg.max_backoff_s)

    @property
    def endpoint(self) -> str:
        return f"{self.cfg.base_url.rstrip('/')}/projects/{self.cfg.project_id}/messages:send"

    async def send_alert(self, trigger: AlertTrigger) -> DispatchReport:
        report = DispatchReport(rule_id=trigger.rule_id)
        age = self._clock() - trigger.created_at
        if age > self.cfg.max_age_s:
            report.stale = True
            log.info("trigger_stale_dropped", rule_id=trigger.rule_id, age_s=round(age, 1))
            return report

        try:
            devices = await self.store.list_devices(trigger.owner_id)
        except Exception as e:
            log.error("device_lookup_failed", owner_id=trigger.owner_id, err=str(e))
            report.failed += 1
            return report

        report.devices = len(devices)
        if not devices:
            log.info("no_devices_for_owner", owner_id=trigger.owner_id, rule_id=trigger.rule_id)
            return report

        for device in devices:
            try:
                if await self._send_to_device(device, trigger):
                    report.sent += 1
                else:
                    report.failed += 1
            except InvalidDeviceToken as e:
                log.warning("device_token_invalid", owner_id=device.owner_id, device_id=device.device_id, err=str(e))
                if await self._remove_device(device):
                    report.tokens_removed += 1
            except Exception as e:
                report.failed += 1
                log.warning("push_send_failed", device_id=device.device_id, rule_id=trigger.rule_id, err=str(e))

        if report.tokens_removed:
            report.owner_purged = await self._maybe_purge_owner(trigger.owner_id)
        return report

    async def _post(self, message: dict[str, Any], bearer: str) -> _Reply:
        timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
        headers = {"Authorization": f"Bearer {bearer}", "Content-Type": "application/json"}
        async with self._session.post(self.endpoint, json=message, headers=headers, timeout=timeout) as resp:
            if resp.status == 200:
                return _Reply(resp.status)
            try:
                text = await resp.text()
            except (aiohttp.ClientError, UnicodeDecodeError):
                text = ""
            try:
                body = json.loads(text)
            except ValueError:
                body = {}
            return _Reply(resp.status, body if isinstance(body, dict) else {}, text)

    async def _send_to_device(self, device: DeviceBinding, trigger: AlertTrigger) -> bool:
        message = build_message(device.push_token, trigger)
        delays = self.retry.delays()
        refreshed = False
        attempt = 0
        while attempt < self.retry.attempts:
            attempt += 1
            try:
                bearer = await self.tokens.get_token()
                reply = await self._post(message, bearer)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("push_network_error", device_id=device.device_id, err=str(e), attempt=attempt)
            else:
                if reply.status == 200:
                    return True
                if reply.status == 401:
                    if refreshed:
                        raise AuthExpired("push backend rejected a freshly issued token")
                    log.info("push_token_expired_refreshing", device_id=device.device_id)
                    await self.tokens.refresh(bearer)
                    refreshed = True
                    attempt -= 1
                    continue
                if _is_invalid_token(reply):
                    raise InvalidDeviceToken(device.push_token, reply.text[:120])
                if reply.status != 429 and not 500 <= reply.status < 600:
                    log.warning("push_rejected", status=reply.status, body=reply.text[:300], device_id=device.device_id)
                    return False
                log.warning("push_send_retry", status=reply.status, device_id=device.device_id, attempt=attempt)
            if attempt < self.retry.attempts:
                await self._sleep(next(delays))
        log.error("push_give_up_after_retries", device_id=device.device_id, rule_id=trigger.rule_id)
        return False

    async def _remove_device(self, device: DeviceBinding) -> bool:
        try:
            await self.store.delete_device(device.owner_id, device.device_id)
            return True
        except Exception as e:
            log.error("device_cleanup_failed", device_id=device.device_id, err=str(e))
            return False

    async def _maybe_purge_owner(self, owner_id: str) -> bool:
        if not is_anonymous_owner(owner_id, self.cfg.anonymous_prefix):
            return False
        try:
            if await self.store.count_devices(owner_id) > 0:
                return False
            removed = await self.store.purge_owner_alerts(owner_id)
        except Exception as e:
            log.error("owner_purge_failed", owner_id=owner_id, err=str(e))
            return False
        log.info("anonymous_owner_purged", owner_id=owner_id, rules_removed=removed)
        return True
