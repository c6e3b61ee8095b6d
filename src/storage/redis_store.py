# src/storage/redis_store.py
from __future__ import annotations

import json
from typing import Any, Callable, Mapping, Optional

import structlog
from redis.asyncio import Redis

from oscwatch.alerts.events import AlertEvent
from oscwatch.alerts.rules import AlertRule, EvalMode
from oscwatch.alerts.state import AlertState, Zone
from oscwatch.indicators.oscillators import params_extra, params_from_dict, state_from_dict, state_to_dict
from oscwatch.utils.time import utc_now_s
from oscwatch.utils.types import AccessToken, CachedSeries, Candle, DeviceBinding

log = structlog.get_logger("redis_store")

# Key layout ({p} = prefix, default "osc"):
#   {p}:rule:{id}               hash   canonical rule row
#   {p}:rules                   set    every rule id
#   {p}:rules:active            set    active rule ids
#   {p}:owner:{owner}:rules     set    rule ids per owner
#   {p}:rule_owners             set    owners that have rules
#   {p}:state:{rule_id}         hash   AlertState
#   {p}:events:{rule_id}        list   AlertEvent JSON, append-only (capped)
#   {p}:device:{device_id}      hash   DeviceBinding
#   {p}:owner:{owner}:devices   set    device ids per owner
#   {p}:series:{symbol}:{tf}    string CachedSeries JSON
#   {p}:series:index            zset   "{symbol}|{tf}" scored by fetched_at
#   {p}:push:access_token       string AccessToken JSON with TTL

LEGACY_MODES = {"enter": EvalMode.ENTER_ZONE.value, "exit": EvalMode.EXIT_ZONE.value}
ZONE_VALUES = {z.value for z in Zone}


def _opt_float(v: Any) -> Optional[float]:
    if v is None or v == "" or v == "None":
        return None
    return float(v)


def _opt_int(v: Any) -> Optional[int]:
    f = _opt_float(v)
    return None if f is None else int(f)


def _flag(v: Any, default: bool = False) -> bool:
    if v is None or v == "":
        return default
    return str(v).strip().lower() in ("1", "true", "yes")


def _compact(d: Mapping[str, Any]) -> dict[str, str]:
    """Hash-ready mapping: drop None, stringify the rest."""
    return {k: str(v) for k, v in d.items() if v is not None}


# ---------- row codecs ----------

def rule_to_hash(rule: AlertRule) -> dict[str, str]:
    return _compact({
        "id": rule.id,
        "owner_id": rule.owner_id,
        "symbol": rule.symbol,
        "timeframe": rule.timeframe,
        "indicator": rule.indicator.value,
        "period": rule.params.period,
        "params": json.dumps(params_extra(rule.params)),
        "lower": rule.lower,
        "upper": rule.upper,
        "mode": rule.mode.value,
        "cooldown_sec": rule.cooldown_sec,
        "active": "1" if rule.active else "0",
        "on_bar_close": "1" if rule.on_bar_close else "0",
        "created_at": rule.created_at,
    })


def rule_from_hash(h: Mapping[str, str]) -> AlertRule:
    extra = json.loads(h["params"]) if h.get("params") else {}
    return AlertRule(
        id=h["id"],
        owner_id=h["owner_id"],
        symbol=h["symbol"],
        timeframe=h["timeframe"],
        params=params_from_dict(h.get("indicator") or "rsi", int(float(h["period"])), extra),
        lower=_opt_float(h.get("lower")),
        upper=_opt_float(h.get("upper")),
        mode=EvalMode(h.get("mode") or EvalMode.CROSS.value),
        cooldown_sec=int(float(h.get("cooldown_sec") or 0)),
        active=_flag(h.get("active"), default=True),
        on_bar_close=_flag(h.get("on_bar_close")),
        created_at=float(h.get("created_at") or 0.0),
    )


def state_to_hash(state: AlertState) -> dict[str, str]:
    ind = state_to_dict(state.indicator_state)
    return _compact({
        "rule_id": state.rule_id,
        "last_value": state.last_value,
        "indicator_state": json.dumps(ind) if ind else None,
        "last_bar_ts": state.last_bar_ts,
        "last_fire_ts": state.last_fire_ts,
        "last_zone": state.last_zone.value if state.last_zone else None,
        "updated_at": state.updated_at,
    })


def state_from_hash(rule_id: str, h: Mapping[str, str]) -> AlertState:
    raw_ind = h.get("indicator_state")
    try:
        ind = state_from_dict(json.loads(raw_ind)) if raw_ind else None
    except ValueError:
        ind = None
    zone = h.get("last_zone")
    return AlertState(
        rule_id=h.get("rule_id") or rule_id,
        last_value=_opt_float(h.get("last_value")),
        indicator_state=ind,
        last_bar_ts=_opt_int(h.get("last_bar_ts")),
        last_fire_ts=_opt_float(h.get("last_fire_ts")),
        last_zone=Zone(zone) if zone in ZONE_VALUES else None,
        updated_at=float(h.get("updated_at") or 0.0),
    )


def device_from_hash(h: Mapping[str, str]) -> DeviceBinding:
    return DeviceBinding(
        device_id=h["device_id"],
        owner_id=h["owner_id"],
        push_token=h["push_token"],
        platform=h.get("platform") or "android",
        last_active=_opt_float(h.get("last_active")),
    )


def legacy_rule_updates(h: Mapping[str, str]) -> tuple[dict[str, str], list[str]]:
    """
    Field rewrites that bring an old rule row to the canonical layout:
      rsi_period -> period, levels JSON list -> lower/upper,
      enter/exit -> enter-zone/exit-zone, missing indicator -> rsi,
      indicator_params (camelCase JSON) -> params.
    A single legacy level becomes lower = upper = level, which keeps its
    fire-in-both-directions behaviour under cross mode.
    """
    updates: dict[str, str] = {}
    drops: list[str] = []
    if "rsi_period" in h:
        if not h.get("period"):
            updates["period"] = h["rsi_period"]
        drops.append("rsi_period")
    if "levels" in h:
        try:
            levels = sorted(float(x) for x in json.loads(h["levels"] or "[]"))
        except (ValueError, TypeError):
            levels = []
        if levels and not h.get("lower") and not h.get("upper"):
            updates["lower"] = str(levels[0])
            updates["upper"] = str(levels[-1] if len(levels) > 1 else levels[0])
        drops.append("levels")
    if h.get("mode") in LEGACY_MODES:
        updates["mode"] = LEGACY_MODES[h["mode"]]
    if not h.get("indicator"):
        updates["indicator"] = "rsi"
    if "indicator_params" in h:
        if not h.get("params"):
            kind = updates.get("indicator") or h.get("indicator")
            period = updates.get("period") or h.get("period") or "14"
            try:
                params = params_from_dict(kind, int(float(period)), json.loads(h["indicator_params"] or "{}"))
            except (ValueError, TypeError, AttributeError) as e:
                log.warning("legacy_indicator_params_undecodable", rule_id=h.get("id"), err=str(e))
            else:
                updates["params"] = json.dumps(params_extra(params))
        drops.append("indicator_params")
    return updates, drops


def legacy_state_updates(h: Mapping[str, str]) -> tuple[dict[str, str], list[str]]:
    """
    last_rsi -> last_value, last_side -> last_zone. last_au/last_ad are dropped:
    without the anchor bar they cannot seed a resume, so the next evaluation
    recomputes from full history.
    """
    updates: dict[str, str] = {}
    drops: list[str] = []
    if "last_rsi" in h:
        if not h.get("last_value") and h["last_rsi"] not in ("", "None"):
            updates["last_value"] = h["last_rsi"]
        drops.append("last_rsi")
    if "last_side" in h:
        if not h.get("last_zone") and h["last_side"] in ZONE_VALUES:
            updates["last_zone"] = h["last_side"]
        drops.append("last_side")
    drops.extend(k for k in ("last_au", "last_ad") if k in h)
    return updates, drops


# ---------- stores ----------

class RedisAlertStore:
    """AlertStore over redis.asyncio. The client must use decode_responses=True."""

    def __init__(self, r: Redis, *, prefix: str = "osc", max_events_per_rule: int = 500):
        self.r = r
        self.prefix = prefix
        self.max_events_per_rule = max_events_per_rule

    def _k(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    # rules (read side)

    async def has_active_rules(self) -> bool:
        return bool(await self.r.scard(self._k("rules", "active")))

    async def list_active_rules(self) -> list[AlertRule]:
        ids = sorted(await self.r.smembers(self._k("rules", "active")))
        if not ids:
            return []
        p = self.r.pipeline()
        for rid in ids:
            p.hgetall(self._k("rule", rid))
        rows = await p.execute()

        out: list[AlertRule] = []
        for rid, h in zip(ids, rows):
            if not h:
                log.warning("active_rule_missing_row", rule_id=rid)
                continue
            try:
                rule = rule_from_hash(h)
            except (KeyError, ValueError, TypeError) as e:
                log.warning("rule_row_undecodable", rule_id=rid, err=str(e))
                continue
            if rule.active:
                out.append(rule)
        return out

    async def save_rule(self, rule: AlertRule) -> None:
        """Write path for the rule-owning client (and fixtures)."""
        p = self.r.pipeline()
        p.delete(self._k("rule", rule.id))
        p.hset(self._k("rule", rule.id), mapping=rule_to_hash(rule))
        p.sadd(self._k("rules"), rule.id)
        if rule.active:
            p.sadd(self._k("rules", "active"), rule.id)
        else:
            p.srem(self._k("rules", "active"), rule.id)
        p.sadd(self._k("owner", rule.owner_id, "rules"), rule.id)
        p.sadd(self._k("rule_owners"), rule.owner_id)
        await p.execute()

    # state / events

    async def get_state(self, rule_id: str) -> Optional[AlertState]:
        h = await self.r.hgetall(self._k("state", rule_id))
        if not h:
            return None
        return state_from_hash(rule_id, h)

    async def upsert_state(self, state: AlertState) -> None:
        key = self._k("state", state.rule_id)
        p = self.r.pipeline()
        p.delete(key)
        p.hset(key, mapping=state_to_hash(state))
        await p.execute()

    async def append_event(self, event: AlertEvent) -> None:
        key = self._k("events", event.rule_id)
        p = self.r.pipeline()
        p.rpush(key, json.dumps(event.to_dict()))
        p.ltrim(key, -self.max_events_per_rule, -1)
        await p.execute()

    async def list_events(self, rule_id: str, limit: int = 100) -> list[AlertEvent]:
        rows = await self.r.lrange(self._k("events", rule_id), -limit, -1)
        return [AlertEvent.from_dict(json.loads(x)) for x in rows]

    # devices

    async def save_device(self, device: DeviceBinding) -> None:
        p = self.r.pipeline()
        p.hset(self._k("device", device.device_id), mapping=_compact({
            "device_id": device.device_id,
            "owner_id": device.owner_id,
            "push_token": device.push_token,
            "platform": device.platform,
            "last_active": device.last_active,
        }))
        p.sadd(self._k("owner", device.owner_id, "devices"), device.device_id)
        await p.execute()

    async def list_devices(self, owner_id: str) -> list[DeviceBinding]:
        ids = sorted(await self.r.smembers(self._k("owner", owner_id, "devices")))
        if not ids:
            return []
        p = self.r.pipeline()
        for did in ids:
            p.hgetall(self._k("device", did))
        rows = await p.execute()
        out: list[DeviceBinding] = []
        for h in rows:
            if not h or not h.get("push_token"):
                continue
            try:
                out.append(device_from_hash(h))
            except (KeyError, ValueError) as e:
                log.warning("device_row_undecodable", owner_id=owner_id, err=str(e))
        return out

    async def delete_device(self, owner_id: str, device_id: str) -> None:
        p = self.r.pipeline()
        p.delete(self._k("device", device_id))
        p.srem(self._k("owner", owner_id, "devices"), device_id)
        await p.execute()

    async def count_devices(self, owner_id: str) -> int:
        return int(await self.r.scard(self._k("owner", owner_id, "devices")))

    # owner cleanup

    async def purge_owner_alerts(self, owner_id: str) -> int:
        ids = list(await self.r.smembers(self._k("owner", owner_id, "rules")))
        p = self.r.pipeline()
        for rid in ids:
            p.delete(self._k("rule", rid), self._k("state", rid), self._k("events", rid))
            p.srem(self._k("rules"), rid)
            p.srem(self._k("rules", "active"), rid)
        p.delete(self._k("owner", owner_id, "rules"))
        p.srem(self._k("rule_owners"), owner_id)
        await p.execute()
        return len(ids)

    async def list_inactive_anonymous_owners(self, prefix: str, active_since: float) -> list[str]:
        out: list[str] = []
        for owner in sorted(await self.r.smembers(self._k("rule_owners"))):
            if not owner.startswith(prefix):
                continue
            devices = await self.list_devices(owner)
            if all(d.idle_before(active_since) for d in devices):
                out.append(owner)
        return out

    # one-time migration

    async def migrate_legacy_schema(self) -> int:
        touched = 0
        for rid in sorted(await self.r.smembers(self._k("rules"))):
            rule_key = self._k("rule", rid)
            h = await self.r.hgetall(rule_key)
            if h:
                updates, drops = legacy_rule_updates(h)
                if updates or drops:
                    p = self.r.pipeline()
                    if updates:
                        p.hset(rule_key, mapping=updates)
                    if drops:
                        p.hdel(rule_key, *drops)
                    if _flag(h.get("active"), default=True):
                        p.sadd(self._k("rules", "active"), rid)
                    if h.get("owner_id"):
                        p.sadd(self._k("owner", h["owner_id"], "rules"), rid)
                        p.sadd(self._k("rule_owners"), h["owner_id"])
                    await p.execute()
                    touched += 1

            state_key = self._k("state", rid)
            s = await self.r.hgetall(state_key)
            if s:
                updates, drops = legacy_state_updates(s)
                if updates or drops:
                    p = self.r.pipeline()
                    if updates:
                        p.hset(state_key, mapping=updates)
                    if drops:
                        p.hdel(state_key, *drops)
                    await p.execute()
                    touched += 1
        if touched:
            log.info("legacy_schema_migrated", rows=touched)
        return touched


class RedisSeriesCache:
    """SeriesCache: one JSON blob per (symbol, timeframe) plus a fetch-time index for pruning."""

    def __init__(self, r: Redis, *, prefix: str = "osc"):
        self.r = r
        self.prefix = prefix
        self.index_key = f"{prefix}:series:index"

    def _key(self, symbol: str, timeframe: str) -> str:
        return f"{self.prefix}:series:{symbol}:{timeframe}"

    async def get(self, symbol: str, timeframe: str) -> Optional[CachedSeries]:
        raw = await self.r.get(self._key(symbol, timeframe))
        if not raw:
            return None
        try:
            d = json.loads(raw)
            candles = [Candle(int(c[0]), float(c[1]), float(c[2]), float(c[3]), float(c[4]), float(c[5]))
                       for c in d.get("candles", [])]
            return CachedSeries(
                symbol=d["symbol"],
                timeframe=d["timeframe"],
                candles=candles,
                fetched_at=float(d["fetched_at"]),
                provider=d.get("provider", "yahoo"),
            )
        except (KeyError, ValueError, TypeError, IndexError) as e:
            log.warning("series_cache_undecodable", symbol=symbol, timeframe=timeframe, err=str(e))
            return None

    async def put(self, series: CachedSeries) -> None:
        blob = json.dumps({
            "symbol": series.symbol,
            "timeframe": series.timeframe,
            "fetched_at": series.fetched_at,
            "provider": series.provider,
            "candles": [[k.ts, k.open, k.high, k.low, k.close, k.volume] for k in series.candles],
        })
        p = self.r.pipeline()
        p.set(self._key(series.symbol, series.timeframe), blob)
        p.zadd(self.index_key, {f"{series.symbol}|{series.timeframe}": series.fetched_at})
        await p.execute()

    async def prune(self, older_than: float) -> int:
        stale = await self.r.zrangebyscore(self.index_key, "-inf", f"({older_than}")
        if not stale:
            return 0
        p = self.r.pipeline()
        for member in stale:
            symbol, _, timeframe = member.rpartition("|")
            p.delete(self._key(symbol, timeframe))
        p.zrem(self.index_key, *stale)
        await p.execute()
        return len(stale)


class RedisTokenCache:
    """TokenCache: the push bearer token shared by every engine instance, expiring with the token."""

    def __init__(self, r: Redis, *, prefix: str = "osc", clock: Optional[Callable[[], float]] = None):
        self.r = r
        self.key = f"{prefix}:push:access_token"
        self._clock = clock or utc_now_s

    async def load(self) -> Optional[AccessToken]:
        raw = await self.r.get(self.key)
        if not raw:
            return None
        try:
            d = json.loads(raw)
            return AccessToken(token=d["token"], expires_at=float(d["expires_at"]))
        except (KeyError, ValueError, TypeError):
            return None

    async def save(self, token: AccessToken) -> None:
        ttl = int(token.expires_at - self._clock())
        if ttl <= 0:
            return
        await self.r.set(self.key, json.dumps({"token": token.token, "expires_at": token.expires_at}), ex=ttl)

    async def clear(self) -> None:
        await self.r.delete(self.key)
