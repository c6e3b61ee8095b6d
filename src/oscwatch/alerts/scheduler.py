# src/oscwatch/alerts/scheduler.py
from __future__ import annotations

import asyncio
from bisect import bisect_left
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from oscwatch.alerts.detector import CrossingDetector, OutcomeStatus
from oscwatch.alerts.events import AlertTrigger
from oscwatch.alerts.rules import AlertRule
from oscwatch.data.provider import MarketDataProvider
from oscwatch.errors import InvalidRule, RateLimited, UpstreamUnavailable
from oscwatch.notify.push import ANONYMOUS_OWNER_PREFIX, PushDispatcher
from oscwatch.utils.time import utc_now_s
from storage.base import AlertStore

log = structlog.get_logger("scheduler")

GroupKey = tuple[str, str]   # (symbol, timeframe)


@dataclass(slots=True)
class SchedulerConfig:
    cycle_interval_s: float = 60.0
    max_groups_per_cycle: int = 200
    candles_limit: int = 300
    notify_batch_size: int = 3
    notify_batch_pause_s: float = 0.01
    inactive_owner_sweep_s: float = 3600.0
    inactive_owner_days: int = 30
    anonymous_prefix: str = ANONYMOUS_OWNER_PREFIX


@dataclass(slots=True)
class CycleReport:
    started_at: float = 0.0
    idle: bool = False                 # no active rules; nothing else touched
    rules: int = 0
    invalid_rules: int = 0
    groups_total: int = 0
    groups_processed: int = 0
    groups_deferred: int = 0
    groups_failed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    outcomes: Counter = field(default_factory=Counter)
    triggers: int = 0
    notifications_sent: int = 0
    failures: int = 0
    owners_swept: int = 0
    duration_s: float = 0.0

    def as_log(self) -> dict[str, Any]:
        return {
            "rules": self.rules,
            "invalid_rules": self.invalid_rules,
            "groups": self.groups_total,
            "processed": self.groups_processed,
            "deferred": self.groups_deferred,
            "group_failures": self.groups_failed,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "outcomes": dict(self.outcomes),
            "triggers": self.triggers,
            "sent": self.notifications_sent,
            "failures": self.failures,
            "duration_s": round(self.duration_s, 3),
        }


def group_rules(rules: list[AlertRule]) -> dict[GroupKey, list[AlertRule]]:
    groups: dict[GroupKey, list[AlertRule]] = {}
    for r in rules:
        groups.setdefault(r.group_key, []).append(r)
    return groups


class BatchScheduler:
    """
    One evaluation pass per cycle_interval_s:

      1) bail out early when no rule is active
      2) group active rules by (symbol, timeframe); one series fetch per group
      3) process at most max_groups_per_cycle groups, resuming next cycle at the
         first group that was deferred
      4) evaluate each rule of a group sequentially; persist state, append events
      5) dispatch the cycle's triggers in small concurrent batches
      6) hourly: purge alerts of abandoned anonymous owners

    Upstream throttling lives in the provider's token bucket (cache misses only).
    """

    def __init__(
        self,
        store: AlertStore,
        provider: MarketDataProvider,
        detector: CrossingDetector,
        dispatcher: Optional[PushDispatcher],
        cfg: Optional[SchedulerConfig] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.store = store
        self.provider = provider
        self.detector = detector
        self.dispatcher = dispatcher
        self.cfg = cfg or SchedulerConfig()
        self._clock = clock or utc_now_s
        self._sleep = sleep or asyncio.sleep
        self._resume_key: Optional[GroupKey] = None
        self._last_sweep: float = 0.0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="batch-scheduler")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    log.error("cycle_failed", err=str(e))
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.cycle_interval_s)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            return

    # ---------- one cycle ----------

    async def run_cycle(self) -> CycleReport:
        started = self._clock()
        report = CycleReport(started_at=started)

        if not await self.store.has_active_rules():
            report.idle = True
            log.debug("cycle_idle_no_rules")
            return report

        rules = await self._load_rules(report)
        groups = group_rules(rules)
        keys = sorted(groups)
        report.groups_total = len(keys)
        selected, deferred = self._select(keys)
        report.groups_deferred = len(deferred)
        if deferred:
            log.info("groups_deferred", deferred=len(deferred), resume_at=self._resume_key)

        triggers: list[AlertTrigger] = []
        for key in selected:
            try:
                triggers.extend(await self._process_group(key, groups[key], report))
                report.groups_processed += 1
            except RateLimited as e:
                report.groups_failed += 1
                log.warning("group_rate_limited", symbol=key[0], timeframe=key[1], retry_after=e.retry_after)
            except UpstreamUnavailable as e:
                report.groups_failed += 1
                log.warning("group_upstream_unavailable", symbol=key[0], timeframe=key[1], err=str(e))
            except Exception as e:
                report.groups_failed += 1
                log.error("group_failed", symbol=key[0], timeframe=key[1], err=str(e))

        report.triggers = len(triggers)
        await self._dispatch(triggers, report)
        await self._maybe_sweep(started, report)

        report.duration_s = self._clock() - started
        log.info("cycle_done", **report.as_log())
        return report

    async def _load_rules(self, report: CycleReport) -> list[AlertRule]:
        out: list[AlertRule] = []
        for rule in await self.store.list_active_rules():
            try:
                rule.validate()
            except InvalidRule as e:
                report.invalid_rules += 1
                log.warning("rule_invalid_skipped", rule_id=rule.id, err=str(e))
                continue
            out.append(rule)
        report.rules = len(out)
        return out

    def _select(self, keys: list[GroupKey]) -> tuple[list[GroupKey], list[GroupKey]]:
        cap = self.cfg.max_groups_per_cycle
        if len(keys) <= cap:
            self._resume_key = None
            return keys, []
        start = bisect_left(keys, self._resume_key) % len(keys) if self._resume_key else 0
        rotated = keys[start:] + keys[:start]
        selected, deferred = rotated[:cap], rotated[cap:]
        self._resume_key = deferred[0]
        return selected, deferred

    async def _process_group(self, key: GroupKey, rules: list[AlertRule], report: CycleReport) -> list[AlertTrigger]:
        symbol, timeframe = key
        limit = max(self.cfg.candles_limit, max(r.params.min_bars for r in rules))
        result = await self.provider.get_series(symbol, timeframe, limit)
        if result.cache_hit:
            report.cache_hits += 1
        else:
            report.cache_misses += 1

        out: list[AlertTrigger] = []
        for rule in rules:
            try:
                state = await self.store.get_state(rule.id)
                outcome = self.detector.evaluate(rule, state, result.candles)
                report.outcomes[outcome.status.value] += 1
                if outcome.status is OutcomeStatus.SKIPPED or outcome.state is None:
                    continue
                await self.store.upsert_state(outcome.state)
                for t in outcome.triggers:
                    await self.store.append_event(t.to_event())
                out.extend(outcome.triggers)
            except Exception as e:
                report.failures += 1
                log.warning("rule_eval_failed", rule_id=rule.id, symbol=symbol, timeframe=timeframe, err=str(e))
        return out

    async def _dispatch(self, triggers: list[AlertTrigger], report: CycleReport) -> None:
        if not triggers:
            return
        if self.dispatcher is None:
            log.info("dispatch_disabled", triggers=len(triggers))
            return
        size = max(1, self.cfg.notify_batch_size)
        for i in range(0, len(triggers), size):
            batch = triggers[i:i + size]
            results = await asyncio.gather(*(self.dispatcher.send_alert(t) for t in batch), return_exceptions=True)
            for t, res in zip(batch, results):
                if isinstance(res, BaseException):
                    report.failures += 1
                    log.error("dispatch_failed", rule_id=t.rule_id, err=str(res))
                else:
                    report.notifications_sent += res.sent
            if i + size < len(triggers):
                await self._sleep(self.cfg.notify_batch_pause_s)

    async def _maybe_sweep(self, now: float, report: CycleReport) -> None:
        if now - self._last_sweep < self.cfg.inactive_owner_sweep_s:
            return
        self._last_sweep = now
        cutoff = now - self.cfg.inactive_owner_days * 86_400
        try:
            owners = await self.store.list_inactive_anonymous_owners(self.cfg.anonymous_prefix, cutoff)
            for owner in owners:
                removed = await self.store.purge_owner_alerts(owner)
                report.owners_swept += 1
                log.info("inactive_owner_purged", owner_id=owner, rules_removed=removed)
        except Exception as e:
            log.error("inactive_owner_sweep_failed", err=str(e))
