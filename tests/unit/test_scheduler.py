import asyncio

import pytest

from oscwatch.alerts.detector import CrossingDetector
from oscwatch.alerts.events import Transition
from oscwatch.alerts.scheduler import BatchScheduler, SchedulerConfig, group_rules
from oscwatch.data.provider import MarketDataProvider
from oscwatch.errors import UpstreamUnavailable
from oscwatch.notify.push import DispatchReport
from oscwatch.utils.ratelimit import TokenBucket
from oscwatch.utils.types import DeviceBinding
from tests.helpers.clock import FakeClock
from tests.helpers.memory_store import MemoryAlertStore, MemorySeriesCache
from tests.helpers.rules import make_rule, value_bars
from tests.helpers.sources import FakeSource

DAY = 86_400


class RecordingDispatcher:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send_alert(self, trigger):
        if trigger.rule_id in self.fail_for:
            raise RuntimeError("boom")
        self.sent.append(trigger)
        return DispatchReport(rule_id=trigger.rule_id, devices=1, sent=1)


class PerSymbolSource:
    name = "yahoo"

    def __init__(self, by_symbol):
        self.by_symbol = by_symbol
        self.calls = []

    async def fetch_candles(self, symbol, timeframe, limit):
        self.calls.append(symbol)
        item = self.by_symbol[symbol]
        if isinstance(item, BaseException):
            raise item
        return list(item)


def _scheduler(rules, source, *, devices=(), dispatcher=None, **cfg):
    clock = FakeClock()
    store = MemoryAlertStore(rules, devices)
    limiter = TokenBucket.from_min_interval(0.285, clock=clock, sleep=clock.sleep)
    provider = MarketDataProvider(source, MemorySeriesCache(), limiter, clock=clock)
    pauses = []

    async def pause(s):
        pauses.append(s)

    sched = BatchScheduler(
        store, provider, CrossingDetector(clock=clock), dispatcher, SchedulerConfig(**cfg),
        clock=clock, sleep=pause,
    )
    return sched, store, clock, pauses


@pytest.mark.asyncio
async def test_idle_cycle_touches_nothing_else():
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, _, _ = _scheduler([], source)
    report = await sched.run_cycle()
    assert report.idle
    assert source.calls == []
    assert store.calls == ["has_active_rules"]

@pytest.mark.asyncio
async def test_inactive_rules_count_as_idle():
    source = FakeSource("yahoo", value_bars([50]))
    sched, _, _, _ = _scheduler([make_rule(active=False)], source)
    assert (await sched.run_cycle()).idle
    assert source.calls == []

def test_group_rules_by_symbol_and_timeframe():
    rules = [make_rule(id="a"), make_rule(id="b"), make_rule(id="c", timeframe="1d")]
    groups = group_rules(rules)
    assert {k: [r.id for r in v] for k, v in groups.items()} == {("AAPL", "1h"): ["a", "b"], ("AAPL", "1d"): ["c"]}

@pytest.mark.asyncio
async def test_one_fetch_per_group():
    rules = [make_rule(id="r1"), make_rule(id="r2", lower=20.0), make_rule(id="r3", symbol="MSFT")]
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, _, _ = _scheduler(rules, source)

    report = await sched.run_cycle()

    assert sorted(c[0] for c in source.calls) == ["AAPL", "MSFT"]
    assert all(c[2] == 300 for c in source.calls)
    assert report.groups_total == 2 and report.groups_processed == 2
    assert report.cache_misses == 2
    assert report.outcomes["baseline"] == 3
    assert set(store.states) == {"r1", "r2", "r3"}

@pytest.mark.asyncio
async def test_crossing_is_persisted_and_dispatched():
    source = FakeSource("yahoo", value_bars([35]), value_bars([35, 25]))
    dispatcher = RecordingDispatcher()
    sched, store, clock, _ = _scheduler([make_rule()], source, dispatcher=dispatcher)

    await sched.run_cycle()
    clock.advance(61)
    report = await sched.run_cycle()

    assert report.triggers == 1 and report.notifications_sent == 1
    (trigger,) = dispatcher.sent
    assert trigger.transition is Transition.CROSS_DOWN
    assert trigger.level == 30.0
    (event,) = store.events["r1"]
    assert event.bar_ts == trigger.bar_ts
    assert store.states["r1"].last_fire_ts == clock.now

@pytest.mark.asyncio
async def test_same_bar_is_not_reevaluated():
    source = FakeSource("yahoo", value_bars([35, 25]))
    dispatcher = RecordingDispatcher()
    sched, store, clock, _ = _scheduler([make_rule()], source, dispatcher=dispatcher)
    await sched.run_cycle()
    clock.advance(61)
    report = await sched.run_cycle()
    assert report.outcomes["skipped"] == 1
    assert dispatcher.sent == []

@pytest.mark.asyncio
async def test_groups_over_cap_are_deferred_and_resumed():
    rules = [make_rule(id=s, symbol=s) for s in ("AAA", "BBB", "CCC")]
    source = PerSymbolSource({s: value_bars([50]) for s in ("AAA", "BBB", "CCC")})
    sched, _, clock, _ = _scheduler(rules, source, max_groups_per_cycle=2)

    first = await sched.run_cycle()
    clock.advance(61)
    second = await sched.run_cycle()

    assert first.groups_processed == 2 and first.groups_deferred == 1
    assert second.groups_deferred == 1
    assert source.calls == ["AAA", "BBB", "CCC", "AAA"]

@pytest.mark.asyncio
async def test_group_failure_does_not_stop_the_cycle():
    rules = [make_rule(id="bad", symbol="DOWN"), make_rule(id="good", symbol="UP")]
    source = PerSymbolSource({"DOWN": UpstreamUnavailable("yahoo", "HTTP 503"), "UP": value_bars([50])})
    sched, store, _, _ = _scheduler(rules, source)

    report = await sched.run_cycle()

    assert report.groups_failed == 1 and report.groups_processed == 1
    assert "good" in store.states and "bad" not in store.states

@pytest.mark.asyncio
async def test_rule_failure_does_not_stop_its_group():
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, _, _ = _scheduler([make_rule(id="r1"), make_rule(id="r2")], source)
    store.fail_state_for.add("r1")

    report = await sched.run_cycle()

    assert report.failures == 1
    assert list(store.states) == ["r2"]

@pytest.mark.asyncio
async def test_invalid_rules_are_skipped():
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, _, _ = _scheduler([make_rule(id="ok"), make_rule(id="broken", lower=80.0, upper=20.0)], source)
    report = await sched.run_cycle()
    assert report.invalid_rules == 1 and report.rules == 1
    assert list(store.states) == ["ok"]

@pytest.mark.asyncio
async def test_dispatch_runs_in_small_batches():
    rules = [make_rule(id=f"r{i}") for i in range(7)]
    source = FakeSource("yahoo", value_bars([35]), value_bars([35, 25]))
    dispatcher = RecordingDispatcher(fail_for={"r6"})
    sched, _, clock, pauses = _scheduler(rules, source, dispatcher=dispatcher)

    await sched.run_cycle()
    clock.advance(61)
    report = await sched.run_cycle()

    assert report.triggers == 7
    assert len(dispatcher.sent) == 6
    assert report.notifications_sent == 6 and report.failures == 1
    assert pauses == [0.01, 0.01]

@pytest.mark.asyncio
async def test_no_dispatcher_keeps_events():
    source = FakeSource("yahoo", value_bars([35]), value_bars([35, 25]))
    sched, store, clock, _ = _scheduler([make_rule()], source, dispatcher=None)
    await sched.run_cycle()
    clock.advance(61)
    report = await sched.run_cycle()
    assert report.triggers == 1 and report.notifications_sent == 0
    assert len(store.events["r1"]) == 1

@pytest.mark.asyncio
async def test_inactive_anonymous_owners_are_swept_hourly():
    now = FakeClock().now
    rules = [
        make_rule(id="old", owner_id="user_old"),
        make_rule(id="fresh", owner_id="user_fresh"),
        make_rule(id="acct", owner_id="acct_1"),
    ]
    devices = [
        DeviceBinding("d1", "user_old", "tok1", last_active=now - 40 * DAY),
        DeviceBinding("d2", "user_fresh", "tok2", last_active=now - DAY),
    ]
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, clock, _ = _scheduler(rules, source, devices=devices)

    first = await sched.run_cycle()
    assert first.owners_swept == 1
    assert set(store.rules) == {"fresh", "acct"}

    clock.advance(61)
    store.devices["d2"].last_active = now - 40 * DAY
    assert (await sched.run_cycle()).owners_swept == 0

    clock.advance(3600)
    assert (await sched.run_cycle()).owners_swept == 1
    assert set(store.rules) == {"acct"}

@pytest.mark.asyncio
async def test_start_runs_a_cycle_and_stop_cancels():
    source = FakeSource("yahoo", value_bars([50]))
    sched, store, _, _ = _scheduler([make_rule()], source, cycle_interval_s=3600)
    await sched.start()
    for _ in range(20):
        await asyncio.sleep(0)
        if "r1" in store.states:
            break
    await sched.stop()
    assert "r1" in store.states
    assert sched._task is None
