import pytest

from oscwatch.config import config_from_env
from oscwatch.context import build_context
from tests.helpers.fake_http import FakeSession
from tests.helpers.fake_redis import FakeRedis
from tests.helpers.service_account import SERVICE_ACCOUNT


@pytest.mark.asyncio
async def test_wiring_without_push():
    session, redis = FakeSession(), FakeRedis()
    ctx = await build_context(config_from_env({"PUSH_ENABLED": "0", "USE_BINANCE": "0"}), session=session, redis_client=redis)

    assert ctx.dispatcher is None and ctx.scheduler.dispatcher is None
    assert ctx.provider.secondary is None
    assert ctx.provider.limiter is ctx.limiter
    report = await ctx.scheduler.run_cycle()
    assert report.idle

    await ctx.aclose()
    assert session.closed and redis.closed

@pytest.mark.asyncio
async def test_wiring_with_push():
    cfg = config_from_env({"FCM_SERVICE_ACCOUNT_JSON": SERVICE_ACCOUNT, "REDIS_PREFIX": "t"})
    ctx = await build_context(cfg, session=FakeSession(), redis_client=FakeRedis())

    assert ctx.dispatcher is not None
    assert ctx.dispatcher.endpoint == "https://fcm.googleapis.com/v1/projects/demo-project/messages:send"
    assert ctx.dispatcher.tokens.account.project_id == "demo-project"
    assert ctx.provider.secondary.name == "binance"
    assert ctx.token_cache.key == "t:push:access_token"
    await ctx.aclose()
