# src/oscwatch/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from oscwatch.alerts.scheduler import SchedulerConfig
from oscwatch.data.provider import ProviderConfig
from oscwatch.errors import ConfigError
from oscwatch.ingest.binance import BinanceConfig
from oscwatch.ingest.yahoo import YahooConfig
from oscwatch.notify.auth import ServiceAccount
from oscwatch.notify.push import PushConfig

__all__ = [
    "AppConfig",
    "PushConfig",
    "ProviderConfig",
    "SchedulerConfig",
    "config_from_env",
]


@dataclass(slots=True)
class AppConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    yahoo: YahooConfig = field(default_factory=YahooConfig)
    binance: BinanceConfig = field(default_factory=BinanceConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    push: Optional[PushConfig] = None
    service_account: Optional[ServiceAccount] = None
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "osc"
    redis_timeout_s: float = 5.0
    http_timeout_s: float = 15.0
    log_level: str = "info"
    log_json: bool = False


# ---------- env parsing ----------

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    v = env.get(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    v = _get(env, name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {v!r}") from None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    v = _get(env, name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {v!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = _get(env, name)
    if v is None:
        return default
    if v.lower() in _TRUE:
        return True
    if v.lower() in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {v!r}")


def _push_from_env(env: Mapping[str, str]) -> tuple[PushConfig, ServiceAccount]:
    """Raises ConfigError if the service account is missing or unusable."""
    raw = _get(env, "FCM_SERVICE_ACCOUNT_JSON")
    path = _get(env, "FCM_SERVICE_ACCOUNT_FILE")
    if raw is None and path is not None:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = fh.read()
        except OSError as e:
            raise ConfigError(f"cannot read FCM_SERVICE_ACCOUNT_FILE: {e}") from e
    if raw is None:
        raise ConfigError("push enabled but FCM_SERVICE_ACCOUNT_JSON / FCM_SERVICE_ACCOUNT_FILE not set")
    account = ServiceAccount.from_json(raw)

    project_id = _get(env, "FCM_PROJECT_ID") or account.project_id
    if not project_id:
        raise ConfigError("FCM_PROJECT_ID not set and service account has no project_id")

    push = PushConfig(
        project_id=project_id,
        max_age_s=_float(env, "PUSH_MAX_AGE_S", 600.0),
        max_retries=_int(env, "PUSH_MAX_RETRIES", 3),
        timeout_s=_float(env, "PUSH_TIMEOUT_S", 10.0),
        token_refresh_margin_s=_float(env, "TOKEN_REFRESH_MARGIN_S", 60.0),
        anonymous_prefix=_get(env, "ANONYMOUS_OWNER_PREFIX") or "user_",
    )
    return push, account


def config_from_env(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build AppConfig from environment variables (os.environ by default).
    Push delivery is on unless PUSH_ENABLED=0; when on, missing credentials raise ConfigError.
    """
    env = os.environ if env is None else env
    http_timeout = _float(env, "HTTP_TIMEOUT_S", 15.0)
    anon_prefix = _get(env, "ANONYMOUS_OWNER_PREFIX") or "user_"

    cfg = AppConfig(
        provider=ProviderConfig(
            ttl_s=_float(env, "CACHE_TTL_S", 60.0),
            prune_after_ttls=_int(env, "CACHE_PRUNE_AFTER_TTLS", 5),
            use_secondary=_bool(env, "USE_BINANCE", True),
            default_limit=_int(env, "CANDLES_LIMIT", 300),
            min_fetch_interval_s=_float(env, "MIN_FETCH_INTERVAL_S", 0.285),
            rate_limit_backoff_s=_float(env, "RATE_LIMIT_BACKOFF_S", 5.0),
        ),
        yahoo=YahooConfig(
            base_url=_get(env, "YAHOO_BASE_URL") or YahooConfig().base_url,
            timeout_s=_float(env, "YAHOO_TIMEOUT_S", 10.0),
        ),
        binance=BinanceConfig(
            base_url=_get(env, "BINANCE_BASE_URL") or BinanceConfig().base_url,
            timeout_s=_float(env, "BINANCE_TIMEOUT_S", 10.0),
        ),
        scheduler=SchedulerConfig(
            cycle_interval_s=_float(env, "CYCLE_INTERVAL_S", 60.0),
            max_groups_per_cycle=_int(env, "MAX_GROUPS_PER_CYCLE", 200),
            candles_limit=_int(env, "CANDLES_LIMIT", 300),
            notify_batch_size=_int(env, "NOTIFY_BATCH_SIZE", 3),
            notify_batch_pause_s=_float(env, "NOTIFY_BATCH_PAUSE_S", 0.01),
            inactive_owner_sweep_s=_float(env, "INACTIVE_OWNER_SWEEP_S", 3600.0),
            inactive_owner_days=_int(env, "INACTIVE_OWNER_DAYS", 30),
            anonymous_prefix=anon_prefix,
        ),
        redis_url=_get(env, "REDIS_URL") or "redis://localhost:6379/0",
        redis_prefix=_get(env, "REDIS_PREFIX") or "osc",
        redis_timeout_s=_float(env, "REDIS_TIMEOUT_S", 5.0),
        http_timeout_s=http_timeout,
        log_level=_get(env, "LOG_LEVEL") or "info",
        log_json=_bool(env, "LOG_JSON", False),
    )

    if cfg.scheduler.max_groups_per_cycle < 1:
        raise ConfigError("MAX_GROUPS_PER_CYCLE must be >= 1")
    if cfg.provider.min_fetch_interval_s <= 0:
        raise ConfigError("MIN_FETCH_INTERVAL_S must be > 0")

    if _bool(env, "PUSH_ENABLED", True):
        cfg.push, cfg.service_account = _push_from_env(env)
    return cfg
