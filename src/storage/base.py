# src/storage/base.py
from __future__ import annotations

from typing import Optional, Protocol

from oscwatch.alerts.events import AlertEvent
from oscwatch.alerts.rules import AlertRule
from oscwatch.alerts.state import AlertState
from oscwatch.utils.types import AccessToken, CachedSeries, DeviceBinding


class AlertStore(Protocol):
    """
    Rules are read-only here (created and deleted by the rule-owning client).
    State rows are upserted by rule id; events are append-only.
    """

    async def has_active_rules(self) -> bool: ...

    async def list_active_rules(self) -> list[AlertRule]: ...

    async def get_state(self, rule_id: str) -> Optional[AlertState]: ...

    async def upsert_state(self, state: AlertState) -> None: ...

    async def append_event(self, event: AlertEvent) -> None: ...

    async def list_events(self, rule_id: str, limit: int = 100) -> list[AlertEvent]: ...

    async def list_devices(self, owner_id: str) -> list[DeviceBinding]: ...

    async def delete_device(self, owner_id: str, device_id: str) -> None: ...

    async def count_devices(self, owner_id: str) -> int: ...

    async def purge_owner_alerts(self, owner_id: str) -> int:
        """Hard-delete the owner's rules with their state and events. Returns rules removed."""
        ...

    async def list_inactive_anonymous_owners(self, prefix: str, active_since: float) -> list[str]:
        """
        Owners named prefix* that own rules and have no device active at or after
        active_since. A device that never reported activity counts as active.
        """
        ...

    async def migrate_legacy_schema(self) -> int:
        """Rewrite legacy rule/state rows into the canonical layout. Returns rows touched."""
        ...


class SeriesCache(Protocol):
    """Keyed by (symbol, timeframe); last writer wins."""

    async def get(self, symbol: str, timeframe: str) -> Optional[CachedSeries]: ...

    async def put(self, series: CachedSeries) -> None: ...

    async def prune(self, older_than: float) -> int: ...


class TokenCache(Protocol):
    """Shared home for the push-backend bearer token."""

    async def load(self) -> Optional[AccessToken]: ...

    async def save(self, token: AccessToken) -> None: ...

    async def clear(self) -> None: ...
