import dataclasses
import time
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from safewatch import config
from safewatch.errors import SyncConflict
from safewatch.models import SafeZone
from safewatch.store_client import ZONES

ZoneChangeListener = Callable[[set[str]], None]


class ZoneCache:
    """Bounded local copy of the user's zones with an observable sync time."""

    def __init__(self, ttl_sec: int = 300, max_entries: int = 200, *, clock=time.time) -> None:
        self.ttl_sec = ttl_sec
        self.max_entries = max_entries
        self._clock = clock
        self._zones: "OrderedDict[str, SafeZone]" = OrderedDict()
        self.last_sync_ts: float = 0.0

    def is_stale(self) -> bool:
        if self.last_sync_ts <= 0:
            return True
        return (self._clock() - self.last_sync_ts) > self.ttl_sec

    def is_full(self) -> bool:
        return len(self._zones) >= self.max_entries

    def get(self, zone_id: str) -> Optional[SafeZone]:
        zone = self._zones.get(zone_id)
        return dataclasses.replace(zone) if zone is not None else None

    def put(self, zone: SafeZone) -> None:
        self._zones[zone.id] = dataclasses.replace(zone)

    def pop(self, zone_id: str) -> Optional[SafeZone]:
        return self._zones.pop(zone_id, None)

    def replace(self, zones: list[SafeZone]) -> set[str]:
        previous = set(self._zones)
        self._zones = OrderedDict((zone.id, dataclasses.replace(zone)) for zone in zones[: self.max_entries])
        self.last_sync_ts = self._clock()
        return previous - set(self._zones)

    def values(self) -> list[SafeZone]:
        return [dataclasses.replace(zone) for zone in self._zones.values()]

    def __len__(self) -> int:
        return len(self._zones)


class ZoneService:
    def __init__(self, store, logger, *, clock=time.time, cache: ZoneCache | None = None) -> None:
        self.store = store
        self.logger = logger
        self._clock = clock
        self.cache = cache if cache is not None else ZoneCache(config.ZONE_CACHE_TTL_SEC, config.ZONE_CACHE_MAX, clock=clock)
        self._listeners: list[ZoneChangeListener] = []

    @property
    def last_sync_ts(self) -> float:
        return self.cache.last_sync_ts

    @property
    def is_stale(self) -> bool:
        return self.cache.is_stale()

    def on_change(self, listener: ZoneChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, removed_ids: set[str]) -> None:
        for listener in list(self._listeners):
            listener(set(removed_ids))

    def snapshot(self) -> list[SafeZone]:
        return self.cache.values()

    def get(self, zone_id: str) -> Optional[SafeZone]:
        return self.cache.get(zone_id)

    async def reload(self) -> list[SafeZone]:
        try:
            documents = await self.store.list(ZONES)
        except RuntimeError as exc:
            self.logger.warning(
                "ZONE_RELOAD_FAILED error=%s cached=%s last_sync_ts=%s",
                exc,
                len(self.cache),
                self.cache.last_sync_ts,
            )
            return self.snapshot()

        zones: list[SafeZone] = []
        for document in documents:
            try:
                zones.append(SafeZone.from_dict(document))
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning("ZONE_RECORD_INVALID id=%s error=%s", document.get("id"), exc)
        if len(zones) > self.cache.max_entries:
            self.logger.warning("ZONE_CACHE_TRUNCATED total=%s max=%s", len(zones), self.cache.max_entries)

        removed = self.cache.replace(zones)
        self.logger.info("ZONE_RELOAD_OK zones=%s removed=%s", len(self.cache), len(removed))
        self._notify(removed)
        return self.snapshot()

    async def add_zone(
        self,
        center_lat: float,
        center_lon: float,
        radius_m: float,
        *,
        name: str = "",
        alert_on_enter: bool = False,
        alert_on_exit: bool = True,
        enabled: bool = True,
    ) -> SafeZone:
        if self.cache.is_full():
            raise ValueError(f"zone limit reached ({self.cache.max_entries})")
        zone = SafeZone(
            id=uuid.uuid4().hex,
            name=name,
            center_lat=float(center_lat),
            center_lon=float(center_lon),
            radius_m=float(radius_m),
            alert_on_enter=alert_on_enter,
            alert_on_exit=alert_on_exit,
            enabled=enabled,
        )
        await self.store.put(ZONES, zone.id, zone.to_dict())
        self.cache.put(zone)
        self.logger.info("ZONE_ADDED id=%s radius=%s enabled=%s", zone.id, zone.radius_m, zone.enabled)
        self._notify(set())
        return dataclasses.replace(zone)

    async def update_zone(self, zone_id: str, **changes) -> SafeZone:
        current = self.cache.get(zone_id)
        if current is None:
            raise KeyError(zone_id)
        changes.pop("id", None)
        updated = dataclasses.replace(current, **changes)
        await self.store.put(ZONES, zone_id, updated.to_dict())
        self.cache.put(updated)
        self.logger.info("ZONE_UPDATED id=%s fields=%s", zone_id, sorted(changes))
        self._notify(set())
        return dataclasses.replace(updated)

    async def toggle_zone(self, zone_id: str, enabled: bool) -> SafeZone:
        return await self.update_zone(zone_id, enabled=bool(enabled))

    async def remove_zone(self, zone_id: str) -> bool:
        if self.cache.get(zone_id) is None:
            return False
        await self.store.delete(ZONES, zone_id)
        self.cache.pop(zone_id)
        self.logger.info("ZONE_REMOVED id=%s", zone_id)
        self._notify({zone_id})
        return True

    async def record_transition(self, zone_id: str, entered: bool, now_ts: float | None = None) -> None:
        now = now_ts or self._clock()
        field_name = "last_entered_at" if entered else "last_exited_at"
        zone = self.cache.get(zone_id)
        if zone is not None:
            self.cache.put(dataclasses.replace(zone, **{field_name: now}))
        try:
            await self.store.patch(ZONES, zone_id, {field_name: now})
        except (RuntimeError, SyncConflict) as exc:
            self.logger.warning("ZONE_TRANSITION_RECORD_FAILED id=%s field=%s error=%s", zone_id, field_name, exc)
