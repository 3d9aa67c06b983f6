import unittest

from safewatch.errors import ApiUnavailableError
from safewatch.store_client import ZONES, MemoryDocumentStore
from safewatch.zones import ZoneCache, ZoneService


class DummyLogger:
    def debug(self, *args, **kwargs):
        pass

    def info(self, *args, **kwargs):
        pass

    def warning(self, *args, **kwargs):
        pass

    def error(self, *args, **kwargs):
        pass


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FlakyStore(MemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__("u1")
        self.down = False

    async def list(self, collection):
        if self.down:
            raise ApiUnavailableError("temporary_store_error")
        return await super().list(collection)


def zone_doc(zone_id: str, radius: float = 100) -> dict:
    return {"id": zone_id, "name": zone_id, "center_lat": 37.0, "center_lon": -122.0, "radius_m": radius}


class ZoneCacheTests(unittest.TestCase):
    def test_staleness_follows_last_sync(self):
        clock = FakeClock()
        cache = ZoneCache(ttl_sec=300, max_entries=10, clock=clock)

        self.assertTrue(cache.is_stale())
        cache.replace([])
        self.assertEqual(cache.last_sync_ts, 1000.0)
        self.assertFalse(cache.is_stale())

        clock.now += 301
        self.assertTrue(cache.is_stale())


class ZoneServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = FlakyStore()
        self.service = ZoneService(self.store, DummyLogger(), clock=self.clock)

    async def test_reload_reports_removed_zones(self):
        await self.store.put(ZONES, "a", zone_doc("a"))
        await self.store.put(ZONES, "b", zone_doc("b"))
        await self.service.reload()
        removed = []
        self.service.on_change(removed.append)

        await self.store.delete(ZONES, "b")
        zones = await self.service.reload()

        self.assertEqual([zone.id for zone in zones], ["a"])
        self.assertEqual(removed, [{"b"}])

    async def test_reload_falls_back_to_cache_when_store_down(self):
        await self.store.put(ZONES, "a", zone_doc("a"))
        await self.service.reload()
        synced_at = self.service.last_sync_ts

        self.store.down = True
        self.clock.now += 600
        zones = await self.service.reload()

        self.assertEqual([zone.id for zone in zones], ["a"])
        self.assertEqual(self.service.last_sync_ts, synced_at)
        self.assertTrue(self.service.is_stale)

    async def test_reload_skips_invalid_records(self):
        await self.store.put(ZONES, "a", zone_doc("a"))
        await self.store.put(ZONES, "bad", zone_doc("bad", radius=1))

        zones = await self.service.reload()

        self.assertEqual([zone.id for zone in zones], ["a"])

    async def test_add_update_remove(self):
        zone = await self.service.add_zone(37.0, -122.0, 150, name="Home")

        self.assertEqual((await self.store.get(ZONES, zone.id))["name"], "Home")

        updated = await self.service.update_zone(zone.id, radius_m=300, alert_on_enter=True)
        self.assertEqual(updated.radius_m, 300)
        self.assertTrue(self.service.get(zone.id).alert_on_enter)

        with self.assertRaises(ValueError):
            await self.service.update_zone(zone.id, radius_m=1)
        with self.assertRaises(KeyError):
            await self.service.update_zone("missing", radius_m=200)

        self.assertTrue(await self.service.remove_zone(zone.id))
        self.assertFalse(await self.service.remove_zone(zone.id))
        self.assertIsNone(await self.store.get(ZONES, zone.id))

    async def test_snapshot_is_a_copy(self):
        zone = await self.service.add_zone(37.0, -122.0, 150)

        snapshot = self.service.snapshot()
        snapshot[0].enabled = False

        self.assertTrue(self.service.get(zone.id).enabled)

    async def test_zone_limit(self):
        service = ZoneService(self.store, DummyLogger(), clock=self.clock, cache=ZoneCache(max_entries=1, clock=self.clock))
        await service.add_zone(37.0, -122.0, 150)

        with self.assertRaises(ValueError):
            await service.add_zone(38.0, -122.0, 150)
