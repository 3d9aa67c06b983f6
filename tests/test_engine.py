import asyncio
import math
import unittest

from safewatch.errors import AccessDenied
from safewatch.geo import EARTH_RADIUS_M
from safewatch.location_source import TelegramLocationSource
from safewatch.models import (
    Containment,
    JobStatus,
    PositionSample,
    ShareView,
    TrackingMode,
    TrackingState,
    TriggerKind,
)
from safewatch.store_client import ALERT_JOBS, MemoryDocumentStore
from safewatch.engine import SafetyEngine

CONTACT = "+15550000002"


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


class DummyChannel:
    def __init__(self) -> None:
        self.sent = []

    async def send(self, address, message):
        self.sent.append((address, message))
        return f"id-{len(self.sent)}"


class PolledLocationSource(TelegramLocationSource):
    """Background polls get a separately queued fix instead of the last live one."""

    def __init__(self, logger, *, clock):
        super().__init__(logger, clock=clock)
        self.polled = None

    async def get_current_position(self):
        if self.polled is not None:
            return self.polled
        return await super().get_current_position()


async def no_sleep(delay):
    return None


def lat_at(distance_m: float) -> float:
    return 37.0 + math.degrees(distance_m / EARTH_RADIUS_M)


class SafetyEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.source = TelegramLocationSource(DummyLogger(), clock=self.clock)
        self.store = MemoryDocumentStore("u1")
        self.channel = DummyChannel()
        self.engine = SafetyEngine(
            self.source,
            self.store,
            self.channel,
            DummyLogger(),
            trusted_contacts=[CONTACT],
            clock=self.clock,
            sleep=no_sleep,
        )

    async def feed(self, distance_m: float) -> None:
        self.clock.now += 10
        await self.source.feed(lat_at(distance_m), -122.0, 5.0, self.clock.now)

    async def test_leaving_safe_zone_alerts_trusted_contacts(self):
        await self.engine.add_zone(37.0, -122.0, 100, name="Home")
        self.engine.start_tracking(TrackingMode.FOREGROUND)

        await self.feed(10)
        await self.feed(300)
        await self.engine.dispatcher.join()

        self.assertEqual(len(self.channel.sent), 1)
        address, text = self.channel.sent[0]
        self.assertEqual(address, CONTACT)
        self.assertIn('Left safe zone "Home"', text)
        jobs = self.engine.dispatcher.jobs()
        self.assertEqual(jobs[0].trigger_kind, TriggerKind.ZONE_EXIT)
        self.assertEqual(jobs[0].status, JobStatus.DELIVERED)
        self.assertIsNotNone(await self.store.get(ALERT_JOBS, jobs[0].id))

    async def test_boundary_flapping_is_coalesced_by_cooldown(self):
        await self.engine.add_zone(37.0, -122.0, 100)
        self.engine.start_tracking(TrackingMode.FOREGROUND)

        await self.feed(50)
        await self.feed(150)
        await self.feed(50)
        await self.feed(150)
        await self.engine.dispatcher.join()

        self.assertEqual(len(self.channel.sent), 1)

    async def test_trigger_sos_streams_status(self):
        self.engine.start_tracking(TrackingMode.FOREGROUND)
        await self.feed(0)

        job_id, stream = await self.engine.trigger_sos(TriggerKind.MANUAL)
        statuses = [status async for status in stream]

        self.assertIsNotNone(job_id)
        self.assertEqual(statuses[-1], JobStatus.DELIVERED)
        self.assertIn("Google Maps: https://maps.google.com/?q=37.000000,-122.000000", self.channel.sent[0][1])

    async def test_share_sees_tracked_position(self):
        self.engine.start_tracking(TrackingMode.FOREGROUND)
        await self.feed(0)

        session_id, code = await self.engine.create_share(30, max_views=1)
        view = await self.engine.resolve_view(session_id, code)
        denied = await self.engine.resolve_view(session_id, code)

        self.assertIsInstance(view, ShareView)
        self.assertEqual(view.position.longitude, -122.0)
        self.assertIsInstance(denied, AccessDenied)
        self.assertEqual(await self.engine.get_active_shares(), [])

    async def test_revoked_location_suspends_tracking(self):
        self.engine.start_tracking(TrackingMode.FOREGROUND)
        await self.feed(0)

        await self.source.revoke()

        self.assertEqual(self.engine.tracker.state, TrackingState.SUSPENDED)
        self.assertEqual(self.engine.get_last_position().longitude, -122.0)

    async def test_start_and_close(self):
        await self.engine.start()
        self.engine.start_tracking(TrackingMode.FOREGROUND)

        await self.engine.stop_tracking()
        await self.engine.aclose()

        self.assertFalse(self.engine.tracker.is_active())

    async def test_tracking_sessions_keep_separate_zone_state(self):
        source = PolledLocationSource(DummyLogger(), clock=self.clock)
        engine = SafetyEngine(
            source,
            MemoryDocumentStore("u1"),
            self.channel,
            DummyLogger(),
            trusted_contacts=[CONTACT],
            clock=self.clock,
            sleep=no_sleep,
        )
        zone = await engine.add_zone(37.0, -122.0, 100)
        foreground = engine.start_tracking(TrackingMode.FOREGROUND)
        self.clock.now += 10
        await source.feed(lat_at(10), -122.0, 5.0, self.clock.now)

        # фон присылает более старую точку далеко за границей
        source.polled = PositionSample(lat_at(500), -122.0, 5.0, self.clock.now - 10)
        background = engine.start_tracking(TrackingMode.BACKGROUND)
        for _ in range(100):
            if engine.geofence.containment(zone.id, background.id) != Containment.UNKNOWN:
                break
            await asyncio.sleep(0.01)
        await engine.dispatcher.join()

        self.assertEqual(self.channel.sent, [])
        self.assertEqual(engine.geofence.containment(zone.id, foreground.id), Containment.INSIDE)
        self.assertEqual(engine.geofence.containment(zone.id, background.id), Containment.OUTSIDE)

        await engine.stop_tracking(TrackingMode.BACKGROUND)
        self.assertEqual(engine.geofence.containment(zone.id, background.id), Containment.UNKNOWN)
        self.assertEqual(engine.geofence.containment(zone.id, foreground.id), Containment.INSIDE)
        await engine.aclose()
