import asyncio
import unittest

from safewatch.errors import CapabilityDenied
from safewatch.location_source import LocationSource, Subscription, TelegramLocationSource
from safewatch.models import CadencePolicy, PermissionStatus, PositionSample, TrackingMode, TrackingState
from safewatch.tracking import TrackingSessionManager


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


class DummyPollingSource(LocationSource):
    def __init__(self, clock) -> None:
        self.clock = clock
        self.calls = 0
        self.status = PermissionStatus.GRANTED

    async def get_current_position(self) -> PositionSample:
        self.calls += 1
        return PositionSample(55.75 + self.calls * 0.01, 37.61, 10.0, self.clock())

    def watch_position(self, on_sample, on_error, options) -> Subscription:
        raise AssertionError("background mode must poll")

    def permission_status(self) -> PermissionStatus:
        return self.status


class TrackingForegroundTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.source = TelegramLocationSource(DummyLogger(), clock=self.clock)
        self.manager = TrackingSessionManager(self.source, DummyLogger(), clock=self.clock)
        self.received = []

        async def listener(sample, handle):
            self.received.append(sample)

        self.manager.subscribe(listener)

    async def test_start_is_idempotent(self):
        first = self.manager.start(TrackingMode.FOREGROUND)
        second = self.manager.start(TrackingMode.FOREGROUND)

        self.assertEqual(first, second)
        self.assertEqual(self.source.watcher_count, 1)
        self.assertTrue(self.manager.is_active())

    async def test_samples_are_filtered(self):
        self.manager.start(TrackingMode.FOREGROUND)

        await self.source.feed(55.7500, 37.6100, 10.0, 1000.0)
        # повтор с тем же временем
        await self.source.feed(55.7600, 37.6100, 10.0, 1000.0)
        # устаревшая точка
        await self.source.feed(55.7600, 37.6100, 10.0, 900.0)
        # слишком неточная
        await self.source.feed(55.7600, 37.6100, 500.0, 1020.0)
        # интервал не прошёл
        await self.source.feed(55.7600, 37.6100, 10.0, 1003.0)
        # интервал прошёл, но смещение ~5 м
        await self.source.feed(55.75004, 37.6100, 10.0, 1030.0)
        await self.source.feed(55.7510, 37.6100, 10.0, 1040.0)

        self.assertEqual([sample.captured_at for sample in self.received], [1000.0, 1040.0])
        self.assertEqual(self.manager.get_last_position().captured_at, 1040.0)
        self.assertEqual(len(self.manager.get_history()), 2)

    async def test_stop_drops_later_samples(self):
        handle = self.manager.start(TrackingMode.FOREGROUND)
        await self.source.feed(55.75, 37.61, 10.0, 1000.0)

        stopped = await self.manager.stop(handle)
        await self.source.feed(55.76, 37.61, 10.0, 1010.0)

        self.assertTrue(stopped)
        self.assertEqual(len(self.received), 1)
        self.assertEqual(self.source.watcher_count, 0)
        self.assertFalse(self.manager.is_active())
        self.assertEqual(self.manager.state, TrackingState.IDLE)
        self.assertFalse(await self.manager.stop(handle))

    async def test_revoked_permission_suspends_tracking(self):
        errors = []

        async def on_error(exc):
            errors.append(exc)

        self.manager.on_error(on_error)
        self.manager.start(TrackingMode.FOREGROUND)
        await self.source.feed(55.75, 37.61, 10.0, 1000.0)

        await self.source.revoke()

        self.assertEqual(self.manager.state, TrackingState.SUSPENDED)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], CapabilityDenied)
        self.assertEqual(self.manager.active_handles(), [])
        self.assertEqual(self.source.watcher_count, 0)
        with self.assertRaises(CapabilityDenied):
            self.manager.start(TrackingMode.FOREGROUND)

        # новая трансляция снова выдаёт разрешение
        await self.source.feed(55.75, 37.61, 10.0, 1010.0)
        self.manager.start(TrackingMode.FOREGROUND)
        self.assertEqual(self.manager.state, TrackingState.ACTIVE)

    async def test_history_is_bounded(self):
        manager = TrackingSessionManager(self.source, DummyLogger(), clock=self.clock, history_max=2)
        manager.start(TrackingMode.FOREGROUND, CadencePolicy(min_interval_sec=0, min_displacement_m=0))

        for offset in range(5):
            await self.source.feed(55.75 + offset * 0.001, 37.61, 10.0, 1000.0 + offset)

        history = manager.get_history()
        self.assertEqual([sample.captured_at for sample in history], [1003.0, 1004.0])
        self.assertEqual(manager.get_history(limit=1)[0].captured_at, 1004.0)


class TrackingBackgroundTests(unittest.IsolatedAsyncioTestCase):
    async def test_background_polls_until_stopped(self):
        clock = FakeClock()
        source = DummyPollingSource(clock)
        manager = TrackingSessionManager(source, DummyLogger(), clock=clock)
        policy = CadencePolicy(min_interval_sec=0.02, min_displacement_m=0)

        handle = manager.start(TrackingMode.BACKGROUND, policy)
        again = manager.start(TrackingMode.BACKGROUND, policy)
        self.assertEqual(handle, again)
        self.assertEqual(len(manager.active_handles()), 1)

        for _ in range(50):
            if source.calls >= 2:
                break
            await asyncio.sleep(0.01)
        await manager.stop(handle)
        calls_at_stop = source.calls
        await asyncio.sleep(0.06)

        self.assertGreaterEqual(calls_at_stop, 2)
        self.assertEqual(source.calls, calls_at_stop)
        self.assertIsNotNone(manager.get_last_position())

    async def test_start_denied_raises_and_suspends(self):
        clock = FakeClock()
        source = DummyPollingSource(clock)
        source.status = PermissionStatus.DENIED
        manager = TrackingSessionManager(source, DummyLogger(), clock=clock)

        with self.assertRaises(CapabilityDenied):
            manager.start(TrackingMode.BACKGROUND)
        self.assertEqual(manager.state, TrackingState.SUSPENDED)
        self.assertEqual(manager.active_handles(), [])
