import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from safewatch import config
from safewatch.errors import CapabilityDenied, StaleSample
from safewatch.geo import haversine_m
from safewatch.location_source import LocationSource, Subscription, WatchOptions
from safewatch.models import (
    BACKGROUND_POLICY,
    FOREGROUND_POLICY,
    CadencePolicy,
    PermissionStatus,
    PositionSample,
    TrackingMode,
    TrackingState,
)
from safewatch.ticker import Ticker

PositionListener = Callable[[PositionSample, "TrackingHandle"], Awaitable[None]]
ErrorListener = Callable[[Exception], Awaitable[None]]


@dataclass(frozen=True)
class TrackingHandle:
    id: str
    mode: TrackingMode
    policy: CadencePolicy
    started_at: float


@dataclass
class _TrackingSession:
    handle: TrackingHandle
    subscription: Optional[Subscription] = None
    ticker: Optional[Ticker] = None
    last_accepted: Optional[PositionSample] = None
    cancelled: bool = False
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class TrackingSessionManager:
    def __init__(self, source: LocationSource, logger, *, clock=time.time, history_max: int | None = None) -> None:
        self.source = source
        self.logger = logger
        self._clock = clock
        self._sessions: dict[TrackingMode, _TrackingSession] = {}
        self._listeners: list[PositionListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._last_position: Optional[PositionSample] = None
        self._history: deque[PositionSample] = deque(maxlen=history_max or config.LOCATION_HISTORY_MAX)
        self.state = TrackingState.IDLE

    def subscribe(self, listener: PositionListener) -> None:
        self._listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def is_active(self) -> bool:
        return self.state == TrackingState.ACTIVE and bool(self._sessions)

    def active_handles(self) -> list[TrackingHandle]:
        return [session.handle for session in self._sessions.values()]

    def get_last_position(self) -> Optional[PositionSample]:
        return self._last_position

    def get_history(self, limit: int | None = None) -> list[PositionSample]:
        items = list(self._history)
        if limit:
            return items[-limit:]
        return items

    def start(self, mode: TrackingMode, cadence_policy: CadencePolicy | None = None) -> TrackingHandle:
        existing = self._sessions.get(mode)
        if existing is not None:
            return existing.handle

        if self.source.permission_status() == PermissionStatus.DENIED:
            self.state = TrackingState.SUSPENDED
            self.logger.warning("TRACKING_START_DENIED mode=%s", mode.value)
            raise CapabilityDenied("location permission denied")

        policy = cadence_policy or (FOREGROUND_POLICY if mode == TrackingMode.FOREGROUND else BACKGROUND_POLICY)
        handle = TrackingHandle(id=uuid.uuid4().hex, mode=mode, policy=policy, started_at=self._clock())
        session = _TrackingSession(handle=handle)

        if mode == TrackingMode.FOREGROUND:
            session.subscription = self.source.watch_position(
                lambda sample: self._on_sample(session, sample),
                lambda exc: self._on_error(session, exc),
                WatchOptions(policy.min_interval_sec, policy.min_displacement_m),
            )
        else:
            session.ticker = Ticker(
                f"tracking-poll:{handle.id[:8]}",
                policy.min_interval_sec,
                lambda: self._poll(session),
                first=0,
            )
            session.ticker.start()

        self._sessions[mode] = session
        self.state = TrackingState.ACTIVE
        self.logger.info(
            "TRACKING_STARTED handle=%s mode=%s interval=%s displacement=%s",
            handle.id,
            mode.value,
            policy.min_interval_sec,
            policy.min_displacement_m,
        )
        return handle

    async def stop(self, handle: TrackingHandle) -> bool:
        session = self._sessions.get(handle.mode)
        if session is None or session.handle.id != handle.id:
            return False
        self._sessions.pop(handle.mode, None)
        await self._release(session)
        if not self._sessions and self.state == TrackingState.ACTIVE:
            self.state = TrackingState.IDLE
        self.logger.info("TRACKING_STOPPED handle=%s mode=%s", handle.id, handle.mode.value)
        return True

    async def stop_all(self) -> None:
        for session in list(self._sessions.values()):
            await self.stop(session.handle)

    async def _release(self, session: _TrackingSession) -> None:
        session.cancelled = True
        if session.subscription is not None:
            session.subscription.remove()
        if session.ticker is not None:
            await session.ticker.stop()

    def _accept(self, session: _TrackingSession, sample: PositionSample) -> bool:
        """False when the cadence policy skips the sample; StaleSample when it is unusable."""
        policy = session.handle.policy
        age = self._clock() - sample.captured_at
        if age > policy.max_age_sec:
            raise StaleSample(f"age={age:.1f}")
        if sample.accuracy_m is not None and sample.accuracy_m > policy.max_accuracy_m:
            raise StaleSample(f"accuracy={sample.accuracy_m:.1f}")

        last = session.last_accepted
        if last is None:
            return True
        if sample.captured_at <= last.captured_at:
            raise StaleSample(f"replay ts={sample.captured_at} last={last.captured_at}")
        if sample.captured_at - last.captured_at < policy.min_interval_sec:
            return False
        moved = haversine_m(last.latitude, last.longitude, sample.latitude, sample.longitude)
        return moved >= policy.min_displacement_m

    async def _on_sample(self, session: _TrackingSession, sample: PositionSample) -> None:
        if session.cancelled:
            return
        async with session.delivery_lock:
            if session.cancelled:
                return
            try:
                if not self._accept(session, sample):
                    return
            except StaleSample as exc:
                self.logger.debug("SAMPLE_DROPPED handle=%s reason=%s", session.handle.id, exc)
                return
            session.last_accepted = sample
            self._last_position = sample
            self._history.append(sample)
            for listener in list(self._listeners):
                if session.cancelled:
                    return
                try:
                    await listener(sample, session.handle)
                except Exception as exc:
                    self.logger.error(
                        "POSITION_LISTENER_FAILED handle=%s error=%s",
                        session.handle.id,
                        exc,
                        exc_info=True,
                    )

    async def _on_error(self, session: _TrackingSession, exc: Exception) -> None:
        if session.cancelled:
            return
        if isinstance(exc, CapabilityDenied):
            await self._suspend(exc)
            return
        self.logger.warning("LOCATION_SOURCE_ERROR handle=%s error=%s", session.handle.id, exc)

    async def _poll(self, session: _TrackingSession) -> None:
        try:
            sample = await self.source.get_current_position()
        except CapabilityDenied as exc:
            await self._on_error(session, exc)
            return
        except (TimeoutError, asyncio.TimeoutError) as exc:
            self.logger.warning("LOCATION_POLL_TIMEOUT handle=%s error=%s", session.handle.id, exc)
            return
        await self._on_sample(session, sample)

    async def _suspend(self, exc: CapabilityDenied) -> None:
        if self.state == TrackingState.SUSPENDED:
            return
        self.state = TrackingState.SUSPENDED
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._release(session)
        self.logger.warning("TRACKING_SUSPENDED sessions=%s reason=%s", len(sessions), exc)
        for listener in list(self._error_listeners):
            try:
                await listener(exc)
            except Exception as listener_exc:
                self.logger.error("TRACKING_ERROR_LISTENER_FAILED error=%s", listener_exc, exc_info=True)
