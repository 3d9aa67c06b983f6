import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from safewatch import config
from safewatch.errors import CapabilityDenied
from safewatch.models import PermissionStatus, PositionSample

SampleCallback = Callable[[PositionSample], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


@dataclass(frozen=True)
class WatchOptions:
    min_interval_sec: float
    min_displacement_m: float


class Subscription:
    def __init__(self, source: "LocationSource", subscription_id: int) -> None:
        self._source = source
        self.id = subscription_id
        self.removed = False

    def remove(self) -> None:
        if self.removed:
            return
        self.removed = True
        self._source._release(self.id)


class LocationSource(ABC):
    """Device positioning capability. The only component touching the platform."""

    @abstractmethod
    async def get_current_position(self) -> PositionSample:
        ...

    @abstractmethod
    def watch_position(self, on_sample: SampleCallback, on_error: ErrorCallback, options: WatchOptions) -> Subscription:
        ...

    @abstractmethod
    def permission_status(self) -> PermissionStatus:
        ...

    def _release(self, subscription_id: int) -> None:
        return None


class TelegramLocationSource(LocationSource):
    """Feeds samples from Telegram (live) location messages of the owner chat.

    Telegram stops editing a live location message when sharing ends; that is
    treated as a revoked capability.
    """

    def __init__(self, logger, *, clock=time.time) -> None:
        self.logger = logger
        self._clock = clock
        self._status = PermissionStatus.UNDETERMINED
        self._last: Optional[PositionSample] = None
        self._watchers: dict[int, tuple[SampleCallback, ErrorCallback]] = {}
        self._ids = itertools.count(1)
        self._next_sample = asyncio.Event()

    def permission_status(self) -> PermissionStatus:
        return self._status

    def watch_position(self, on_sample: SampleCallback, on_error: ErrorCallback, options: WatchOptions) -> Subscription:
        subscription_id = next(self._ids)
        self._watchers[subscription_id] = (on_sample, on_error)
        self.logger.info(
            "LOCATION_WATCH_START id=%s interval=%s displacement=%s",
            subscription_id,
            options.min_interval_sec,
            options.min_displacement_m,
        )
        return Subscription(self, subscription_id)

    def _release(self, subscription_id: int) -> None:
        if self._watchers.pop(subscription_id, None) is not None:
            self.logger.info("LOCATION_WATCH_STOP id=%s", subscription_id)

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    async def get_current_position(self) -> PositionSample:
        if self._status == PermissionStatus.DENIED:
            raise CapabilityDenied("live location sharing is off")
        if self._last is None:
            self._next_sample.clear()
            try:
                await asyncio.wait_for(self._next_sample.wait(), timeout=config.CURRENT_POSITION_TIMEOUT_SEC)
            except asyncio.TimeoutError as exc:
                raise TimeoutError("no position received") from exc
            if self._last is None:
                raise CapabilityDenied("live location sharing is off")
        return self._last

    async def feed(
        self,
        latitude: float,
        longitude: float,
        accuracy_m: float | None = None,
        captured_at: float | None = None,
        heading: float | None = None,
    ) -> PositionSample:
        sample = PositionSample(
            latitude=float(latitude),
            longitude=float(longitude),
            accuracy_m=float(accuracy_m) if accuracy_m is not None else None,
            captured_at=float(captured_at) if captured_at is not None else self._clock(),
            heading=heading,
        )
        self._status = PermissionStatus.GRANTED
        self._last = sample
        self._next_sample.set()
        for on_sample, _ in list(self._watchers.values()):
            await on_sample(sample)
        return sample

    async def revoke(self, reason: str = "live_period_ended") -> None:
        if self._status == PermissionStatus.DENIED:
            return
        self._status = PermissionStatus.DENIED
        self._last = None
        self._next_sample.set()
        self.logger.warning("LOCATION_CAPABILITY_REVOKED reason=%s watchers=%s", reason, len(self._watchers))
        error = CapabilityDenied(reason)
        for _, on_error in list(self._watchers.values()):
            await on_error(error)
