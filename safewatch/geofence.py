import asyncio
import time
from typing import Awaitable, Callable, Optional

from safewatch import config
from safewatch.geo import haversine_m
from safewatch.models import (
    Containment,
    PositionSample,
    SafeZone,
    ZoneContainment,
    ZoneEvent,
    ZoneEventKind,
)

ZoneEventListener = Callable[[ZoneEvent], Awaitable[None]]

DEFAULT_SESSION = "default"


def classify(zone: SafeZone, sample: PositionSample) -> Containment:
    """Inside iff the great-circle distance is <= radius (boundary counts as inside)."""
    distance = haversine_m(zone.center_lat, zone.center_lon, sample.latitude, sample.longitude)
    return Containment.INSIDE if distance <= zone.radius_m else Containment.OUTSIDE


class GeofenceEvaluator:
    """Edge-triggered containment state machine per (tracking session, zone).

    Unknown -> Inside/Outside only seeds state. Outside -> Inside emits
    ``entered`` when the zone alerts on enter, Inside -> Outside emits
    ``exited`` when it alerts on exit. Repeated classifications are silent.
    """

    def __init__(self, zones, logger, *, hysteresis_ratio: float | None = None, clock=time.time) -> None:
        self.zones = zones
        self.logger = logger
        self.hysteresis_ratio = config.GEOFENCE_HYSTERESIS_RATIO if hysteresis_ratio is None else hysteresis_ratio
        self._clock = clock
        self._states: dict[tuple[str, str], ZoneContainment] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[ZoneEventListener] = []
        self._tasks: set[asyncio.Task] = set()
        zones.on_change(self._on_zones_changed)

    def subscribe(self, listener: ZoneEventListener) -> None:
        self._listeners.append(listener)

    def containment(self, zone_id: str, session_id: str = DEFAULT_SESSION) -> Containment:
        state = self._states.get((session_id, zone_id))
        if state is None:
            return Containment.UNKNOWN
        return Containment.INSIDE if state.is_inside else Containment.OUTSIDE

    def states(self, session_id: str = DEFAULT_SESSION) -> list[ZoneContainment]:
        return [
            ZoneContainment(state.zone_id, state.is_inside, state.last_transition_at)
            for (sid, _), state in self._states.items()
            if sid == session_id
        ]

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def forget_session(self, session_id: str) -> None:
        for key in [key for key in self._states if key[0] == session_id]:
            self._states.pop(key, None)

    def _on_zones_changed(self, removed_ids: set[str]) -> None:
        if not removed_ids:
            return
        for key in [key for key in self._states if key[1] in removed_ids]:
            self._states.pop(key, None)
        self.logger.info("GEOFENCE_STATE_DROPPED zones=%s", sorted(removed_ids))

    def _is_inside(self, zone: SafeZone, distance: float, was_inside: Optional[bool]) -> bool:
        margin = self.hysteresis_ratio
        if was_inside is None or margin <= 0:
            return distance <= zone.radius_m
        if was_inside:
            return distance <= zone.radius_m * (1 + margin)
        return distance <= zone.radius_m * (1 - margin)

    async def evaluate(self, sample: PositionSample, session_id: str = DEFAULT_SESSION) -> list[ZoneEvent]:
        zones = [zone for zone in self.zones.snapshot() if zone.enabled]
        live_ids = {zone.id for zone in zones}
        events: list[ZoneEvent] = []
        transitions: list[tuple[str, bool]] = []

        async with self._lock:
            # zones removed or disabled since the last cycle are not-found
            for key in [key for key in self._states if key[0] == session_id and key[1] not in live_ids]:
                self._states.pop(key, None)

            for zone in zones:
                distance = haversine_m(zone.center_lat, zone.center_lon, sample.latitude, sample.longitude)
                key = (session_id, zone.id)
                state = self._states.get(key)
                inside = self._is_inside(zone, distance, state.is_inside if state else None)

                if state is None:
                    self._states[key] = ZoneContainment(zone.id, inside, sample.captured_at)
                    self.logger.info(
                        "GEOFENCE_SEED zone=%s inside=%s distance=%.1f radius=%.1f",
                        zone.id,
                        inside,
                        distance,
                        zone.radius_m,
                    )
                    continue

                if state.is_inside == inside:
                    continue

                state.is_inside = inside
                state.last_transition_at = sample.captured_at
                transitions.append((zone.id, inside))
                kind = ZoneEventKind.ENTERED if inside else ZoneEventKind.EXITED
                self.logger.info(
                    "GEOFENCE_TRANSITION zone=%s kind=%s distance=%.1f radius=%.1f",
                    zone.id,
                    kind.value,
                    distance,
                    zone.radius_m,
                )
                if (inside and zone.alert_on_enter) or (not inside and zone.alert_on_exit):
                    events.append(ZoneEvent(kind=kind, zone=zone, sample=sample, distance_m=distance))

        for zone_id, entered in transitions:
            task = asyncio.create_task(self.zones.record_transition(zone_id, entered, sample.captured_at))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        for event in events:
            for listener in list(self._listeners):
                try:
                    await listener(event)
                except Exception as exc:
                    self.logger.error(
                        "GEOFENCE_LISTENER_FAILED zone=%s kind=%s error=%s",
                        event.zone.id,
                        event.kind.value,
                        exc,
                        exc_info=True,
                    )
        return events
