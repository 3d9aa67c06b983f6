import asyncio
import time
from typing import AsyncIterator, Optional

from safewatch import config
from safewatch.connectivity import ConnectivityProbe, ConnectivitySignal
from safewatch.dispatch import AlertDispatcher
from safewatch.errors import CapabilityDenied
from safewatch.geofence import GeofenceEvaluator
from safewatch.geocode import ReverseGeocoder
from safewatch.history import HistoryRecorder
from safewatch.location_source import LocationSource
from safewatch.models import JobStatus, PositionSample, SafeZone, TrackingMode, TriggerKind, ZoneEvent
from safewatch.offline_queue import OfflineQueue
from safewatch.sharing import ShareSessionManager
from safewatch.ticker import Ticker
from safewatch.tracking import TrackingHandle, TrackingSessionManager
from safewatch.zones import ZoneService


class SafetyEngine:
    """Wires tracking, geofencing, alert dispatch and sharing for one device."""

    def __init__(
        self,
        source: LocationSource,
        store,
        channel,
        logger,
        *,
        connectivity: ConnectivitySignal | None = None,
        queue: OfflineQueue | None = None,
        geocoder: ReverseGeocoder | None = None,
        probe: ConnectivityProbe | None = None,
        trusted_contacts: list[str] | None = None,
        clock=time.time,
        sleep=asyncio.sleep,
    ) -> None:
        self.logger = logger
        self.source = source
        self.store = store
        self.channel = channel
        self.connectivity = connectivity or ConnectivitySignal()
        self.probe = probe
        self.trusted_contacts = list(trusted_contacts if trusted_contacts is not None else config.TRUSTED_CONTACTS)

        self.tracker = TrackingSessionManager(source, logger, clock=clock)
        self.zones = ZoneService(store, logger, clock=clock)
        self.geofence = GeofenceEvaluator(self.zones, logger, clock=clock)
        self.history = HistoryRecorder(store, logger, clock=clock)
        self.dispatcher = AlertDispatcher(
            channel,
            self.connectivity,
            queue if queue is not None else OfflineQueue(None, logger),
            self.history,
            store,
            logger,
            geocoder=geocoder,
            clock=clock,
            sleep=sleep,
        )
        self.sharing = ShareSessionManager(store, self.tracker, logger, channel=channel, clock=clock)
        self._zone_reload = Ticker("zone-reload", config.ZONE_RELOAD_EVERY_SEC, self.zones.reload, first=0)
        self._handles: dict[TrackingMode, TrackingHandle] = {}

        self.tracker.subscribe(self._on_position)
        self.tracker.on_error(self._on_tracking_error)
        self.geofence.subscribe(self._on_zone_event)

    async def start(self) -> None:
        self._zone_reload.start()
        self.sharing.start()
        if self.probe is not None:
            self.probe.start()
        if len(self.dispatcher.queue) and self.connectivity.is_online:
            await self.dispatcher.drain_offline_queue()
        self.logger.info("ENGINE_STARTED contacts=%s", len(self.trusted_contacts))

    async def aclose(self) -> None:
        await self.stop_tracking()
        await self.tracker.stop_all()
        await self._zone_reload.stop()
        await self.geofence.join()
        await self.sharing.aclose()
        if self.probe is not None:
            await self.probe.aclose()
        await self.dispatcher.join()
        self.logger.info("ENGINE_STOPPED")

    async def _on_position(self, sample: PositionSample, handle: TrackingHandle) -> None:
        await self.geofence.evaluate(sample, handle.id)

    async def _on_zone_event(self, event: ZoneEvent) -> None:
        if not self.trusted_contacts:
            self.logger.warning("ZONE_ALERT_NO_CONTACTS zone=%s kind=%s", event.zone.id, event.kind.value)
            return
        await self.dispatcher.trigger(
            event.trigger_kind,
            self.trusted_contacts,
            event.sample,
            zone_id=event.zone.id,
            zone_name=event.zone.name,
        )

    async def _on_tracking_error(self, exc: Exception) -> None:
        for handle in self._handles.values():
            self.geofence.forget_session(handle.id)
        self._handles.clear()
        self.logger.warning("ENGINE_TRACKING_SUSPENDED error=%s", exc)

    # tracking

    def start_tracking(self, mode: TrackingMode = TrackingMode.FOREGROUND) -> TrackingHandle:
        handle = self.tracker.start(mode)
        self._handles[mode] = handle
        return handle

    async def stop_tracking(self, mode: TrackingMode | None = None) -> None:
        modes = [mode] if mode is not None else list(self._handles)
        for item in modes:
            handle = self._handles.pop(item, None)
            if handle is not None:
                await self.tracker.stop(handle)
                self.geofence.forget_session(handle.id)

    def get_last_position(self) -> Optional[PositionSample]:
        return self.tracker.get_last_position()

    # zones

    async def add_zone(self, center_lat: float, center_lon: float, radius_m: float, **options) -> SafeZone:
        return await self.zones.add_zone(center_lat, center_lon, radius_m, **options)

    async def update_zone(self, zone_id: str, **changes) -> SafeZone:
        return await self.zones.update_zone(zone_id, **changes)

    async def toggle_zone(self, zone_id: str, enabled: bool) -> SafeZone:
        return await self.zones.toggle_zone(zone_id, enabled)

    async def remove_zone(self, zone_id: str) -> bool:
        return await self.zones.remove_zone(zone_id)

    # alerts

    async def _current_position(self) -> Optional[PositionSample]:
        position = self.tracker.get_last_position()
        if position is not None:
            return position
        try:
            return await self.source.get_current_position()
        except (CapabilityDenied, TimeoutError, asyncio.TimeoutError) as exc:
            self.logger.warning("SOS_POSITION_UNAVAILABLE error=%s", exc)
            return None

    async def trigger_sos(
        self,
        kind: TriggerKind = TriggerKind.MANUAL,
        recipients: list[str] | None = None,
    ) -> tuple[Optional[str], AsyncIterator[JobStatus]]:
        position = await self._current_position()
        job_id = await self.dispatcher.trigger(kind, recipients or self.trusted_contacts, position)
        return job_id, self.dispatcher.watch(job_id)

    # sharing

    async def create_share(self, duration_minutes: int | None = None, **options) -> tuple[str, str]:
        return await self.sharing.create_session(duration_minutes or config.SHARE_DEFAULT_MINUTES, **options)

    async def extend_share(self, session_id: str, minutes: int) -> bool:
        return await self.sharing.extend(session_id, minutes)

    async def stop_share(self, session_id: str) -> bool:
        return await self.sharing.stop(session_id)

    async def get_active_shares(self):
        return await self.sharing.get_active_sessions()

    async def resolve_view(self, session_id: str, access_code: str):
        return await self.sharing.resolve_view(session_id, access_code)
