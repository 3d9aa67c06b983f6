import time

from safewatch.errors import SyncConflict
from safewatch.models import AlertJob, DeliveryStatus, TriggerKind
from safewatch.store_client import HISTORY

EVENT_TYPES = {
    TriggerKind.MANUAL: "SOS",
    TriggerKind.SHAKE: "SOS",
    TriggerKind.SILENT: "SOS",
    TriggerKind.ZONE_EXIT: "SAFE_ZONE_EXIT",
    TriggerKind.ZONE_ENTER: "SAFE_ZONE_ENTER",
}


class HistoryRecorder:
    """Audit trail of alert job transitions. Fire-and-forget: never raises."""

    def __init__(self, store, logger, *, clock=time.time) -> None:
        self.store = store
        self.logger = logger
        self._clock = clock

    def build_event(self, job: AlertJob, online: bool) -> dict:
        position = job.position
        return {
            "job_id": job.id,
            "type": EVENT_TYPES[job.trigger_kind],
            "trigger_kind": job.trigger_kind.value,
            "status": job.status.value,
            "timestamp": self._clock(),
            "location": {
                "latitude": position.latitude,
                "longitude": position.longitude,
                "accuracy": position.accuracy_m,
                "address": job.address,
            }
            if position
            else None,
            "contacts_notified": sum(1 for o in job.outcomes.values() if o.status == DeliveryStatus.DELIVERED),
            "network_status": "online" if online else "offline",
            "silent_mode": job.trigger_kind == TriggerKind.SILENT,
            "zone_id": job.zone_id,
            "error": job.error,
        }

    async def record(self, job: AlertJob, online: bool = True) -> bool:
        event = self.build_event(job, online)
        event_id = f"{job.id}-{job.status.value}-{job.attempt_count}"
        try:
            await self.store.put(HISTORY, event_id, event)
        except (RuntimeError, SyncConflict) as exc:
            self.logger.warning("HISTORY_RECORD_FAILED job_id=%s status=%s error=%s", job.id, job.status.value, exc)
            return False
        except Exception as exc:
            self.logger.error(
                "HISTORY_RECORD_FAILED job_id=%s status=%s error=%s",
                job.id,
                job.status.value,
                exc,
                exc_info=True,
            )
            return False
        return True
