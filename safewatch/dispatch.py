import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from safewatch import config
from safewatch.errors import DeliveryFailed, DispatchExhausted, SyncConflict
from safewatch.geo import map_link
from safewatch.logging_setup import mask_address
from safewatch.models import (
    AlertJob,
    DeliveryStatus,
    JobStatus,
    PositionSample,
    RecipientOutcome,
    TriggerKind,
)
from safewatch.store_client import ALERT_JOBS

REASON_TEXT = {
    TriggerKind.MANUAL: "SOS button pressed",
    TriggerKind.SHAKE: "SOS triggered by shaking the phone",
    TriggerKind.SILENT: "Silent SOS",
    TriggerKind.ZONE_EXIT: "Left safe zone",
    TriggerKind.ZONE_ENTER: "Entered safe zone",
}


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def compose_message(job: AlertJob, user_name: str) -> str:
    reason = REASON_TEXT[job.trigger_kind]
    if job.zone_name:
        reason = f'{reason} "{job.zone_name}"'

    lines = ["🚨 EMERGENCY ALERT 🚨", "", f"{user_name} needs help!", f"Reason: {reason}", ""]
    position = job.position
    if position is None:
        lines.append("Location: unavailable")
    else:
        coords = f"{position.latitude:.6f}, {position.longitude:.6f}"
        lines.append(f"Location: {job.address or coords}")
        if job.address:
            lines.append(f"Coordinates: {coords}")
        if position.accuracy_m is not None:
            lines.append(f"Accuracy: ±{position.accuracy_m:.0f} m")
        lines.append(f"Google Maps: {map_link(position.latitude, position.longitude)}")
    lines.append(f"Time: {_format_ts(position.captured_at if position else job.created_at)}")
    lines.extend(["", "This is an automated emergency message from SafeWatch."])
    return "\n".join(lines)


class AlertDispatcher:
    """Composes emergency messages and delivers them to every recipient.

    Recipients are attempted concurrently and independently, each attempt
    bounded by a timeout and retried with exponential backoff. A job is
    ``delivered`` if at least one recipient got the message. Jobs created
    while offline wait in the durable queue until connectivity returns.
    """

    def __init__(
        self,
        channel,
        connectivity,
        queue,
        history,
        store,
        logger,
        *,
        geocoder=None,
        user_name: str | None = None,
        clock=time.time,
        sleep=asyncio.sleep,
        max_attempts: int | None = None,
        backoff_base_sec: float | None = None,
        delivery_timeout_sec: float | None = None,
        zone_cooldown_sec: float | None = None,
        max_queue_attempts: int | None = None,
        job_retention_sec: float | None = None,
    ) -> None:
        self.channel = channel
        self.connectivity = connectivity
        self.queue = queue
        self.history = history
        self.store = store
        self.logger = logger
        self.geocoder = geocoder
        self.user_name = user_name or config.USER_NAME
        self._clock = clock
        self._sleep = sleep
        self.max_attempts = config.DELIVERY_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff_base_sec = config.DELIVERY_BACKOFF_BASE_SEC if backoff_base_sec is None else backoff_base_sec
        self.delivery_timeout_sec = config.DELIVERY_TIMEOUT_SEC if delivery_timeout_sec is None else delivery_timeout_sec
        self.zone_cooldown_sec = config.ZONE_ALERT_COOLDOWN_SEC if zone_cooldown_sec is None else zone_cooldown_sec
        self.max_queue_attempts = (
            config.OFFLINE_MAX_QUEUE_ATTEMPTS if max_queue_attempts is None else max_queue_attempts
        )
        self.job_retention_sec = config.JOB_RETENTION_SEC if job_retention_sec is None else job_retention_sec

        self._jobs: dict[str, AlertJob] = {}
        for job in queue.jobs():
            # прерванная попытка: после рестарта снова в очередь
            if job.status != JobStatus.QUEUED_OFFLINE:
                job.status = JobStatus.QUEUED_OFFLINE
                queue.push(job)
            self._jobs[job.id] = job
        self._zone_last_alert: dict[str, float] = {}
        self._watchers: dict[str, list[asyncio.Queue]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._persist_locks: dict[str, asyncio.Lock] = {}
        self._drain_lock = asyncio.Lock()
        connectivity.add_listener(self._on_connectivity)

    def get_job(self, job_id: str) -> Optional[AlertJob]:
        job = self._jobs.get(job_id)
        return AlertJob.from_dict(job.to_dict()) if job is not None else None

    def jobs(self) -> list[AlertJob]:
        return [AlertJob.from_dict(job.to_dict()) for job in sorted(self._jobs.values(), key=lambda j: j.created_at)]

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _prune_finished(self, now: float) -> None:
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal
            and now - job.updated_at > self.job_retention_sec
            and job_id not in self._watchers
        ]
        for job_id in stale:
            del self._jobs[job_id]
        if stale:
            self.logger.info("ALERT_JOBS_PRUNED count=%s", len(stale))

    def _cooldown_blocks(self, kind: TriggerKind, zone_id: str | None, now: float) -> bool:
        if not kind.is_zone_transition:
            return False
        key = zone_id or kind.value
        last = self._zone_last_alert.get(key)
        if last is not None and (now - last) < self.zone_cooldown_sec:
            return True
        self._zone_last_alert[key] = now
        return False

    async def trigger(
        self,
        kind: TriggerKind,
        recipients: list[str],
        position: Optional[PositionSample],
        *,
        zone_id: str | None = None,
        zone_name: str | None = None,
    ) -> Optional[str]:
        """Create an alert job; returns its id, or None when coalesced by the zone cooldown."""
        addresses = list(dict.fromkeys(str(r).strip() for r in recipients if str(r).strip()))
        if not addresses:
            raise ValueError("alert needs at least one recipient")

        now = self._clock()
        self._prune_finished(now)
        if self._cooldown_blocks(kind, zone_id, now):
            self.logger.info("ALERT_COALESCED kind=%s zone_id=%s", kind.value, zone_id)
            return None

        job = AlertJob(
            id=uuid.uuid4().hex,
            trigger_kind=kind,
            recipients=addresses,
            position=position,
            created_at=now,
            zone_id=zone_id,
            zone_name=zone_name,
            outcomes={address: RecipientOutcome(address=address) for address in addresses},
            updated_at=now,
        )
        self._jobs[job.id] = job
        self.logger.info("ALERT_JOB_CREATED job_id=%s kind=%s recipients=%s", job.id, kind.value, len(addresses))
        self._publish(job)

        if not self.connectivity.is_online:
            job.transition(JobStatus.QUEUED_OFFLINE, self._clock())
            self.queue.push(job)
            self.logger.warning("ALERT_JOB_QUEUED_OFFLINE job_id=%s queued=%s", job.id, len(self.queue))
            self._publish(job)
            return job.id

        self._spawn(self._run_job(job))
        return job.id

    async def retrigger(self, job_id: str) -> Optional[str]:
        """Manual re-send of a failed job as a fresh manual alert."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        self.logger.info("ALERT_JOB_RETRIGGER job_id=%s", job_id)
        return await self.trigger(TriggerKind.MANUAL, list(job.recipients), job.position)

    async def watch(self, job_id: str) -> AsyncIterator[JobStatus]:
        """Yields the current status of the job, then every later transition until terminal."""
        job = self._jobs.get(job_id)
        if job is None:
            return
        updates: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(job_id, []).append(updates)
        try:
            status = job.status
            yield status
            while not status.is_terminal:
                status = await updates.get()
                yield status
        finally:
            watchers = self._watchers.get(job_id, [])
            if updates in watchers:
                watchers.remove(updates)
            if not watchers:
                self._watchers.pop(job_id, None)

    def _publish(self, job: AlertJob) -> None:
        for updates in self._watchers.get(job.id, []):
            updates.put_nowait(job.status)
        self._spawn(self._persist(AlertJob.from_dict(job.to_dict()), self.connectivity.is_online))

    async def _persist(self, snapshot: AlertJob, online: bool) -> None:
        # записи одного джоба уходят в порядке переходов
        lock = self._persist_locks.setdefault(snapshot.id, asyncio.Lock())
        async with lock:
            try:
                await self.store.put(ALERT_JOBS, snapshot.id, snapshot.to_dict())
            except (RuntimeError, SyncConflict) as exc:
                self.logger.warning(
                    "ALERT_JOB_PERSIST_FAILED job_id=%s status=%s error=%s",
                    snapshot.id,
                    snapshot.status.value,
                    exc,
                )
            await self.history.record(snapshot, online)
        if snapshot.status.is_terminal:
            self._persist_locks.pop(snapshot.id, None)

    async def _resolve_address(self, position: PositionSample) -> Optional[str]:
        if self.geocoder is None:
            return None
        try:
            return await asyncio.wait_for(
                self.geocoder.reverse(position.latitude, position.longitude),
                timeout=config.GEOCODER_TIMEOUT_SEC,
            )
        except asyncio.TimeoutError:
            self.logger.warning("ALERT_GEOCODE_TIMEOUT lat=%.5f lon=%.5f", position.latitude, position.longitude)
            return None

    async def _deliver(self, job: AlertJob, outcome: RecipientOutcome, message: str) -> None:
        error = None
        for attempt in range(1, self.max_attempts + 1):
            outcome.attempts += 1
            retryable = True
            try:
                delivery_id = await asyncio.wait_for(
                    self.channel.send(outcome.address, message),
                    timeout=self.delivery_timeout_sec,
                )
            except asyncio.TimeoutError:
                error = "timeout"
            except DeliveryFailed as exc:
                error = exc.reason
                retryable = exc.retryable
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                self.logger.error(
                    "ALERT_CHANNEL_ERROR job_id=%s to=%s error=%s",
                    job.id,
                    mask_address(outcome.address),
                    exc,
                    exc_info=True,
                )
            else:
                outcome.status = DeliveryStatus.DELIVERED
                outcome.delivery_id = delivery_id
                outcome.error = None
                self.logger.info(
                    "ALERT_DELIVERY_OK job_id=%s to=%s attempt=%s delivery_id=%s",
                    job.id,
                    mask_address(outcome.address),
                    attempt,
                    delivery_id,
                )
                return

            self.logger.warning(
                "ALERT_DELIVERY_FAILED job_id=%s to=%s attempt=%s/%s retryable=%s error=%s",
                job.id,
                mask_address(outcome.address),
                attempt,
                self.max_attempts,
                retryable,
                error,
            )
            if not retryable or attempt >= self.max_attempts:
                break
            await self._sleep(self.backoff_base_sec * 2 ** (attempt - 1))

        outcome.status = DeliveryStatus.FAILED
        outcome.error = error

    async def _run_job(self, job: AlertJob) -> None:
        job.transition(JobStatus.IN_FLIGHT, self._clock())
        job.attempt_count += 1
        self._publish(job)

        if job.address is None and job.position is not None:
            job.address = await self._resolve_address(job.position)
        message = compose_message(job, self.user_name)

        pending = [outcome for outcome in job.outcomes.values() if outcome.status != DeliveryStatus.DELIVERED]
        for outcome in pending:
            outcome.status = DeliveryStatus.PENDING
        await asyncio.gather(*(self._deliver(job, outcome, message) for outcome in pending))

        delivered = sum(1 for o in job.outcomes.values() if o.status == DeliveryStatus.DELIVERED)
        if delivered:
            job.error = None
            job.transition(JobStatus.DELIVERED, self._clock())
            self.queue.remove(job.id)
            self.logger.info(
                "ALERT_JOB_DELIVERED job_id=%s delivered=%s/%s",
                job.id,
                delivered,
                len(job.outcomes),
            )
        elif not self.connectivity.is_online and job.queue_attempts < self.max_queue_attempts:
            job.transition(JobStatus.QUEUED_OFFLINE, self._clock())
            self.queue.push(job)
            self.logger.warning(
                "ALERT_JOB_REQUEUED job_id=%s queue_attempts=%s/%s",
                job.id,
                job.queue_attempts,
                self.max_queue_attempts,
            )
        else:
            exhausted = DispatchExhausted(job.id, len(job.outcomes))
            job.error = "dispatch_exhausted"
            job.transition(JobStatus.FAILED, self._clock())
            self.queue.remove(job.id)
            self.logger.error("ALERT_JOB_FAILED job_id=%s error=%s", job.id, exhausted)
        self._publish(job)

    async def _on_connectivity(self, online: bool) -> None:
        if online and len(self.queue):
            self._spawn(self.drain_offline_queue())

    async def drain_offline_queue(self) -> int:
        """Attempts every queued job once, oldest first. Returns the number attempted."""
        async with self._drain_lock:
            attempted = 0
            queued = self.queue.jobs()
            if queued:
                self.logger.info("ALERT_QUEUE_DRAIN_START queued=%s", len(queued))
            for stored in queued:
                if not self.connectivity.is_online:
                    self.logger.warning("ALERT_QUEUE_DRAIN_PAUSED remaining=%s", len(self.queue))
                    break
                job = self._jobs.setdefault(stored.id, stored)
                if job.status != JobStatus.QUEUED_OFFLINE:
                    self.queue.remove(job.id)
                    continue
                job.queue_attempts += 1
                await self._run_job(job)
                attempted += 1
            return attempted
