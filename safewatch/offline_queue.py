import json
from pathlib import Path
from typing import Optional

from safewatch.models import AlertJob


class OfflineQueue:
    """Durable local queue of alert jobs waiting for connectivity.

    Persisted as a JSON list; every mutation rewrites the file through a
    temporary file so a crash leaves either the old or the new snapshot.
    """

    def __init__(self, path: str | Path | None, logger) -> None:
        self._path = Path(path) if path else None
        self.logger = logger
        self._jobs: dict[str, AlertJob] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        text = self._path.read_text(encoding="utf-8").strip()
        if not text:
            return
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            backup = self._path.with_suffix(self._path.suffix + ".broken")
            backup.write_text(text, encoding="utf-8")
            self.logger.error("OFFLINE_QUEUE_CORRUPTED path=%s backup=%s", self._path, backup)
            return
        for item in raw if isinstance(raw, list) else []:
            try:
                job = AlertJob.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning("OFFLINE_QUEUE_BAD_RECORD error=%s", exc)
                continue
            self._jobs[job.id] = job
        self.logger.info("OFFLINE_QUEUE_LOADED jobs=%s", len(self._jobs))

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = [job.to_dict() for job in self.jobs()]
        tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self._path)

    def push(self, job: AlertJob) -> None:
        self._jobs[job.id] = job
        self._save()

    def remove(self, job_id: str) -> Optional[AlertJob]:
        job = self._jobs.pop(job_id, None)
        if job is not None:
            self._save()
        return job

    def get(self, job_id: str) -> Optional[AlertJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> list[AlertJob]:
        """Queued jobs, oldest first."""
        return sorted(self._jobs.values(), key=lambda job: (job.created_at, job.id))

    def __len__(self) -> int:
        return len(self._jobs)
