import os
import tempfile
import unittest

from safewatch.models import AlertJob, PositionSample, TriggerKind
from safewatch.offline_queue import OfflineQueue


class DummyLogger:
    def info(self, *args, **kwargs):
        pass

    def warning(self, *args, **kwargs):
        pass

    def error(self, *args, **kwargs):
        pass


def make_job(job_id: str, created_at: float) -> AlertJob:
    return AlertJob(
        id=job_id,
        trigger_kind=TriggerKind.MANUAL,
        recipients=["+79991234567"],
        position=PositionSample(55.75, 37.61, 10.0, created_at),
        created_at=created_at,
    )


class OfflineQueueTests(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.addCleanup(self.directory.cleanup)
        self.path = os.path.join(self.directory.name, "queue.json")

    def test_jobs_persist_oldest_first(self):
        queue = OfflineQueue(self.path, DummyLogger())
        queue.push(make_job("late", 2000.0))
        queue.push(make_job("early", 1000.0))

        restored = OfflineQueue(self.path, DummyLogger())

        self.assertEqual([job.id for job in restored.jobs()], ["early", "late"])
        self.assertEqual(restored.get("early").position.latitude, 55.75)

    def test_remove(self):
        queue = OfflineQueue(self.path, DummyLogger())
        queue.push(make_job("a", 1000.0))

        self.assertIsNotNone(queue.remove("a"))
        self.assertIsNone(queue.remove("a"))
        self.assertEqual(len(OfflineQueue(self.path, DummyLogger())), 0)

    def test_corrupted_file_is_backed_up(self):
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write("{not json")

        queue = OfflineQueue(self.path, DummyLogger())

        self.assertEqual(len(queue), 0)
        self.assertTrue(os.path.exists(self.path + ".broken"))

    def test_memory_only_queue(self):
        queue = OfflineQueue(None, DummyLogger())
        queue.push(make_job("a", 1000.0))

        self.assertEqual(len(queue), 1)
