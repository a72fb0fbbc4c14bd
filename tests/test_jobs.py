import os
import sys
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.errors import CancellationRequested, ConfigError, PersistenceError
from scanforge.jobs import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    NOTIFY_QUEUE,
    SCAN_QUEUE,
    WAITING,
    InMemoryJobQueue,
    Job,
    RedisJobQueue,
    WorkerPool,
)


class FakeClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


class TestJob(unittest.TestCase):
    def test_final_attempt_and_backoff(self):
        job = Job(id="j", queue=SCAN_QUEUE, name="scan", data={}, max_attempts=3, backoff=5)
        self.assertFalse(job.final_attempt)
        job.attempts_made = 1
        self.assertEqual(job.retry_delay(), 5)
        job.attempts_made = 2
        self.assertTrue(job.final_attempt)
        self.assertEqual(job.retry_delay(), 10)

    def test_json_round_trip_ignores_unknown_keys(self):
        job = Job(id="j", queue=SCAN_QUEUE, name="scan", data={"scan_id": "s"})
        raw = job.to_json().replace('"seq"', '"extra": 1, "seq"')
        self.assertEqual(Job.from_json(raw), job)


class TestInMemoryJobQueue(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.queue = InMemoryJobQueue(clock=self.clock)

    def test_priority_then_arrival(self):
        self.queue.enqueue(SCAN_QUEUE, "notify", {"n": 1})
        self.queue.enqueue(SCAN_QUEUE, "scan", {"n": 2})
        self.queue.enqueue(SCAN_QUEUE, "scan", {"n": 3})
        order = [self.queue.claim(SCAN_QUEUE).data["n"] for _ in range(3)]
        self.assertEqual(order, [2, 3, 1])
        self.assertIsNone(self.queue.claim(SCAN_QUEUE))

    def test_duplicate_job_id_is_not_enqueued_twice(self):
        first = self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="scan-1")
        second = self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="scan-1")
        self.assertIs(first, second)
        self.assertEqual(self.queue.counts(SCAN_QUEUE)[WAITING], 1)

    def test_claimed_job_is_exclusive(self):
        self.queue.enqueue(SCAN_QUEUE, "scan", {})
        self.assertIsNotNone(self.queue.claim(SCAN_QUEUE))
        self.assertIsNone(self.queue.claim(SCAN_QUEUE))
        self.assertEqual(self.queue.counts(SCAN_QUEUE)[ACTIVE], 1)

    def test_retry_with_exponential_backoff_then_dead_letter(self):
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j", attempts=3, backoff=5)

        job = self.queue.claim(SCAN_QUEUE)
        self.assertEqual(self.queue.fail(job, "boom"), DELAYED)
        self.assertEqual(job.run_at, self.clock.now + 5)
        self.assertIsNone(self.queue.claim(SCAN_QUEUE))

        self.clock.now += 5
        job = self.queue.claim(SCAN_QUEUE)
        self.assertEqual(job.attempts_made, 1)
        self.assertEqual(self.queue.fail(job, "boom again"), DELAYED)
        self.assertEqual(job.run_at, self.clock.now + 10)

        self.clock.now += 10
        job = self.queue.claim(SCAN_QUEUE)
        self.assertTrue(job.final_attempt)
        self.assertEqual(self.queue.fail(job, "still broken"), FAILED)
        self.assertEqual([j.id for j in self.queue.dead_letters(SCAN_QUEUE)], ["j"])
        self.assertEqual(self.queue.get("j").last_error, "still broken")

    def test_non_retryable_failure_skips_retries(self):
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, attempts=5)
        job = self.queue.claim(SCAN_QUEUE)
        self.assertEqual(self.queue.fail(job, "bad config", retryable=False), FAILED)

    def test_expired_lease_is_recovered(self):
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j")
        job = self.queue.claim(SCAN_QUEUE, lease_seconds=30)
        self.clock.now += 20
        self.queue.renew(job, 30)
        self.clock.now += 20
        self.assertEqual(self.queue.recover_stalled(SCAN_QUEUE), 0)
        self.clock.now += 11
        self.assertEqual(self.queue.recover_stalled(SCAN_QUEUE), 1)
        self.assertEqual(self.queue.claim(SCAN_QUEUE).id, "j")

    def test_delayed_enqueue(self):
        self.queue.enqueue(NOTIFY_QUEUE, "notify", {}, delay=60)
        self.assertIsNone(self.queue.claim(NOTIFY_QUEUE))
        self.clock.now += 60
        self.assertIsNotNone(self.queue.claim(NOTIFY_QUEUE))


class TestRedisJobQueue(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.pipe = MagicMock()
        self.client.pipeline.return_value = self.pipe
        self.client.incr.return_value = 7
        self.client.hget.return_value = None
        self.clock = FakeClock()
        self.queue = RedisJobQueue(self.client, prefix="sf", clock=self.clock)

    def test_enqueue_scores_by_priority_then_sequence(self):
        job = self.queue.enqueue(SCAN_QUEUE, "notify", {"a": 1}, job_id="j1")
        self.assertEqual(job.priority, 5)
        self.pipe.zadd.assert_called_once_with("sf:scan-jobs:waiting", {"j1": 5 * 10 ** 13 + 7})
        self.pipe.hset.assert_called_once()
        self.pipe.execute.assert_called_once()

    def test_claim_pops_lowest_score(self):
        stored = Job(id="j1", queue=SCAN_QUEUE, name="scan", data={})
        self.client.zrangebyscore.return_value = []
        self.client.zpopmin.return_value = [("j1", 10 ** 13 + 1)]
        self.client.hget.return_value = stored.to_json()
        job = self.queue.claim(SCAN_QUEUE, lease_seconds=30)
        self.assertEqual(job.status, ACTIVE)
        self.pipe.zadd.assert_called_once_with("sf:scan-jobs:active", {"j1": self.clock.now + 30})

    def test_claim_empty(self):
        self.client.zrangebyscore.return_value = []
        self.client.zpopmin.return_value = []
        self.assertIsNone(self.queue.claim(SCAN_QUEUE))

    def test_fail_schedules_retry(self):
        job = Job(id="j1", queue=SCAN_QUEUE, name="scan", data={}, max_attempts=3, backoff=5)
        self.assertEqual(self.queue.fail(job, "boom"), DELAYED)
        self.pipe.zrem.assert_called_once_with("sf:scan-jobs:active", "j1")
        self.pipe.zadd.assert_called_once_with("sf:scan-jobs:delayed", {"j1": self.clock.now + 5})

    def test_fail_exhausted_goes_to_failed_set(self):
        job = Job(id="j1", queue=SCAN_QUEUE, name="scan", data={}, max_attempts=1)
        self.assertEqual(self.queue.fail(job, "boom"), FAILED)
        self.pipe.zadd.assert_called_once_with("sf:scan-jobs:failed", {"j1": self.clock.now})


class TestWorkerPool(unittest.TestCase):
    def setUp(self):
        self.queue = InMemoryJobQueue()

    def make_pool(self, handler, timeouts=None):
        return WorkerPool(self.queue, {SCAN_QUEUE: handler}, lease_seconds=0.3, poll_interval=0.01, timeouts=timeouts)

    def test_successful_job_completes(self):
        seen = []
        pool = self.make_pool(lambda job, cancel: seen.append(job.data["n"]))
        self.queue.enqueue(SCAN_QUEUE, "scan", {"n": 1}, job_id="j")
        self.assertTrue(pool.run_once(SCAN_QUEUE))
        self.assertFalse(pool.run_once(SCAN_QUEUE))
        self.assertEqual(seen, [1])
        self.assertEqual(self.queue.get("j").status, COMPLETED)

    def test_failure_is_retried(self):
        def handler(job, cancel):
            raise PersistenceError("db unavailable")

        pool = self.make_pool(handler)
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j", attempts=2, backoff=0)
        pool.run_once(SCAN_QUEUE)
        self.assertEqual(self.queue.get("j").status, DELAYED)
        pool.run_once(SCAN_QUEUE)
        self.assertEqual(self.queue.get("j").status, FAILED)

    def test_non_retryable_error_fails_immediately(self):
        def handler(job, cancel):
            raise ConfigError("unknown scan mode")

        pool = self.make_pool(handler)
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j", attempts=3)
        pool.run_once(SCAN_QUEUE)
        self.assertEqual(self.queue.get("j").status, FAILED)

    def test_cancelled_job_is_not_retried(self):
        def handler(job, cancel):
            raise CancellationRequested(job.id)

        pool = self.make_pool(handler)
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j")
        pool.run_once(SCAN_QUEUE)
        self.assertEqual(self.queue.get("j").status, COMPLETED)

    def test_timeout_sets_cancel_event_and_fails_job(self):
        def handler(job, cancel):
            self.assertTrue(cancel.wait(5))

        pool = self.make_pool(handler, timeouts={SCAN_QUEUE: 0.2})
        self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id="j", attempts=3)
        pool.run_once(SCAN_QUEUE)
        job = self.queue.get("j")
        self.assertEqual(job.status, FAILED)
        self.assertIn("exceeded", job.last_error)

    def test_threads_drain_queue(self):
        done = threading.Event()
        processed = []

        def handler(job, cancel):
            processed.append(job.id)
            if len(processed) == 3:
                done.set()

        pool = self.make_pool(handler)
        for i in range(3):
            self.queue.enqueue(SCAN_QUEUE, "scan", {}, job_id=f"j{i}")
        pool.start()
        try:
            self.assertTrue(done.wait(5))
        finally:
            pool.stop(timeout=2)
        self.assertEqual(sorted(processed), ["j0", "j1", "j2"])


if __name__ == '__main__':
    unittest.main()
