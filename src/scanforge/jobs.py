"""
Durable job queue and the worker pool that drains it.

Jobs are ordered by priority (lower first), then by arrival. A claimed job holds a lease
that its worker renews while the handler runs; leases that expire (crashed worker) are
put back by `recover_stalled`. Failed jobs are retried with exponential backoff until
their attempts run out, then moved to the dead-letter set.
"""

import heapq
import itertools
import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from scanforge.errors import CancellationRequested, JobTimeout
from scanforge.logger import setup_logger

logger = setup_logger(__name__)

SCAN_QUEUE = "scan-jobs"
TARGET_SCAN_QUEUE = "target-scan-jobs"
NOTIFY_QUEUE = "notify-jobs"

PRIORITIES = {
    "scan": 1,
    "clone": 2,
    "scanner": 3,
    "target-scan": 2,
    "notify": 5,
}

JOB_TIMEOUTS = {
    SCAN_QUEUE: 15 * 60.0,
    TARGET_SCAN_QUEUE: 30 * 60.0,
    NOTIFY_QUEUE: 60.0,
}

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 5.0
DEFAULT_CONCURRENCY = 2
DEFAULT_LEASE = 60.0

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

# priority weight dominates arrival order in sorted-set scores
_PRIORITY_WEIGHT = 10 ** 13


@dataclass
class Job:
    id: str
    queue: str
    name: str
    data: Dict[str, Any]
    priority: int = PRIORITIES["scan"]
    max_attempts: int = DEFAULT_ATTEMPTS
    backoff: float = DEFAULT_BACKOFF
    attempts_made: int = 0
    status: str = WAITING
    created_at: float = field(default_factory=time.time)
    run_at: float = 0.0
    lease_until: float = 0.0
    last_error: Optional[str] = None
    seq: int = 0

    @property
    def final_attempt(self) -> bool:
        """True while running the last attempt the job is allowed."""
        return self.attempts_made + 1 >= self.max_attempts

    def retry_delay(self) -> float:
        """Delay before the next attempt, after attempts_made failures."""
        return self.backoff * (2 ** max(self.attempts_made - 1, 0))

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


class JobQueue:
    """
    enqueue / claim / renew / complete / fail / recover_stalled over named queues.
    """

    def enqueue(
        self,
        queue: str,
        name: str,
        data: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
        delay: float = 0.0,
    ) -> Job:
        raise NotImplementedError

    def claim(self, queue: str, lease_seconds: float = DEFAULT_LEASE) -> Optional[Job]:
        raise NotImplementedError

    def renew(self, job: Job, lease_seconds: float = DEFAULT_LEASE) -> None:
        raise NotImplementedError

    def complete(self, job: Job) -> None:
        raise NotImplementedError

    def fail(self, job: Job, error: str, retryable: bool = True) -> str:
        """Returns the job's new status: delayed (retry scheduled) or failed."""
        raise NotImplementedError

    def recover_stalled(self, queue: str) -> int:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def counts(self, queue: str) -> Dict[str, int]:
        raise NotImplementedError


class InMemoryJobQueue(JobQueue):
    """Single-process queue with the same semantics as the redis one."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._jobs: Dict[str, Job] = {}
        self._waiting: Dict[str, List[Tuple[int, int, str]]] = {}
        self._delayed: Dict[str, List[Tuple[float, str]]] = {}
        self._active: Dict[str, Dict[str, float]] = {}
        self._dead: Dict[str, List[str]] = {}

    def enqueue(self, queue, name, data, *, job_id=None, priority=None, attempts=DEFAULT_ATTEMPTS, backoff=DEFAULT_BACKOFF, delay=0.0) -> Job:
        with self._lock:
            if job_id and job_id in self._jobs and self._jobs[job_id].status not in (COMPLETED, FAILED):
                logger.info(f"Job {job_id} already queued on {queue}")
                return self._jobs[job_id]
            now = self.clock()
            job = Job(
                id=job_id or uuid.uuid4().hex,
                queue=queue,
                name=name,
                data=dict(data),
                priority=PRIORITIES.get(name, PRIORITIES["scan"]) if priority is None else priority,
                max_attempts=max(int(attempts), 1),
                backoff=float(backoff),
                created_at=now,
                run_at=now + delay,
                seq=next(self._seq),
            )
            self._jobs[job.id] = job
            if delay > 0:
                job.status = DELAYED
                heapq.heappush(self._delayed.setdefault(queue, []), (job.run_at, job.id))
            else:
                heapq.heappush(self._waiting.setdefault(queue, []), (job.priority, job.seq, job.id))
        logger.info(f"Enqueued {name} job {job.id} on {queue} (priority {job.priority})")
        return job

    def _promote_delayed(self, queue: str, now: float) -> None:
        delayed = self._delayed.get(queue, [])
        while delayed and delayed[0][0] <= now:
            _, job_id = heapq.heappop(delayed)
            job = self._jobs.get(job_id)
            if job is None or job.status != DELAYED:
                continue
            job.status = WAITING
            heapq.heappush(self._waiting.setdefault(queue, []), (job.priority, job.seq, job.id))

    def claim(self, queue, lease_seconds=DEFAULT_LEASE) -> Optional[Job]:
        with self._lock:
            now = self.clock()
            self._promote_delayed(queue, now)
            waiting = self._waiting.get(queue, [])
            while waiting:
                _, _, job_id = heapq.heappop(waiting)
                job = self._jobs.get(job_id)
                if job is None or job.status != WAITING:
                    continue
                job.status = ACTIVE
                job.lease_until = now + lease_seconds
                self._active.setdefault(queue, {})[job.id] = job.lease_until
                return job
        return None

    def renew(self, job, lease_seconds=DEFAULT_LEASE) -> None:
        with self._lock:
            active = self._active.get(job.queue, {})
            if job.id in active:
                job.lease_until = self.clock() + lease_seconds
                active[job.id] = job.lease_until

    def complete(self, job) -> None:
        with self._lock:
            self._active.get(job.queue, {}).pop(job.id, None)
            stored = self._jobs.get(job.id, job)
            stored.status = COMPLETED
            job.status = COMPLETED

    def fail(self, job, error, retryable=True) -> str:
        with self._lock:
            self._active.get(job.queue, {}).pop(job.id, None)
            stored = self._jobs.get(job.id, job)
            stored.attempts_made += 1
            stored.last_error = error
            if retryable and stored.attempts_made < stored.max_attempts:
                stored.status = DELAYED
                stored.run_at = self.clock() + stored.retry_delay()
                heapq.heappush(self._delayed.setdefault(job.queue, []), (stored.run_at, stored.id))
            else:
                stored.status = FAILED
                self._dead.setdefault(job.queue, []).append(stored.id)
            if stored is not job:
                job.attempts_made, job.status, job.last_error = stored.attempts_made, stored.status, error
            return stored.status

    def recover_stalled(self, queue) -> int:
        with self._lock:
            now = self.clock()
            active = self._active.get(queue, {})
            stalled = [job_id for job_id, until in active.items() if until <= now]
            for job_id in stalled:
                del active[job_id]
                job = self._jobs[job_id]
                job.status = WAITING
                heapq.heappush(self._waiting.setdefault(queue, []), (job.priority, job.seq, job.id))
        if stalled:
            logger.warning(f"Requeued {len(stalled)} stalled job(s) on {queue}")
        return len(stalled)

    def get(self, job_id) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def counts(self, queue) -> Dict[str, int]:
        with self._lock:
            out = {WAITING: 0, DELAYED: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0}
            for job in self._jobs.values():
                if job.queue == queue:
                    out[job.status] += 1
            return out

    def dead_letters(self, queue: str) -> List[Job]:
        with self._lock:
            return [self._jobs[j] for j in self._dead.get(queue, [])]


class RedisJobQueue(JobQueue):
    """
    Redis layout (prefix defaults to "scanforge"):
      {prefix}:jobs                 hash   job id -> job JSON
      {prefix}:{queue}:waiting      zset   score = priority * 1e13 + sequence
      {prefix}:{queue}:delayed      zset   score = run_at
      {prefix}:{queue}:active       zset   score = lease expiry
      {prefix}:{queue}:failed       zset   score = failure time
    """

    def __init__(self, client: redis.Redis, prefix: str = "scanforge", clock: Callable[[], float] = time.time):
        self.client = client
        self.prefix = prefix
        self.clock = clock

    @classmethod
    def from_url(cls, url: str, prefix: str = "scanforge") -> "RedisJobQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix)

    def _key(self, queue: str, kind: str) -> str:
        return f"{self.prefix}:{queue}:{kind}"

    @property
    def _jobs_key(self) -> str:
        return f"{self.prefix}:jobs"

    def _save(self, job: Job, pipe=None) -> None:
        (pipe or self.client).hset(self._jobs_key, job.id, job.to_json())

    def _score(self, job: Job) -> float:
        return job.priority * _PRIORITY_WEIGHT + job.seq

    def enqueue(self, queue, name, data, *, job_id=None, priority=None, attempts=DEFAULT_ATTEMPTS, backoff=DEFAULT_BACKOFF, delay=0.0) -> Job:
        if job_id:
            existing = self.get(job_id)
            if existing is not None and existing.status not in (COMPLETED, FAILED):
                logger.info(f"Job {job_id} already queued on {queue}")
                return existing
        now = self.clock()
        job = Job(
            id=job_id or uuid.uuid4().hex,
            queue=queue,
            name=name,
            data=dict(data),
            priority=PRIORITIES.get(name, PRIORITIES["scan"]) if priority is None else priority,
            max_attempts=max(int(attempts), 1),
            backoff=float(backoff),
            created_at=now,
            run_at=now + delay,
            seq=int(self.client.incr(f"{self.prefix}:seq")),
        )
        pipe = self.client.pipeline()
        if delay > 0:
            job.status = DELAYED
            pipe.zadd(self._key(queue, DELAYED), {job.id: job.run_at})
        else:
            pipe.zadd(self._key(queue, WAITING), {job.id: self._score(job)})
        self._save(job, pipe)
        pipe.execute()
        logger.info(f"Enqueued {name} job {job.id} on {queue} (priority {job.priority})")
        return job

    def _promote_delayed(self, queue: str, now: float) -> None:
        due = self.client.zrangebyscore(self._key(queue, DELAYED), "-inf", now)
        for job_id in due:
            # zrem succeeds for exactly one competing worker
            if not self.client.zrem(self._key(queue, DELAYED), job_id):
                continue
            job = self.get(job_id)
            if job is None:
                continue
            job.status = WAITING
            pipe = self.client.pipeline()
            pipe.zadd(self._key(queue, WAITING), {job.id: self._score(job)})
            self._save(job, pipe)
            pipe.execute()

    def claim(self, queue, lease_seconds=DEFAULT_LEASE) -> Optional[Job]:
        now = self.clock()
        self._promote_delayed(queue, now)
        while True:
            popped = self.client.zpopmin(self._key(queue, WAITING), 1)
            if not popped:
                return None
            job_id = popped[0][0]
            job = self.get(job_id)
            if job is None:
                logger.warning(f"Dropping queue entry {job_id} with no job body")
                continue
            job.status = ACTIVE
            job.lease_until = now + lease_seconds
            pipe = self.client.pipeline()
            pipe.zadd(self._key(queue, ACTIVE), {job.id: job.lease_until})
            self._save(job, pipe)
            pipe.execute()
            return job

    def renew(self, job, lease_seconds=DEFAULT_LEASE) -> None:
        job.lease_until = self.clock() + lease_seconds
        # xx: only refresh a lease that still exists
        self.client.zadd(self._key(job.queue, ACTIVE), {job.id: job.lease_until}, xx=True)

    def complete(self, job) -> None:
        job.status = COMPLETED
        pipe = self.client.pipeline()
        pipe.zrem(self._key(job.queue, ACTIVE), job.id)
        self._save(job, pipe)
        pipe.execute()

    def fail(self, job, error, retryable=True) -> str:
        job.attempts_made += 1
        job.last_error = error
        pipe = self.client.pipeline()
        pipe.zrem(self._key(job.queue, ACTIVE), job.id)
        if retryable and job.attempts_made < job.max_attempts:
            job.status = DELAYED
            job.run_at = self.clock() + job.retry_delay()
            pipe.zadd(self._key(job.queue, DELAYED), {job.id: job.run_at})
        else:
            job.status = FAILED
            pipe.zadd(self._key(job.queue, FAILED), {job.id: self.clock()})
        self._save(job, pipe)
        pipe.execute()
        return job.status

    def recover_stalled(self, queue) -> int:
        now = self.clock()
        stalled = self.client.zrangebyscore(self._key(queue, ACTIVE), "-inf", now)
        recovered = 0
        for job_id in stalled:
            if not self.client.zrem(self._key(queue, ACTIVE), job_id):
                continue
            job = self.get(job_id)
            if job is None:
                continue
            job.status = WAITING
            pipe = self.client.pipeline()
            pipe.zadd(self._key(queue, WAITING), {job.id: self._score(job)})
            self._save(job, pipe)
            pipe.execute()
            recovered += 1
        if recovered:
            logger.warning(f"Requeued {recovered} stalled job(s) on {queue}")
        return recovered

    def get(self, job_id) -> Optional[Job]:
        raw = self.client.hget(self._jobs_key, job_id)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return Job.from_json(raw)

    def counts(self, queue) -> Dict[str, int]:
        return {
            WAITING: int(self.client.zcard(self._key(queue, WAITING))),
            DELAYED: int(self.client.zcard(self._key(queue, DELAYED))),
            ACTIVE: int(self.client.zcard(self._key(queue, ACTIVE))),
            FAILED: int(self.client.zcard(self._key(queue, FAILED))),
        }


JobHandler = Callable[[Job, threading.Event], Any]


class WorkerPool:
    """
    Runs `concurrency` worker threads per registered queue. Handlers receive the job and
    a cancel event that is set when the job overruns its timeout.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[str, JobHandler],
        concurrency: int = DEFAULT_CONCURRENCY,
        lease_seconds: float = DEFAULT_LEASE,
        poll_interval: float = 1.0,
        timeouts: Optional[Dict[str, float]] = None,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.concurrency = max(int(concurrency), 1)
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.timeouts = dict(JOB_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._stop.clear()
        for queue_name in self.handlers:
            for i in range(self.concurrency):
                thread = threading.Thread(target=self._loop, args=(queue_name,), name=f"{queue_name}-{i}", daemon=True)
                thread.start()
                self._threads.append(thread)
        logger.info(f"Worker pool started: {', '.join(self.handlers)} x{self.concurrency}")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def _loop(self, queue_name: str) -> None:
        while not self._stop.is_set():
            try:
                self.queue.recover_stalled(queue_name)
                processed = self.run_once(queue_name)
            except redis.RedisError as e:
                logger.error(f"Queue backend error on {queue_name}: {e}")
                processed = False
            if not processed:
                self._stop.wait(self.poll_interval)

    def run_once(self, queue_name: str) -> bool:
        """Claims and processes a single job. Returns False when the queue was empty."""
        job = self.queue.claim(queue_name, self.lease_seconds)
        if job is None:
            return False
        self.process(job)
        return True

    def process(self, job: Job) -> None:
        handler = self.handlers[job.queue]
        cancel_event = threading.Event()
        done = threading.Event()
        timeout = self.timeouts.get(job.queue)
        timed_out = threading.Event()

        def keepalive() -> None:
            started = time.monotonic()
            interval = max(self.lease_seconds / 3.0, 0.05)
            while not done.wait(interval):
                try:
                    self.queue.renew(job, self.lease_seconds)
                except redis.RedisError as e:
                    logger.warning(f"Lease renewal failed for job {job.id}: {e}")
                if timeout and time.monotonic() - started >= timeout and not timed_out.is_set():
                    logger.error(f"Job {job.id} exceeded its {timeout:g}s timeout")
                    timed_out.set()
                    cancel_event.set()

        watcher = threading.Thread(target=keepalive, name=f"lease-{job.id}", daemon=True)
        watcher.start()
        logger.info(f"Processing {job.name} job {job.id} (attempt {job.attempts_made + 1}/{job.max_attempts})")
        try:
            handler(job, cancel_event)
        except CancellationRequested as e:
            if timed_out.is_set():
                self._failed(job, JobTimeout(job.id, timeout))
            else:
                logger.info(f"Job {job.id} cancelled: {e}")
                self.queue.complete(job)
        except Exception as e:
            self._failed(job, JobTimeout(job.id, timeout) if timed_out.is_set() else e)
        else:
            if timed_out.is_set():
                # the handler stopped on the cancel event; the scan is already terminal
                self._failed(job, JobTimeout(job.id, timeout))
            else:
                self.queue.complete(job)
                logger.info(f"Job {job.id} completed")
        finally:
            done.set()
            watcher.join(timeout=1.0)

    def _failed(self, job: Job, error: Exception) -> None:
        retryable = bool(getattr(error, "retryable", True))
        status = self.queue.fail(job, str(error)[:500], retryable=retryable)
        if status == DELAYED:
            logger.warning(f"Job {job.id} failed ({error}); retry {job.attempts_made}/{job.max_attempts - 1} scheduled")
        else:
            logger.error(f"Job {job.id} failed permanently: {error}")
