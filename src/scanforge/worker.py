"""
Process-level wiring: one broker, queue, gateway, cancellation coordinator and worker pool
per instance, with a handler per queue.
"""

import threading
from typing import Any, Dict, Optional

import redis

from scanforge.cancellation import CancellationCoordinator
from scanforge.diff_filter import DiffProvider
from scanforge.events import Broker, EventGateway, InMemoryBroker, RedisBroker
from scanforge.jobs import (
    NOTIFY_QUEUE,
    PRIORITIES,
    SCAN_QUEUE,
    TARGET_SCAN_QUEUE,
    InMemoryJobQueue,
    Job,
    JobQueue,
    RedisJobQueue,
    WorkerPool,
)
from scanforge.logger import setup_logger
from scanforge.models import NotifyJob, RepositoryScanJob, TargetScanJob
from scanforge.notify import Notifier, WebhookNotifier
from scanforge.pipeline import RepositoryScanPipeline, ScanResult
from scanforge.repo import GitRepositoryFetcher, RepositoryFetcher
from scanforge.sandbox import SandboxExecutor
from scanforge.sinks import InMemoryResultSink, ResultSink
from scanforge.target_pipeline import TargetScanPipeline, TargetScanResult
from scanforge.tools import build_registry

logger = setup_logger(__name__)

MEMORY_URL = "memory://"


def create_backends(config: Dict[str, Any]):
    """Broker and queue for the configured redis URL; `memory://` keeps everything in-process."""
    redis_cfg = config.get("redis") or {}
    url = redis_cfg.get("url") or MEMORY_URL
    if url.startswith(MEMORY_URL):
        return InMemoryBroker(), InMemoryJobQueue()
    client = redis.Redis.from_url(url, decode_responses=True)
    return RedisBroker(client=client), RedisJobQueue(client, prefix=redis_cfg.get("key_prefix") or "scanforge")


def enqueue_repository_scan(queue: JobQueue, job: RepositoryScanJob, config: Optional[Dict[str, Any]] = None) -> Job:
    qcfg = (config or {}).get("queue") or {}
    return queue.enqueue(
        SCAN_QUEUE,
        "scan",
        job.to_dict(),
        job_id=job.scan_id,
        priority=PRIORITIES["scan"],
        attempts=int(qcfg.get("attempts", 3)),
        backoff=float(qcfg.get("backoff_seconds", 5)),
    )


def enqueue_target_scan(queue: JobQueue, job: TargetScanJob, config: Optional[Dict[str, Any]] = None) -> Job:
    qcfg = (config or {}).get("queue") or {}
    return queue.enqueue(
        TARGET_SCAN_QUEUE,
        "target-scan",
        job.to_dict(),
        job_id=job.scan_id,
        priority=PRIORITIES["target-scan"],
        attempts=int(qcfg.get("attempts", 3)),
        backoff=float(qcfg.get("backoff_seconds", 5)),
    )


class Worker:
    def __init__(
        self,
        config: Dict[str, Any],
        broker: Optional[Broker] = None,
        queue: Optional[JobQueue] = None,
        sink: Optional[ResultSink] = None,
        executor: Optional[SandboxExecutor] = None,
        fetcher: Optional[RepositoryFetcher] = None,
        registry=None,
        notifier: Optional[Notifier] = None,
        diff_provider: Optional[DiffProvider] = None,
    ):
        self.config = config
        if broker is None or queue is None:
            default_broker, default_queue = create_backends(config)
            broker = broker or default_broker
            queue = queue or default_queue
        self.broker = broker
        self.queue = queue
        self.sink = sink or InMemoryResultSink()
        self.executor = executor or SandboxExecutor()
        interval = float((config.get("events") or {}).get("batch_interval_ms", 300)) / 1000.0
        self.gateway = EventGateway(broker, batch_interval=interval)
        self.coordinator = CancellationCoordinator(broker, self.executor, self.gateway)
        self.registry = registry if registry is not None else build_registry(self.executor, config)
        notify_cfg = config.get("notify") or {}
        self.notifier = notifier or WebhookNotifier(notify_cfg.get("webhook_url"), timeout=float(notify_cfg.get("timeout_seconds", 30)))

        self.repository_pipeline = RepositoryScanPipeline(
            fetcher or GitRepositoryFetcher(self.executor),
            self.registry,
            self.sink,
            self.gateway,
            self.coordinator,
            queue=self.queue,
            diff_provider=diff_provider,
            config=config,
        )
        self.target_pipeline = TargetScanPipeline(self.registry, self.sink, self.gateway, self.coordinator, config=config)

        qcfg = config.get("queue") or {}
        self.pool = WorkerPool(
            self.queue,
            {
                SCAN_QUEUE: self.handle_scan_job,
                TARGET_SCAN_QUEUE: self.handle_target_scan_job,
                NOTIFY_QUEUE: self.handle_notify_job,
            },
            concurrency=int(qcfg.get("concurrency", 2)),
            lease_seconds=float(qcfg.get("lease_seconds", 60)),
            poll_interval=float(qcfg.get("poll_interval", 1.0)),
        )

    def start(self) -> None:
        self.gateway.start()
        self.coordinator.start()
        self.pool.start()

    def stop(self) -> None:
        self.pool.stop(timeout=5.0)
        self.coordinator.close()
        self.gateway.close()
        self.broker.close()

    def handle_scan_job(self, job: Job, cancel_event: threading.Event) -> ScanResult:
        scan_job = RepositoryScanJob.from_dict(job.data)
        return self.repository_pipeline.run(scan_job, cancel_event, final_attempt=job.final_attempt)

    def handle_target_scan_job(self, job: Job, cancel_event: threading.Event) -> TargetScanResult:
        target_job = TargetScanJob.from_dict(job.data)
        return self.target_pipeline.run(target_job, cancel_event, final_attempt=job.final_attempt)

    def handle_notify_job(self, job: Job, cancel_event: threading.Event) -> None:
        self.notifier.notify(NotifyJob.from_dict(job.data))
