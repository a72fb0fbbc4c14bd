"""
Repository scan orchestration: fetch -> detect -> select -> run scanners in parallel ->
dedup -> diff filter -> store -> notify.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set

from scanforge.cancellation import ActiveScan, CancellationCoordinator
from scanforge.diff_filter import DiffProvider, apply_diff_filter
from scanforge.errors import (
    CancellationRequested,
    ScannerTimeout,
    ScannerUnavailable,
    SourceFetchError,
)
from scanforge.events import EventGateway
from scanforge.findings import deduplicate, empty_counts, prepare_for_storage, risk_score
from scanforge.jobs import NOTIFY_QUEUE, PRIORITIES, JobQueue
from scanforge.logger import setup_logger
from scanforge.models import (
    REPOSITORY_FLOW,
    InvocationStatus,
    NormalizedFinding,
    NotifyJob,
    RepositoryScanJob,
    ScanContext,
    ScannerInvocation,
    ScanOutput,
    ScanStateMachine,
    ScanStatus,
)
from scanforge.repo import RepositoryFetcher, cleanup_work_dir, create_work_dir
from scanforge.selection import select_scanners
from scanforge.sinks import ResultSink
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

# Display names that differ from an adapter's own label in repository scans
REPOSITORY_LABELS = {"nuclei": "DAST Scan"}


@dataclass
class AdapterRun:
    invocation: ScannerInvocation
    findings: List[NormalizedFinding] = field(default_factory=list)
    output: Optional[ScanOutput] = None


@dataclass
class ScanResult:
    scan_id: str
    status: ScanStatus
    findings: List[NormalizedFinding] = field(default_factory=list)
    invocations: List[ScannerInvocation] = field(default_factory=list)
    severity_counts: Dict[str, int] = field(default_factory=empty_counts)
    duration: float = 0.0
    error: Optional[str] = None


def run_adapter(
    adapter: ScannerAdapter,
    context: ScanContext,
    sink: ResultSink,
    gateway: EventGateway,
    label: Optional[str] = None,
    phase: str = "single",
    emitted: Optional[Set[str]] = None,
) -> AdapterRun:
    """
    Runs one adapter in isolation. Every outcome is recorded on a ScannerInvocation and
    reported with exactly one scanner:complete; no exception escapes except
    CancellationRequested, which is recorded first.

    `emitted` lets several runs share one set of already-reported fingerprints.
    """
    scan_id = context.scan_id
    label = label or adapter.label
    invocation = ScannerInvocation(adapter.name, adapter.category)
    sink.create_invocation(scan_id, invocation)
    invocation.start()
    gateway.scanner_start(scan_id, adapter.name, label, phase)
    observer = gateway.observer_for(scan_id, adapter.name, label)
    if emitted is not None:
        observer.emitted = emitted
    context = replace(context, observer=observer)
    run = AdapterRun(invocation)

    def finish(status: InvocationStatus, extra: Optional[Dict[str, Any]] = None, **kwargs) -> None:
        invocation.finish(status, **kwargs)
        sink.finish_invocation(scan_id, invocation)
        gateway.scanner_complete(
            scan_id,
            adapter.name,
            invocation.finding_count,
            invocation.duration,
            status.value,
            label=label,
            exit_code=invocation.exit_code,
            error=invocation.error,
            **(extra or {}),
        )

    try:
        if not adapter.is_available():
            raise ScannerUnavailable(adapter.name)
        gateway.scanner_progress(scan_id, adapter.name, 10, "scanning")
        output = adapter.scan(context)
        gateway.scanner_progress(scan_id, adapter.name, 80, "parsing")
        findings = output.findings or adapter.parse_output(output)
    except ScannerUnavailable as e:
        logger.warning(f"Scanner {adapter.name} is not available")
        finish(InvocationStatus.SKIPPED, error=str(e))
        return run
    except CancellationRequested:
        finish(InvocationStatus.FAILED, error="Scan cancelled")
        raise
    except ScannerTimeout as e:
        logger.warning(f"Scanner {adapter.name} timed out")
        finish(InvocationStatus.FAILED, exit_code=-1, error=str(e))
        return run
    except Exception as e:
        logger.error(f"Scanner {adapter.name} failed: {e}")
        finish(InvocationStatus.FAILED, exit_code=getattr(e, "exit_code", None), error=str(e) or type(e).__name__)
        return run

    for finding in findings:
        observer.on_finding(finding)
    run.findings = list(findings)
    run.output = output
    finish(
        InvocationStatus.COMPLETED,
        exit_code=output.exit_code,
        finding_count=len(run.findings),
        output_size=output.output_size,
        extra={"templateStats": output.extra.get("template_stats")},
    )
    logger.info(f"{adapter.name} found {len(run.findings)} findings in {invocation.duration:.1f}s")
    return run


class RepositoryScanPipeline:
    def __init__(
        self,
        fetcher: RepositoryFetcher,
        registry: Dict[str, ScannerAdapter],
        sink: ResultSink,
        gateway: EventGateway,
        coordinator: CancellationCoordinator,
        queue: Optional[JobQueue] = None,
        diff_provider: Optional[DiffProvider] = None,
        config: Optional[Dict[str, Any]] = None,
        max_workers: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.registry = registry
        self.sink = sink
        self.gateway = gateway
        self.coordinator = coordinator
        self.queue = queue
        self.diff_provider = diff_provider
        self.config = config or {}
        self.max_workers = max_workers

    def _advance(self, state: ScanStateMachine, scan_id: str, status: ScanStatus) -> None:
        state.advance(status)
        self.sink.update_scan_status(scan_id, status)
        logger.info(f"[{scan_id}] status -> {status.value}")

    def _checkpoint(self, active: ActiveScan) -> None:
        if active.cancelled:
            raise CancellationRequested(active.scan_id)

    def run(self, job: RepositoryScanJob, cancel_event=None, final_attempt: bool = True) -> ScanResult:
        """
        Drives one repository scan to a terminal state. Job-level errors are re-raised for the
        queue's retry logic; the scan is only marked failed when no retry will follow.
        """
        scan_id = job.scan_id
        start = time.monotonic()
        active = self.coordinator.register(scan_id, cancel_event=cancel_event)
        state = ScanStateMachine(REPOSITORY_FLOW, ScanStatus.QUEUED)
        result = ScanResult(scan_id, ScanStatus.QUEUED)
        work_dir = None
        try:
            work_dir = create_work_dir(scan_id, (self.config.get("core") or {}).get("work_root"))
            active.work_dir = work_dir

            self._advance(state, scan_id, ScanStatus.CLONING)
            self.gateway.scan_phase(scan_id, "cloning", 0)
            try:
                self.fetcher.fetch(job, work_dir, active.cancel_event)
            except (SourceFetchError, CancellationRequested):
                raise
            except Exception as e:
                raise SourceFetchError(f"Failed to fetch repository: {e}") from e
            self._checkpoint(active)
            languages = self.fetcher.detect_languages(work_dir)
            logger.info(f"[{scan_id}] Detected languages: {languages.languages} (primary {languages.primary})")

            self._advance(state, scan_id, ScanStatus.SCANNING)
            self.gateway.scan_phase(scan_id, "scanning", 10)
            selected = select_scanners(self.registry, languages, job.config, self.config)
            context = ScanContext(
                scan_id=scan_id,
                work_dir=work_dir,
                exclude_paths=list(job.config.exclude_paths),
                languages=list(languages.languages.keys()),
                config={
                    **languages.iac_flags(),
                    "target_urls": list(job.config.target_urls),
                    "container_images": list(job.config.container_images),
                    "scan_phase": "single",
                },
                cancel_event=active.cancel_event,
            )
            runs = self._run_scanners(selected, context)
            result.invocations = [r.invocation for r in runs]
            self._checkpoint(active)
            self.gateway.scan_phase(scan_id, "scanning", 70)

            self._advance(state, scan_id, ScanStatus.ANALYZING)
            # dedup compares fingerprints of repository-relative paths
            findings = prepare_for_storage((f for r in runs for f in r.findings), work_dir)
            findings = deduplicate(findings)
            if job.pull_request_id and job.config.diff_only:
                findings = apply_diff_filter(job, findings, self.diff_provider)
            self._checkpoint(active)

            self._advance(state, scan_id, ScanStatus.STORING)
            stored = self.sink.store_findings(scan_id, findings, work_dir)
            counts = self.sink.count_by_severity(scan_id)
            result.findings = findings
            result.severity_counts = counts
            active.counts = dict(counts)
            logger.info(f"[{scan_id}] Stored {stored} findings")

            if job.has_notification_target and self.queue is not None:
                self._advance(state, scan_id, ScanStatus.NOTIFYING)
                self._enqueue_notification(job, counts, time.monotonic() - start)

            if not active.try_finish():
                # a cancellation won the race for the terminal event
                raise CancellationRequested(scan_id)
            result.duration = time.monotonic() - start
            state.advance(ScanStatus.COMPLETED)
            self.sink.complete_scan(
                scan_id,
                {"total_findings": stored, "severity_counts": counts, "duration": result.duration, "risk_score": risk_score(counts)},
            )
            self.sink.update_last_scan(job.repository_id, scan_id, ScanStatus.COMPLETED)
            result.status = ScanStatus.COMPLETED
            self.gateway.scan_phase(scan_id, "complete", 100)
            self.gateway.scan_complete(scan_id, stored, counts, result.duration, ScanStatus.COMPLETED.value)
            logger.info(f"[{scan_id}] Scan completed: {stored} findings in {result.duration:.1f}s")
            return result
        except CancellationRequested:
            logger.warning(f"[{scan_id}] Scan cancelled")
            result.duration = time.monotonic() - start
            result.status = ScanStatus.CANCELLED
            if not state.terminal:
                state.advance(ScanStatus.CANCELLED)
            self.sink.update_scan_status(scan_id, ScanStatus.CANCELLED)
            self.sink.update_last_scan(job.repository_id, scan_id, ScanStatus.CANCELLED)
            if active.try_finish():
                self.gateway.scan_complete(scan_id, 0, empty_counts(), result.duration, ScanStatus.CANCELLED.value)
            return result
        except Exception as e:
            result.duration = time.monotonic() - start
            result.error = str(e)
            retry_follows = getattr(e, "retryable", True) and not final_attempt
            logger.error(f"[{scan_id}] Scan failed{' (will retry)' if retry_follows else ''}: {e}")
            if not retry_follows:
                result.status = ScanStatus.FAILED
                self.sink.fail_scan(scan_id, str(e))
                self.sink.update_last_scan(job.repository_id, scan_id, ScanStatus.FAILED)
                if active.try_finish():
                    self.gateway.scan_complete(scan_id, 0, empty_counts(), result.duration, ScanStatus.FAILED.value)
            raise
        finally:
            cleanup_work_dir(work_dir)
            self.coordinator.unregister(scan_id)

    def _run_scanners(self, adapters: List[ScannerAdapter], context: ScanContext) -> List[AdapterRun]:
        """All adapters run concurrently; the call returns once every one has settled."""
        if not adapters:
            logger.info(f"[{context.scan_id}] No scanners selected")
            return []
        runs: List[AdapterRun] = []
        cancelled = False
        workers = self.max_workers or len(adapters)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"scan-{context.scan_id[:8]}") as pool:
            futures = [
                pool.submit(run_adapter, adapter, context, self.sink, self.gateway, REPOSITORY_LABELS.get(adapter.name))
                for adapter in adapters
            ]
            for future in futures:
                try:
                    runs.append(future.result())
                except CancellationRequested:
                    cancelled = True
        if cancelled:
            raise CancellationRequested(context.scan_id)
        return runs

    def _enqueue_notification(self, job: RepositoryScanJob, counts: Dict[str, int], duration: float) -> None:
        notify = NotifyJob(
            scan_id=job.scan_id,
            status=ScanStatus.COMPLETED.value,
            severity_counts=dict(counts),
            duration=duration,
            destination=job.notify_url,
            full_name=job.full_name,
            commit_sha=job.commit_sha,
            check_run_id=job.check_run_id,
            pull_request_id=job.pull_request_id,
        )
        self.queue.enqueue(NOTIFY_QUEUE, "notify", notify.to_dict(), job_id=f"notify-{job.scan_id}", priority=PRIORITIES["notify"])
