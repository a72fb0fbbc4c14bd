"""
Network target scans: crawl the target for URLs, then run the scan mode's scanners one
after another against the base URL plus everything the crawl found.
"""

import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from scanforge.cancellation import ActiveScan, CancellationCoordinator
from scanforge.errors import CancellationRequested, ConfigError
from scanforge.events import EventGateway
from scanforge.findings import empty_counts, risk_score
from scanforge.logger import setup_logger
from scanforge.models import (
    TARGET_FLOW,
    NormalizedFinding,
    ScanContext,
    ScannerInvocation,
    ScanStateMachine,
    ScanStatus,
    TargetPhase,
    TargetScanJob,
)
from scanforge.pipeline import run_adapter
from scanforge.planner import TwoPhaseNucleiPlanner
from scanforge.rate_limits import normalize_preset
from scanforge.repo import cleanup_work_dir, create_work_dir
from scanforge.sinks import ResultSink
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

SCAN_MODES: Dict[str, List[str]] = {
    "quick": ["nuclei", "sslscan"],
    "standard": ["nuclei", "sslscan", "zap"],
    "comprehensive": ["nuclei", "sslscan", "zap", "sqlmap", "nikto"],
}
TWO_PHASE_MODES = ("quick", "standard")

# every target scanner but nuclei is capped; nuclei bounds its own requests
SCANNER_TIMEOUT = 300.0
SPIDER_MAX_DURATION = 120.0

TECH_PATTERN = re.compile(
    r"\b(apache|nginx|wordpress|tomcat|iis|php|nodejs?|express|spring|joomla|drupal|jenkins|gitlab|grafana|"
    r"kubernetes|docker|mysql|postgres|redis|mongodb|swagger|angular|react|vue|jquery|bootstrap)\b",
    re.I,
)


def detect_technologies(finding: NormalizedFinding) -> List[str]:
    text = " ".join(
        [finding.rule_id or "", finding.title or ""]
        + [str(v) for v in finding.metadata.get("extracted") or [] if isinstance(v, str)]
    )
    found: List[str] = []
    for match in TECH_PATTERN.finditer(text):
        name = match.group(1).lower()
        if name == "nodejs":
            name = "node"
        if name not in found:
            found.append(name)
    return found


def merge_urls(*groups: List[str]) -> List[str]:
    return list(dict.fromkeys(u for group in groups for u in group if u))


@dataclass
class Discovery:
    urls: List[str] = field(default_factory=list)
    js_files: List[str] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)


@dataclass
class TargetScanResult:
    scan_id: str
    status: ScanStatus
    findings: List[NormalizedFinding] = field(default_factory=list)
    invocations: List[ScannerInvocation] = field(default_factory=list)
    severity_counts: Dict[str, int] = field(default_factory=empty_counts)
    technologies: List[str] = field(default_factory=list)
    crawled_urls: int = 0
    risk_score: int = 0
    duration: float = 0.0
    error: Optional[str] = None


class _Recorder:
    """Dedups, persists and counts findings as each scanner (or nuclei phase) settles."""

    def __init__(self, scan_id: str, sink: ResultSink, gateway: EventGateway, active: ActiveScan, work_dir: str):
        self.scan_id = scan_id
        self.sink = sink
        self.gateway = gateway
        self.active = active
        self.work_dir = work_dir
        self.fingerprints = set()
        self.emitted = set()
        self.technologies: List[str] = []
        self.findings: List[NormalizedFinding] = []
        self._lock = threading.Lock()

    def record(self, findings: List[NormalizedFinding]) -> None:
        with self._lock:
            fresh = [f for f in findings if f.fingerprint not in self.fingerprints]
            self.fingerprints.update(f.fingerprint for f in fresh)
            self.findings.extend(fresh)
        if not fresh:
            return
        self.sink.store_findings(self.scan_id, fresh, self.work_dir)
        self.active.counts = self.sink.count_by_severity(self.scan_id)
        for finding in fresh:
            for tech in detect_technologies(finding):
                if tech not in self.technologies:
                    self.technologies.append(tech)
                    self.gateway.technology(self.scan_id, tech)


class TargetScanPipeline:
    def __init__(
        self,
        registry: Dict[str, ScannerAdapter],
        sink: ResultSink,
        gateway: EventGateway,
        coordinator: CancellationCoordinator,
        config: Optional[Dict[str, Any]] = None,
        scanner_timeout: float = SCANNER_TIMEOUT,
    ):
        self.registry = registry
        self.sink = sink
        self.gateway = gateway
        self.coordinator = coordinator
        self.config = config or {}
        self.scanner_timeout = scanner_timeout

    def _checkpoint(self, active: ActiveScan) -> None:
        if active.cancelled:
            raise CancellationRequested(active.scan_id)

    def base_context(self, job: TargetScanJob, work_dir: str, active: ActiveScan) -> ScanContext:
        return ScanContext(
            scan_id=job.scan_id,
            work_dir=work_dir,
            exclude_paths=list(job.exclude_paths),
            config={
                "target_urls": [job.target_url],
                "scan_mode": job.scan_mode,
                "rate_limit_preset": normalize_preset(job.rate_limit_preset),
                "headers": dict(job.headers or {}),
                "auth": dict(job.auth or {}),
            },
            cancel_event=active.cancel_event,
        )

    def run(self, job: TargetScanJob, cancel_event=None, final_attempt: bool = True) -> TargetScanResult:
        scan_id = job.scan_id
        start = time.monotonic()
        active = self.coordinator.register(scan_id, cancel_event=cancel_event)
        state = ScanStateMachine(TARGET_FLOW, ScanStatus.QUEUED)
        result = TargetScanResult(scan_id, ScanStatus.QUEUED)
        work_dir = None
        try:
            if job.scan_mode not in SCAN_MODES:
                raise ConfigError(f"Unknown scan mode: {job.scan_mode}")
            state.advance(ScanStatus.RUNNING)
            self.sink.update_scan_status(scan_id, ScanStatus.RUNNING)
            self.gateway.scan_phase(scan_id, TargetPhase.INITIALIZING.value, 0)
            work_dir = create_work_dir(scan_id, (self.config.get("core") or {}).get("work_root"))
            active.work_dir = work_dir
            context = self.base_context(job, work_dir, active)
            recorder = _Recorder(scan_id, self.sink, self.gateway, active, work_dir)
            logger.info(f"[{scan_id}] Target scan of {job.target_url} ({job.scan_mode}, preset {context.config['rate_limit_preset']})")

            self.gateway.scan_phase(scan_id, TargetPhase.CRAWLING.value, 0)
            discovery = self.discover(job, context, recorder)
            result.crawled_urls = len(discovery.urls)
            self.gateway.scan_phase(scan_id, TargetPhase.CRAWLING.value, 100)
            self.gateway.scan_urls(scan_id, discovery.urls, discovery.js_files, len(discovery.params))
            self._checkpoint(active)

            targets = merge_urls([job.target_url], discovery.urls)
            context.config["target_urls"] = targets
            context.config["discovered_urls"] = list(discovery.urls)

            self.gateway.scan_phase(scan_id, TargetPhase.SCANNING.value, 0)
            for name in SCAN_MODES[job.scan_mode]:
                self._checkpoint(active)
                adapter = self.registry.get(name)
                if adapter is None:
                    logger.warning(f"[{scan_id}] Scanner {name} not registered; skipping")
                    continue
                result.invocations.extend(self._run_scanner(adapter, job, context, recorder))
            self._checkpoint(active)
            self.gateway.scan_phase(scan_id, TargetPhase.SCANNING.value, 100)

            counts = self.sink.count_by_severity(scan_id)
            score = risk_score(counts)
            result.findings = list(recorder.findings)
            result.technologies = list(recorder.technologies)
            result.severity_counts = counts
            result.risk_score = score

            if not active.try_finish():
                raise CancellationRequested(scan_id)
            result.duration = time.monotonic() - start
            state.advance(ScanStatus.COMPLETED)
            self.sink.complete_scan(
                scan_id,
                {"total_findings": len(result.findings), "severity_counts": counts, "duration": result.duration, "risk_score": score},
            )
            self.sink.update_last_scan(job.target_id, scan_id, ScanStatus.COMPLETED, risk_score=score)
            result.status = ScanStatus.COMPLETED
            self.gateway.scan_phase(scan_id, TargetPhase.COMPLETE.value, 100)
            self.gateway.scan_complete(
                scan_id,
                len(result.findings),
                counts,
                result.duration,
                ScanStatus.COMPLETED.value,
                crawledUrls=result.crawled_urls,
            )
            logger.info(f"[{scan_id}] Target scan completed: {len(result.findings)} findings, risk score {score}")
            return result
        except CancellationRequested:
            logger.warning(f"[{scan_id}] Target scan cancelled")
            result.duration = time.monotonic() - start
            result.status = ScanStatus.CANCELLED
            if not state.terminal:
                state.advance(ScanStatus.CANCELLED)
            self.sink.update_scan_status(scan_id, ScanStatus.CANCELLED)
            self.sink.update_last_scan(job.target_id, scan_id, ScanStatus.CANCELLED)
            if active.try_finish():
                counts = dict(active.counts)
                self.gateway.scan_complete(scan_id, sum(counts.values()), counts, result.duration, ScanStatus.CANCELLED.value)
            return result
        except Exception as e:
            result.duration = time.monotonic() - start
            result.error = str(e)
            retry_follows = getattr(e, "retryable", True) and not final_attempt
            logger.error(f"[{scan_id}] Target scan failed{' (will retry)' if retry_follows else ''}: {e}")
            if not retry_follows:
                result.status = ScanStatus.FAILED
                self.sink.fail_scan(scan_id, str(e))
                self.sink.update_last_scan(job.target_id, scan_id, ScanStatus.FAILED)
                if active.try_finish():
                    self.gateway.scan_complete(scan_id, 0, empty_counts(), result.duration, ScanStatus.FAILED.value)
            raise
        finally:
            cleanup_work_dir(work_dir)
            self.coordinator.unregister(scan_id)

    def discover(self, job: TargetScanJob, context: ScanContext, recorder: _Recorder) -> Discovery:
        """
        katana crawl, plus a concurrent ZAP spider in comprehensive mode. Any failure here
        leaves the scan with just the base URL.
        """
        discovery = Discovery()
        katana = self.registry.get("katana")
        zap = self.registry.get("zap") if job.scan_mode == "comprehensive" else None
        spider_urls: List[str] = []

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"discover-{job.scan_id[:8]}") as pool:
            spider = pool.submit(self._spider, zap, context) if zap is not None else None
            if katana is not None:
                run = run_adapter(katana, context, self.sink, self.gateway, emitted=recorder.emitted)
                recorder.record(run.findings)
                if run.output is not None:
                    discovery.urls = list(run.output.discovered_urls)
                    discovery.js_files = list(run.output.js_files)
                    discovery.params = list(run.output.extra.get("params") or [])
            if spider is not None:
                spider_urls = spider.result()

        discovery.urls = merge_urls(discovery.urls, spider_urls)
        if not discovery.urls:
            logger.info(f"[{job.scan_id}] Discovery found no URLs; continuing with {job.target_url}")
            discovery.urls = [job.target_url]
        return discovery

    def _spider(self, zap, context: ScanContext) -> List[str]:
        try:
            return list(zap.spider_only(context, max_duration=SPIDER_MAX_DURATION).discovered_urls)
        except CancellationRequested:
            return []
        except Exception as e:
            logger.warning(f"[{context.scan_id}] ZAP spider failed: {e}")
            return []

    def _run_scanner(self, adapter: ScannerAdapter, job: TargetScanJob, context: ScanContext, recorder: _Recorder) -> List[ScannerInvocation]:
        config = dict(context.config)
        timeout = None
        if adapter.name == "zap":
            config["passive_only"] = job.scan_mode != "comprehensive"
        if adapter.name != "nuclei":
            timeout = self.scanner_timeout
        scanner_ctx = ScanContext(
            scan_id=context.scan_id,
            work_dir=context.work_dir,
            timeout=timeout,
            exclude_paths=list(context.exclude_paths),
            config=config,
            cancel_event=context.cancel_event,
        )

        if adapter.name == "nuclei" and job.scan_mode in TWO_PHASE_MODES:
            planner = TwoPhaseNucleiPlanner(adapter, self.sink, self.gateway, on_findings=recorder.record, emitted=recorder.emitted)
            plan = planner.run(scanner_ctx)
            return [r.invocation for r in plan.runs]

        run = run_adapter(adapter, scanner_ctx, self.sink, self.gateway, emitted=recorder.emitted)
        recorder.record(run.findings)
        return [run.invocation]
