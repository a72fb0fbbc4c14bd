"""
Two-phase nuclei run for target scans: a short technology discovery pass, then a
vulnerability pass restricted to templates for what was found.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Set

from scanforge.errors import CancellationRequested
from scanforge.events import EventGateway
from scanforge.logger import setup_logger
from scanforge.models import InvocationStatus, NormalizedFinding, ScanContext, TargetPhase
from scanforge.pipeline import AdapterRun, run_adapter
from scanforge.sinks import ResultSink
from scanforge.tools.nuclei import (
    PHASE_DISCOVERY,
    PHASE_FOCUSED,
    NucleiScanner,
    get_focused_templates,
    parse_technologies,
)

logger = setup_logger(__name__)

DISCOVERY_LABEL = "Tech Discovery"
FOCUSED_LABEL = "Vulnerability Scan"


@dataclass
class PlanResult:
    technologies: List[str] = field(default_factory=list)
    templates: List[str] = field(default_factory=list)
    runs: List[AdapterRun] = field(default_factory=list)
    findings: List[NormalizedFinding] = field(default_factory=list)

    @property
    def skipped_focused(self) -> bool:
        return len(self.runs) < 2


class TwoPhaseNucleiPlanner:
    def __init__(
        self,
        nuclei: NucleiScanner,
        sink: ResultSink,
        gateway: EventGateway,
        on_findings: Optional[Callable[[List[NormalizedFinding]], None]] = None,
        emitted: Optional[Set[str]] = None,
    ):
        self.nuclei = nuclei
        self.sink = sink
        self.gateway = gateway
        self.on_findings = on_findings
        self._seen: Set[str] = set()
        # fingerprints already sent as finding events, shared by both phases
        self.emitted: Set[str] = emitted if emitted is not None else set()

    def _collect(self, run: AdapterRun, result: PlanResult) -> None:
        fresh = []
        for finding in run.findings:
            if finding.fingerprint in self._seen:
                continue
            self._seen.add(finding.fingerprint)
            fresh.append(finding)
        result.findings.extend(fresh)
        if fresh and self.on_findings is not None:
            self.on_findings(fresh)

    def run(self, context: ScanContext) -> PlanResult:
        scan_id = context.scan_id
        result = PlanResult()

        self.gateway.scan_phase(scan_id, TargetPhase.SCANNING.value, 10)
        discovery_ctx = replace(context, config={**context.config, "scan_phase": PHASE_DISCOVERY})
        discovery = run_adapter(self.nuclei, discovery_ctx, self.sink, self.gateway, DISCOVERY_LABEL, PHASE_DISCOVERY, self.emitted)
        result.runs.append(discovery)
        self._collect(discovery, result)

        result.technologies = parse_technologies(discovery.findings)
        logger.info(f"[{scan_id}] Detected technologies: {', '.join(result.technologies) or 'none'}")
        self.gateway.scan_phase(scan_id, TargetPhase.SCANNING.value, 40, detected_technologies=result.technologies)

        if context.cancel_event is not None and context.cancel_event.is_set():
            raise CancellationRequested(scan_id)

        if discovery.invocation.status != InvocationStatus.COMPLETED or not result.technologies:
            logger.info(f"[{scan_id}] No technologies detected; skipping focused nuclei phase")
            return result

        result.templates = get_focused_templates(result.technologies)
        focused_ctx = replace(
            context,
            config={**context.config, "scan_phase": PHASE_FOCUSED, "detected_technologies": list(result.technologies)},
        )
        focused = run_adapter(self.nuclei, focused_ctx, self.sink, self.gateway, FOCUSED_LABEL, PHASE_FOCUSED, self.emitted)
        result.runs.append(focused)
        self._collect(focused, result)
        return result
