from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from scanforge.errors import InvalidTransition


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Strict lookup; unknown severities raise ValueError instead of landing in a bucket."""
        if isinstance(value, Severity):
            return value
        return cls(str(value or "").strip().lower())

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER: Tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
    Severity.INFO,
)


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        if isinstance(value, Confidence):
            return value
        return cls(str(value or "").strip().lower())


class ScannerCategory(str, Enum):
    SAST = "sast"
    SCA = "sca"
    SECRETS = "secrets"
    IAC = "iac"
    DAST = "dast"
    DISCOVERY = "discovery"
    PENTEST = "pentest"


class InvocationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ScanStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    CLONING = "cloning"
    RUNNING = "running"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    STORING = "storing"
    NOTIFYING = "notifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TargetPhase(str, Enum):
    INITIALIZING = "initializing"
    CRAWLING = "crawling"
    SCANNING = "scanning"
    COMPLETE = "complete"


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.CANCELLED})

REPOSITORY_FLOW: Tuple[ScanStatus, ...] = (
    ScanStatus.PENDING,
    ScanStatus.QUEUED,
    ScanStatus.CLONING,
    ScanStatus.SCANNING,
    ScanStatus.ANALYZING,
    ScanStatus.STORING,
    ScanStatus.NOTIFYING,
)

TARGET_FLOW: Tuple[ScanStatus, ...] = (
    ScanStatus.PENDING,
    ScanStatus.QUEUED,
    ScanStatus.RUNNING,
)


def can_transition(flow: Tuple[ScanStatus, ...], current: ScanStatus, target: ScanStatus) -> bool:
    """Forward-only within the flow; any non-terminal state may jump to a terminal one."""
    if current.terminal:
        return False
    if target.terminal:
        return True
    if current not in flow or target not in flow:
        return False
    return flow.index(target) > flow.index(current)


class ScanStateMachine:
    """
    Tracks one job's lifecycle status. Transitions are monotonic; once terminal, frozen.
    """

    def __init__(self, flow: Tuple[ScanStatus, ...], status: ScanStatus = ScanStatus.PENDING):
        self.flow = flow
        self.status = status
        self.history: List[ScanStatus] = [status]

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def advance(self, target: ScanStatus) -> ScanStatus:
        target = ScanStatus(target)
        if not can_transition(self.flow, self.status, target):
            raise InvalidTransition(self.status.value, target.value)
        self.status = target
        self.history.append(target)
        return target


@dataclass
class NormalizedFinding:
    scanner: str
    rule_id: str
    severity: Severity
    title: str
    file_path: str
    confidence: Confidence = Confidence.MEDIUM
    description: str = ""
    start_line: int = 0
    end_line: Optional[int] = None
    start_column: Optional[int] = None
    end_column: Optional[int] = None
    snippet: Optional[str] = None
    cwe_ids: List[str] = field(default_factory=list)
    cve_ids: List[str] = field(default_factory=list)
    owasp_ids: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    fix: Optional[str] = None
    fingerprint: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.severity = Severity.parse(self.severity)
        self.confidence = Confidence.parse(self.confidence)
        if not self.fingerprint:
            from scanforge.findings import compute_fingerprint

            self.fingerprint = compute_fingerprint(
                self.rule_id, self.file_path, self.start_line, self.snippet
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["confidence"] = self.confidence.value
        return data

    def summary(self) -> Dict[str, Any]:
        """Compact form used in finding events."""
        out: Dict[str, Any] = {
            "id": self.fingerprint,
            "severity": self.severity.value,
            "title": self.title,
        }
        if self.file_path.startswith(("http://", "https://")):
            out["url"] = self.file_path
        else:
            out["filePath"] = self.file_path
        if self.cwe_ids:
            out["cweIds"] = list(self.cwe_ids)
        if self.cve_ids:
            out["cveIds"] = list(self.cve_ids)
        return out


@dataclass
class ScannerInvocation:
    """One scanner's execution record. Finished exactly once, then frozen."""

    scanner: str
    category: ScannerCategory
    status: InvocationStatus = InvocationStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    exit_code: Optional[int] = None
    duration: float = 0.0
    output_size: int = 0
    finding_count: int = 0
    error: Optional[str] = None
    invocation_id: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (InvocationStatus.COMPLETED, InvocationStatus.FAILED, InvocationStatus.SKIPPED)

    def start(self) -> None:
        if self.status != InvocationStatus.PENDING:
            raise InvalidTransition(self.status.value, InvocationStatus.RUNNING.value)
        self.status = InvocationStatus.RUNNING
        self.started_at = time.time()

    def finish(
        self,
        status: InvocationStatus,
        *,
        exit_code: Optional[int] = None,
        finding_count: int = 0,
        output_size: int = 0,
        error: Optional[str] = None,
    ) -> None:
        status = InvocationStatus(status)
        if self.finished or status in (InvocationStatus.PENDING, InvocationStatus.RUNNING):
            raise InvalidTransition(self.status.value, status.value)
        self.finished_at = time.time()
        if self.started_at is None:
            self.started_at = self.finished_at
        self.duration = self.finished_at - self.started_at
        self.status = status
        self.exit_code = exit_code
        self.finding_count = finding_count
        self.output_size = output_size
        self.error = error[:500] if error else None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["status"] = self.status.value
        return data


@dataclass
class ScanOutput:
    """Raw result of an adapter's scan() call, before parsing."""

    scanner: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    canceled: bool = False
    output_file: Optional[str] = None
    command: str = ""
    findings: List[NormalizedFinding] = field(default_factory=list)
    discovered_urls: List[str] = field(default_factory=list)
    js_files: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def output_size(self) -> int:
        return len(self.stdout or "") + len(self.stderr or "")


class ScanObserver:
    """
    Receives live telemetry from an adapter while it runs. The default implementation
    ignores everything; the pipelines pass a gateway-bound observer per scanner.
    """

    def on_log(self, line: str, stream: str) -> None:
        pass

    def on_progress(self, percent: float, phase: Optional[str] = None, current: Optional[int] = None, total: Optional[int] = None) -> None:
        pass

    def on_finding(self, finding: NormalizedFinding) -> None:
        pass

    def on_template(self, template_id: str, status: str) -> None:
        pass


@dataclass
class ScanContext:
    scan_id: str
    work_dir: str
    timeout: Optional[float] = None
    exclude_paths: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    observer: ScanObserver = field(default_factory=ScanObserver)
    cancel_event: Any = None

    @property
    def target_urls(self) -> List[str]:
        return list(self.config.get("target_urls") or [])


@dataclass
class ScanConfig:
    enable_sast: bool = True
    enable_sca: bool = True
    enable_secrets: bool = True
    enable_iac: bool = True
    enable_dast: bool = False
    exclude_paths: List[str] = field(default_factory=list)
    diff_only: bool = False
    target_urls: List[str] = field(default_factory=list)
    container_images: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScanConfig":
        data = data or {}
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class RepositoryScanJob:
    scan_id: str
    tenant_id: str
    repository_id: str
    clone_url: str
    branch: str
    commit_sha: str
    full_name: str = ""
    access_token: Optional[str] = None
    pull_request_id: Optional[str] = None
    check_run_id: Optional[str] = None
    notify_url: Optional[str] = None
    trigger: str = "manual"  # manual|webhook|schedule
    config: ScanConfig = field(default_factory=ScanConfig)

    @property
    def has_notification_target(self) -> bool:
        return bool(self.pull_request_id or self.check_run_id or self.notify_url)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepositoryScanJob":
        data = dict(data)
        data["config"] = ScanConfig.from_dict(data.get("config"))
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TargetScanJob:
    scan_id: str
    tenant_id: str
    target_id: str
    target_url: str
    target_name: str = ""
    scan_mode: str = "standard"  # quick|standard|comprehensive
    rate_limit_preset: str = "medium"
    headers: Dict[str, str] = field(default_factory=dict)
    auth: Dict[str, Any] = field(default_factory=dict)
    exclude_paths: List[str] = field(default_factory=list)
    trigger: str = "manual"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetScanJob":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotifyJob:
    scan_id: str
    status: str
    severity_counts: Dict[str, int]
    duration: float
    destination: Optional[str] = None
    full_name: str = ""
    commit_sha: str = ""
    check_run_id: Optional[str] = None
    pull_request_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotifyJob":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
