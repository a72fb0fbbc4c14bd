import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from scanforge.errors import InvalidTransition
from scanforge.findings import count_by_severity, prepare_for_storage
from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScannerInvocation, ScanStatus

logger = setup_logger(__name__)


class ResultSink:
    """
    Durable storage of scan status, scanner invocations and findings.
    Implementations raise PersistenceError when the backing store fails.
    """

    def create_invocation(self, scan_id: str, invocation: ScannerInvocation) -> str:
        raise NotImplementedError

    def finish_invocation(self, scan_id: str, invocation: ScannerInvocation) -> None:
        raise NotImplementedError

    def update_scan_status(self, scan_id: str, status: ScanStatus, **fields: Any) -> None:
        raise NotImplementedError

    def store_findings(self, scan_id: str, findings: List[NormalizedFinding], work_dir: Optional[str] = None) -> int:
        raise NotImplementedError

    def count_by_severity(self, scan_id: str) -> Dict[str, int]:
        raise NotImplementedError

    def complete_scan(self, scan_id: str, summary: Dict[str, Any]) -> None:
        raise NotImplementedError

    def fail_scan(self, scan_id: str, error: str) -> None:
        raise NotImplementedError

    def update_last_scan(self, subject_id: str, scan_id: str, status: ScanStatus, risk_score: Optional[int] = None) -> None:
        raise NotImplementedError


class InMemoryResultSink(ResultSink):
    """Process-local sink for single-node runs and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.scans: Dict[str, Dict[str, Any]] = {}
        self.invocations: Dict[str, List[ScannerInvocation]] = {}
        self.findings: Dict[str, List[NormalizedFinding]] = {}
        self.last_scans: Dict[str, Dict[str, Any]] = {}
        self.last_scan_updates: List[str] = []

    def _scan(self, scan_id: str) -> Dict[str, Any]:
        return self.scans.setdefault(scan_id, {"status": ScanStatus.PENDING, "history": [ScanStatus.PENDING]})

    def create_invocation(self, scan_id, invocation) -> str:
        with self._lock:
            invocation.invocation_id = invocation.invocation_id or uuid.uuid4().hex
            self.invocations.setdefault(scan_id, []).append(invocation)
            return invocation.invocation_id

    def finish_invocation(self, scan_id, invocation) -> None:
        logger.debug(f"[{scan_id}] {invocation.scanner} -> {invocation.status.value}")

    def update_scan_status(self, scan_id, status, **fields) -> None:
        status = ScanStatus(status)
        with self._lock:
            scan = self._scan(scan_id)
            current = scan["status"]
            if current.terminal:
                raise InvalidTransition(current.value, status.value)
            scan["status"] = status
            scan["history"].append(status)
            scan.update(fields)

    def status_of(self, scan_id: str) -> Optional[ScanStatus]:
        with self._lock:
            scan = self.scans.get(scan_id)
            return scan["status"] if scan else None

    def store_findings(self, scan_id, findings, work_dir=None) -> int:
        prepared = prepare_for_storage(findings, work_dir)
        with self._lock:
            stored = self.findings.setdefault(scan_id, [])
            seen = {f.fingerprint for f in stored}
            added = 0
            for finding in prepared:
                if finding.fingerprint in seen:
                    continue
                seen.add(finding.fingerprint)
                stored.append(finding)
                added += 1
        return added

    def count_by_severity(self, scan_id) -> Dict[str, int]:
        with self._lock:
            return count_by_severity(self.findings.get(scan_id, []))

    def complete_scan(self, scan_id, summary) -> None:
        self.update_scan_status(scan_id, ScanStatus.COMPLETED, completed_at=time.time(), summary=dict(summary))

    def fail_scan(self, scan_id, error) -> None:
        self.update_scan_status(scan_id, ScanStatus.FAILED, completed_at=time.time(), error=(error or "")[:500])

    def update_last_scan(self, subject_id, scan_id, status, risk_score=None) -> None:
        with self._lock:
            entry = {"scan_id": scan_id, "status": ScanStatus(status).value, "at": time.time()}
            if risk_score is not None:
                entry["risk_score"] = risk_score
            self.last_scans[subject_id] = entry
            self.last_scan_updates.append(scan_id)
