import hashlib
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, SEVERITY_ORDER, Severity

logger = setup_logger(__name__)

_WS_RE = re.compile(r"\s+")

RISK_WEIGHTS = {
    Severity.CRITICAL: (40, 50),
    Severity.HIGH: (25, 30),
    Severity.MEDIUM: (10, 15),
    Severity.LOW: (3, 4),
    Severity.INFO: (1, 1),
}


def normalize_snippet(snippet: Optional[str]) -> str:
    return _WS_RE.sub(" ", snippet or "").strip()


def compute_fingerprint(rule_id: str, location: str, line: Optional[int], snippet: Optional[str] = None) -> str:
    """
    Deterministic content digest: sha256 over rule|location|line|normalized snippet,
    truncated to 32 hex chars. Network findings pass a host/route signature as snippet.
    """
    data = "|".join(
        [
            str(rule_id or ""),
            str(location or ""),
            str(int(line or 0)),
            normalize_snippet(snippet),
        ]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def network_signature(host: str, matched: str, parameter: Optional[str] = None) -> str:
    return " ".join(p for p in (host, matched, parameter) if p)


def deduplicate(findings: Iterable[NormalizedFinding]) -> List[NormalizedFinding]:
    """Keeps the first occurrence of each fingerprint, preserving input order."""
    seen = set()
    out: List[NormalizedFinding] = []
    dropped = 0
    for finding in findings:
        if finding.fingerprint in seen:
            dropped += 1
            continue
        seen.add(finding.fingerprint)
        out.append(finding)
    if dropped:
        logger.debug(f"Deduplicated findings: kept {len(out)}, dropped {dropped}")
    return out


def _relative_path(path: str, work_dir: Optional[str]) -> str:
    if not path:
        return path
    normalized = path.replace("\\", "/")
    if work_dir:
        root = work_dir.replace("\\", "/").rstrip("/")
        if normalized == root:
            return ""
        if normalized.startswith(root + "/"):
            normalized = normalized[len(root) + 1:]
    if normalized.startswith(("http://", "https://")):
        return normalized
    return normalized.lstrip("/")


def short_rule_id(rule_id: str) -> str:
    """python.lang.security.audit.eval-detected -> eval-detected"""
    if not rule_id or "." not in rule_id:
        return rule_id
    tail = rule_id.rsplit(".", 1)[-1]
    return tail or rule_id


def prepare_for_storage(findings: Iterable[NormalizedFinding], work_dir: Optional[str] = None) -> List[NormalizedFinding]:
    """
    Returns copies with repository-relative paths and shortened rule ids.
    Fingerprints are recomputed from the relative path so they are stable across clones.
    """
    prepared: List[NormalizedFinding] = []
    for finding in findings:
        rel = _relative_path(finding.file_path, work_dir)
        metadata = dict(finding.metadata)
        if finding.rule_id != short_rule_id(finding.rule_id):
            metadata.setdefault("full_rule_id", finding.rule_id)
        fingerprint = finding.fingerprint
        if rel != finding.file_path:
            fingerprint = compute_fingerprint(finding.rule_id, rel, finding.start_line, finding.snippet)
        prepared.append(
            replace(
                finding,
                file_path=rel,
                rule_id=short_rule_id(finding.rule_id),
                fingerprint=fingerprint,
                metadata=metadata,
            )
        )
    return prepared


def empty_counts() -> Dict[str, int]:
    return {sev.value: 0 for sev in SEVERITY_ORDER}


def count_by_severity(findings: Iterable[NormalizedFinding]) -> Dict[str, int]:
    counts = empty_counts()
    for finding in findings:
        counts[Severity.parse(finding.severity).value] += 1
    return counts


def risk_score(counts: Dict[str, int]) -> int:
    score = 0
    for sev, (weight, cap) in RISK_WEIGHTS.items():
        score += min(int(counts.get(sev.value, 0)) * weight, cap)
    return min(int(round(score)), 100)


def notification_conclusion(counts: Dict[str, int]) -> str:
    if counts.get("critical", 0) > 0 or counts.get("high", 0) > 0:
        return "failure"
    if counts.get("medium", 0) > 0:
        return "neutral"
    return "success"
