"""
Shared SARIF 2.1 translator. Adapters that emit SARIF (semgrep, gosec, trivy, checkov)
hand the raw document here and get NormalizedFinding records back.
"""

import json
import re
from typing import Any, Dict, List, Optional

from scanforge.findings import compute_fingerprint
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, Severity

logger = setup_logger(__name__)

_OWASP_TAG = re.compile(r"^A\d{2}:\d{4}")
DEFAULT_FIX_TEXT = "Suggested fix available"


def normalize_uri(uri: str) -> str:
    """Absolute paths stay absolute so storage can strip the scan work dir."""
    uri = re.sub(r"^file://", "", uri or "")
    return uri.replace("\\", "/")


def map_severity(level: Optional[str], rule: Optional[Dict[str, Any]] = None) -> Severity:
    props = (rule or {}).get("properties") or {}
    raw_score = props.get("security-severity")
    if raw_score not in (None, ""):
        try:
            score = float(raw_score)
        except (TypeError, ValueError):
            score = None
        if score is not None:
            if score >= 9.0:
                return Severity.CRITICAL
            if score >= 7.0:
                return Severity.HIGH
            if score >= 4.0:
                return Severity.MEDIUM
            if score >= 0.1:
                return Severity.LOW
            return Severity.INFO

    if not level:
        level = ((rule or {}).get("defaultConfiguration") or {}).get("level")
    return {
        "error": Severity.HIGH,
        "warning": Severity.MEDIUM,
        "note": Severity.LOW,
    }.get(level or "", Severity.INFO)


def map_confidence(rule: Optional[Dict[str, Any]]) -> Confidence:
    precision = ((rule or {}).get("properties") or {}).get("precision")
    if precision in ("very-high", "high"):
        return Confidence.HIGH
    if precision == "medium":
        return Confidence.MEDIUM
    return Confidence.LOW


def extract_security_ids(rule: Optional[Dict[str, Any]]) -> Dict[str, List[str]]:
    ids: Dict[str, List[str]] = {"cwe": [], "cve": [], "owasp": []}
    tags = ((rule or {}).get("properties") or {}).get("tags") or []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        if tag.startswith("CWE-"):
            ids["cwe"].append(tag)
        elif tag.startswith("CVE-"):
            ids["cve"].append(tag)
        elif _OWASP_TAG.match(tag):
            ids["owasp"].append(tag)
    return ids


def _text(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        value = node.get("text")
        return str(value) if value else None
    return None


def _convert_result(result: Dict[str, Any], rules: Dict[str, Dict[str, Any]], scanner: str) -> Optional[NormalizedFinding]:
    locations = result.get("locations") or []
    physical = (locations[0] or {}).get("physicalLocation") if locations else None
    uri = ((physical or {}).get("artifactLocation") or {}).get("uri")
    if not uri:
        return None

    rule_id = str(result.get("ruleId") or "")
    rule = rules.get(rule_id)
    region = (physical or {}).get("region") or {}
    file_path = normalize_uri(uri)
    start_line = int(region.get("startLine") or 1)
    snippet = _text(region.get("snippet"))
    ids = extract_security_ids(rule)

    fix = None
    fixes = result.get("fixes") or []
    if fixes:
        fix = _text((fixes[0] or {}).get("description")) or DEFAULT_FIX_TEXT

    help_uri = (rule or {}).get("helpUri")
    return NormalizedFinding(
        scanner=scanner,
        rule_id=rule_id,
        severity=map_severity(result.get("level"), rule),
        confidence=map_confidence(rule),
        title=_text((rule or {}).get("shortDescription")) or rule_id,
        description=_text(result.get("message")) or "",
        file_path=file_path,
        start_line=start_line,
        end_line=region.get("endLine"),
        start_column=region.get("startColumn"),
        end_column=region.get("endColumn"),
        snippet=snippet,
        cwe_ids=ids["cwe"],
        cve_ids=ids["cve"],
        owasp_ids=ids["owasp"],
        references=[help_uri] if help_uri else [],
        fix=fix,
        fingerprint=compute_fingerprint(rule_id, file_path, start_line, snippet),
        metadata={
            "rule_index": result.get("ruleIndex"),
            "properties": result.get("properties"),
        },
    )


def parse_sarif(content: str, scanner: str) -> List[NormalizedFinding]:
    """
    Translates a SARIF document into findings. Malformed documents yield an empty list;
    a single malformed result is skipped without discarding the rest.
    """
    if not (content or "").strip():
        return []
    try:
        report = json.loads(content)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse SARIF from {scanner}: {e}")
        return []
    if not isinstance(report, dict):
        return []

    findings: List[NormalizedFinding] = []
    for run in report.get("runs") or []:
        driver = ((run or {}).get("tool") or {}).get("driver") or {}
        rules = {r.get("id"): r for r in driver.get("rules") or [] if isinstance(r, dict)}
        for result in (run or {}).get("results") or []:
            try:
                finding = _convert_result(result, rules, scanner)
            except (TypeError, ValueError, AttributeError) as e:
                logger.debug(f"Skipping malformed SARIF result from {scanner}: {e}")
                continue
            if finding is not None:
                findings.append(finding)
    logger.info(f"Parsed {len(findings)} findings from {scanner} SARIF")
    return findings
