import json
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from scanforge.findings import compute_fingerprint, network_signature
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.rate_limits import get_rate_limit_args
from scanforge.tool_settings import get_tool_config
from scanforge.tools.base import ScannerAdapter
from scanforge.tools.katana import write_header_file

logger = setup_logger(__name__)

MODE_TEMPLATES = {
    # technology detection and exposed panels
    "quick": ["http/technologies", "http/exposed-panels"],
    # + exposures and misconfigurations
    "standard": ["http/technologies", "http/exposed-panels", "http/exposures", "http/misconfiguration"],
    # + CVEs and vulnerabilities
    "comprehensive": [
        "http/technologies",
        "http/exposed-panels",
        "http/exposures",
        "http/misconfiguration",
        "http/cves",
        "http/vulnerabilities",
    ],
}

DISCOVERY_TEMPLATES = ["http/technologies", "http/exposed-panels", "http/misconfiguration"]

BASELINE_TEMPLATES = ["http/cves", "http/vulnerabilities"]

TECH_FOCUSED_TEMPLATES: Dict[str, List[str]] = {
    "apache": ["http/apache", "http/cves/apache"],
    "nginx": ["http/nginx"],
    "wordpress": ["http/wordpress"],
    "tomcat": ["http/tomcat"],
    "iis": ["http/iis"],
    "php": ["http/php"],
    "nodejs": ["http/nodejs", "http/node"],
    "spring": ["http/spring"],
    "joomla": ["http/joomla"],
    "drupal": ["http/drupal"],
    "jenkins": ["http/jenkins"],
    "gitlab": ["http/gitlab"],
    "grafana": ["http/grafana"],
    "kubernetes": ["http/kubernetes"],
    "docker": ["http/docker"],
}

_TECH_ID_PATTERNS = [
    (re.compile(r"nodejs?", re.I), "nodejs"),
] + [(re.compile(re.escape(name), re.I), name) for name in TECH_FOCUSED_TEMPLATES if name != "nodejs"]

_SEVERITIES = {s.value for s in Severity}
_OWASP_TAG = re.compile(r"^(owasp-|a\d{2}:)", re.I)
# [WRN] [template-id] Could not execute request ...
_TEMPLATE_ERR = re.compile(r"\[(?:WRN|ERR)\]\s+\[([\w.\-]+)\]")

PHASE_DISCOVERY = "discovery"
PHASE_FOCUSED = "focused"
PHASE_SINGLE = "single"


def get_focused_templates(technologies: Iterable[str]) -> List[str]:
    templates: List[str] = []
    for tech in technologies:
        for template in TECH_FOCUSED_TEMPLATES.get(str(tech).lower(), []):
            if template not in templates:
                templates.append(template)
    for template in BASELINE_TEMPLATES:
        if template not in templates:
            templates.append(template)
    return templates


def parse_technologies(findings: Iterable[NormalizedFinding]) -> List[str]:
    """
    Technologies named by discovery findings, matched against the focused-template vocabulary
    via template ids and extracted values.
    """
    techs: List[str] = []

    def add(name: str) -> None:
        if name not in techs:
            techs.append(name)

    for finding in findings:
        for pattern, name in _TECH_ID_PATTERNS:
            if pattern.search(finding.rule_id or ""):
                add(name)
        for value in finding.metadata.get("extracted") or []:
            if isinstance(value, str) and len(value) < 50:
                lowered = value.lower()
                for name in TECH_FOCUSED_TEMPLATES:
                    if name in lowered:
                        add(name)
    return techs


class NucleiScanner(ScannerAdapter):
    """
    Wrapper for ProjectDiscovery nuclei. JSON lines on stdout are parsed as they arrive so
    findings reach observers while the scan is still running.

    context.config keys: target_urls, scan_mode, scan_phase (discovery|focused|single),
    detected_technologies, rate_limit_preset, headers, auth.
    """

    name = "nuclei"
    label = "Vulnerability Detection"
    category = ScannerCategory.DAST
    findings_exit_codes = frozenset({1})
    version_arg = "-version"
    # nuclei enforces per-request timeouts itself
    default_timeout = None

    def select_templates(self, context: ScanContext) -> List[str]:
        custom = get_tool_config(self.config, self.name).get("templates_path")
        if custom:
            return [str(custom)]
        phase = context.config.get("scan_phase") or PHASE_SINGLE
        techs = context.config.get("detected_technologies") or []
        if phase == PHASE_DISCOVERY:
            return list(DISCOVERY_TEMPLATES)
        if phase == PHASE_FOCUSED and techs:
            return get_focused_templates(techs)
        mode = context.config.get("scan_mode") or "standard"
        return list(MODE_TEMPLATES.get(mode, MODE_TEMPLATES["standard"]))

    def build_args(self, context: ScanContext, targets_file: str, header_file: Optional[str] = None) -> List[str]:
        args = ["-l", targets_file, "-jsonl", "-silent", "-no-color"]
        args.extend(get_rate_limit_args("nuclei", context.config.get("rate_limit_preset")))
        for template in self.select_templates(context):
            args.extend(["-t", template])
        phase = context.config.get("scan_phase") or PHASE_SINGLE
        if phase == PHASE_FOCUSED or context.config.get("scan_mode") == "comprehensive":
            args.extend(["-s", "critical,high,medium"])
        if header_file:
            args.extend(["-H", header_file])
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = [re.sub("localhost", "127.0.0.1", u, flags=re.I) for u in context.target_urls]
        if not targets:
            logger.warning("No target URLs configured for nuclei scan")
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")

        phase = context.config.get("scan_phase") or PHASE_SINGLE
        # URLs carry ?, & and friends, so they go through a list file
        targets_file = os.path.join(context.work_dir, f"nuclei-targets-{phase}.txt")
        with open(targets_file, "w", encoding="utf-8") as f:
            f.write("\n".join(targets) + "\n")
        header_file = write_header_file(
            os.path.join(context.work_dir, "nuclei-headers.txt"),
            context.config.get("headers") or {},
            (context.config.get("auth") or {}).get("cookies"),
        )

        observer = context.observer
        streamed: List[NormalizedFinding] = []
        template_stats = {"matched": 0, "failed": 0, "failed_templates": []}

        def on_line(line: str, stream: str) -> None:
            if stream == "stderr":
                match = _TEMPLATE_ERR.search(line)
                if match:
                    template_id = match.group(1)
                    template_stats["failed"] += 1
                    if template_id not in template_stats["failed_templates"]:
                        template_stats["failed_templates"].append(template_id)
                    observer.on_template(template_id, "failed")
                return
            finding = self._parse_line(line)
            if finding is None:
                return
            streamed.append(finding)
            template_stats["matched"] += 1
            observer.on_template(finding.rule_id, "matched")
            observer.on_finding(finding)

        logger.info(f"Starting nuclei ({phase}) on {len(targets)} target(s)")
        observer.on_progress(5, phase)
        output = self.run(self.build_args(context, targets_file, header_file), context, on_line=on_line)
        observer.on_progress(100, phase)
        output.findings = streamed
        output.extra["template_stats"] = template_stats
        output.extra["phase"] = phase
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        findings: List[NormalizedFinding] = []
        for line in (output.stdout or "").splitlines():
            finding = self._parse_line(line)
            if finding is not None:
                findings.append(finding)
        logger.info(f"Parsed {len(findings)} nuclei findings")
        return findings

    def _parse_line(self, line: str) -> Optional[NormalizedFinding]:
        line = (line or "").strip()
        if not line.startswith("{"):
            return None
        try:
            result = json.loads(line)
        except json.JSONDecodeError as e:
            logger.debug(f"Skipping non-JSON nuclei line: {e}")
            return None
        if not isinstance(result, dict) or not result.get("template-id"):
            return None
        try:
            return self._convert(result)
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed nuclei result: {e}")
            return None

    def _convert(self, result: Dict[str, Any]) -> Optional[NormalizedFinding]:
        info = result.get("info") or {}
        tags = info.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        classification = info.get("classification") or {}
        template_id = str(result["template-id"])
        host = str(result.get("host") or "")
        matched = str(result.get("matched-at") or result.get("matched") or host)
        references = info.get("reference") or []
        if isinstance(references, str):
            references = [references]

        severity = str(info.get("severity") or "").lower()
        if severity not in _SEVERITIES:
            logger.warning(f"Dropping nuclei result {template_id}: unrecognised severity {severity!r}")
            return None
        cves = [str(c).upper() for c in classification.get("cve-id") or []]
        return NormalizedFinding(
            scanner=self.name,
            rule_id=template_id,
            severity=severity,
            confidence=Confidence.HIGH if cves else Confidence.MEDIUM,
            title=info.get("name") or template_id,
            description=info.get("description") or f"Detected by template: {template_id}",
            file_path=matched,
            start_line=0,
            cwe_ids=[str(c).upper() for c in classification.get("cwe-id") or []],
            cve_ids=cves,
            owasp_ids=[str(t).upper() for t in tags if _OWASP_TAG.match(str(t))],
            references=[str(r) for r in references],
            fingerprint=compute_fingerprint(template_id, host, 0, network_signature(host, matched, result.get("matcher-name"))),
            metadata={
                "host": host,
                "template_path": result.get("template-path"),
                "type": result.get("type"),
                "matcher_name": result.get("matcher-name"),
                "curl_command": result.get("curl-command"),
                "timestamp": result.get("timestamp"),
                "extracted": result.get("extracted-results") or result.get("extracted") or [],
            },
        )
