import os
import re
from typing import List, Optional
from urllib.parse import parse_qsl, urlsplit

from scanforge.findings import compute_fingerprint, network_signature
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.rate_limits import get_rate_limit_args
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

MAX_TARGETS = 50

# [INFO] GET parameter 'id' appears to be 'AND boolean-based blind - WHERE or HAVING clause' injectable
_INJECTABLE = re.compile(r"(?P<place>GET|POST|URI|Cookie|Header)\s+parameter\s+'(?P<param>[^']+)'\s+(?:appears to be|is)\s+'(?P<technique>[^']+)'\s+injectable", re.I)
# [INFO] testing URL 'http://host/x?id=1'   |   GET http://host/x?id=1
_URL_LINE = re.compile(r"(?:testing URL '(?P<quoted>https?://[^']+)')|^(?:GET|POST)\s+(?P<plain>https?://\S+)")


def injectable_urls(urls: List[str]) -> List[str]:
    """URLs with a query string, one per (path, sorted parameter names)."""
    seen = set()
    out: List[str] = []
    for url in urls:
        parts = urlsplit(url)
        if not parts.query:
            continue
        names = ",".join(sorted({k for k, _ in parse_qsl(parts.query, keep_blank_values=True)}))
        key = f"{parts.netloc}{parts.path}?{names}"
        if key in seen:
            continue
        seen.add(key)
        out.append(url)
    return out


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:60] or "sqli"


class SqlmapScanner(ScannerAdapter):
    """
    Wrapper for sqlmap (automated SQL injection detection).

    Parameterized URLs discovered during crawling go through a bulk file (-m);
    without any, sqlmap crawls the base URL itself and tests forms.
    """

    name = "sqlmap"
    label = "SQL Injection Testing"
    category = ScannerCategory.PENTEST
    default_timeout = 1800.0

    def build_args(self, context: ScanContext, targets: List[str], bulk_file: Optional[str]) -> List[str]:
        args: List[str]
        if bulk_file:
            args = ["-m", bulk_file]
        else:
            args = ["-u", targets[0], "--crawl=2", "--forms"]
        args.extend(
            [
                "--batch",
                "--disable-coloring",
                "--level",
                "1",
                "--risk",
                "1",
                f"--output-dir={os.path.join(context.work_dir, 'sqlmap')}",
            ]
        )
        args.extend(get_rate_limit_args("sqlmap", context.config.get("rate_limit_preset")))
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = context.target_urls
        if not targets:
            logger.warning("No target URL configured for sqlmap")
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")

        candidates = injectable_urls(list(context.config.get("discovered_urls") or []) + targets)[:MAX_TARGETS]
        bulk_file = None
        if candidates:
            bulk_file = os.path.join(context.work_dir, "sqlmap-targets.txt")
            with open(bulk_file, "w", encoding="utf-8") as f:
                f.write("\n".join(candidates) + "\n")
        start_url = urlsplit(targets[0])
        base = f"{start_url.scheme}://{start_url.netloc}{start_url.path or '/'}"

        logger.info(f"Starting sqlmap on {len(candidates) or 1} target(s)")
        output = self.run(self.build_args(context, [base], bulk_file), context)
        output.extra["target"] = targets[0]
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        findings: List[NormalizedFinding] = []
        seen = set()
        current_url = output.extra.get("target") or ""
        for raw in (output.stdout or "").splitlines():
            line = raw.strip()
            url_match = _URL_LINE.search(line)
            if url_match:
                current_url = url_match.group("quoted") or url_match.group("plain")
                continue
            match = _INJECTABLE.search(line)
            if not match:
                continue
            place, param, technique = match.group("place").upper(), match.group("param"), match.group("technique")
            key = (current_url, place, param, technique)
            if key in seen:
                continue
            seen.add(key)
            findings.append(self._convert(current_url, place, param, technique, line))
        return findings

    def _convert(self, url: str, place: str, param: str, technique: str, detail: str) -> NormalizedFinding:
        rule_id = f"sqli-{_slug(technique)}"
        host = urlsplit(url).netloc
        return NormalizedFinding(
            scanner=self.name,
            rule_id=rule_id,
            severity=Severity.CRITICAL,
            confidence=Confidence.HIGH,
            title=f"SQL injection in {place} parameter '{param}'",
            description=f"sqlmap reports {place} parameter '{param}' as injectable ({technique}).",
            file_path=url,
            start_line=0,
            cwe_ids=["CWE-89"],
            owasp_ids=["A03:2021"],
            references=["https://owasp.org/www-community/attacks/SQL_Injection"],
            fix="Use parameterized queries or prepared statements for every database access.",
            fingerprint=compute_fingerprint(rule_id, host, 0, network_signature(host, url.split("?")[0], param)),
            metadata={"parameter": param, "place": place, "technique": technique, "evidence": detail},
        )
