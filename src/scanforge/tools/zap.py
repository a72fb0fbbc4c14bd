import html
import random
import re
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit

import requests

from scanforge.errors import CancellationRequested, ScannerExecutionError, ScannerTimeout
from scanforge.findings import compute_fingerprint, network_signature
from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.rate_limits import get_rate_limit_config
from scanforge.sandbox import SandboxExecutor
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

DEFAULT_IMAGE = "ghcr.io/zaproxy/zaproxy:stable"
DEFAULT_API_KEY = "scanforge-zap-key"
DEFAULT_CONTAINER = "scanforge-zap"
# docker template and regex literals that contain deny-listed characters
STATUS_FORMAT = "{{.Status}}"
ANY_API_ADDRESS = "api.addrs.addr.name=.*"

_RISK = {"high": Severity.CRITICAL, "medium": Severity.HIGH, "low": Severity.MEDIUM, "informational": Severity.INFO}
_CONFIDENCE = {"confirmed": Confidence.HIGH, "high": Confidence.HIGH, "medium": Confidence.MEDIUM, "low": Confidence.LOW}
_TAG_RE = re.compile(r"<[^>]+>")
_URL_RE = re.compile(r"https?://[^\s<>\"]+")
_PORT_RE = re.compile(r":(\d+)\s*$", re.M)


def strip_html(text: Optional[str]) -> str:
    return html.unescape(_TAG_RE.sub("", text or "")).strip()


class ZapScanner(ScannerAdapter):
    """
    OWASP ZAP driven over its JSON API.

    The daemon runs as one long-lived docker container per machine and is reused across
    scans; every scan starts a fresh ZAP session instead of restarting the container.
    Sessions are serialized with a lock since the daemon holds a single session.
    """

    name = "zap"
    label = "Web Application Testing"
    category = ScannerCategory.DAST
    default_timeout = 1800.0

    def __init__(
        self,
        executor: Optional[SandboxExecutor] = None,
        config: Optional[Dict[str, Any]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(executor, config)
        zap_cfg = self.config.get("zap") if isinstance(self.config.get("zap"), dict) else {}
        self.image = zap_cfg.get("image") or DEFAULT_IMAGE
        self.api_key = zap_cfg.get("api_key") or DEFAULT_API_KEY
        self.container_name = zap_cfg.get("container_name") or DEFAULT_CONTAINER
        self.passive_wait_seconds = float(zap_cfg.get("passive_wait_seconds") or 120)
        self.session = session or requests.Session()
        self.sleep = sleep
        self.api_port = 0
        self._lock = threading.Lock()

    # -- identity / probes ------------------------------------------------

    def is_available(self) -> bool:
        if not self.executor.is_command_available("docker"):
            logger.warning("Docker command not found")
            return False
        try:
            result = self.executor.execute("docker", ["ps", "-q"], timeout=10)
        except Exception as e:
            logger.warning(f"Docker daemon check failed: {e}")
            return False
        if result.exit_code != 0:
            logger.warning(f"Docker daemon not running: {result.stderr.strip()}")
            return False
        return True

    def get_version(self) -> str:
        return self.image

    # -- container lifecycle ----------------------------------------------

    def _docker(self, args: List[str], timeout: float = 10) -> Tuple[int, str, str]:
        trusted = (STATUS_FORMAT, ANY_API_ADDRESS, self.name_filter())
        result = self.executor.execute("docker", args, timeout=timeout, trusted_args=trusted)
        return result.exit_code, result.stdout.strip(), result.stderr.strip()

    def name_filter(self) -> str:
        return f"name=^{self.container_name}$"

    def container_status(self) -> str:
        _, out, _ = self._docker(["ps", "-a", "--filter", self.name_filter(), "--format", STATUS_FORMAT])
        return out

    def container_port(self) -> int:
        _, out, _ = self._docker(["port", self.container_name, "8080"])
        match = _PORT_RE.search(out)
        if not match:
            raise ScannerExecutionError(self.name, f"Failed to get container port from: {out}")
        return int(match.group(1))

    def ensure_container(self) -> Tuple[int, bool]:
        """Returns (host_port, started_new)."""
        status = self.container_status()
        logger.debug(f"Container {self.container_name} status: {status!r}")
        if status.startswith("Up"):
            return self.container_port(), False
        if "Created" in status or "Exited" in status:
            logger.info(f"Removing stale ZAP container (status: {status})")
            self._docker(["rm", "-f", self.container_name])

        port = random.randint(10000, 59999)
        rc, out, err = self._docker(
            [
                "run",
                "-d",
                "--name",
                self.container_name,
                "-p",
                f"{port}:8080",
                self.image,
                "zap.sh",
                "-daemon",
                "-host",
                "0.0.0.0",
                "-port",
                "8080",
                "-config",
                f"api.key={self.api_key}",
                "-config",
                ANY_API_ADDRESS,
                "-config",
                "api.addrs.addr.regex=true",
            ],
            timeout=60,
        )
        if rc != 0:
            raise ScannerExecutionError(self.name, f"Failed to start ZAP container: {err or out}", exit_code=rc)
        logger.info(f"ZAP container {self.container_name} started on port {port}")
        self._wait_container_up(90)
        return port, True

    def _wait_container_up(self, max_wait: float) -> None:
        deadline = time.monotonic() + max_wait
        while time.monotonic() < deadline:
            _, status, _ = self._docker(["ps", "--filter", self.name_filter(), "--format", STATUS_FORMAT])
            if status.startswith("Up"):
                return
            if "Exited" in status:
                _, logs, err = self._docker(["logs", "--tail", "50", self.container_name], timeout=5)
                raise ScannerExecutionError(self.name, f"Container exited unexpectedly. Logs: {logs or err}")
            self.sleep(2)
        raise ScannerExecutionError(self.name, f"Container did not become Up within {max_wait:g}s")

    # -- API ----------------------------------------------------------------

    def api(self, endpoint: str) -> Dict[str, Any]:
        separator = "&" if "?" in endpoint else "?"
        url = f"http://localhost:{self.api_port}/JSON/{endpoint}{separator}apikey={self.api_key}"
        try:
            # The daemon validates Host against its container-internal port
            resp = self.session.get(url, headers={"Host": "localhost:8080"}, timeout=30)
        except requests.RequestException as e:
            raise ScannerExecutionError(self.name, f"ZAP API request failed: {e}") from e
        if resp.status_code != 200:
            raise ScannerExecutionError(self.name, f"ZAP API error: {resp.status_code} - {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ScannerExecutionError(self.name, f"Failed to parse ZAP API response: {resp.text[:200]}") from e

    def wait_ready(self, max_wait: float) -> None:
        deadline = time.monotonic() + max_wait
        attempts = 0
        while time.monotonic() < deadline:
            attempts += 1
            try:
                if self.api("core/view/version/"):
                    logger.info(f"ZAP API ready after {attempts} attempts")
                    return
            except ScannerExecutionError:
                if attempts % 5 == 0:
                    logger.info(f"Still waiting for ZAP API (attempt {attempts})")
            self.sleep(2)
        raise ScannerExecutionError(self.name, f"ZAP API did not become ready in {max_wait:g}s")

    @staticmethod
    def docker_accessible(url: str) -> str:
        if sys.platform in ("win32", "darwin"):
            url = re.sub("localhost", "host.docker.internal", url, flags=re.I)
            return url.replace("127.0.0.1", "host.docker.internal")
        return url

    # -- scan flow ----------------------------------------------------------

    def _checkpoint(self, context: ScanContext, deadline: Optional[float]) -> None:
        if context.cancel_event is not None and context.cancel_event.is_set():
            raise CancellationRequested(context.scan_id)
        if deadline is not None and time.monotonic() >= deadline:
            raise ScannerTimeout(self.name)

    def _log(self, context: ScanContext, line: str) -> None:
        context.observer.on_log(line, "stdout")

    def _poll_percent(self, context: ScanContext, endpoint: str, key: str, lo: int, span: float, phase: str, interval: float, deadline) -> None:
        last = -1
        while True:
            self._checkpoint(context, deadline)
            progress = int(self.api(endpoint).get(key) or 0)
            if progress > last:
                last = progress
                context.observer.on_progress(lo + int(progress * span), phase)
                self._log(context, f"{phase.capitalize()} progress: {progress}%")
            if progress >= 100:
                return
            self.sleep(interval)

    def wait_passive(self, context: ScanContext, deadline: Optional[float]) -> bool:
        """Drains the passive queue; gives up after passive_wait_seconds and carries on."""
        limit = time.monotonic() + self.passive_wait_seconds
        last = None
        while time.monotonic() < limit:
            self._checkpoint(context, deadline)
            remaining = int(self.api("pscan/view/recordsToScan/").get("recordsToScan") or 0)
            if remaining != last:
                last = remaining
                self._log(context, f"Passive scan: {remaining} records remaining")
            if remaining == 0:
                return True
            self.sleep(2)
        logger.warning("Passive scan did not drain in time, continuing")
        return False

    def _start(self) -> None:
        port, started = self.ensure_container()
        self.api_port = port
        self.wait_ready(90 if started else 10)
        self.api("core/action/newSession/?overwrite=true")

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = context.target_urls
        if not targets:
            logger.warning("No target URL configured for ZAP scan")
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")

        original = targets[0]
        target = self.docker_accessible(original)
        passive_only = bool(context.config.get("passive_only"))
        threads = get_rate_limit_config("zap", context.config.get("rate_limit_preset")).get("thread_count", 5)
        timeout = self.timeout_for(context)
        start = time.monotonic()
        deadline = start + timeout if timeout else None

        with self._lock:
            context.observer.on_progress(0, "initializing")
            self._start()
            self._log(context, f"Started new ZAP session for {target}")

            context.observer.on_progress(5, "spider")
            scan_id = self.api(f"spider/action/scan/?url={quote(target, safe='')}&maxChildren=0&recurse=true&subtreeOnly=false").get("scan")
            self._poll_percent(context, f"spider/view/status/?scanId={scan_id}", "status", 5, 0.3, "spider", 2, deadline)

            context.observer.on_progress(40, "passive")
            self.wait_passive(context, deadline)

            if not passive_only:
                context.observer.on_progress(50, "active")
                self.api(f"ascan/action/setOptionThreadPerHost/?Integer={threads}")
                active_id = self.api(f"ascan/action/scan/?url={quote(target, safe='')}&recurse=true&inScopeOnly=false").get("scan")
                self._poll_percent(context, f"ascan/view/status/?scanId={active_id}", "status", 50, 0.45, "active", 3, deadline)
            else:
                self._log(context, "Passive-only mode: skipping active scan")

            context.observer.on_progress(95, "fetching-alerts")
            alerts = self.api(f"core/view/alerts/?baseurl={quote(target, safe='')}&start=0&count=10000").get("alerts") or []

        findings = self.parse_alerts(alerts, original)
        for finding in findings:
            context.observer.on_finding(finding)
        context.observer.on_progress(100, "complete")
        logger.info(f"ZAP scan completed with {len(findings)} findings")
        return ScanOutput(
            scanner=self.name,
            stdout=f"Scan completed with {len(findings)} findings",
            duration=time.monotonic() - start,
            findings=findings,
            extra={"alerts": len(alerts), "passive_only": passive_only},
        )

    def spider_only(self, context: ScanContext, max_duration: float = 120.0) -> ScanOutput:
        """AJAX spider pass used during URL discovery. Returns every URL ZAP saw."""
        targets = context.target_urls
        if not targets:
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")
        original = targets[0]
        target = self.docker_accessible(original)
        start = time.monotonic()

        with self._lock:
            context.observer.on_progress(5, "initializing")
            self._start()
            self.api(f"ajaxSpider/action/scan/?url={quote(target, safe='')}&inScope=false&subtreeOnly=false")
            while True:
                self._checkpoint(context, None)
                status = self.api("ajaxSpider/view/status/").get("status")
                elapsed = time.monotonic() - start
                context.observer.on_progress(10 + int(min(95, elapsed / max_duration * 100) * 0.8), "ajax-spider")
                if status == "stopped":
                    break
                if elapsed >= max_duration:
                    self.api("ajaxSpider/action/stop/")
                    self._log(context, "AJAX Spider stopped (time limit)")
                    break
                self.sleep(3)
            urls = self.api(f"core/view/urls/?baseurl={quote(target, safe='')}").get("urls") or []

        host = urlsplit(original).hostname or ""
        discovered = list(dict.fromkeys(re.sub("host.docker.internal", host, u, flags=re.I) for u in urls))
        context.observer.on_progress(100, "complete")
        logger.info(f"ZAP spider discovered {len(discovered)} URLs")
        return ScanOutput(
            scanner=self.name,
            stdout=f"Spider discovered {len(discovered)} URLs",
            duration=time.monotonic() - start,
            discovered_urls=discovered,
        )

    # -- parsing ------------------------------------------------------------

    def parse_alerts(self, alerts: List[Dict[str, Any]], target_url: str) -> List[NormalizedFinding]:
        findings: List[NormalizedFinding] = []
        for alert in alerts:
            if not isinstance(alert, dict):
                continue
            cwe = str(alert.get("cweid") or "")
            tags = alert.get("tags") if isinstance(alert.get("tags"), dict) else {}
            url = alert.get("url") or target_url
            rule_id = str(alert.get("pluginId") or alert.get("alertRef") or "zap-alert")
            severity = _RISK.get(str(alert.get("risk") or "").lower())
            if severity is None:
                logger.warning(f"Dropping ZAP alert {rule_id}: unrecognised risk {alert.get('risk')!r}")
                continue
            param = alert.get("param") or None
            solution = strip_html(alert.get("solution"))
            findings.append(
                NormalizedFinding(
                    scanner=self.name,
                    rule_id=rule_id,
                    severity=severity,
                    confidence=_CONFIDENCE.get(str(alert.get("confidence") or "").lower(), Confidence.MEDIUM),
                    title=alert.get("name") or alert.get("alert") or rule_id,
                    description=strip_html(alert.get("description")),
                    file_path=url,
                    start_line=0,
                    cwe_ids=[f"CWE-{cwe}"] if cwe.isdigit() and int(cwe) > 0 else [],
                    owasp_ids=[str(v) for k, v in tags.items() if "owasp" in str(k).lower()],
                    references=_URL_RE.findall(alert.get("reference") or ""),
                    fix=solution or None,
                    fingerprint=compute_fingerprint(
                        str(alert.get("alertRef") or rule_id), url, 0, network_signature(urlsplit(url).netloc, url, param)
                    ),
                    metadata={
                        "method": alert.get("method"),
                        "parameter": param,
                        "attack": alert.get("attack"),
                        "evidence": alert.get("evidence"),
                        "wasc_id": alert.get("wascid"),
                        "message_id": alert.get("messageId"),
                        "input_vector": alert.get("inputVector"),
                        "other_info": alert.get("other"),
                    },
                )
            )
        return findings

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return list(output.findings)
