import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.cancellation import CancellationCoordinator
from scanforge.errors import ConfigError
from scanforge.events import SCAN_COMPLETE, SCAN_TECHNOLOGY, SCAN_URLS, EventGateway, EventSink, InMemoryBroker
from scanforge.models import NormalizedFinding, ScanOutput, ScannerCategory, ScanStatus, TargetScanJob
from scanforge.target_pipeline import TargetScanPipeline, detect_technologies, merge_urls
from scanforge.tools.base import ScannerAdapter
from scanforge.sinks import InMemoryResultSink

TARGET = "https://app.test"


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def send(self, scan_id, event, payload):
        self.events.append((event, payload))

    def of(self, name):
        return [p for e, p in self.events if e == name]


class FakeTargetScanner(ScannerAdapter):
    category = ScannerCategory.DAST

    def __init__(self, name, findings=None, urls=(), on_scan=None):
        super().__init__(executor=MagicMock(), config={})
        self.name = name
        self.label = name
        self.findings = findings or {}
        self.urls = list(urls)
        self.on_scan = on_scan
        self.contexts = []

    def is_available(self):
        return True

    def scan(self, context):
        self.contexts.append(context)
        if self.on_scan is not None:
            self.on_scan(context)
        phase = context.config.get("scan_phase", "single")
        findings = [
            NormalizedFinding(scanner=self.name, rule_id=rule, severity=severity, title=title, file_path=TARGET)
            for rule, severity, title in self.findings.get(phase, [])
        ]
        return ScanOutput(scanner=self.name, findings=findings, discovered_urls=list(self.urls))

    def parse_output(self, output):
        return []


class FakeZap(FakeTargetScanner):
    def __init__(self, *args, spider_urls=(), spider_error=None, **kwargs):
        super().__init__("zap", *args, **kwargs)
        self.spider_urls = list(spider_urls)
        self.spider_error = spider_error
        self.spider_calls = []

    def spider_only(self, context, max_duration=None):
        self.spider_calls.append(max_duration)
        if self.spider_error is not None:
            raise self.spider_error
        return ScanOutput(scanner="zap", discovered_urls=list(self.spider_urls))


def make_job(mode="quick", **kwargs):
    return TargetScanJob(scan_id="scan-1", tenant_id="t1", target_id="target-1", target_url=TARGET, scan_mode=mode, **kwargs)


class TestTargetScanPipeline(unittest.TestCase):
    def setUp(self):
        self.work_root = tempfile.mkdtemp()
        self.broker = InMemoryBroker()
        self.gateway = EventGateway(self.broker, batch_interval=60)
        self.events = RecordingSink()
        self.gateway.subscribe("scan-1", self.events)
        self.executor = MagicMock()
        self.coordinator = CancellationCoordinator(self.broker, self.executor, self.gateway)
        self.sink = InMemoryResultSink()
        self.katana = FakeTargetScanner("katana", urls=[f"{TARGET}/login", f"{TARGET}/api?id=1"])
        self.nuclei = FakeTargetScanner(
            "nuclei",
            {
                "discovery": [("nginx-version", "info", "Nginx version detected")],
                "focused": [("CVE-2021-23017", "high", "nginx resolver off-by-one")],
                "single": [("exposed-panel", "medium", "Admin panel")],
            },
        )
        self.sslscan = FakeTargetScanner("sslscan", {"single": [("weak-cipher", "medium", "Weak TLS cipher")]})

    def tearDown(self):
        self.gateway.close()
        shutil.rmtree(self.work_root, ignore_errors=True)

    def pipeline(self, registry):
        return TargetScanPipeline(registry, self.sink, self.gateway, self.coordinator, config={"core": {"work_root": self.work_root}})

    def test_quick_scan_crawls_then_runs_two_phase_nuclei(self):
        registry = {"katana": self.katana, "nuclei": self.nuclei, "sslscan": self.sslscan}
        result = self.pipeline(registry).run(make_job("quick", rate_limit_preset="LOW"))

        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.crawled_urls, 2)
        self.assertEqual([c.config["scan_phase"] for c in self.nuclei.contexts], ["discovery", "focused"])
        self.assertEqual(len(result.invocations), 3)
        self.assertEqual(len(result.findings), 3)
        self.assertEqual(result.technologies, ["nginx"])
        self.assertGreater(result.risk_score, 0)

        ssl_ctx = self.sslscan.contexts[0]
        self.assertEqual(ssl_ctx.timeout, 300.0)
        self.assertEqual(ssl_ctx.config["target_urls"], [TARGET, f"{TARGET}/login", f"{TARGET}/api?id=1"])
        self.assertEqual(ssl_ctx.config["rate_limit_preset"], "low")
        self.assertIsNone(self.nuclei.contexts[0].timeout)

        self.assertEqual(self.sink.status_of("scan-1"), ScanStatus.COMPLETED)
        self.assertEqual(self.sink.last_scans["target-1"]["risk_score"], result.risk_score)
        self.assertEqual(self.events.of(SCAN_URLS)[0]["urls"], [f"{TARGET}/login", f"{TARGET}/api?id=1"])
        self.assertEqual([p["technology"] for p in self.events.of(SCAN_TECHNOLOGY)], ["nginx"])
        completes = self.events.of(SCAN_COMPLETE)
        self.assertEqual(len(completes), 1)
        self.assertEqual(completes[0]["crawledUrls"], 2)
        self.assertEqual(completes[0]["totalFindings"], 3)

    def test_standard_mode_runs_passive_zap(self):
        zap = FakeZap()
        registry = {"katana": self.katana, "nuclei": self.nuclei, "sslscan": self.sslscan, "zap": zap}
        self.pipeline(registry).run(make_job("standard"))
        self.assertTrue(zap.contexts[0].config["passive_only"])
        self.assertEqual(zap.spider_calls, [])

    def test_comprehensive_mode_runs_every_scanner_once(self):
        zap = FakeZap(spider_urls=[f"{TARGET}/admin", f"{TARGET}/login"])
        sqlmap = FakeTargetScanner("sqlmap")
        nikto = FakeTargetScanner("nikto")
        registry = {"katana": self.katana, "nuclei": self.nuclei, "sslscan": self.sslscan, "zap": zap, "sqlmap": sqlmap, "nikto": nikto}
        result = self.pipeline(registry).run(make_job("comprehensive"))

        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.crawled_urls, 3)
        self.assertEqual(zap.spider_calls, [120.0])
        self.assertFalse(zap.contexts[0].config["passive_only"])
        self.assertEqual([c.config.get("scan_phase", "single") for c in self.nuclei.contexts], ["single"])
        self.assertEqual(len(sqlmap.contexts), 1)
        self.assertEqual(len(nikto.contexts), 1)
        self.assertEqual(len(result.invocations), 5)

    def test_spider_failure_is_not_fatal(self):
        zap = FakeZap(spider_error=RuntimeError("zap down"))
        result = self.pipeline({"katana": self.katana, "zap": zap}).run(make_job("comprehensive"))
        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.crawled_urls, 2)

    def test_no_discovered_urls_falls_back_to_base_url(self):
        result = self.pipeline({"sslscan": self.sslscan}).run(make_job("quick"))
        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.crawled_urls, 1)
        self.assertEqual(self.sslscan.contexts[0].config["target_urls"], [TARGET])

    def test_duplicate_findings_across_scanners_are_stored_once(self):
        duplicate = {"single": [("weak-cipher", "medium", "Weak TLS cipher")]}
        nikto = FakeTargetScanner("nikto", duplicate)
        sqlmap = FakeTargetScanner("sqlmap", duplicate)
        registry = {"sslscan": self.sslscan, "nikto": nikto, "sqlmap": sqlmap}
        result = self.pipeline(registry).run(make_job("comprehensive"))
        self.assertEqual(len(result.findings), 1)
        self.assertEqual(len(self.sink.findings["scan-1"]), 1)
        self.assertEqual(result.severity_counts["medium"], 1)

    def test_unknown_mode_fails_without_retry(self):
        with self.assertRaises(ConfigError):
            self.pipeline({}).run(make_job("insane"), final_attempt=False)
        self.assertEqual(self.sink.status_of("scan-1"), ScanStatus.FAILED)
        self.assertEqual(self.events.of(SCAN_COMPLETE)[0]["status"], "failed")

    def test_cancellation_stops_remaining_scanners(self):
        def cancel(context):
            self.coordinator.handle_cancel(context.scan_id)

        sslscan = FakeTargetScanner("sslscan", {"single": [("weak-cipher", "medium", "Weak TLS cipher")]}, on_scan=cancel)
        zap = FakeZap()
        result = self.pipeline({"sslscan": sslscan, "zap": zap}).run(make_job("standard"))

        self.assertEqual(result.status, ScanStatus.CANCELLED)
        self.assertEqual(zap.contexts, [])
        self.assertEqual(self.sink.status_of("scan-1"), ScanStatus.CANCELLED)
        completes = self.events.of(SCAN_COMPLETE)
        self.assertEqual(len(completes), 1)
        self.assertEqual(completes[0]["status"], "cancelled")
        self.assertEqual(self.coordinator.active_scans(), [])


class TestHelpers(unittest.TestCase):
    def test_detect_technologies(self):
        finding = NormalizedFinding(
            scanner="nuclei",
            rule_id="tech-detect",
            severity="info",
            title="WordPress on Apache",
            file_path=TARGET,
            metadata={"extracted": ["Node.js", "nodejs 18"]},
        )
        self.assertEqual(detect_technologies(finding), ["wordpress", "apache", "node"])

    def test_merge_urls_keeps_first_occurrence_order(self):
        self.assertEqual(merge_urls(["a", "b"], ["b", "", "c"]), ["a", "b", "c"])


if __name__ == "__main__":
    unittest.main()
