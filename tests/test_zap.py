import os
import sys
import threading
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.errors import CancellationRequested, ScannerExecutionError
from scanforge.models import Confidence, ScanContext, ScanObserver, Severity
from scanforge.sandbox import ExecutionResult
from scanforge.tools.zap import ZapScanner, strip_html

ALERTS = [
    {
        "pluginId": "40012",
        "alertRef": "40012",
        "name": "Cross Site Scripting (Reflected)",
        "risk": "High",
        "confidence": "Medium",
        "url": "http://example.com/search?q=%3Cscript%3E",
        "param": "q",
        "method": "GET",
        "cweid": "79",
        "wascid": "8",
        "description": "<p>Cross-site Scripting (XSS) is an attack technique.</p>",
        "solution": "<p>Validate all input &amp; encode output.</p>",
        "reference": "https://owasp.org/www-community/attacks/xss/\nhttps://cwe.mitre.org/data/definitions/79.html",
        "tags": {"OWASP_2021_A03": "https://owasp.org/Top10/A03_2021-Injection/", "WSTG-v42-INPV-01": "x"},
    },
    {
        "pluginId": "10038",
        "name": "Content Security Policy (CSP) Header Not Set",
        "risk": "Medium",
        "confidence": "High",
        "cweid": "-1",
    },
    "not an alert",
]


def docker(stdout="", exit_code=0):
    return ExecutionResult(command="docker", exit_code=exit_code, stdout=stdout, stderr="", duration=0.1)


def response(data, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data
    resp.text = ""
    return resp


class FakeZapApi:
    """Routes ZAP JSON API calls by endpoint prefix."""

    def __init__(self, alerts=None):
        self.calls = []
        self.routes = {
            "core/view/version/": {"version": "2.15.0"},
            "core/action/newSession/": {"Result": "OK"},
            "spider/action/scan/": {"scan": "1"},
            "spider/view/status/": {"status": "100"},
            "pscan/view/recordsToScan/": {"recordsToScan": "0"},
            "ascan/action/setOptionThreadPerHost/": {"Result": "OK"},
            "ascan/action/scan/": {"scan": "2"},
            "ascan/view/status/": {"status": "100"},
            "core/view/alerts/": {"alerts": alerts or []},
            "ajaxSpider/action/scan/": {"Result": "OK"},
            "ajaxSpider/view/status/": {"status": "stopped"},
            "core/view/urls/": {"urls": ["http://example.com/", "http://example.com/app.js", "http://example.com/"]},
        }

    def get(self, url, headers=None, timeout=None):
        endpoint = url.split("/JSON/", 1)[1]
        self.calls.append(endpoint)
        for prefix, data in self.routes.items():
            if endpoint.startswith(prefix):
                return response(data)
        return response({}, status_code=404)


class TestZapHelpers(unittest.TestCase):
    def test_strip_html(self):
        self.assertEqual(strip_html("<p>a &amp; b</p>"), "a & b")
        self.assertEqual(strip_html(None), "")

    def test_parse_alerts(self):
        scanner = ZapScanner(MagicMock(), {}, session=MagicMock())
        findings = scanner.parse_alerts(ALERTS, "http://example.com")
        self.assertEqual(len(findings), 2)

        xss = findings[0]
        self.assertEqual(xss.severity, Severity.CRITICAL)
        self.assertEqual(xss.confidence, Confidence.MEDIUM)
        self.assertEqual(xss.cwe_ids, ["CWE-79"])
        self.assertEqual(xss.owasp_ids, ["https://owasp.org/Top10/A03_2021-Injection/"])
        self.assertEqual(len(xss.references), 2)
        self.assertEqual(xss.description, "Cross-site Scripting (XSS) is an attack technique.")
        self.assertEqual(xss.fix, "Validate all input & encode output.")
        self.assertEqual(xss.metadata["parameter"], "q")

        csp = findings[1]
        self.assertEqual(csp.severity, Severity.HIGH)
        self.assertEqual(csp.file_path, "http://example.com")
        self.assertEqual(csp.cwe_ids, [])
        self.assertIsNone(csp.fix)

    def test_informational_maps_to_info_and_unknown_risk_is_dropped(self):
        scanner = ZapScanner(MagicMock(), {}, session=MagicMock())
        alerts = [
            dict(ALERTS[1], risk="Informational", pluginId="10096"),
            dict(ALERTS[1], risk="False Positive", pluginId="10097"),
        ]
        with self.assertLogs("scanforge.tools.zap", level="WARNING"):
            findings = scanner.parse_alerts(alerts, "http://example.com")
        self.assertEqual([f.rule_id for f in findings], ["10096"])
        self.assertEqual(findings[0].severity, Severity.INFO)


class TestZapContainer(unittest.TestCase):
    def setUp(self):
        self.executor = MagicMock()
        self.scanner = ZapScanner(self.executor, {}, session=MagicMock(), sleep=lambda s: None)

    def test_reuses_running_container(self):
        def fake_execute(command, args, **kwargs):
            if args[0] == "ps":
                return docker("Up 3 minutes")
            if args[0] == "port":
                return docker("0.0.0.0:32768")
            raise AssertionError(f"unexpected docker call {args}")

        self.executor.execute.side_effect = fake_execute
        self.assertEqual(self.scanner.ensure_container(), (32768, False))

    def test_only_internal_docker_literals_are_trusted(self):
        seen = []

        def fake_execute(command, args, **kwargs):
            seen.append((args, kwargs["trusted_args"]))
            if args[0] == "ps":
                return docker("Up 3 minutes")
            return docker("0.0.0.0:32768")

        self.executor.execute.side_effect = fake_execute
        self.scanner.ensure_container()
        ps_args, trusted = seen[0]
        self.assertEqual(set(trusted), {"{{.Status}}", "api.addrs.addr.name=.*", "name=^scanforge-zap$"})
        self.assertIn("name=^scanforge-zap$", ps_args)
        self.assertNotIn(self.scanner.container_name, trusted)

    def test_replaces_exited_container(self):
        calls = []

        def fake_execute(command, args, **kwargs):
            calls.append(args[0])
            if args[0] == "ps" and "-a" in args:
                return docker("Exited (137) 2 hours ago")
            if args[0] == "ps":
                return docker("Up 1 second")
            return docker("container-id")

        self.executor.execute.side_effect = fake_execute
        port, started = self.scanner.ensure_container()
        self.assertTrue(started)
        self.assertTrue(10000 <= port <= 59999)
        self.assertEqual(calls[:3], ["ps", "rm", "run"])

    def test_run_failure_raises(self):
        def fake_execute(command, args, **kwargs):
            if args[0] == "ps":
                return docker("")
            return ExecutionResult(command="docker", exit_code=125, stdout="", stderr="port is already allocated", duration=0.1)

        self.executor.execute.side_effect = fake_execute
        with self.assertRaises(ScannerExecutionError) as ctx:
            self.scanner.ensure_container()
        self.assertIn("port is already allocated", str(ctx.exception))

    def test_availability_requires_docker_daemon(self):
        self.executor.is_command_available.return_value = True
        self.executor.execute.return_value = ExecutionResult(command="docker", exit_code=1, stdout="", stderr="daemon down", duration=0.1)
        self.assertFalse(self.scanner.is_available())
        self.executor.execute.return_value = docker("")
        self.assertTrue(self.scanner.is_available())


class TestZapApi(unittest.TestCase):
    def test_api_errors(self):
        session = MagicMock()
        scanner = ZapScanner(MagicMock(), {"zap": {"api_key": "k"}}, session=session)

        session.get.return_value = response({}, status_code=500)
        with self.assertRaises(ScannerExecutionError):
            scanner.api("core/view/version/")

        session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ScannerExecutionError):
            scanner.api("core/view/version/")

        session.get.side_effect = None
        session.get.return_value = response({"version": "2.15.0"})
        self.assertEqual(scanner.api("core/view/version/?x=1"), {"version": "2.15.0"})
        self.assertTrue(session.get.call_args.args[0].endswith("?x=1&apikey=k"))


class TestZapScan(unittest.TestCase):
    def setUp(self):
        self.executor = MagicMock()

        def fake_execute(command, args, **kwargs):
            if args[0] == "ps":
                return docker("Up 10 minutes")
            if args[0] == "port":
                return docker("0.0.0.0:40000")
            return docker("")

        self.executor.execute.side_effect = fake_execute
        self.api = FakeZapApi(alerts=ALERTS)
        self.scanner = ZapScanner(self.executor, {}, session=self.api, sleep=lambda s: None)

    def test_full_scan(self):
        observer = MagicMock(spec=ScanObserver)
        context = ScanContext("s", "/tmp", config={"target_urls": ["http://example.com"], "rate_limit_preset": "low"}, observer=observer)
        output = self.scanner.scan(context)
        self.assertEqual(len(output.findings), 2)
        self.assertEqual(output.extra["alerts"], 3)
        self.assertFalse(output.extra["passive_only"])
        self.assertIn("ascan/action/setOptionThreadPerHost/?Integer=2", self.api.calls)
        self.assertEqual(observer.on_finding.call_count, 2)
        self.assertEqual(self.scanner.parse_output(output), output.findings)

    def test_passive_only_skips_active_scan(self):
        context = ScanContext("s", "/tmp", config={"target_urls": ["http://example.com"], "passive_only": True})
        output = self.scanner.scan(context)
        self.assertTrue(output.extra["passive_only"])
        self.assertFalse(any(call.startswith("ascan/") for call in self.api.calls))

    def test_cancel_between_polls(self):
        cancel = threading.Event()
        cancel.set()
        context = ScanContext("s", "/tmp", config={"target_urls": ["http://example.com"]}, cancel_event=cancel)
        with self.assertRaises(CancellationRequested):
            self.scanner.scan(context)

    def test_spider_only(self):
        context = ScanContext("s", "/tmp", config={"target_urls": ["http://example.com"]})
        output = self.scanner.spider_only(context, max_duration=5)
        self.assertEqual(output.discovered_urls, ["http://example.com/", "http://example.com/app.js"])


if __name__ == '__main__':
    unittest.main()
