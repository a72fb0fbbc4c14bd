import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.errors import InvalidTransition
from scanforge.models import NormalizedFinding, ScannerCategory, ScannerInvocation, ScanStatus
from scanforge.sinks import InMemoryResultSink


def finding(path, line=1, rule="python.lang.security.audit.eval-detected", severity="high"):
    return NormalizedFinding(scanner="semgrep", rule_id=rule, severity=severity, title="eval", file_path=path, start_line=line)


class TestInMemoryResultSink(unittest.TestCase):
    def setUp(self):
        self.sink = InMemoryResultSink()

    def test_status_updates_until_terminal(self):
        self.sink.update_scan_status("s", ScanStatus.CLONING)
        self.sink.update_scan_status("s", ScanStatus.SCANNING, languages=["python"])
        self.sink.complete_scan("s", {"total": 0})
        self.assertEqual(self.sink.status_of("s"), ScanStatus.COMPLETED)
        self.assertEqual(self.sink.scans["s"]["languages"], ["python"])
        with self.assertRaises(InvalidTransition):
            self.sink.fail_scan("s", "late failure")
        self.assertIsNone(self.sink.status_of("missing"))

    def test_retried_attempt_can_move_status_backwards(self):
        self.sink.update_scan_status("s", ScanStatus.SCANNING)
        self.sink.update_scan_status("s", ScanStatus.CLONING)
        self.assertEqual(self.sink.status_of("s"), ScanStatus.CLONING)

    def test_store_findings_relativizes_and_skips_duplicates(self):
        findings = [finding("/work/scan-1/app.py"), finding("/work/scan-1/app.py"), finding("/work/scan-1/lib.py", severity="low")]
        self.assertEqual(self.sink.store_findings("s", findings, "/work/scan-1"), 2)
        self.assertEqual(self.sink.store_findings("s", findings[:1], "/work/scan-1"), 0)
        stored = self.sink.findings["s"]
        self.assertEqual([f.file_path for f in stored], ["app.py", "lib.py"])
        self.assertEqual(stored[0].rule_id, "eval-detected")
        self.assertEqual(stored[0].metadata["full_rule_id"], "python.lang.security.audit.eval-detected")
        self.assertEqual(self.sink.count_by_severity("s"), {"critical": 0, "high": 1, "medium": 0, "low": 1, "info": 0})

    def test_invocations(self):
        invocation = ScannerInvocation("semgrep", ScannerCategory.SAST)
        invocation_id = self.sink.create_invocation("s", invocation)
        self.assertTrue(invocation_id)
        self.assertEqual(self.sink.invocations["s"], [invocation])
        self.sink.finish_invocation("s", invocation)

    def test_last_scan(self):
        self.sink.update_last_scan("target-1", "s1", ScanStatus.COMPLETED, risk_score=42)
        self.sink.update_last_scan("repo-1", "s2", "failed")
        self.assertEqual(self.sink.last_scans["target-1"]["risk_score"], 42)
        self.assertEqual(self.sink.last_scans["repo-1"]["status"], "failed")
        self.assertEqual(self.sink.last_scan_updates, ["s1", "s2"])


if __name__ == '__main__':
    unittest.main()
