import json
import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.models import Confidence, ScanContext, ScanOutput, Severity
from scanforge.tools.bandit import BanditScanner

REPORT = {
    "results": [
        {
            "test_id": "B602",
            "test_name": "subprocess_popen_with_shell_equals_true",
            "issue_severity": "HIGH",
            "issue_confidence": "MEDIUM",
            "issue_text": "subprocess call with shell=True identified",
            "filename": "app/run.py",
            "line_number": 14,
            "line_range": [14, 15],
            "col_offset": 4,
            "code": "subprocess.Popen(cmd, shell=True)",
            "issue_cwe": {"id": 78, "link": "https://cwe.mitre.org/data/definitions/78.html"},
            "more_info": "https://bandit.readthedocs.io/en/latest/plugins/b602.html",
        },
        {
            "test_id": "B105",
            "issue_severity": "LOW",
            "issue_confidence": "UNKNOWN",
            "filename": "app/settings.py",
            "line_number": 3,
        },
        {"issue_severity": "HIGH"},
    ]
}


class TestBanditScanner(unittest.TestCase):
    def setUp(self):
        self.scanner = BanditScanner(MagicMock(), {})

    def test_build_args(self):
        args = self.scanner.build_args(ScanContext("s", "/work", exclude_paths=["tests"]), "/work/out.json")
        self.assertEqual(args[:2], ["-r", "/work"])
        self.assertIn("-ll", args)
        self.assertEqual(args[args.index("-o") + 1], "/work/out.json")
        self.assertEqual(args[args.index("--exclude") + 1], "tests")

    def test_parse_output(self):
        findings = self.scanner.parse_output(ScanOutput(scanner="bandit", extra={"report": json.dumps(REPORT)}))
        self.assertEqual(len(findings), 2)

        shell = findings[0]
        self.assertEqual(shell.rule_id, "B602")
        self.assertEqual(shell.severity, Severity.HIGH)
        self.assertEqual(shell.confidence, Confidence.MEDIUM)
        self.assertEqual(shell.start_line, 14)
        self.assertEqual(shell.end_line, 15)
        self.assertEqual(shell.cwe_ids, ["CWE-78"])
        self.assertEqual(shell.references, ["https://bandit.readthedocs.io/en/latest/plugins/b602.html"])

        password = findings[1]
        self.assertEqual(password.title, "B105")
        self.assertEqual(password.severity, Severity.LOW)
        self.assertEqual(password.confidence, Confidence.LOW)
        self.assertIsNone(password.end_line)

    def test_unrecognised_severity_is_dropped(self):
        report = {"results": [dict(REPORT["results"][0], issue_severity="UNDEFINED"), REPORT["results"][1]]}
        with self.assertLogs("scanforge.tools.bandit", level="WARNING"):
            findings = self.scanner.parse_output(ScanOutput(scanner="bandit", extra={"report": json.dumps(report)}))
        self.assertEqual([f.rule_id for f in findings], ["B105"])

    def test_invalid_json(self):
        self.assertEqual(self.scanner.parse_output(ScanOutput(scanner="bandit", stdout="not json")), [])


if __name__ == '__main__':
    unittest.main()
