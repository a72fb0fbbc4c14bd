import os
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.models import ScanContext, ScanOutput, Severity
from scanforge.sandbox import ExecutionResult
from scanforge.tools.sqlmap import SqlmapScanner, injectable_urls

SQLMAP_OUTPUT = """
[12:00:01] [INFO] testing URL 'http://example.com/item?id=1'
[12:00:05] [INFO] GET parameter 'id' appears to be 'AND boolean-based blind - WHERE or HAVING clause' injectable
[12:00:09] [INFO] GET parameter 'id' is 'MySQL >= 5.0.12 AND time-based blind (query SLEEP)' injectable
[12:00:09] [INFO] GET parameter 'id' appears to be 'AND boolean-based blind - WHERE or HAVING clause' injectable
[12:00:12] [INFO] testing URL 'http://example.com/search?q=a'
[12:00:14] [WARNING] GET parameter 'q' does not seem to be injectable
"""


class TestSqlmapScanner(unittest.TestCase):
    def setUp(self):
        self.executor = MagicMock()
        self.scanner = SqlmapScanner(self.executor, {})

    def test_injectable_urls_dedup_by_parameter_names(self):
        urls = [
            "http://example.com/",
            "http://example.com/item?id=1",
            "http://example.com/item?id=2",
            "http://example.com/item?id=2&sort=asc",
        ]
        self.assertEqual(injectable_urls(urls), ["http://example.com/item?id=1", "http://example.com/item?id=2&sort=asc"])

    def test_build_args(self):
        context = ScanContext("s", "/work", config={"rate_limit_preset": "high"})
        bulk = self.scanner.build_args(context, ["http://example.com/"], "/work/t.txt")
        self.assertEqual(bulk[:2], ["-m", "/work/t.txt"])
        self.assertIn("--batch", bulk)
        self.assertIn("--output-dir=/work/sqlmap", bulk)
        self.assertEqual(bulk[bulk.index("--threads") + 1], "10")

        crawl = self.scanner.build_args(context, ["http://example.com/"], None)
        self.assertEqual(crawl[:4], ["-u", "http://example.com/", "--crawl=2", "--forms"])

    def test_scan_writes_bulk_file(self):
        self.executor.execute.return_value = ExecutionResult(command="sqlmap", exit_code=0, stdout=SQLMAP_OUTPUT, stderr="", duration=12.0)
        with tempfile.TemporaryDirectory() as work_dir:
            context = ScanContext(
                "s",
                work_dir,
                config={"target_urls": ["http://example.com"], "discovered_urls": ["http://example.com/item?id=1"]},
            )
            output = self.scanner.scan(context)
            with open(os.path.join(work_dir, "sqlmap-targets.txt")) as f:
                self.assertEqual(f.read(), "http://example.com/item?id=1\n")
        args = self.executor.execute.call_args.args[1]
        self.assertEqual(args[0], "-m")
        self.assertEqual(output.extra["target"], "http://example.com")

    def test_parse_output(self):
        findings = self.scanner.parse_output(ScanOutput(scanner="sqlmap", stdout=SQLMAP_OUTPUT, extra={"target": "http://example.com"}))
        self.assertEqual(len(findings), 2)
        for finding in findings:
            self.assertEqual(finding.severity, Severity.CRITICAL)
            self.assertEqual(finding.file_path, "http://example.com/item?id=1")
            self.assertEqual(finding.cwe_ids, ["CWE-89"])
            self.assertEqual(finding.metadata["parameter"], "id")
        self.assertTrue(findings[0].rule_id.startswith("sqli-and-boolean-based-blind"))
        self.assertEqual(findings[0].title, "SQL injection in GET parameter 'id'")

    def test_nothing_injectable(self):
        self.assertEqual(self.scanner.parse_output(ScanOutput(scanner="sqlmap", stdout="[INFO] all tested parameters do not appear to be injectable")), [])


if __name__ == '__main__':
    unittest.main()
