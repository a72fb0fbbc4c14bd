import os
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.models import ScanContext, ScanOutput, ScannerCategory, Severity
from scanforge.sandbox import ExecutionResult
from scanforge.tools.nikto import NiktoScanner, base_url

NIKTO_XML = """<?xml version="1.0" ?>
<niktoscan>
  <scandetails targetip="10.0.0.5" targethostname="example.com" targetport="80" targetbanner="nginx">
    <item id="999986" osvdbid="0" method="GET">
      <description>The X-Content-Type-Options header is not set.</description>
      <uri>/</uri>
      <namelink>http://example.com:80/</namelink>
    </item>
    <item id="000726" osvdbid="3092" method="GET">
      <description>/admin/: This might be interesting.</description>
      <uri>/admin/</uri>
    </item>
  </scandetails>
</niktoscan>
"""


class TestNiktoScanner(unittest.TestCase):
    def setUp(self):
        self.executor = MagicMock()
        self.scanner = NiktoScanner(self.executor, {})

    def test_base_url(self):
        self.assertEqual(base_url("https://example.com:8443/app?x=1"), "https://example.com:8443")
        self.assertEqual(base_url("not a url"), "not a url")

    def test_build_args(self):
        context = ScanContext("s", "/tmp", config={"rate_limit_preset": "low"})
        args = self.scanner.build_args("http://example.com", "/tmp/out.xml", context)
        self.assertEqual(args[:2], ["-h", "http://example.com"])
        self.assertEqual(args[args.index("-Format") + 1], "xml")
        self.assertEqual(args[args.index("-timeout") + 1], "10")
        self.assertEqual(args[args.index("-Pause") + 1], "0.02")
        self.assertEqual(self.scanner.category, ScannerCategory.PENTEST)

    def test_scan_reads_xml_report(self):
        with tempfile.TemporaryDirectory() as work_dir:
            def fake_execute(command, args, **kwargs):
                with open(os.path.join(work_dir, "nikto-results.xml"), "w") as f:
                    f.write(NIKTO_XML)
                return ExecutionResult(command="nikto", exit_code=1, stdout="", stderr="", duration=30.0)

            self.executor.execute.side_effect = fake_execute
            output = self.scanner.scan(ScanContext("s", work_dir, config={"target_urls": ["http://example.com/app/?q=1"]}))

        self.assertEqual(output.extra["target"], "http://example.com")
        findings = self.scanner.parse_output(output)
        self.assertEqual(len(findings), 2)

        header = findings[0]
        self.assertEqual(header.rule_id, "nikto-999986")
        self.assertEqual(header.severity, Severity.LOW)
        self.assertEqual(header.file_path, "http://example.com:80/")
        self.assertEqual(header.references, [])

        admin = findings[1]
        self.assertEqual(admin.severity, Severity.MEDIUM)
        self.assertEqual(admin.file_path, "http://example.com/admin/")
        self.assertEqual(admin.references, ["https://vulners.com/osvdb/OSVDB:3092"])

    def test_banner_before_document_and_bad_xml(self):
        noisy = "- Nikto v2.5.0\n" + NIKTO_XML.replace('<?xml version="1.0" ?>\n', "")
        output = ScanOutput(scanner="nikto", extra={"report": noisy, "target": "http://example.com"})
        self.assertEqual(len(self.scanner.parse_output(output)), 2)
        self.assertEqual(self.scanner.parse_output(ScanOutput(scanner="nikto", extra={"report": "<niktoscan><oops"})), [])


if __name__ == '__main__':
    unittest.main()
