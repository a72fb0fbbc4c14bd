import json
import unittest
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.models import Confidence, Severity
from scanforge.sarif import DEFAULT_FIX_TEXT, map_severity, normalize_uri, parse_sarif

SAMPLE_SARIF = {
    "version": "2.1.0",
    "runs": [
        {
            "tool": {
                "driver": {
                    "name": "semgrep",
                    "rules": [
                        {
                            "id": "python.lang.security.audit.eval-detected",
                            "shortDescription": {"text": "Detected use of eval"},
                            "helpUri": "https://semgrep.dev/r/eval-detected",
                            "properties": {
                                "precision": "high",
                                "security-severity": "7.5",
                                "tags": ["CWE-95", "A03:2021 - Injection", "security"],
                            },
                        },
                        {
                            "id": "generic.note",
                            "defaultConfiguration": {"level": "note"},
                        },
                    ],
                }
            },
            "results": [
                {
                    "ruleId": "python.lang.security.audit.eval-detected",
                    "level": "error",
                    "message": {"text": "eval() on user input"},
                    "locations": [
                        {
                            "physicalLocation": {
                                "artifactLocation": {"uri": "src/app.py"},
                                "region": {"startLine": 12, "endLine": 12, "startColumn": 5, "snippet": {"text": "eval(x)"}},
                            }
                        }
                    ],
                    "fixes": [{"description": {"text": "Use ast.literal_eval"}}],
                },
                {
                    "ruleId": "generic.note",
                    "message": {"text": "note"},
                    "locations": [{"physicalLocation": {"artifactLocation": {"uri": "lib\\util.py"}}}],
                    "fixes": [{}],
                },
                {"ruleId": "no-location", "message": {"text": "dropped"}},
                {"ruleId": "broken", "locations": [{"physicalLocation": {"artifactLocation": {"uri": "x.py"}, "region": {"startLine": "abc"}}}]},
            ],
        }
    ],
}


class TestParseSarif(unittest.TestCase):
    def test_parse_results(self):
        findings = parse_sarif(json.dumps(SAMPLE_SARIF), "semgrep")
        self.assertEqual(len(findings), 2)

        first = findings[0]
        self.assertEqual(first.scanner, "semgrep")
        self.assertEqual(first.file_path, "src/app.py")
        self.assertEqual(first.start_line, 12)
        self.assertEqual(first.severity, Severity.HIGH)
        self.assertEqual(first.confidence, Confidence.HIGH)
        self.assertEqual(first.title, "Detected use of eval")
        self.assertEqual(first.cwe_ids, ["CWE-95"])
        self.assertEqual(first.owasp_ids, ["A03:2021 - Injection"])
        self.assertEqual(first.fix, "Use ast.literal_eval")
        self.assertEqual(first.references, ["https://semgrep.dev/r/eval-detected"])
        self.assertEqual(first.snippet, "eval(x)")

        second = findings[1]
        self.assertEqual(second.file_path, "lib/util.py")
        self.assertEqual(second.start_line, 1)
        self.assertEqual(second.severity, Severity.LOW)
        self.assertEqual(second.fix, DEFAULT_FIX_TEXT)

    def test_malformed_documents(self):
        self.assertEqual(parse_sarif("", "semgrep"), [])
        self.assertEqual(parse_sarif("{not json", "semgrep"), [])
        self.assertEqual(parse_sarif("[]", "semgrep"), [])
        self.assertEqual(parse_sarif(json.dumps({"runs": [{}]}), "semgrep"), [])

    def test_severity_score_bands(self):
        def rule(score):
            return {"properties": {"security-severity": score}}

        self.assertEqual(map_severity(None, rule("9.8")), Severity.CRITICAL)
        self.assertEqual(map_severity("note", rule("7.0")), Severity.HIGH)
        self.assertEqual(map_severity(None, rule("4.0")), Severity.MEDIUM)
        self.assertEqual(map_severity(None, rule("0.1")), Severity.LOW)
        self.assertEqual(map_severity(None, rule("0")), Severity.INFO)
        self.assertEqual(map_severity("warning", rule("n/a")), Severity.MEDIUM)
        self.assertEqual(map_severity(None, None), Severity.INFO)

    def test_normalize_uri(self):
        self.assertEqual(normalize_uri("file:///a/b.py"), "/a/b.py")
        self.assertEqual(normalize_uri("a\\b.py"), "a/b.py")


if __name__ == '__main__':
    unittest.main()
