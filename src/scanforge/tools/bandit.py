import json
import os
from typing import Any, Dict, List, Optional

from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

_LEVELS = {"HIGH": "high", "MEDIUM": "medium", "LOW": "low"}


class BanditScanner(ScannerAdapter):
    """
    Wrapper for Bandit (Python SAST). Emits its own JSON report.
    """

    name = "bandit"
    label = "Python Security"
    category = ScannerCategory.SAST
    supported_languages = ("python",)
    findings_exit_codes = frozenset({1})

    def build_args(self, context: ScanContext, output_file: str) -> List[str]:
        # -ll: medium severity and above
        args = ["-r", context.work_dir, "-f", "json", "-o", output_file, "-ll"]
        for exclude in context.exclude_paths:
            args.extend(["--exclude", exclude])
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        output_file = os.path.join(context.work_dir, "bandit-results.json")
        logger.info(f"Starting bandit on {context.work_dir}")
        output = self.run(self.build_args(context, output_file), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        content = self.report_text(output)
        if not content.strip():
            return []
        try:
            report = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse Bandit output: {e}")
            return []

        findings: List[NormalizedFinding] = []
        for result in (report or {}).get("results") or []:
            try:
                finding = self._convert(result)
            except (TypeError, ValueError, KeyError) as e:
                logger.debug(f"Skipping malformed bandit result: {e}")
                continue
            if finding is not None:
                findings.append(finding)
        return findings

    def _convert(self, result: Dict[str, Any]) -> Optional[NormalizedFinding]:
        severity = _LEVELS.get(str(result.get("issue_severity", "")).upper())
        if severity is None:
            logger.warning(f"Dropping bandit result {result.get('test_id')}: unrecognised severity {result.get('issue_severity')!r}")
            return None
        line_range = result.get("line_range") or []
        end_line: Optional[int] = line_range[-1] if len(line_range) > 1 else None
        cwe = result.get("issue_cwe") or {}
        more_info = result.get("more_info")
        return NormalizedFinding(
            scanner=self.name,
            rule_id=str(result["test_id"]),
            severity=Severity(severity),
            confidence=Confidence(_LEVELS.get(str(result.get("issue_confidence", "")).upper(), "low")),
            title=result.get("test_name") or result["test_id"],
            description=result.get("issue_text") or "",
            file_path=result.get("filename") or "",
            start_line=int(result.get("line_number") or 0),
            end_line=end_line,
            start_column=result.get("col_offset"),
            end_column=result.get("end_col_offset"),
            snippet=result.get("code"),
            cwe_ids=[f"CWE-{cwe['id']}"] if cwe.get("id") else [],
            references=[more_info] if more_info else [],
            metadata={"test_id": result.get("test_id"), "test_name": result.get("test_name")},
        )
