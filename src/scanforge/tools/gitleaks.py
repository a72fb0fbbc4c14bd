import json
import os
from typing import Any, Dict, List

from scanforge.logger import setup_logger
from scanforge.models import Confidence, NormalizedFinding, ScanContext, ScannerCategory, ScanOutput, Severity
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)


class GitleaksScanner(ScannerAdapter):
    """
    Wrapper for gitleaks (secret detection).

    Secret values never leave this module: the report is produced with --redact and
    the Secret/Match fields are not copied into findings.
    """

    name = "gitleaks"
    label = "Secret Detection"
    category = ScannerCategory.SECRETS
    # 1 = leaks found
    findings_exit_codes = frozenset({1})
    version_arg = "version"

    def build_args(self, context: ScanContext, output_file: str) -> List[str]:
        return [
            "detect",
            "--source",
            context.work_dir,
            "--no-git",
            "--redact",
            "--no-banner",
            "--report-format",
            "json",
            "--report-path",
            output_file,
        ]

    def scan(self, context: ScanContext) -> ScanOutput:
        output_file = os.path.join(context.work_dir, "gitleaks-results.json")
        logger.info(f"Starting gitleaks on {context.work_dir}")
        output = self.run(self.build_args(context, output_file), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        output.extra["exclude_paths"] = list(context.exclude_paths)
        output.extra["work_dir"] = context.work_dir
        return output

    @staticmethod
    def _excluded(path: str, excludes: List[str]) -> bool:
        parts = path.replace("\\", "/").split("/")
        return any(ex.strip("/") in parts or path.startswith(ex) for ex in excludes if ex)

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        content = self.report_text(output)
        if not content.strip():
            return []
        try:
            leaks = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse gitleaks report: {e}")
            return []
        if not isinstance(leaks, list):
            return []

        excludes = output.extra.get("exclude_paths") or []
        work_dir = str(output.extra.get("work_dir") or "").replace("\\", "/").rstrip("/")
        findings: List[NormalizedFinding] = []
        for leak in leaks:
            if not isinstance(leak, dict):
                continue
            file_path = str(leak.get("File") or "")
            relative = file_path.replace("\\", "/")
            if work_dir and relative.startswith(work_dir + "/"):
                relative = relative[len(work_dir) + 1:]
            if self._excluded(relative, excludes):
                continue
            findings.append(self._convert(leak, file_path))
        return findings

    def _convert(self, leak: Dict[str, Any], file_path: str) -> NormalizedFinding:
        rule_id = str(leak.get("RuleID") or "generic-secret")
        description = leak.get("Description") or rule_id
        return NormalizedFinding(
            scanner=self.name,
            rule_id=rule_id,
            severity=Severity.HIGH,
            confidence=Confidence.HIGH,
            title=f"Secret detected: {description}",
            description=f"A potential secret ({description}) was committed to the repository. "
            "Rotate the credential and remove it from source control.",
            file_path=file_path,
            start_line=int(leak.get("StartLine") or 0),
            end_line=leak.get("EndLine"),
            start_column=leak.get("StartColumn"),
            end_column=leak.get("EndColumn"),
            cwe_ids=["CWE-798"],
            owasp_ids=["A07:2021"],
            metadata={
                "entropy": leak.get("Entropy"),
                "commit": leak.get("Commit") or None,
                "tags": leak.get("Tags") or [],
            },
        )
