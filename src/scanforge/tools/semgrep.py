import os
from typing import List

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.sarif import parse_sarif
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

SEMGREP_RULESETS = ("auto", "p/security-audit", "p/owasp-top-ten")


class SemgrepScanner(ScannerAdapter):
    """
    Wrapper for Semgrep (multi-language SAST). Emits SARIF.
    """

    name = "semgrep"
    label = "SAST Analysis"
    category = ScannerCategory.SAST
    supported_languages = (
        "javascript",
        "typescript",
        "python",
        "go",
        "java",
        "ruby",
        "php",
        "csharp",
        "rust",
        "kotlin",
        "swift",
        "c",
        "cpp",
    )
    # 1 = findings present
    findings_exit_codes = frozenset({1})
    env = {"SEMGREP_SEND_METRICS": "off"}

    def build_args(self, context: ScanContext, output_file: str) -> List[str]:
        args = ["scan"]
        for ruleset in SEMGREP_RULESETS:
            args.extend(["--config", ruleset])
        args.extend(["--sarif", "--output", output_file])

        timeout = self.timeout_for(context)
        if timeout:
            # per-file rule timeout, not the process timeout
            args.extend(["--timeout", str(max(1, int(timeout)))])
        args.extend(["--max-memory", "4096", "--jobs", "4", "--quiet", "--no-git-ignore"])
        for exclude in context.exclude_paths:
            args.extend(["--exclude", exclude])
        args.append(context.work_dir)
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        output_file = os.path.join(context.work_dir, "semgrep-results.sarif")
        logger.info(f"Starting semgrep on {context.work_dir}")
        output = self.run(self.build_args(context, output_file), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return parse_sarif(self.report_text(output), self.name)
