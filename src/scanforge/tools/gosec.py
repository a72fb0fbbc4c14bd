import os
from typing import List

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.sarif import parse_sarif
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)


class GosecScanner(ScannerAdapter):
    """
    Wrapper for gosec (Go SAST). Runs from the repository root over ./...
    """

    name = "gosec"
    label = "Go Security"
    category = ScannerCategory.SAST
    supported_languages = ("go",)
    findings_exit_codes = frozenset({1})
    version_arg = "-version"

    def build_args(self, context: ScanContext, output_file: str) -> List[str]:
        args = ["-fmt=sarif", f"-out={output_file}", "-quiet"]
        if context.exclude_paths:
            args.append(f"-exclude-dir={','.join(context.exclude_paths)}")
        args.append("./...")
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        output_file = os.path.join(context.work_dir, "gosec-results.sarif")
        logger.info(f"Starting gosec on {context.work_dir}")
        output = self.run(self.build_args(context, output_file), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return parse_sarif(self.report_text(output), self.name)
