import os
from typing import List

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.sarif import parse_sarif
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)


class TrivyScanner(ScannerAdapter):
    """
    Wrapper for Trivy filesystem dependency scanning (SCA).

    Trivy reads lockfiles and manifests of any ecosystem, so it is language-agnostic.
    """

    name = "trivy"
    label = "Dependency Scan"
    category = ScannerCategory.SCA
    env = {"TRIVY_NO_PROGRESS": "true"}

    def build_args(self, context: ScanContext, output_file: str) -> List[str]:
        args = [
            "fs",
            "--format",
            "sarif",
            "--output",
            output_file,
            "--scanners",
            "vuln",
            "--skip-dirs",
            ".git",
        ]
        for exclude in context.exclude_paths:
            args.extend(["--skip-dirs", exclude])
        args.append(context.work_dir)
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        output_file = os.path.join(context.work_dir, "trivy-results.sarif")
        logger.info(f"Starting trivy fs on {context.work_dir}")
        output = self.run(self.build_args(context, output_file), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return parse_sarif(self.report_text(output), self.name)
