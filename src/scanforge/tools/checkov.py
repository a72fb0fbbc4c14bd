import os
from typing import List

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.sarif import parse_sarif
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

# context.config flag -> checkov framework name
IAC_FRAMEWORKS = (
    ("has_terraform", "terraform"),
    ("has_dockerfile", "dockerfile"),
    ("has_kubernetes", "kubernetes"),
    ("has_cloudformation", "cloudformation"),
)


class CheckovScanner(ScannerAdapter):
    """
    Wrapper for Checkov (infrastructure-as-code misconfiguration scanning).
    """

    name = "checkov"
    label = "IaC Security"
    category = ScannerCategory.IAC
    supported_languages = ("terraform", "dockerfile", "kubernetes", "cloudformation")
    env = {"LOG_LEVEL": "WARNING"}

    @staticmethod
    def frameworks_for(context: ScanContext) -> List[str]:
        return [framework for flag, framework in IAC_FRAMEWORKS if context.config.get(flag)]

    def build_args(self, context: ScanContext) -> List[str]:
        args = [
            "-d",
            context.work_dir,
            "--output",
            "sarif",
            "--output-file-path",
            context.work_dir,
            "--soft-fail",
            "--compact",
            "--quiet",
        ]
        frameworks = self.frameworks_for(context)
        if frameworks:
            args.extend(["--framework", ",".join(frameworks)])
        for exclude in context.exclude_paths:
            args.extend(["--skip-path", exclude])
        return args

    def scan(self, context: ScanContext) -> ScanOutput:
        # checkov names the file itself inside --output-file-path
        output_file = os.path.join(context.work_dir, "results_sarif.sarif")
        logger.info(f"Starting checkov on {context.work_dir}")
        output = self.run(self.build_args(context), context)
        output.output_file = output_file
        output.extra["report"] = self.read_report(output_file)
        return output

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return parse_sarif(self.report_text(output), self.name)
