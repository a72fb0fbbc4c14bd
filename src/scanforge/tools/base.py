import os
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from scanforge.errors import (
    CancellationRequested,
    ScannerExecutionError,
    ScannerTimeout,
    ScannerUnavailable,
)
from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.sandbox import ExecutionResult, SandboxExecutor
from scanforge.tool_settings import get_tool_path, get_tool_timeout_seconds, resolve_timeout_seconds

logger = setup_logger(__name__)


class ScannerAdapter:
    """
    Common surface of every integrated tool.

    Subclasses declare their identity as class attributes and implement
    `scan(context) -> ScanOutput` and `parse_output(output) -> [NormalizedFinding]`.
    `scan` raises only for genuine execution faults: ScannerUnavailable, ScannerTimeout,
    ScannerExecutionError (exit code outside {0} | findings_exit_codes) or
    CancellationRequested. "Issues found" exit codes are not failures.
    """

    name: str = ""
    label: str = ""
    category: ScannerCategory = ScannerCategory.SAST
    # Empty means language-agnostic.
    supported_languages: Tuple[str, ...] = ()
    findings_exit_codes: FrozenSet[int] = frozenset()
    version_arg: str = "--version"
    default_timeout: Optional[float] = 300.0
    env: Dict[str, str] = {}

    def __init__(self, executor: Optional[SandboxExecutor] = None, config: Optional[Dict[str, Any]] = None):
        self.executor = executor if executor else SandboxExecutor()
        self.config = config or {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    @property
    def binary(self) -> str:
        return get_tool_path(self.config, self.name)

    def supports(self, languages: Iterable[str]) -> bool:
        if not self.supported_languages:
            return True
        return any(lang in self.supported_languages for lang in languages)

    def is_available(self) -> bool:
        return self.executor.is_command_available(self.binary)

    def get_version(self) -> str:
        return self.executor.get_version(self.binary, self.version_arg)

    def timeout_for(self, context: ScanContext) -> Optional[float]:
        if context.timeout is not None:
            return resolve_timeout_seconds(context.timeout, default=self.default_timeout)
        return resolve_timeout_seconds(get_tool_timeout_seconds(self.config, self.name), default=self.default_timeout)

    def scan(self, context: ScanContext) -> ScanOutput:
        raise NotImplementedError

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        raise NotImplementedError

    # -- helpers for subclasses ------------------------------------------

    def accepts_exit_code(self, exit_code: int) -> bool:
        return exit_code == 0 or exit_code in self.findings_exit_codes

    def run(
        self,
        args: List[str],
        context: ScanContext,
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Any = "default",
        on_line=None,
        command: Optional[str] = None,
    ) -> ScanOutput:
        """
        Runs the tool through the sandbox and converts the ExecutionResult into a ScanOutput,
        raising the matching ScannerError on faults.
        """
        if timeout == "default":
            timeout = self.timeout_for(context)

        observer = context.observer

        def forward(line: str, stream: str) -> None:
            observer.on_log(line, stream)
            if on_line is not None:
                on_line(line, stream)

        merged_env = dict(self.env)
        if env:
            merged_env.update(env)

        result: ExecutionResult = self.executor.execute(
            command or self.binary,
            args,
            cwd=cwd if cwd is not None else context.work_dir,
            timeout=timeout,
            env=merged_env or None,
            job_id=context.scan_id,
            on_output=forward,
            cancel_event=context.cancel_event,
        )
        return self.check_result(result, context)

    def check_result(self, result: ExecutionResult, context: ScanContext) -> ScanOutput:
        if result.canceled:
            raise CancellationRequested(context.scan_id)
        if result.timed_out:
            raise ScannerTimeout(self.name, result.error_message or "Scanner timed out")
        if result.exit_code == 127 and (result.error_message or "").startswith("Executable not found"):
            raise ScannerUnavailable(self.name)
        if not self.accepts_exit_code(result.exit_code):
            detail = (result.stderr or result.stdout or "").strip()
            if not detail:
                detail = f"Command failed (RC={result.exit_code}): {result.command}"
            raise ScannerExecutionError(self.name, detail[:500], exit_code=result.exit_code)
        return ScanOutput(
            scanner=self.name,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
            command=result.command,
        )

    @staticmethod
    def read_report(path: Optional[str]) -> str:
        """Report files are optional; a tool that found nothing may not write one."""
        if not path or not os.path.exists(path):
            return ""
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Could not read report {path}: {e}")
            return ""

    @staticmethod
    def report_text(output: ScanOutput) -> str:
        report = output.extra.get("report")
        if report is not None:
            return str(report)
        return output.stdout or ""
