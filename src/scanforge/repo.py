import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from scanforge.errors import SourceFetchError
from scanforge.logger import setup_logger
from scanforge.models import RepositoryScanJob
from scanforge.sandbox import SandboxExecutor

logger = setup_logger(__name__)

LANGUAGE_MAP = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".rs": "rust",
    ".swift": "swift",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".sql": "sql",
    ".sh": "bash",
}

_TOKEN_RE = re.compile(r"x-access-token:[^@\s]+@")
_AUTH_FAILURES = ("authentication failed", "could not read username", "permission denied", "repository not found")


@dataclass
class LanguageStats:
    primary: str = "unknown"
    languages: Dict[str, int] = field(default_factory=dict)
    has_terraform: bool = False
    has_dockerfile: bool = False
    has_kubernetes: bool = False
    has_cloudformation: bool = False

    @property
    def has_iac(self) -> bool:
        return self.has_terraform or self.has_dockerfile or self.has_kubernetes or self.has_cloudformation

    def iac_flags(self) -> Dict[str, bool]:
        return {
            "has_terraform": self.has_terraform,
            "has_dockerfile": self.has_dockerfile,
            "has_kubernetes": self.has_kubernetes,
            "has_cloudformation": self.has_cloudformation,
        }


def detect_languages(work_dir: str) -> LanguageStats:
    """Counts source files per language and flags infrastructure-as-code content."""
    stats = LanguageStats()
    for root, dirs, files in os.walk(work_dir):
        dirs[:] = [d for d in dirs if d != ".git"]
        rel_root = os.path.relpath(root, work_dir).replace("\\", "/")
        for name in files:
            lower = name.lower()
            ext = os.path.splitext(lower)[1]
            rel = lower if rel_root == "." else f"{rel_root.lower()}/{lower}"

            language = LANGUAGE_MAP.get(ext)
            if language:
                stats.languages[language] = stats.languages.get(language, 0) + 1

            if ext == ".tf":
                stats.has_terraform = True
            if lower == "dockerfile" or lower.startswith("dockerfile."):
                stats.has_dockerfile = True
            if ext in (".yaml", ".yml"):
                if "k8s" in rel or "kubernetes" in rel or "deploy" in rel:
                    stats.has_kubernetes = True
                if "cloudformation" in rel or "cfn" in rel:
                    stats.has_cloudformation = True

    if stats.languages:
        stats.primary = max(stats.languages.items(), key=lambda kv: kv[1])[0]
    return stats


def redact(text: str) -> str:
    return _TOKEN_RE.sub("x-access-token:***@", text or "")


def authenticated_url(url: str, token: Optional[str]) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"x-access-token:{token}@{host}", parts.path, parts.query, parts.fragment))


def create_work_dir(scan_id: str, work_root: Optional[str] = None) -> str:
    """Fresh scratch directory for one scan; leftovers from a crashed run are removed first."""
    root = work_root or os.path.join(tempfile.gettempdir(), "scanforge-scans")
    work_dir = os.path.join(root, scan_id)
    shutil.rmtree(work_dir, ignore_errors=True)
    os.makedirs(work_dir, exist_ok=True)
    return work_dir


def cleanup_work_dir(work_dir: Optional[str]) -> None:
    if not work_dir:
        return
    try:
        shutil.rmtree(work_dir)
        logger.debug(f"Removed work dir {work_dir}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to clean up {work_dir}: {e}")


class RepositoryFetcher:
    """Clones a job's repository into a work dir and reports what it contains."""

    def fetch(self, job: RepositoryScanJob, work_dir: str, cancel_event=None) -> None:
        raise NotImplementedError

    def detect_languages(self, work_dir: str) -> LanguageStats:
        return detect_languages(work_dir)


class GitRepositoryFetcher(RepositoryFetcher):
    def __init__(self, executor: Optional[SandboxExecutor] = None, timeout: float = 300.0):
        self.executor = executor if executor else SandboxExecutor()
        self.timeout = timeout

    def _git(self, args, cwd: Optional[str], job_id: str, cancel_event=None):
        return self.executor.execute(
            "git",
            args,
            cwd=cwd,
            timeout=self.timeout,
            env={"GIT_TERMINAL_PROMPT": "0"},
            job_id=job_id,
            cancel_event=cancel_event,
        )

    def _fail(self, action: str, result) -> SourceFetchError:
        detail = redact((result.stderr or result.error_message or "").strip())[:500]
        retryable = not any(marker in detail.lower() for marker in _AUTH_FAILURES)
        logger.error(f"git {action} failed (RC={result.exit_code}): {detail}")
        return SourceFetchError(f"git {action} failed with code {result.exit_code}: {detail}", retryable=retryable)

    def fetch(self, job: RepositoryScanJob, work_dir: str, cancel_event=None) -> None:
        args = ["clone", "--single-branch", "--depth", "1"]
        if job.branch:
            args.extend(["--branch", job.branch])
        args.extend([authenticated_url(job.clone_url, job.access_token), work_dir])

        logger.info(f"Cloning {job.full_name or job.repository_id} into {work_dir}")
        # clone refuses a non-empty destination
        if os.path.isdir(work_dir) and not os.listdir(work_dir):
            os.rmdir(work_dir)
        result = self._git(args, None, job.scan_id, cancel_event)
        if not result.success:
            raise self._fail("clone", result)

        if not job.commit_sha:
            return
        result = self._git(["checkout", job.commit_sha], work_dir, job.scan_id, cancel_event)
        if result.success:
            return
        # shallow clones may not contain the commit yet
        logger.info(f"Commit {job.commit_sha} not in shallow clone; fetching it")
        fetched = self._git(["fetch", "--depth", "1", "origin", job.commit_sha], work_dir, job.scan_id, cancel_event)
        if not fetched.success:
            raise self._fail("fetch", fetched)
        result = self._git(["checkout", job.commit_sha], work_dir, job.scan_id, cancel_event)
        if not result.success:
            raise self._fail("checkout", result)
