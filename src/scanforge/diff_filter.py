"""
Restricts pull-request scans to findings on lines the pull request touched.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, RepositoryScanJob

logger = setup_logger(__name__)

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")

CONTEXT_LINES = 3


@dataclass
class FileChanges:
    path: str
    added_lines: Set[int] = field(default_factory=set)
    modified_ranges: List[Tuple[int, int]] = field(default_factory=list)


@dataclass
class DiffData:
    files: Dict[str, FileChanges] = field(default_factory=dict)
    additions: int = 0
    deletions: int = 0


class DiffProvider:
    """Supplies the unified diff of a pull request (an SCM client in production)."""

    def get_diff(self, job: RepositoryScanJob) -> str:
        raise NotImplementedError


def _header_path(line: str) -> str:
    # +++ b/path   or   +++ "b/path with spaces"
    if line.startswith('+++ "b/'):
        return line[7:].rstrip('"')
    return line[6:]


def parse_diff(diff_text: str) -> DiffData:
    data = DiffData()
    current: Optional[FileChanges] = None
    new_line = 0
    for line in (diff_text or "").splitlines():
        if line.startswith("+++ b/") or line.startswith('+++ "b/'):
            current = FileChanges(_header_path(line))
            data.files[current.path] = current
            new_line = 0
            continue
        if line.startswith("+++ ") or line.startswith("--- "):
            continue
        match = _HUNK_RE.match(line)
        if match and current is not None:
            start = int(match.group(3))
            count = int(match.group(4) if match.group(4) is not None else 1)
            current.modified_ranges.append((start, start + count - 1))
            new_line = start
            continue
        if current is None or new_line <= 0:
            continue
        if line.startswith("+"):
            current.added_lines.add(new_line)
            data.additions += 1
            new_line += 1
        elif line.startswith("-"):
            data.deletions += 1
        elif not line.startswith("\\"):
            new_line += 1
    logger.info(f"Parsed diff: {len(data.files)} files, {data.additions} additions, {data.deletions} deletions")
    return data


def find_file_changes(path: str, data: DiffData) -> Optional[FileChanges]:
    normalized = (path or "").replace("\\", "/")
    if not normalized:
        return None
    if normalized in data.files:
        return data.files[normalized]
    for diff_path, changes in data.files.items():
        if normalized.endswith(diff_path) or diff_path.endswith(normalized):
            return changes
    basename = normalized.rsplit("/", 1)[-1]
    for diff_path, changes in data.files.items():
        if diff_path.rsplit("/", 1)[-1] == basename:
            return changes
    return None


def in_changed_range(start: int, end: int, changes: FileChanges, context: int = CONTEXT_LINES) -> bool:
    for line in range(start, end + 1):
        if line in changes.added_lines:
            return True
    for range_start, range_end in changes.modified_ranges:
        if start <= range_end + context and end >= max(1, range_start - context):
            return True
    return False


def filter_findings(findings: List[NormalizedFinding], data: DiffData, context: int = CONTEXT_LINES) -> List[NormalizedFinding]:
    kept: List[NormalizedFinding] = []
    for finding in findings:
        changes = find_file_changes(finding.file_path, data)
        if changes is None:
            continue
        start = finding.start_line or 0
        if start <= 0:
            # file-level finding in a touched file
            kept.append(finding)
            continue
        end = max(finding.end_line or start, start)
        if in_changed_range(start, end, changes, context):
            kept.append(finding)
    logger.info(f"Diff filter: {len(kept)} findings in changed lines, {len(findings) - len(kept)} skipped")
    return kept


def apply_diff_filter(job: RepositoryScanJob, findings: List[NormalizedFinding], provider: Optional[DiffProvider]) -> List[NormalizedFinding]:
    """Falls back to the unfiltered findings whenever the diff cannot be obtained or parsed."""
    if provider is None:
        logger.warning("Diff-only scan requested but no diff provider configured; keeping all findings")
        return findings
    try:
        data = parse_diff(provider.get_diff(job))
    except Exception as e:
        logger.warning(f"Diff filter failed, returning all findings: {e}")
        return findings
    return filter_findings(findings, data)
