import json
import os
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from scanforge.logger import setup_logger
from scanforge.models import NormalizedFinding, ScanContext, ScannerCategory, ScanOutput
from scanforge.rate_limits import get_rate_limit_args
from scanforge.tool_settings import resolve_timeout_seconds
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

# depth, concurrency, per-request timeout
CRAWL_PROFILES = {
    "quick": {"depth": 2, "concurrency": 10, "request_timeout": 10},
    "standard": {"depth": 4, "concurrency": 20, "request_timeout": 15},
    "comprehensive": {"depth": 6, "concurrency": 50, "request_timeout": 120},
}

# Upper bound on the whole crawl per mode
CRAWL_TIMEOUTS = {"quick": 120.0, "standard": 300.0, "comprehensive": 600.0}

_JS_RE = re.compile(r"\.js(\?|$)", re.I)


def write_header_file(path: str, headers: Dict[str, str], cookies: Optional[str] = None) -> Optional[str]:
    """
    Header values (cookies especially) routinely contain characters the sandbox rejects,
    so they are handed to the tools through a file instead of argv.
    """
    lines = [f"{k}: {v}" for k, v in (headers or {}).items() if k]
    if cookies:
        lines.append(f"Cookie: {cookies}")
    if not lines:
        return None
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return path


class KatanaScanner(ScannerAdapter):
    """
    Wrapper for ProjectDiscovery katana (crawler). Discovery only: produces URLs, not findings.
    """

    name = "katana"
    label = "URL Discovery"
    category = ScannerCategory.DISCOVERY
    version_arg = "-version"
    default_timeout = None

    def build_args(self, target_url: str, context: ScanContext, header_file: Optional[str] = None) -> List[str]:
        mode = context.config.get("scan_mode") or "standard"
        profile = CRAWL_PROFILES.get(mode, CRAWL_PROFILES["standard"])
        args = [
            "-u",
            target_url,
            "-silent",
            "-nc",
            "-jsonl",
            "-d",
            str(profile["depth"]),
            "-c",
            str(profile["concurrency"]),
            "-timeout",
            str(profile["request_timeout"]),
        ]
        args.extend(get_rate_limit_args("katana", context.config.get("rate_limit_preset")))
        if header_file:
            args.extend(["-H", header_file])
        for exclude in context.exclude_paths:
            args.extend(["-ef", exclude])
        return args

    def crawl_timeout(self, context: ScanContext) -> Optional[float]:
        mode = context.config.get("scan_mode") or "standard"
        cap = CRAWL_TIMEOUTS.get(mode, CRAWL_TIMEOUTS["standard"])
        limit = resolve_timeout_seconds(context.timeout, default=None)
        if limit is None:
            return cap
        if mode == "comprehensive":
            return max(limit, cap)
        return min(limit, cap)

    def scan(self, context: ScanContext) -> ScanOutput:
        targets = context.target_urls
        if not targets:
            logger.warning("No target URL configured for katana crawl")
            return ScanOutput(scanner=self.name, stdout="No target URLs configured")

        target_url = targets[0]
        header_file = write_header_file(
            os.path.join(context.work_dir, "katana-headers.txt"),
            context.config.get("headers") or {},
            (context.config.get("auth") or {}).get("cookies"),
        )
        context.observer.on_progress(5, "URL Discovery")
        logger.info(f"Starting katana crawl on {target_url}")
        output = self.run(
            self.build_args(target_url, context, header_file),
            context,
            timeout=self.crawl_timeout(context),
        )
        context.observer.on_progress(90, "Parsing results")

        discovery = self.parse_discovery(output.stdout)
        output.discovered_urls = discovery["urls"]
        output.js_files = discovery["js_files"]
        output.extra["params"] = discovery["params"]
        context.observer.on_progress(100, "Complete")
        logger.info(f"katana discovered {len(output.discovered_urls)} URLs, {len(discovery['params'])} params")
        return output

    @staticmethod
    def _line_url(line: str) -> Optional[str]:
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            req = obj.get("request")
            if isinstance(req, dict) and str(req.get("endpoint") or "").strip():
                return str(req["endpoint"]).strip()
            for key in ("url", "URL", "endpoint"):
                value = obj.get(key)
                if value and str(value).strip():
                    return str(value).strip()
            return None
        if line.startswith(("http://", "https://")):
            return line
        return None

    def parse_discovery(self, output: str) -> Dict[str, Any]:
        urls: List[str] = []
        js_files: List[str] = []
        params: List[Dict[str, str]] = []
        seen_urls = set()
        seen_params = set()
        for raw in (output or "").splitlines():
            line = raw.strip()
            if not line:
                continue
            url = self._line_url(line)
            if not url or not url.startswith(("http://", "https://")) or url in seen_urls:
                continue
            seen_urls.add(url)
            urls.append(url)
            if _JS_RE.search(url):
                js_files.append(url)
            parts = urlsplit(url)
            for name, _ in parse_qsl(parts.query, keep_blank_values=True):
                key = f"{parts.path}:{name}"
                if key not in seen_params:
                    seen_params.add(key)
                    params.append({"url": url, "method": "GET", "name": name, "type": "query"})
        return {"urls": urls, "js_files": js_files, "params": params}

    def parse_output(self, output: ScanOutput) -> List[NormalizedFinding]:
        return []
