"""
Request-pressure presets for target scanners.

low: safe for production, medium: staging, high: local or isolated targets.
"""

from typing import Any, Dict, List

DEFAULT_PRESET = "medium"

RATE_LIMIT_PRESETS: Dict[str, Dict[str, Dict[str, Any]]] = {
    "low": {
        "nuclei": {"rate_limit": 50, "bulk_size": 25, "concurrency": 25},
        "zap": {"max_requests_per_second": 50, "thread_count": 2},
        "nikto": {"timeout": 10, "pause": 0.02},
        "sqlmap": {"delay": 0.02, "threads": 1},
        "katana": {"rate_limit": 30},
        "sslscan": {},
    },
    "medium": {
        "nuclei": {"rate_limit": 150, "bulk_size": 50, "concurrency": 50},
        "zap": {"max_requests_per_second": 150, "thread_count": 5},
        "nikto": {"timeout": 5, "pause": 0},
        "sqlmap": {"delay": 0, "threads": 3},
        "katana": {"rate_limit": 50},
        "sslscan": {},
    },
    "high": {
        "nuclei": {"rate_limit": 300, "bulk_size": 100, "concurrency": 100},
        "zap": {"max_requests_per_second": 300, "thread_count": 10},
        "nikto": {"timeout": 3, "pause": 0},
        "sqlmap": {"delay": 0, "threads": 10},
        "katana": {"rate_limit": 150},
        "sslscan": {},
    },
}

PRESET_DESCRIPTIONS = {
    "low": "Low (Production Safe - 50 RPS)",
    "medium": "Medium (Staging - 150 RPS)",
    "high": "High (Local Dev - 300 RPS)",
}


def normalize_preset(preset: Any) -> str:
    name = str(preset or "").strip().lower()
    return name if name in RATE_LIMIT_PRESETS else DEFAULT_PRESET


def get_rate_limit_config(scanner: str, preset: Any) -> Dict[str, Any]:
    return dict(RATE_LIMIT_PRESETS[normalize_preset(preset)].get(scanner, {}))


def get_rate_limit_args(scanner: str, preset: Any) -> List[str]:
    """CLI flags for scanners that take their limits on the command line. ZAP is configured over its API."""
    cfg = get_rate_limit_config(scanner, preset)
    if scanner == "nuclei":
        return [
            "-rate-limit",
            str(cfg["rate_limit"]),
            "-bulk-size",
            str(cfg["bulk_size"]),
            "-concurrency",
            str(cfg["concurrency"]),
        ]
    if scanner == "nikto":
        args = ["-timeout", str(cfg["timeout"])]
        if cfg["pause"] > 0:
            args.extend(["-Pause", str(cfg["pause"])])
        return args
    if scanner == "sqlmap":
        return ["--delay", str(cfg["delay"]), "--threads", str(cfg["threads"])]
    if scanner == "katana":
        return ["-rl", str(cfg["rate_limit"])]
    return []


def describe_preset(preset: Any) -> str:
    name = str(preset or "")
    return PRESET_DESCRIPTIONS.get(name, name)
