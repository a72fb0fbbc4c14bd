from typing import Any, Dict, Optional, Type

from scanforge.sandbox import SandboxExecutor

from .base import ScannerAdapter
from .semgrep import SemgrepScanner
from .bandit import BanditScanner
from .gosec import GosecScanner
from .trivy import TrivyScanner
from .gitleaks import GitleaksScanner
from .checkov import CheckovScanner
from .katana import KatanaScanner
from .nuclei import NucleiScanner
from .zap import ZapScanner
from .nikto import NiktoScanner
from .sqlmap import SqlmapScanner
from .sslscan import SslscanScanner

# Fixed table of scanner kinds, keyed by name
ADAPTER_TYPES: Dict[str, Type[ScannerAdapter]] = {
    cls.name: cls
    for cls in (
        SemgrepScanner,
        BanditScanner,
        GosecScanner,
        TrivyScanner,
        GitleaksScanner,
        CheckovScanner,
        KatanaScanner,
        NucleiScanner,
        ZapScanner,
        NiktoScanner,
        SqlmapScanner,
        SslscanScanner,
    )
}

REPOSITORY_SCANNERS = ("semgrep", "bandit", "gosec", "trivy", "gitleaks", "checkov", "nuclei")


def build_registry(executor=None, config: Optional[Dict[str, Any]] = None) -> Dict[str, ScannerAdapter]:
    """One adapter instance per scanner kind, sharing a single sandbox executor."""
    executor = executor or SandboxExecutor()
    return {name: cls(executor, config) for name, cls in ADAPTER_TYPES.items()}


__all__ = [
    "ADAPTER_TYPES",
    "REPOSITORY_SCANNERS",
    "build_registry",
    "ScannerAdapter",
    "SemgrepScanner",
    "BanditScanner",
    "GosecScanner",
    "TrivyScanner",
    "GitleaksScanner",
    "CheckovScanner",
    "KatanaScanner",
    "NucleiScanner",
    "ZapScanner",
    "NiktoScanner",
    "SqlmapScanner",
    "SslscanScanner",
]
