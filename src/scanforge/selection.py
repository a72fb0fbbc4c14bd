from typing import Any, Dict, List, Optional

from scanforge.logger import setup_logger
from scanforge.models import ScanConfig
from scanforge.repo import LanguageStats
from scanforge.tool_settings import tool_enabled
from scanforge.tools.base import ScannerAdapter

logger = setup_logger(__name__)

# Scanners run only when their language shows up in the repository
LANGUAGE_SPECIFIC = {"bandit": "python", "gosec": "go"}


def select_scanners(
    registry: Dict[str, ScannerAdapter],
    languages: LanguageStats,
    config: ScanConfig,
    app_config: Optional[Dict[str, Any]] = None,
) -> List[ScannerAdapter]:
    """
    Picks the repository scanners for one job from the detected languages and the job's
    category switches. An empty result is valid; the pipeline then stores zero findings.
    """
    detected = list(languages.languages.keys())
    logger.info(f"Selecting scanners for languages: {', '.join(detected) or 'none'}")
    selected: List[ScannerAdapter] = []

    def add(name: str, reason: str) -> None:
        adapter = registry.get(name)
        if adapter is None:
            return
        if not tool_enabled(app_config or {}, name):
            logger.info(f"Scanner {name} disabled in config")
            return
        selected.append(adapter)
        logger.info(f"Added {name} scanner ({reason})")

    if config.enable_sast:
        semgrep = registry.get("semgrep")
        if semgrep is not None and semgrep.supports(detected):
            add("semgrep", "SAST")
        for name, language in LANGUAGE_SPECIFIC.items():
            if language in detected:
                add(name, language)

    if config.enable_sca:
        add("trivy", "SCA")

    if config.enable_secrets:
        add("gitleaks", "secrets")

    if config.enable_iac and languages.has_iac:
        add("checkov", "IaC")

    if config.enable_dast:
        if config.target_urls:
            add("nuclei", "DAST")
        else:
            logger.warning("DAST enabled but no target URLs configured - skipping nuclei")

    logger.info(f"Selected {len(selected)} scanners: {', '.join(a.name for a in selected) or 'none'}")
    return selected

