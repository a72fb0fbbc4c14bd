from __future__ import annotations

from typing import Any, Dict, List, Optional


def tool_key_variants(tool: str) -> List[str]:
    tool = str(tool or "").strip()
    if not tool:
        return []
    keys = [tool]
    if "-" in tool:
        keys.append(tool.replace("-", "_"))
    if "_" in tool:
        keys.append(tool.replace("_", "-"))
    return list(dict.fromkeys(keys))


def get_tool_config(config: Any, tool: str) -> Dict[str, Any]:
    """
    Returns the dict for scanners.<tool> from a config mapping, supporting '-'/'_' variants.
    """
    if not isinstance(config, dict):
        return {}
    scanners_cfg = config.get("scanners", {})
    if not isinstance(scanners_cfg, dict):
        return {}
    for k in tool_key_variants(tool):
        v = scanners_cfg.get(k)
        if isinstance(v, dict):
            return v
    return {}


def tool_enabled(config: Any, tool: str, default: bool = True) -> bool:
    cfg = get_tool_config(config, tool)
    if "enabled" not in cfg:
        return default
    return bool(cfg.get("enabled"))


def get_tool_path(config: Any, tool: str) -> str:
    """Binary to execute for a scanner; scanners.<tool>.path overrides the bare name."""
    value = get_tool_config(config, tool).get("path")
    return str(value) if value else tool


def get_tool_timeout_seconds(config: Any, tool: str) -> Optional[float]:
    cfg = get_tool_config(config, tool)
    if not cfg:
        return None
    value = cfg.get("timeout_seconds", cfg.get("timeout"))
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_timeout_seconds(specified: Any, *, default: Optional[float]) -> Optional[float]:
    """
    Resolves a timeout value:
      - specified is None -> default
      - specified <= 0 -> None (no timeout)
      - otherwise -> float(specified)
    """
    if specified is None:
        return default
    try:
        value = float(specified)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return None
    return value
