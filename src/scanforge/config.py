import copy
import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from scanforge.errors import ConfigError
from scanforge.logger import setup_logger

logger = setup_logger(__name__)

APP_NAME = "scanforge"

# Prefer a repo-local config.yaml; fall back to ~/.scanforge/config.yaml
REPO_ROOT = Path(__file__).resolve().parents[2]
CONFIG_FILE = REPO_ROOT / "config.yaml"
FALLBACK_CONFIG_FILE = Path.home() / f".{APP_NAME}" / "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "core": {
        "log_level": "INFO",
        "work_root": None,  # None -> system temp dir
    },
    "redis": {
        "url": "redis://localhost:6379/0",
        "key_prefix": "scanforge",
    },
    "queue": {
        "concurrency": 2,
        "attempts": 3,
        "backoff_seconds": 5,
        "lease_seconds": 60,
        "poll_interval": 1.0,
    },
    "events": {
        "batch_interval_ms": 300,
    },
    "notify": {
        "webhook_url": None,
        "timeout_seconds": 30,
    },
    "zap": {
        "image": "ghcr.io/zaproxy/zaproxy:stable",
        "api_key": "scanforge-zap-key",
        "container_name": "scanforge-zap",
        "passive_wait_seconds": 120,
    },
    "scanners": {
        "semgrep": {"enabled": True, "timeout_seconds": 300},
        "bandit": {"enabled": True, "timeout_seconds": 300},
        "gosec": {"enabled": True, "timeout_seconds": 300},
        "trivy": {"enabled": True, "timeout_seconds": 300},
        "gitleaks": {"enabled": True, "timeout_seconds": 300},
        "checkov": {"enabled": True, "timeout_seconds": 300},
        "nuclei": {"enabled": True, "timeout_seconds": 0},
        "katana": {"enabled": True},
        "zap": {"enabled": True, "timeout_seconds": 1800},
        "nikto": {"enabled": True, "timeout_seconds": 1200},
        "sqlmap": {"enabled": True, "timeout_seconds": 1800},
        "sslscan": {"enabled": True, "timeout_seconds": 300},
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Returns a new dict with override merged recursively over base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigManager:
    def __init__(self, config_file: Optional[Path] = None):
        env_path = os.getenv("SCANFORGE_CONFIG")
        if config_file is not None:
            self.config_file = Path(config_file)
        elif env_path:
            self.config_file = Path(env_path)
        elif CONFIG_FILE.exists() or not FALLBACK_CONFIG_FILE.exists():
            self.config_file = CONFIG_FILE
        else:
            self.config_file = FALLBACK_CONFIG_FILE
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """
        Loads the YAML config merged over DEFAULT_CONFIG. A missing file means defaults.
        """
        loaded: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Error parsing config file {self.config_file}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {self.config_file} must contain a mapping")
        else:
            logger.debug(f"No config file at {self.config_file}; using defaults")

        config = deep_merge(DEFAULT_CONFIG, loaded)
        redis_url = os.getenv("SCANFORGE_REDIS_URL")
        if redis_url:
            config["redis"]["url"] = redis_url
        return config

    def save_config(self, new_config: Dict[str, Any]) -> None:
        """Saves configuration to the YAML file."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            yaml.dump(new_config, f, default_flow_style=False, sort_keys=False)
        self.config = new_config

    def get(self, dotted_key: str, default: Any = None) -> Any:
        node: Any = self.config
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, dotted_key: str, value: Any) -> None:
        """Sets a dotted key (e.g. queue.concurrency) and persists the file."""
        parts = dotted_key.split(".")
        node = self.config
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self.save_config(self.config)


# Singleton instance
config_manager = ConfigManager()
