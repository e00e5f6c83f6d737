"""Configuration loader for ProxyUpgrader."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from proxyupgrader.errors import ConfigError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "root_dir",
        "binary_name",
        "management_url",
        "management_key",
        "release_feed_url",
        "proxy_port",
        "dry_run_port",
        "max_installed_versions",
        "download_timeout",
        "metadata_timeout",
        "probe_timeout",
        "startup_attempts",
        "startup_interval",
        "include_prereleases",
        "allow_insecure_http",
        "proxy_args",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}")

        proxy_args = parsed.get("proxy_args")
        if proxy_args is not None and (
            not isinstance(proxy_args, list) or not all(isinstance(arg, str) for arg in proxy_args)
        ):
            raise ConfigError("`proxy_args` must be a list of strings.")

        max_installed = parsed.get("max_installed_versions")
        if max_installed is not None and (
            isinstance(max_installed, bool) or not isinstance(max_installed, int) or max_installed < 1
        ):
            raise ConfigError("`max_installed_versions` must be an integer of at least 1.")

        return parsed
