"""Configuration loading utilities for vreflect."""

import copy
import os
from typing import Any
import logging

import yaml

LOG = logging.getLogger(__name__)

ConfigType = dict[str, Any]

_MISSING = object()


def load_configs(*path_configs: str) -> dict[str, Any]:
    """Load and merge YAML configuration files.

    Args:
        *path_configs: Paths to YAML configuration files

    Returns:
        Merged configuration dictionary

    Raises:
        TypeError: If a config file doesn't contain a dict
        ValueError: If no configs are loaded
    """
    def merge(orig_conf: Any, new_conf: Any):
        """Recursively merge configuration dictionaries."""
        if isinstance(orig_conf, dict) and isinstance(new_conf, dict):
            result = copy.deepcopy(orig_conf)
            for k, v in new_conf.items():
                if k in orig_conf:
                    result[k] = merge(orig_conf[k], v)
                else:
                    result[k] = copy.deepcopy(v)
            return result
        else:
            return copy.deepcopy(new_conf)

    result = {}
    for path in list(path_configs):
        path = str(path)
        LOG.info("loading config from %s", path)
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                c = yaml.safe_load(f)
                if c is None:
                    LOG.warning("Config file %s is empty", path)
                    continue
                if not isinstance(c, dict):
                    raise TypeError(f"YAML config file {path} must be a dict")
                result = merge(result, c)
        else:
            LOG.warning("Skipping missing config file %s", repr(path))
    if not result:
        raise ValueError("No configs loaded")
    return result


def _project_root() -> str:
    # libs -> vreflect -> project root
    current_dir = os.path.dirname(os.path.abspath(__file__))
    return os.path.dirname(os.path.dirname(current_dir))


def load_default_configs() -> dict[str, Any]:
    """Load default and local configuration files.

    Looks for config files in the following order:
    1. config/default.yaml (base configuration)
    2. config/local.yaml (local overrides, not committed to git)

    Returns:
        Merged configuration from default.yaml and local.yaml
    """
    config_dir = os.path.join(_project_root(), "config")

    default_config_path = os.path.join(config_dir, "default.yaml")
    local_config_path = os.path.join(config_dir, "local.yaml")

    return load_configs(default_config_path, local_config_path)


def get_config(key: str, config: dict[str, Any] = None, default: Any = _MISSING) -> Any:
    """Get a configuration value by dot-separated key.

    Args:
        key: Dot-separated path to config value (e.g., "reflection.model")
        config: Configuration dict (if None, loads default configs)
        default: Value returned when the key is absent. Without it a KeyError is raised.

    Returns:
        Configuration value

    Raises:
        KeyError: If key not found in configuration and no default was given
    """
    if config is None:
        config = load_default_configs()

    keys = key.split('.')
    value = config
    for i, k in enumerate(keys):
        if not isinstance(value, dict):
            if default is not _MISSING:
                return default
            raise KeyError(f"Cannot access {k} in non-dict value at {'.'.join(keys[:i])}")
        if k not in value:
            if default is not _MISSING:
                return default
            raise KeyError(f"Key {key} not found in configuration")
        value = value[k]
    return value
