"""
Configuration module for the IPv6 block tool.

This module loads and provides access to all configuration parameters.
Configuration can be sourced from environment variables (a ``.env`` file is
loaded first), a JSON configuration file, or defaults.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

from .errors import FailurePolicy
from .time_utils import now, now_iso

logger = logging.getLogger("config")

DEFAULT_CONFIG_FILE = "ipv6_block_config.json"
CONFIG_PATHS = [
    Path(DEFAULT_CONFIG_FILE),
    Path.home() / ".ipv6-block" / DEFAULT_CONFIG_FILE,
    Path(os.environ.get("PROGRAMDATA", "C:\\ProgramData")) / "IPv6Block" / DEFAULT_CONFIG_FILE,
]
CONFIG_PATH_ENV = "IPV6_BLOCK_CONFIG"
ENV_PREFIX = "IPV6_BLOCK_"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_CONFIG = {
    # Range feed
    "ranges": {
        "url": "https://www.gstatic.com/ipranges/goog.json",
        "connect_timeout": 10,
        "read_timeout": 30,
        "user_agent": "IPv6Block/1.0",
    },

    # Rule store / adapter
    "firewall": {
        "rule_name": "Google IPv6 Block For VRChat",
        "command_length_limit": 7000,
        "batch_size": 100,
        "batch_delay": 1.0,
        "settle_delay": 1.0,
        "command_timeout": 60,
        "query_failure_policy": "open",
    },

    # Enforcement probe
    "verify": {
        "host": "google.com",
        "port": 80,
        "timeout": 3.0,
        "cross_check_limit": 5,
        "ambiguity_policy": "closed",
    },

    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    },
}


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from multiple sources, with the following precedence:
    1. Environment variables (after loading ``.env``)
    2. Configuration file
    3. Default values

    Args:
        config_file: Explicit configuration file path, overrides the search list

    Returns:
        Dict: Complete configuration dictionary
    """
    load_start_time = now()

    # .env may name the config file, so it is read before the file search
    load_dotenv(find_dotenv(usecwd=True))

    config = copy.deepcopy(DEFAULT_CONFIG)

    file_config = _load_from_file(config_file)
    if file_config:
        _deep_update(config, file_config)

    env_config = _load_from_env()
    if env_config:
        _deep_update(config, env_config)

    config["_metadata"] = {
        "loaded_at": now_iso(),
        "config_source": _get_config_source(file_config, env_config),
    }

    _validate_config(config)

    logger.debug(f"Configuration loaded in {now() - load_start_time:.3f}s")
    return config


def _load_from_file(config_file: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Returns:
        Optional[Dict]: Configuration from file, or None if no file found
    """
    if config_file:
        config_paths = [Path(config_file)]
    elif os.environ.get(CONFIG_PATH_ENV):
        config_paths = [Path(os.environ[CONFIG_PATH_ENV])]
    else:
        config_paths = CONFIG_PATHS

    for path in config_paths:
        try:
            if path.exists():
                logger.info(f"Loading configuration from {path}")
                with open(path, "r", encoding="utf-8") as f:
                    config = json.load(f)
                if not isinstance(config, dict):
                    logger.warning(f"Ignoring config file {path}: top level is not an object")
                    continue
                return config
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error reading config file {path}: {str(e)}")

    logger.debug("No configuration file found, using defaults")
    return None


def _load_from_env() -> Dict[str, Any]:
    """
    Returns:
        Dict: Configuration from environment variables, e.g.
        ``IPV6_BLOCK_FIREWALL__BATCH_SIZE=50`` -> ``{"firewall": {"batch_size": 50}}``
    """
    config = {}
    env_count = 0

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue
        env_count += 1
        key_parts = key[len(ENV_PREFIX):].lower().split("__")

        current = config
        for part in key_parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[key_parts[-1]] = _convert_value(value)

    if env_count > 0:
        logger.info(f"Loaded {env_count} environment variables")

    return config


def _convert_value(value: str) -> Any:
    """Convert string values from environment variables to appropriate types"""
    if value.lower() in ["true", "yes"]:
        return True
    elif value.lower() in ["false", "no"]:
        return False
    elif value.lower() in ["none", "null"]:
        return None
    elif value.isdigit():
        return int(value)
    elif value.replace(".", "", 1).isdigit() and value.count(".") == 1:
        return float(value)
    else:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value


def _deep_update(base_dict: Dict, update_dict: Dict) -> None:
    """Recursively update a dictionary with another dictionary"""
    for key, value in update_dict.items():
        if key in base_dict and isinstance(base_dict[key], dict) and isinstance(value, dict):
            _deep_update(base_dict[key], value)
        else:
            base_dict[key] = value


def _validate_config(config: Dict) -> None:
    """Repair invalid values in place and record what was repaired."""
    validation_issues = []

    for section, defaults in DEFAULT_CONFIG.items():
        if not isinstance(config.get(section), dict):
            validation_issues.append(f"Invalid section {section}: {config.get(section)!r}")
            config[section] = copy.deepcopy(defaults)

    ranges = config["ranges"]
    if not str(ranges.get("url", "")).startswith(("http://", "https://")):
        validation_issues.append(f"Invalid range feed URL: {ranges.get('url')!r}")
        ranges["url"] = DEFAULT_CONFIG["ranges"]["url"]

    for section, key in [
        ("ranges", "connect_timeout"),
        ("ranges", "read_timeout"),
        ("firewall", "command_timeout"),
        ("verify", "timeout"),
    ]:
        if not _is_positive_number(config[section].get(key)):
            validation_issues.append(f"Invalid {section}.{key}: {config[section].get(key)!r}")
            config[section][key] = DEFAULT_CONFIG[section][key]

    for section, key in [("firewall", "batch_delay"), ("firewall", "settle_delay")]:
        value = config[section].get(key)
        if not _is_number(value) or value < 0:
            validation_issues.append(f"Invalid {section}.{key}: {value!r}")
            config[section][key] = DEFAULT_CONFIG[section][key]

    for section, key in [
        ("firewall", "batch_size"),
        ("firewall", "command_length_limit"),
        ("verify", "port"),
        ("verify", "cross_check_limit"),
    ]:
        value = config[section].get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            validation_issues.append(f"Invalid {section}.{key}: {value!r}")
            config[section][key] = DEFAULT_CONFIG[section][key]

    if not str(config["firewall"].get("rule_name", "")).strip():
        validation_issues.append("Rule name must not be empty")
        config["firewall"]["rule_name"] = DEFAULT_CONFIG["firewall"]["rule_name"]

    for section, key in [("firewall", "query_failure_policy"), ("verify", "ambiguity_policy")]:
        try:
            FailurePolicy.parse(config[section].get(key))
        except ValueError as e:
            validation_issues.append(str(e))
            config[section][key] = DEFAULT_CONFIG[section][key]

    level = str(config["logging"].get("level", "INFO")).upper()
    if level not in VALID_LOG_LEVELS:
        validation_issues.append(f"Invalid log level: {level}. Using INFO instead")
        level = "INFO"
    config["logging"]["level"] = level

    config["_metadata"]["validation"] = {
        "validated_at": now_iso(),
        "issues_found": len(validation_issues),
        "issues": validation_issues,
    }

    for issue in validation_issues:
        logger.warning(f"Config validation: {issue}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_positive_number(value: Any) -> bool:
    return _is_number(value) and value > 0


def _get_config_source(file_config: Optional[Dict], env_config: Dict) -> str:
    sources = []

    if file_config:
        sources.append("file")
    if env_config:
        sources.append("environment")

    sources.append("defaults")

    return " + ".join(sources)


def get_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Returns:
        Dict: Complete configuration dictionary, loaded once per process
    """
    global _config
    if _config is None or config_file:
        _config = load_config(config_file)
    return _config


def reset_config() -> None:
    """Forget the cached configuration."""
    global _config
    _config = None


_config = None
