"""
Configuration management for LMArena Duel Bridge.
Handles loading, saving, and managing configuration.
"""

import json
import os

from . import constants


# Global state
_current_config_file: str = constants.CONFIG_FILE


def get_config_file() -> str:
    """Get the current config file path."""
    return _current_config_file


def set_config_file(path: str) -> None:
    """Set the config file path (useful for tests)."""
    global _current_config_file
    _current_config_file = path


def get_config() -> dict:
    """
    Load configuration from file with defaults.
    Returns a dictionary with all configuration values.
    """
    try:
        with open(_current_config_file, "r") as f:
            config = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        config = {}
    if not isinstance(config, dict):
        config = {}

    # Ensure default keys exist
    _apply_config_defaults(config)
    _apply_env_overrides(config)

    return config


def _apply_config_defaults(config: dict) -> None:
    """Apply default values to config dictionary."""
    config.setdefault("lmarena_url", constants.LMARENA_URL)
    config.setdefault("engine", constants.ENGINE_CAMOUFOX)
    config.setdefault("headless", True)
    config.setdefault("launch_timeout_seconds", constants.HOST_LAUNCH_TIMEOUT_SECONDS)
    config.setdefault("launch_attempts", 2)
    config.setdefault("max_pool_size", constants.DEFAULT_MAX_POOL_SIZE)
    config.setdefault("max_concurrent", constants.DEFAULT_MAX_CONCURRENT)
    config.setdefault("max_tabs_allowed", constants.DEFAULT_MAX_TABS_ALLOWED)
    config.setdefault("queue_timeout_seconds", constants.QUEUE_TIMEOUT_SECONDS)
    config.setdefault("force_close_timeout_seconds", constants.FORCE_CLOSE_TIMEOUT_SECONDS)
    config.setdefault("max_host_age_seconds", constants.MAX_HOST_AGE_SECONDS)
    config.setdefault("max_host_idle_seconds", constants.MAX_HOST_IDLE_SECONDS)
    config.setdefault("max_attempts", constants.MAX_ATTEMPTS)
    config.setdefault("completion_timeout_seconds", constants.COMPLETION_TIMEOUT_SECONDS)
    config.setdefault("proxies", [])
    config.setdefault("require_target_compatible_proxy", True)
    config.setdefault("solver_enabled", False)
    config.setdefault("solver_timeout_seconds", constants.CHALLENGE_SOLVE_TIMEOUT_SECONDS)
    config.setdefault("model_cache_ttl_seconds", constants.MODEL_CACHE_TTL_SECONDS)

    if str(config.get("engine") or "").strip().lower() not in constants.VALID_ENGINES:
        config["engine"] = constants.ENGINE_CAMOUFOX
    if not isinstance(config.get("proxies"), list):
        config["proxies"] = []

    # Normalize numeric limits so a hand-edited config cannot disable the pool
    for key in ("max_pool_size", "max_concurrent", "max_tabs_allowed", "max_attempts"):
        try:
            config[key] = max(1, int(config[key]))
        except (TypeError, ValueError):
            config[key] = get_default_config()[key]
    if config["max_tabs_allowed"] < config["max_concurrent"]:
        config["max_tabs_allowed"] = config["max_concurrent"]


def _apply_env_overrides(config: dict) -> None:
    """Environment variables win over config.json for deployment-specific values."""
    max_tabs = os.environ.get("MAX_TABS")
    if max_tabs:
        try:
            value = max(1, int(max_tabs))
        except ValueError:
            value = 0
        if value:
            config["max_pool_size"] = value
            config["max_concurrent"] = value
            config["max_tabs_allowed"] = max(value, int(config.get("max_tabs_allowed") or 0))

    url = os.environ.get("LMARENA_URL")
    if url and url.strip():
        config["lmarena_url"] = url.strip()

    proxy_url = os.environ.get("PROXY_SERVER_URL")
    if proxy_url and proxy_url.strip():
        config["proxies"] = [{"server": proxy_url.strip(), "target_compatible": True}] + list(config["proxies"])

    headless = os.environ.get("HEADLESS")
    if headless is not None and headless.strip():
        config["headless"] = headless.strip().lower() not in ("0", "false", "no", "off")


def save_config(config: dict) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration dictionary to save
    """
    try:
        tmp_path = f"{_current_config_file}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(config, f, indent=4)
        os.replace(tmp_path, _current_config_file)
    except OSError as e:
        print(f"Error saving config: {e}")


# === Model management ===

_current_models_file: str = constants.MODELS_FILE


def get_models_file() -> str:
    return _current_models_file


def set_models_file(path: str) -> None:
    """Set the models file path (useful for tests)."""
    global _current_models_file
    _current_models_file = path


def get_models() -> list:
    """Load the last saved model list."""
    try:
        with open(_current_models_file, "r") as f:
            models = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        return []
    return models if isinstance(models, list) else []


def save_models(models: list) -> None:
    """Save the model list to file."""
    try:
        tmp_path = f"{_current_models_file}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(models, f, indent=2)
        os.replace(tmp_path, _current_models_file)
    except OSError as e:
        print(f"Error saving models: {e}")


# === Default config for startup ===

def get_default_config() -> dict:
    """Get default configuration values."""
    return {
        "lmarena_url": constants.LMARENA_URL,
        "engine": constants.ENGINE_CAMOUFOX,
        "headless": True,
        "launch_timeout_seconds": constants.HOST_LAUNCH_TIMEOUT_SECONDS,
        "launch_attempts": 2,
        "max_pool_size": constants.DEFAULT_MAX_POOL_SIZE,
        "max_concurrent": constants.DEFAULT_MAX_CONCURRENT,
        "max_tabs_allowed": constants.DEFAULT_MAX_TABS_ALLOWED,
        "queue_timeout_seconds": constants.QUEUE_TIMEOUT_SECONDS,
        "force_close_timeout_seconds": constants.FORCE_CLOSE_TIMEOUT_SECONDS,
        "max_host_age_seconds": constants.MAX_HOST_AGE_SECONDS,
        "max_host_idle_seconds": constants.MAX_HOST_IDLE_SECONDS,
        "max_attempts": constants.MAX_ATTEMPTS,
        "completion_timeout_seconds": constants.COMPLETION_TIMEOUT_SECONDS,
        "proxies": [],
        "require_target_compatible_proxy": True,
        "solver_enabled": False,
        "solver_timeout_seconds": constants.CHALLENGE_SOLVE_TIMEOUT_SECONDS,
        "model_cache_ttl_seconds": constants.MODEL_CACHE_TTL_SECONDS,
    }
