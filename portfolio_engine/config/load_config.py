"""
Configuration loader for the portfolio construction engine.

Settings live in one YAML file (config/config.yaml by default, or the file
named by PORTFOLIO_ENGINE_CONFIG). Values may reference the environment with
${VAR} or ${VAR:-default}; a placeholder that makes up a whole value is
parsed as YAML after substitution, so solver time limits and job counts can
be supplied as numbers from the shell.
"""

import os
import re
import copy
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()

CONFIG_ENV_VAR = "PORTFOLIO_ENGINE_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "config.yaml"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

# Loggers of the modelling layer and its backends, quieted separately
SOLVER_LOGGERS = ("cvxpy", "clarabel", "osqp", "scs")


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """
    Load the engine configuration.

    Args:
        config_path: YAML file. When None, PORTFOLIO_ENGINE_CONFIG or the
            shipped config/config.yaml is used.
        overrides: Nested values merged over the file, section by section
            (e.g. {'backtesting': {'n_jobs': 4}})

    Returns:
        Configuration dict with environment placeholders resolved.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file is invalid YAML.
    """
    path = _resolve_config_path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, 'r') as f:
        config = yaml.safe_load(f) or {}

    config = _substitute_env_vars(config)
    if overrides:
        config = _merge(config, overrides)
    return config


def _resolve_config_path(config_path: Optional[Union[str, Path]]) -> Path:
    if config_path is None:
        config_path = os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    return Path(config_path)


def _substitute_env_vars(config: Any) -> Any:
    """
    Recursively resolve ${VAR} and ${VAR:-default} placeholders.

    An unset variable without a default keeps its placeholder text.
    """
    if isinstance(config, dict):
        return {k: _substitute_env_vars(v) for k, v in config.items()}
    if isinstance(config, list):
        return [_substitute_env_vars(item) for item in config]
    if not isinstance(config, str) or "${" not in config:
        return config

    def replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = os.getenv(name)
        if value is not None:
            return value
        return default if default is not None else match.group(0)

    substituted = _PLACEHOLDER.sub(replace, config)
    whole = _PLACEHOLDER.fullmatch(config)
    if whole is None or substituted == config:
        return substituted
    try:
        return yaml.safe_load(substituted)
    except yaml.YAMLError:
        return substituted


def _merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _log_level(name: Union[str, int]) -> int:
    if isinstance(name, int):
        return name
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(config: Optional[Dict[str, Any]] = None) -> None:
    """
    Initialize logging from the 'logging' section.

    The root logger gets a console handler and, when log_file is set, a
    RotatingFileHandler. LOG_LEVEL in the environment overrides the
    configured level. Solver loggers get their own, quieter level.

    Args:
        config: Configuration dictionary. If None, loads from default location.
    """
    if config is None:
        config = load_config()

    log_config = config.get("logging", {})
    level = _log_level(os.getenv("LOG_LEVEL") or log_config.get("level", "INFO"))
    formatter = logging.Formatter(
        log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
        datefmt=log_config.get("date_format", "%Y-%m-%d %H:%M:%S"),
    )

    handlers = [logging.StreamHandler()]
    log_file = log_config.get("log_file")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotation = log_config.get("rotation", {})
        handlers.append(logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=rotation.get("max_bytes", 10485760),
            backupCount=rotation.get("backup_count", 5),
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    solver_level = _log_level(log_config.get("solver_level", "WARNING"))
    for name in SOLVER_LOGGERS:
        logging.getLogger(name).setLevel(solver_level)

    root_logger.info(f"Logging initialized at {logging.getLevelName(level)}")


# Singleton config instance
_config_instance: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration (loaded and logging set up on first call).

    Components built without an explicit config dict read this one.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config()
        setup_logging(_config_instance)
    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
