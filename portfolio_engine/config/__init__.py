"""
Configuration Module

YAML configuration loading, environment substitution and logging setup.
"""

from portfolio_engine.config.load_config import (
    get_config,
    load_config,
    reset_config,
    setup_logging
)

__all__ = [
    'get_config',
    'load_config',
    'reset_config',
    'setup_logging'
]
