"""
Pytest configuration file with shared fixtures for all tests.

Provides an explicit configuration dict, deterministic return samples and
helper functions used across unit and integration tests.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
import pytest

from portfolio_engine.optimization.spec_model import PortfolioSpec

# Disable logging during tests to reduce noise
logging.disable(logging.CRITICAL)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end workflow tests")


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def sample_config() -> Dict:
    """
    Provide test configuration dictionary.

    Mirrors config/config.yaml with no log file and sequential execution.
    """
    return {
        "logging": {
            "level": "WARNING",
            "solver_level": "WARNING",
            "log_file": None,
        },
        "optimization": {
            "risk_free_rate": 0.0,
            "default_tail_probability": 0.05,
            "weight_tolerance": 1e-4,
            "eqs_normalize_by_sqrt_t": False,
            "covariance": {
                "dense_max_assets": 250,
                "regularization": 0.0,
            },
            "ratio": {
                "kappa_tolerance": 1e-9,
            },
            "solvers": {
                "defaults": {"lp": "SCIPY", "qp": "OSQP", "socp": "CLARABEL"},
                "fallback": [],
                "time_limit": None,
                "options": {
                    "OSQP": {"eps_abs": 1e-7, "eps_rel": 1e-7, "max_iter": 100000, "polish": True},
                    "SCIPY": {"scipy_options": {"method": "highs"}},
                },
            },
        },
        "backtesting": {
            "rebalance_frequency": "period",
            "training_period": 2,
            "rolling_window": None,
            "min_observations": 2,
            "failure_policy": "hold",
            "raise_on_failure": False,
            "n_jobs": 1,
            "parallel_backend": "loky",
        },
        "frontier": {
            "n_points": 10,
            "target_equality": True,
            "monotonicity_tolerance": 1e-7,
            "degenerate_range_tolerance": 1e-8,
            "n_jobs": 1,
            "parallel_backend": "loky",
        },
    }


# =============================================================================
# Return Sample Fixtures
# =============================================================================


@pytest.fixture
def scenario_returns() -> pd.DataFrame:
    """Three assets over four periods; every column has sample mean 0.005."""
    return pd.DataFrame(
        [
            [0.01, 0.02, -0.01],
            [0.00, 0.01, 0.02],
            [-0.02, 0.00, 0.01],
            [0.03, -0.01, 0.00],
        ],
        index=pd.date_range("2024-01-01", periods=4, freq="MS"),
        columns=["A", "B", "C"],
    )


@pytest.fixture
def distinct_mean_returns(scenario_returns) -> pd.DataFrame:
    """Scenario sample with asset B shifted to the unique highest mean (0.015)."""
    returns = scenario_returns.copy()
    returns["B"] = [0.02, 0.03, 0.00, 0.01]
    return returns


@pytest.fixture
def sample_returns() -> pd.DataFrame:
    """Ten years of monthly returns for four assets with distinct means and volatilities."""
    return create_test_returns(n_periods=120, seed=42)


@pytest.fixture
def identical_returns() -> pd.DataFrame:
    """Four assets with identical returns in every period."""
    np.random.seed(7)
    column = np.random.randn(60) * 0.03 + 0.004
    return pd.DataFrame(
        {asset: column for asset in ["A", "B", "C", "D"]},
        index=pd.date_range("2020-01-01", periods=60, freq="MS"),
    )


@pytest.fixture
def long_only_spec(sample_returns) -> PortfolioSpec:
    """Fully invested long-only spec over the sample_returns universe, no objectives."""
    return (
        PortfolioSpec.from_assets(sample_returns.columns)
        .add_constraint("full_investment")
        .add_constraint("long_only")
    )


# =============================================================================
# Helper Functions
# =============================================================================


def create_test_returns(
    n_periods: int = 120,
    means: Optional[np.ndarray] = None,
    vols: Optional[np.ndarray] = None,
    seed: int = 42,
    freq: str = "MS"
) -> pd.DataFrame:
    """
    Generate a correlated return sample.

    Args:
        n_periods: Number of observations
        means: Per-asset mean returns
        vols: Per-asset volatilities
        seed: Random seed
        freq: pandas frequency of the date index

    Returns:
        DataFrame indexed by date with columns ASSET_A, ASSET_B, ...
    """
    if means is None:
        means = np.array([0.010, 0.006, 0.014, 0.004])
    if vols is None:
        vols = np.array([0.040, 0.025, 0.060, 0.015])
    n_assets = len(means)

    np.random.seed(seed)
    common = np.random.randn(n_periods, 1)
    idiosyncratic = np.random.randn(n_periods, n_assets)
    shocks = 0.4 * common + np.sqrt(1 - 0.4 ** 2) * idiosyncratic
    values = means + shocks * vols

    columns = [f"ASSET_{chr(ord('A') + i)}" for i in range(n_assets)]
    index = pd.date_range("2014-01-01", periods=n_periods, freq=freq)
    return pd.DataFrame(values, index=index, columns=columns)

