"""
Risk Measures Module

Sample estimators for the risk measures the problem builder reformulates:

- Variance: unbiased sample variance of portfolio returns
- Expected Shortfall: closed form by sorting realized portfolio returns
- Expected Quadratic Shortfall: one-dimensional convex minimization over the
  threshold t

These are used to report realized objective components after a solve, and as
oracles for the LP/SOCP reformulations evaluated at a fixed weight vector.
"""

import logging
import math
from typing import Dict, Optional, Union

import cvxpy as cp
import numpy as np
import pandas as pd
from scipy.optimize import minimize_scalar

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.problem_builder import (
    CanonicalProgram,
    expected_quadratic_shortfall_term,
    expected_shortfall_term,
)
from portfolio_engine.optimization.solver_adapter import SolverAdapter
from portfolio_engine.optimization.spec_model import (
    DEFAULT_TAIL_PROBABILITY,
    OptimizationMode,
    RiskMeasure,
    effective_tail_probability,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Portfolio helpers
# =============================================================================

def calculate_portfolio_return(weights: np.ndarray, expected_returns: np.ndarray) -> float:
    """
    Calculate portfolio return from weights.

    Args:
        weights: Asset weights array
        expected_returns: Expected returns array

    Returns:
        Portfolio return
    """
    return float(np.asarray(weights) @ np.asarray(expected_returns))


def calculate_portfolio_variance(weights: np.ndarray, returns: np.ndarray) -> float:
    """
    Sample variance (ddof=1) of the realized portfolio return series.

    Args:
        weights: Asset weights array
        returns: Return matrix (T x n)

    Returns:
        Portfolio variance, NaN with fewer than two observations
    """
    portfolio_returns = np.asarray(returns, dtype=float) @ np.asarray(weights, dtype=float)
    if len(portfolio_returns) < 2:
        return np.nan
    return float(np.var(portfolio_returns, ddof=1))


def calculate_portfolio_risk(weights: np.ndarray, covariance: np.ndarray) -> float:
    """
    Calculate portfolio volatility from weights and a covariance matrix.

    Args:
        weights: Asset weights array
        covariance: Covariance matrix

    Returns:
        Portfolio volatility
    """
    weights = np.asarray(weights)
    return float(np.sqrt(max(weights @ covariance @ weights, 0.0)))


# =============================================================================
# Shortfall estimators
# =============================================================================

def sample_expected_shortfall(
    portfolio_returns: Union[pd.Series, np.ndarray],
    p: float = DEFAULT_TAIL_PROBABILITY
) -> float:
    """
    Expected Shortfall by direct sorting.

    Mean loss over the worst p-fraction of observations. When T*p is not an
    integer the boundary observation enters with its fractional weight, which
    matches the optimum of the Rockafellar-Uryasev program exactly.

    Args:
        portfolio_returns: Realized portfolio returns
        p: Tail probability (p > 0.5 is read as 1 - p)

    Returns:
        Expected Shortfall as a loss (positive when the tail loses money)

    Examples:
        >>> sample_expected_shortfall(np.array([-0.03, -0.01, 0.00, 0.02]), p=0.5)
        0.02
    """
    p = effective_tail_probability(p)
    r = np.sort(np.asarray(portfolio_returns, dtype=float).ravel())
    T = len(r)
    if T == 0:
        return np.nan

    tail_mass = T * p
    k = int(math.floor(tail_mass + 1e-12))
    k = min(k, T)
    total = r[:k].sum()
    fraction = tail_mass - k
    if fraction > 1e-12 and k < T:
        total += fraction * r[k]
    return float(-total / tail_mass)


def sample_expected_quadratic_shortfall(
    portfolio_returns: Union[pd.Series, np.ndarray],
    p: float = DEFAULT_TAIL_PROBABILITY,
    normalize_by_sqrt_t: bool = False
) -> float:
    """
    Expected Quadratic Shortfall of a realized return series.

    min_t  -t + (1/p) * sqrt(sum(max(t - r_i, 0)^2))

    With normalize_by_sqrt_t the sum becomes a mean (root-mean-square
    shortfall), matching the optional scaling of the cone program.

    The objective is convex in t, equals -t (decreasing) below min(r), and its
    minimizer never exceeds max(r) + p * range / (1 - p), so a bounded scalar
    search over that interval is exact up to tolerance.

    Args:
        portfolio_returns: Realized portfolio returns
        p: Tail probability (p > 0.5 is read as 1 - p)
        normalize_by_sqrt_t: Divide the shortfall norm by sqrt(T)

    Returns:
        Expected Quadratic Shortfall as a loss
    """
    p = effective_tail_probability(p)
    r = np.asarray(portfolio_returns, dtype=float).ravel()
    if len(r) == 0:
        return np.nan

    lo, hi = float(r.min()), float(r.max())
    spread = hi - lo
    if spread <= 0:
        return -lo

    scale = p * np.sqrt(len(r)) if normalize_by_sqrt_t else p

    def objective(t: float) -> float:
        shortfall = np.maximum(t - r, 0.0)
        return -t + np.sqrt(np.sum(shortfall ** 2)) / scale

    upper = hi + spread * p / (1.0 - p)
    result = minimize_scalar(
        objective,
        bounds=(lo, upper),
        method='bounded',
        options={'xatol': 1e-12 * max(1.0, spread)},
    )
    return float(min(result.fun, objective(lo)))


def realized_risk(
    measure: RiskMeasure,
    weights: np.ndarray,
    returns: np.ndarray,
    p: Optional[float] = None,
    normalize_by_sqrt_t: bool = False
) -> float:
    """Evaluate a risk measure on the realized returns of a fixed portfolio."""
    weights = np.asarray(weights, dtype=float)
    returns = np.asarray(returns, dtype=float)
    if measure is RiskMeasure.VARIANCE:
        return calculate_portfolio_variance(weights, returns)

    portfolio_returns = returns @ weights
    p = DEFAULT_TAIL_PROBABILITY if p is None else p
    if measure is RiskMeasure.EXPECTED_SHORTFALL:
        return sample_expected_shortfall(portfolio_returns, p)
    if measure is RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL:
        return sample_expected_quadratic_shortfall(portfolio_returns, p, normalize_by_sqrt_t)
    raise ValueError(f"Unknown risk measure: {measure}")


# =============================================================================
# Fixed-weight evaluation of the reformulated programs
# =============================================================================

def evaluate_risk_program(
    returns: Union[pd.DataFrame, np.ndarray],
    weights: Union[pd.Series, np.ndarray],
    measure: Union[str, RiskMeasure],
    p: float = DEFAULT_TAIL_PROBABILITY,
    solver: Optional[str] = None,
    config: Optional[Dict] = None
) -> float:
    """
    Solve the LP/SOCP risk term alone with the weight vector held fixed.

    The result is the value the optimizer assigns to this portfolio, so it can
    be compared with the sorting/closed-form estimators above.

    Args:
        returns: Return matrix (T x n)
        weights: Fixed weight vector (n)
        measure: 'expected_shortfall' or 'expected_quadratic_shortfall'
        p: Tail probability
        solver: Backend name or None for the class default
        config: Optional configuration dict

    Returns:
        Optimal value of the risk program
    """
    if config is None:
        config = get_config()
    measure = RiskMeasure.parse(measure)
    p = effective_tail_probability(p)
    R = np.asarray(returns, dtype=float)
    w = np.asarray(weights, dtype=float)

    if measure is RiskMeasure.VARIANCE:
        return calculate_portfolio_variance(w, R)
    if measure is RiskMeasure.EXPECTED_SHORTFALL:
        term = expected_shortfall_term(R, w, p)
    else:
        normalize = bool(config.get('optimization', {}).get('eqs_normalize_by_sqrt_t', False))
        term = expected_quadratic_shortfall_term(R, w, p, normalize)

    threshold = term.auxiliary['threshold']
    program = CanonicalProgram(
        problem=cp.Problem(cp.Minimize(term.expression), term.constraints),
        weights=threshold,
        problem_class=term.problem_class,
        mode=OptimizationMode.PLAIN,
        assets=tuple(str(i) for i in range(R.shape[1])),
        mu=R.mean(axis=0),
        returns=R,
        terms={measure.value: term.expression},
        auxiliary=dict(term.auxiliary),
    )
    outcome = SolverAdapter(config).solve(program, solver)
    logger.debug(f"{measure.value} program value at fixed weights: {outcome.objective_value:.6g}")
    return outcome.objective_value
