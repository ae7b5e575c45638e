"""
Problem Builder Module

Compiles a PortfolioSpec and one return-sample window into a canonical convex
program expressed with cvxpy:

- mean_return: maximize mu'w (mu = column means of the window)
- variance: minimize w'Σw, dense quad form for small universes, factorized
  ||X_c w||^2 / (T-1) otherwise
- expected_shortfall: Rockafellar-Uryasev LP with threshold t and
  per-observation shortfall u_i >= max(0, t - r_i'w):
      -t + (1 / (T p)) * sum(u)
- expected_quadratic_shortfall: same auxiliary setup, L2 penalty through a
  second-order cone ||u||_2 <= z:
      -t + z / p
  or, with optimization.eqs_normalize_by_sqrt_t, the root-mean-square form
      -t + z / (p sqrt(T))

Ratio modes use the homogeneous substitution y = κw: minimize R(y) subject to
(mu - r_f)'y = 1 and 1'y = κ, with every other constraint scaled by κ.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import cvxpy as cp
import numpy as np
import pandas as pd

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.exceptions import (
    InvalidObjectiveCombination,
    ValidationError,
)
from portfolio_engine.optimization.spec_model import (
    Box,
    FullInvestment,
    Group,
    LongOnly,
    MeanReturn,
    OptimizationMode,
    PortfolioSpec,
    ReturnTarget,
    RiskMeasure,
    RiskObjective,
)

logger = logging.getLogger(__name__)


class ProblemClass(str, Enum):
    """Convex program classes, ordered by expressiveness."""
    LP = 'lp'
    QP = 'qp'
    SOCP = 'socp'

    @property
    def rank(self) -> int:
        return _CLASS_RANK[self]


_CLASS_RANK = {ProblemClass.LP: 0, ProblemClass.QP: 1, ProblemClass.SOCP: 2}

_MEASURE_CLASS = {
    RiskMeasure.VARIANCE: ProblemClass.QP,
    RiskMeasure.EXPECTED_SHORTFALL: ProblemClass.LP,
    RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL: ProblemClass.SOCP,
}


@dataclass
class RiskTerm:
    """A risk measure's objective expression with its auxiliary variables."""
    measure: RiskMeasure
    expression: cp.Expression
    constraints: List[cp.Constraint] = field(default_factory=list)
    auxiliary: Dict[str, cp.Variable] = field(default_factory=dict)

    @property
    def problem_class(self) -> ProblemClass:
        return _MEASURE_CLASS[self.measure]


@dataclass
class CanonicalProgram:
    """
    Solver-agnostic program built for exactly one optimizer invocation.

    Attributes:
        problem: cvxpy Problem
        weights: Decision vector (w, or y = κw in ratio modes)
        problem_class: LP, QP or SOCP
        mode: Construction strategy used
        assets: Asset order of ``weights``
        mu: Sample mean vector of the window
        returns: Window return matrix (T x n)
        kappa: Normalization scalar (ratio modes only)
        terms: Named objective expressions (for diagnostics)
        auxiliary: Auxiliary variables keyed by '<measure>.<name>'
    """
    problem: cp.Problem
    weights: cp.Variable
    problem_class: ProblemClass
    mode: OptimizationMode
    assets: Tuple[str, ...]
    mu: np.ndarray
    returns: np.ndarray
    kappa: Optional[cp.Variable] = None
    terms: Dict[str, cp.Expression] = field(default_factory=dict)
    auxiliary: Dict[str, cp.Variable] = field(default_factory=dict)

    @property
    def n_observations(self) -> int:
        return self.returns.shape[0]


# =============================================================================
# Estimation helpers
# =============================================================================

def prepare_window(spec: PortfolioSpec, returns: Union[pd.DataFrame, np.ndarray]) -> np.ndarray:
    """
    Validate a return window and return it as a float matrix in universe order.

    Raises:
        ValidationError: On column mismatch, empty window or missing values
    """
    frame = spec.align_returns(returns)
    values = frame.to_numpy(dtype=float)
    if values.shape[0] == 0:
        raise ValidationError("Return window is empty")
    if not np.isfinite(values).all():
        bad_rows = np.where(~np.isfinite(values).all(axis=1))[0]
        raise ValidationError(
            f"Return window contains missing or non-finite values in {len(bad_rows)} row(s)"
        )
    return values


def sample_mean(returns: np.ndarray) -> np.ndarray:
    return returns.mean(axis=0)


def sample_covariance(returns: np.ndarray) -> np.ndarray:
    """Unbiased sample covariance (ddof=1)."""
    if returns.shape[0] < 2:
        raise ValidationError("Variance needs at least two observations")
    return np.cov(returns, rowvar=False, ddof=1).reshape(returns.shape[1], returns.shape[1])


# =============================================================================
# Risk terms
# =============================================================================

def variance_term(
    returns: np.ndarray,
    w: Union[cp.Expression, np.ndarray],
    dense_max_assets: int = 250,
    regularization: float = 0.0
) -> RiskTerm:
    """
    Sample variance of portfolio returns as a quadratic expression.

    Small universes use w'Σw with an explicit covariance; larger ones use the
    centered return matrix so Σ is never formed.
    """
    T, n = returns.shape
    if T < 2:
        raise ValidationError("Variance needs at least two observations")

    if n <= dense_max_assets:
        covariance = sample_covariance(returns)
        expression = cp.quad_form(w, cp.psd_wrap(covariance))
    else:
        centered = returns - returns.mean(axis=0)
        expression = cp.sum_squares(centered @ w) / (T - 1)

    if regularization > 0:
        expression = expression + regularization * cp.sum_squares(w)

    return RiskTerm(RiskMeasure.VARIANCE, expression)


def expected_shortfall_term(
    returns: np.ndarray,
    w: Union[cp.Expression, np.ndarray],
    p: float
) -> RiskTerm:
    """
    Rockafellar-Uryasev linearization of Expected Shortfall.

    -t + (1 / (T p)) * sum(u),  u_i >= t - r_i'w,  u_i >= 0
    """
    T = returns.shape[0]
    t = cp.Variable(name='es_threshold')
    u = cp.Variable(T, nonneg=True, name='es_shortfall')
    constraints = [u >= t - returns @ w]
    expression = -t + cp.sum(u) / (T * p)
    return RiskTerm(
        RiskMeasure.EXPECTED_SHORTFALL,
        expression,
        constraints,
        {'threshold': t, 'shortfall': u},
    )


def expected_quadratic_shortfall_term(
    returns: np.ndarray,
    w: Union[cp.Expression, np.ndarray],
    p: float,
    normalize_by_sqrt_t: bool = False
) -> RiskTerm:
    """
    Expected Quadratic Shortfall as a second-order cone program.

    -t + z / p,  ||s||_2 <= z,  s_i >= t - r_i'w,  s_i >= 0

    With normalize_by_sqrt_t the norm is divided by sqrt(T), which turns z into
    the root-mean-square shortfall and keeps the value on the return scale
    for any window length.
    """
    T = returns.shape[0]
    t = cp.Variable(name='eqs_threshold')
    s = cp.Variable(T, nonneg=True, name='eqs_shortfall')
    z = cp.Variable(nonneg=True, name='eqs_norm')
    constraints = [
        s >= t - returns @ w,
        cp.SOC(z, s),
    ]
    scale = p * np.sqrt(T) if normalize_by_sqrt_t else p
    expression = -t + z / scale
    return RiskTerm(
        RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL,
        expression,
        constraints,
        {'threshold': t, 'shortfall': s, 'norm': z},
    )


# =============================================================================
# ProblemBuilder
# =============================================================================

class ProblemBuilder:
    """
    Translates a PortfolioSpec and a return window into a CanonicalProgram.

    A fresh program is built on every call; nothing is cached between calls.
    """

    def __init__(self, config: Optional[Dict] = None):
        if config is None:
            config = get_config()
        self.config = config
        self.opt_config = config.get('optimization', {})

        cov_config = self.opt_config.get('covariance', {})
        self.dense_max_assets = cov_config.get('dense_max_assets', 250)
        self.regularization = cov_config.get('regularization', 0.0)
        self.eqs_normalize_by_sqrt_t = bool(self.opt_config.get('eqs_normalize_by_sqrt_t', False))

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def build(
        self,
        spec: PortfolioSpec,
        returns: Union[pd.DataFrame, np.ndarray],
        mode: Union[str, OptimizationMode] = OptimizationMode.PLAIN
    ) -> CanonicalProgram:
        """
        Build the canonical program for one solve.

        Args:
            spec: Portfolio specification
            returns: Return window (T x n), columns aligned to spec.assets
            mode: 'plain' or one of the ratio modes

        Returns:
            CanonicalProgram

        Raises:
            ValidationError: Malformed window or spec without objectives
            InvalidObjectiveCombination: Ratio mode without a matching objective pair
        """
        mode = OptimizationMode.parse(mode)
        self.validate_objectives(spec, mode)
        R = prepare_window(spec, returns)
        mu = sample_mean(R)

        if mode.is_ratio:
            program = self._build_ratio(spec, R, mu, mode)
        else:
            program = self._build_plain(spec, R, mu)

        self.logger.debug(
            f"Built {program.problem_class.value.upper()} program: mode={mode.value}, "
            f"T={R.shape[0]}, n={R.shape[1]}, constraints={len(program.problem.constraints)}"
        )
        return program

    @staticmethod
    def validate_objectives(spec: PortfolioSpec, mode: OptimizationMode) -> None:
        """Check the objective set against the requested mode."""
        if not spec.objectives:
            raise ValidationError("Portfolio spec has no objectives")
        if not mode.is_ratio:
            return

        risk_objectives = spec.risk_objectives
        if not spec.return_objectives or len(risk_objectives) != 1:
            raise InvalidObjectiveCombination(
                f"{mode.value} requires a return objective and exactly one risk objective, "
                f"got {len(spec.return_objectives)} return and {len(risk_objectives)} risk"
            )
        if risk_objectives[0].measure is not mode.ratio_measure:
            raise InvalidObjectiveCombination(
                f"{mode.value} requires a {mode.ratio_measure.value} objective, "
                f"got {risk_objectives[0].measure.value}"
            )

    # -------------------------------------------------------------------------
    # Plain (additive utility) form
    # -------------------------------------------------------------------------

    def _build_plain(self, spec: PortfolioSpec, R: np.ndarray, mu: np.ndarray) -> CanonicalProgram:
        n = spec.n_assets
        w = cp.Variable(n, name='weights')

        constraints = self.emit_constraints(spec, w, mu)
        objective_value = 0
        terms: Dict[str, cp.Expression] = {}
        auxiliary: Dict[str, cp.Variable] = {}
        problem_class = ProblemClass.LP

        for objective in spec.return_objectives:
            objective_value = objective_value - objective.weight * (mu @ w)
        if spec.return_objectives:
            terms['mean'] = mu @ w

        for objective in spec.risk_objectives:
            term = self.risk_term(objective, R, w)
            objective_value = objective_value + objective.risk_aversion * term.expression
            constraints.extend(term.constraints)
            terms[term.measure.value] = term.expression
            auxiliary.update({f"{term.measure.value}.{k}": v for k, v in term.auxiliary.items()})
            if term.problem_class.rank > problem_class.rank:
                problem_class = term.problem_class

        problem = cp.Problem(cp.Minimize(objective_value), constraints)
        return CanonicalProgram(
            problem=problem,
            weights=w,
            problem_class=problem_class,
            mode=OptimizationMode.PLAIN,
            assets=spec.assets,
            mu=mu,
            returns=R,
            terms=terms,
            auxiliary=auxiliary,
        )

    # -------------------------------------------------------------------------
    # Ratio (homogeneous substitution) form
    # -------------------------------------------------------------------------

    def _build_ratio(
        self,
        spec: PortfolioSpec,
        R: np.ndarray,
        mu: np.ndarray,
        mode: OptimizationMode
    ) -> CanonicalProgram:
        n = spec.n_assets
        y = cp.Variable(n, name='scaled_weights')
        kappa = cp.Variable(name='kappa')

        excess = mu - spec.risk_free_rate
        constraints = [
            excess @ y == 1,
            cp.sum(y) == kappa,
        ]
        constraints.extend(self.emit_constraints(spec, y, mu, scale=kappa))

        risk_objective = spec.risk_objectives[0]
        term = self.risk_term(risk_objective, R, y)
        constraints.extend(term.constraints)

        problem = cp.Problem(cp.Minimize(term.expression), constraints)
        return CanonicalProgram(
            problem=problem,
            weights=y,
            problem_class=term.problem_class,
            mode=mode,
            assets=spec.assets,
            mu=mu,
            returns=R,
            kappa=kappa,
            terms={'mean': mu @ y, term.measure.value: term.expression},
            auxiliary={f"{term.measure.value}.{k}": v for k, v in term.auxiliary.items()},
        )

    # -------------------------------------------------------------------------
    # Shared pieces
    # -------------------------------------------------------------------------

    def risk_term(
        self,
        objective: RiskObjective,
        R: np.ndarray,
        w: Union[cp.Expression, np.ndarray]
    ) -> RiskTerm:
        """Dispatch a risk objective variant to its reformulation."""
        measure = objective.measure
        if measure is RiskMeasure.VARIANCE:
            return variance_term(R, w, self.dense_max_assets, self.regularization)
        if measure is RiskMeasure.EXPECTED_SHORTFALL:
            return expected_shortfall_term(R, w, objective.tail_probability)
        if measure is RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL:
            return expected_quadratic_shortfall_term(
                R, w, objective.tail_probability, self.eqs_normalize_by_sqrt_t
            )
        raise ValidationError(f"Unsupported risk measure: {measure}")

    def emit_constraints(
        self,
        spec: PortfolioSpec,
        w: cp.Variable,
        mu: np.ndarray,
        scale: Union[float, cp.Variable] = 1.0
    ) -> List[cp.Constraint]:
        """
        Emit linear rows for every constraint in the spec.

        Args:
            spec: Portfolio specification
            w: Weight variable (or scaled weights in ratio modes)
            mu: Mean vector shared with the return objective
            scale: Right-hand-side multiplier (κ in ratio modes)

        Returns:
            List of cvxpy constraints
        """
        homogeneous = not isinstance(scale, (int, float))
        rows: List[cp.Constraint] = []

        for constraint in spec.constraints:
            if isinstance(constraint, FullInvestment):
                # In ratio modes 1'y = κ is already part of the normalization
                if not homogeneous:
                    rows.append(cp.sum(w) == 1)

            elif isinstance(constraint, LongOnly):
                rows.append(w >= 0)

            elif isinstance(constraint, Box):
                idx = spec.indices(constraint.assets) if constraint.assets else list(range(spec.n_assets))
                if np.isfinite(constraint.lower):
                    rows.append(w[idx] >= constraint.lower * scale)
                if np.isfinite(constraint.upper):
                    rows.append(w[idx] <= constraint.upper * scale)

            elif isinstance(constraint, Group):
                group_sum = cp.sum(w[spec.indices(constraint.assets)])
                if np.isfinite(constraint.lower):
                    rows.append(group_sum >= constraint.lower * scale)
                if np.isfinite(constraint.upper):
                    rows.append(group_sum <= constraint.upper * scale)

            elif isinstance(constraint, ReturnTarget):
                if constraint.equality:
                    rows.append(mu @ w == constraint.target * scale)
                else:
                    rows.append(mu @ w >= constraint.target * scale)

            else:
                raise ValidationError(f"Unknown constraint variant: {constraint!r}")

            self.logger.debug(f"Emitted {constraint.tag} constraint")

        return rows
