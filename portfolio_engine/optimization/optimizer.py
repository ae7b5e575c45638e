"""
Portfolio Optimization Module

Single-period entry point of the engine:

- Validates the spec's objective set against the requested mode
- Builds a fresh canonical program for the return window (ProblemBuilder)
- Dispatches it to a backend by problem class (SolverAdapter)
- Recovers weights (w = y / κ in ratio modes) and reports realized
  objective components evaluated by the sample estimators

Supported modes: plain (additive quadratic-utility form), maxSharpeRatio,
maxESRatio and maxEQSRatio (homogeneous substitution).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import joblib
import numpy as np
import pandas as pd

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.exceptions import (
    InfeasibleProblem,
    InfeasibleRatio,
    SolverFailure,
    SolverTimeout,
)
from portfolio_engine.optimization.problem_builder import CanonicalProgram, ProblemBuilder
from portfolio_engine.optimization.risk_measures import calculate_portfolio_return, realized_risk
from portfolio_engine.optimization.solver_adapter import SolveOutcome, SolverAdapter, SolverStatus
from portfolio_engine.optimization.spec_model import (
    Box,
    FullInvestment,
    Group,
    LongOnly,
    OptimizationMode,
    PortfolioSpec,
    RiskMeasure,
)

logger = logging.getLogger(__name__)


# =============================================================================
# OptimizationResult Dataclass
# =============================================================================

@dataclass(frozen=True)
class OptimizationResult:
    """
    Encapsulates one optimizer invocation.

    Attributes:
        weights: Asset -> weight mapping, in universe order
        components: Realized objective components ('mean', one entry per risk
            measure in the spec, 'composite')
        solver: Backend that produced the weights
        status: Normalized solver status
        mode: Construction strategy used
        metadata: Diagnostics (issues, constraints_satisfied, kappa, solve_time,
            attempted backends, error message for failed entries)
    """
    weights: pd.Series
    components: Dict[str, float]
    solver: Optional[str]
    status: SolverStatus
    mode: OptimizationMode = OptimizationMode.PLAIN
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # The result owns its containers; callers mutating the inputs never
        # reach a stored entry. Treat the attributes as read-only.
        object.__setattr__(self, 'weights', self.weights.copy())
        object.__setattr__(self, 'components', dict(self.components))
        object.__setattr__(self, 'metadata', dict(self.metadata))

    @property
    def expected_return(self) -> float:
        return self.components.get('mean', np.nan)

    @property
    def composite(self) -> float:
        return self.components.get('composite', np.nan)

    @property
    def succeeded(self) -> bool:
        return self.status.succeeded

    @property
    def constraints_satisfied(self) -> bool:
        return bool(self.metadata.get('constraints_satisfied', False))

    @classmethod
    def failed(
        cls,
        assets: Tuple[str, ...],
        error: SolverFailure,
        mode: OptimizationMode = OptimizationMode.PLAIN,
        weights: Optional[pd.Series] = None
    ) -> 'OptimizationResult':
        """
        Build a failed entry from a solver failure.

        Args:
            assets: Universe order for the weight vector
            error: The failure that was raised
            mode: Construction strategy that was attempted
            weights: Weights to carry (e.g. previous period), NaN when None

        Returns:
            OptimizationResult with a failure status
        """
        if weights is None:
            weights = pd.Series(np.nan, index=list(assets))
        return cls(
            weights=weights,
            components={},
            solver=error.solver,
            status=status_from_error(error),
            mode=mode,
            metadata={'error': str(error), 'constraints_satisfied': False},
        )

    def save(self, filepath: Union[str, Path]) -> Path:
        """Pickle the result with joblib."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self, filepath)
        logger.info(f"Saved optimization result to {filepath}")
        return filepath

    @classmethod
    def load(cls, filepath: Union[str, Path]) -> 'OptimizationResult':
        result = joblib.load(Path(filepath))
        if not isinstance(result, cls):
            raise TypeError(f"{filepath} does not contain an OptimizationResult")
        return result


def status_from_error(error: SolverFailure) -> SolverStatus:
    """Map a solver failure onto the normalized status it represents."""
    if isinstance(error, InfeasibleRatio):
        return SolverStatus.INFEASIBLE_RATIO
    if isinstance(error, InfeasibleProblem):
        if error.status == SolverStatus.UNBOUNDED.value:
            return SolverStatus.UNBOUNDED
        return SolverStatus.INFEASIBLE
    if isinstance(error, SolverTimeout):
        return SolverStatus.TIMEOUT
    return SolverStatus.NUMERICAL_FAILURE


# =============================================================================
# PortfolioOptimizer Class
# =============================================================================

class PortfolioOptimizer:
    """
    Main portfolio optimizer class.

    Stateless between calls: every ``optimize`` builds its own program, so one
    instance can be shared by the backtest engine and the frontier generator.

    Examples:
        >>> from portfolio_engine.optimization import PortfolioOptimizer, PortfolioSpec
        >>>
        >>> spec = (
        ...     PortfolioSpec.from_assets(returns.columns)
        ...     .add_constraint('full_investment')
        ...     .add_constraint('long_only')
        ...     .add_objective('mean_return')
        ...     .add_objective('variance')
        ... )
        >>> optimizer = PortfolioOptimizer()
        >>> result = optimizer.optimize(spec, returns, mode='maxSharpeRatio')
        >>> print(f"Optimal weights: {result.weights}")
        >>> print(f"Sharpe ratio: {result.composite:.2f}")
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        builder: Optional[ProblemBuilder] = None,
        adapter: Optional[SolverAdapter] = None
    ):
        """
        Initialize portfolio optimizer.

        Args:
            config: Optional configuration dict
            builder: Optional ProblemBuilder (built from config when None)
            adapter: Optional SolverAdapter (built from config when None)
        """
        if config is None:
            config = get_config()
        self.config = config
        self.opt_config = config.get('optimization', {})

        self.builder = builder if builder is not None else ProblemBuilder(config)
        self.adapter = adapter if adapter is not None else SolverAdapter(config)

        self.kappa_tolerance = self.opt_config.get('ratio', {}).get('kappa_tolerance', 1e-9)
        self.weight_tolerance = self.opt_config.get('weight_tolerance', 1e-4)

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def optimize(
        self,
        spec: PortfolioSpec,
        returns: Union[pd.DataFrame, np.ndarray],
        mode: Union[str, OptimizationMode] = OptimizationMode.PLAIN,
        solver: Optional[str] = None
    ) -> OptimizationResult:
        """
        Run one single-period optimization.

        Args:
            spec: Portfolio specification
            returns: Return window (T x n)
            mode: 'plain', 'maxSharpeRatio', 'maxESRatio' or 'maxEQSRatio'
            solver: 'auto', a backend name, or None to use spec.solver

        Returns:
            OptimizationResult

        Raises:
            ValidationError: Malformed spec or return window
            InvalidObjectiveCombination: Ratio mode without a matching objective pair
            UnsupportedProblemClass: Backend cannot express the program
            InfeasibleProblem: Backend reports infeasible/unbounded
            InfeasibleRatio: Ratio normalization collapsed (κ ≈ 0)
            SolverTimeout: Backend hit its time limit
            SolverNumericalFailure: Backend did not converge
        """
        mode = OptimizationMode.parse(mode)
        solver = spec.solver if solver is None else solver

        program = self.builder.build(spec, returns, mode)
        self.logger.info(
            f"Optimizing {spec.n_assets} assets over {program.n_observations} observations "
            f"(mode={mode.value}, class={program.problem_class.value.upper()})"
        )

        try:
            outcome = self.adapter.solve(program, solver)
        except InfeasibleProblem as e:
            if mode.is_ratio and not isinstance(e, InfeasibleRatio):
                raise InfeasibleRatio(
                    f"{mode.value}: no portfolio reaches a positive excess return ({e})",
                    solver=e.solver,
                    status=SolverStatus.INFEASIBLE_RATIO.value,
                ) from e
            raise

        weights, kappa = self._recover_weights(program, outcome)
        components = self._components(spec, program, weights, outcome)
        is_valid, issues = self.validate_weights(spec, weights)
        if not is_valid:
            self.logger.warning(f"Optimization constraints not fully satisfied: {issues}")

        metadata: Dict[str, Any] = {
            'issues': issues,
            'constraints_satisfied': is_valid,
            'solve_time': outcome.solve_time,
            'attempted': list(outcome.attempted),
            'problem_class': program.problem_class.value,
            'n_observations': program.n_observations,
        }
        if kappa is not None:
            metadata['kappa'] = kappa

        self.logger.info(
            f"{outcome.solver} finished with status {outcome.status.value}: "
            f"mean={components['mean']:.6g}, composite={components['composite']:.6g}"
        )

        return OptimizationResult(
            weights=pd.Series(weights, index=list(spec.assets)),
            components=components,
            solver=outcome.solver,
            status=outcome.status,
            mode=mode,
            metadata=metadata,
        )

    # -------------------------------------------------------------------------
    # Result assembly
    # -------------------------------------------------------------------------

    def _recover_weights(
        self,
        program: CanonicalProgram,
        outcome: SolveOutcome
    ) -> Tuple[np.ndarray, Optional[float]]:
        if program.kappa is None:
            return outcome.weights, None

        kappa = program.kappa.value
        kappa = None if kappa is None else float(kappa)
        if kappa is None or not np.isfinite(kappa) or kappa <= self.kappa_tolerance:
            self.logger.error(f"{program.mode.value}: normalization scalar κ={kappa} is not positive")
            raise InfeasibleRatio(
                f"{program.mode.value} is ill-posed: normalization scalar κ={kappa}",
                solver=outcome.solver,
                status=SolverStatus.INFEASIBLE_RATIO.value,
            )
        return outcome.weights / kappa, kappa

    def _components(
        self,
        spec: PortfolioSpec,
        program: CanonicalProgram,
        weights: np.ndarray,
        outcome: SolveOutcome
    ) -> Dict[str, float]:
        R = program.returns
        components: Dict[str, float] = {'mean': calculate_portfolio_return(weights, program.mu)}
        for objective in spec.risk_objectives:
            components[objective.measure.value] = realized_risk(
                objective.measure, weights, R, objective.tail_probability,
                self.builder.eqs_normalize_by_sqrt_t
            )

        if not program.mode.is_ratio:
            components['composite'] = outcome.objective_value
            return components

        measure = program.mode.ratio_measure
        risk = components[measure.value]
        if measure is RiskMeasure.VARIANCE:
            risk = np.sqrt(max(risk, 0.0))
        excess = components['mean'] - spec.risk_free_rate
        components['composite'] = excess / risk if risk > 0 else np.nan
        return components

    def validate_weights(
        self,
        spec: PortfolioSpec,
        weights: np.ndarray,
        tolerance: Optional[float] = None
    ) -> Tuple[bool, List[str]]:
        """
        Validate optimized weights against the spec's linear constraints.

        Args:
            spec: Portfolio specification
            weights: Optimized weights in universe order
            tolerance: Absolute tolerance (weight_tolerance from config when None)

        Returns:
            Tuple of (is_valid, issues list)
        """
        tolerance = self.weight_tolerance if tolerance is None else tolerance
        weights = np.asarray(weights, dtype=float)
        issues = []

        # Check for NaN or inf
        if not np.all(np.isfinite(weights)):
            issues.append("Weights contain NaN or inf values")
            return False, issues

        for constraint in spec.constraints:
            if isinstance(constraint, FullInvestment):
                if abs(weights.sum() - 1.0) > tolerance:
                    issues.append(f"Weights sum to {weights.sum():.6f}, expected 1.0")
            elif isinstance(constraint, LongOnly):
                if np.any(weights < -tolerance):
                    issues.append(f"Negative weights under long_only: min {weights.min():.6f}")
            elif isinstance(constraint, Box):
                subset = weights[spec.indices(constraint.assets)] if constraint.assets else weights
                if np.any(subset < constraint.lower - tolerance):
                    issues.append(f"Some weights below box minimum {constraint.lower}")
                if np.any(subset > constraint.upper + tolerance):
                    issues.append(f"Some weights above box maximum {constraint.upper}")
            elif isinstance(constraint, Group):
                group_sum = weights[spec.indices(constraint.assets)].sum()
                if not constraint.lower - tolerance <= group_sum <= constraint.upper + tolerance:
                    issues.append(
                        f"Group {list(constraint.assets)} sums to {group_sum:.6f}, "
                        f"outside [{constraint.lower}, {constraint.upper}]"
                    )

        is_valid = len(issues) == 0
        return is_valid, issues


# =============================================================================
# Convenience function
# =============================================================================

def optimize_portfolio(
    spec: PortfolioSpec,
    returns: Union[pd.DataFrame, np.ndarray],
    solver: Optional[str] = None,
    mode: Union[str, OptimizationMode] = OptimizationMode.PLAIN,
    config: Optional[Dict] = None
) -> OptimizationResult:
    """
    One-shot optimizer call: (spec, returns, solver choice, mode) -> result.

    Args:
        spec: Portfolio specification
        returns: Return window (T x n)
        solver: 'auto', a backend name, or None to use spec.solver
        mode: Optimization mode
        config: Optional configuration dict

    Returns:
        OptimizationResult
    """
    return PortfolioOptimizer(config).optimize(spec, returns, mode=mode, solver=solver)
