"""
Efficient Frontier Module

Traces a discretized efficient frontier for one risk measure:

1. Anchor solves under the spec's constraint set: the maximum-mean portfolio
   (mean_return objective only) and the minimum-risk portfolio (risk objective
   only)
2. N target means spaced linearly between the two anchor means
3. For each target, minimize risk subject to the same constraints plus a
   return_target row at that level

Risk is non-decreasing along a correctly solved frontier. Decreases beyond
``frontier.monotonicity_tolerance`` are reported as violations, never smoothed.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.exceptions import SolverFailure, ValidationError
from portfolio_engine.optimization.optimizer import OptimizationResult, PortfolioOptimizer
from portfolio_engine.optimization.solver_adapter import SolverStatus
from portfolio_engine.optimization.spec_model import (
    DEFAULT_TAIL_PROBABILITY,
    MeanReturn,
    OptimizationMode,
    PortfolioSpec,
    ReturnTarget,
    RiskMeasure,
    RiskObjective,
    risk_objective,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrontierPoint:
    """One solved point of the frontier."""
    target: float
    mean: float
    risk: float
    weights: pd.Series
    status: SolverStatus
    solver: Optional[str]


@dataclass
class EfficientFrontier:
    """
    Frontier points in ascending target order.

    Attributes:
        measure: Risk measure on the risk axis
        points: Solved points, ascending target
        violations: Indices into ``points`` where risk dropped below the
            previous point by more than the tolerance
        failed_targets: (target, error message) for targets that did not solve
        tail_probability: p used for ES/EQS, None for variance
    """
    measure: RiskMeasure
    points: List[FrontierPoint] = field(default_factory=list)
    violations: List[int] = field(default_factory=list)
    failed_targets: List[Tuple[float, str]] = field(default_factory=list)
    tail_probability: Optional[float] = None

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        return iter(self.pairs())

    def pairs(self) -> List[Tuple[float, float]]:
        """(mean, risk) pairs in ascending target order."""
        return [(p.mean, p.risk) for p in self.points]

    @property
    def targets(self) -> np.ndarray:
        return np.array([p.target for p in self.points])

    @property
    def means(self) -> np.ndarray:
        return np.array([p.mean for p in self.points])

    @property
    def risks(self) -> np.ndarray:
        return np.array([p.risk for p in self.points])

    @property
    def weights(self) -> pd.DataFrame:
        """Point x asset weight matrix."""
        if not self.points:
            return pd.DataFrame()
        return pd.DataFrame([p.weights for p in self.points]).reset_index(drop=True)

    @property
    def is_monotonic(self) -> bool:
        return not self.violations

    def to_frame(self) -> pd.DataFrame:
        """
        Frontier as a table.

        Returns:
            DataFrame with columns ['target', 'mean', 'risk', 'status', 'solver']
            followed by one weight column per asset
        """
        if not self.points:
            return pd.DataFrame(columns=['target', 'mean', 'risk', 'status', 'solver'])
        summary = pd.DataFrame({
            'target': self.targets,
            'mean': self.means,
            'risk': self.risks,
            'status': [p.status.value for p in self.points],
            'solver': [p.solver for p in self.points],
        })
        return pd.concat([summary, self.weights], axis=1)

    def save(self, filepath: Union[str, Path], format: str = 'csv') -> Path:
        """
        Save the frontier table.

        Args:
            filepath: Output path
            format: 'csv' or 'parquet'

        Returns:
            Path written
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        frame = self.to_frame()
        if format == 'csv':
            frame.to_csv(filepath, index=False)
        elif format == 'parquet':
            frame.to_parquet(filepath, index=False)
        else:
            raise ValueError(f"Unsupported format: {format}. Use 'csv' or 'parquet'")
        logger.info(f"Saved {len(self)} frontier points to {filepath}")
        return filepath


class FrontierGenerator:
    """
    Sweeps return targets through the optimizer to trace a frontier.

    Examples:
        >>> generator = FrontierGenerator()
        >>> frontier = generator.generate(spec, returns, 'expected_shortfall', n_points=25)
        >>> frontier.to_frame()[['mean', 'risk']]
    """

    def __init__(
        self,
        optimizer: Optional[PortfolioOptimizer] = None,
        config: Optional[Dict] = None
    ):
        if config is None:
            config = optimizer.config if optimizer is not None else get_config()
        self.config = config
        self.frontier_config = config.get('frontier', {})
        self.optimizer = optimizer if optimizer is not None else PortfolioOptimizer(config)

        self.n_points = self.frontier_config.get('n_points', 25)
        self.target_equality = self.frontier_config.get('target_equality', True)
        self.tolerance = self.frontier_config.get('monotonicity_tolerance', 1e-7)
        self.degenerate_tolerance = self.frontier_config.get('degenerate_range_tolerance', 1e-8)
        self.n_jobs = self.frontier_config.get('n_jobs', 1)
        self.parallel_backend = self.frontier_config.get('parallel_backend', 'loky')
        self.default_tail_probability = config.get('optimization', {}).get(
            'default_tail_probability', DEFAULT_TAIL_PROBABILITY
        )

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def generate(
        self,
        spec: PortfolioSpec,
        returns: Union[pd.DataFrame, np.ndarray],
        measure: Union[str, RiskMeasure],
        n_points: Optional[int] = None,
        solver: Optional[str] = None,
        p: Optional[float] = None
    ) -> EfficientFrontier:
        """
        Generate the frontier.

        The spec's objectives are replaced; its constraints are kept. The tail
        probability comes from ``p``, else from a matching risk objective in
        the spec, else from config.

        Args:
            spec: Portfolio specification (constraints are used)
            returns: Return sample (T x n)
            measure: 'variance', 'expected_shortfall' or 'expected_quadratic_shortfall'
            n_points: Number of targets (frontier.n_points when None)
            solver: 'auto', a backend name, or None to use spec.solver
            p: Tail probability for ES/EQS

        Returns:
            EfficientFrontier

        Raises:
            ValidationError: Bad point count, spec or return sample
            SolverFailure: An anchor solve failed
        """
        measure = RiskMeasure.parse(measure)
        n_points = self.n_points if n_points is None else int(n_points)
        if n_points < 1:
            raise ValidationError(f"n_points must be positive, got {n_points}")

        risk = self._risk_objective(spec, measure, p)
        max_mean_spec = spec.with_objectives(MeanReturn())
        min_risk_spec = spec.with_objectives(risk)

        self.logger.info(f"Generating {measure.value} frontier with {n_points} points")
        max_mean = self.optimizer.optimize(max_mean_spec, returns, OptimizationMode.PLAIN, solver)
        min_risk = self.optimizer.optimize(min_risk_spec, returns, OptimizationMode.PLAIN, solver)

        lo, hi = min_risk.expected_return, max_mean.expected_return
        self.logger.info(f"Frontier anchors: min-risk mean={lo:.6g}, max mean={hi:.6g}")

        frontier = EfficientFrontier(measure=measure, tail_probability=risk.tail_probability)
        if n_points == 1 or hi - lo <= self.degenerate_tolerance * max(1.0, abs(hi)):
            # Degenerate mean range: the min-risk portfolio is the whole frontier
            frontier.points.append(self._to_point(lo, min_risk, measure))
            return frontier

        targets = np.linspace(lo, hi, n_points)
        outcomes = Parallel(n_jobs=self.n_jobs, backend=self.parallel_backend)(
            delayed(self._solve_target)(min_risk_spec, returns, float(target), solver)
            for target in targets
        )

        for target, result, error in outcomes:
            if error is not None:
                self.logger.warning(f"Failed to optimize for target return {target:.6g}: {error}")
                frontier.failed_targets.append((target, error))
                continue
            frontier.points.append(self._to_point(target, result, measure))

        frontier.violations = self._find_violations(frontier.risks)
        if frontier.violations:
            self.logger.warning(
                f"Risk decreased along the {measure.value} frontier at points {frontier.violations}"
            )
        self.logger.info(
            f"Computed {len(frontier)} points on efficient frontier "
            f"({len(frontier.failed_targets)} failed)"
        )
        return frontier

    def _risk_objective(
        self,
        spec: PortfolioSpec,
        measure: RiskMeasure,
        p: Optional[float]
    ) -> RiskObjective:
        if measure is RiskMeasure.VARIANCE:
            return risk_objective(measure)
        if p is None:
            matching = [o for o in spec.risk_objectives if o.measure is measure]
            p = matching[0].tail_probability if matching else self.default_tail_probability
        return risk_objective(measure, p=p)

    def _solve_target(
        self,
        spec: PortfolioSpec,
        returns: Union[pd.DataFrame, np.ndarray],
        target: float,
        solver: Optional[str]
    ) -> Tuple[float, Optional[OptimizationResult], Optional[str]]:
        target_spec = spec.add_constraint(ReturnTarget(target, equality=self.target_equality))
        try:
            result = self.optimizer.optimize(target_spec, returns, OptimizationMode.PLAIN, solver)
        except SolverFailure as e:
            return target, None, str(e)
        return target, result, None

    def _to_point(self, target: float, result: OptimizationResult, measure: RiskMeasure) -> FrontierPoint:
        return FrontierPoint(
            target=target,
            mean=result.expected_return,
            risk=result.components[measure.value],
            weights=result.weights,
            status=result.status,
            solver=result.solver,
        )

    def _find_violations(self, risks: np.ndarray) -> List[int]:
        violations = []
        for i in range(1, len(risks)):
            if risks[i] < risks[i - 1] - self.tolerance * max(1.0, abs(risks[i - 1])):
                violations.append(i)
        return violations


def generate_frontier(
    spec: PortfolioSpec,
    returns: Union[pd.DataFrame, np.ndarray],
    measure: Union[str, RiskMeasure],
    n_points: Optional[int] = None,
    solver: Optional[str] = None,
    config: Optional[Dict] = None
) -> EfficientFrontier:
    """Convenience wrapper around FrontierGenerator.generate."""
    return FrontierGenerator(config=config).generate(spec, returns, measure, n_points, solver)
