"""
Portfolio Specification Model

Immutable description of a portfolio problem: the asset universe, an ordered
set of linear constraints and an ordered set of return/risk objectives.
Nothing in this module computes; it only validates and stores.

Constraint and objective tags are resolved into closed variants when they are
added, so a misspelled tag fails at construction rather than at solve time.

Example:
    >>> spec = (
    ...     PortfolioSpec.from_assets(['A', 'B', 'C'])
    ...     .add_constraint('full_investment')
    ...     .add_constraint('long_only')
    ...     .add_objective('mean_return')
    ...     .add_objective('expected_shortfall', p=0.05, risk_aversion=2.0)
    ... )
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, Iterable, Optional, Tuple, Type, Union

import numpy as np
import pandas as pd

from portfolio_engine.optimization.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TAIL_PROBABILITY = 0.05


# =============================================================================
# Enumerations
# =============================================================================

class RiskMeasure(str, Enum):
    """Risk measures understood by the problem builder."""
    VARIANCE = 'variance'
    EXPECTED_SHORTFALL = 'expected_shortfall'
    EXPECTED_QUADRATIC_SHORTFALL = 'expected_quadratic_shortfall'

    @classmethod
    def parse(cls, value: Union[str, 'RiskMeasure']) -> 'RiskMeasure':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {
            'var': cls.VARIANCE,
            'es': cls.EXPECTED_SHORTFALL,
            'cvar': cls.EXPECTED_SHORTFALL,
            'eqs': cls.EXPECTED_QUADRATIC_SHORTFALL,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown risk measure: {value!r}") from None


class OptimizationMode(str, Enum):
    """Problem-construction strategy selected per optimizer call."""
    PLAIN = 'plain'
    MAX_SHARPE_RATIO = 'maxSharpeRatio'
    MAX_ES_RATIO = 'maxESRatio'
    MAX_EQS_RATIO = 'maxEQSRatio'

    @property
    def ratio_measure(self) -> Optional[RiskMeasure]:
        return _RATIO_MEASURES.get(self)

    @property
    def is_ratio(self) -> bool:
        return self is not OptimizationMode.PLAIN

    @classmethod
    def parse(cls, value: Union[str, 'OptimizationMode', None]) -> 'OptimizationMode':
        if value is None:
            return cls.PLAIN
        if isinstance(value, cls):
            return value
        for mode in cls:
            if str(value).lower() in (mode.value.lower(), mode.name.lower()):
                return mode
        raise ValidationError(f"Unknown optimization mode: {value!r}")


_RATIO_MEASURES = {
    OptimizationMode.MAX_SHARPE_RATIO: RiskMeasure.VARIANCE,
    OptimizationMode.MAX_ES_RATIO: RiskMeasure.EXPECTED_SHORTFALL,
    OptimizationMode.MAX_EQS_RATIO: RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL,
}


def effective_tail_probability(p: float) -> float:
    """
    Normalize a tail probability.

    Values above 0.5 are read as confidence levels and converted to 1 - p,
    so p=0.95 and p=0.05 describe the same tail.

    Raises:
        ValidationError: If p is not strictly between 0 and 1
    """
    try:
        p = float(p)
    except (TypeError, ValueError):
        raise ValidationError(f"Tail probability must be a number, got {p!r}") from None
    if not 0.0 < p < 1.0:
        raise ValidationError(f"Tail probability must lie in (0, 1), got {p}")
    if p > 0.5:
        logger.debug(f"Tail probability {p} > 0.5 interpreted as {1.0 - p:.6g}")
        return 1.0 - p
    return p


# =============================================================================
# Constraints
# =============================================================================

@dataclass(frozen=True)
class FullInvestment:
    """sum(w) = 1"""
    tag: ClassVar[str] = 'full_investment'


@dataclass(frozen=True)
class LongOnly:
    """w >= 0"""
    tag: ClassVar[str] = 'long_only'


@dataclass(frozen=True)
class Box:
    """
    Per-asset bounds lower <= w_i <= upper.

    Applies to every asset when ``assets`` is None.
    """
    lower: float = -np.inf
    upper: float = np.inf
    assets: Optional[Tuple[str, ...]] = None
    tag: ClassVar[str] = 'box'

    def __post_init__(self):
        if self.assets is not None:
            object.__setattr__(self, 'assets', _as_asset_tuple(self.assets))
        _check_interval(self.lower, self.upper, 'box')


@dataclass(frozen=True)
class Group:
    """lower <= sum(w[assets]) <= upper"""
    assets: Tuple[str, ...]
    lower: float = -np.inf
    upper: float = np.inf
    tag: ClassVar[str] = 'group'

    def __post_init__(self):
        object.__setattr__(self, 'assets', _as_asset_tuple(self.assets))
        if not self.assets:
            raise ValidationError("group constraint needs at least one asset")
        _check_interval(self.lower, self.upper, 'group')


@dataclass(frozen=True)
class ReturnTarget:
    """mu'w >= target, or mu'w == target when ``equality`` is set."""
    target: float
    equality: bool = False
    tag: ClassVar[str] = 'return_target'

    def __post_init__(self):
        if not np.isfinite(self.target):
            raise ValidationError(f"return_target must be finite, got {self.target}")


Constraint = Union[FullInvestment, LongOnly, Box, Group, ReturnTarget]

CONSTRAINT_TYPES: Dict[str, Type] = {
    cls.tag: cls for cls in (FullInvestment, LongOnly, Box, Group, ReturnTarget)
}


# =============================================================================
# Objectives
# =============================================================================

@dataclass(frozen=True)
class MeanReturn:
    """Maximize weight * mu'w."""
    weight: float = 1.0
    tag: ClassVar[str] = 'mean_return'

    def __post_init__(self):
        _check_non_negative(self.weight, 'weight')


@dataclass(frozen=True)
class RiskObjective:
    """Base for risk terms; minimize risk_aversion * R(w)."""
    risk_aversion: float = 1.0
    measure: ClassVar[RiskMeasure]

    def __post_init__(self):
        _check_non_negative(self.risk_aversion, 'risk_aversion')

    @property
    def tail_probability(self) -> Optional[float]:
        return None


@dataclass(frozen=True)
class Variance(RiskObjective):
    measure: ClassVar[RiskMeasure] = RiskMeasure.VARIANCE
    tag: ClassVar[str] = RiskMeasure.VARIANCE.value


@dataclass(frozen=True)
class ExpectedShortfall(RiskObjective):
    p: float = DEFAULT_TAIL_PROBABILITY
    measure: ClassVar[RiskMeasure] = RiskMeasure.EXPECTED_SHORTFALL
    tag: ClassVar[str] = RiskMeasure.EXPECTED_SHORTFALL.value

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, 'p', effective_tail_probability(self.p))

    @property
    def tail_probability(self) -> float:
        return self.p


@dataclass(frozen=True)
class ExpectedQuadraticShortfall(RiskObjective):
    p: float = DEFAULT_TAIL_PROBABILITY
    measure: ClassVar[RiskMeasure] = RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL
    tag: ClassVar[str] = RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL.value

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, 'p', effective_tail_probability(self.p))

    @property
    def tail_probability(self) -> float:
        return self.p


Objective = Union[MeanReturn, Variance, ExpectedShortfall, ExpectedQuadraticShortfall]

OBJECTIVE_TYPES: Dict[str, Type] = {
    cls.tag: cls for cls in (MeanReturn, Variance, ExpectedShortfall, ExpectedQuadraticShortfall)
}

RISK_OBJECTIVE_TYPES: Dict[RiskMeasure, Type[RiskObjective]] = {
    RiskMeasure.VARIANCE: Variance,
    RiskMeasure.EXPECTED_SHORTFALL: ExpectedShortfall,
    RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL: ExpectedQuadraticShortfall,
}


def risk_objective(measure: Union[str, RiskMeasure], **params) -> RiskObjective:
    """Build the risk objective variant for a measure tag."""
    cls = RISK_OBJECTIVE_TYPES[RiskMeasure.parse(measure)]
    return _instantiate(cls, params)


def parse_constraint(constraint: Union[str, Constraint], **params) -> Constraint:
    """Resolve a constraint tag (or pass through a variant instance)."""
    if isinstance(constraint, tuple(CONSTRAINT_TYPES.values())):
        if params:
            raise ValidationError("Parameters can only be given together with a constraint tag")
        return constraint
    cls = CONSTRAINT_TYPES.get(str(constraint).strip().lower())
    if cls is None:
        raise ValidationError(
            f"Unknown constraint type: {constraint!r}. Known types: {sorted(CONSTRAINT_TYPES)}"
        )
    return _instantiate(cls, params)


def parse_objective(objective: Union[str, Objective], **params) -> Objective:
    """Resolve an objective tag (or pass through a variant instance)."""
    if isinstance(objective, (MeanReturn, RiskObjective)):
        if params:
            raise ValidationError("Parameters can only be given together with an objective tag")
        return objective
    key = str(objective).strip().lower()
    cls = OBJECTIVE_TYPES.get(key)
    if cls is None:
        try:
            cls = RISK_OBJECTIVE_TYPES[RiskMeasure.parse(key)]
        except ValidationError:
            raise ValidationError(
                f"Unknown objective type: {objective!r}. Known types: {sorted(OBJECTIVE_TYPES)}"
            ) from None
    return _instantiate(cls, params)


# =============================================================================
# PortfolioSpec
# =============================================================================

@dataclass(frozen=True)
class PortfolioSpec:
    """
    Immutable portfolio specification.

    Attributes:
        assets: Ordered, unique asset identifiers
        constraints: Ordered constraint variants
        objectives: Ordered objective variants
        solver: 'auto' (problem-class default) or an explicit backend name
        risk_free_rate: Per-period rate subtracted from mu in ratio modes
    """
    assets: Tuple[str, ...]
    constraints: Tuple[Constraint, ...] = ()
    objectives: Tuple[Objective, ...] = ()
    solver: str = 'auto'
    risk_free_rate: float = 0.0
    _index: Dict[str, int] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        assets = _as_asset_tuple(self.assets)
        if not assets:
            raise ValidationError("Asset universe must not be empty")
        duplicates = sorted({a for a in assets if assets.count(a) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate asset identifiers: {duplicates}")
        object.__setattr__(self, 'assets', assets)
        object.__setattr__(self, 'constraints', tuple(self.constraints))
        object.__setattr__(self, 'objectives', tuple(self.objectives))
        object.__setattr__(self, '_index', {a: i for i, a in enumerate(assets)})
        if not isinstance(self.solver, str) or not self.solver.strip():
            raise ValidationError(f"Solver must be 'auto' or a backend name, got {self.solver!r}")
        if not np.isfinite(self.risk_free_rate):
            raise ValidationError(f"risk_free_rate must be finite, got {self.risk_free_rate}")
        self._validate_constraints()

    # -------------------------------------------------------------------------
    # Construction API
    # -------------------------------------------------------------------------

    @classmethod
    def from_assets(
        cls,
        assets: Iterable[str],
        solver: str = 'auto',
        risk_free_rate: float = 0.0
    ) -> 'PortfolioSpec':
        return cls(assets=tuple(assets), solver=solver, risk_free_rate=risk_free_rate)

    def add_constraint(self, constraint: Union[str, Constraint], **params) -> 'PortfolioSpec':
        """
        Return a new spec with one more constraint.

        Args:
            constraint: Constraint variant or tag ('full_investment', 'long_only',
                'box', 'group', 'return_target')
            **params: Variant parameters when a tag is given

        Returns:
            New PortfolioSpec
        """
        resolved = parse_constraint(constraint, **params)
        logger.debug(f"Adding constraint: {resolved}")
        return dataclasses.replace(self, constraints=self.constraints + (resolved,))

    def add_objective(self, objective: Union[str, Objective], **params) -> 'PortfolioSpec':
        """
        Return a new spec with one more objective.

        Args:
            objective: Objective variant or tag ('mean_return', 'variance',
                'expected_shortfall', 'expected_quadratic_shortfall')
            **params: Variant parameters when a tag is given

        Returns:
            New PortfolioSpec
        """
        resolved = parse_objective(objective, **params)
        logger.debug(f"Adding objective: {resolved}")
        return dataclasses.replace(self, objectives=self.objectives + (resolved,))

    def with_solver(self, solver: str) -> 'PortfolioSpec':
        return dataclasses.replace(self, solver=solver)

    def with_objectives(self, *objectives: Objective) -> 'PortfolioSpec':
        """Same universe and constraints, objectives replaced."""
        return dataclasses.replace(self, objectives=tuple(parse_objective(o) for o in objectives))

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def n_assets(self) -> int:
        return len(self.assets)

    @property
    def return_objectives(self) -> Tuple[MeanReturn, ...]:
        return tuple(o for o in self.objectives if isinstance(o, MeanReturn))

    @property
    def risk_objectives(self) -> Tuple[RiskObjective, ...]:
        return tuple(o for o in self.objectives if isinstance(o, RiskObjective))

    @property
    def has_full_investment(self) -> bool:
        return any(isinstance(c, FullInvestment) for c in self.constraints)

    def indices(self, assets: Iterable[str]) -> list:
        return [self._index[a] for a in assets]

    def effective_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Intersect long_only and box constraints into per-asset bounds.

        Returns:
            Tuple of (lower, upper) arrays in universe order
        """
        lower = np.full(self.n_assets, -np.inf)
        upper = np.full(self.n_assets, np.inf)
        for constraint in self.constraints:
            if isinstance(constraint, LongOnly):
                lower = np.maximum(lower, 0.0)
            elif isinstance(constraint, Box):
                idx = self.indices(constraint.assets) if constraint.assets else slice(None)
                lower[idx] = np.maximum(lower[idx], constraint.lower)
                upper[idx] = np.minimum(upper[idx], constraint.upper)
        return lower, upper

    def align_returns(self, returns: Union[pd.DataFrame, np.ndarray]) -> pd.DataFrame:
        """
        Align a return sample to the asset universe.

        A DataFrame whose columns are a permutation of the universe is
        reordered; a plain array must already have one column per asset.

        Raises:
            ValidationError: On column mismatch
        """
        if isinstance(returns, pd.DataFrame):
            columns = [str(c) for c in returns.columns]
            if len(columns) != self.n_assets:
                raise ValidationError(
                    f"Return sample has {len(columns)} columns, universe has {self.n_assets} assets"
                )
            if columns == list(self.assets):
                return returns
            missing = sorted(set(self.assets) - set(columns))
            if missing:
                raise ValidationError(f"Return sample is missing assets: {missing}")
            renamed = returns.copy()
            renamed.columns = columns
            return renamed[list(self.assets)]

        values = np.asarray(returns, dtype=float)
        if values.ndim != 2 or values.shape[1] != self.n_assets:
            raise ValidationError(
                f"Return matrix shape {values.shape} does not match {self.n_assets} assets"
            )
        return pd.DataFrame(values, columns=list(self.assets))

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate_constraints(self) -> None:
        for constraint in self.constraints:
            if not isinstance(constraint, tuple(CONSTRAINT_TYPES.values())):
                raise ValidationError(f"Unknown constraint variant: {constraint!r}")
            subset = getattr(constraint, 'assets', None)
            if subset:
                unknown = sorted(set(subset) - set(self.assets))
                if unknown:
                    raise ValidationError(f"{constraint.tag} constraint references unknown assets: {unknown}")

        for objective in self.objectives:
            if not isinstance(objective, (MeanReturn, RiskObjective)):
                raise ValidationError(f"Unknown objective variant: {objective!r}")

        lower, upper = self.effective_bounds()
        conflicting = [a for a, lo, hi in zip(self.assets, lower, upper) if lo > hi]
        if conflicting:
            raise ValidationError(f"Conflicting bounds for assets: {conflicting}")

        if self.has_full_investment:
            if lower.sum() > 1.0 + 1e-12:
                raise ValidationError(
                    f"Lower bounds sum to {lower.sum():.4f} > 1 under full investment"
                )
            if upper.sum() < 1.0 - 1e-12:
                raise ValidationError(
                    f"Upper bounds sum to {upper.sum():.4f} < 1 under full investment"
                )


# =============================================================================
# Helpers
# =============================================================================

def _as_asset_tuple(assets) -> Tuple[str, ...]:
    if isinstance(assets, str):
        return (assets,)
    return tuple(str(a) for a in assets)


def _check_interval(lower: float, upper: float, name: str) -> None:
    if np.isnan(lower) or np.isnan(upper):
        raise ValidationError(f"{name} bounds must not be NaN")
    if lower > upper:
        raise ValidationError(f"{name} lower bound {lower} exceeds upper bound {upper}")


def _check_non_negative(value: float, name: str) -> None:
    if not np.isfinite(value) or value < 0:
        raise ValidationError(f"{name} must be a finite non-negative number, got {value}")


def _instantiate(cls: Type, params: Dict):
    try:
        return cls(**params)
    except TypeError as e:
        raise ValidationError(f"Invalid parameters for {cls.tag}: {e}") from None
