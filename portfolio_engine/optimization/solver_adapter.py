"""
Solver Adapter Module

Dispatches a CanonicalProgram to a cvxpy backend and normalizes the outcome.

The default backend for each problem class comes from an explicit mapping
(``optimization.solvers.defaults`` in config.yaml), never from cvxpy's own
automatic choice. An explicit backend that cannot express the program's class
is rejected with UnsupportedProblemClass before anything runs.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

import cvxpy as cp
import numpy as np

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.exceptions import (
    InfeasibleProblem,
    SolverFailure,
    SolverNumericalFailure,
    SolverTimeout,
    SolverUnavailable,
    UnsupportedProblemClass,
)
from portfolio_engine.optimization.problem_builder import CanonicalProgram, ProblemClass

logger = logging.getLogger(__name__)

AUTO = 'auto'

_LP = frozenset({ProblemClass.LP})
_QP = frozenset({ProblemClass.LP, ProblemClass.QP})
_CONIC = frozenset({ProblemClass.LP, ProblemClass.QP, ProblemClass.SOCP})

# Problem classes each backend can express once cvxpy has canonicalized the program
SOLVER_CAPABILITIES: Dict[str, FrozenSet[ProblemClass]] = {
    'SCIPY': _LP,
    'GLPK': _LP,
    'HIGHS': _QP,
    'OSQP': _QP,
    'PIQP': _QP,
    'CLARABEL': _CONIC,
    'ECOS': _CONIC,
    'SCS': _CONIC,
    'MOSEK': _CONIC,
    'GUROBI': _CONIC,
    'CPLEX': _CONIC,
}

DEFAULT_SOLVERS: Dict[ProblemClass, str] = {
    ProblemClass.LP: 'SCIPY',
    ProblemClass.QP: 'OSQP',
    ProblemClass.SOCP: 'CLARABEL',
}

# Option name each backend uses for a wall-clock limit in seconds
_TIME_LIMIT_OPTIONS = {
    'CLARABEL': 'time_limit',
    'OSQP': 'time_limit',
    'SCS': 'time_limit_secs',
    'HIGHS': 'time_limit',
    'GUROBI': 'TimeLimit',
    'PIQP': 'max_time',
}


class SolverStatus(str, Enum):
    """Backend-independent solve status."""
    OPTIMAL = 'optimal'
    OPTIMAL_INACCURATE = 'optimal_inaccurate'
    INFEASIBLE = 'infeasible'
    UNBOUNDED = 'unbounded'
    INFEASIBLE_RATIO = 'infeasible_ratio'
    TIMEOUT = 'timeout'
    NUMERICAL_FAILURE = 'numerical_failure'

    @property
    def succeeded(self) -> bool:
        return self in (SolverStatus.OPTIMAL, SolverStatus.OPTIMAL_INACCURATE)


_CVXPY_STATUS = {
    cp.OPTIMAL: SolverStatus.OPTIMAL,
    cp.OPTIMAL_INACCURATE: SolverStatus.OPTIMAL_INACCURATE,
    cp.INFEASIBLE: SolverStatus.INFEASIBLE,
    cp.INFEASIBLE_INACCURATE: SolverStatus.INFEASIBLE,
    cp.UNBOUNDED: SolverStatus.UNBOUNDED,
    cp.UNBOUNDED_INACCURATE: SolverStatus.UNBOUNDED,
    cp.USER_LIMIT: SolverStatus.TIMEOUT,
    cp.SOLVER_ERROR: SolverStatus.NUMERICAL_FAILURE,
}


@dataclass(frozen=True)
class SolveOutcome:
    """
    Normalized result of one backend call.

    Attributes:
        weights: Values of the program's weight variable
        status: Normalized status (always a success status here)
        solver: Backend that produced the values
        objective_value: Optimal objective value
        solve_time: Wall-clock seconds spent in the backend
        attempted: Backends tried, in order
    """
    weights: np.ndarray
    status: SolverStatus
    solver: str
    objective_value: float
    solve_time: float
    attempted: tuple = field(default_factory=tuple)


class SolverAdapter:
    """
    Selects, validates and runs a backend for a CanonicalProgram.

    Attributes:
        defaults: Problem class -> default backend name
        fallback: Alternate backends tried after timeout/numerical failure
        time_limit: Seconds per backend call, or None
        solver_options: Backend name -> keyword options passed to cvxpy
    """

    def __init__(self, config: Optional[Dict] = None):
        if config is None:
            config = get_config()
        self.config = config
        solver_config = config.get('optimization', {}).get('solvers', {})

        self.defaults: Dict[ProblemClass, str] = dict(DEFAULT_SOLVERS)
        for key, name in (solver_config.get('defaults') or {}).items():
            self.defaults[ProblemClass(str(key).lower())] = str(name).upper()

        self.fallback: List[str] = [str(s).upper() for s in solver_config.get('fallback') or []]
        self.time_limit: Optional[float] = solver_config.get('time_limit')
        self.solver_options: Dict[str, Dict] = {
            str(k).upper(): dict(v or {}) for k, v in (solver_config.get('options') or {}).items()
        }

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        for problem_class, name in self.defaults.items():
            if problem_class not in SOLVER_CAPABILITIES.get(name, frozenset()):
                raise UnsupportedProblemClass(
                    f"Default backend {name} cannot express {problem_class.value.upper()} programs",
                    solver=name,
                    problem_class=problem_class.value,
                )

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select_solver(self, problem_class: ProblemClass, solver: Optional[str] = None) -> str:
        """
        Resolve the backend for a problem class.

        Args:
            problem_class: Class of the program to solve
            solver: None/'auto' for the class default, or an explicit backend name

        Returns:
            Upper-case backend name

        Raises:
            UnsupportedProblemClass: Explicit backend cannot express the class
        """
        if solver is None or str(solver).lower() == AUTO:
            return self.defaults[problem_class]

        name = str(solver).upper()
        capabilities = SOLVER_CAPABILITIES.get(name)
        if capabilities is None:
            raise UnsupportedProblemClass(
                f"Unknown backend {name}. Known backends: {sorted(SOLVER_CAPABILITIES)}",
                solver=name,
                problem_class=problem_class.value,
            )
        if problem_class not in capabilities:
            raise UnsupportedProblemClass(
                f"Backend {name} cannot express {problem_class.value.upper()} programs",
                solver=name,
                problem_class=problem_class.value,
            )
        return name

    def supports(self, solver: str, problem_class: ProblemClass) -> bool:
        return problem_class in SOLVER_CAPABILITIES.get(str(solver).upper(), frozenset())

    # -------------------------------------------------------------------------
    # Solving
    # -------------------------------------------------------------------------

    def solve(self, program: CanonicalProgram, solver: Optional[str] = None) -> SolveOutcome:
        """
        Solve a program with the selected backend.

        Fallback backends are only tried when configured, and only after a
        timeout or numerical failure; infeasibility is never retried.

        Args:
            program: CanonicalProgram to solve
            solver: None/'auto' or an explicit backend name

        Returns:
            SolveOutcome

        Raises:
            UnsupportedProblemClass: Backend cannot express the program
            InfeasibleProblem: Backend reports infeasible or unbounded
            SolverTimeout: Time limit reached
            SolverNumericalFailure: Backend did not converge
        """
        primary = self.select_solver(program.problem_class, solver)
        installed = set(cp.installed_solvers())
        candidates = [primary]
        for name in self.fallback:
            if name == primary or not self.supports(name, program.problem_class):
                continue
            if name not in installed:
                self.logger.warning(f"Fallback backend {name} is not installed; skipping it")
                continue
            candidates.append(name)

        attempted: List[str] = []
        last_error: Optional[SolverFailure] = None
        for name in candidates:
            attempted.append(name)
            try:
                outcome = self._solve_with(program, name)
            except (SolverTimeout, SolverNumericalFailure) as e:
                last_error = e
                if name != candidates[-1]:
                    self.logger.warning(f"{name} failed ({e.status}); retrying with next configured backend")
                continue
            return dataclasses.replace(outcome, attempted=tuple(attempted))

        raise last_error

    def _solve_with(self, program: CanonicalProgram, name: str) -> SolveOutcome:
        if name not in cp.installed_solvers():
            raise SolverUnavailable(
                f"Backend {name} is not installed",
                solver=name,
                problem_class=program.problem_class.value,
            )

        options = self._options_for(name)
        self.logger.debug(f"Solving {program.problem_class.value.upper()} program with {name}")

        start = time.perf_counter()
        try:
            program.problem.solve(solver=name, **options)
        except cp.error.SolverError as e:
            elapsed = time.perf_counter() - start
            if self._timed_out(elapsed):
                raise SolverTimeout(
                    f"{name} hit the {self.time_limit}s time limit", solver=name,
                    status=SolverStatus.TIMEOUT.value,
                ) from e
            self.logger.error(f"{name} failed: {e}")
            raise SolverNumericalFailure(
                f"{name} failed: {e}", solver=name, status=SolverStatus.NUMERICAL_FAILURE.value
            ) from e
        elapsed = time.perf_counter() - start

        status = self._normalize_status(program.problem.status, elapsed)
        if status in (SolverStatus.INFEASIBLE, SolverStatus.UNBOUNDED):
            self.logger.error(f"{name} reports {status.value} program")
            raise InfeasibleProblem(
                f"{name} reports the program is {status.value}", solver=name, status=status.value
            )
        if status is SolverStatus.TIMEOUT:
            self.logger.error(f"{name} stopped at its time limit after {elapsed:.2f}s")
            raise SolverTimeout(
                f"{name} hit the {self.time_limit}s time limit", solver=name, status=status.value
            )
        if status is SolverStatus.NUMERICAL_FAILURE or program.weights.value is None:
            self.logger.error(f"{name} did not converge (status={program.problem.status})")
            raise SolverNumericalFailure(
                f"{name} did not converge (status={program.problem.status})",
                solver=name,
                status=SolverStatus.NUMERICAL_FAILURE.value,
            )
        if status is SolverStatus.OPTIMAL_INACCURATE:
            self.logger.warning(f"{name} returned an inaccurate optimum")

        return SolveOutcome(
            weights=np.asarray(program.weights.value, dtype=float).copy(),
            status=status,
            solver=name,
            objective_value=float(program.problem.value),
            solve_time=elapsed,
        )

    def _normalize_status(self, status: str, elapsed: float) -> SolverStatus:
        normalized = _CVXPY_STATUS.get(status, SolverStatus.NUMERICAL_FAILURE)
        # USER_LIMIT also covers iteration limits; only a configured, elapsed
        # time limit counts as a timeout
        if normalized is SolverStatus.TIMEOUT and not self._timed_out(elapsed):
            return SolverStatus.NUMERICAL_FAILURE
        return normalized

    def _timed_out(self, elapsed: float) -> bool:
        return self.time_limit is not None and elapsed >= 0.95 * float(self.time_limit)

    def _options_for(self, name: str) -> Dict:
        options = {k: (dict(v) if isinstance(v, dict) else v)
                   for k, v in self.solver_options.get(name, {}).items()}

        if self.time_limit is not None:
            limit = float(self.time_limit)
            if name == 'SCIPY':
                scipy_options = options.setdefault('scipy_options', {})
                scipy_options.setdefault('time_limit', limit)
            elif name == 'MOSEK':
                params = options.setdefault('mosek_params', {})
                params.setdefault('MSK_DPAR_OPTIMIZER_MAX_TIME', limit)
            elif name in _TIME_LIMIT_OPTIONS:
                options.setdefault(_TIME_LIMIT_OPTIONS[name], limit)
            else:
                self.logger.warning(f"Backend {name} has no time limit option; solving without one")

        return options


def resolve_solver_name(solver: Union[str, None]) -> str:
    """Normalize a user-facing solver choice ('auto' or a backend name)."""
    if solver is None or str(solver).lower() == AUTO:
        return AUTO
    return str(solver).upper()
