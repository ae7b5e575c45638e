"""
Error taxonomy for portfolio construction.

Specification errors (ValidationError, InvalidObjectiveCombination) are raised
before any program is built. Solver failures carry the backend that was
attempted and the normalized status it reported.
"""

from typing import Optional


class PortfolioEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(PortfolioEngineError, ValueError):
    """Malformed spec model or return sample."""


class InvalidObjectiveCombination(PortfolioEngineError, ValueError):
    """Ratio mode requested without one return and exactly one matching risk objective."""


class UnsupportedProblemClass(PortfolioEngineError):
    """Chosen backend cannot express the program's problem class."""

    def __init__(self, message: str, solver: Optional[str] = None, problem_class: Optional[str] = None):
        super().__init__(message)
        self.solver = solver
        self.problem_class = problem_class


class SolverUnavailable(UnsupportedProblemClass):
    """Backend is known but not installed in this environment."""


class SolverFailure(PortfolioEngineError):
    """A backend ran but did not return a usable optimum."""

    def __init__(self, message: str, solver: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.solver = solver
        self.status = status


class InfeasibleProblem(SolverFailure):
    pass


class InfeasibleRatio(InfeasibleProblem):
    """Normalization scalar of a ratio program came back at or below zero."""


class SolverTimeout(SolverFailure):
    pass


class SolverNumericalFailure(SolverFailure):
    pass
