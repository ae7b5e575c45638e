"""
Optimization Module

This module provides the single-period portfolio construction pipeline:
spec model, problem builder, solver adapter, optimizer and frontier generator.
"""

from portfolio_engine.optimization.exceptions import (
    PortfolioEngineError,
    ValidationError,
    InvalidObjectiveCombination,
    UnsupportedProblemClass,
    SolverUnavailable,
    SolverFailure,
    InfeasibleProblem,
    InfeasibleRatio,
    SolverTimeout,
    SolverNumericalFailure
)
from portfolio_engine.optimization.spec_model import (
    PortfolioSpec,
    RiskMeasure,
    OptimizationMode,
    FullInvestment,
    LongOnly,
    Box,
    Group,
    ReturnTarget,
    MeanReturn,
    Variance,
    ExpectedShortfall,
    ExpectedQuadraticShortfall,
    effective_tail_probability
)
from portfolio_engine.optimization.problem_builder import (
    ProblemBuilder,
    ProblemClass,
    CanonicalProgram
)
from portfolio_engine.optimization.solver_adapter import (
    SolverAdapter,
    SolverStatus,
    SolveOutcome,
    SOLVER_CAPABILITIES,
    DEFAULT_SOLVERS
)
from portfolio_engine.optimization.risk_measures import (
    calculate_portfolio_return,
    calculate_portfolio_variance,
    calculate_portfolio_risk,
    sample_expected_shortfall,
    sample_expected_quadratic_shortfall,
    realized_risk,
    evaluate_risk_program
)
from portfolio_engine.optimization.optimizer import (
    PortfolioOptimizer,
    OptimizationResult,
    optimize_portfolio
)
from portfolio_engine.optimization.frontier import (
    FrontierGenerator,
    EfficientFrontier,
    FrontierPoint,
    generate_frontier
)

__all__ = [
    # Errors
    'PortfolioEngineError',
    'ValidationError',
    'InvalidObjectiveCombination',
    'UnsupportedProblemClass',
    'SolverUnavailable',
    'SolverFailure',
    'InfeasibleProblem',
    'InfeasibleRatio',
    'SolverTimeout',
    'SolverNumericalFailure',
    # Spec model
    'PortfolioSpec',
    'RiskMeasure',
    'OptimizationMode',
    'FullInvestment',
    'LongOnly',
    'Box',
    'Group',
    'ReturnTarget',
    'MeanReturn',
    'Variance',
    'ExpectedShortfall',
    'ExpectedQuadraticShortfall',
    'effective_tail_probability',
    # Problem building and solving
    'ProblemBuilder',
    'ProblemClass',
    'CanonicalProgram',
    'SolverAdapter',
    'SolverStatus',
    'SolveOutcome',
    'SOLVER_CAPABILITIES',
    'DEFAULT_SOLVERS',
    # Risk measures
    'calculate_portfolio_return',
    'calculate_portfolio_variance',
    'calculate_portfolio_risk',
    'sample_expected_shortfall',
    'sample_expected_quadratic_shortfall',
    'realized_risk',
    'evaluate_risk_program',
    # Optimizer and frontier
    'PortfolioOptimizer',
    'OptimizationResult',
    'optimize_portfolio',
    'FrontierGenerator',
    'EfficientFrontier',
    'FrontierPoint',
    'generate_frontier'
]
