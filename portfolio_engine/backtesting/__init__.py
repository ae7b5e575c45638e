"""
Backtesting Module

Re-solves a portfolio specification over a rebalance schedule and assembles
the weight time series.

Main Components:
- BacktestEngine: Expanding/rolling-window driver around PortfolioOptimizer
- BacktestResult: Chronological (rebalance date, OptimizationResult) entries
- RebalanceEntry: One rebalance date with its training window bounds

Example:
    >>> from portfolio_engine.backtesting import BacktestEngine
    >>>
    >>> engine = BacktestEngine()
    >>> result = engine.run(spec, returns, rebalance_frequency='quarterly', rolling_window=60)
    >>> result.save('output/weights.parquet')
"""

from portfolio_engine.backtesting.engine import (
    BacktestEngine,
    BacktestResult,
    BacktestState,
    FailurePolicy,
    RebalanceEntry,
    run_backtest
)

__all__ = [
    'BacktestEngine',
    'BacktestResult',
    'BacktestState',
    'FailurePolicy',
    'RebalanceEntry',
    'run_backtest'
]
