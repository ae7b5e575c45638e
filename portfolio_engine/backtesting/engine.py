"""
Backtesting Engine Module

Re-solves a portfolio specification over successive training windows and
assembles the resulting weight time series.

The engine walks a rebalance schedule derived from the return sample's date
index:

- Accumulating: the first training window is not yet full, no solves
- Rebalancing: at each scheduled date d, slice the window strictly before d
  ([start, d) expanding, or the last W rows before d rolling), run the
  optimizer and append the entry
- Exhausted: no rebalance dates remain, the result is finalized

Weights are held constant between rebalance dates. A solver failure at one
date is recorded (previous weights held, or NaN, per ``failure_policy``) and
the run continues unless ``raise_on_failure`` is set.

Example:
    >>> from portfolio_engine.backtesting import BacktestEngine
    >>>
    >>> engine = BacktestEngine()
    >>> result = engine.run(spec, returns, rebalance_frequency='monthly', training_period=36)
    >>>
    >>> result.weights.tail()
    >>> result.portfolio_returns(returns).cumsum()
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from portfolio_engine.config.load_config import get_config
from portfolio_engine.optimization.exceptions import SolverFailure, ValidationError
from portfolio_engine.optimization.optimizer import OptimizationResult, PortfolioOptimizer
from portfolio_engine.optimization.spec_model import OptimizationMode, PortfolioSpec

logger = logging.getLogger(__name__)

# Rebalance frequency -> pandas period code; 'period' rebalances at every observation
FREQUENCY_CODES = {
    'daily': 'D',
    'weekly': 'W',
    'monthly': 'M',
    'quarterly': 'Q',
    'yearly': 'Y',
    'annual': 'Y',
}
EVERY_PERIOD = 'period'


class BacktestState(str, Enum):
    ACCUMULATING = 'accumulating'
    REBALANCING = 'rebalancing'
    EXHAUSTED = 'exhausted'


class FailurePolicy(str, Enum):
    """Weights recorded for a rebalance date whose solve failed."""
    HOLD = 'hold'
    NAN = 'nan'


@dataclass(frozen=True)
class RebalanceEntry:
    """
    One rebalance date and its optimization result.

    Attributes:
        date: Rebalance date (weights apply from this date on)
        result: OptimizationResult (failure status for recorded failures)
        window_start: First date of the training window
        window_end: Last date of the training window (strictly before ``date``)
        n_observations: Rows in the training window
    """
    date: pd.Timestamp
    result: OptimizationResult
    window_start: pd.Timestamp
    window_end: pd.Timestamp
    n_observations: int

    @property
    def failed(self) -> bool:
        return not self.result.succeeded


@dataclass
class BacktestResult:
    """
    Ordered (rebalance date, OptimizationResult) entries over the horizon.

    Attributes:
        assets: Asset universe order
        entries: Rebalance entries in chronological order
        mode: Optimization mode used at every date
        rebalance_frequency: Schedule frequency
        training_period: Observations required before the first solve
        rolling_window: Rolling width, None for an expanding window
        state: Current driver state; EXHAUSTED once finalized
    """
    assets: Tuple[str, ...]
    entries: List[RebalanceEntry] = field(default_factory=list)
    mode: OptimizationMode = OptimizationMode.PLAIN
    rebalance_frequency: Optional[str] = None
    training_period: Optional[int] = None
    rolling_window: Optional[int] = None
    state: BacktestState = BacktestState.ACCUMULATING

    def append(self, entry: RebalanceEntry) -> None:
        """Append one entry; dates must be strictly increasing."""
        if self.state is BacktestState.EXHAUSTED:
            raise RuntimeError("Backtest result is finalized")
        if self.entries and entry.date <= self.entries[-1].date:
            raise ValueError(
                f"Rebalance entries must be chronological: {entry.date} after {self.entries[-1].date}"
            )
        self.entries.append(entry)
        self.state = BacktestState.REBALANCING

    def finalize(self) -> 'BacktestResult':
        self.state = BacktestState.EXHAUSTED
        return self

    @property
    def finalized(self) -> bool:
        return self.state is BacktestState.EXHAUSTED

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def dates(self) -> pd.Index:
        return pd.Index([e.date for e in self.entries], name='date')

    @property
    def weights(self) -> pd.DataFrame:
        """Rebalance date x asset weight matrix."""
        if not self.entries:
            return pd.DataFrame(columns=list(self.assets), index=self.dates, dtype=float)
        frame = pd.DataFrame([e.result.weights.values for e in self.entries],
                             index=self.dates, columns=list(self.assets))
        return frame.astype(float)

    @property
    def statuses(self) -> pd.Series:
        return pd.Series([e.result.status.value for e in self.entries], index=self.dates, name='status')

    @property
    def solvers(self) -> pd.Series:
        return pd.Series([e.result.solver for e in self.entries], index=self.dates, name='solver')

    @property
    def components(self) -> pd.DataFrame:
        """Realized objective components per rebalance date."""
        return pd.DataFrame([e.result.components for e in self.entries], index=self.dates)

    @property
    def failures(self) -> List[RebalanceEntry]:
        return [e for e in self.entries if e.failed]

    def holdings(self, index: pd.Index) -> pd.DataFrame:
        """
        Weights held on each date of ``index``.

        Piecewise constant: each rebalance's weights apply from its date until
        the next rebalance. Dates before the first rebalance are NaN.

        Args:
            index: Target date index (sorted)

        Returns:
            DataFrame indexed by ``index`` with one column per asset
        """
        weights = self.weights
        if weights.empty:
            return pd.DataFrame(np.nan, index=index, columns=list(self.assets))
        return weights.reindex(index, method='ffill')

    def portfolio_returns(self, returns: pd.DataFrame) -> pd.Series:
        """
        Realized returns of the held portfolio from the first rebalance date.

        Args:
            returns: Return sample with one column per asset

        Returns:
            Series of portfolio returns (NaN where held weights are NaN)
        """
        if not self.entries:
            return pd.Series(dtype=float, name='portfolio_return')
        aligned = returns[list(self.assets)]
        held = self.holdings(aligned.index)
        realized = (held * aligned).sum(axis=1, skipna=False)
        realized = realized.loc[realized.index >= self.entries[0].date]
        realized.name = 'portfolio_return'
        return realized

    def to_frame(self) -> pd.DataFrame:
        """Weights plus status and solver columns, one row per rebalance date."""
        frame = self.weights.copy()
        frame['status'] = self.statuses
        frame['solver'] = self.solvers
        return frame

    def save(self, filepath: Union[str, Path], format: str = 'parquet') -> Path:
        """
        Save the weight series.

        Args:
            filepath: Output path
            format: 'parquet' or 'csv'

        Returns:
            Path written
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        frame = self.to_frame()
        if format == 'parquet':
            frame.to_parquet(filepath)
        elif format == 'csv':
            frame.to_csv(filepath)
        else:
            raise ValueError(f"Unsupported format: {format}. Use 'parquet' or 'csv'")
        logger.info(f"Saved {len(frame)} rebalance entries to {filepath} ({format} format)")
        return filepath


class BacktestEngine:
    """
    Rolling/expanding-window backtest driver around PortfolioOptimizer.

    Attributes:
        optimizer: Optimizer invoked at each rebalance date
        config: Configuration dictionary
        failure_policy: HOLD or NAN weights for failed dates
        raise_on_failure: Abort on the first solver failure instead of recording it
        state: State of the most recent run
    """

    def __init__(
        self,
        optimizer: Optional[PortfolioOptimizer] = None,
        config: Optional[Dict] = None
    ):
        """
        Initialize backtesting engine.

        Args:
            optimizer: Optional PortfolioOptimizer (built from config when None)
            config: Optional configuration dictionary
        """
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        # Load configuration
        if config is None:
            config = optimizer.config if optimizer is not None else get_config()
        self.config = config
        self.optimizer = optimizer if optimizer is not None else PortfolioOptimizer(config)

        self.backtest_config = self.config.get('backtesting', {})
        self.rebalance_frequency = self.backtest_config.get('rebalance_frequency', 'monthly')
        self.training_period = self.backtest_config.get('training_period', 36)
        self.rolling_window = self.backtest_config.get('rolling_window')
        self.min_observations = self.backtest_config.get('min_observations', 2)
        self.failure_policy = FailurePolicy(str(self.backtest_config.get('failure_policy', 'hold')).lower())
        self.raise_on_failure = bool(self.backtest_config.get('raise_on_failure', False))
        self.n_jobs = self.backtest_config.get('n_jobs', 1)
        self.parallel_backend = self.backtest_config.get('parallel_backend', 'loky')

        self.state = BacktestState.ACCUMULATING

        self.logger.info(
            f"BacktestEngine initialized: frequency={self.rebalance_frequency}, "
            f"training_period={self.training_period}, rolling_window={self.rolling_window}, "
            f"failure_policy={self.failure_policy.value}"
        )

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------

    @staticmethod
    def rebalance_schedule(index: pd.Index, frequency: Optional[str] = EVERY_PERIOD) -> np.ndarray:
        """
        Positions of candidate rebalance dates in ``index``.

        Args:
            index: Sorted date index of the return sample
            frequency: 'period' (every observation) or daily/weekly/monthly/
                quarterly/yearly (first observation of each calendar period)

        Returns:
            Integer positions into ``index``

        Raises:
            ValidationError: Unknown frequency, or a calendar frequency on a
                non-datetime index
        """
        if frequency is None or str(frequency).lower() == EVERY_PERIOD:
            return np.arange(len(index))

        code = FREQUENCY_CODES.get(str(frequency).lower())
        if code is None:
            raise ValidationError(
                f"Unknown rebalance frequency: {frequency!r}. "
                f"Use '{EVERY_PERIOD}' or one of {sorted(FREQUENCY_CODES)}"
            )
        if not isinstance(index, pd.DatetimeIndex):
            raise ValidationError(f"Rebalance frequency {frequency!r} needs a DatetimeIndex")

        periods = index.tz_localize(None).to_period(code) if index.tz is not None else index.to_period(code)
        return np.flatnonzero(~periods.duplicated())

    def _plan(
        self,
        index: pd.Index,
        frequency: Optional[str],
        training_period: int,
        rolling_window: Optional[int]
    ) -> List[Tuple[int, int]]:
        """(window start, rebalance position) pairs for every date with enough history."""
        plan = []
        required = max(training_period, self.min_observations)
        for position in self.rebalance_schedule(index, frequency):
            if rolling_window is not None:
                start = max(0, position - rolling_window)
                enough = position >= required and position - start >= max(rolling_window, self.min_observations)
            else:
                start = 0
                enough = position >= required
            if not enough:
                self.logger.debug(f"Skipping {index[position]}: {position - start} observations in window")
                continue
            plan.append((start, position))
        return plan

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        spec: PortfolioSpec,
        returns: pd.DataFrame,
        rebalance_frequency: Optional[str] = None,
        training_period: Optional[int] = None,
        rolling_window: Optional[int] = None,
        mode: Union[str, OptimizationMode] = OptimizationMode.PLAIN,
        solver: Optional[str] = None
    ) -> BacktestResult:
        """
        Execute the backtest.

        Args:
            spec: Portfolio specification solved at every date
            returns: Return sample, rows = dates (ascending), columns = assets
            rebalance_frequency: Schedule frequency (config default when None)
            training_period: Observations before the first solve. Defaults to
                ``rolling_window`` when one is given, else to config
            rolling_window: Rolling width W, None for an expanding window
            mode: Optimization mode
            solver: 'auto', a backend name, or None to use spec.solver

        Returns:
            Finalized BacktestResult

        Raises:
            ValidationError: Malformed sample, or missing values inside a used window
            SolverFailure: Only when raise_on_failure is configured
        """
        mode = OptimizationMode.parse(mode)
        frequency = self.rebalance_frequency if rebalance_frequency is None else rebalance_frequency
        if rolling_window is None:
            rolling_window = self.rolling_window
        if training_period is None:
            training_period = rolling_window if rolling_window is not None else self.training_period
        self._validate_lengths(training_period, rolling_window)

        returns = self._prepare_returns(spec, returns)
        self.logger.info(
            f"Starting backtest: {len(returns)} observations, {spec.n_assets} assets, "
            f"frequency={frequency}, training_period={training_period}, rolling_window={rolling_window}"
        )

        result = BacktestResult(
            assets=spec.assets,
            mode=mode,
            rebalance_frequency=frequency,
            training_period=training_period,
            rolling_window=rolling_window,
        )
        self.state = BacktestState.ACCUMULATING

        plan = self._plan(returns.index, frequency, training_period, rolling_window)
        for start, position in plan:
            window = returns.iloc[start:position]
            if window.isna().any().any():
                raise ValidationError(
                    f"Training window for {returns.index[position]} contains missing values"
                )

        outcomes = Parallel(n_jobs=self.n_jobs, backend=self.parallel_backend)(
            delayed(self._rebalance)(spec, returns.iloc[start:position], mode, solver)
            for start, position in plan
        )

        # Merge in chronological order; hold policy depends on the previous entry
        for (start, position), (opt_result, error) in zip(plan, outcomes):
            self.state = BacktestState.REBALANCING
            date = returns.index[position]
            if error is not None:
                if self.raise_on_failure:
                    self.logger.error(f"Solver failure at {date}: {error}")
                    raise error
                opt_result = self._failed_entry(result, error, mode)
                self.logger.warning(
                    f"Rebalance at {date} failed ({opt_result.status.value}); "
                    f"recorded with {self.failure_policy.value} weights"
                )
            result.append(RebalanceEntry(
                date=date,
                result=opt_result,
                window_start=returns.index[start],
                window_end=returns.index[position - 1],
                n_observations=position - start,
            ))

        self.state = BacktestState.EXHAUSTED
        result.finalize()
        self.logger.info(
            f"Backtest complete: {len(result)} rebalances, {len(result.failures)} failures"
        )
        return result

    def _rebalance(
        self,
        spec: PortfolioSpec,
        window: pd.DataFrame,
        mode: OptimizationMode,
        solver: Optional[str]
    ) -> Tuple[Optional[OptimizationResult], Optional[SolverFailure]]:
        try:
            return self.optimizer.optimize(spec, window, mode, solver), None
        except SolverFailure as e:
            return None, e

    def _failed_entry(
        self,
        result: BacktestResult,
        error: SolverFailure,
        mode: OptimizationMode
    ) -> OptimizationResult:
        weights = None
        if self.failure_policy is FailurePolicy.HOLD and result.entries:
            weights = result.entries[-1].result.weights
        return OptimizationResult.failed(result.assets, error, mode, weights)

    def _prepare_returns(self, spec: PortfolioSpec, returns: pd.DataFrame) -> pd.DataFrame:
        if not isinstance(returns, pd.DataFrame):
            raise ValidationError("Backtest returns must be a DataFrame indexed by date")
        if not returns.index.is_monotonic_increasing or returns.index.has_duplicates:
            raise ValidationError("Return sample index must be strictly increasing")
        return spec.align_returns(returns)

    def _validate_lengths(self, training_period: int, rolling_window: Optional[int]) -> None:
        if training_period is None or int(training_period) < 1:
            raise ValidationError(f"training_period must be a positive integer, got {training_period}")
        if rolling_window is not None and int(rolling_window) < 1:
            raise ValidationError(f"rolling_window must be a positive integer, got {rolling_window}")


def run_backtest(
    spec: PortfolioSpec,
    returns: pd.DataFrame,
    rebalance_frequency: Optional[str] = None,
    training_period: Optional[int] = None,
    rolling_window: Optional[int] = None,
    mode: Union[str, OptimizationMode] = OptimizationMode.PLAIN,
    solver: Optional[str] = None,
    config: Optional[Dict] = None
) -> BacktestResult:
    """Convenience wrapper around BacktestEngine.run."""
    return BacktestEngine(config=config).run(
        spec, returns, rebalance_frequency, training_period, rolling_window, mode, solver
    )
