"""
Unit tests for the backtesting engine.

Tests the rebalance schedule, expanding and rolling windows, the failure
policies and the holdings/portfolio-return views of a finished backtest.
"""

import copy

import numpy as np
import pandas as pd
import pytest

from portfolio_engine.backtesting.engine import (
    BacktestEngine,
    BacktestResult,
    BacktestState,
    FailurePolicy,
    RebalanceEntry,
    run_backtest,
)
from portfolio_engine.optimization import solver_adapter
from portfolio_engine.optimization.exceptions import (
    InfeasibleProblem,
    SolverNumericalFailure,
    ValidationError,
)
from portfolio_engine.optimization.optimizer import OptimizationResult
from portfolio_engine.optimization.solver_adapter import SolverAdapter, SolverStatus
from portfolio_engine.optimization.spec_model import PortfolioSpec


def mean_spec(assets):
    return (
        PortfolioSpec.from_assets(assets)
        .add_constraint("full_investment")
        .add_constraint("long_only")
        .add_objective("mean_return")
    )


def with_backtest(config, **overrides):
    config = copy.deepcopy(config)
    config["backtesting"].update(overrides)
    return config


@pytest.fixture
def engine(sample_config):
    return BacktestEngine(config=sample_config)


class TestRebalanceSchedule:
    """Test candidate rebalance positions."""

    def test_every_period(self, scenario_returns):
        """Test 'period' schedules every observation."""
        positions = BacktestEngine.rebalance_schedule(scenario_returns.index, "period")
        np.testing.assert_array_equal(positions, [0, 1, 2, 3])

    def test_monthly_on_daily_index(self):
        """Test the first observation of each month is scheduled."""
        index = pd.bdate_range("2024-01-01", "2024-03-31")
        positions = BacktestEngine.rebalance_schedule(index, "monthly")

        assert [index[p] for p in positions] == [
            pd.Timestamp("2024-01-01"),
            pd.Timestamp("2024-02-01"),
            pd.Timestamp("2024-03-01"),
        ]

    def test_quarterly(self, sample_returns):
        """Test one date per calendar quarter."""
        positions = BacktestEngine.rebalance_schedule(sample_returns.index, "quarterly")
        assert len(positions) == 40
        assert all(sample_returns.index[p].month in (1, 4, 7, 10) for p in positions)

    def test_unknown_frequency(self, scenario_returns):
        """Test an unknown frequency label."""
        with pytest.raises(ValidationError, match="Unknown rebalance frequency"):
            BacktestEngine.rebalance_schedule(scenario_returns.index, "fortnightly")

    def test_calendar_frequency_needs_dates(self):
        """Test a calendar frequency on an integer index."""
        with pytest.raises(ValidationError):
            BacktestEngine.rebalance_schedule(pd.RangeIndex(10), "monthly")


class TestExpandingWindow:
    """Test the expanding-window run."""

    def test_first_solve_after_training_period(self, engine, scenario_returns):
        """Test entries start once two observations are available."""
        result = engine.run(mean_spec(scenario_returns.columns), scenario_returns)

        assert len(result) == 2
        assert list(result.dates) == list(scenario_returns.index[2:])
        assert [e.n_observations for e in result.entries] == [2, 3]

    def test_weights_follow_window_means(self, engine, scenario_returns):
        """Test B has the highest mean in both expanding windows."""
        result = engine.run(mean_spec(scenario_returns.columns), scenario_returns)

        expected = pd.DataFrame(
            [[0.0, 1.0, 0.0], [0.0, 1.0, 0.0]],
            index=result.dates,
            columns=["A", "B", "C"],
        )
        pd.testing.assert_frame_equal(result.weights, expected, atol=1e-6)
        assert (result.statuses == SolverStatus.OPTIMAL.value).all()
        assert (result.solvers == "SCIPY").all()

    def test_window_ends_before_rebalance_date(self, engine, sample_returns):
        """Test no window includes its own rebalance date."""
        result = engine.run(
            mean_spec(sample_returns.columns), sample_returns,
            rebalance_frequency="quarterly", training_period=12
        )

        for entry in result.entries:
            assert entry.window_end < entry.date
            assert entry.window_start == sample_returns.index[0]

    def test_monthly_schedule_count(self, engine, sample_returns):
        """Test 120 monthly rows with 36 training rows give 84 rebalances."""
        result = engine.run(
            mean_spec(sample_returns.columns), sample_returns,
            rebalance_frequency="monthly", training_period=36
        )

        assert len(result) == 84
        assert result.dates[0] == sample_returns.index[36]
        assert result.finalized
        assert engine.state is BacktestState.EXHAUSTED

    def test_too_short_sample(self, engine, scenario_returns):
        """Test a sample shorter than the training period yields no entries."""
        result = engine.run(mean_spec(scenario_returns.columns), scenario_returns, training_period=10)

        assert len(result) == 0
        assert result.weights.empty
        assert result.finalized


class TestRollingWindow:
    """Test the rolling-window run."""

    def test_rolling_window_slides(self, engine, scenario_returns):
        """Test the second window drops the first row and C wins."""
        result = engine.run(mean_spec(scenario_returns.columns), scenario_returns, rolling_window=2)

        np.testing.assert_allclose(result.weights.iloc[0].values, [0.0, 1.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(result.weights.iloc[1].values, [0.0, 0.0, 1.0], atol=1e-6)
        assert result.entries[1].window_start == scenario_returns.index[1]
        assert result.entries[1].n_observations == 2
        assert result.rolling_window == 2

    def test_training_defaults_to_window(self, engine, sample_returns):
        """Test a rolling run starts once W rows are available."""
        result = engine.run(
            mean_spec(sample_returns.columns), sample_returns,
            rebalance_frequency="monthly", rolling_window=24
        )

        assert len(result) == 96
        assert result.training_period == 24
        assert all(e.n_observations == 24 for e in result.entries)

    def test_invalid_window(self, engine, scenario_returns):
        """Test a non-positive rolling width."""
        with pytest.raises(ValidationError):
            engine.run(mean_spec(scenario_returns.columns), scenario_returns, rolling_window=0)


class TestFailurePolicy:
    """Test recording of failed rebalance dates."""

    def test_hold_keeps_previous_weights(self, engine, scenario_returns):
        """Test an infeasible date carries the previous weights."""
        spec = mean_spec(scenario_returns.columns).add_constraint("return_target", target=0.012)
        result = engine.run(spec, scenario_returns)

        assert len(result) == 2
        assert result.statuses.tolist() == [SolverStatus.OPTIMAL.value, SolverStatus.INFEASIBLE.value]
        np.testing.assert_allclose(result.weights.iloc[1].values, [0.0, 1.0, 0.0], atol=1e-6)
        assert len(result.failures) == 1
        assert result.failures[0].date == scenario_returns.index[3]

    def test_nan_policy(self, sample_config, scenario_returns):
        """Test the nan policy records missing weights."""
        engine = BacktestEngine(config=with_backtest(sample_config, failure_policy="nan"))
        spec = mean_spec(scenario_returns.columns).add_constraint("return_target", target=0.012)
        result = engine.run(spec, scenario_returns)

        assert engine.failure_policy is FailurePolicy.NAN
        assert result.weights.iloc[1].isna().all()
        assert not result.weights.iloc[0].isna().any()

    def test_hold_without_history(self, engine, scenario_returns):
        """Test hold with no previous entry records NaN weights."""
        spec = mean_spec(scenario_returns.columns).add_constraint("return_target", target=0.0155)
        result = engine.run(spec, scenario_returns)

        assert len(result.failures) == 2
        assert result.weights.isna().all().all()

    def test_raise_on_failure(self, sample_config, scenario_returns):
        """Test aborting on the first solver failure."""
        engine = BacktestEngine(config=with_backtest(sample_config, raise_on_failure=True))
        spec = mean_spec(scenario_returns.columns).add_constraint("return_target", target=0.012)
        with pytest.raises(InfeasibleProblem):
            engine.run(spec, scenario_returns)

    def test_missing_fallback_backend_is_recorded(self, sample_config, scenario_returns, monkeypatch):
        """Test a primary failure with an uninstalled alternate is recorded per date."""
        config = copy.deepcopy(sample_config)
        config["optimization"]["solvers"]["fallback"] = ["MOSEK"]
        monkeypatch.setattr(solver_adapter.cp, "installed_solvers", lambda: ["SCIPY", "OSQP", "CLARABEL"])

        def failing(self, program, name):
            raise SolverNumericalFailure("diverged", solver=name, status=SolverStatus.NUMERICAL_FAILURE.value)

        monkeypatch.setattr(SolverAdapter, "_solve_with", failing)
        result = BacktestEngine(config=config).run(mean_spec(scenario_returns.columns), scenario_returns)

        assert len(result) == 2
        assert len(result.failures) == 2
        assert (result.statuses == SolverStatus.NUMERICAL_FAILURE.value).all()
        assert (result.solvers == "SCIPY").all()


class TestInputValidation:
    """Test return sample preconditions."""

    def test_missing_value_outside_windows(self, engine, scenario_returns):
        """Test NaN in the final row is never read by a window."""
        returns = scenario_returns.copy()
        returns.iloc[3, 0] = np.nan
        result = engine.run(mean_spec(returns.columns), returns)
        assert len(result) == 2

    def test_missing_value_inside_window(self, engine, scenario_returns):
        """Test NaN inside a training window is rejected."""
        returns = scenario_returns.copy()
        returns.iloc[1, 2] = np.nan
        with pytest.raises(ValidationError, match="missing values"):
            engine.run(mean_spec(returns.columns), returns)

    def test_unsorted_index(self, engine, scenario_returns):
        """Test a non-increasing date index."""
        with pytest.raises(ValidationError, match="strictly increasing"):
            engine.run(mean_spec(scenario_returns.columns), scenario_returns.iloc[::-1])

    def test_array_input(self, engine, scenario_returns):
        """Test a bare array is rejected."""
        with pytest.raises(ValidationError):
            engine.run(mean_spec(scenario_returns.columns), scenario_returns.to_numpy())

    def test_permuted_columns(self, engine, scenario_returns):
        """Test columns are aligned to the universe order."""
        result = engine.run(mean_spec(scenario_returns.columns), scenario_returns[["C", "A", "B"]])
        assert list(result.weights.columns) == ["A", "B", "C"]
        np.testing.assert_allclose(result.weights.iloc[0].values, [0.0, 1.0, 0.0], atol=1e-6)


class TestBacktestResult:
    """Test result views and persistence."""

    @pytest.fixture
    def result(self, engine, scenario_returns):
        return engine.run(mean_spec(scenario_returns.columns), scenario_returns)

    def test_holdings_forward_fill(self, result, scenario_returns):
        """Test weights are piecewise constant between rebalances."""
        held = result.holdings(scenario_returns.index)

        assert held.iloc[:2].isna().all().all()
        np.testing.assert_allclose(held.iloc[2].values, [0.0, 1.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(held.iloc[3].values, [0.0, 1.0, 0.0], atol=1e-6)

    def test_portfolio_returns(self, result, scenario_returns):
        """Test realized returns start at the first rebalance date."""
        realized = result.portfolio_returns(scenario_returns)

        assert list(realized.index) == list(scenario_returns.index[2:])
        np.testing.assert_allclose(realized.values, [0.00, -0.01], atol=1e-6)

    def test_components(self, result):
        """Test realized components are reported per date."""
        assert "mean" in result.components.columns
        assert len(result.components) == 2

    def test_append_after_finalize(self, result):
        """Test a finalized result rejects new entries."""
        with pytest.raises(RuntimeError):
            result.append(result.entries[-1])

    def test_append_must_be_chronological(self, result):
        """Test entries cannot go back in time."""
        reopened = BacktestResult(assets=result.assets, entries=list(result.entries[:1]))
        with pytest.raises(ValueError, match="chronological"):
            reopened.append(result.entries[0])

    def test_entry_failed_flag(self, result, scenario_returns):
        """Test the failure flag follows the status."""
        error = InfeasibleProblem("infeasible", solver="SCIPY", status="infeasible")
        entry = RebalanceEntry(
            date=scenario_returns.index[3],
            result=OptimizationResult.failed(result.assets, error),
            window_start=scenario_returns.index[0],
            window_end=scenario_returns.index[2],
            n_observations=3,
        )
        assert entry.failed
        assert not result.entries[0].failed

    def test_save_csv(self, result, tmp_path):
        """Test saving weights with status and solver columns."""
        path = result.save(tmp_path / "weights.csv", format="csv")
        loaded = pd.read_csv(path, index_col=0)

        assert list(loaded.columns) == ["A", "B", "C", "status", "solver"]
        assert len(loaded) == 2

    def test_save_parquet(self, result, tmp_path):
        """Test saving weights to parquet."""
        path = result.save(tmp_path / "out" / "weights.parquet")
        loaded = pd.read_parquet(path)
        assert loaded.shape == (2, 5)

    def test_save_unknown_format(self, result, tmp_path):
        """Test an unsupported output format."""
        with pytest.raises(ValueError):
            result.save(tmp_path / "weights.xlsx", format="xlsx")


def test_run_backtest_wrapper(sample_config, scenario_returns):
    """Test the module-level convenience function."""
    result = run_backtest(mean_spec(scenario_returns.columns), scenario_returns, config=sample_config)
    assert len(result) == 2
    assert result.mode.value == "plain"
