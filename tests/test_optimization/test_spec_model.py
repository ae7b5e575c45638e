"""
Unit tests for the portfolio specification model.

Tests tag resolution, immutability, tail-probability normalization, bound
conflict detection and return-sample alignment.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from portfolio_engine.optimization.exceptions import ValidationError
from portfolio_engine.optimization.spec_model import (
    Box,
    ExpectedQuadraticShortfall,
    ExpectedShortfall,
    FullInvestment,
    Group,
    LongOnly,
    MeanReturn,
    OptimizationMode,
    PortfolioSpec,
    ReturnTarget,
    RiskMeasure,
    Variance,
    effective_tail_probability,
)


class TestConstructionAPI:
    """Test incremental spec construction."""

    def test_from_assets(self):
        """Test starting a spec from an asset list."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"])
        assert spec.assets == ("A", "B", "C")
        assert spec.n_assets == 3
        assert spec.constraints == ()
        assert spec.objectives == ()
        assert spec.solver == "auto"

    def test_add_constraint_returns_new_spec(self):
        """Test that adding a constraint leaves the original untouched."""
        base = PortfolioSpec.from_assets(["A", "B"])
        extended = base.add_constraint("full_investment")

        assert base.constraints == ()
        assert extended.constraints == (FullInvestment(),)
        assert extended is not base

    def test_tags_resolve_to_variants(self):
        """Test that string tags resolve to closed variants at construction."""
        spec = (
            PortfolioSpec.from_assets(["A", "B", "C"])
            .add_constraint("long_only")
            .add_constraint("box", lower=0.0, upper=0.6)
            .add_constraint("group", assets=["A", "B"], upper=0.8)
            .add_constraint("return_target", target=0.01)
            .add_objective("mean_return")
            .add_objective("variance", risk_aversion=2.0)
            .add_objective("expected_shortfall", p=0.1)
            .add_objective("expected_quadratic_shortfall")
        )

        assert isinstance(spec.constraints[0], LongOnly)
        assert spec.constraints[1] == Box(lower=0.0, upper=0.6)
        assert spec.constraints[2] == Group(assets=("A", "B"), upper=0.8)
        assert spec.constraints[3] == ReturnTarget(0.01)
        assert spec.objectives[0] == MeanReturn()
        assert spec.objectives[1] == Variance(risk_aversion=2.0)
        assert spec.objectives[2].p == pytest.approx(0.1)
        assert isinstance(spec.objectives[3], ExpectedQuadraticShortfall)
        assert spec.objectives[3].p == pytest.approx(0.05)

    def test_measure_aliases(self):
        """Test short risk-measure tags."""
        spec = PortfolioSpec.from_assets(["A"]).add_objective("cvar").add_objective("eqs")
        assert isinstance(spec.objectives[0], ExpectedShortfall)
        assert isinstance(spec.objectives[1], ExpectedQuadraticShortfall)

    def test_unknown_constraint_tag(self):
        """Test that a misspelled constraint tag fails at construction."""
        with pytest.raises(ValidationError, match="Unknown constraint type"):
            PortfolioSpec.from_assets(["A"]).add_constraint("full_invest")

    def test_unknown_objective_tag(self):
        """Test that a misspelled objective tag fails at construction."""
        with pytest.raises(ValidationError, match="Unknown objective type"):
            PortfolioSpec.from_assets(["A"]).add_objective("expected_shortfal")

    def test_bad_parameters(self):
        """Test that parameters a variant does not take are rejected."""
        with pytest.raises(ValidationError):
            PortfolioSpec.from_assets(["A"]).add_objective("variance", p=0.05)

    def test_params_with_instance_rejected(self):
        """Test that parameters cannot accompany a variant instance."""
        with pytest.raises(ValidationError):
            PortfolioSpec.from_assets(["A"]).add_constraint(LongOnly(), lower=0.0)

    def test_negative_risk_aversion(self):
        """Test risk aversion must be non-negative."""
        with pytest.raises(ValidationError):
            Variance(risk_aversion=-1.0)

    def test_with_solver_and_objectives(self):
        """Test replacing the solver and the objective set."""
        spec = PortfolioSpec.from_assets(["A", "B"]).add_objective("mean_return")
        replaced = spec.with_solver("CLARABEL").with_objectives(Variance())

        assert replaced.solver == "CLARABEL"
        assert replaced.objectives == (Variance(),)
        assert spec.solver == "auto"

    def test_spec_is_frozen(self):
        """Test that specs cannot be mutated in place."""
        spec = PortfolioSpec.from_assets(["A", "B"])
        with pytest.raises(dataclasses.FrozenInstanceError):
            spec.solver = "OSQP"

    def test_return_and_risk_objectives(self):
        """Test objective partitioning accessors."""
        spec = (
            PortfolioSpec.from_assets(["A", "B"])
            .add_objective("mean_return", weight=0.5)
            .add_objective("expected_shortfall")
        )
        assert spec.return_objectives == (MeanReturn(weight=0.5),)
        assert len(spec.risk_objectives) == 1
        assert spec.risk_objectives[0].measure is RiskMeasure.EXPECTED_SHORTFALL


class TestTailProbability:
    """Test tail probability normalization."""

    def test_small_p_unchanged(self):
        """Test p <= 0.5 is used as given."""
        assert effective_tail_probability(0.05) == 0.05
        assert effective_tail_probability(0.5) == 0.5

    def test_large_p_is_complemented(self):
        """Test p > 0.5 is read as a confidence level."""
        assert effective_tail_probability(0.95) == pytest.approx(0.05)
        assert ExpectedShortfall(p=0.99).p == pytest.approx(0.01)

    @pytest.mark.parametrize("p", [0.0, 1.0, -0.1, 1.5, np.nan])
    def test_out_of_range(self, p):
        """Test p outside (0, 1) is rejected."""
        with pytest.raises(ValidationError):
            effective_tail_probability(p)


class TestValidation:
    """Test spec validation rules."""

    def test_empty_universe(self):
        """Test that an empty universe is rejected."""
        with pytest.raises(ValidationError):
            PortfolioSpec.from_assets([])

    def test_duplicate_assets(self):
        """Test that duplicate identifiers are rejected."""
        with pytest.raises(ValidationError, match="Duplicate"):
            PortfolioSpec.from_assets(["A", "B", "A"])

    def test_box_lower_above_upper(self):
        """Test a box with lower > upper."""
        with pytest.raises(ValidationError):
            Box(lower=0.5, upper=0.2)

    def test_long_only_conflicts_with_box(self):
        """Test effective bounds conflict across constraints."""
        spec = PortfolioSpec.from_assets(["A", "B"]).add_constraint("long_only")
        with pytest.raises(ValidationError, match="Conflicting bounds"):
            spec.add_constraint(Box(upper=-0.1, assets=("A",)))

    def test_lower_bounds_exceed_full_investment(self):
        """Test sum of lower bounds above 1 under full investment."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"]).add_constraint("full_investment")
        with pytest.raises(ValidationError, match="Lower bounds"):
            spec.add_constraint(Box(lower=0.4, upper=1.0))

    def test_upper_bounds_below_full_investment(self):
        """Test sum of upper bounds below 1 under full investment."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"]).add_constraint("box", upper=0.3)
        with pytest.raises(ValidationError, match="Upper bounds"):
            spec.add_constraint("full_investment")

    def test_unknown_asset_in_group(self):
        """Test group referencing an asset outside the universe."""
        with pytest.raises(ValidationError, match="unknown assets"):
            PortfolioSpec.from_assets(["A", "B"]).add_constraint("group", assets=["A", "Z"], upper=0.5)

    def test_non_finite_return_target(self):
        """Test return target must be finite."""
        with pytest.raises(ValidationError):
            ReturnTarget(np.inf)

    def test_effective_bounds(self):
        """Test intersection of long_only and box constraints."""
        spec = (
            PortfolioSpec.from_assets(["A", "B", "C"])
            .add_constraint("long_only")
            .add_constraint("box", lower=-0.5, upper=0.7)
            .add_constraint(Box(lower=0.1, assets=("B",)))
        )
        lower, upper = spec.effective_bounds()
        np.testing.assert_allclose(lower, [0.0, 0.1, 0.0])
        np.testing.assert_allclose(upper, [0.7, 0.7, 0.7])


class TestReturnAlignment:
    """Test return sample alignment to the universe."""

    def test_permuted_columns_are_reordered(self):
        """Test a DataFrame with permuted columns is put in universe order."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"])
        returns = pd.DataFrame({"C": [3.0], "A": [1.0], "B": [2.0]})

        aligned = spec.align_returns(returns)

        assert list(aligned.columns) == ["A", "B", "C"]
        assert aligned.iloc[0].tolist() == [1.0, 2.0, 3.0]

    def test_missing_asset(self):
        """Test a column set that does not match the universe."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"])
        returns = pd.DataFrame({"A": [1.0], "B": [2.0], "D": [3.0]})
        with pytest.raises(ValidationError, match="missing"):
            spec.align_returns(returns)

    def test_width_mismatch(self):
        """Test a return matrix with the wrong number of columns."""
        spec = PortfolioSpec.from_assets(["A", "B", "C"])
        with pytest.raises(ValidationError):
            spec.align_returns(np.zeros((4, 2)))


class TestOptimizationMode:
    """Test mode parsing."""

    def test_parse(self):
        """Test values, names and None."""
        assert OptimizationMode.parse(None) is OptimizationMode.PLAIN
        assert OptimizationMode.parse("maxSharpeRatio") is OptimizationMode.MAX_SHARPE_RATIO
        assert OptimizationMode.parse("maxesratio") is OptimizationMode.MAX_ES_RATIO
        assert OptimizationMode.parse("MAX_EQS_RATIO") is OptimizationMode.MAX_EQS_RATIO

    def test_ratio_measures(self):
        """Test each ratio mode is tied to one risk measure."""
        assert OptimizationMode.PLAIN.ratio_measure is None
        assert OptimizationMode.MAX_SHARPE_RATIO.ratio_measure is RiskMeasure.VARIANCE
        assert OptimizationMode.MAX_ES_RATIO.ratio_measure is RiskMeasure.EXPECTED_SHORTFALL
        assert OptimizationMode.MAX_EQS_RATIO.ratio_measure is RiskMeasure.EXPECTED_QUADRATIC_SHORTFALL

    def test_unknown_mode(self):
        """Test an unknown mode flag."""
        with pytest.raises(ValidationError):
            OptimizationMode.parse("maxSortino")
