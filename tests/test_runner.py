import logging
import time
import warnings

import numpy as np
import pandas as pd
import pytest

from sbckit.errors import ConvergenceWarning, FitNonConvergence, InvalidPriorSpec, SchemaMismatch
from sbckit.experiment import ReplicateStore
from sbckit.fitting.base import FitResult
from sbckit.fitting.conjugate import ConjugateNormalFitter
from sbckit.fitting.metropolis import MetropolisConfig, MetropolisFitter
from sbckit.models.library import hierarchical_binomial, normal_regression
from sbckit.runner import SBCConfig, SBCRunner, _replicate_rngs, run_replicate


class CountingFitter(ConjugateNormalFitter):
    def __init__(self):
        self.calls = 0

    def fit(self, dataset, model, num_draws, thin, rng):
        self.calls += 1
        return super().fit(dataset, model, num_draws, thin, rng)


class ScriptedFitter(ConjugateNormalFitter):
    """Misbehaves depending on the first simulated observation."""

    def fit(self, dataset, model, num_draws, thin, rng):
        y0 = dataset["y"].iloc[0]
        result = super().fit(dataset, model, num_draws, thin, rng)
        if y0 > 1.0:
            raise RuntimeError("sampler crashed")
        if y0 < -1.0:
            raise FitNonConvergence("divergent transitions", result=result)
        if y0 < -0.5:
            return FitResult(draws=result.draws.iloc[:5])
        if y0 < 0.0:
            warnings.warn("R-hat above 1.05", ConvergenceWarning)
        return result


class SleepyFitter(ConjugateNormalFitter):
    """Hangs on replicates whose first simulated observation exceeds `threshold`."""

    def __init__(self, seconds, threshold):
        self.seconds = seconds
        self.threshold = threshold

    def fit(self, dataset, model, num_draws, thin, rng):
        if dataset["y"].iloc[0] > self.threshold:
            time.sleep(self.seconds)
        return super().fit(dataset, model, num_draws, thin, rng)


class NonFiniteFitter(ConjugateNormalFitter):
    def fit(self, dataset, model, num_draws, thin, rng):
        result = super().fit(dataset, model, num_draws, thin, rng)
        result.draws.iloc[0, 0] = np.nan
        return result


class DeprecatedApiFitter(ConjugateNormalFitter):
    def fit(self, dataset, model, num_draws, thin, rng):
        warnings.warn("pandas.foo is deprecated", DeprecationWarning)
        return super().fit(dataset, model, num_draws, thin, rng)


def _config(**kwargs):
    defaults = dict(num_replicates=60, num_draws=99, seed=31, progress=False)
    defaults.update(kwargs)
    return SBCConfig(**defaults)


def test_conjugate_oracle_ranks_are_uniform():
    model, template = normal_regression()
    config = SBCConfig(num_replicates=1000, num_draws=99, seed=2024, progress=False)
    result = SBCRunner(model, template, ConjugateNormalFitter(), config).run()
    assert len(result.ranks) == 1000
    for name, report in result.calibration().items():
        assert report.is_calibrated(alpha=0.01), (name, report.p_value)


def test_end_to_end_conjugate_scenario():
    model, template = normal_regression(num_obs=10, prior_scale=1.0, sigma=1.0)
    config = SBCConfig(num_replicates=200, num_draws=99, bins=20, seed=99, progress=False)
    result = SBCRunner(model, template, ConjugateNormalFitter(), config).run()

    assert ((result.ranks >= 0) & (result.ranks <= 99)).all().all()
    for report in result.calibration().values():
        assert report.bins_in_band >= 18
    contraction = result.sensitivity()["contraction"]
    assert contraction.between(0.8, 1.0).all()
    summary = result.summary()
    assert summary["failed"] == 0
    assert set(summary["parameters"]) == {"alpha", "beta"}


def test_replicates_are_deterministic():
    model, template = normal_regression()
    config = _config()
    a = run_replicate(5, model, template, ConjugateNormalFitter(), config)
    b = run_replicate(5, model, template, ConjugateNormalFitter(), config)
    assert a.ranks == b.ranks
    assert a.truth == b.truth
    c = run_replicate(6, model, template, ConjugateNormalFitter(), config)
    assert c.truth != a.truth


def test_replicate_streams_are_independent():
    prior_a, sim_a, fit_a = _replicate_rngs(1, 0)
    prior_b, _, _ = _replicate_rngs(1, 1)
    draws = [rng.random() for rng in (prior_a, sim_a, fit_a, prior_b)]
    assert len(set(draws)) == 4


def test_resume_matches_uninterrupted_run(tmp_path):
    model, template = normal_regression()
    config = _config(num_replicates=100)

    reference = SBCRunner(model, template, ConjugateNormalFitter(), config).run()

    store = ReplicateStore(str(tmp_path / "replicates"))
    first = CountingFitter()
    SBCRunner(model, template, first, config, store=store).run(indices=range(50))
    assert first.calls == 50
    assert store.completed_indices() == set(range(50))

    second = CountingFitter()
    resumed = SBCRunner(model, template, second, config, store=store).run()
    assert second.calls == 50
    pd.testing.assert_frame_equal(resumed.ranks, reference.ranks)
    pd.testing.assert_frame_equal(resumed.truths, reference.truths)


def test_failures_are_isolated_and_recorded(tmp_path, caplog):
    model, template = normal_regression()
    store = ReplicateStore(str(tmp_path / "replicates"))
    with caplog.at_level(logging.WARNING, logger="sbckit.runner"):
        result = SBCRunner(model, template, ScriptedFitter(), _config(), store=store).run()

    status = result.status
    assert len(status) == 60
    assert set(status) == {"ok", "flagged", "failed"}
    kinds = set(result.failures["kind"])
    assert kinds == {"fitter_error", "insufficient_draws"}
    assert len(result.ranks) == (status != "failed").sum()
    assert set(result.ranks.index).isdisjoint(result.failures.index)
    assert 0 < result.flagged_fraction < 1
    assert "fitter_error" in caplog.text

    reloaded = {r.index: r for r in store.load_all()}
    assert len(reloaded) == 60
    failed = result.failures.index[0]
    assert reloaded[failed].status == "failed"
    assert reloaded[failed].draws is None


def test_failed_replicates_retried_on_request(tmp_path):
    model, template = normal_regression()
    store = ReplicateStore(str(tmp_path / "replicates"))
    result = SBCRunner(model, template, ScriptedFitter(), _config(), store=store).run()
    num_failed = len(result.failures)

    skipped = CountingFitter()
    SBCRunner(model, template, skipped, _config(), store=store).run()
    assert skipped.calls == 0

    retried = CountingFitter()
    rerun = SBCRunner(model, template, retried, _config(retry_failed=True), store=store).run()
    assert retried.calls == num_failed
    assert (rerun.status == "ok").sum() >= (result.status == "ok").sum() + num_failed


def test_store_refuses_other_seed(tmp_path):
    model, template = normal_regression()
    store = ReplicateStore(str(tmp_path / "replicates"))
    SBCRunner(model, template, ConjugateNormalFitter(), _config(num_replicates=3), store=store).run()
    with pytest.raises(ValueError):
        SBCRunner(model, template, ConjugateNormalFitter(), _config(num_replicates=3, seed=32), store=store).run()


@pytest.mark.parametrize("executor", ["thread", "process"])
def test_worker_pool_matches_sequential(executor):
    model, template = normal_regression()
    sequential = SBCRunner(model, template, ConjugateNormalFitter(), _config(num_replicates=20)).run()
    pooled = SBCRunner(
        model, template, ConjugateNormalFitter(),
        _config(num_replicates=20, num_workers=2, executor=executor),
    ).run()
    pd.testing.assert_frame_equal(pooled.ranks, sequential.ranks)


def test_schema_errors_are_fatal_before_any_replicate():
    model, template = normal_regression()
    fitter = CountingFitter()
    runner = SBCRunner(model, template.rename(columns={"x": "z"}), fitter, _config())
    with pytest.raises(SchemaMismatch):
        runner.run()
    assert fitter.calls == 0


def test_fitter_incompatible_with_model_is_fatal():
    model, template = hierarchical_binomial()
    with pytest.raises(InvalidPriorSpec):
        SBCRunner(model, template, ConjugateNormalFitter(), _config()).run()


@pytest.mark.parametrize("kwargs", [
    {"num_draws": 0},
    {"thin": 0},
    {"bins": 101},
    {"level": 1.0},
    {"executor": "cluster"},
    {"fit_timeout_sec": 0.0},
])
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        _config(**kwargs)


def test_config_fixes_a_seed():
    config = SBCConfig(num_replicates=1, num_draws=10, bins=1)
    assert isinstance(config.seed, int)


def _split_by_first_observation(model, template, config):
    """Median of the first simulated observation, and the replicates above it."""
    records = [run_replicate(i, model, template, ConjugateNormalFitter(), config) for i in range(config.num_replicates)]
    threshold = float(np.median([r.outcome[0] for r in records]))
    return threshold, {r.index for r in records if r.outcome[0] > threshold}


def test_unrelated_warnings_do_not_flag_replicate():
    model, template = normal_regression()
    with pytest.warns(DeprecationWarning, match="deprecated"):
        record = run_replicate(0, model, template, DeprecatedApiFitter(), _config())
    assert record.status == "ok"
    assert record.messages == []


def test_non_finite_draws_fail_replicate():
    model, template = normal_regression()
    record = run_replicate(0, model, template, NonFiniteFitter(), _config())
    assert record.status == "failed"
    assert record.kind == "fit_non_convergence"
    assert record.ranks is None


def test_simulation_errors_have_their_own_kind(monkeypatch):
    model, template = normal_regression()

    def broken(vector, template, rng):
        raise ValueError("p < 0, p > 1 or p is NaN")

    monkeypatch.setattr(model, "simulate", broken)
    record = run_replicate(0, model, template, ConjugateNormalFitter(), _config())
    assert record.status == "failed"
    assert record.kind == "simulation_error"
    assert "ValueError" in record.messages[0]


def test_fit_over_budget_fails_replicate():
    model, template = normal_regression()
    config = _config(num_replicates=10, fit_timeout_sec=0.05)
    threshold, slow = _split_by_first_observation(model, template, config)
    record = run_replicate(min(slow), model, template, SleepyFitter(0.2, threshold), config)
    assert record.status == "failed"
    assert record.kind == "fit_timeout"


@pytest.mark.parametrize("num_workers", [1, 2])
def test_hanging_fits_are_abandoned(num_workers):
    model, template = normal_regression()
    config = _config(num_replicates=6, num_workers=num_workers, executor="thread", fit_timeout_sec=0.5)
    threshold, slow = _split_by_first_observation(model, template, config)
    assert len(slow) == 3

    result = SBCRunner(model, template, SleepyFitter(1.5, threshold), config).run()
    assert set(result.failures.index) == slow
    assert set(result.failures["kind"]) == {"fit_timeout"}
    assert set(result.ranks.index) == set(range(6)) - slow
    reference = SBCRunner(model, template, ConjugateNormalFitter(), _config(num_replicates=6)).run()
    pd.testing.assert_frame_equal(result.truths, reference.truths.loc[result.truths.index])


def test_sampler_time_budget_in_process_pool():
    model, template = hierarchical_binomial()
    fitter = MetropolisFitter(MetropolisConfig(kernel="mala", time_budget_sec=0.05))
    config = _config(num_replicates=4, num_workers=2, executor="process")
    result = SBCRunner(model, template, fitter, config).run()
    assert list(result.status) == ["failed"] * 4
    assert set(result.failures["kind"]) == {"fit_timeout"}
    assert result.ranks.empty
