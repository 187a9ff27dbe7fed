import numpy as np
import pandas as pd
import pytest

from sbckit.diagnostics.sbc import (
    binomial_band,
    bin_edges,
    calibrate,
    chi_square_uniformity,
    compute_rank,
    compute_ranks,
    ecdf_difference,
    ecdf_envelope,
    rank_histogram,
    run_sbc,
)
from sbckit.errors import SchemaMismatch


def _gaussian_stubs():
    def prior_sampler(rng):
        return rng.normal(0.0, 1.0)

    def simulate_data(theta, rng):
        return rng.normal(theta, 1.0)

    def posterior_sampler(y, rng, n):
        mu = 0.5 * y
        sigma = np.sqrt(0.5)
        return rng.normal(mu, sigma, size=n)

    return prior_sampler, simulate_data, posterior_sampler


def test_sbc_gaussian_posterior_rank_mean():
    num_replications = 50
    num_posterior_samples = 200
    ranks = run_sbc(
        *_gaussian_stubs(),
        num_replications=num_replications,
        num_posterior_samples=num_posterior_samples,
        seed=123
    )
    mean_rank = np.mean(ranks)
    assert abs(mean_rank - num_posterior_samples / 2) < 25


def test_run_sbc_is_deterministic_per_seed():
    a = run_sbc(*_gaussian_stubs(), num_replications=20, num_posterior_samples=50, seed=7)
    b = run_sbc(*_gaussian_stubs(), num_replications=20, num_posterior_samples=50, seed=7)
    np.testing.assert_array_equal(a, b)


def test_rank_excludes_ties():
    assert compute_rank(1.0, np.array([0.0, 1.0, 1.0, 2.0])) == 1


def test_rank_bounds():
    draws = np.linspace(-1.0, 1.0, 9)
    assert compute_rank(-5.0, draws) == 0
    assert compute_rank(5.0, draws) == len(draws)


def test_compute_ranks_per_parameter():
    draws = pd.DataFrame({"a": [0.0, 1.0, 2.0], "b": [5.0, 6.0, 7.0]})
    assert compute_ranks({"a": 1.5, "b": 4.0}, draws) == {"a": 2, "b": 0}


def test_compute_ranks_missing_parameter():
    draws = pd.DataFrame({"a": [0.0, 1.0]})
    with pytest.raises(SchemaMismatch):
        compute_ranks({"a": 0.5, "b": 1.0}, draws)


def test_bin_edges_rejects_too_many_bins():
    with pytest.raises(ValueError):
        bin_edges(num_draws=9, bins=11)


def test_rank_histogram_even_bins():
    ranks = np.arange(100)
    counts, probs = rank_histogram(ranks, num_draws=99, bins=10)
    np.testing.assert_array_equal(counts, np.full(10, 10))
    np.testing.assert_allclose(probs, 0.1)


def test_rank_histogram_uneven_bins_use_exact_probabilities():
    counts, probs = rank_histogram(np.arange(11), num_draws=10, bins=3)
    np.testing.assert_array_equal(counts, [4, 4, 3])
    np.testing.assert_allclose(probs, [4 / 11, 4 / 11, 3 / 11])


def test_rank_histogram_rejects_out_of_range():
    with pytest.raises(ValueError):
        rank_histogram(np.array([0, 12]), num_draws=10, bins=2)


def test_binomial_band_brackets_expected_count():
    lower, median, upper = binomial_band(1000, np.full(10, 0.1))
    np.testing.assert_array_equal(median, 100)
    assert np.all(lower < median)
    assert np.all(upper > median)
    assert np.all(lower > 70) and np.all(upper < 130)


def test_ecdf_difference_zero_for_exactly_uniform_ranks():
    diff = ecdf_difference(np.arange(20), num_draws=19)
    np.testing.assert_allclose(diff, 0.0, atol=1e-12)


def test_ecdf_difference_detects_low_ranks():
    diff = ecdf_difference(np.zeros(50, dtype=int), num_draws=19)
    assert diff[0] == pytest.approx(1.0 - 1.0 / 20)
    assert diff[-1] == pytest.approx(0.0)


def test_ecdf_envelope_contains_zero():
    lower, upper = ecdf_envelope(200, 49, num_simulations=300, rng=np.random.default_rng(0))
    assert lower.shape == upper.shape == (50,)
    assert np.all(lower[:-1] < 0) and np.all(upper[:-1] > 0)


def test_chi_square_uniformity():
    rng = np.random.default_rng(5)
    _, p_uniform = chi_square_uniformity(rng.integers(0, 100, size=1000), num_draws=99)
    _, p_skewed = chi_square_uniformity(rng.integers(0, 30, size=1000), num_draws=99)
    assert p_uniform > 0.01
    assert p_skewed < 1e-6


def test_calibrate_reports_each_parameter():
    rng = np.random.default_rng(6)
    ranks = pd.DataFrame({
        "good": rng.integers(0, 100, size=500),
        "biased": np.minimum(rng.integers(0, 100, size=500) + 30, 99),
    })
    reports = calibrate(ranks, num_draws=99, bins=10, num_simulations=200, rng=rng)
    assert set(reports) == {"good", "biased"}
    assert reports["good"].is_calibrated()
    assert not reports["biased"].is_calibrated()
    assert reports["biased"].bins_in_band < reports["good"].bins_in_band
    assert reports["biased"].fraction_outside_envelope > 0.5
    summary = reports["good"].to_dict()
    assert summary["bins"] == 10
    assert sum(summary["counts"]) == 500
