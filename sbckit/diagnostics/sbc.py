from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.stats

from sbckit.errors import SchemaMismatch


def compute_rank(truth: float, draws: np.ndarray) -> int:
    """Number of posterior draws strictly below the true value (ties excluded)."""
    return int(np.sum(np.asarray(draws, dtype=float) < truth))


def compute_ranks(truth: Mapping[str, float], draws: pd.DataFrame) -> Dict[str, int]:
    """
    Rank of every generating value among its posterior draws.
    Each rank lies in {0, ..., len(draws)}.
    """
    missing = [name for name in truth if name not in draws.columns]
    if missing:
        raise SchemaMismatch(f"posterior draws have no column for {missing}")
    return {name: compute_rank(value, draws[name].to_numpy()) for name, value in truth.items()}


def run_sbc(
    prior_sampler: Callable[[np.random.Generator], float],
    simulate_data: Callable[[float, np.random.Generator], object],
    posterior_sampler: Callable[[object, np.random.Generator, int], np.ndarray],
    num_replications: int,
    num_posterior_samples: int,
    seed: Optional[int] = None
) -> np.ndarray:
    """
    Callable-based SBC loop for a scalar parameter.
    Replicate i draws from its own stream SeedSequence(seed, spawn_key=(i,)).
    Returns rank statistics (size num_replications).
    """
    ranks: List[int] = []
    for i in range(num_replications):
        rng = np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(i,)))
        theta = prior_sampler(rng)
        data = simulate_data(theta, rng)
        draws = posterior_sampler(data, rng, num_posterior_samples)
        ranks.append(compute_rank(theta, draws))
    return np.array(ranks)


def _check_ranks(ranks: np.ndarray, num_draws: int) -> np.ndarray:
    ranks = np.asarray(ranks)
    if ranks.ndim != 1:
        raise ValueError("ranks must be one-dimensional")
    if ranks.size and (ranks.min() < 0 or ranks.max() > num_draws):
        raise ValueError(f"ranks must lie in [0, {num_draws}]")
    return ranks.astype(int)


def bin_edges(num_draws: int, bins: int = 10) -> np.ndarray:
    """Equal-width bin edges over the L + 1 possible rank values."""
    if bins < 1 or bins > num_draws + 1:
        raise ValueError(f"bins must be between 1 and {num_draws + 1}")
    return np.linspace(0, num_draws + 1, bins + 1)


def rank_histogram(ranks: np.ndarray, num_draws: int, bins: int = 10) -> Tuple[np.ndarray, np.ndarray]:
    """
    Counts of ranks per equal-width bin and the probability of each bin under
    uniform ranks. The probability is bin_width / (L + 1) whenever `bins`
    divides L + 1; otherwise it is the exact share of rank values in the bin.
    """
    ranks = _check_ranks(ranks, num_draws)
    edges = bin_edges(num_draws, bins)
    values = np.arange(num_draws + 1)
    bin_of_value = np.searchsorted(edges, values, side="right") - 1
    counts = np.bincount(bin_of_value[ranks], minlength=bins)
    probs = np.bincount(bin_of_value, minlength=bins) / (num_draws + 1)
    return counts, probs


def binomial_band(num_replicates: int, probs: np.ndarray, level: float = 0.95) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Lower / median / upper quantiles of each bin count under uniform ranks:
    Binomial(num_replicates, p) at (1 - level) / 2, 0.5 and (1 + level) / 2.
    """
    dist = scipy.stats.binom(num_replicates, np.asarray(probs, dtype=float))
    alpha = 1.0 - level
    return dist.ppf(alpha / 2), dist.ppf(0.5), dist.ppf(1.0 - alpha / 2)


def ecdf_difference(ranks: np.ndarray, num_draws: int) -> np.ndarray:
    """ECDF of the ranks minus the uniform CDF, evaluated at r = 0..L."""
    ranks = _check_ranks(ranks, num_draws)
    if ranks.size == 0:
        return np.zeros(num_draws + 1)
    counts = np.bincount(ranks, minlength=num_draws + 1)
    ecdf = np.cumsum(counts) / ranks.size
    uniform = np.arange(1, num_draws + 2) / (num_draws + 1)
    return ecdf - uniform


def ecdf_envelope(
    num_replicates: int,
    num_draws: int,
    level: float = 0.95,
    num_simulations: int = 1000,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pointwise band for the ECDF difference under uniform ranks, from
    `num_simulations` sets of `num_replicates` uniform ranks on {0..L}.
    """
    rng = rng or np.random.default_rng()
    sims = rng.integers(0, num_draws + 1, size=(num_simulations, num_replicates))
    diffs = np.stack([ecdf_difference(s, num_draws) for s in sims])
    alpha = 1.0 - level
    lower = np.quantile(diffs, alpha / 2, axis=0)
    upper = np.quantile(diffs, 1.0 - alpha / 2, axis=0)
    return lower, upper


def chi_square_uniformity(ranks: np.ndarray, num_draws: int, bins: int = 10) -> Tuple[float, float]:
    """
    Chi-squared goodness of fit of binned ranks against uniform ranks.
    Returns (statistic, p-value).
    """
    counts, probs = rank_histogram(ranks, num_draws, bins)
    if counts.sum() == 0:
        return float("nan"), float("nan")
    result = scipy.stats.chisquare(counts, f_exp=probs * counts.sum())
    return float(result.statistic), float(result.pvalue)


@dataclass
class CalibrationReport:
    parameter: str
    num_replicates: int
    num_draws: int
    counts: np.ndarray
    probs: np.ndarray
    band_lower: np.ndarray
    band_median: np.ndarray
    band_upper: np.ndarray
    chi2: float
    p_value: float
    ecdf_diff: np.ndarray
    envelope_lower: np.ndarray
    envelope_upper: np.ndarray

    @property
    def bins_in_band(self) -> int:
        return int(np.sum((self.counts >= self.band_lower) & (self.counts <= self.band_upper)))

    @property
    def fraction_outside_envelope(self) -> float:
        outside = (self.ecdf_diff < self.envelope_lower) | (self.ecdf_diff > self.envelope_upper)
        return float(np.mean(outside))

    def is_calibrated(self, alpha: float = 0.01) -> bool:
        return bool(self.p_value >= alpha)

    def to_dict(self) -> Dict[str, object]:
        return {
            "parameter": self.parameter,
            "num_replicates": self.num_replicates,
            "chi2": self.chi2,
            "p_value": self.p_value,
            "bins_in_band": self.bins_in_band,
            "bins": int(len(self.counts)),
            "fraction_outside_envelope": self.fraction_outside_envelope,
            "counts": self.counts.tolist(),
        }


def calibrate(
    ranks: pd.DataFrame,
    num_draws: int,
    bins: int = 10,
    level: float = 0.95,
    num_simulations: int = 1000,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, CalibrationReport]:
    """
    Per-parameter calibration report for a replicate x parameter rank table.
    Every column is assessed on its own; no global verdict is formed.
    """
    rng = rng or np.random.default_rng(0)
    n = len(ranks)
    env_lower, env_upper = ecdf_envelope(n, num_draws, level, num_simulations, rng)
    reports = {}
    for name in ranks.columns:
        r = ranks[name].to_numpy()
        counts, probs = rank_histogram(r, num_draws, bins)
        lower, median, upper = binomial_band(n, probs, level)
        chi2, p_value = chi_square_uniformity(r, num_draws, bins)
        reports[name] = CalibrationReport(
            parameter=name,
            num_replicates=n,
            num_draws=num_draws,
            counts=counts,
            probs=probs,
            band_lower=lower,
            band_median=median,
            band_upper=upper,
            chi2=chi2,
            p_value=p_value,
            ecdf_diff=ecdf_difference(r, num_draws),
            envelope_lower=env_lower,
            envelope_upper=env_upper,
        )
    return reports
