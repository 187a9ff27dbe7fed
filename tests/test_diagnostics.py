import numpy as np
import pytest

from sbckit.diagnostics.metrics import compute_ess, compute_rhat_rank_normalized


def test_compute_ess_constant_chain():
    chain = np.zeros((100, 2))
    ess = compute_ess(chain)
    assert np.all(ess == 1.0)


def test_compute_ess_iid_close_to_draw_count():
    rng = np.random.default_rng(1)
    chains = rng.normal(size=(4, 500, 2))
    ess = compute_ess(chains)
    assert np.all(ess > 1000)
    assert np.all(ess < 3500)


def test_compute_ess_autocorrelated_chain_is_small():
    rng = np.random.default_rng(2)
    n = 2000
    x = np.zeros(n)
    for t in range(1, n):
        x[t] = 0.9 * x[t - 1] + rng.normal()
    ess = compute_ess(x[:, None])
    assert ess[0] < n / 5


def test_rhat_rank_normalized_identical_chains():
    rng = np.random.default_rng(0)
    base = rng.normal(size=(1, 200, 3))
    chains = np.repeat(base, 4, axis=0)
    rhat = compute_rhat_rank_normalized(chains)
    assert np.allclose(rhat, 1.0, atol=0.05)


def test_rhat_detects_separated_chains():
    rng = np.random.default_rng(3)
    chains = rng.normal(size=(4, 200, 1))
    chains[0] += 5.0
    rhat = compute_rhat_rank_normalized(chains)
    assert rhat[0] > 1.1


def test_rhat_detects_scale_mismatch_through_folding():
    rng = np.random.default_rng(4)
    chains = rng.normal(size=(4, 500, 1))
    chains[0] *= 10.0
    assert compute_rhat_rank_normalized(chains)[0] > 1.05


def test_rhat_requires_three_dimensions():
    with pytest.raises(ValueError):
        compute_rhat_rank_normalized(np.zeros((10, 2)))
