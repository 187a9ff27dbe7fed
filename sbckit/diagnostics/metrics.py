import numpy as np
import scipy.stats


def _as_chains(draws: np.ndarray) -> np.ndarray:
    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 2:
        return draws[None, :, :]
    if draws.ndim != 3:
        raise ValueError("draws must have shape (N, D) or (M, N, D)")
    return draws


def _autocov_fft(x: np.ndarray) -> np.ndarray:
    """Biased autocovariance of a 1-d series for all lags."""
    n = len(x)
    x = x - np.mean(x)
    f = np.fft.fft(x, n=2 * n)
    return np.real(np.fft.ifft(f * np.conjugate(f)))[:n] / n


def compute_ess(draws: np.ndarray) -> np.ndarray:
    """
    Effective Sample Size per dimension, pooling chains the way Stan does
    and truncating autocorrelations with Geyer's initial monotone sequence.

    draws: (N, D) single chain or (M, N, D) chains.
    Returns: (D,) array. Constant series get ESS 1.
    """
    chains = _as_chains(draws)
    m, n, d = chains.shape
    if n < 3:
        return np.ones(d)
    ess = np.ones(d)
    for j in range(d):
        acov = np.stack([_autocov_fft(chains[c, :, j]) for c in range(m)])
        chain_var = acov[:, 0] * n / (n - 1)
        mean_var = chain_var.mean()
        var_plus = mean_var * (n - 1) / n
        if m > 1:
            var_plus += chains[:, :, j].mean(axis=1).var(ddof=1)
        if var_plus <= 0:
            continue
        rho = 1.0 - (mean_var - acov.mean(axis=0)) / var_plus
        rho[0] = 1.0

        pairs = []
        for t in range(0, n - 1, 2):
            p = rho[t] + rho[t + 1]
            if p < 0:
                break
            pairs.append(p)
        for i in range(1, len(pairs)):
            if pairs[i] > pairs[i - 1]:
                pairs[i] = pairs[i - 1]
        tau = max(-1.0 + 2.0 * np.sum(pairs), 1.0 / np.log10(m * n))
        ess[j] = max(1.0, m * n / tau)
    return ess


def _split(chains: np.ndarray) -> np.ndarray:
    n2 = chains.shape[1] // 2
    return np.concatenate([chains[:, :n2, :], chains[:, n2:2 * n2, :]], axis=0)


def _z_scale(split: np.ndarray) -> np.ndarray:
    m, n, d = split.shape
    flat = split.reshape(m * n, d)
    ranks = np.column_stack([scipy.stats.rankdata(flat[:, j], method="average") for j in range(d)])
    z = scipy.stats.norm.ppf((ranks - 0.375) / (m * n + 0.25))
    return z.reshape(m, n, d)


def _rhat(z: np.ndarray) -> np.ndarray:
    n = z.shape[1]
    chain_means = z.mean(axis=1)
    chain_vars = z.var(axis=1, ddof=1)
    B = n * chain_means.var(axis=0, ddof=1)
    W = chain_vars.mean(axis=0)
    var_hat = (n - 1) / n * W + B / n
    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(var_hat / W)
    return np.where(np.isfinite(rhat), rhat, np.ones_like(rhat))


def compute_rhat_rank_normalized(chains: np.ndarray) -> np.ndarray:
    """
    Rank-normalised split R-hat (Vehtari et al. 2021): the larger of the
    bulk value and the value for folded draws |x - median|.

    chains: (M, N, D) array.
    Returns: (D,) array.
    """
    chains = np.asarray(chains, dtype=float)
    if chains.ndim != 3:
        raise ValueError("chains must have shape (M, N, D)")
    m, n, d = chains.shape
    if n < 4:
        return np.ones(d)
    split = _split(chains)
    bulk = _rhat(_z_scale(split))
    folded = np.abs(split - np.median(split.reshape(-1, d), axis=0))
    tail = _rhat(_z_scale(folded))
    return np.maximum(bulk, tail)
