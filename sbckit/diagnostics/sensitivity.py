import numpy as np
import pandas as pd


def posterior_z_score(mean, variance, truth):
    """
    (posterior mean - true value) / posterior sd. Clusters near zero for an
    unbiased fit. Zero variance gives +/-inf (or NaN when mean == truth).
    """
    mean = np.asarray(mean, dtype=float)
    variance = np.asarray(variance, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return (mean - np.asarray(truth, dtype=float)) / np.sqrt(variance)


def posterior_contraction(variance, prior_variance):
    """
    1 - posterior variance / prior variance. 1 when the data pin the
    parameter down, 0 when they add nothing. NaN for a zero prior variance.
    """
    variance = np.asarray(variance, dtype=float)
    prior_variance = np.asarray(prior_variance, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = 1.0 - variance / prior_variance
    return np.where(prior_variance > 0, out, np.nan)


def sensitivity_table(
    means: pd.DataFrame,
    variances: pd.DataFrame,
    truths: pd.DataFrame,
    prior_variance: pd.Series,
) -> pd.DataFrame:
    """
    Long table with one row per (replicate, parameter): z_score and
    contraction. Inputs are replicate x parameter tables sharing index and
    columns.
    """
    columns = list(means.columns)
    truths = truths.reindex(index=means.index, columns=columns)
    variances = variances.reindex(index=means.index, columns=columns)
    z = posterior_z_score(means, variances, truths)
    c = posterior_contraction(variances, prior_variance.reindex(columns).to_numpy()[None, :])
    n_rep, n_par = z.shape
    return pd.DataFrame({
        "replicate": np.repeat(means.index.to_numpy(), n_par),
        "parameter": np.tile(columns, n_rep),
        "z_score": z.ravel(),
        "contraction": c.ravel(),
    })


def summarize_sensitivity(table: pd.DataFrame) -> pd.DataFrame:
    """Across-replicate mean z-score and contraction per parameter."""
    finite = table.replace([np.inf, -np.inf], np.nan)
    return finite.groupby("parameter", sort=False)[["z_score", "contraction"]].mean()
