"""
Prior and posterior predictive simulation.

Both produce a (num_draws, num_rows) array of replicated outcomes on the
template's rows, one row per parameter draw.
"""
from typing import Callable, Sequence, Tuple

import numpy as np
import pandas as pd

from sbckit.errors import SchemaMismatch
from sbckit.models.model import Model


def _replicate(model: Model, template: pd.DataFrame, draws: pd.DataFrame, rng: np.random.Generator) -> np.ndarray:
    design = model.validate(template)
    out = np.empty((len(draws), design.num_rows))
    for i, row in enumerate(draws.to_dict(orient="records")):
        state = model.prior.state_from_vector(row)
        out[i] = model.simulate_outcome(state, design, rng)
    return out


def prior_predictive(
    model: Model,
    template: pd.DataFrame,
    num_draws: int,
    rng: np.random.Generator,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """Parameter draws from the prior and the outcomes simulated from each."""
    draws = model.prior.sample_frame(rng, num_draws)
    return draws, _replicate(model, template, draws, rng)


def posterior_predictive(
    model: Model,
    template: pd.DataFrame,
    draws: pd.DataFrame,
    rng: np.random.Generator,
) -> np.ndarray:
    """Outcomes simulated from each posterior draw."""
    missing = [n for n in model.parameter_names if n not in draws.columns]
    if missing:
        raise SchemaMismatch(f"posterior draws have no column for {missing}")
    return _replicate(model, template, draws, rng)


def predictive_summary(replicated: np.ndarray, quantiles: Sequence[float] = (0.05, 0.5, 0.95)) -> pd.DataFrame:
    """Per-observation mean and quantiles of replicated outcomes."""
    replicated = np.asarray(replicated, dtype=float)
    table = pd.DataFrame({"mean": replicated.mean(axis=0)})
    for q, values in zip(quantiles, np.quantile(replicated, quantiles, axis=0)):
        table[f"q{100 * q:g}"] = values
    return table


def predictive_p_value(
    stat: Callable[[np.ndarray], float],
    observed: np.ndarray,
    replicated: np.ndarray,
) -> float:
    """Share of replicated datasets whose statistic is at least the observed one."""
    observed_stat = stat(np.asarray(observed))
    replicated_stats = np.array([stat(r) for r in np.asarray(replicated)])
    return float(np.mean(replicated_stats >= observed_stat))
