import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from sbckit.errors import InsufficientDraws
from sbckit.models.model import Model


@dataclass
class FitResult:
    """
    Raw posterior draws returned by a fitter, before thinning.

    draws: one row per draw, one column per parameter name.
    chain: chain id per row (None for a single chain / independent draws).
    warnings: degraded-quality messages; non-empty means the fit did not converge.
    """
    draws: pd.DataFrame
    chain: Optional[np.ndarray] = None
    warnings: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return not self.warnings


class PosteriorFitter(abc.ABC):
    """Abstract interface for anything that turns a dataset into posterior draws."""
    name = "fitter"

    def check(self, model: Model) -> None:
        """Raise InvalidPriorSpec if this backend cannot fit `model`."""

    @abc.abstractmethod
    def fit(
        self,
        dataset: pd.DataFrame,
        model: Model,
        num_draws: int,
        thin: int,
        rng: np.random.Generator,
    ) -> FitResult:
        """
        Draw from the posterior of `model` given `dataset`.

        Args:
            dataset: simulated (or observed) data with the template's schema.
            model: prior and likelihood.
            num_draws: number of draws wanted after thinning.
            thin: stride the caller will thin by; fitters should return at
                least num_draws * thin raw draws.
            rng: replicate-local random stream.

        Returns:
            FitResult with raw draws.
        """
        pass


def thin_draws(result: FitResult, num_draws: int, thin: int = 1) -> pd.DataFrame:
    """
    Keep every `thin`-th draw within each chain and return exactly
    `num_draws` rows, interleaving chains so each contributes evenly.
    Raises InsufficientDraws when fewer remain.
    """
    if thin < 1:
        raise ValueError("thin must be >= 1")
    if num_draws < 1:
        raise ValueError("num_draws must be >= 1")
    draws = result.draws
    chain = np.zeros(len(draws), dtype=int) if result.chain is None else np.asarray(result.chain)
    if len(chain) != len(draws):
        raise ValueError("chain ids must match the number of draws")

    keep: List[np.ndarray] = []
    position: List[np.ndarray] = []
    for c in np.unique(chain):
        rows = np.flatnonzero(chain == c)[::thin]
        keep.append(rows)
        position.append(np.arange(len(rows)))
    rows = np.concatenate(keep) if keep else np.array([], dtype=int)
    if len(rows) < num_draws:
        raise InsufficientDraws(
            f"{len(rows)} draws left after thinning by {thin}, {num_draws} required"
        )
    order = np.argsort(np.concatenate(position), kind="stable")
    return draws.iloc[rows[order][:num_draws]].reset_index(drop=True)
