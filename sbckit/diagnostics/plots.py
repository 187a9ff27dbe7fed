import math
from typing import Dict, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.figure import Figure

from sbckit.diagnostics.sbc import CalibrationReport, bin_edges


def _grid(n: int, ncols: int, size: Tuple[float, float] = (4.0, 3.0)):
    ncols = max(1, min(ncols, n))
    nrows = math.ceil(n / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(size[0] * ncols, size[1] * nrows), squeeze=False)
    flat = axes.ravel()
    for ax in flat[n:]:
        ax.set_visible(False)
    return fig, flat[:n]


def _select(names: Sequence[str], parameters: Optional[Sequence[str]]) -> list:
    if parameters is None:
        return list(names)
    unknown = [p for p in parameters if p not in names]
    if unknown:
        raise KeyError(f"no calibration results for {unknown}")
    return list(parameters)


def plot_rank_histograms(
    reports: Dict[str, CalibrationReport],
    parameters: Optional[Sequence[str]] = None,
    ncols: int = 3,
) -> Figure:
    """Binned rank counts per parameter over the binomial band expected under uniform ranks."""
    names = _select(list(reports), parameters)
    fig, axes = _grid(len(names), ncols)
    for ax, name in zip(axes, names):
        rep = reports[name]
        edges = bin_edges(rep.num_draws, len(rep.counts))
        widths = np.diff(edges)
        ax.fill_between(
            edges, np.append(rep.band_lower, rep.band_lower[-1]), np.append(rep.band_upper, rep.band_upper[-1]),
            step="post", color="gray", alpha=0.3, label="95% band",
        )
        ax.step(edges, np.append(rep.band_median, rep.band_median[-1]), where="post", color="gray", lw=1)
        ax.bar(edges[:-1], rep.counts, width=widths, align="edge", color="teal", alpha=0.7, edgecolor="black")
        ax.set_title(name)
        ax.set_xlabel("Rank")
        ax.set_ylabel("Count")
        ax.set_xlim(0, rep.num_draws + 1)
    fig.tight_layout()
    return fig


def plot_ecdf_differences(
    reports: Dict[str, CalibrationReport],
    parameters: Optional[Sequence[str]] = None,
    ncols: int = 3,
) -> Figure:
    """ECDF minus uniform CDF per parameter inside the simulated null envelope."""
    names = _select(list(reports), parameters)
    fig, axes = _grid(len(names), ncols)
    for ax, name in zip(axes, names):
        rep = reports[name]
        q = np.arange(1, rep.num_draws + 2) / (rep.num_draws + 1)
        ax.fill_between(q, rep.envelope_lower, rep.envelope_upper, step="post", color="gray", alpha=0.3)
        ax.step(q, rep.ecdf_diff, where="post", color="teal", lw=1.5)
        ax.axhline(0.0, color="black", lw=0.5)
        ax.set_title(name)
        ax.set_xlabel("Fractional rank")
        ax.set_ylabel("ECDF - Uniform")
    fig.tight_layout()
    return fig


def plot_sensitivity(
    table: pd.DataFrame,
    parameters: Optional[Sequence[str]] = None,
    ncols: int = 3,
) -> Figure:
    """Posterior z-score against posterior contraction, one panel per parameter, mean in red."""
    names = _select(list(dict.fromkeys(table["parameter"])), parameters)
    fig, axes = _grid(len(names), ncols)
    for ax, name in zip(axes, names):
        rows = table[table["parameter"] == name].replace([np.inf, -np.inf], np.nan)
        ax.scatter(rows["contraction"], rows["z_score"], s=10, alpha=0.5, color="teal")
        ax.scatter([rows["contraction"].mean()], [rows["z_score"].mean()], s=60, color="red", marker="x")
        ax.axhline(0.0, color="black", lw=0.5)
        ax.set_xlim(-0.05, 1.05)
        ax.set_title(name)
        ax.set_xlabel("Posterior contraction")
        ax.set_ylabel("Posterior z-score")
    fig.tight_layout()
    return fig
