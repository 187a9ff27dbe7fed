import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from sbckit.diagnostics.plots import plot_ecdf_differences, plot_rank_histograms, plot_sensitivity
from sbckit.diagnostics.sbc import calibrate


@pytest.fixture
def reports():
    rng = np.random.default_rng(0)
    ranks = pd.DataFrame({name: rng.integers(0, 50, size=100) for name in ("a", "b", "c", "d")})
    return calibrate(ranks, num_draws=49, bins=10, num_simulations=100, rng=rng)


def test_rank_histograms_one_panel_per_parameter(reports):
    fig = plot_rank_histograms(reports, ncols=3)
    assert isinstance(fig, Figure)
    visible = [ax for ax in fig.axes if ax.get_visible()]
    assert [ax.get_title() for ax in visible] == ["a", "b", "c", "d"]


def test_ecdf_differences_subset(reports):
    fig = plot_ecdf_differences(reports, parameters=["b"])
    assert [ax.get_title() for ax in fig.axes] == ["b"]


def test_unknown_parameter_rejected(reports):
    with pytest.raises(KeyError):
        plot_rank_histograms(reports, parameters=["z"])


def test_sensitivity_plot():
    table = pd.DataFrame({
        "replicate": [0, 0, 1, 1],
        "parameter": ["a", "b", "a", "b"],
        "z_score": [0.1, -0.3, np.inf, 0.2],
        "contraction": [0.9, 0.5, 0.8, 0.4],
    })
    fig = plot_sensitivity(table)
    assert [ax.get_title() for ax in fig.axes] == ["a", "b"]
