"""
Ready-made models used by the CLI, the tests and the tutorials.

Each builder returns the model together with the covariate template it is
simulated on.
"""
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from sbckit.models.likelihoods import GroupTerm, Likelihood, LinearPredictor
from sbckit.models.model import Model
from sbckit.models.priors import CorrelatedGroupEffect, GroupEffect, LKJCorr, Prior, PriorSpec


def normal_regression(
    x: Optional[Sequence[float]] = None,
    num_obs: int = 10,
    prior_scale: float = 1.0,
    sigma: float = 1.0,
) -> Tuple[Model, pd.DataFrame]:
    """
    Conjugate normal-normal regression with known noise:

        alpha, beta ~ Normal(0, prior_scale)
        y_i ~ Normal(alpha + beta * x_i, sigma)

    `x` defaults to `num_obs` centred, evenly spaced values in [-1.5, 1.5].
    """
    if x is None:
        x = np.linspace(-1.5, 1.5, num_obs)
    template = pd.DataFrame({"x": np.asarray(x, dtype=float)})
    prior = PriorSpec([
        Prior("alpha", "normal", loc=0.0, scale=prior_scale),
        Prior("beta", "normal", loc=0.0, scale=prior_scale),
    ])
    likelihood = Likelihood(
        "normal",
        LinearPredictor(intercept="alpha", coefficients={"x": "beta"}),
        sigma=sigma,
    )
    return Model(prior, likelihood), template


def _group_labels(num_groups: int) -> list:
    return [f"g{i}" for i in range(num_groups)]


def hierarchical_binomial(
    num_groups: int = 8,
    obs_per_group: int = 4,
    trials: int = 20,
    intercept_scale: float = 1.5,
    group_scale: float = 1.0,
    slope_scale: float = 1.0,
) -> Tuple[Model, pd.DataFrame]:
    """
    Binomial-logit model with varying intercepts whose scale is sampled:

        alpha ~ Normal(0, intercept_scale)
        beta ~ Normal(0, slope_scale)
        sigma_group ~ HalfNormal(group_scale)
        alpha_group[g] ~ Normal(0, sigma_group)
        successes_i ~ Binomial(trials_i, logit^-1(alpha + alpha_group[g_i] + beta * x_i))
    """
    levels = _group_labels(num_groups)
    x = np.tile(np.linspace(-1.0, 1.0, obs_per_group), num_groups)
    template = pd.DataFrame({
        "group": np.repeat(levels, obs_per_group),
        "x": x,
        "trials": np.full(num_groups * obs_per_group, trials, dtype=int),
    })
    prior = PriorSpec([
        Prior("alpha", "normal", loc=0.0, scale=intercept_scale),
        Prior("beta", "normal", loc=0.0, scale=slope_scale),
        GroupEffect("alpha_group", group="group", levels=levels, loc=0.0, scale="sigma_group"),
        Prior("sigma_group", "half_normal", scale=group_scale),
    ])
    likelihood = Likelihood(
        "binomial",
        LinearPredictor(
            intercept="alpha",
            coefficients={"x": "beta"},
            group_terms=[GroupTerm("alpha_group")],
        ),
        outcome="successes",
        trials="trials",
    )
    return Model(prior, likelihood), template


def correlated_hierarchical_normal(
    num_groups: int = 6,
    obs_per_group: int = 8,
    eta: float = 2.0,
) -> Tuple[Model, pd.DataFrame]:
    """
    Varying intercepts and slopes with an LKJ correlation prior:

        mu_a, mu_b ~ Normal(0, 1)
        tau_a ~ HalfNormal(1), tau_b ~ HalfNormal(0.5)
        Omega ~ LKJ(eta)
        (a_group[g], b_group[g]) ~ MVN(0, diag(tau) Omega diag(tau))
        sigma ~ Exponential(1)
        y_i ~ Normal(mu_a + a_group[g_i] + (mu_b + b_group[g_i]) * x_i, sigma)
    """
    levels = _group_labels(num_groups)
    template = pd.DataFrame({
        "group": np.repeat(levels, obs_per_group),
        "x": np.tile(np.linspace(-1.0, 1.0, obs_per_group), num_groups),
    })
    prior = PriorSpec([
        Prior("mu_a", "normal", loc=0.0, scale=1.0),
        Prior("mu_b", "normal", loc=0.0, scale=1.0),
        Prior("tau_a", "half_normal", scale=1.0),
        Prior("tau_b", "half_normal", scale=0.5),
        LKJCorr("Omega", dim=2, eta=eta),
        CorrelatedGroupEffect(
            "group_effects",
            components=("a_group", "b_group"),
            group="group",
            levels=levels,
            scales=("tau_a", "tau_b"),
            corr="Omega",
        ),
        Prior("sigma", "exponential", rate=1.0),
    ])
    likelihood = Likelihood(
        "normal",
        LinearPredictor(
            intercept="mu_a",
            coefficients={"x": "mu_b"},
            group_terms=[GroupTerm("a_group"), GroupTerm("b_group", covariate="x")],
        ),
        sigma="sigma",
    )
    return Model(prior, likelihood), template


MODEL_BUILDERS = {
    "normal_regression": normal_regression,
    "hierarchical_binomial": hierarchical_binomial,
    "correlated_hierarchical_normal": correlated_hierarchical_normal,
}
