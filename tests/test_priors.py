import pickle

import numpy as np
import pytest
import torch

from sbckit.errors import InvalidPriorSpec, SchemaMismatch
from sbckit.models.library import correlated_hierarchical_normal, hierarchical_binomial
from sbckit.models.priors import (
    CorrelatedGroupEffect,
    GroupEffect,
    LKJCorr,
    Prior,
    PriorNode,
    PriorSpec,
    lkj_cholesky,
)


def test_hyperparameters_drawn_before_dependents():
    prior = PriorSpec([
        GroupEffect("u", group="g", levels=["a", "b"], scale="tau"),
        Prior("tau", "half_normal", scale=1.0),
    ])
    assert prior.order.index("tau") < prior.order.index("u")
    assert prior.parameter_names == ["tau", "u[a]", "u[b]"]


def test_conditional_draws_follow_hyperparameter():
    prior = PriorSpec([
        Prior("theta", "normal", loc="mu", scale=0.01),
        Prior("mu", "normal", loc=0.0, scale=10.0),
    ])
    frame = prior.sample_frame(np.random.default_rng(0), 500)
    assert frame["mu"].std() > 5.0
    assert np.max(np.abs(frame["theta"] - frame["mu"])) < 0.1


def test_group_scale_drives_spread():
    prior = PriorSpec([
        Prior("tau", "uniform", low=0.01, high=3.0),
        GroupEffect("u", group="g", levels=list(range(50)), scale="tau"),
    ])
    rng = np.random.default_rng(1)
    for _ in range(5):
        state = prior.sample_state(rng)
        assert np.std(state["u"]) == pytest.approx(state["tau"], rel=0.5)


@pytest.mark.parametrize("nodes", [
    [Prior("a", "normal", loc=0.0, scale=1.0), Prior("a", "normal", loc=0.0, scale=1.0)],
    [Prior("a", "normal", loc="missing", scale=1.0)],
    [Prior("a", "normal", loc=0.0, scale=1.0), Prior("b", "normal", loc=0.0, scale="a")],
    [Prior("a", "normal", loc="b", scale=1.0), Prior("b", "normal", loc="a", scale=1.0)],
    [GroupEffect("u", group="g", levels=["x"]), Prior("b", "normal", loc="u", scale=1.0)],
    [],
])
def test_invalid_prior_specs(nodes):
    with pytest.raises(InvalidPriorSpec):
        PriorSpec(nodes)


@pytest.mark.parametrize("family, hyper", [
    ("normal", {"loc": 0.0, "scale": -1.0}),
    ("normal", {"loc": float("nan"), "scale": 1.0}),
    ("normal", {"loc": 0.0}),
    ("normal", {"loc": 0.0, "scale": 1.0, "shape": 2.0}),
    ("no_such_family", {}),
    ("uniform", {"low": 1.0, "high": 1.0}),
    ("uniform", {"low": "a", "high": 1.0}),
    ("gamma", {"concentration": 0.0, "rate": 1.0}),
])
def test_invalid_scalar_priors(family, hyper):
    with pytest.raises(InvalidPriorSpec):
        Prior("theta", family, **hyper)


def test_positive_support_accepted_as_scale():
    prior = PriorSpec([
        Prior("s", "gamma", concentration=2.0, rate=2.0),
        Prior("x", "normal", loc=0.0, scale="s"),
    ])
    assert prior.parameter_names == ["s", "x"]


def test_sampling_is_reproducible():
    model, _ = hierarchical_binomial()
    a = model.sample_prior(np.random.default_rng(11))
    b = model.sample_prior(np.random.default_rng(11))
    assert a == b
    assert list(a) == model.parameter_names


def test_state_from_vector_round_trip_and_missing_entry():
    model, _ = correlated_hierarchical_normal()
    vector = model.sample_prior(np.random.default_rng(3))
    state = model.prior.state_from_vector(vector)
    assert model.prior.flatten(state) == pytest.approx(vector)
    del vector["sigma"]
    with pytest.raises(SchemaMismatch):
        model.prior.state_from_vector(vector)


def test_lkj_cholesky_gives_correlation_matrix():
    rng = np.random.default_rng(4)
    for dim in (2, 3, 5):
        L = lkj_cholesky(rng, dim, eta=1.5)
        corr = L @ L.T
        np.testing.assert_allclose(np.diag(corr), 1.0)
        assert np.all(np.linalg.eigvalsh(corr) > 0)


def test_lkj_uniform_marginal_in_two_dimensions():
    prior = PriorSpec([LKJCorr("R", dim=2, eta=1.0)])
    r = prior.sample_frame(np.random.default_rng(5), 4000)["R[0,1]"]
    assert abs(r.mean()) < 0.05
    assert r.var() == pytest.approx(1.0 / 3.0, abs=0.03)


def test_correlated_group_effect_dimension_must_match():
    with pytest.raises(InvalidPriorSpec):
        PriorSpec([
            LKJCorr("R", dim=3),
            CorrelatedGroupEffect("ge", ("a", "b"), group="g", levels=["x"], scales=(1.0, 1.0), corr="R"),
        ])


def test_prior_variance_matches_scale():
    prior = PriorSpec([Prior("x", "normal", loc=1.0, scale=2.0)])
    var = prior.variance(np.random.default_rng(6), num_draws=4000)
    assert var["x"] == pytest.approx(4.0, rel=0.1)


def test_constrain_respects_support():
    model, _ = hierarchical_binomial()
    u = torch.full((model.prior.unconstrained_size(),), -3.0, dtype=torch.float64)
    state, log_prob = model.prior.constrain(u)
    assert state["sigma_group"] > 0
    assert torch.isfinite(log_prob)


def test_models_survive_pickling():
    model, _ = correlated_hierarchical_normal()
    clone = pickle.loads(pickle.dumps(model))
    assert clone.sample_prior(np.random.default_rng(9)) == model.sample_prior(np.random.default_rng(9))


def test_prior_node_is_abstract():
    class Incomplete(PriorNode):
        def output_names(self):
            return ["x"]

    with pytest.raises(TypeError):
        PriorNode()
    with pytest.raises(TypeError):
        Incomplete()
