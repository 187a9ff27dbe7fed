from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import torch
import torch.distributions as dist
from scipy.special import expit

from sbckit.errors import InvalidPriorSpec, SchemaMismatch
from sbckit.models.priors import DTYPE, CorrelatedGroupEffect, GroupEffect, Hyper, Prior, PriorSpec, State

LIKELIHOOD_FAMILIES = ("normal", "binomial", "bernoulli", "poisson")


@dataclass(frozen=True)
class GroupTerm:
    """effect[level of row], optionally multiplied by a covariate column (varying slope)."""
    effect: str
    covariate: Optional[str] = None


@dataclass
class LinearPredictor:
    intercept: Optional[str] = None
    coefficients: Dict[str, str] = field(default_factory=dict)
    group_terms: List[GroupTerm] = field(default_factory=list)

    def references(self) -> List[str]:
        refs = [self.intercept] if self.intercept else []
        refs.extend(self.coefficients.values())
        return refs

    def covariates(self) -> List[str]:
        cols = list(self.coefficients)
        cols.extend(t.covariate for t in self.group_terms if t.covariate)
        return list(dict.fromkeys(cols))


@dataclass
class Design:
    """
    Covariate structure of a template, resolved once and reused for every
    simulated dataset and every log-likelihood evaluation.
    """
    num_rows: int
    covariates: Dict[str, np.ndarray]
    codes: Dict[str, np.ndarray]
    trials: Optional[np.ndarray] = None

    def to_torch(self) -> "TorchDesign":
        return TorchDesign(
            num_rows=self.num_rows,
            covariates={k: torch.as_tensor(v, dtype=DTYPE) for k, v in self.covariates.items()},
            codes={k: torch.as_tensor(v, dtype=torch.long) for k, v in self.codes.items()},
            trials=None if self.trials is None else torch.as_tensor(self.trials, dtype=DTYPE),
        )


@dataclass
class TorchDesign:
    num_rows: int
    covariates: Dict[str, torch.Tensor]
    codes: Dict[str, torch.Tensor]
    trials: Optional[torch.Tensor] = None


@dataclass
class Likelihood:
    """
    Observation model: outcome ~ family(link^-1(linear predictor)).

    normal uses the identity link and `sigma` (number or parameter name);
    binomial counts successes out of the `trials` column with a logit link;
    bernoulli uses a logit link; poisson a log link.
    """
    family: str
    predictor: LinearPredictor
    outcome: str = "y"
    trials: Optional[str] = None
    sigma: Optional[Hyper] = None

    def __post_init__(self) -> None:
        if self.family not in LIKELIHOOD_FAMILIES:
            raise InvalidPriorSpec(f"unknown likelihood family {self.family!r}")
        if self.family == "normal" and self.sigma is None:
            raise InvalidPriorSpec("normal likelihood needs sigma")
        if self.family != "normal" and self.sigma is not None:
            raise InvalidPriorSpec(f"{self.family} likelihood takes no sigma")
        if self.family == "binomial" and not self.trials:
            raise InvalidPriorSpec("binomial likelihood needs a trials column")
        if isinstance(self.sigma, (int, float)):
            self.sigma = float(self.sigma)
            if not np.isfinite(self.sigma) or self.sigma <= 0:
                raise InvalidPriorSpec(f"likelihood sigma must be positive, got {self.sigma}")

    def references(self) -> List[str]:
        refs = self.predictor.references()
        if isinstance(self.sigma, str):
            refs.append(self.sigma)
        return refs

    def check(self, prior: PriorSpec) -> None:
        for ref in self.predictor.references():
            node = prior.nodes.get(ref)
            if not isinstance(node, Prior):
                raise InvalidPriorSpec(f"linear predictor references unknown scalar parameter {ref!r}")
        if isinstance(self.sigma, str):
            node = prior.nodes.get(self.sigma)
            if not isinstance(node, Prior) or not node.satisfies("positive"):
                raise InvalidPriorSpec(f"sigma must name a positive scalar parameter, got {self.sigma!r}")
        for term in self.predictor.group_terms:
            if not isinstance(prior.provider(term.effect), (GroupEffect, CorrelatedGroupEffect)):
                raise InvalidPriorSpec(f"group term {term.effect!r} is not a group-level effect")

    def prepare(self, template: pd.DataFrame, prior: PriorSpec) -> Design:
        """
        Resolve the template against the model. Raises SchemaMismatch when
        they are structurally incompatible.
        """
        if len(template) == 0:
            raise SchemaMismatch("template has no rows")
        covariates: Dict[str, np.ndarray] = {}
        for col in self.predictor.covariates():
            if col not in template.columns:
                raise SchemaMismatch(f"template has no covariate column {col!r}")
            values = pd.to_numeric(template[col], errors="coerce").to_numpy(dtype=float)
            if not np.all(np.isfinite(values)):
                raise SchemaMismatch(f"covariate column {col!r} holds non-numeric or missing values")
            covariates[col] = values

        codes: Dict[str, np.ndarray] = {}
        for term in self.predictor.group_terms:
            node = prior.provider(term.effect)
            codes[term.effect] = _group_codes(template, node.group, node.component_levels(term.effect), term.effect)

        trials = None
        if self.family == "binomial":
            if self.trials not in template.columns:
                raise SchemaMismatch(f"template has no trials column {self.trials!r}")
            raw = pd.to_numeric(template[self.trials], errors="coerce").to_numpy(dtype=float)
            if not np.all(np.isfinite(raw)) or np.any(raw < 0) or np.any(raw != np.round(raw)):
                raise SchemaMismatch(f"trials column {self.trials!r} must hold non-negative integers")
            trials = raw.astype(np.int64)
        return Design(num_rows=len(template), covariates=covariates, codes=codes, trials=trials)

    def linear_predictor(self, state: State, design: Design) -> np.ndarray:
        eta = np.zeros(design.num_rows)
        p = self.predictor
        if p.intercept:
            eta = eta + state[p.intercept]
        for col, param in p.coefficients.items():
            eta = eta + state[param] * design.covariates[col]
        for term in p.group_terms:
            contrib = np.asarray(state[term.effect])[design.codes[term.effect]]
            if term.covariate:
                contrib = contrib * design.covariates[term.covariate]
            eta = eta + contrib
        return eta

    def simulate(self, state: State, design: Design, rng: np.random.Generator) -> np.ndarray:
        eta = self.linear_predictor(state, design)
        if self.family == "normal":
            sigma = float(state[self.sigma]) if isinstance(self.sigma, str) else self.sigma
            return rng.normal(eta, sigma)
        if self.family == "binomial":
            return rng.binomial(design.trials, expit(eta))
        if self.family == "bernoulli":
            return rng.binomial(1, expit(eta))
        return rng.poisson(np.exp(eta))

    def linear_predictor_torch(self, state: State, design: TorchDesign) -> torch.Tensor:
        eta = torch.zeros(design.num_rows, dtype=DTYPE)
        p = self.predictor
        if p.intercept:
            eta = eta + state[p.intercept]
        for col, param in p.coefficients.items():
            eta = eta + state[param] * design.covariates[col]
        for term in p.group_terms:
            contrib = state[term.effect][design.codes[term.effect]]
            if term.covariate:
                contrib = contrib * design.covariates[term.covariate]
            eta = eta + contrib
        return eta

    def log_likelihood(self, state: State, design: TorchDesign, y: torch.Tensor) -> torch.Tensor:
        eta = self.linear_predictor_torch(state, design)
        if self.family == "normal":
            sigma = state[self.sigma] if isinstance(self.sigma, str) else torch.tensor(self.sigma, dtype=DTYPE)
            return dist.Normal(eta, sigma, validate_args=False).log_prob(y).sum()
        if self.family == "binomial":
            return dist.Binomial(total_count=design.trials, logits=eta, validate_args=False).log_prob(y).sum()
        if self.family == "bernoulli":
            return dist.Bernoulli(logits=eta, validate_args=False).log_prob(y).sum()
        return (y * eta - torch.exp(eta) - torch.lgamma(y + 1.0)).sum()


def _group_codes(template: pd.DataFrame, group: str, levels: Tuple[Any, ...], effect: str) -> np.ndarray:
    if group not in template.columns:
        raise SchemaMismatch(f"template has no group column {group!r} for {effect!r}")
    codes = pd.Categorical(template[group], categories=list(levels)).codes
    if np.any(codes < 0):
        unknown = sorted({str(v) for v, c in zip(template[group], codes) if c < 0})
        raise SchemaMismatch(f"{effect!r} has no parameter for group levels {unknown}")
    present = set(codes.tolist())
    absent = [lvl for i, lvl in enumerate(levels) if i not in present]
    if absent:
        raise SchemaMismatch(f"{effect!r} declares levels {absent} absent from the template")
    return np.asarray(codes, dtype=np.int64)
