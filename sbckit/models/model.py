from dataclasses import dataclass
from typing import List, Mapping

import numpy as np
import pandas as pd

from sbckit.models.likelihoods import Design, Likelihood
from sbckit.models.priors import ParameterVector, PriorSpec, State


@dataclass
class Model:
    """
    Generative model: a prior over parameters and a likelihood over an
    outcome column, evaluated on a fixed covariate template.
    """
    prior: PriorSpec
    likelihood: Likelihood

    def __post_init__(self) -> None:
        self.likelihood.check(self.prior)

    @property
    def parameter_names(self) -> List[str]:
        return self.prior.parameter_names

    @property
    def outcome(self) -> str:
        return self.likelihood.outcome

    def validate(self, template: pd.DataFrame) -> Design:
        return self.likelihood.prepare(template, self.prior)

    def sample_prior(self, rng: np.random.Generator) -> ParameterVector:
        return self.prior.sample(rng)

    def simulate_outcome(self, state: State, design: Design, rng: np.random.Generator) -> np.ndarray:
        return self.likelihood.simulate(state, design, rng)

    def simulate(self, vector: Mapping[str, float], template: pd.DataFrame, rng: np.random.Generator) -> pd.DataFrame:
        """
        Synthetic dataset with the template's rows and covariates; only the
        outcome column is drawn from the likelihood given `vector`.
        """
        design = self.validate(template)
        state = self.prior.state_from_vector(vector)
        data = template.copy()
        data[self.outcome] = self.simulate_outcome(state, design, rng)
        return data
