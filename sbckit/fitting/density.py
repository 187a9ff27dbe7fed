import numpy as np
import pandas as pd
import torch

from sbckit.models.model import Model
from sbckit.models.priors import DTYPE


class LogDensity:
    """
    Unnormalised log posterior of a model given one dataset, on an
    unconstrained space.

    Generative process per node (hyperparameters first):
        u_node -> constrained value via biject_to / CorrCholeskyTransform
        group effects are non-centred: u holds standard normal deviations

    log p(u | y) = log p(y | theta(u)) + log p(theta(u)) + log |d theta / d u|
    """

    def __init__(self, model: Model, dataset: pd.DataFrame):
        self.model = model
        self.design = model.validate(dataset).to_torch()
        self.y = torch.as_tensor(dataset[model.outcome].to_numpy(dtype=float), dtype=DTYPE)
        self.dim = model.prior.unconstrained_size()

    def log_prob(self, u: torch.Tensor) -> torch.Tensor:
        state, log_prior = self.model.prior.constrain(u)
        log_lik = self.model.likelihood.log_likelihood(state, self.design, self.y)
        lp = log_prior + log_lik
        if not torch.isfinite(lp):
            return torch.tensor(-np.inf, dtype=DTYPE)
        return lp

    def __call__(self, u: torch.Tensor) -> torch.Tensor:
        return self.log_prob(u)

    def constrain(self, u: torch.Tensor) -> np.ndarray:
        """Parameter values for `u`, ordered as model.parameter_names."""
        with torch.no_grad():
            state, _ = self.model.prior.constrain(u)
        return self.model.prior.flatten_torch(state)
