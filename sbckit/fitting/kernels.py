import abc
from typing import Callable, Optional, Tuple

import torch


def _log_prob_and_grad(x: torch.Tensor, log_prob_fn: Callable[[torch.Tensor], torch.Tensor]) -> torch.Tensor:
    with torch.enable_grad():
        x = x.detach().clone().requires_grad_(True)
        lp = log_prob_fn(x)
        if not lp.requires_grad or not torch.isfinite(lp):
            return torch.zeros_like(x)
        grad = torch.autograd.grad(lp, x)[0]
    if not torch.isfinite(grad).all():
        # Fallback if the gradient explodes
        return torch.zeros_like(grad)
    return grad


class AbstractKernel(abc.ABC):
    """Abstract base class for local MCMC kernels."""
    target_accept = 0.234

    def __init__(self, step_size: float, scales: Optional[torch.Tensor] = None):
        self.step_size = step_size
        self.scales = scales

    def _scales_like(self, x: torch.Tensor) -> torch.Tensor:
        if self.scales is None:
            return torch.ones_like(x)
        return self.scales.to(dtype=x.dtype)

    @abc.abstractmethod
    def propose(
        self,
        current_x: torch.Tensor,
        log_prob_fn: Callable[[torch.Tensor], torch.Tensor],
        generator: torch.Generator,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Propose a new state given the current state.

        Args:
            current_x: (D,) Tensor
            log_prob_fn: function mapping (D,) -> ()
            generator: chain-local random stream

        Returns:
             proposed_x: (D,) Tensor
             log_q_ratio: log q(x|x') - log q(x'|x) (backward - forward)
        """
        pass


class RWMKernel(AbstractKernel):
    """Random Walk Metropolis with a diagonal Gaussian proposal."""

    def __init__(self, step_size: float = 0.5, scales: Optional[torch.Tensor] = None):
        super().__init__(step_size, scales)

    def propose(self, current_x, log_prob_fn, generator):
        # x' = x + step * s * z
        z = torch.randn(current_x.shape, generator=generator, dtype=current_x.dtype)
        proposed_x = current_x + self.step_size * self._scales_like(current_x) * z
        # symmetric proposal
        return proposed_x, torch.zeros((), dtype=current_x.dtype)


class MALAKernel(AbstractKernel):
    """Metropolis-Adjusted Langevin Algorithm with a diagonal preconditioner M = diag(s^2)."""
    target_accept = 0.574

    def __init__(self, step_size: float = 0.3, scales: Optional[torch.Tensor] = None):
        super().__init__(step_size, scales)

    def propose(self, current_x, log_prob_fn, generator):
        s2 = self._scales_like(current_x) ** 2
        dt = self.step_size ** 2

        grad = _log_prob_and_grad(current_x, log_prob_fn)
        # x' = x + (dt/2) M grad + sqrt(dt M) z
        mean_forward = current_x + 0.5 * dt * s2 * grad
        z = torch.randn(current_x.shape, generator=generator, dtype=current_x.dtype)
        proposed_x = mean_forward + self.step_size * torch.sqrt(s2) * z

        grad_p = _log_prob_and_grad(proposed_x, log_prob_fn)
        mean_backward = proposed_x + 0.5 * dt * s2 * grad_p

        log_q_fwd = -torch.sum((proposed_x - mean_forward) ** 2 / s2) / (2 * dt)
        log_q_bwd = -torch.sum((current_x - mean_backward) ** 2 / s2) / (2 * dt)
        return proposed_x, log_q_bwd - log_q_fwd


KERNELS = {
    "rwm": RWMKernel,
    "mala": MALAKernel,
}
