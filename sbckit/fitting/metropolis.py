import logging
import math
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import torch
from tqdm import tqdm

from sbckit.diagnostics.metrics import compute_ess, compute_rhat_rank_normalized
from sbckit.errors import ConvergenceWarning, FitNonConvergence, FitTimeout
from sbckit.fitting.base import FitResult, PosteriorFitter
from sbckit.fitting.density import LogDensity
from sbckit.fitting.kernels import KERNELS, AbstractKernel
from sbckit.models.model import Model
from sbckit.models.priors import DTYPE

logger = logging.getLogger(__name__)


@dataclass
class AdaptConfig:
    """Warmup-only step-size adaptation toward the kernel's target acceptance rate."""
    enabled: bool = True
    interval: int = 25
    target_accept: Optional[float] = None
    adapt_rate: float = 1.0
    min_step: float = 1e-4
    max_step: float = 10.0
    estimate_scales: bool = True


@dataclass
class MetropolisConfig:
    kernel: str = "rwm"
    step_size: float = 0.5
    num_chains: int = 4
    warmup: int = 500
    init_radius: float = 2.0
    max_init_attempts: int = 100
    rhat_threshold: float = 1.05
    min_ess: Optional[float] = None
    time_budget_sec: Optional[float] = None
    progress: bool = False
    adapt: AdaptConfig = field(default_factory=AdaptConfig)

    def __post_init__(self) -> None:
        if self.kernel not in KERNELS:
            raise ValueError(f"Unsupported kernel type: {self.kernel}")
        if isinstance(self.adapt, dict):
            self.adapt = AdaptConfig(**self.adapt)
        if self.num_chains < 1:
            raise ValueError("num_chains must be >= 1")
        if self.warmup < 0:
            raise ValueError("warmup must be >= 0")


@dataclass
class ChainState:
    x: torch.Tensor
    log_prob: torch.Tensor


class MetropolisSampler:
    """
    Single-chain Metropolis-Hastings driven by a local kernel, with
    warmup-only adaptation of the step size and a diagonal preconditioner.
    """

    def __init__(
        self,
        log_prob_fn: Callable[[torch.Tensor], torch.Tensor],
        dim: int,
        kernel: AbstractKernel,
        adapt_config: Optional[AdaptConfig] = None,
    ):
        self.log_prob_fn = log_prob_fn
        self.dim = dim
        self.kernel = kernel
        self.adapt_config = adapt_config or AdaptConfig()

    def step(self, state: ChainState, generator: torch.Generator) -> Tuple[ChainState, bool]:
        proposed_x, log_q_ratio = self.kernel.propose(state.x, self.log_prob_fn, generator)
        proposed_lp = self.log_prob_fn(proposed_x).detach()
        if not torch.isfinite(proposed_lp):
            return state, False
        log_alpha = proposed_lp - state.log_prob + log_q_ratio
        u = torch.rand((), generator=generator, dtype=DTYPE)
        if torch.log(u) < log_alpha:
            return ChainState(x=proposed_x.detach(), log_prob=proposed_lp), True
        return state, False

    def run(
        self,
        initial_x: torch.Tensor,
        num_steps: int,
        warmup: int,
        generator: torch.Generator,
        deadline: Optional[float] = None,
        progress: bool = False,
    ) -> Tuple[np.ndarray, Dict[str, Any]]:
        stats = {
            "accept_warmup": 0,
            "accept": 0,
            "step_size": float(self.kernel.step_size),
            "total_time_sec": 0.0,
        }
        start_time = time.time()
        with torch.no_grad():
            state = ChainState(x=initial_x, log_prob=self.log_prob_fn(initial_x).detach())
            adapt = self.adapt_config
            target = adapt.target_accept or self.kernel.target_accept
            log_step = math.log(self.kernel.step_size)
            window_attempts = window_accept = 0
            warmup_draws: List[np.ndarray] = []

            iterator = range(num_steps + warmup)
            if progress:
                iterator = tqdm(iterator, desc="Sampling", leave=False)
            chain = []
            for step in iterator:
                if deadline is not None and time.monotonic() > deadline:
                    raise FitTimeout(f"time budget exceeded after {step} steps")
                state, accepted = self.step(state, generator)
                if step < warmup:
                    stats["accept_warmup"] += int(accepted)
                    if not adapt.enabled:
                        continue
                    window_attempts += 1
                    window_accept += int(accepted)
                    warmup_draws.append(state.x.cpu().numpy())
                    if (step + 1) % adapt.interval == 0:
                        log_step += adapt.adapt_rate * (window_accept / window_attempts - target)
                        log_step = float(np.clip(log_step, math.log(adapt.min_step), math.log(adapt.max_step)))
                        self.kernel.step_size = math.exp(log_step)
                        window_attempts = window_accept = 0
                    if adapt.estimate_scales and step + 1 == warmup // 2 and warmup >= 40:
                        self._estimate_scales(np.array(warmup_draws[len(warmup_draws) // 2:]))
                else:
                    stats["accept"] += int(accepted)
                    chain.append(state.x.cpu().numpy())

        stats["total_time_sec"] = time.time() - start_time
        stats["step_size"] = float(self.kernel.step_size)
        stats["accept_rate"] = stats["accept"] / max(num_steps, 1)
        return np.array(chain).reshape(num_steps, self.dim), stats

    def _estimate_scales(self, draws: np.ndarray) -> None:
        sd = draws.std(axis=0)
        if not np.all(np.isfinite(sd)) or np.any(sd <= 0):
            return
        self.kernel.scales = torch.as_tensor(np.clip(sd, 1e-3, 1e3), dtype=DTYPE)


class MetropolisFitter(PosteriorFitter):
    """
    Sampling-based posterior fitter: multiple Metropolis-Hastings chains on
    the model's unconstrained space, checked with rank-normalised R-hat and
    ESS. Poor diagnostics are reported as warnings on the result.
    """
    name = "metropolis"

    def __init__(self, config: Optional[MetropolisConfig] = None):
        self.config = config or MetropolisConfig()

    def _make_sampler(self, target: LogDensity) -> MetropolisSampler:
        kernel = KERNELS[self.config.kernel](step_size=self.config.step_size)
        return MetropolisSampler(target.log_prob, target.dim, kernel, self.config.adapt)

    def _initial_point(self, target: LogDensity, generator: torch.Generator) -> torch.Tensor:
        with torch.no_grad():
            for _ in range(self.config.max_init_attempts):
                x0 = (2.0 * torch.rand(target.dim, generator=generator, dtype=DTYPE) - 1.0) * self.config.init_radius
                if torch.isfinite(target.log_prob(x0)):
                    return x0
        raise FitNonConvergence(f"no finite initial point after {self.config.max_init_attempts} attempts")

    def fit(
        self,
        dataset: pd.DataFrame,
        model: Model,
        num_draws: int,
        thin: int,
        rng: np.random.Generator,
    ) -> FitResult:
        cfg = self.config
        target = LogDensity(model, dataset)
        per_chain = math.ceil(num_draws / cfg.num_chains) * thin
        seeds = rng.integers(0, 2 ** 63 - 1, size=cfg.num_chains)
        deadline = None if cfg.time_budget_sec is None else time.monotonic() + cfg.time_budget_sec

        chains = []
        chain_stats = []
        for c in range(cfg.num_chains):
            generator = torch.Generator().manual_seed(int(seeds[c]))
            sampler = self._make_sampler(target)
            x0 = self._initial_point(target, generator)
            chain_u, stats = sampler.run(
                x0, num_steps=per_chain, warmup=cfg.warmup, generator=generator,
                deadline=deadline, progress=cfg.progress,
            )
            chains.append(np.stack([target.constrain(torch.as_tensor(u, dtype=DTYPE)) for u in chain_u]))
            chain_stats.append(stats)
            logger.debug("chain %d: accept rate %.3f, step size %.3g", c, stats["accept_rate"], stats["step_size"])

        chains_arr = np.stack(chains, axis=0)
        names = model.parameter_names
        diagnostics: Dict[str, Any] = {"chains": chain_stats}
        problems: List[str] = []
        if not np.all(np.isfinite(chains_arr)):
            problems.append("non-finite draws")
        else:
            # R-hat / ESS on thinned draws, which is what the ranks see
            thinned = chains_arr[:, ::thin, :]
            rhat = compute_rhat_rank_normalized(thinned)
            ess = compute_ess(thinned)
            diagnostics["rhat"] = dict(zip(names, rhat.tolist()))
            diagnostics["ess"] = dict(zip(names, ess.tolist()))
            bad_rhat = [n for n, r in zip(names, rhat) if r > cfg.rhat_threshold]
            if bad_rhat:
                problems.append(f"R-hat above {cfg.rhat_threshold} for {bad_rhat}")
            min_ess = num_draws / 2 if cfg.min_ess is None else cfg.min_ess
            low_ess = [n for n, e in zip(names, ess) if e < min_ess]
            if low_ess:
                problems.append(f"ESS below {min_ess:g} for {low_ess}")
        if problems:
            warnings.warn("; ".join(problems), ConvergenceWarning)

        m, n, d = chains_arr.shape
        return FitResult(
            draws=pd.DataFrame(chains_arr.reshape(m * n, d), columns=names),
            chain=np.repeat(np.arange(m), n),
            warnings=problems,
            diagnostics=diagnostics,
        )
