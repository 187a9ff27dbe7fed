import abc
import graphlib
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import torch
import torch.distributions as dist
from torch.distributions import biject_to, constraints
from torch.distributions.transforms import CorrCholeskyTransform

from sbckit.errors import InvalidPriorSpec, SchemaMismatch

Hyper = Union[float, str]
ParameterVector = Dict[str, float]
State = Dict[str, Any]

DTYPE = torch.float64
_STD_NORMAL = dist.Normal(torch.tensor(0.0, dtype=DTYPE), torch.tensor(1.0, dtype=DTYPE))


@dataclass(frozen=True)
class Family:
    """
    A distribution family as used by the prior sampler.

    `hyper` maps each hyperparameter to its domain ("real" or "positive").
    `sample` draws with numpy; `torch_dist` builds the matching
    torch.distributions object for log densities.
    """
    name: str
    support: str
    hyper: Dict[str, str]
    sample: Callable[[np.random.Generator, Dict[str, float]], float]
    torch_dist: Callable[..., dist.Distribution]


FAMILIES: Dict[str, Family] = {
    "normal": Family(
        "normal", "real", {"loc": "real", "scale": "positive"},
        lambda rng, h: rng.normal(h["loc"], h["scale"]),
        lambda loc, scale: dist.Normal(loc, scale, validate_args=False),
    ),
    "half_normal": Family(
        "half_normal", "positive", {"scale": "positive"},
        lambda rng, h: abs(rng.normal(0.0, h["scale"])),
        lambda scale: dist.HalfNormal(scale, validate_args=False),
    ),
    "lognormal": Family(
        "lognormal", "positive", {"loc": "real", "scale": "positive"},
        lambda rng, h: rng.lognormal(h["loc"], h["scale"]),
        lambda loc, scale: dist.LogNormal(loc, scale, validate_args=False),
    ),
    "exponential": Family(
        "exponential", "positive", {"rate": "positive"},
        lambda rng, h: rng.exponential(1.0 / h["rate"]),
        lambda rate: dist.Exponential(rate, validate_args=False),
    ),
    "gamma": Family(
        "gamma", "positive", {"concentration": "positive", "rate": "positive"},
        lambda rng, h: rng.gamma(h["concentration"], 1.0 / h["rate"]),
        lambda concentration, rate: dist.Gamma(concentration, rate, validate_args=False),
    ),
    "beta": Family(
        "beta", "unit_interval", {"alpha": "positive", "beta": "positive"},
        lambda rng, h: rng.beta(h["alpha"], h["beta"]),
        lambda alpha, beta: dist.Beta(alpha, beta, validate_args=False),
    ),
    "student_t": Family(
        "student_t", "real", {"df": "positive", "loc": "real", "scale": "positive"},
        lambda rng, h: h["loc"] + h["scale"] * rng.standard_t(h["df"]),
        lambda df, loc, scale: dist.StudentT(df, loc, scale, validate_args=False),
    ),
    "cauchy": Family(
        "cauchy", "real", {"loc": "real", "scale": "positive"},
        lambda rng, h: h["loc"] + h["scale"] * rng.standard_cauchy(),
        lambda loc, scale: dist.Cauchy(loc, scale, validate_args=False),
    ),
    "half_cauchy": Family(
        "half_cauchy", "positive", {"scale": "positive"},
        lambda rng, h: abs(h["scale"] * rng.standard_cauchy()),
        lambda scale: dist.HalfCauchy(scale, validate_args=False),
    ),
    "uniform": Family(
        "uniform", "interval", {"low": "real", "high": "real"},
        lambda rng, h: rng.uniform(h["low"], h["high"]),
        lambda low, high: dist.Uniform(low, high, validate_args=False),
    ),
}

_SUPPORT_CONSTRAINTS = {
    "real": constraints.real,
    "positive": constraints.positive,
    "unit_interval": constraints.unit_interval,
}


def _check_literal(owner: str, key: str, value: float, domain: str) -> None:
    if not math.isfinite(value):
        raise InvalidPriorSpec(f"{owner}: hyperparameter {key}={value!r} is not finite")
    if domain == "positive" and value <= 0:
        raise InvalidPriorSpec(f"{owner}: hyperparameter {key}={value!r} must be positive")


def _as_hyper(owner: str, key: str, value: Any) -> Hyper:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InvalidPriorSpec(f"{owner}: hyperparameter {key} must be a number or a parameter name, got {value!r}")
    return float(value)


def _resolve(value: Hyper, state: State) -> Any:
    return state[value] if isinstance(value, str) else value


def _resolve_torch(value: Hyper, state: State) -> torch.Tensor:
    if isinstance(value, str):
        return state[value]
    return torch.tensor(value, dtype=DTYPE)


class PriorNode(abc.ABC):
    """
    One node of the prior dependency graph.

    A node draws its value given the values of the nodes it references,
    flattens itself into named scalars, and maps a slice of an unconstrained
    vector to its value (with log density) for sampling backends.
    """
    name: str
    is_scalar = False

    def references(self) -> List[str]:
        return []

    def provides(self) -> List[str]:
        return [self.name]

    @abc.abstractmethod
    def output_names(self) -> List[str]:
        pass

    def check(self, nodes: Mapping[str, "PriorNode"]) -> None:
        pass

    @abc.abstractmethod
    def draw(self, rng: np.random.Generator, state: State) -> None:
        pass

    @abc.abstractmethod
    def flatten(self, state: State) -> List[Tuple[str, float]]:
        pass

    @abc.abstractmethod
    def restore(self, vector: Mapping[str, float], state: State) -> None:
        pass

    @abc.abstractmethod
    def unconstrained_size(self) -> int:
        pass

    @abc.abstractmethod
    def constrain(self, u: torch.Tensor, state: State) -> torch.Tensor:
        pass

    def _check_reference(self, nodes: Mapping[str, "PriorNode"], key: str, ref: str, domain: str) -> None:
        target = nodes.get(ref)
        if target is None:
            raise InvalidPriorSpec(f"{self.name}: hyperparameter {key} references unknown parameter {ref!r}")
        if not target.is_scalar:
            raise InvalidPriorSpec(f"{self.name}: hyperparameter {key} references non-scalar node {ref!r}")
        if not target.satisfies(domain):
            raise InvalidPriorSpec(
                f"{self.name}: hyperparameter {key} needs a {domain} value but {ref!r} has {target.support} support"
            )


def _read(vector: Mapping[str, float], name: str) -> float:
    try:
        return float(vector[name])
    except KeyError:
        raise SchemaMismatch(f"parameter vector has no entry for {name!r}") from None


class Prior(PriorNode):
    """Scalar parameter, e.g. Prior("sigma", "half_normal", scale=1.0)."""
    is_scalar = True

    def __init__(self, name: str, family: str, **hyper: Any):
        if family not in FAMILIES:
            raise InvalidPriorSpec(f"{name}: unknown family {family!r}")
        self.name = name
        self.family_name = family
        unknown = set(hyper) - set(self.family.hyper)
        missing = set(self.family.hyper) - set(hyper)
        if unknown or missing:
            raise InvalidPriorSpec(
                f"{name}: {family} expects hyperparameters {sorted(self.family.hyper)}, got {sorted(hyper)}"
            )
        self.hyper: Dict[str, Hyper] = {k: _as_hyper(name, k, hyper[k]) for k in self.family.hyper}
        for key, value in self.hyper.items():
            if not isinstance(value, str):
                _check_literal(name, key, value, self.family.hyper[key])
        if family == "uniform":
            low, high = self.hyper["low"], self.hyper["high"]
            if isinstance(low, str) or isinstance(high, str):
                raise InvalidPriorSpec(f"{name}: uniform bounds must be numbers")
            if low >= high:
                raise InvalidPriorSpec(f"{name}: uniform needs low < high, got [{low}, {high}]")

    @property
    def family(self) -> Family:
        return FAMILIES[self.family_name]

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.hyper.items())
        return f"Prior({self.name!r}, {self.family.name!r}, {args})"

    @property
    def support(self) -> str:
        return self.family.support

    def satisfies(self, domain: str) -> bool:
        if domain == "real":
            return True
        if self.support in ("positive", "unit_interval"):
            return True
        return self.support == "interval" and self.hyper["low"] >= 0

    def references(self) -> List[str]:
        return [v for v in self.hyper.values() if isinstance(v, str)]

    def output_names(self) -> List[str]:
        return [self.name]

    def check(self, nodes: Mapping[str, PriorNode]) -> None:
        for key, value in self.hyper.items():
            if isinstance(value, str):
                self._check_reference(nodes, key, value, self.family.hyper[key])

    def draw(self, rng: np.random.Generator, state: State) -> None:
        h = {k: float(_resolve(v, state)) for k, v in self.hyper.items()}
        state[self.name] = float(self.family.sample(rng, h))

    def flatten(self, state: State) -> List[Tuple[str, float]]:
        return [(self.name, float(state[self.name]))]

    def restore(self, vector: Mapping[str, float], state: State) -> None:
        state[self.name] = _read(vector, self.name)

    def unconstrained_size(self) -> int:
        return 1

    def _constraint(self) -> constraints.Constraint:
        if self.support == "interval":
            return constraints.interval(self.hyper["low"], self.hyper["high"])
        return _SUPPORT_CONSTRAINTS[self.support]

    def constrain(self, u: torch.Tensor, state: State) -> torch.Tensor:
        d = self.family.torch_dist(**{k: _resolve_torch(v, state) for k, v in self.hyper.items()})
        transform = biject_to(self._constraint())
        x = transform(u[0])
        state[self.name] = x
        return d.log_prob(x) + transform.log_abs_det_jacobian(u[0], x)


def _level_names(name: str, levels: Sequence[Any]) -> List[str]:
    return [f"{name}[{level}]" for level in levels]


class GroupEffect(PriorNode):
    """
    Normal deviation per group level: effect[level] ~ Normal(loc, scale).
    `loc` and `scale` may name sampled hyperparameters.
    """

    def __init__(self, name: str, group: str, levels: Sequence[Any], loc: Hyper = 0.0, scale: Hyper = 1.0):
        self.name = name
        self.group = group
        self.levels = tuple(levels)
        if not self.levels:
            raise InvalidPriorSpec(f"{name}: group effect needs at least one level")
        if len(set(self.levels)) != len(self.levels):
            raise InvalidPriorSpec(f"{name}: duplicate group levels")
        self.loc = _as_hyper(name, "loc", loc)
        self.scale = _as_hyper(name, "scale", scale)
        if not isinstance(self.loc, str):
            _check_literal(name, "loc", self.loc, "real")
        if not isinstance(self.scale, str):
            _check_literal(name, "scale", self.scale, "positive")

    def __repr__(self) -> str:
        return f"GroupEffect({self.name!r}, group={self.group!r}, levels={len(self.levels)}, loc={self.loc!r}, scale={self.scale!r})"

    def references(self) -> List[str]:
        return [v for v in (self.loc, self.scale) if isinstance(v, str)]

    def output_names(self) -> List[str]:
        return _level_names(self.name, self.levels)

    def component_levels(self, component: str) -> Tuple[Any, ...]:
        return self.levels

    def check(self, nodes: Mapping[str, PriorNode]) -> None:
        if isinstance(self.loc, str):
            self._check_reference(nodes, "loc", self.loc, "real")
        if isinstance(self.scale, str):
            self._check_reference(nodes, "scale", self.scale, "positive")

    def draw(self, rng: np.random.Generator, state: State) -> None:
        z = rng.standard_normal(len(self.levels))
        state[self.name] = _resolve(self.loc, state) + _resolve(self.scale, state) * z

    def flatten(self, state: State) -> List[Tuple[str, float]]:
        return list(zip(self.output_names(), (float(v) for v in state[self.name])))

    def restore(self, vector: Mapping[str, float], state: State) -> None:
        state[self.name] = np.array([_read(vector, n) for n in self.output_names()])

    def unconstrained_size(self) -> int:
        return len(self.levels)

    def constrain(self, u: torch.Tensor, state: State) -> torch.Tensor:
        # non-centred: u holds standard normal deviations
        state[self.name] = _resolve_torch(self.loc, state) + _resolve_torch(self.scale, state) * u
        return _STD_NORMAL.log_prob(u).sum()


def lkj_cholesky(rng: np.random.Generator, dim: int, eta: float) -> np.ndarray:
    """
    Cholesky factor of an LKJ(eta) correlation matrix, onion method.
    """
    marginal = eta + 0.5 * (dim - 2)
    offset = np.concatenate([[0.0], np.arange(dim - 1, dtype=float)])
    y = rng.beta(offset + 0.5, marginal - 0.5 * offset)[:, None]
    u = np.tril(rng.standard_normal((dim, dim)), -1)
    norms = np.linalg.norm(u, axis=-1, keepdims=True)
    u = np.divide(u, norms, out=np.zeros_like(u), where=norms > 0)
    w = np.sqrt(y) * u
    diag = np.sqrt(np.clip(1.0 - np.sum(w ** 2, axis=-1), np.finfo(float).tiny, None))
    return w + np.diag(diag)


class LKJCorr(PriorNode):
    """Correlation matrix with an LKJ(eta) prior. Flattened as name[i,j], i < j."""

    def __init__(self, name: str, dim: int, eta: float = 1.0):
        if int(dim) < 2:
            raise InvalidPriorSpec(f"{name}: LKJ dimension must be at least 2")
        eta = _as_hyper(name, "eta", eta)
        if isinstance(eta, str):
            raise InvalidPriorSpec(f"{name}: LKJ eta must be a number")
        _check_literal(name, "eta", eta, "positive")
        self.name = name
        self.dim = int(dim)
        self.eta = eta

    def __repr__(self) -> str:
        return f"LKJCorr({self.name!r}, dim={self.dim}, eta={self.eta!r})"

    def _pairs(self) -> List[Tuple[int, int]]:
        return [(i, j) for i in range(self.dim) for j in range(i + 1, self.dim)]

    def output_names(self) -> List[str]:
        return [f"{self.name}[{i},{j}]" for i, j in self._pairs()]

    def draw(self, rng: np.random.Generator, state: State) -> None:
        state[self.name] = lkj_cholesky(rng, self.dim, self.eta)

    def flatten(self, state: State) -> List[Tuple[str, float]]:
        L = state[self.name]
        corr = L @ L.T
        return [(n, float(corr[i, j])) for n, (i, j) in zip(self.output_names(), self._pairs())]

    def restore(self, vector: Mapping[str, float], state: State) -> None:
        corr = np.eye(self.dim)
        for n, (i, j) in zip(self.output_names(), self._pairs()):
            corr[i, j] = corr[j, i] = _read(vector, n)
        try:
            state[self.name] = np.linalg.cholesky(corr)
        except np.linalg.LinAlgError:
            raise SchemaMismatch(f"{self.name}: entries do not form a positive definite correlation matrix") from None

    def unconstrained_size(self) -> int:
        return self.dim * (self.dim - 1) // 2

    def constrain(self, u: torch.Tensor, state: State) -> torch.Tensor:
        transform = CorrCholeskyTransform()
        L = transform(u)
        state[self.name] = L
        d = dist.LKJCholesky(self.dim, torch.tensor(self.eta, dtype=DTYPE), validate_args=False)
        return d.log_prob(L) + transform.log_abs_det_jacobian(u, L)


class CorrelatedGroupEffect(PriorNode):
    """
    Jointly normal deviations per group level for several components
    (e.g. varying intercepts and slopes):

        [c_1[level], ..., c_k[level]] ~ MVN(locs, diag(scales) R diag(scales))

    with R taken from an LKJCorr node.
    """

    def __init__(
        self,
        name: str,
        components: Sequence[str],
        group: str,
        levels: Sequence[Any],
        scales: Sequence[Hyper],
        corr: str,
        locs: Optional[Sequence[Hyper]] = None,
    ):
        self.name = name
        self.components = tuple(components)
        self.group = group
        self.levels = tuple(levels)
        self.corr = corr
        k = len(self.components)
        if k < 2:
            raise InvalidPriorSpec(f"{name}: needs at least two components")
        if not self.levels or len(set(self.levels)) != len(self.levels):
            raise InvalidPriorSpec(f"{name}: levels must be non-empty and unique")
        if len(scales) != k:
            raise InvalidPriorSpec(f"{name}: expected {k} scales, got {len(scales)}")
        locs = [0.0] * k if locs is None else list(locs)
        if len(locs) != k:
            raise InvalidPriorSpec(f"{name}: expected {k} locs, got {len(locs)}")
        self.scales = [_as_hyper(name, "scales", s) for s in scales]
        self.locs = [_as_hyper(name, "locs", m) for m in locs]
        for s in self.scales:
            if not isinstance(s, str):
                _check_literal(name, "scales", s, "positive")
        for m in self.locs:
            if not isinstance(m, str):
                _check_literal(name, "locs", m, "real")

    def __repr__(self) -> str:
        return f"CorrelatedGroupEffect({self.name!r}, components={self.components!r}, group={self.group!r})"

    def references(self) -> List[str]:
        refs = [v for v in self.scales + self.locs if isinstance(v, str)]
        return refs + [self.corr]

    def provides(self) -> List[str]:
        return list(self.components)

    def output_names(self) -> List[str]:
        names: List[str] = []
        for c in self.components:
            names.extend(_level_names(c, self.levels))
        return names

    def component_levels(self, component: str) -> Tuple[Any, ...]:
        return self.levels

    def check(self, nodes: Mapping[str, PriorNode]) -> None:
        for s in self.scales:
            if isinstance(s, str):
                self._check_reference(nodes, "scales", s, "positive")
        for m in self.locs:
            if isinstance(m, str):
                self._check_reference(nodes, "locs", m, "real")
        target = nodes.get(self.corr)
        if not isinstance(target, LKJCorr):
            raise InvalidPriorSpec(f"{self.name}: corr must name an LKJCorr node, got {self.corr!r}")
        if target.dim != len(self.components):
            raise InvalidPriorSpec(
                f"{self.name}: {len(self.components)} components but {self.corr!r} has dimension {target.dim}"
            )

    def draw(self, rng: np.random.Generator, state: State) -> None:
        L = state[self.corr]
        scales = np.array([_resolve(s, state) for s in self.scales], dtype=float)
        locs = np.array([_resolve(m, state) for m in self.locs], dtype=float)
        z = rng.standard_normal((len(self.levels), len(self.components)))
        x = locs + z @ (scales[:, None] * L).T
        for j, c in enumerate(self.components):
            state[c] = x[:, j]

    def flatten(self, state: State) -> List[Tuple[str, float]]:
        out: List[Tuple[str, float]] = []
        for c in self.components:
            out.extend(zip(_level_names(c, self.levels), (float(v) for v in state[c])))
        return out

    def restore(self, vector: Mapping[str, float], state: State) -> None:
        for c in self.components:
            state[c] = np.array([_read(vector, n) for n in _level_names(c, self.levels)])

    def unconstrained_size(self) -> int:
        return len(self.levels) * len(self.components)

    def constrain(self, u: torch.Tensor, state: State) -> torch.Tensor:
        z = u.reshape(len(self.levels), len(self.components))
        L = state[self.corr]
        scales = torch.stack([_resolve_torch(s, state) for s in self.scales])
        locs = torch.stack([_resolve_torch(m, state) for m in self.locs])
        x = locs + z @ (scales.unsqueeze(-1) * L).T
        for j, c in enumerate(self.components):
            state[c] = x[:, j]
        return _STD_NORMAL.log_prob(z).sum()


class PriorSpec:
    """
    A validated collection of prior nodes, drawn in dependency order.

    Hyperparameters are drawn before the nodes that reference them, whatever
    the declaration order.
    """

    def __init__(self, nodes: Sequence[PriorNode]):
        self.nodes: Dict[str, PriorNode] = {}
        self._providers: Dict[str, PriorNode] = {}
        for node in nodes:
            if node.name in self.nodes:
                raise InvalidPriorSpec(f"duplicate node name {node.name!r}")
            self.nodes[node.name] = node
            for key in node.provides():
                if key in self._providers:
                    raise InvalidPriorSpec(f"duplicate parameter name {key!r}")
                self._providers[key] = node
        if not self.nodes:
            raise InvalidPriorSpec("prior specification is empty")
        for node in self.nodes.values():
            node.check(self.nodes)

        graph = {name: set(node.references()) for name, node in self.nodes.items()}
        try:
            self.order: List[str] = list(graphlib.TopologicalSorter(graph).static_order())
        except graphlib.CycleError as e:
            raise InvalidPriorSpec(f"cyclic prior dependencies: {e.args[1]}") from None

        self.parameter_names: List[str] = []
        for name in self.order:
            self.parameter_names.extend(self.nodes[name].output_names())
        if len(set(self.parameter_names)) != len(self.parameter_names):
            raise InvalidPriorSpec("parameter names collide after flattening")

    def __repr__(self) -> str:
        return f"PriorSpec({[self.nodes[n] for n in self.order]!r})"

    def __len__(self) -> int:
        return len(self.parameter_names)

    def provider(self, key: str) -> Optional[PriorNode]:
        return self._providers.get(key)

    def sample_state(self, rng: np.random.Generator) -> State:
        state: State = {}
        for name in self.order:
            self.nodes[name].draw(rng, state)
        return state

    def flatten(self, state: State) -> ParameterVector:
        vector: ParameterVector = {}
        for name in self.order:
            vector.update(self.nodes[name].flatten(state))
        return vector

    def sample(self, rng: np.random.Generator) -> ParameterVector:
        return self.flatten(self.sample_state(rng))

    def state_from_vector(self, vector: Mapping[str, float]) -> State:
        state: State = {}
        for name in self.order:
            self.nodes[name].restore(vector, state)
        return state

    def sample_frame(self, rng: np.random.Generator, num_draws: int) -> pd.DataFrame:
        rows = [self.sample(rng) for _ in range(num_draws)]
        return pd.DataFrame(rows, columns=self.parameter_names)

    def variance(self, rng: np.random.Generator, num_draws: int = 4000) -> pd.Series:
        """
        Monte Carlo prior variance per parameter, the baseline for posterior
        contraction.
        """
        if num_draws < 2:
            raise ValueError("num_draws must be at least 2")
        return self.sample_frame(rng, num_draws).var(ddof=1)

    def unconstrained_size(self) -> int:
        return sum(self.nodes[n].unconstrained_size() for n in self.order)

    def constrain(self, u: torch.Tensor) -> Tuple[State, torch.Tensor]:
        """
        Map an unconstrained vector to node values. Returns the torch state and
        the log prior density on the unconstrained space (Jacobian included).
        """
        state: State = {}
        log_prob = torch.zeros((), dtype=u.dtype)
        offset = 0
        for name in self.order:
            node = self.nodes[name]
            size = node.unconstrained_size()
            log_prob = log_prob + node.constrain(u[offset:offset + size], state)
            offset += size
        return state, log_prob

    def flatten_torch(self, state: State) -> np.ndarray:
        numpy_state = {k: v.detach().cpu().numpy() for k, v in state.items()}
        return np.array(list(self.flatten(numpy_state).values()), dtype=float)
