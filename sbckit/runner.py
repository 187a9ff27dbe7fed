import logging
import time
import warnings
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from sbckit.diagnostics.sbc import CalibrationReport, bin_edges, calibrate, compute_ranks
from sbckit.diagnostics.sensitivity import sensitivity_table, summarize_sensitivity
from sbckit.errors import (
    ConvergenceWarning,
    FitNonConvergence,
    FitTimeout,
    ReplicateError,
    SchemaMismatch,
    SimulationError,
)
from sbckit.experiment import (
    STATUS_FAILED,
    STATUS_FLAGGED,
    STATUS_OK,
    ReplicateRecord,
    ReplicateStore,
)
from sbckit.fitting.base import FitResult, PosteriorFitter, thin_draws
from sbckit.models.model import Model

logger = logging.getLogger(__name__)

EXECUTORS = {
    "process": ProcessPoolExecutor,
    "thread": ThreadPoolExecutor,
}


@dataclass
class SBCConfig:
    """
    Settings of one SBC run.

    num_draws is L, the number of thinned posterior draws each rank is
    computed against; ranks take L + 1 values, so L should be large enough
    (around 100) for the histogram bins to have power.

    fit_timeout_sec bounds the wall time of one replicate's fit. Replicates
    then run on a worker pool even with one worker, and one that overruns
    is abandoned and recorded as failed with kind "fit_timeout".
    """
    num_replicates: int
    num_draws: int
    thin: int = 1
    seed: Optional[int] = None
    bins: int = 10
    level: float = 0.95
    prior_variance_draws: int = 4000
    num_workers: int = 1
    executor: str = "process"
    retry_failed: bool = False
    progress: bool = True
    fit_timeout_sec: Optional[float] = None

    def __post_init__(self) -> None:
        if self.num_replicates < 1:
            raise ValueError("num_replicates must be >= 1")
        if self.num_draws < 1:
            raise ValueError("num_draws must be >= 1")
        if self.thin < 1:
            raise ValueError("thin must be >= 1")
        if not 0.0 < self.level < 1.0:
            raise ValueError("level must lie in (0, 1)")
        if self.executor not in EXECUTORS:
            raise ValueError(f"Unsupported executor: {self.executor}")
        if self.num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        if self.fit_timeout_sec is not None and not self.fit_timeout_sec > 0:
            raise ValueError("fit_timeout_sec must be positive")
        bin_edges(self.num_draws, self.bins)
        if self.seed is None:
            # fixed once so the run can be resumed and reproduced
            self.seed = int(np.random.SeedSequence().generate_state(1, dtype=np.uint64)[0])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _replicate_rngs(seed: int, index: int) -> Tuple[np.random.Generator, ...]:
    """Independent prior / simulation / fit streams for replicate `index`."""
    root = np.random.SeedSequence(seed, spawn_key=(0, index))
    return tuple(np.random.default_rng(s) for s in root.spawn(3))


def _fit(fitter: PosteriorFitter, data: pd.DataFrame, model: Model, config: SBCConfig, rng) -> Tuple[FitResult, List[str]]:
    """
    Run the fitter and collect its degraded-fit messages. Only
    ConvergenceWarning counts; any other warning is passed on unchanged.
    """
    messages: List[str] = []
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        try:
            result = fitter.fit(data, model, config.num_draws, config.thin, rng)
        except FitNonConvergence as e:
            if e.result is None:
                raise
            result = e.result
            messages.append(str(e))
    messages.extend(result.warnings)
    for w in caught:
        if not issubclass(w.category, ConvergenceWarning):
            warnings.warn_explicit(w.message, w.category, w.filename, w.lineno, source=w.source)
            continue
        text = str(w.message)
        if text not in messages:
            messages.append(text)
    return result, messages


def run_replicate(
    index: int,
    model: Model,
    template: pd.DataFrame,
    fitter: PosteriorFitter,
    config: SBCConfig,
) -> ReplicateRecord:
    """
    One full prior -> simulate -> fit -> rank pass for replicate `index`.

    Never raises for replicate-level problems: schema mismatches, simulation
    errors, missing draws, timeouts and unexpected fitter errors give a
    "failed" record, a non-converged fit that still returned draws gives a
    "flagged" one.
    """
    start = time.time()
    prior_rng, sim_rng, fit_rng = _replicate_rngs(config.seed, index)
    truth = model.sample_prior(prior_rng)
    record = ReplicateRecord(index=index, status=STATUS_OK, truth=truth)
    try:
        try:
            data = model.simulate(truth, template, sim_rng)
        except SchemaMismatch:
            raise
        except Exception as e:
            raise SimulationError(f"{type(e).__name__}: {e}") from e
        record.outcome = data[model.outcome].to_numpy()
        fit_start = time.monotonic()
        result, messages = _fit(fitter, data, model, config, fit_rng)
        fit_time = time.monotonic() - fit_start
        if config.fit_timeout_sec is not None and fit_time > config.fit_timeout_sec:
            raise FitTimeout(f"fit took {fit_time:.2f}s, budget {config.fit_timeout_sec:g}s")
        draws = thin_draws(result, config.num_draws, config.thin)
        ranks = compute_ranks(truth, draws)
        draws = draws[model.parameter_names]
        if not np.all(np.isfinite(draws.to_numpy(dtype=float))):
            raise FitNonConvergence("posterior draws contain non-finite values")
        record.ranks = ranks
        record.draws = draws
        record.means = {k: float(v) for k, v in draws.mean().items()}
        record.variances = {k: float(v) for k, v in draws.var(ddof=1).items()}
        if messages:
            record.status = STATUS_FLAGGED
            record.kind = FitNonConvergence.kind
            record.messages = messages
    except (SchemaMismatch, ReplicateError) as e:
        record.status = STATUS_FAILED
        record.kind = e.kind
        record.messages = [str(e)]
    except Exception as e:
        record.status = STATUS_FAILED
        record.kind = "fitter_error"
        record.messages = [f"{type(e).__name__}: {e}"]
    if record.status == STATUS_FAILED:
        record.ranks = record.means = record.variances = record.draws = None
    record.elapsed = time.time() - start
    return record


@dataclass
class SBCResult:
    """
    Aggregated outcome of an SBC run. The replicate x parameter tables hold
    included ("ok" and "flagged") replicates only, indexed by replicate.
    """
    records: List[ReplicateRecord]
    parameter_names: List[str]
    prior_variance: pd.Series
    config: SBCConfig

    @property
    def included(self) -> List[ReplicateRecord]:
        return [r for r in self.records if r.included]

    def _table(self, attr: str, dtype=float) -> pd.DataFrame:
        rows = self.included
        table = pd.DataFrame(
            [getattr(r, attr) for r in rows],
            index=pd.Index([r.index for r in rows], name="replicate"),
            columns=self.parameter_names,
        )
        return table.astype(dtype)

    @property
    def ranks(self) -> pd.DataFrame:
        return self._table("ranks", dtype=int)

    @property
    def means(self) -> pd.DataFrame:
        return self._table("means")

    @property
    def variances(self) -> pd.DataFrame:
        return self._table("variances")

    @property
    def truths(self) -> pd.DataFrame:
        return self._table("truth")

    @property
    def status(self) -> pd.Series:
        return pd.Series(
            [r.status for r in self.records],
            index=pd.Index([r.index for r in self.records], name="replicate"),
            name="status",
        )

    @property
    def failures(self) -> pd.DataFrame:
        failed = [r for r in self.records if r.status == STATUS_FAILED]
        return pd.DataFrame(
            {"kind": [r.kind for r in failed], "message": ["; ".join(r.messages) for r in failed]},
            index=pd.Index([r.index for r in failed], name="replicate"),
        )

    @property
    def flagged_fraction(self) -> float:
        included = self.included
        if not included:
            return 0.0
        return sum(r.status == STATUS_FLAGGED for r in included) / len(included)

    def calibration(self, num_simulations: int = 1000) -> Dict[str, CalibrationReport]:
        rng = np.random.default_rng(np.random.SeedSequence(self.config.seed, spawn_key=(2,)))
        return calibrate(
            self.ranks, self.config.num_draws, bins=self.config.bins,
            level=self.config.level, num_simulations=num_simulations, rng=rng,
        )

    def sensitivity(self) -> pd.DataFrame:
        return sensitivity_table(self.means, self.variances, self.truths, self.prior_variance)

    def summary(self, alpha: float = 0.01) -> Dict[str, Any]:
        reports = self.calibration()
        sens = summarize_sensitivity(self.sensitivity())
        parameters = {}
        for name, rep in reports.items():
            entry = rep.to_dict()
            entry["calibrated"] = rep.is_calibrated(alpha)
            entry["mean_z_score"] = float(sens.loc[name, "z_score"]) if name in sens.index else float("nan")
            entry["mean_contraction"] = float(sens.loc[name, "contraction"]) if name in sens.index else float("nan")
            parameters[name] = entry
        kinds = Counter(r.kind for r in self.records if r.status == STATUS_FAILED)
        return {
            "num_replicates": len(self.records),
            "included": len(self.included),
            "failed": sum(kinds.values()),
            "failure_kinds": dict(kinds),
            "flagged_fraction": self.flagged_fraction,
            "significance_level": alpha,
            "parameters": parameters,
        }


class SBCRunner:
    """
    Drives the replicate loop: validates inputs, skips replicates already in
    the store, runs the rest sequentially or on a worker pool, persists each
    record as it completes and aggregates the result.
    """

    def __init__(
        self,
        model: Model,
        template: pd.DataFrame,
        fitter: PosteriorFitter,
        config: SBCConfig,
        store: Optional[ReplicateStore] = None,
    ):
        self.model = model
        self.template = template
        self.fitter = fitter
        self.config = config
        self.store = store

    def validate(self) -> None:
        """Fatal checks, run before any replicate starts."""
        self.model.validate(self.template)
        self.fitter.check(self.model)

    def meta(self) -> Dict[str, Any]:
        return {
            "seed": self.config.seed,
            "num_draws": self.config.num_draws,
            "thin": self.config.thin,
            "parameter_names": self.model.parameter_names,
            "fitter": self.fitter.name,
        }

    def prior_variance(self) -> pd.Series:
        rng = np.random.default_rng(np.random.SeedSequence(self.config.seed, spawn_key=(1,)))
        return self.model.prior.variance(rng, self.config.prior_variance_draws)

    def _timeout_record(self, index: int, elapsed: float) -> ReplicateRecord:
        prior_rng, _, _ = _replicate_rngs(self.config.seed, index)
        return ReplicateRecord(
            index=index,
            status=STATUS_FAILED,
            truth=self.model.sample_prior(prior_rng),
            kind=FitTimeout.kind,
            messages=[f"abandoned after {elapsed:.2f}s, budget {self.config.fit_timeout_sec:g}s"],
            elapsed=elapsed,
        )

    def _execute(self, indices: Sequence[int]) -> Iterator[ReplicateRecord]:
        cfg = self.config
        if cfg.fit_timeout_sec is None and (cfg.num_workers == 1 or len(indices) <= 1):
            iterator: Iterable[int] = indices
            if cfg.progress:
                iterator = tqdm(indices, desc="Replicates")
            for i in iterator:
                yield run_replicate(i, self.model, self.template, self.fitter, cfg)
            return

        # a replicate's clock starts once the pool reports it running
        tick = None if cfg.fit_timeout_sec is None else min(0.5, cfg.fit_timeout_sec / 4)
        pool = EXECUTORS[cfg.executor](max_workers=cfg.num_workers)
        abandoned = False
        try:
            pending: Dict[Future, int] = {
                pool.submit(run_replicate, i, self.model, self.template, self.fitter, cfg): i
                for i in indices
            }
            started: Dict[Future, float] = {}
            bar = tqdm(total=len(pending), desc="Replicates", disable=not cfg.progress)
            while pending:
                done, _ = wait(pending, timeout=tick, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.pop(future)
                    bar.update()
                    yield future.result()
                if cfg.fit_timeout_sec is None:
                    continue
                now = time.monotonic()
                for future in [f for f in pending if not f.done()]:
                    if future.running():
                        started.setdefault(future, now)
                    if future in started and now - started[future] > cfg.fit_timeout_sec:
                        index = pending.pop(future)
                        future.cancel()
                        abandoned = True
                        bar.update()
                        yield self._timeout_record(index, now - started[future])
            bar.close()
        finally:
            # abandoned tasks keep their worker busy; do not wait for them
            pool.shutdown(wait=not abandoned, cancel_futures=True)

    def run(self, indices: Optional[Iterable[int]] = None) -> SBCResult:
        """
        Run replicates `indices` (default 0 .. num_replicates - 1). Replicates
        already completed in the store are loaded instead of recomputed;
        failed ones are retried only with `retry_failed`.
        """
        self.validate()
        cfg = self.config
        wanted = sorted(set(range(cfg.num_replicates) if indices is None else indices))
        if any(i < 0 for i in wanted):
            raise ValueError("replicate indices must be non-negative")

        records: Dict[int, ReplicateRecord] = {}
        if self.store is not None:
            self.store.check_compatible(self.meta())
            for i in sorted(self.store.completed_indices() & set(wanted)):
                record = self.store.load(i)
                if record.status == STATUS_FAILED and cfg.retry_failed:
                    continue
                records[i] = record
        todo = [i for i in wanted if i not in records]
        if records:
            logger.info("resuming: %d of %d replicates already complete", len(records), len(wanted))

        prior_variance = self.prior_variance()
        for record in self._execute(todo):
            if record.status == STATUS_FAILED:
                logger.warning("replicate %d failed (%s): %s", record.index, record.kind, "; ".join(record.messages))
            elif record.status == STATUS_FLAGGED:
                logger.info("replicate %d flagged: %s", record.index, "; ".join(record.messages))
            if self.store is not None:
                self.store.save(record)
            records[record.index] = record

        result = SBCResult(
            records=[records[i] for i in wanted],
            parameter_names=self.model.parameter_names,
            prior_variance=prior_variance,
            config=cfg,
        )
        if result.flagged_fraction > 0:
            logger.warning("%.1f%% of included replicates are flagged as non-converged", 100 * result.flagged_fraction)
        return result
