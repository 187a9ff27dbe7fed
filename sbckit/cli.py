import argparse
import json
import logging
import os
import tomllib
from typing import Any, Dict, List, Optional, Tuple

import matplotlib
import matplotlib.pyplot as plt
import pandas as pd

from sbckit.diagnostics.plots import plot_ecdf_differences, plot_rank_histograms, plot_sensitivity
from sbckit.experiment import RunDirectory
from sbckit.fitting.base import PosteriorFitter
from sbckit.fitting.conjugate import ConjugateNormalFitter
from sbckit.fitting.metropolis import MetropolisConfig, MetropolisFitter
from sbckit.models.library import MODEL_BUILDERS
from sbckit.models.model import Model
from sbckit.runner import SBCConfig, SBCResult, SBCRunner

logger = logging.getLogger(__name__)


def _load_config(path: str) -> Dict[str, Any]:
    if path.endswith(".toml"):
        with open(path, "rb") as f:
            return tomllib.load(f)
    if path.endswith(".json"):
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    raise ValueError("Config must be .toml or .json")


def _build_model(cfg: Dict[str, Any]) -> Tuple[Model, pd.DataFrame]:
    m_cfg = dict(cfg.get("model", {}))
    m_type = m_cfg.pop("type", "normal_regression")
    if m_type not in MODEL_BUILDERS:
        raise ValueError(f"Unsupported model type: {m_type}")
    return MODEL_BUILDERS[m_type](**m_cfg)


def _build_fitter(cfg: Dict[str, Any]) -> PosteriorFitter:
    f_cfg = dict(cfg.get("fitter", {}))
    f_type = f_cfg.pop("type", "metropolis")
    if f_type == "conjugate":
        return ConjugateNormalFitter()
    if f_type == "metropolis":
        return MetropolisFitter(MetropolisConfig(**f_cfg))
    raise ValueError(f"Unsupported fitter type: {f_type}")


def _build_sbc_config(cfg: Dict[str, Any]) -> SBCConfig:
    s_cfg = dict(cfg.get("sbc", {}))
    missing = [k for k in ("num_replicates", "num_draws") if k not in s_cfg]
    if missing:
        raise ValueError(f"[sbc] must set {missing}")
    return SBCConfig(**s_cfg)


def _format_summary(summary: Dict[str, Any]) -> List[str]:
    lines = [
        f"replicates: {summary['num_replicates']} "
        f"(included {summary['included']}, failed {summary['failed']}, "
        f"flagged fraction {summary['flagged_fraction']:.3f})"
    ]
    for kind, count in sorted(summary["failure_kinds"].items()):
        lines.append(f"  failed with {kind}: {count}")
    for name, p in summary["parameters"].items():
        verdict = "ok" if p["calibrated"] else "MISCALIBRATED"
        lines.append(
            f"{name:>20s}  p={p['p_value']:.3f}  in band {p['bins_in_band']}/{p['bins']}  "
            f"z={p['mean_z_score']:+.3f}  contraction={p['mean_contraction']:.3f}  {verdict}"
        )
    return lines


def _save_outputs(run_dir: RunDirectory, result: SBCResult) -> Dict[str, Any]:
    summary = result.summary()
    run_dir.save_diagnostics(summary)
    run_dir.save_table(result.ranks, "ranks")
    run_dir.save_table(result.sensitivity(), "sensitivity")
    if len(result.failures):
        run_dir.save_table(result.failures, "failures")
    if result.included:
        reports = result.calibration()
        for name, fig in (
            ("rank_histograms", plot_rank_histograms(reports)),
            ("ecdf_differences", plot_ecdf_differences(reports)),
            ("sensitivity", plot_sensitivity(result.sensitivity())),
        ):
            run_dir.save_figure(fig, name)
            plt.close(fig)
    return summary


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Simulation-based calibration runner")
    parser.add_argument("--config", required=True, help="Path to .toml or .json config file")
    parser.add_argument("--output-dir", default=None, help="Override output directory")
    parser.add_argument("--resume", default=None, help="Existing run directory to continue")
    parser.add_argument("--replicates", type=int, default=None, help="Override sbc.num_replicates")
    parser.add_argument("--workers", type=int, default=None, help="Override sbc.num_workers")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    matplotlib.use("Agg")

    cfg = _load_config(args.config)
    exp_cfg = cfg.get("experiment", {})
    if args.resume:
        run_dir = RunDirectory(path=args.resume)
        stored = os.path.join(run_dir.run_dir, "config.json")
        if os.path.exists(stored):
            # keep the stored seed so resumed replicates match the originals
            cfg.setdefault("sbc", {})["seed"] = _load_config(stored).get("sbc", {}).get("seed")
    else:
        output_dir = args.output_dir or exp_cfg.get("output_dir", "runs")
        run_dir = RunDirectory(root_dir=output_dir, name=exp_cfg.get("name", None))

    if args.replicates is not None:
        cfg.setdefault("sbc", {})["num_replicates"] = args.replicates
    if args.workers is not None:
        cfg.setdefault("sbc", {})["num_workers"] = args.workers

    model, template = _build_model(cfg)
    fitter = _build_fitter(cfg)
    sbc_config = _build_sbc_config(cfg)
    cfg["sbc"] = sbc_config.to_dict()
    run_dir.save_config(cfg)
    logger.info("run directory %s, seed %d", run_dir.run_dir, sbc_config.seed)

    runner = SBCRunner(model, template, fitter, sbc_config, store=run_dir.replicates)
    result = runner.run()
    summary = _save_outputs(run_dir, result)
    for line in _format_summary(summary):
        print(line)


if __name__ == "__main__":
    main()
