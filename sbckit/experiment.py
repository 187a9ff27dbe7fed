import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import numpy as np
import pandas as pd

STATUS_OK = "ok"
STATUS_FLAGGED = "flagged"
STATUS_FAILED = "failed"


@dataclass
class ReplicateRecord:
    """
    Outcome of one SBC replicate.

    status is "ok", "flagged" (non-converged fit, still ranked) or "failed"
    (excluded from aggregation; `kind` names the failure).
    """
    index: int
    status: str
    truth: Dict[str, float]
    ranks: Optional[Dict[str, int]] = None
    means: Optional[Dict[str, float]] = None
    variances: Optional[Dict[str, float]] = None
    draws: Optional[pd.DataFrame] = None
    outcome: Optional[np.ndarray] = None
    kind: Optional[str] = None
    messages: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def included(self) -> bool:
        return self.status != STATUS_FAILED


def _write_json(path: str, payload: Any) -> str:
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    os.replace(tmp, path)
    return path


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class ReplicateStore:
    """
    One npz/json pair per replicate index under `directory`.

    The json file is renamed into place after the npz file, so its presence
    marks the replicate as complete. A run interrupted mid-write leaves at
    most an orphaned npz that is overwritten on resume.
    """

    META = "meta.json"

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, index: int, ext: str) -> str:
        return os.path.join(self.directory, f"rep_{index:06d}.{ext}")

    def completed_indices(self) -> Set[int]:
        done = set()
        for fname in os.listdir(self.directory):
            if fname.startswith("rep_") and fname.endswith(".json"):
                done.add(int(fname[4:-5]))
        return done

    def check_compatible(self, meta: Dict[str, Any]) -> None:
        """
        Record the run's identity on first use; afterwards refuse to mix
        replicates produced under a different seed, draw count, thinning or
        parameter set.
        """
        path = os.path.join(self.directory, self.META)
        if not os.path.exists(path):
            _write_json(path, meta)
            return
        stored = _read_json(path)
        diff = sorted(k for k in set(stored) | set(meta) if stored.get(k) != meta.get(k))
        if diff:
            raise ValueError(f"stored run in {self.directory} differs in {diff}; use a new run directory")

    def save(self, record: ReplicateRecord) -> None:
        arrays: Dict[str, np.ndarray] = {}
        if record.outcome is not None:
            arrays["outcome"] = np.asarray(record.outcome)
        if record.draws is not None:
            arrays["draws"] = record.draws.to_numpy(dtype=float)
            arrays["names"] = np.array(list(record.draws.columns), dtype=str)
        npz_path = self._path(record.index, "npz")
        tmp = npz_path + ".tmp"
        with open(tmp, "wb") as f:
            np.savez(f, **arrays)
        os.replace(tmp, npz_path)

        _write_json(self._path(record.index, "json"), {
            "index": record.index,
            "status": record.status,
            "kind": record.kind,
            "messages": record.messages,
            "truth": record.truth,
            "ranks": record.ranks,
            "means": record.means,
            "variances": record.variances,
            "elapsed": record.elapsed,
        })

    def load(self, index: int) -> ReplicateRecord:
        meta = _read_json(self._path(index, "json"))
        draws = outcome = None
        npz_path = self._path(index, "npz")
        if os.path.exists(npz_path):
            with np.load(npz_path) as data:
                if "outcome" in data:
                    outcome = data["outcome"]
                if "draws" in data:
                    draws = pd.DataFrame(data["draws"], columns=data["names"].tolist())
        return ReplicateRecord(
            index=meta["index"],
            status=meta["status"],
            truth=meta["truth"],
            ranks=meta["ranks"],
            means=meta["means"],
            variances=meta["variances"],
            draws=draws,
            outcome=outcome,
            kind=meta["kind"],
            messages=meta["messages"],
            elapsed=meta["elapsed"],
        )

    def load_all(self) -> List[ReplicateRecord]:
        return [self.load(i) for i in sorted(self.completed_indices())]


@dataclass
class RunDirectory:
    """
    Output directory of one SBC run: a fresh timestamped folder under
    `root_dir`, or an existing `path` when resuming.
    """
    root_dir: str = "runs"
    name: Optional[str] = None
    path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.path is None:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            run_name = timestamp if not self.name else f"{timestamp}_{self.name}"
            self.path = os.path.join(self.root_dir, run_name)
        self.run_dir = self.path
        os.makedirs(self.run_dir, exist_ok=True)

    @property
    def replicates(self) -> ReplicateStore:
        return ReplicateStore(os.path.join(self.run_dir, "replicates"))

    def save_config(self, config: Dict[str, Any]) -> str:
        return _write_json(os.path.join(self.run_dir, "config.json"), config)

    def save_diagnostics(self, diagnostics: Dict[str, Any]) -> str:
        return _write_json(os.path.join(self.run_dir, "diagnostics.json"), diagnostics)

    def save_table(self, table: pd.DataFrame, name: str) -> str:
        path = os.path.join(self.run_dir, f"{name}.csv")
        table.to_csv(path)
        return path

    def save_figure(self, fig, name: str, dpi: int = 120) -> str:
        path = os.path.join(self.run_dir, f"{name}.png")
        fig.savefig(path, dpi=dpi, bbox_inches="tight")
        return path
