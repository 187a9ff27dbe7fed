from typing import Any, Optional


class SBCError(Exception):
    """Base class for all calibration errors."""
    kind = "error"


class InvalidPriorSpec(SBCError, ValueError):
    """Malformed prior declaration. Fatal before any replicate runs."""
    kind = "invalid_prior_spec"


class SchemaMismatch(SBCError, ValueError):
    """Parameter vector, covariate template or draws are structurally incompatible."""
    kind = "schema_mismatch"


class ReplicateError(SBCError):
    """Failure confined to a single replicate."""
    kind = "replicate_error"


class FitNonConvergence(ReplicateError):
    """
    The posterior fitter reported degraded quality (divergences, high R-hat).
    When `result` carries draws the replicate is still recorded, but flagged.
    """
    kind = "fit_non_convergence"

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class FitTimeout(ReplicateError):
    kind = "fit_timeout"


class InsufficientDraws(ReplicateError):
    kind = "insufficient_draws"


class SimulationError(ReplicateError):
    """The model could not simulate data for a drawn parameter vector."""
    kind = "simulation_error"


class ConvergenceWarning(RuntimeWarning):
    """Emitted by fitters whose draws are usable but of degraded quality."""
