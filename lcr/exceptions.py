# =========================================================================
# Exceptions and warnings raised by the latent class regression core.
#
# All errors inherit from ValueError so callers that already guard against
# bad numerical input keep working. Run-level failures (degenerate units,
# undefined likelihoods, singular Step-3 fits) are caught by the run loop
# and turned into a failed RunResult for that seed only.
# =========================================================================

from typing import Optional, Sequence

import numpy as np


class LCRError(ValueError):
    """Base class for all errors raised by `lcr`."""


class DataValidationError(LCRError):
    """Raised when the response or covariate arrays are malformed."""


class DegenerateResponsibilityError(LCRError):
    """
    Raised when one or more units receive zero probability under every class.

    Parameters
    ----------
    units : sequence of int
        Row indices of the offending units.
    """

    def __init__(self, units: Sequence[int], message: Optional[str] = None):
        self.units = np.asarray(units, dtype=int)
        if message is None:
            head = ", ".join(str(u) for u in self.units[:10])
            more = "" if len(self.units) <= 10 else f" (+{len(self.units) - 10} more)"
            message = f"{len(self.units)} unit(s) have zero mixture probability: {head}{more}"
        super().__init__(message)


class UndefinedLikelihoodError(LCRError):
    """Raised when the observed-data log-likelihood is NaN or -inf."""

    def __init__(self, value: float, message: Optional[str] = None):
        self.value = value
        super().__init__(message or f"log-likelihood is undefined ({value})")


class SingularFitError(LCRError):
    """Raised when the Step-3 multinomial-logit fit fails or is singular."""


class NonConvergenceWarning(UserWarning):
    """Emitted when a run exhausts its iteration budget before converging."""
