# =========================================================================
# Convergence bookkeeping for a single run.
#
#  - ConvergenceTrace : log-likelihood sequence + decrease flags, capped at
#                       the iteration budget, frozen once the run ends.
#  - RunResult        : immutable record of one (algorithm, seed) run.
#  - run_em           : the EM fixed-point loop shared by all strategies.
# =========================================================================

import time
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .exceptions import (
    DegenerateResponsibilityError,
    NonConvergenceWarning,
    SingularFitError,
    UndefinedLikelihoodError,
)
from .model import LatentClassData, LCParams, e_step, init_params

# Run statuses
CONVERGED = 'converged'
MAX_ITER = 'max_iter'
TIMEOUT = 'timeout'
CANCELLED = 'cancelled'
DEGENERATE = 'degenerate'
UNDEFINED = 'undefined'
SINGULAR = 'singular'

FAILED_STATUSES = frozenset({DEGENERATE, UNDEFINED, SINGULAR})


def failure_status(exc: Exception) -> str:
    """Maps an exception from the error taxonomy to a run status."""
    if isinstance(exc, DegenerateResponsibilityError):
        return DEGENERATE
    if isinstance(exc, UndefinedLikelihoodError):
        return UNDEFINED
    if isinstance(exc, SingularFitError):
        return SINGULAR
    raise TypeError(f"no run status for {type(exc).__name__}")


class ConvergenceTrace:
    """
    Append-only log-likelihood trace of one run.

    Parameters
    ----------
    capacity : int, default=1000
        Maximum number of entries (the iteration budget).
    decrease_tol : float, default=1e-8
        A step is flagged as a decrease when the new value is below the
        previous one by more than this amount.
    """

    def __init__(self, capacity: int = 1000, decrease_tol: float = 1e-8):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity)
        self.decrease_tol = float(decrease_tol)
        self._loglik = []
        self._decrease = []
        self._frozen = False

    def append(self, loglik: float, previous: Optional[float] = None) -> bool:
        """Records one iteration; returns whether it decreased the log-likelihood."""
        if self._frozen:
            raise RuntimeError("trace is frozen")
        if len(self._loglik) >= self.capacity:
            raise RuntimeError(f"trace is full ({self.capacity} entries)")
        if previous is None and self._loglik:
            previous = self._loglik[-1]
        decreased = previous is not None and loglik < previous - self.decrease_tol
        self._loglik.append(float(loglik))
        self._decrease.append(bool(decreased))
        return decreased

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def loglik(self) -> np.ndarray:
        return np.array(self._loglik, dtype=float)

    @property
    def decreases(self) -> np.ndarray:
        return np.array(self._decrease, dtype=bool)

    def __len__(self):
        return len(self._loglik)


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class RunResult:
    """
    Outcome of one (algorithm, seed) run.

    Attributes
    ----------
    algorithm : str
        Label of the algorithm configuration.
    seed : int or None
        Seed used for the initialization.
    status : str
        One of converged, max_iter, timeout, cancelled, degenerate,
        undefined, singular.
    iterations : int
        Number of completed iterations.
    loglik : ndarray of shape (iterations,)
        Log-likelihood after each iteration.
    decreases : ndarray of bool, shape (iterations,)
        Per-iteration decrease flags.
    params : LCParams or None
        Final (last valid) parameters, None if initialization failed.
    final_loglik : float
        Log-likelihood of `params` (full model).
    elapsed : float
        Wall-clock seconds.
    iterative : bool
        False for plug-in estimators whose iteration count is not comparable
        with the one-step algorithms.
    message : str
        Error message for failed runs.
    info : dict
        Algorithm-specific diagnostics.
    """

    algorithm: str
    seed: Optional[int]
    status: str
    iterations: int
    loglik: np.ndarray
    decreases: np.ndarray
    params: Optional[LCParams]
    final_loglik: float
    elapsed: float
    iterative: bool = True
    message: str = ''
    info: Dict = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status == CONVERGED

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES

    @property
    def n_decreases(self) -> int:
        return int(np.sum(self.decreases))

    @property
    def any_decrease(self) -> bool:
        return bool(np.any(self.decreases))

    def padded_trace(self, capacity: int = 1000) -> Tuple[np.ndarray, np.ndarray]:
        """Fixed-width view of the trace: NaN / False padded, truncated at `capacity`."""
        ll = np.full(capacity, np.nan)
        dec = np.zeros(capacity, dtype=bool)
        k = min(capacity, self.iterations)
        ll[:k] = self.loglik[:k]
        dec[:k] = self.decreases[:k]
        return ll, dec


def make_result(algorithm: str, seed, status: str, trace: ConvergenceTrace,
                params: Optional[LCParams], final_loglik: float, elapsed: float,
                iterative: bool = True, message: str = '', info: Optional[Dict] = None) -> RunResult:
    trace.freeze()
    return RunResult(
        algorithm=algorithm,
        seed=seed,
        status=status,
        iterations=len(trace),
        loglik=_readonly(trace.loglik),
        decreases=_readonly(trace.decreases),
        params=params,
        final_loglik=float(final_loglik),
        elapsed=float(elapsed),
        iterative=iterative,
        message=message,
        info=dict(info or {}),
    )


def run_em(algorithm, data: LatentClassData, seed: Optional[int] = None,
           max_iter: int = 1000, tol: float = 1e-6, decrease_tol: float = 1e-8,
           init: Optional[LCParams] = None, max_time: Optional[float] = None,
           callback: Optional[Callable[[int, float], bool]] = None,
           label: Optional[str] = None, verbose: int = 0) -> RunResult:
    """
    Runs an EM strategy from a seeded initialization until convergence.

    Parameters
    ----------
    algorithm : EMAlgorithm
        Strategy exposing `step(params, data) -> (params, loglik)`.
    data : LatentClassData
    seed : int, optional
        Drives the random initialization only.
    max_iter : int, default=1000
        Hard iteration budget (and trace capacity).
    tol : float, default=1e-6
        Stop when |loglik - previous loglik| < tol.
    decrease_tol : float, default=1e-8
        Noise floor for flagging a log-likelihood decrease.
    init : LCParams, optional
        Starting values; overrides the seeded initialization.
    max_time : float, optional
        Wall-clock budget in seconds, checked at each iteration boundary.
    callback : callable, optional
        `callback(iteration, loglik)`; returning True cancels the run.
    label : str, optional
        Name stored on the result (defaults to `algorithm.name`).
    verbose : int, default=0

    Returns
    -------
    RunResult
        Failures (degenerate units, undefined likelihood) end the run with the
        last valid parameters instead of raising.
    """
    if max_iter < 1:
        raise ValueError("max_iter must be at least 1")
    label = label or algorithm.name
    algorithm.reset()
    trace = ConvergenceTrace(max_iter, decrease_tol)
    t0 = time.perf_counter()
    params = init_params(data, seed) if init is None else init

    try:
        _, prev_ll = e_step(data, params)
    except (DegenerateResponsibilityError, UndefinedLikelihoodError) as exc:
        return make_result(label, seed, failure_status(exc), trace, None, np.nan,
                           time.perf_counter() - t0, message=str(exc))

    status, message = MAX_ITER, ''
    for it in range(1, max_iter + 1):
        try:
            new_params, ll = algorithm.step(params, data)
        except (DegenerateResponsibilityError, UndefinedLikelihoodError) as exc:
            status, message = failure_status(exc), str(exc)
            if verbose:
                print(f"[EM] {label} seed={seed}: stopped at iter {it} ({status}): {exc}")
            break

        trace.append(ll, prev_ll)
        params = new_params
        if verbose and (it == 1 or it % 5 == 0):
            print(f"[EM] iter={it:03d}  loglik={ll:.3f}")

        if abs(ll - prev_ll) < tol:
            status = CONVERGED
            if verbose:
                print(f"Converged at iter {it}, loglik={ll:.3f}")
            break
        prev_ll = ll

        if callback is not None and callback(it, ll):
            status = CANCELLED
            break
        if max_time is not None and time.perf_counter() - t0 > max_time:
            status = TIMEOUT
            break

    if status == MAX_ITER:
        warnings.warn(f"{label} (seed={seed}) did not converge in {max_iter} iterations",
                      NonConvergenceWarning)
    algorithm.finish(status)
    final_ll = trace.loglik[-1] if len(trace) else prev_ll
    return make_result(label, seed, status, trace, params, final_ll,
                       time.perf_counter() - t0, iterative=algorithm.iterative,
                       message=message, info=algorithm.info())
