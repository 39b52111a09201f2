# =========================================================================
# EM strategies for latent class models with covariates.
#
# Every strategy exposes the same contract,
#
#     new_params, loglik = algorithm.step(params, data)
#
# one full EM iteration: E-step at `params`, closed-form update of the item
# tables, then a strategy-specific update of the logit coefficients, and
# the log-likelihood at the new parameters. Strategies differ only in the
# coefficient update:
#
#  - NewtonRaphsonEM : one (damped) Newton-Raphson step with the observed-data
#                      Hessian ("one-step EM"); not monotone.
#  - NestedEM        : Polya-Gamma augmented update, closed form and never
#                      decreasing the likelihood.
#  - HybridEM        : NestedEM until the improvement falls below a switch
#                      threshold, then NewtonRaphsonEM.
# =========================================================================

from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.special import logsumexp

from .exceptions import UndefinedLikelihoodError
from .model import LatentClassData, LCParams, e_step, prior_probs, update_item_probs
from .tracking import run_em


# ---------- Internal Utility Functions ----------

def polya_gamma_mean(psi: np.ndarray) -> np.ndarray:
    """
    Mean of a PG(1, psi) variable, tanh(psi/2) / (2 psi).

    Uses the series 1/4 - psi^2/48 near zero, where the closed form is 0/0.
    """
    psi = np.abs(np.asarray(psi, dtype=float))
    out = np.empty_like(psi)
    small = psi < 1e-4
    out[small] = 0.25 - psi[small] ** 2 / 48.0
    big = ~small
    out[big] = np.tanh(psi[big] / 2.0) / (2.0 * psi[big])
    return out

def _solve_psd(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solves A z = b, falling back to least squares when A is singular."""
    try:
        return np.linalg.solve(A, b)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(A, b, rcond=None)[0]

def _softmax_curvature(x: np.ndarray, probs: np.ndarray) -> np.ndarray:
    """
    sum_i p_ir (delta_rs - p_is) x_i x_i' over the non-reference classes,
    stacked class by class, shape ((R-1)*P, (R-1)*P).
    """
    P = x.shape[1]
    R = probs.shape[1]
    K = R - 1
    out = np.zeros((K * P, K * P))
    for r in range(1, R):
        for s in range(r, R):
            w = probs[:, r] * (float(r == s) - probs[:, s])
            block = (x * w[:, np.newaxis]).T @ x
            out[(r - 1) * P:r * P, (s - 1) * P:s * P] = block
            if s != r:
                out[(s - 1) * P:s * P, (r - 1) * P:r * P] = block.T
    return out

def logit_gradient_hessian(x: np.ndarray, resp: np.ndarray, beta: np.ndarray,
                           hessian: str = 'expected') -> Tuple[np.ndarray, np.ndarray]:
    """
    Gradient and Hessian of the log-likelihood in the non-reference
    coefficients, stacked class by class.

    The gradient X'(W - pi) is shared by the expected complete-data and the
    observed-data log-likelihood. The Hessians differ:

    - 'expected' : -sum_i pi_r (delta_rs - pi_s) x x', always negative
                   semi-definite.
    - 'observed' : the expected one plus sum_i W_r (delta_rs - W_s) x x'
                   (Louis identity, item tables held fixed). It is the
                   curvature one-step EM uses and can be indefinite away from
                   a maximum.

    Returns
    -------
    grad : ndarray of shape ((R-1)*P,)
    hess : ndarray of shape ((R-1)*P, (R-1)*P)
    """
    pi = prior_probs(x, beta)
    grad = (x.T @ (resp[:, 1:] - pi[:, 1:])).T.ravel()
    hess = -_softmax_curvature(x, pi)
    if hessian == 'observed':
        hess += _softmax_curvature(x, resp)
    elif hessian != 'expected':
        raise ValueError(f"hessian must be 'expected' or 'observed', got {hessian!r}")
    return grad, hess


def newton_beta_update(x: np.ndarray, resp: np.ndarray, beta: np.ndarray,
                       damping: float = 1.0, hessian: str = 'observed') -> np.ndarray:
    """
    One damped Newton-Raphson step for the logit coefficients.

    beta_new = beta + damping * pinv(-H) g. A generalized inverse is used so
    that an ill-conditioned Hessian still yields a step; whether that step is
    usable is decided by the next likelihood evaluation.
    """
    P, R = beta.shape
    grad, hess = logit_gradient_hessian(x, resp, beta, hessian)
    try:
        with np.errstate(over='ignore', invalid='ignore'):
            delta = np.linalg.pinv(-hess) @ grad
    except np.linalg.LinAlgError as exc:
        raise UndefinedLikelihoodError(float('nan'), f"Newton step failed: {exc}") from exc
    new = beta.copy()
    new[:, 1:] += damping * delta.reshape(R - 1, P).T
    return new


def polya_gamma_beta_update(x: np.ndarray, resp: np.ndarray, beta: np.ndarray,
                            n_sweeps: int = 1) -> np.ndarray:
    """
    Closed-form coefficient update from the Polya-Gamma augmentation.

    For each non-reference class r in turn, the softmax is rewritten as a
    binary logit in psi_ir = x_i beta_r - C_ir, C_ir = log sum_{s != r}
    exp(x_i beta_s). Replacing the PG(1, psi) auxiliary variables by their
    conditional means turns the expected complete-data log-likelihood into a
    quadratic minorizer that is tight at the current beta, maximized by

        beta_r = (X' Omega_r X)^{-1} X' (kappa_r + Omega_r C_r),
        kappa_ir = W_ir - 1/2.

    Each block update therefore cannot decrease the objective.
    """
    beta = beta.copy()
    R = beta.shape[1]
    for _ in range(n_sweeps):
        for r in range(1, R):
            eta = x @ beta
            offset = logsumexp(np.delete(eta, r, axis=1), axis=1)
            psi = eta[:, r] - offset
            omega = polya_gamma_mean(psi)
            kappa = resp[:, r] - 0.5
            A = (x * omega[:, np.newaxis]).T @ x
            b = x.T @ (kappa + omega * offset)
            beta[:, r] = _solve_psd(A, b)
    return beta


# ---------- Strategies ----------

class EMAlgorithm:
    """
    Base class for the EM strategies.

    Subclasses implement `update_beta`. A strategy instance keeps only
    per-run bookkeeping (reset by `reset()` at the start of each run), so one
    instance must not be shared by concurrently running seeds.
    """

    name = 'em'
    iterative = True

    def __init__(self):
        self._cache = None

    def reset(self):
        """Clears per-run state. Called by the run loop before the first step."""
        self._cache = None

    def finish(self, status: str):
        """Hook called by the run loop once the run stops."""

    def info(self) -> Dict:
        """Strategy-specific diagnostics stored on the RunResult."""
        return {}

    def update_beta(self, data: LatentClassData, params: LCParams, resp: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def m_step(self, data: LatentClassData, params: LCParams, resp: np.ndarray) -> LCParams:
        """Maximization step: exact item tables, strategy-specific coefficients."""
        item_probs = update_item_probs(data.y, resp, data.n_categories, params.item_probs)
        beta = self.update_beta(data, params, resp)
        return LCParams(beta, item_probs)

    def step(self, params: LCParams, data: LatentClassData) -> Tuple[LCParams, float]:
        """One EM iteration from `params`; returns the new parameters and their log-likelihood."""
        # The responsibilities at `params` were computed as a by-product of
        # the previous step when `params` is what that step returned.
        if self._cache is not None and self._cache[0] is params:
            resp = self._cache[1]
        else:
            resp, _ = e_step(data, params)
        new_params = self.m_step(data, params, resp)
        new_resp, loglik = e_step(data, new_params)
        self._cache = (new_params, new_resp)
        return new_params, loglik

    def run(self, data: LatentClassData, seed: Optional[int] = None, **kwargs):
        """Runs this strategy to convergence; see `lcr.tracking.run_em`."""
        return run_em(self, data, seed=seed, **kwargs)

    def __repr__(self):
        return f"{type(self).__name__}()"


class NewtonRaphsonEM(EMAlgorithm):
    """
    One-step EM with a damped Newton-Raphson coefficient update.

    Parameters
    ----------
    damping : float, default=1.0
        Step-size factor alpha in (0, 1]. 1.0 is the undamped one-step EM;
        smaller values interpolate between the current and proposed
        coefficients, trading speed for stability. The update is not
        guaranteed to increase the likelihood.
    hessian : {'observed', 'expected'}, default='observed'
        Curvature of the Newton step. 'observed' is the observed-data
        Hessian of classical one-step EM, which can be indefinite far from a
        maximum (overshooting steps, likelihood decreases). 'expected' uses
        the complete-data Hessian, which is always negative semi-definite.
    """

    name = 'newton'

    def __init__(self, damping: float = 1.0, hessian: str = 'observed'):
        super().__init__()
        if not 0.0 < damping <= 1.0:
            raise ValueError(f"damping must be in (0, 1], got {damping}")
        if hessian not in ('observed', 'expected'):
            raise ValueError(f"hessian must be 'observed' or 'expected', got {hessian!r}")
        self.damping = float(damping)
        self.hessian = hessian

    def update_beta(self, data, params, resp):
        return newton_beta_update(data.x, resp, params.beta, self.damping, self.hessian)

    def __repr__(self):
        return f"NewtonRaphsonEM(damping={self.damping:g}, hessian={self.hessian!r})"


class NestedEM(EMAlgorithm):
    """
    Nested EM: the coefficient update is itself an EM step on the
    Polya-Gamma augmented logit, nested inside the outer EM.

    Parameters
    ----------
    inner_iter : int, default=1
        Number of block-coordinate sweeps over the classes per outer
        iteration. More sweeps move the inner step closer to the exact
        maximizer; any number keeps the ascent property.
    """

    name = 'nested'

    def __init__(self, inner_iter: int = 1):
        super().__init__()
        if inner_iter < 1:
            raise ValueError("inner_iter must be at least 1")
        self.inner_iter = int(inner_iter)

    def update_beta(self, data, params, resp):
        return polya_gamma_beta_update(data.x, resp, params.beta, self.inner_iter)

    def __repr__(self):
        return f"NestedEM(inner_iter={self.inner_iter})"


class HybridState(Enum):
    AUGMENTED = 'augmented'
    NEWTON = 'newton'
    CONVERGED = 'converged'


class HybridEM(EMAlgorithm):
    """
    Runs NestedEM until the log-likelihood improvement drops below
    `switch_tol`, then hands over to NewtonRaphsonEM for fast local
    convergence.

    Parameters
    ----------
    switch_tol : float, default=1e-2
        Absolute improvement below which the controller switches to Newton.
    damping : float, default=1.0
        Damping of the Newton phase.
    inner_iter : int, default=1
        Inner sweeps of the augmented phase.
    """

    name = 'hybrid'

    def __init__(self, switch_tol: float = 1e-2, damping: float = 1.0, inner_iter: int = 1):
        if switch_tol <= 0:
            raise ValueError("switch_tol must be positive")
        self.switch_tol = float(switch_tol)
        self.augmented = NestedEM(inner_iter=inner_iter)
        self.newton = NewtonRaphsonEM(damping=damping)
        super().__init__()
        self.reset()

    def reset(self):
        super().reset()
        self.augmented.reset()
        self.newton.reset()
        self.state = HybridState.AUGMENTED
        self.switch_iteration = None
        self._prev_loglik = None
        self._n_steps = 0

    def step(self, params, data):
        active = self.newton if self.state is HybridState.NEWTON else self.augmented
        new_params, loglik = active.step(params, data)
        self._n_steps += 1
        if (self.state is HybridState.AUGMENTED and self._prev_loglik is not None
                and abs(loglik - self._prev_loglik) < self.switch_tol):
            self.state = HybridState.NEWTON
            self.switch_iteration = self._n_steps
        self._prev_loglik = loglik
        return new_params, loglik

    def finish(self, status):
        if status in ('converged', 'max_iter'):
            self.state = HybridState.CONVERGED

    def info(self):
        return {'switch_iteration': self.switch_iteration, 'final_state': self.state.value}

    def __repr__(self):
        return (f"HybridEM(switch_tol={self.switch_tol:g}, damping={self.newton.damping:g}, "
                f"inner_iter={self.augmented.inner_iter})")
