# =========================================================================
# Three-step estimation of a latent class model with covariates.
#
#   Step 1 : covariate-free latent class model fitted by plain EM.
#   Step 2 : modal (hard) class assignment, plus the classification-error
#            matrix used by the bias-corrected variant.
#   Step 3 : multinomial logit of the assigned classes on the covariates,
#            either treating the labels as error-free (classical) or with
#            the label's class-conditional table fixed to the
#            classification-error matrix (corrected).
#
# Both variants report the full-model log-likelihood at the Step-3
# coefficients combined with the Step-1 item tables, so the result is
# comparable with the one-step algorithms in `lcr.optimizers`.
# =========================================================================

import time
import warnings
from dataclasses import replace
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.optimize import minimize
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression

from .exceptions import (
    DegenerateResponsibilityError,
    SingularFitError,
    UndefinedLikelihoodError,
)
from .model import (
    LatentClassData,
    LCParams,
    _weighted_counts,
    e_step,
    prior_probs,
)
from .optimizers import EMAlgorithm
from .tracking import RunResult, failure_status, run_em

# scikit-learn >= 1.8 deprecates penalty=None in favour of C=inf; the fit is the same.
warnings.filterwarnings("ignore", message=".*'penalty' was deprecated.*")


# ---------- Step 1: unconditional latent class model ----------

class UnconditionalEM(EMAlgorithm):
    """
    Plain EM for the covariate-free model.

    Expects an intercept-only design, on which the multinomial logit reduces
    to class proportions; the exact update is beta_r = log(pi_r / pi_0).
    """

    name = 'unconditional'

    def update_beta(self, data, params, resp):
        props = resp.mean(axis=0)
        beta = np.zeros_like(params.beta)
        with np.errstate(divide='ignore'):
            beta[0, :] = np.log(props) - np.log(props[0])
        return beta


def unconditional_em(data: LatentClassData, seed: Optional[int] = None,
                     **kwargs) -> Tuple[RunResult, Optional[np.ndarray]]:
    """
    Fits the measurement model without covariates.

    Returns the Step-1 RunResult (on the intercept-only design) and the
    responsibility matrix at its final parameters (None if the run failed).
    """
    base = LatentClassData(data.y, np.ones((data.n_units, 1)), data.n_classes, data.n_categories)
    result = run_em(UnconditionalEM(), base, seed=seed, **kwargs)
    if result.failed:
        return result, None
    resp, _ = e_step(base, result.params)
    return result, resp


def class_proportions(params: LCParams) -> np.ndarray:
    """Class proportions of an intercept-only model."""
    return prior_probs(np.ones((1, 1)), params.beta)[0]


# ---------- Step 2: assignment ----------

def modal_assignment(resp: np.ndarray) -> np.ndarray:
    """Most probable class of every unit."""
    return np.argmax(resp, axis=1)


def classification_error_matrix(resp: np.ndarray, labels: Optional[np.ndarray] = None) -> np.ndarray:
    """
    D[c, s] = P(assigned class s | true class c).

    Computed as sum_i W_ic 1{s_i = s} / N divided by the class proportion
    pi_c = sum_i W_ic / N, so each row is a distribution over assigned
    classes.
    """
    if labels is None:
        labels = modal_assignment(resp)
    R = resp.shape[1]
    joint = _weighted_counts(labels, R, resp) / resp.shape[0]
    props = resp.mean(axis=0)
    return joint / props[:, np.newaxis]


# ---------- Step 3: covariate model ----------

def fit_multinomial_logit(x: np.ndarray, labels: np.ndarray, n_classes: int,
                          max_iter: int = 1000) -> np.ndarray:
    """
    Unpenalized multinomial logit of hard labels on the design matrix.

    Returns coefficients of shape (P, R) with class 0 as reference.

    Raises
    ------
    SingularFitError
        If a class received no units, the design is rank deficient, or the
        solver does not converge.
    """
    P = x.shape[1]
    missing = np.setdiff1d(np.arange(n_classes), np.unique(labels))
    if missing.size:
        raise SingularFitError(f"no units assigned to class(es) {missing.tolist()}")
    if np.linalg.matrix_rank(x) < P:
        raise SingularFitError("covariate design matrix is rank deficient")

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        try:
            m = LogisticRegression(penalty=None, solver="lbfgs",
                                   fit_intercept=False, max_iter=max_iter)
            m.fit(x, labels)
        except ConvergenceWarning as exc:
            raise SingularFitError(f"multinomial logit did not converge: {exc}") from exc

    beta = np.zeros((P, n_classes))
    if n_classes == 2:
        # sklearn parametrizes the binary case as class 1 vs class 0
        beta[:, 1] = m.coef_[0]
    else:
        beta = (m.coef_ - m.coef_[0]).T
    if not np.all(np.isfinite(beta)):
        raise SingularFitError("multinomial logit produced non-finite coefficients")
    return beta


def fit_corrected_logit(x: np.ndarray, labels: np.ndarray, error_matrix: np.ndarray,
                        beta0: Optional[np.ndarray] = None, max_iter: int = 1000,
                        gtol: float = 1e-6) -> np.ndarray:
    """
    Bias-corrected Step 3: maximizes sum_i log sum_c pi_c(x_i; beta) D[c, s_i].

    This is a latent class model with covariates whose single item is the
    assigned label and whose table is held fixed at `error_matrix`; only the
    coefficients move. The gradient is X'(W - pi) with W the posterior under
    that model.
    """
    P = x.shape[1]
    R = error_matrix.shape[0]
    data = LatentClassData(labels, x, R, (R,))
    table = (np.asarray(error_matrix, dtype=float),)

    def unpack(theta):
        beta = np.zeros((P, R))
        beta[:, 1:] = theta.reshape(R - 1, P).T
        return beta

    def objective(theta):
        beta = unpack(theta)
        try:
            resp, ll = e_step(data, LCParams(beta, table))
        except (DegenerateResponsibilityError, UndefinedLikelihoodError):
            return np.inf, np.zeros_like(theta)
        pi = prior_probs(x, beta)
        grad = (x.T @ (resp[:, 1:] - pi[:, 1:])).T.ravel()
        return -ll, -grad

    start = np.zeros((P, R)) if beta0 is None else np.asarray(beta0, dtype=float)
    theta0 = start[:, 1:].T.ravel()
    with np.errstate(over='ignore', invalid='ignore'):
        res = minimize(objective, theta0, jac=True, method='BFGS',
                       options={'maxiter': max_iter, 'gtol': gtol})
    # BFGS often stops on "precision loss" right at the optimum; accept that
    # as long as the gradient is flat.
    flat = np.all(np.isfinite(res.x)) and np.max(np.abs(res.jac)) < 1e-3
    if not (res.success or flat):
        raise SingularFitError(f"corrected logit fit failed: {res.message}")
    return unpack(res.x)


# ---------- Pipeline ----------

class ThreeStep:
    """
    Three-step estimator (classical or bias-corrected).

    Parameters
    ----------
    corrected : bool, default=False
        Use the classification-error correction in Step 3.
    logit_max_iter : int, default=1000
        Iteration limit of the Step-3 fit.
    logit_fitter : callable, optional
        `fitter(x, labels, n_classes) -> beta` replacing the scikit-learn
        multinomial logit of the classical variant (and the starting values
        of the corrected one).
    """

    iterative = False

    def __init__(self, corrected: bool = False, logit_max_iter: int = 1000,
                 logit_fitter: Optional[Callable] = None):
        self.corrected = bool(corrected)
        self.logit_max_iter = int(logit_max_iter)
        self.logit_fitter = logit_fitter

    @property
    def name(self) -> str:
        return 'three_step_corrected' if self.corrected else 'three_step'

    def _fit_classical(self, x, labels, n_classes):
        if self.logit_fitter is not None:
            return self.logit_fitter(x, labels, n_classes)
        return fit_multinomial_logit(x, labels, n_classes, max_iter=self.logit_max_iter)

    def run(self, data: LatentClassData, seed: Optional[int] = None,
            label: Optional[str] = None, verbose: int = 0, **kwargs) -> RunResult:
        """
        Runs the three steps for one seed.

        Keyword arguments other than `label` and `verbose` are forwarded to the
        Step-1 EM (`max_iter`, `tol`, `decrease_tol`, `max_time`, `callback`).
        """
        label = label or self.name
        t0 = time.perf_counter()
        step1, resp = unconditional_em(data, seed=seed, verbose=verbose, **kwargs)
        info = {'step1_loglik': step1.final_loglik, 'step1_status': step1.status}

        def finish(**changes):
            return replace(step1, algorithm=label, iterative=False, info=info,
                           elapsed=time.perf_counter() - t0, **changes)

        if resp is None:
            return finish(params=None, final_loglik=np.nan)

        labels = modal_assignment(resp)
        info['class_sizes'] = np.bincount(labels, minlength=data.n_classes)
        info['class_proportions'] = class_proportions(step1.params)
        try:
            beta = self._fit_classical(data.x, labels, data.n_classes)
            if self.corrected:
                D = classification_error_matrix(resp, labels)
                info['error_matrix'] = D
                beta = fit_corrected_logit(data.x, labels, D, beta0=beta,
                                           max_iter=self.logit_max_iter)
            params = LCParams(beta, step1.params.item_probs)
            _, final_ll = e_step(data, params)
        except (SingularFitError, DegenerateResponsibilityError, UndefinedLikelihoodError) as exc:
            if verbose:
                print(f"[3-step] {label} seed={seed}: {exc}")
            return finish(status=failure_status(exc), params=None,
                          final_loglik=np.nan, message=str(exc))

        if verbose:
            print(f"[3-step] {label} seed={seed}: loglik={final_ll:.3f}")
        return finish(params=params, final_loglik=final_ll)

    def __repr__(self):
        return f"ThreeStep(corrected={self.corrected})"

