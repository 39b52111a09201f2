# =========================================================================
# LatentClassRegression: estimator-style front end.
#
# Wraps the run harness for the common case of fitting one model: encodes
# the responses, builds the design matrix, runs the chosen algorithm from
# `n_init` seeds and keeps the best valid run.
# =========================================================================

from typing import List, Optional

import numpy as np
import pandas as pd

from .exceptions import LCRError
from .model import (
    LatentClassData,
    LCParams,
    aic,
    bic,
    design_columns,
    design_matrix,
    e_step,
    encode_responses,
)
from .runner import ALGORITHMS, run_many


class LatentClassRegression:
    """
    Latent class model with covariates.

    Parameters
    ----------
    n_classes : int, default=3
        The number of latent classes R.
    algorithm : {'nested', 'newton', 'hybrid', 'three_step', 'three_step_corrected'}, default='nested'
        The maximization strategy.
    damping : float, default=1.0
        Newton-Raphson damping factor alpha in (0, 1] ('newton' and 'hybrid').
    switch_tol : float, default=1e-2
        Improvement below which 'hybrid' switches to Newton-Raphson.
    inner_iter : int, default=1
        Inner sweeps of the augmented update ('nested' and 'hybrid').
    max_iter : int, default=1000
        Maximum EM iterations per run.
    tol : float, default=1e-6
        Absolute change in log-likelihood at which a run has converged.
    n_init : int, default=1
        Number of random initializations; the best valid run is kept.
    add_intercept : bool, default=True
        Prepend an intercept column to the covariates.
    n_jobs : int, default=1
        Number of parallel runs. -1 means using all processors.
    random_state : int, optional
        Seed of the first initialization; later ones use consecutive seeds.
    verbose : int, default=0
        Controls the verbosity of the fitting process.
    """

    def __init__(self, n_classes: int = 3, algorithm: str = 'nested',
                 damping: float = 1.0, switch_tol: float = 1e-2, inner_iter: int = 1,
                 max_iter: int = 1000, tol: float = 1e-6, n_init: int = 1,
                 add_intercept: bool = True, n_jobs: int = 1,
                 random_state: Optional[int] = None, verbose: int = 0):
        if algorithm not in ALGORITHMS:
            raise ValueError(f"unknown algorithm {algorithm!r}")
        if n_classes < 2:
            raise ValueError("n_classes must be at least 2")
        if n_init < 1:
            raise ValueError("n_init must be at least 1")

        self.n_classes = n_classes
        self.algorithm = algorithm
        self.damping = damping
        self.switch_tol = switch_tol
        self.inner_iter = inner_iter
        self.max_iter = max_iter
        self.tol = tol
        self.n_init = n_init
        self.add_intercept = add_intercept
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.verbose = verbose

        # Fitted attributes (initialized to None)
        self.levels_ = None
        self.design_columns_ = None
        self.beta_ = None
        self.item_probs_ = None
        self.loglik_ = None
        self.bic_ = None
        self.aic_ = None
        self.n_iter_ = None
        self.history_ = []
        self.runs_ = []
        self.best_run_ = None

    def _algorithm_params(self) -> dict:
        if self.algorithm == 'newton':
            return {'damping': self.damping}
        if self.algorithm == 'nested':
            return {'inner_iter': self.inner_iter}
        if self.algorithm == 'hybrid':
            return {'switch_tol': self.switch_tol, 'damping': self.damping,
                    'inner_iter': self.inner_iter}
        return {}

    def _seeds(self) -> List[int]:
        if self.random_state is None:
            return np.random.default_rng().integers(0, 2**31 - 1, size=self.n_init).tolist()
        return [int(self.random_state) + k for k in range(self.n_init)]

    def _prepare(self, y, x, fitting: bool) -> LatentClassData:
        if isinstance(y, pd.DataFrame):
            if fitting:
                codes, self.levels_ = encode_responses(y)
            else:
                codes = np.column_stack([
                    pd.Categorical(y[c], categories=lv).codes for c, lv in self.levels_.items()])
        else:
            codes = np.asarray(y)
            if fitting:
                self.levels_ = None
        if fitting:
            self.design_columns_ = design_columns(x)
        X = design_matrix(x, add_intercept=self.add_intercept, columns=self.design_columns_)
        n_categories = None
        if not fitting:
            n_categories = [p.shape[1] for p in self.item_probs_]
        elif self.levels_ is not None:
            n_categories = [len(lv) for lv in self.levels_.values()]
        return LatentClassData(codes, X, self.n_classes, n_categories)

    def fit(self, y, x):
        """
        Fits the model.

        Parameters
        ----------
        y : pd.DataFrame or array-like of shape (n, J)
            Categorical responses (a frame is encoded with `encode_responses`)
            or integer category codes.
        x : pd.DataFrame, pd.Series or array-like
            Covariates, without the intercept column when `add_intercept`.

        Returns
        -------
        self : LatentClassRegression
        """
        data = self._prepare(y, x, fitting=True)
        config = (self.algorithm, self._algorithm_params())
        results = run_many({self.algorithm: config}, data, self._seeds(), n_jobs=self.n_jobs,
                           verbose=self.verbose, max_iter=self.max_iter, tol=self.tol)
        self.runs_ = results[self.algorithm]

        valid = [r for r in self.runs_ if not r.failed and r.params is not None]
        if not valid:
            reasons = "; ".join(sorted({f"{r.status}: {r.message}" for r in self.runs_}))
            raise LCRError(f"all {len(self.runs_)} runs failed ({reasons})")
        best = max(valid, key=lambda r: r.final_loglik)

        self.best_run_ = best
        params = best.params.copy()
        self.beta_ = params.beta
        self.item_probs_ = params.item_probs
        self.loglik_ = best.final_loglik
        self.history_ = best.loglik.tolist()
        self.n_iter_ = best.iterations
        self.bic_ = bic(data, self.loglik_)
        self.aic_ = aic(data, self.loglik_)
        if self.verbose:
            print(f"Best of {len(self.runs_)} runs: seed={best.seed}, loglik={self.loglik_:.3f}, "
                  f"BIC={self.bic_:.1f}")
        return self

    @property
    def params_(self) -> LCParams:
        return LCParams(self.beta_, self.item_probs_)

    def predict_proba(self, y, x) -> np.ndarray:
        """Posterior class probabilities of each unit."""
        if self.beta_ is None:
            raise LCRError("model is not fitted")
        data = self._prepare(y, x, fitting=False)
        resp, _ = e_step(data, self.params_)
        return resp

    def predict(self, y, x) -> np.ndarray:
        """Most probable class of each unit."""
        return self.predict_proba(y, x).argmax(axis=1)
