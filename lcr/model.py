# =========================================================================
# Latent class model with covariates: data container, parameters,
# likelihood and E-step.
#
#  - J categorical responses, locally independent given the latent class.
#  - R latent classes whose prior depends on covariates through a
#    multinomial-logit link; class 0 is the reference (beta[:, 0] == 0).
#  - Everything here is a pure function of (params, data); the optimizers
#    in `lcr.optimizers` and `lcr.three_step` build on these routines.
# =========================================================================

from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype
from scipy.special import logsumexp

from .exceptions import (
    DataValidationError,
    DegenerateResponsibilityError,
    UndefinedLikelihoodError,
)


# ---------- Internal Utility Functions ----------

def _log(x: np.ndarray) -> np.ndarray:
    """Elementwise log where zero maps to -inf without a RuntimeWarning."""
    with np.errstate(divide='ignore'):
        return np.log(x)

def _log_softmax(eta: np.ndarray) -> np.ndarray:
    """Row-wise log-softmax using the log-sum-exp shift."""
    with np.errstate(invalid='ignore', over='ignore'):
        return eta - logsumexp(eta, axis=1, keepdims=True)

def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, copy=True)
    a.setflags(write=False)
    return a

def _weighted_counts(codes: np.ndarray, n_levels: int, weights: np.ndarray) -> np.ndarray:
    """Computes class-by-level weighted counts, shape (R, n_levels)."""
    onehot = np.zeros((codes.shape[0], n_levels))
    onehot[np.arange(codes.shape[0]), codes] = 1.0
    return weights.T @ onehot


# ---------- Input Preparation ----------

def encode_responses(df: pd.DataFrame) -> Tuple[np.ndarray, dict]:
    """
    Encodes a frame of categorical responses into 0-based integer codes.

    Categorical columns keep their declared categories (and order); other
    columns use their sorted unique values. Missing entries are rejected.

    Returns
    -------
    codes : ndarray of shape (n, J)
    levels : dict mapping column name to its list of levels
    """
    levels = {}
    codes = np.zeros(df.shape, dtype=int)
    for j, c in enumerate(df.columns):
        col = df[c]
        if col.isna().any():
            raise DataValidationError(f"column {c!r} has missing values")
        if isinstance(col.dtype, CategoricalDtype):
            levels[c] = list(col.cat.categories)
            codes[:, j] = col.cat.codes.to_numpy()
        else:
            levels[c] = sorted(pd.Series(col.unique()).tolist())
            codes[:, j] = pd.Categorical(col, categories=levels[c]).codes
    return codes, levels


def _as_frame(covariates):
    if isinstance(covariates, pd.Series):
        return covariates.to_frame()
    return covariates


def design_columns(covariates) -> Optional[list]:
    """Column names of the dummy-coded design (without intercept), None for arrays."""
    covariates = _as_frame(covariates)
    if not isinstance(covariates, pd.DataFrame):
        return None
    return pd.get_dummies(covariates, drop_first=True, dtype=float).columns.tolist()


def design_matrix(covariates, add_intercept: bool = True,
                  columns: Optional[Sequence] = None) -> np.ndarray:
    """
    Builds the n x P covariate design matrix.

    Non-numeric DataFrame columns are dummy-coded against their first level.
    Given `columns` (from `design_columns` on the fitting frame), the dummies
    are aligned to them instead, so a subset missing some levels keeps the
    fitted layout. Levels unseen at fit time map onto the reference level.
    """
    covariates = _as_frame(covariates)
    if isinstance(covariates, pd.DataFrame):
        if columns is None:
            dummies = pd.get_dummies(covariates, drop_first=True, dtype=float)
        else:
            dummies = pd.get_dummies(covariates, dtype=float)
            dummies = dummies.reindex(columns=list(columns), fill_value=0.0)
        X = dummies.to_numpy(dtype=float)
    else:
        X = np.asarray(covariates, dtype=float)
        if X.ndim == 1:
            X = X[:, np.newaxis]
    if add_intercept:
        X = np.column_stack([np.ones(X.shape[0]), X])
    return X


class LatentClassData:
    """
    Immutable observation set for a latent class model with covariates.

    Parameters
    ----------
    y : array-like of shape (n, J)
        Integer category codes, item j taking values in 0..C_j-1.
    x : array-like of shape (n, P)
        Covariate design matrix, including the intercept column if wanted.
    n_classes : int
        Number of latent classes R (at least 2).
    n_categories : sequence of int, optional
        Number of levels C_j of each item. Inferred as max code + 1 if omitted.
    """

    def __init__(self, y, x, n_classes: int, n_categories: Optional[Sequence[int]] = None):
        y = np.asarray(y)
        x = np.asarray(x, dtype=float)
        if y.ndim == 1:
            y = y[:, np.newaxis]
        if x.ndim == 1:
            x = x[:, np.newaxis]
        if n_classes < 2:
            raise DataValidationError("n_classes must be at least 2")
        if y.shape[0] != x.shape[0]:
            raise DataValidationError(
                f"y has {y.shape[0]} rows but x has {x.shape[0]}")
        if y.shape[0] == 0 or y.shape[1] == 0:
            raise DataValidationError("y must contain at least one unit and one item")
        if not np.all(np.isfinite(x)):
            raise DataValidationError("x contains NaN or infinite values")
        if np.issubdtype(y.dtype, np.floating):
            if not np.all(np.isfinite(y)) or np.any(y != np.round(y)):
                raise DataValidationError("y must hold integer category codes without missing values")
        y = y.astype(int)
        if np.any(y < 0):
            raise DataValidationError("y contains negative (missing) codes")

        if n_categories is None:
            n_categories = y.max(axis=0) + 1
        n_categories = tuple(int(c) for c in n_categories)
        if len(n_categories) != y.shape[1]:
            raise DataValidationError("n_categories must have one entry per item")
        if np.any(y >= np.asarray(n_categories)):
            raise DataValidationError("y contains codes outside 0..C_j-1")

        self.y = _readonly(y)
        self.x = _readonly(x)
        self.n_classes = int(n_classes)
        self.n_categories = n_categories

    @property
    def n_units(self) -> int:
        return self.y.shape[0]

    @property
    def n_items(self) -> int:
        return self.y.shape[1]

    @property
    def n_covariates(self) -> int:
        return self.x.shape[1]

    def __repr__(self):
        return (f"LatentClassData(n_units={self.n_units}, n_items={self.n_items}, "
                f"n_covariates={self.n_covariates}, n_classes={self.n_classes})")


class LCParams(NamedTuple):
    """Model parameters: logit coefficients (P, R) and per-item tables (R, C_j)."""
    beta: np.ndarray
    item_probs: Tuple[np.ndarray, ...]

    def copy(self) -> 'LCParams':
        return LCParams(self.beta.copy(), tuple(p.copy() for p in self.item_probs))

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.beta))
                    and all(np.all(np.isfinite(p)) for p in self.item_probs))


def init_params(data: LatentClassData, seed: Optional[int] = None) -> LCParams:
    """
    Draws random starting values.

    Item tables come from a flat Dirichlet per class and item; the
    coefficients start at zero (equal class priors for every unit). The seed
    only drives this initialization.
    """
    rng = np.random.default_rng(seed)
    R = data.n_classes
    item_probs = tuple(rng.dirichlet(np.ones(c), size=R) for c in data.n_categories)
    beta = np.zeros((data.n_covariates, R))
    return LCParams(beta, item_probs)


# ---------- Likelihood ----------

def log_prior_probs(x: np.ndarray, beta: np.ndarray) -> np.ndarray:
    """Log class priors log P(class = r | x_i), shape (n, R)."""
    with np.errstate(invalid='ignore', over='ignore'):
        eta = x @ beta
    return _log_softmax(eta)

def prior_probs(x: np.ndarray, beta: np.ndarray) -> np.ndarray:
    """Multinomial-logit class priors P(class = r | x_i), shape (n, R)."""
    return np.exp(log_prior_probs(x, beta))

def class_conditional_loglik(y: np.ndarray, item_probs: Sequence[np.ndarray]) -> np.ndarray:
    """
    log P(y_i | class = r), shape (n, R).

    Log-probabilities are gathered per item rather than multiplied against a
    one-hot matrix, so a zero cell contributes -inf only to the units that
    actually hit it.
    """
    out = np.zeros((y.shape[0], item_probs[0].shape[0]))
    for j, probs in enumerate(item_probs):
        out += _log(probs)[:, y[:, j]].T
    return out

def log_joint(data: LatentClassData, params: LCParams) -> np.ndarray:
    """log P(class = r | x_i) + log P(y_i | class = r), shape (n, R)."""
    return (log_prior_probs(data.x, params.beta)
            + class_conditional_loglik(data.y, params.item_probs))

def unit_log_likelihood(data: LatentClassData, params: LCParams) -> np.ndarray:
    """Per-unit log mixture density, shape (n,). May hold -inf or NaN."""
    with np.errstate(divide='ignore', invalid='ignore'):
        return logsumexp(log_joint(data, params), axis=1)

def log_likelihood(data: LatentClassData, params: LCParams) -> float:
    """Total observed-data log-likelihood, without the checks of `e_step`."""
    return float(np.sum(unit_log_likelihood(data, params)))


# ---------- E-step ----------

def e_step(data: LatentClassData, params: LCParams) -> Tuple[np.ndarray, float]:
    """
    Posterior class responsibilities and the log-likelihood at `params`.

    Returns
    -------
    resp : ndarray of shape (n, R)
        W[i, r] proportional to prior_r(x_i) * f_r(y_i), rows summing to 1.
    loglik : float

    Raises
    ------
    UndefinedLikelihoodError
        If the parameters produce NaN log-densities.
    DegenerateResponsibilityError
        If some unit has zero probability under every class.
    """
    lj = log_joint(data, params)
    with np.errstate(divide='ignore', invalid='ignore'):
        ll_unit = logsumexp(lj, axis=1)
    if np.any(np.isnan(ll_unit)):
        raise UndefinedLikelihoodError(float('nan'))
    bad = np.flatnonzero(np.isneginf(ll_unit))
    if bad.size:
        raise DegenerateResponsibilityError(bad)
    loglik = float(np.sum(ll_unit))
    if not np.isfinite(loglik):
        raise UndefinedLikelihoodError(loglik)
    resp = np.exp(lj - ll_unit[:, np.newaxis])
    # Renormalize away the rounding left by exp()
    resp /= resp.sum(axis=1, keepdims=True)
    return resp, loglik


# ---------- Closed-form M-step for the measurement model ----------

def update_item_probs(y: np.ndarray, resp: np.ndarray, n_categories: Sequence[int],
                      previous: Optional[Sequence[np.ndarray]] = None) -> Tuple[np.ndarray, ...]:
    """
    Weighted-frequency update of the class-conditional response tables.

    This is the exact maximizer of the expected complete-data log-likelihood
    in the item tables. A class with no posterior mass keeps its previous
    rows (or uniform ones when no previous table is given).
    """
    out = []
    for j, C in enumerate(n_categories):
        cnt = _weighted_counts(y[:, j], C, resp)
        tot = cnt.sum(axis=1, keepdims=True)
        empty = tot[:, 0] <= 0.0
        probs = np.divide(cnt, tot, out=np.zeros_like(cnt), where=tot > 0)
        if empty.any():
            fill = previous[j][empty] if previous is not None else np.full((empty.sum(), C), 1.0 / C)
            probs[empty] = fill
        out.append(probs)
    return tuple(out)


# ---------- Information criteria ----------

def n_parameters(data: LatentClassData) -> int:
    """Free parameters: P*(R-1) coefficients plus R*(C_j-1) per item."""
    R = data.n_classes
    return data.n_covariates * (R - 1) + sum(R * (c - 1) for c in data.n_categories)

def bic(data: LatentClassData, loglik: float) -> float:
    return -2.0 * loglik + n_parameters(data) * np.log(data.n_units)

def aic(data: LatentClassData, loglik: float) -> float:
    return -2.0 * loglik + 2.0 * n_parameters(data)
