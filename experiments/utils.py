# =========================================================================
# Utilities for the optimizer benchmark
# - simulation of latent class data with covariates
# - scenario generators
# - class-recovery evaluation
# =========================================================================

from typing import Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import adjusted_rand_score, normalized_mutual_info_score

from lcr.model import LatentClassData, LCParams, prior_probs


# =========================================================================
# ====== Core helpers ======================================================
# =========================================================================

def _evaluate(z_true: np.ndarray, z_pred: np.ndarray) -> Tuple[float, float]:
    """
    Return (ARI, NMI) between true and recovered classes (label permutation free).
    """
    return (
        adjusted_rand_score(z_true, z_pred),
        normalized_mutual_info_score(z_true, z_pred),
    )


def _peaked_tables(rng: np.random.Generator, n_classes: int, n_levels: int,
                   n_items: int, peak: float) -> Tuple[np.ndarray, ...]:
    """
    Class-conditional tables where class r favours level (r + j) mod C on item j.
    """
    tables = []
    for j in range(n_items):
        t = np.zeros((n_classes, n_levels))
        for r in range(n_classes):
            alpha = np.ones(n_levels)
            alpha[(r + j) % n_levels] += peak
            t[r] = rng.dirichlet(alpha)
        tables.append(t)
    return tuple(tables)


def simulate(x: np.ndarray, params: LCParams, seed: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Draws classes from the multinomial-logit prior and responses from the
    class-conditional tables.

    Returns
    -------
    y : ndarray of shape (n, J), integer codes
    z : ndarray of shape (n,), true classes
    """
    rng = np.random.default_rng(seed)
    pi = prior_probs(x, params.beta)
    n = x.shape[0]
    u = rng.random(n)[:, np.newaxis]
    z = np.minimum((u > np.cumsum(pi, axis=1)).sum(axis=1), pi.shape[1] - 1)

    y = np.zeros((n, len(params.item_probs)), dtype=int)
    for j, table in enumerate(params.item_probs):
        cum = np.cumsum(table[z], axis=1)
        u = rng.random(n)[:, np.newaxis]
        y[:, j] = np.minimum((u > cum).sum(axis=1), table.shape[1] - 1)
    return y, z


# =========================================================================
# ====== Scenario generators ===============================================
# =========================================================================

def make_scenario_election(n=1785, seed=0):
    """
    R=3 classes, J=12 four-level items, one ordinal covariate with 7 levels
    (party-identification-like) plus intercept.
    """
    rng = np.random.default_rng(seed)
    K, J, C = 3, 12, 4
    party = rng.integers(1, 8, size=n).astype(float)
    x = np.column_stack([np.ones(n), party])
    beta = np.array([[0.0, -1.2, 2.0],
                     [0.0, 0.35, -0.45]])
    truth = LCParams(beta, _peaked_tables(rng, K, C, J, peak=4.0))
    y, z = simulate(x, truth, seed=seed + 1)
    return LatentClassData(y, x, K, [C] * J), z, truth


def make_scenario_binary(n=1000, seed=1):
    """R=2 classes, J=8 binary items, two continuous covariates."""
    rng = np.random.default_rng(seed)
    K, J = 2, 8
    cov = rng.normal(0, 1, size=(n, 2))
    x = np.column_stack([np.ones(n), cov])
    beta = np.array([[0.0, 0.3],
                     [0.0, 1.0],
                     [0.0, -0.8]])
    truth = LCParams(beta, _peaked_tables(rng, K, 2, J, peak=6.0))
    y, z = simulate(x, truth, seed=seed + 1)
    return LatentClassData(y, x, K, [2] * J), z, truth


def make_scenario_weaksep(n=1200, seed=2):
    """R=3 classes with weakly separated item tables; many local modes."""
    rng = np.random.default_rng(seed)
    K, J, C = 3, 6, 3
    cov = rng.normal(0, 1, size=n)
    x = np.column_stack([np.ones(n), cov])
    beta = np.array([[0.0, 0.5, -0.5],
                     [0.0, 1.5, -1.0]])
    truth = LCParams(beta, _peaked_tables(rng, K, C, J, peak=1.0))
    y, z = simulate(x, truth, seed=seed + 1)
    return LatentClassData(y, x, K, [C] * J), z, truth


def make_scenario_strong_covariate(n=1500, seed=3):
    """
    R=3 classes, J=6 three-level items of moderate separation, and a wide
    covariate with large logit effects, so class priors are close to 0 or 1
    for many units while the posteriors stay uncertain.
    """
    rng = np.random.default_rng(seed)
    K, J, C = 3, 6, 3
    cov = rng.normal(0, 1.5, size=n)
    x = np.column_stack([np.ones(n), cov])
    beta = np.array([[0.0, 0.5, -0.5],
                     [0.0, 4.0, -4.0]])
    truth = LCParams(beta, _peaked_tables(rng, K, C, J, peak=1.5))
    y, z = simulate(x, truth, seed=seed + 1)
    return LatentClassData(y, x, K, [C] * J), z, truth


# Public registry (used by run_benchmark.py)
SCENARIOS = [
    ("election", make_scenario_election),
    ("binary", make_scenario_binary),
    ("weak_separation", make_scenario_weaksep),
    ("strong_covariate", make_scenario_strong_covariate),
]


def scenario_names() -> Sequence[str]:
    return [name for name, _ in SCENARIOS]
