# =========================================================================
# Performance aggregation over many runs.
#
# A pure reduction from {algorithm label: [RunResult, ...]} to a summary
# table. Runs are compared against a reference maximum log-likelihood
# (by default the best value any valid run reached): a run within `delta`
# of it reached the maximum, anything further away sits in a local mode.
# Failed runs are counted but never enter the quantiles.
# =========================================================================

from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .tracking import MAX_ITER, TIMEOUT, RunResult

MAXIMUM = 'maximum'
LOCAL = 'local'
FAILED = 'failed'

METRICS = [
    'n_runs',
    'n_failed',
    'n_nonconverged',
    'n_decreasing',
    'n_local_modes',
    'local_q1', 'local_q2', 'local_q3',
    'iter_q1', 'iter_q2', 'iter_q3',
    'mean_time',
]


def _valid(res: RunResult) -> bool:
    return not res.failed and np.isfinite(res.final_loglik)

def _quartiles(values: Sequence[float]) -> List[float]:
    if len(values) == 0:
        return [np.nan, np.nan, np.nan]
    return pd.Series(values, dtype=float).quantile([0.25, 0.5, 0.75]).tolist()


def reference_maximum(results: Mapping[str, Sequence[RunResult]]) -> float:
    """Best final log-likelihood over all valid runs of all algorithms."""
    finals = [r.final_loglik for runs in results.values() for r in runs if _valid(r)]
    return max(finals) if finals else np.nan


def classify_runs(runs: Sequence[RunResult], max_loglik: float, delta: float = 0.01) -> np.ndarray:
    """
    Labels each run 'maximum' (|final - max| <= delta), 'local' (further
    away) or 'failed'.
    """
    labels = []
    for r in runs:
        if not _valid(r):
            labels.append(FAILED)
        elif abs(r.final_loglik - max_loglik) <= delta:
            labels.append(MAXIMUM)
        else:
            labels.append(LOCAL)
    return np.array(labels, dtype=object)


def summarize_algorithm(runs: Sequence[RunResult], max_loglik: float,
                        delta: float = 0.01) -> Dict[str, float]:
    """Diagnostics of one algorithm's runs (one row of the summary)."""
    labels = classify_runs(runs, max_loglik, delta)
    gaps = [max_loglik - r.final_loglik for r, lab in zip(runs, labels) if lab == LOCAL]
    row = {
        'n_runs': len(runs),
        'n_failed': int(np.sum(labels == FAILED)),
        'n_nonconverged': sum(1 for r in runs if r.status in (MAX_ITER, TIMEOUT)),
        'n_decreasing': sum(1 for r in runs if r.any_decrease),
        'n_local_modes': len(gaps),
        'mean_time': float(np.mean([r.elapsed for r in runs])) if runs else np.nan,
    }
    row.update(zip(['local_q1', 'local_q2', 'local_q3'], _quartiles(gaps)))

    # Iteration counts are only comparable for the one-step algorithms
    if runs and all(r.iterative for r in runs):
        iters = [r.iterations for r, lab in zip(runs, labels) if lab == MAXIMUM]
        row.update(zip(['iter_q1', 'iter_q2', 'iter_q3'], _quartiles(iters)))
    else:
        row.update({'iter_q1': np.nan, 'iter_q2': np.nan, 'iter_q3': np.nan})
    return row


def summarize_runs(results: Mapping[str, Sequence[RunResult]],
                   max_loglik: Optional[float] = None, delta: float = 0.01) -> pd.DataFrame:
    """
    One row per algorithm with the diagnostics in `METRICS`.

    Parameters
    ----------
    results : mapping of algorithm label to its RunResults
    max_loglik : float, optional
        Reference maximum; defaults to `reference_maximum(results)`.
    delta : float, default=0.01
        Tolerance for having reached the maximum.
    """
    if max_loglik is None:
        max_loglik = reference_maximum(results)
    rows = {label: summarize_algorithm(runs, max_loglik, delta) for label, runs in results.items()}
    df = pd.DataFrame.from_dict(rows, orient='index', columns=METRICS)
    df.index.name = 'algorithm'
    df.attrs['max_loglik'] = max_loglik
    df.attrs['delta'] = delta
    return df


def performance_table(results: Mapping[str, Sequence[RunResult]],
                      max_loglik: Optional[float] = None, delta: float = 0.01) -> pd.DataFrame:
    """Metric x algorithm view of `summarize_runs`; NaN marks 'not applicable'."""
    summary = summarize_runs(results, max_loglik, delta)
    table = summary.T
    table.index.name = 'metric'
    table.attrs = dict(summary.attrs)
    return table


def format_table(table: pd.DataFrame, na_rep: str = 'n/a', precision: int = 2) -> str:
    """Renders a performance table with explicit missing-value markers."""
    def fmt(v):
        if pd.isna(v):
            return na_rep
        if float(v).is_integer():
            return f"{int(v)}"
        return f"{v:.{precision}f}"
    return table.astype(object).apply(lambda col: col.map(fmt)).to_string()


def runs_frame(results: Mapping[str, Sequence[RunResult]]) -> pd.DataFrame:
    """Long frame with one row per run."""
    records = []
    for label, runs in results.items():
        for r in runs:
            records.append({
                'algorithm': label,
                'seed': r.seed,
                'status': r.status,
                'iterations': r.iterations,
                'final_loglik': r.final_loglik,
                'n_decreases': r.n_decreases,
                'time': r.elapsed,
            })
    return pd.DataFrame(records)
