# =========================================================================
# Multi-run harness.
#
# Each (algorithm, seed) run is an independent unit of work: a pure
# function of (configuration, seed, data) returning a RunResult. `run_many`
# fans the units out with joblib and groups the results per algorithm
# label, ready for `lcr.performance.summarize_runs`.
# =========================================================================

from functools import partial
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from joblib import Parallel, delayed

from .model import LatentClassData
from .optimizers import HybridEM, NestedEM, NewtonRaphsonEM
from .three_step import ThreeStep
from .tracking import RunResult

# --- Algorithm Registry ---
ALGORITHMS = {
    'newton': NewtonRaphsonEM,
    'nested': NestedEM,
    'hybrid': HybridEM,
    'three_step': partial(ThreeStep, corrected=False),
    'three_step_corrected': partial(ThreeStep, corrected=True),
}

AlgorithmConfig = Union[str, Tuple[str, Dict]]


def make_algorithm(name: str, **params):
    """Instantiates a registered algorithm with its keyword configuration."""
    try:
        factory = ALGORITHMS[name]
    except KeyError:
        raise ValueError(f"unknown algorithm {name!r}; expected one of {sorted(ALGORITHMS)}") from None
    return factory(**params)


def _split_config(config: AlgorithmConfig) -> Tuple[str, Dict]:
    if isinstance(config, str):
        return config, {}
    name, params = config
    return name, dict(params or {})


def config_label(config: AlgorithmConfig) -> str:
    """
    Default label of a configuration: the registered name, followed by its
    keywords when there are any, e.g. ``newton(damping=0.25)``.
    """
    name, params = _split_config(config)
    if not params:
        return name
    args = ", ".join(f"{k}={v!r}" for k, v in sorted(params.items()))
    return f"{name}({args})"


def run_single(config: AlgorithmConfig, data: LatentClassData, seed: Optional[int],
               label: Optional[str] = None, **run_kwargs) -> RunResult:
    """
    Runs one algorithm configuration from one seed.

    Parameters
    ----------
    config : str or (str, dict)
        Registered algorithm name, optionally with constructor keywords,
        e.g. ``('newton', {'damping': 0.5})``.
    data : LatentClassData
    seed : int
    label : str, optional
        Name stored on the RunResult.
    **run_kwargs
        `max_iter`, `tol`, `decrease_tol`, `max_time`, `callback`, `verbose`.
    """
    name, params = _split_config(config)
    algorithm = make_algorithm(name, **params)
    return algorithm.run(data, seed=seed, label=label, **run_kwargs)


def run_many(configs: Union[Mapping[str, AlgorithmConfig], Iterable[AlgorithmConfig]],
             data: LatentClassData, seeds: Iterable[int], n_jobs: int = 1,
             verbose: int = 0, **run_kwargs) -> Dict[str, List[RunResult]]:
    """
    Runs every algorithm configuration from every seed.

    Parameters
    ----------
    configs : mapping of label to config, or iterable of configs
        Without labels, `config_label` names each entry; repeating the same
        configuration raises ValueError.
    data : LatentClassData
        Shared read-only input.
    seeds : iterable of int
    n_jobs : int, default=1
        Number of joblib workers; -1 uses all processors.
    verbose : int, default=0
        Prints one line per finished run when set.

    Returns
    -------
    dict mapping label to the list of RunResults, in seed order.
    """
    if not isinstance(configs, Mapping):
        labelled = {}
        for config in configs:
            label = config_label(config)
            if label in labelled:
                raise ValueError(f"configuration {label!r} given more than once")
            labelled[label] = config
        configs = labelled
    seeds = list(seeds)
    units = [(label, config, seed) for label, config in configs.items() for seed in seeds]

    results = Parallel(n_jobs=n_jobs)(
        delayed(run_single)(config, data, seed, label=label, **run_kwargs)
        for label, config, seed in units
    )

    out = {label: [] for label in configs}
    for (label, _, _), res in zip(units, results):
        out[label].append(res)
        if verbose:
            print(f"[{res.algorithm}] seed={res.seed} status={res.status} "
                  f"iter={res.iterations} loglik={res.final_loglik:.3f} time={res.elapsed:.2f}s")
    return out
