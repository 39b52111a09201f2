"""
lcr: latent class regression with interchangeable EM optimizers.

Fits latent class models whose class-membership probabilities depend on
covariates through a multinomial logit, with several maximization
strategies (damped Newton-Raphson one-step EM, Polya-Gamma nested EM, a
hybrid of the two, classical and bias-corrected three-step estimation) and
tools to run them from many seeds and compare their convergence behaviour.
"""

__version__ = "0.1.0"

from .exceptions import (
    DataValidationError,
    DegenerateResponsibilityError,
    LCRError,
    NonConvergenceWarning,
    SingularFitError,
    UndefinedLikelihoodError,
)
from .model import (
    LatentClassData,
    LCParams,
    design_columns,
    design_matrix,
    e_step,
    encode_responses,
    init_params,
    log_likelihood,
    prior_probs,
)
from .optimizers import EMAlgorithm, HybridEM, HybridState, NestedEM, NewtonRaphsonEM
from .three_step import ThreeStep
from .tracking import ConvergenceTrace, RunResult, run_em
from .runner import config_label, make_algorithm, run_many, run_single
from .performance import format_table, performance_table, summarize_runs
from .estimator import LatentClassRegression

__all__ = [
    "__version__",
    # Errors
    "LCRError",
    "DataValidationError",
    "DegenerateResponsibilityError",
    "UndefinedLikelihoodError",
    "SingularFitError",
    "NonConvergenceWarning",
    # Model
    "LatentClassData",
    "LCParams",
    "design_columns",
    "design_matrix",
    "encode_responses",
    "init_params",
    "prior_probs",
    "e_step",
    "log_likelihood",
    # Algorithms
    "EMAlgorithm",
    "NewtonRaphsonEM",
    "NestedEM",
    "HybridEM",
    "HybridState",
    "ThreeStep",
    # Runs and diagnostics
    "ConvergenceTrace",
    "RunResult",
    "run_em",
    "config_label",
    "make_algorithm",
    "run_single",
    "run_many",
    "summarize_runs",
    "performance_table",
    "format_table",
    "LatentClassRegression",
]
