"""Pytest fixtures for the latent class regression tests."""

import numpy as np
import pandas as pd
import pytest

from lcr.model import LatentClassData, LCParams
from experiments.utils import _peaked_tables, simulate


@pytest.fixture(scope="session")
def two_class_data() -> LatentClassData:
    """
    300 units, 2 well-separated classes, 6 three-level items and one
    continuous covariate plus intercept.
    """
    rng = np.random.default_rng(11)
    n = 300
    x = np.column_stack([np.ones(n), rng.normal(size=n)])
    beta = np.array([[0.0, 0.4],
                     [0.0, 1.2]])
    truth = LCParams(beta, _peaked_tables(rng, 2, 3, 6, peak=6.0))
    y, _ = simulate(x, truth, seed=12)
    return LatentClassData(y, x, 2, [3] * 6)


@pytest.fixture(scope="session")
def three_class_data() -> LatentClassData:
    """400 units, 3 classes, 6 four-level items, one covariate plus intercept."""
    rng = np.random.default_rng(21)
    n = 400
    x = np.column_stack([np.ones(n), rng.normal(size=n)])
    beta = np.array([[0.0, -0.5, 0.5],
                     [0.0, 1.0, -1.0]])
    truth = LCParams(beta, _peaked_tables(rng, 3, 4, 6, peak=5.0))
    y, _ = simulate(x, truth, seed=22)
    return LatentClassData(y, x, 3, [4] * 6)


@pytest.fixture
def random_resp() -> np.ndarray:
    """Responsibility matrix of 50 units over 3 classes (rows on the simplex)."""
    rng = np.random.default_rng(5)
    return rng.dirichlet(np.ones(3), size=50)


@pytest.fixture
def survey_frame():
    """
    Small survey-like data: string responses and mixed covariates.

    Class membership is driven by `age`; answers are driven by the class.
    """
    rng = np.random.default_rng(3)
    n = 240
    age = rng.normal(0, 1, size=n)
    region = rng.choice(["north", "south", "east"], size=n)
    z = (rng.random(n) < 1 / (1 + np.exp(-1.5 * age))).astype(int)
    answers = {}
    for j in range(5):
        agree = np.where(z == 1, 0.85, 0.15)
        answers[f"q{j + 1}"] = np.where(rng.random(n) < agree, "agree", "disagree")
    responses = pd.DataFrame(answers)
    covariates = pd.DataFrame({"age": age, "region": region})
    return responses, covariates
