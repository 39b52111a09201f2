"""Tests for the latent class model: data container, likelihood and E-step."""

import numpy as np
import pandas as pd
import pytest

from lcr.exceptions import (
    DataValidationError,
    DegenerateResponsibilityError,
    UndefinedLikelihoodError,
)
from lcr.model import (
    LatentClassData,
    LCParams,
    aic,
    bic,
    class_conditional_loglik,
    design_columns,
    design_matrix,
    e_step,
    encode_responses,
    init_params,
    log_likelihood,
    n_parameters,
    prior_probs,
    update_item_probs,
)


# =============================================================================
# DATA CONTAINER
# =============================================================================


class TestLatentClassData:
    """Tests for input validation of the observation set."""

    def test_shapes(self, three_class_data):
        assert three_class_data.n_units == 400
        assert three_class_data.n_items == 6
        assert three_class_data.n_covariates == 2
        assert three_class_data.n_categories == (4,) * 6

    def test_arrays_are_read_only(self, two_class_data):
        with pytest.raises(ValueError):
            two_class_data.y[0, 0] = 1
        with pytest.raises(ValueError):
            two_class_data.x[0, 0] = 2.0

    def test_categories_inferred(self):
        data = LatentClassData([[0, 1], [2, 0]], np.ones((2, 1)), 2)
        assert data.n_categories == (3, 2)

    def test_row_mismatch(self):
        with pytest.raises(DataValidationError):
            LatentClassData(np.zeros((3, 2), dtype=int), np.ones((4, 1)), 2)

    def test_negative_codes_rejected(self):
        with pytest.raises(DataValidationError):
            LatentClassData([[0, -1], [1, 0]], np.ones((2, 1)), 2)

    def test_codes_outside_declared_levels(self):
        with pytest.raises(DataValidationError):
            LatentClassData([[0, 2], [1, 0]], np.ones((2, 1)), 2, n_categories=[2, 2])

    def test_single_class_rejected(self):
        with pytest.raises(DataValidationError):
            LatentClassData([[0], [1]], np.ones((2, 1)), 1)

    def test_nan_covariate_rejected(self):
        x = np.array([[1.0], [np.nan]])
        with pytest.raises(DataValidationError):
            LatentClassData([[0], [1]], x, 2)

    def test_validation_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            LatentClassData([[0.5], [1.0]], np.ones((2, 1)), 2)


# =============================================================================
# INPUT PREPARATION
# =============================================================================


class TestEncoding:
    """Tests for response encoding and the design matrix."""

    def test_encode_sorted_levels(self):
        df = pd.DataFrame({"a": ["yes", "no", "yes"], "b": [3, 1, 2]})
        codes, levels = encode_responses(df)
        assert levels == {"a": ["no", "yes"], "b": [1, 2, 3]}
        np.testing.assert_array_equal(codes, [[1, 2], [0, 0], [1, 1]])

    def test_encode_keeps_categorical_order(self):
        col = pd.Categorical(["low", "high", "mid"], categories=["low", "mid", "high"], ordered=True)
        codes, levels = encode_responses(pd.DataFrame({"c": col}))
        assert levels["c"] == ["low", "mid", "high"]
        np.testing.assert_array_equal(codes[:, 0], [0, 2, 1])

    def test_encode_rejects_missing(self):
        df = pd.DataFrame({"a": ["yes", None, "no"]})
        with pytest.raises(DataValidationError):
            encode_responses(df)

    def test_design_matrix_dummy_codes(self):
        cov = pd.DataFrame({"age": [1.0, 2.0, 3.0, 4.0],
                            "region": ["n", "s", "e", "n"]})
        X = design_matrix(cov)
        assert X.shape == (4, 4)
        np.testing.assert_array_equal(X[:, 0], 1.0)
        np.testing.assert_array_equal(X[:, 1], [1.0, 2.0, 3.0, 4.0])

    def test_design_matrix_aligned_to_fitted_columns(self):
        cov = pd.DataFrame({"age": [1.0, 2.0, 3.0, 4.0],
                            "region": ["n", "s", "e", "n"]})
        columns = design_columns(cov)
        assert columns == ["age", "region_n", "region_s"]
        # a subset holding one level only
        X = design_matrix(cov.iloc[[1]], columns=columns)
        np.testing.assert_array_equal(X, [[1.0, 2.0, 0.0, 1.0]])
        np.testing.assert_array_equal(design_matrix(cov, columns=columns), design_matrix(cov))
        assert design_columns(np.ones((3, 2))) is None

    def test_design_matrix_without_intercept(self):
        X = design_matrix(np.arange(5.0), add_intercept=False)
        assert X.shape == (5, 1)


# =============================================================================
# LIKELIHOOD AND E-STEP
# =============================================================================


class TestEStep:
    """Tests for the responsibilities and the log-likelihood."""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_responsibility_rows_sum_to_one(self, three_class_data, seed):
        params = init_params(three_class_data, seed)
        params = LCParams(np.random.default_rng(seed).normal(size=(2, 3)) * [0, 1, 1],
                          params.item_probs)
        resp, _ = e_step(three_class_data, params)
        assert resp.shape == (400, 3)
        assert np.all(resp >= 0)
        np.testing.assert_allclose(resp.sum(axis=1), 1.0, atol=1e-9)

    def test_loglik_matches_direct_sum(self, two_class_data):
        params = init_params(two_class_data, 4)
        _, ll = e_step(two_class_data, params)
        assert ll == pytest.approx(log_likelihood(two_class_data, params))
        assert ll < 0

    def test_zero_beta_gives_equal_priors(self, two_class_data):
        pi = prior_probs(two_class_data.x, np.zeros((2, 2)))
        np.testing.assert_allclose(pi, 0.5)

    def test_class_conditional_gathers_by_code(self):
        y = np.array([[0, 1], [1, 1]])
        tables = (np.array([[0.2, 0.8], [0.6, 0.4]]),
                  np.array([[0.5, 0.5], [0.1, 0.9]]))
        out = class_conditional_loglik(y, tables)
        np.testing.assert_allclose(out[0], np.log([0.2 * 0.5, 0.6 * 0.9]))
        np.testing.assert_allclose(out[1], np.log([0.8 * 0.5, 0.4 * 0.9]))

    def test_zero_cell_in_one_class(self):
        """A unit hitting a zero cell of one class gets zero weight there."""
        data = LatentClassData([[0], [1]], np.ones((2, 1)), 2, [2])
        params = LCParams(np.zeros((1, 2)), (np.array([[0.0, 1.0], [0.5, 0.5]]),))
        resp, ll = e_step(data, params)
        np.testing.assert_allclose(resp[0], [0.0, 1.0])
        assert np.isfinite(ll)

    def test_degenerate_unit_raises(self):
        data = LatentClassData([[0], [1], [1]], np.ones((3, 1)), 2, [2])
        params = LCParams(np.zeros((1, 2)), (np.array([[0.0, 1.0], [0.0, 1.0]]),))
        with pytest.raises(DegenerateResponsibilityError) as info:
            e_step(data, params)
        np.testing.assert_array_equal(info.value.units, [0])

    def test_nan_parameters_raise(self, two_class_data):
        params = init_params(two_class_data, 0)
        beta = params.beta.copy()
        beta[0, 1] = np.nan
        with pytest.raises(UndefinedLikelihoodError):
            e_step(two_class_data, LCParams(beta, params.item_probs))


# =============================================================================
# MEASUREMENT UPDATE AND INFORMATION CRITERIA
# =============================================================================


class TestItemUpdate:
    """Tests for the closed-form item-table update."""

    def test_tables_are_distributions(self, three_class_data):
        resp = np.random.default_rng(0).dirichlet(np.ones(3), size=three_class_data.n_units)
        tables = update_item_probs(three_class_data.y, resp, three_class_data.n_categories)
        for t in tables:
            assert t.shape == (3, 4)
            np.testing.assert_allclose(t.sum(axis=1), 1.0)

    def test_weighted_frequencies(self):
        y = np.array([[0], [1], [1]])
        resp = np.array([[1.0, 0.0], [0.5, 0.5], [0.0, 1.0]])
        (t,) = update_item_probs(y, resp, [2])
        np.testing.assert_allclose(t, [[1 / 1.5, 0.5 / 1.5], [0.0, 1.0]])

    def test_empty_class_keeps_previous(self):
        y = np.array([[0], [1]])
        resp = np.array([[1.0, 0.0], [1.0, 0.0]])
        previous = (np.array([[0.5, 0.5], [0.3, 0.7]]),)
        (t,) = update_item_probs(y, resp, [2], previous)
        np.testing.assert_allclose(t[1], [0.3, 0.7])
        (u,) = update_item_probs(y, resp, [2])
        np.testing.assert_allclose(u[1], [0.5, 0.5])


class TestInformationCriteria:

    def test_parameter_count(self, three_class_data):
        # 2 covariates x 2 free classes + 3 classes x 3 free levels x 6 items
        assert n_parameters(three_class_data) == 4 + 54

    def test_bic_aic(self, two_class_data):
        k = n_parameters(two_class_data)
        assert bic(two_class_data, -100.0) == pytest.approx(200.0 + k * np.log(300))
        assert aic(two_class_data, -100.0) == pytest.approx(200.0 + 2 * k)


class TestInit:

    def test_seeded_init_is_reproducible(self, three_class_data):
        a = init_params(three_class_data, 7)
        b = init_params(three_class_data, 7)
        for p, q in zip(a.item_probs, b.item_probs):
            np.testing.assert_array_equal(p, q)
        np.testing.assert_array_equal(a.beta, 0.0)
        assert a.is_finite()
