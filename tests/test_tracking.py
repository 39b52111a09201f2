"""Tests for the convergence trace and the EM run loop."""

import numpy as np
import pytest

from lcr.exceptions import NonConvergenceWarning, UndefinedLikelihoodError
from lcr.model import LatentClassData, LCParams, init_params
from lcr.optimizers import NestedEM
from lcr.tracking import ConvergenceTrace, run_em


class FailingNestedEM(NestedEM):
    """Nested EM whose likelihood turns undefined after `fail_after` steps."""

    def __init__(self, fail_after=2):
        super().__init__()
        self.fail_after = fail_after
        self.returned = []

    def reset(self):
        super().reset()
        self.returned = []

    def step(self, params, data):
        if len(self.returned) >= self.fail_after:
            raise UndefinedLikelihoodError(float("nan"))
        new_params, ll = super().step(params, data)
        self.returned.append(new_params)
        return new_params, ll


# =============================================================================
# CONVERGENCE TRACE
# =============================================================================


class TestConvergenceTrace:

    def test_flags_decrease_beyond_tolerance(self):
        trace = ConvergenceTrace(10, decrease_tol=1e-8)
        assert trace.append(-10.0) is False
        assert trace.append(-9.0) is False
        assert trace.append(-9.5) is True
        assert trace.append(-9.5 - 1e-10) is False
        np.testing.assert_array_equal(trace.decreases, [False, False, True, False])

    def test_previous_value_overrides(self):
        trace = ConvergenceTrace(5)
        assert trace.append(-5.0, previous=-4.0) is True

    def test_capacity_is_enforced(self):
        trace = ConvergenceTrace(2)
        trace.append(-3.0)
        trace.append(-2.0)
        with pytest.raises(RuntimeError):
            trace.append(-1.0)
        assert len(trace) == 2

    def test_frozen_trace_rejects_appends(self):
        trace = ConvergenceTrace(5)
        trace.append(-1.0)
        trace.freeze()
        assert trace.frozen
        with pytest.raises(RuntimeError):
            trace.append(-0.5)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ConvergenceTrace(0)


# =============================================================================
# RUN LOOP
# =============================================================================


class TestRunEM:

    def test_iteration_cap_warns(self, three_class_data):
        with pytest.warns(NonConvergenceWarning):
            res = run_em(NestedEM(), three_class_data, seed=0, max_iter=3, tol=1e-12)
        assert res.status == "max_iter"
        assert res.iterations == 3
        assert not res.converged and not res.failed

    def test_padded_trace(self, three_class_data):
        with pytest.warns(NonConvergenceWarning):
            res = run_em(NestedEM(), three_class_data, seed=0, max_iter=3, tol=1e-12)
        ll, dec = res.padded_trace(5)
        assert np.all(np.isfinite(ll[:3]))
        assert np.all(np.isnan(ll[3:]))
        assert not dec.any()
        ll, _ = res.padded_trace(2)
        np.testing.assert_array_equal(ll, res.loglik[:2])

    def test_result_arrays_are_read_only(self, two_class_data):
        res = run_em(NestedEM(), two_class_data, seed=0, max_iter=200)
        with pytest.raises(ValueError):
            res.loglik[0] = 0.0

    def test_converged_run(self, two_class_data):
        res = run_em(NestedEM(), two_class_data, seed=1, max_iter=1000, tol=1e-6)
        assert res.converged
        assert abs(res.loglik[-1] - res.loglik[-2]) < 1e-6
        assert res.final_loglik == res.loglik[-1]
        assert res.algorithm == "nested"

    def test_callback_cancels(self, three_class_data):
        res = run_em(NestedEM(), three_class_data, seed=0, max_iter=100, tol=1e-12,
                     callback=lambda it, ll: it >= 3)
        assert res.status == "cancelled"
        assert res.iterations == 3

    def test_time_budget(self, three_class_data):
        res = run_em(NestedEM(), three_class_data, seed=0, max_iter=100, tol=1e-12,
                     max_time=0.0)
        assert res.status == "timeout"
        assert res.iterations == 1

    def test_failure_keeps_last_valid_params(self, two_class_data):
        algo = FailingNestedEM(fail_after=2)
        res = run_em(algo, two_class_data, seed=0, max_iter=50, tol=1e-12)
        assert res.status == "undefined"
        assert res.failed
        assert res.iterations == 2
        assert res.params is algo.returned[-1]
        assert res.final_loglik == res.loglik[-1]
        assert "undefined" in res.message

    def test_degenerate_initialization(self):
        data = LatentClassData([[0], [1], [1]], np.ones((3, 1)), 2, [2])
        init = LCParams(np.zeros((1, 2)), (np.array([[0.0, 1.0], [0.0, 1.0]]),))
        res = run_em(NestedEM(), data, seed=0, init=init)
        assert res.status == "degenerate"
        assert res.params is None
        assert res.iterations == 0
        assert np.isnan(res.final_loglik)

    def test_explicit_init_overrides_seed(self, two_class_data):
        init = init_params(two_class_data, 5)
        a = run_em(NestedEM(), two_class_data, seed=0, max_iter=20, tol=1e-3, init=init)
        b = run_em(NestedEM(), two_class_data, seed=99, max_iter=20, tol=1e-3, init=init)
        np.testing.assert_array_equal(a.loglik, b.loglik)

    def test_invalid_max_iter(self, two_class_data):
        with pytest.raises(ValueError):
            run_em(NestedEM(), two_class_data, max_iter=0)
