########################################################################################
##
##                                  TESTS FOR
##                 ErrorTerm, ResidualErrorTerm and PriorErrorTerm
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np

from inccal.calibration import (
    DesignVariable,
    ErrorTerm,
    PriorErrorTerm,
    ResidualErrorTerm,
)


# TESTS ================================================================================

class TestResidualErrorTerm(unittest.TestCase):

    def setUp(self):
        self.a = DesignVariable("a", [2.0, -1.0])
        self.b = DesignVariable("b", [0.5])

        # e = [a0 * b0 - 1, a1 ** 2 + b0]
        self.func = lambda a, b: np.array([a[0] * b[0] - 1.0, a[1] ** 2 + b[0]])
        self.jac  = lambda a, b: [
            np.array([[b[0], 0.0], [0.0, 2.0 * a[1]]]),
            np.array([[a[0]], [1.0]]),
        ]

    def test_error(self):
        term = ResidualErrorTerm(self.func, [self.a, self.b])
        np.testing.assert_allclose(term.error(), [0.0, 1.5])

    def test_finite_difference_matches_analytic(self):
        fd = ResidualErrorTerm(self.func, [self.a, self.b])
        an = ResidualErrorTerm(self.func, [self.a, self.b], jacobian=self.jac)
        for J_fd, J_an in zip(fd.jacobians(), an.jacobians()):
            np.testing.assert_allclose(J_fd, J_an, rtol=1e-6, atol=1e-6)

    def test_finite_difference_leaves_values_untouched(self):
        before = [self.a.value.copy(), self.b.value.copy()]
        ResidualErrorTerm(self.func, [self.a, self.b]).jacobians()
        np.testing.assert_array_equal(self.a.value, before[0])
        np.testing.assert_array_equal(self.b.value, before[1])

    def test_scalar_covariance_whitening(self):
        term = ResidualErrorTerm(self.func, [self.a, self.b], covariance=4.0)
        np.testing.assert_allclose(term.weighted_error(), term.error() / 2.0)
        self.assertAlmostEqual(term.squared_error(), 1.5 ** 2 / 4.0)

    def test_full_covariance_whitening(self):
        cov  = np.array([[2.0, 0.5], [0.5, 1.0]])
        term = ResidualErrorTerm(self.func, [self.a, self.b], covariance=cov)
        U = term.sqrt_information
        np.testing.assert_allclose(U.T @ U, np.linalg.inv(cov), rtol=1e-12)
        e = term.error()
        self.assertAlmostEqual(term.squared_error(), e @ np.linalg.inv(cov) @ e)

    def test_weighted_jacobians(self):
        term = ResidualErrorTerm(
            self.func, [self.a, self.b], covariance=[4.0, 1.0], jacobian=self.jac
        )
        J_a, J_b = term.weighted_jacobians()
        np.testing.assert_allclose(J_a, [[0.25, 0.0], [0.0, -2.0]])
        np.testing.assert_allclose(J_b, [[1.0], [1.0]])

    def test_covariance_size_mismatch(self):
        term = ResidualErrorTerm(self.func, [self.a, self.b], covariance=np.eye(3))
        with self.assertRaises(ValueError):
            term.weighted_error()

    def test_jacobian_block_count_checked(self):
        term = ResidualErrorTerm(
            self.func, [self.a, self.b], jacobian=lambda a, b: [np.zeros((2, 2))]
        )
        with self.assertRaises(ValueError):
            term.jacobians()

    def test_requires_design_variables(self):
        with self.assertRaises(TypeError):
            ResidualErrorTerm(self.func, [np.zeros(2)])

    def test_repr_lists_variables(self):
        term = ResidualErrorTerm(self.func, [self.a, self.b], name="meas")
        self.assertIn("a, b", repr(term))
        self.assertIn("meas", repr(term))


class TestPriorErrorTerm(unittest.TestCase):

    def test_default_mean_is_current_value(self):
        dv = DesignVariable("k", [1.0, 2.0])
        prior = PriorErrorTerm(dv)
        np.testing.assert_array_equal(prior.error(), [0.0, 0.0])
        dv.update([0.5, 0.0])
        np.testing.assert_allclose(prior.error(), [0.5, 0.0])

    def test_jacobian_is_identity(self):
        dv = DesignVariable("k", [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(PriorErrorTerm(dv).jacobians()[0], np.eye(3))

    def test_mean_size_checked(self):
        with self.assertRaises(ValueError):
            PriorErrorTerm(DesignVariable("k", [1.0, 2.0]), mean=[0.0])


class TestErrorTermBase(unittest.TestCase):

    def test_error_must_be_implemented(self):
        term = ErrorTerm([DesignVariable("k", [1.0])])
        with self.assertRaises(NotImplementedError):
            term.error()
