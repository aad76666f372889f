########################################################################################
##
##                                  TESTS FOR
##               rank_revealing_factor  and  RankRevealingFactorization
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np
import scipy.sparse as sci_sparse

from inccal.solvers import (
    RankRevealingFactorization,
    column_scaling,
    compute_qr_tolerance,
    compute_svd_tolerance,
    rank_revealing_factor,
)


# HELPERS ==============================================================================

def _schur(J, marg_start):
    """Marginal information F_mm - F_mo F_oo⁺ F_om from the normal equations."""
    F = J.T @ J
    F_oo = F[:marg_start, :marg_start]
    F_om = F[:marg_start, marg_start:]
    F_mm = F[marg_start:, marg_start:]
    return F_mm - F_om.T @ np.linalg.pinv(F_oo) @ F_om


def _random_jacobian(m=12, n=5, seed=3):
    rng = np.random.default_rng(seed)
    return rng.standard_normal((m, n)) * np.array([1.0, 10.0, 0.1, 5.0, 2.0])[:n]


# TESTS ================================================================================

class TestTolerances(unittest.TestCase):

    def test_qr_tolerance_formula(self):
        J = np.array([[3.0, 0.0], [4.0, 1.0], [0.0, 1.0]])
        expected = 20.0 * 5 * np.finfo(float).eps * 5.0
        self.assertAlmostEqual(compute_qr_tolerance(J), expected)

    def test_qr_tolerance_empty(self):
        self.assertEqual(compute_qr_tolerance(np.zeros((0, 3))), 0.0)

    def test_svd_tolerance_formula(self):
        self.assertAlmostEqual(compute_svd_tolerance([4.0, 1.0, 0.5], 1e-4), 1e-4 * 3 * 4.0)
        self.assertEqual(compute_svd_tolerance([], 1e-4), 0.0)

    def test_column_scaling_skips_zero_columns(self):
        J = np.array([[3.0, 0.0], [4.0, 0.0]])
        np.testing.assert_allclose(column_scaling(J, 1e-8), [0.2, 1.0])


class TestFullRank(unittest.TestCase):

    def setUp(self):
        self.J = _random_jacobian()
        self.fact = rank_revealing_factor(self.J, 3)

    def test_returns_factorization(self):
        self.assertIsInstance(self.fact, RankRevealingFactorization)
        self.assertEqual(self.fact.dimension, 2)

    def test_ranks(self):
        self.assertEqual(self.fact.rank, 2)
        self.assertEqual(self.fact.rank_deficiency, 0)
        self.assertEqual(self.fact.marginal_rank, 3)
        self.assertEqual(self.fact.marginal_rank_deficiency, 0)
        self.assertEqual(self.fact.total_rank, 5)

    def test_information_is_schur_complement(self):
        np.testing.assert_allclose(self.fact.information_matrix, _schur(self.J, 3), rtol=1e-9)

    def test_covariance_is_inverse(self):
        np.testing.assert_allclose(
            self.fact.covariance, np.linalg.inv(_schur(self.J, 3)), rtol=1e-8
        )

    def test_sv_log2_sum_is_log_det(self):
        _, logdet = np.linalg.slogdet(_schur(self.J, 3))
        self.assertAlmostEqual(self.fact.sv_log2_sum, logdet / np.log(2.0), places=8)

    def test_projected_covariance(self):
        s = self.fact.scaling
        cov_n = self.fact.covariance / np.outer(s, s)
        C = self.fact.column_space
        np.testing.assert_allclose(C.T @ cov_n @ C, self.fact.projected_covariance, rtol=1e-8)

    def test_without_column_normalization(self):
        fact = rank_revealing_factor(self.J, 3, column_normalize=False)
        np.testing.assert_array_equal(fact.scaling, np.ones(2))
        np.testing.assert_allclose(fact.information_matrix, _schur(self.J, 3), rtol=1e-9)
        self.assertEqual(fact.svd_tolerance, compute_svd_tolerance(fact.singular_values, 1e-4))

    def test_sparse_input_matches_dense(self):
        fact = rank_revealing_factor(sci_sparse.csr_matrix(self.J), 3)
        np.testing.assert_allclose(fact.information_matrix, self.fact.information_matrix)
        self.assertEqual(fact.rank, self.fact.rank)

    def test_memory_usage(self):
        self.assertGreater(self.fact.memory_usage, 0)


class TestRankDeficient(unittest.TestCase):

    def test_duplicated_marginal_column(self):
        J = _random_jacobian(n=4)
        J = np.column_stack([J, 3.0 * J[:, 3]])
        fact = rank_revealing_factor(J, 3)

        self.assertEqual(fact.rank, 1)
        self.assertEqual(fact.rank_deficiency, 1)
        N = fact.null_space
        C = fact.column_space
        self.assertEqual(N.shape, (2, 1))
        self.assertEqual(C.shape, (2, 1))
        np.testing.assert_allclose(N.T @ C, 0.0, atol=1e-12)
        np.testing.assert_allclose(N.T @ N, np.eye(1), atol=1e-12)

    def test_marginal_column_in_range_of_eliminated_block(self):
        J = _random_jacobian(n=4)
        J = np.column_stack([J, J[:, 0] - J[:, 1]])
        fact = rank_revealing_factor(J, 4)
        self.assertEqual(fact.rank, 0)
        self.assertEqual(fact.sv_log2_sum, 0.0)
        np.testing.assert_allclose(fact.covariance, np.zeros((1, 1)))

    def test_deficient_eliminated_block(self):
        J = _random_jacobian(n=4)
        J[:, 1] = 2.0 * J[:, 0]
        fact = rank_revealing_factor(J, 2)
        self.assertEqual(fact.marginal_rank, 1)
        self.assertEqual(fact.marginal_rank_deficiency, 1)
        np.testing.assert_allclose(fact.information_matrix, _schur(J, 2), rtol=1e-8, atol=1e-8)

    def test_zero_marginal_column(self):
        J = _random_jacobian(n=3)
        J[:, 2] = 0.0
        fact = rank_revealing_factor(J, 1)
        self.assertEqual(fact.rank, 1)
        np.testing.assert_allclose(np.abs(fact.null_space[:, 0]), [0.0, 1.0], atol=1e-12)

    def test_automatic_tolerance(self):
        J = _random_jacobian()
        fact = rank_revealing_factor(J, 3, tolerance=-1.0)
        self.assertAlmostEqual(fact.tolerance, compute_qr_tolerance(J * column_scaling(J, 1e-8)))
        self.assertEqual(fact.rank, 2)

    def test_large_tolerance_truncates(self):
        # marginal columns at ~17 degrees from each other
        J = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 1.0], [0.0, 0.0, 0.3]])
        self.assertEqual(rank_revealing_factor(J, 1).rank, 2)
        self.assertEqual(rank_revealing_factor(J, 1, tolerance=0.5).rank, 1)


class TestDegenerate(unittest.TestCase):

    def test_empty_marginal_block(self):
        fact = rank_revealing_factor(_random_jacobian(), 5)
        self.assertEqual(fact.rank, 0)
        self.assertEqual(fact.sv_log2_sum, 0.0)
        self.assertEqual(fact.covariance.shape, (0, 0))
        self.assertEqual(fact.null_space.shape, (0, 0))
        self.assertEqual(fact.projected_covariance.shape, (0, 0))

    def test_no_eliminated_block(self):
        J = _random_jacobian(n=2)
        fact = rank_revealing_factor(J, 0)
        self.assertEqual(fact.marginal_rank, 0)
        np.testing.assert_allclose(fact.information_matrix, J.T @ J, rtol=1e-10)

    def test_empty_jacobian(self):
        fact = rank_revealing_factor(np.zeros((0, 0)), 0)
        self.assertEqual(fact.rank, 0)
        self.assertEqual(fact.information_matrix.shape, (0, 0))

    def test_bad_marg_start(self):
        with self.assertRaises(ValueError):
            rank_revealing_factor(_random_jacobian(), 6)
        with self.assertRaises(ValueError):
            rank_revealing_factor(_random_jacobian(), -1)
