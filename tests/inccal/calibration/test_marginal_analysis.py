########################################################################################
##
##                                  TESTS FOR
##                 MarginalAnalysis  (statistics, display and plot)
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np

from inccal.calibration import MarginalAnalysis
from inccal.solvers import rank_revealing_factor


# HELPERS ==============================================================================

def _analysis(J, marg_start=0, names=None, values=None):
    fact = rank_revealing_factor(np.asarray(J, dtype=float), marg_start)
    n = fact.dimension
    names  = names if names is not None else [f"p{i}" for i in range(n)]
    values = values if values is not None else np.ones(n)
    return MarginalAnalysis(fact, names, values)


def _deficient_analysis():
    """bias never excited: second column of J is zero."""
    J = np.array([[2.0, 0.0], [0.0, 0.0], [1.0, 0.0]])
    return _analysis(J, names=["scale", "bias"], values=np.array([2.0, 0.5]))


# TESTS ================================================================================

class TestMarginalAnalysisStatistics(unittest.TestCase):

    def test_std_errors_from_covariance(self):
        r = _analysis(np.diag([2.0, 10.0]))
        np.testing.assert_allclose(r.std_errors, [0.5, 0.1])
        np.testing.assert_array_equal(r.covariance, r.factorization.covariance)

    def test_correlation_unit_diagonal(self):
        r = _analysis([[1.0, 0.5], [0.0, 1.0], [1.0, 1.0]])
        np.testing.assert_allclose(np.diag(r.correlation), np.ones(2), atol=1e-12)

    def test_correlation_sign(self):
        # both columns respond the same way: estimates trade off
        r = _analysis([[1.0, 1.0], [1.0, 0.8]])
        self.assertLess(r.correlation[0, 1], 0.0)

    def test_condition_number_from_singular_values(self):
        r = _analysis([[1.0, 0.5], [0.0, 1.0], [1.0, 1.0]])
        sv = r.factorization.singular_values
        self.assertAlmostEqual(r.condition_number, (sv[0] / sv[1]) ** 2)
        self.assertAlmostEqual(_analysis(np.eye(3)).condition_number, 1.0, places=10)

    def test_eliminated_columns_are_not_reported(self):
        J = np.array([[1.0, 2.0], [0.0, 1.0], [1.0, 0.0]])
        r = _analysis(J, marg_start=1, names=["k"], values=np.array([1.0]))
        self.assertEqual(r.dimension, 1)
        self.assertEqual(r.rank, 1)
        self.assertAlmostEqual(r.condition_number, 1.0)

    def test_full_rank_all_observable(self):
        r = _analysis(np.eye(2))
        self.assertEqual(r.rank, 2)
        self.assertTrue(np.all(r.observable))
        self.assertEqual(r.null_directions(), [])

    def test_rank_deficient(self):
        r = _deficient_analysis()
        self.assertEqual(r.rank, 1)
        np.testing.assert_array_equal(r.observable, [True, False])
        self.assertTrue(np.isinf(r.condition_number))
        self.assertEqual(r.std_errors[1], 0.0)

        (direction,) = r.null_directions()
        self.assertEqual([name for name, _ in direction], ["bias"])
        self.assertAlmostEqual(abs(direction[0][1]), 1.0)

    def test_name_count_checked(self):
        with self.assertRaises(ValueError):
            _analysis(np.eye(2), names=["only"])


class TestMarginalAnalysisDisplay(unittest.TestCase):

    def test_display_runs(self):
        _analysis(np.eye(2), names=["scale", "bias"]).display()

    def test_display_rank_deficient(self):
        _deficient_analysis().display()


class TestMarginalAnalysisPlot(unittest.TestCase):

    def test_plot_returns_fig_and_axes(self):
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
        import matplotlib.figure

        fig, ax = _analysis(np.diag([30.0, 1.0])).plot()

        self.assertIsInstance(fig, matplotlib.figure.Figure)
        self.assertEqual(len(ax.patches), 2)
        plt.close("all")

    def test_plot_rank_deficient(self):
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        _deficient_analysis().plot()
        plt.close("all")
