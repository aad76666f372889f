########################################################################################
##
##                                  TESTS FOR
##                          OptimizationProblem  (Batch)
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np

from inccal.calibration import (
    Batch,
    DesignVariable,
    OptimizationProblem,
    PriorErrorTerm,
)


# TESTS ================================================================================

class TestOptimizationProblem(unittest.TestCase):

    def setUp(self):
        self.calib  = DesignVariable("calib", [1.0, 0.0], group_id=0)
        self.pose   = DesignVariable("pose", [0.0, 0.0, 0.0], group_id=1)
        self.frozen = DesignVariable("frozen", [1.0], group_id=1, active=False)

    def test_batch_alias(self):
        self.assertIs(Batch, OptimizationProblem)

    def test_empty(self):
        batch = Batch()
        self.assertTrue(batch.is_empty)
        self.assertEqual(batch.num_design_variables, 0)
        self.assertEqual(batch.num_error_terms, 0)

    def test_error_terms_only_is_not_empty(self):
        batch = Batch(error_terms=[PriorErrorTerm(self.calib)])
        self.assertFalse(batch.is_empty)

    def test_design_variables_deduplicated(self):
        batch = Batch([self.calib, self.pose, self.calib])
        self.assertEqual(batch.num_design_variables, 2)
        self.assertEqual(batch.design_variables, (self.calib, self.pose))

    def test_equal_values_are_distinct_variables(self):
        twin = DesignVariable("calib", [1.0, 0.0], group_id=0)
        batch = Batch([self.calib, twin])
        self.assertEqual(batch.num_design_variables, 2)

    def test_chained_building(self):
        batch = Batch().add_design_variable(self.calib).add_error_term(
            PriorErrorTerm(self.calib)
        )
        self.assertIn(self.calib, batch)
        self.assertEqual(batch.num_error_terms, 1)

    def test_group_queries(self):
        batch = Batch([self.pose, self.calib, self.frozen])
        self.assertEqual(batch.group_ids, [1, 0])
        self.assertEqual(batch.design_variables_in_group(1), [self.pose, self.frozen])
        self.assertEqual(batch.group_dimension(1), 3)
        self.assertEqual(batch.group_dimension(0), 2)
        self.assertEqual(batch.group_dimension(9), 0)

    def test_type_checks(self):
        with self.assertRaises(TypeError):
            Batch().add_design_variable(np.zeros(2))
        with self.assertRaises(TypeError):
            Batch().add_error_term(lambda: 0.0)

    def test_repr(self):
        self.assertIn("design_variables=1", repr(Batch([self.calib])))
