#!/usr/bin/env python3
"""
Tests for BundleAdjustmentOptions and its YAML round trip.
"""

import math
import os
import tempfile
import unittest

from pysba.config import BundleAdjustmentOptions, load_options, save_options


class TestBundleAdjustmentOptions(unittest.TestCase):
    def test_defaults(self):
        options = BundleAdjustmentOptions()
        self.assertEqual(options.max_iterations, 50)
        self.assertEqual(options.absolute_tolerance, 1.0)
        self.assertEqual(options.relative_tolerance, 1e-5)
        self.assertEqual(options.fixed_view_ids, frozenset())
        self.assertFalse(options.points_are_undistorted)
        self.assertFalse(options.verbose)
        self.assertFalse(options.fix_first_pose)
        self.assertIsNone(options.max_condition_number)

    def test_fixed_view_ids_coercion(self):
        self.assertEqual(BundleAdjustmentOptions(fixed_view_ids=[1, 2, 1]).fixed_view_ids, frozenset([1, 2]))
        self.assertEqual(BundleAdjustmentOptions(fixed_view_ids=3).fixed_view_ids, frozenset([3]))
        self.assertEqual(BundleAdjustmentOptions(fixed_view_ids='left').fixed_view_ids, frozenset(['left']))
        self.assertEqual(BundleAdjustmentOptions(fixed_view_ids=None).fixed_view_ids, frozenset())

    def test_invalid_values(self):
        invalid = [
            {'max_iterations': -1},
            {'max_iterations': 2.5},
            {'max_iterations': True},
            {'absolute_tolerance': -1.0},
            {'relative_tolerance': math.nan},
            {'gradient_tolerance': math.inf},
            {'step_tolerance': -1e-3},
            {'initial_damping_scale': 0.0},
            {'max_condition_number': 0.0},
        ]
        for kwargs in invalid:
            with self.assertRaises(ValueError):
                BundleAdjustmentOptions(**kwargs)

    def test_from_dict_camel_case(self):
        options = BundleAdjustmentOptions.from_dict({
            'MaxIterations': 20,
            'AbsoluteTolerance': 0.5,
            'RelativeTolerance': 1e-8,
            'FixedViewIDs': [0, 1],
            'PointsUndistorted': True,
            'Verbose': True,
        })
        self.assertEqual(options.max_iterations, 20)
        self.assertEqual(options.absolute_tolerance, 0.5)
        self.assertEqual(options.relative_tolerance, 1e-8)
        self.assertEqual(options.fixed_view_ids, frozenset([0, 1]))
        self.assertTrue(options.points_are_undistorted)
        self.assertTrue(options.verbose)

    def test_from_dict_rejects_unknown_and_duplicate_keys(self):
        with self.assertRaises(ValueError):
            BundleAdjustmentOptions.from_dict({'MaxIter': 3})
        with self.assertRaises(ValueError):
            BundleAdjustmentOptions.from_dict({'MaxIterations': 3, 'max_iterations': 4})

    def test_from_dict_empty(self):
        self.assertEqual(BundleAdjustmentOptions.from_dict(None), BundleAdjustmentOptions())

    def test_with_overrides(self):
        options = BundleAdjustmentOptions(fixed_view_ids=[2])
        self.assertIs(options.with_overrides(), options)

        changed = options.with_overrides(MaxIterations=5, verbose=True)
        self.assertEqual(changed.max_iterations, 5)
        self.assertTrue(changed.verbose)
        self.assertEqual(changed.fixed_view_ids, frozenset([2]))
        self.assertEqual(options.max_iterations, 50)

    def test_to_dict(self):
        values = BundleAdjustmentOptions(fixed_view_ids=[3, 1]).to_dict()
        self.assertEqual(values['fixed_view_ids'], [1, 3])
        self.assertEqual(values['max_iterations'], 50)


class TestOptionsFile(unittest.TestCase):
    def test_save_and_load(self):
        options = BundleAdjustmentOptions(max_iterations=12, fixed_view_ids=[0, 4], max_condition_number=1e12)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'configs', 'ba.yaml')
            with self.assertLogs('pysba.config', level='DEBUG') as logs:
                save_options(options, path)
                self.assertTrue(os.path.exists(path))
                self.assertEqual(load_options(path), options)
        self.assertIn(f'Saved bundle adjustment options to {path}', logs.output[0])
        self.assertIn(f'Loaded bundle adjustment options from {path}', logs.output[1])

    def test_load_camel_case_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'ba.yaml')
            with open(path, 'w') as f:
                f.write("MaxIterations: 7\nFixedViewIDs: [1]\n")
            options = load_options(path)
        self.assertEqual(options.max_iterations, 7)
        self.assertEqual(options.fixed_view_ids, frozenset([1]))

    def test_empty_file_gives_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'empty.yaml')
            open(path, 'w').close()
            self.assertEqual(load_options(path), BundleAdjustmentOptions())

    def test_non_mapping_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'list.yaml')
            with open(path, 'w') as f:
                f.write("- 1\n- 2\n")
            with self.assertRaises(ValueError):
                load_options(path)


if __name__ == '__main__':
    unittest.main()
