#!/usr/bin/env python3
"""
Example usage of pysba

This script refines a perturbed synthetic scene with the sparse
Levenberg-Marquardt bundle adjuster and compares it with the Ceres backend.
"""

import argparse
import logging

import numpy as np

from pysba import BundleAdjuster, BundleAdjustmentOptions, CeresBundleAdjuster, load_options
from pysba.synthetic import make_synthetic_scene, perturb_scene


def print_result(name, result, scene):
    point_error = np.linalg.norm(result.points - scene.points, axis=1)
    print(f"{name}:")
    print(f"  Termination: {result.termination_reason.name} after {result.iterations} iterations")
    print(f"  Mean reprojection error: {result.initial_mean_error:.4f} -> {result.final_mean_error:.4f} pixels")
    print(f"  Mean 3D point error: {np.mean(point_error):.6f}")


def basic_usage_example(options):
    """Refine a noisy scene whose first two views are known exactly."""
    print("=== Basic Usage Example ===")

    scene = make_synthetic_scene(num_views=8, num_points=100, visibility_probability=0.7, seed=0)
    points, poses, tracks = perturb_scene(scene, pixel_noise=0.5, fixed_view_ids=[0, 1], seed=1)
    print(f"Scene: {len(poses)} views, {points.shape[0]} points, "
          f"{sum(len(track) for track in tracks)} observations")

    options = options.with_overrides(fixed_view_ids=[0, 1])
    result = BundleAdjuster(options).run(points, poses, tracks, scene.camera_model)
    print_result("BundleAdjuster", result, scene)
    return scene, points, poses, tracks, options


def ceres_comparison_example(scene, points, poses, tracks, options):
    """Solve the same problem with Ceres."""
    print("\n=== Ceres Comparison Example ===")
    result = CeresBundleAdjuster(options).run(points, poses, tracks, scene.camera_model)
    print_result("CeresBundleAdjuster", result, scene)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="pysba example usage")
    parser.add_argument('--config', type=str, default=None, help='YAML file with bundle adjustment options')
    parser.add_argument('--verbose', action='store_true', help='log every iteration')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(name)s: %(message)s')

    options = load_options(args.config) if args.config else BundleAdjustmentOptions()
    options = options.with_overrides(verbose=args.verbose or options.verbose)

    print("pysba - Example Usage")
    print("=" * 50)

    scene, points, poses, tracks, options = basic_usage_example(options)
    ceres_comparison_example(scene, points, poses, tracks, options)
