#!/usr/bin/env python3
"""
Compute the IMU-camera calibration from a camera reconstruction and IMU telemetry.

The reconstruction holds the camera poses, corner observations, landmarks
(or the ChArUco board they come from) and intrinsics from the intrinsic
calibration; the telemetry holds the raw gyroscope and accelerometer streams.

Usage:
    python3 scripts/calibrate_imu_camera.py \
        --reconstruction /path/to/reconstruction.yaml \
        --telemetry /path/to/telemetry.yaml \
        --spline-weighting /path/to/spline_weighting.yaml \
        --rough-alignment /path/to/rough_alignment.yaml \
        --output /path/to/imu_camera_calibration.yaml
"""

import argparse
import logging
import os
import sys

import numpy as np

# Add package to path for standalone execution
try:
    from imu_camera_calibration.calibration_solver import ImuCameraCalibrationSolver
    from imu_camera_calibration.config import (
        load_calibration_options, load_imu_bias, load_reconstruction,
        load_rough_alignment, load_spline_weighting, load_telemetry
    )
    from imu_camera_calibration.initializer import InitializationError
    from imu_camera_calibration.utils import matrix_to_transform, save_calibration_yaml
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from imu_camera_calibration.calibration_solver import ImuCameraCalibrationSolver
    from imu_camera_calibration.config import (
        load_calibration_options, load_imu_bias, load_reconstruction,
        load_rough_alignment, load_spline_weighting, load_telemetry
    )
    from imu_camera_calibration.initializer import InitializationError
    from imu_camera_calibration.utils import matrix_to_transform, save_calibration_yaml


def main():
    parser = argparse.ArgumentParser(
        description='Calibrate IMU-camera extrinsics, time offset, biases and gravity'
    )

    parser.add_argument('--reconstruction', type=str, required=True,
                        help='Path to reconstruction YAML/JSON (poses, corners, landmarks or charuco_board)')
    parser.add_argument('--telemetry', type=str, required=True,
                        help='Path to telemetry YAML/JSON (gyroscope and accelerometer)')
    parser.add_argument('--spline-weighting', type=str, required=True,
                        help='Path to spline knot spacing / IMU variance file')
    parser.add_argument('--rough-alignment', type=str, required=True,
                        help='Path to rough IMU-to-camera alignment file')
    parser.add_argument('--imu-bias', type=str, default=None,
                        help='Path to initial IMU bias file (default: zero bias)')
    parser.add_argument('--options', type=str, default=None,
                        help='Path to calibration options file')
    parser.add_argument('--max-duration', type=float, default=None,
                        help='Maximum calibration window in seconds (overrides options)')
    parser.add_argument('--max-iterations', type=int, default=None,
                        help='Maximum optimizer iterations (overrides options)')
    parser.add_argument('--output', '-o', type=str, default='imu_camera_calibration.yaml',
                        help='Output file path (default: imu_camera_calibration.yaml)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Load configurations
    print("Loading configurations...")
    options = load_calibration_options(args.options)
    if args.max_duration is not None:
        options.max_duration_s = args.max_duration
    if args.max_iterations is not None:
        options.max_iterations = args.max_iterations

    weighting = load_spline_weighting(args.spline_weighting)
    alignment = load_rough_alignment(args.rough_alignment)
    bias = load_imu_bias(args.imu_bias)

    print("Loading reconstruction and telemetry...")
    reconstruction = load_reconstruction(args.reconstruction)
    telemetry = load_telemetry(args.telemetry)

    solver = ImuCameraCalibrationSolver.from_artifacts(
        reconstruction, telemetry, weighting, alignment, bias, options)

    print("\n" + "=" * 60)
    print("CALIBRATION DATA SUMMARY")
    print("=" * 60)
    stats = solver.get_statistics()
    print(f"  Poses:          {stats['num_poses']}")
    print(f"  Corner frames:  {stats['num_corner_frames']} "
          f"(avg {stats['avg_corners_per_frame']:.1f} corners)")
    print(f"  Gyroscope:      {stats['num_gyro']} samples")
    print(f"  Accelerometer:  {stats['num_accel']} samples")
    print(f"  Knot spacing:   so3 {weighting.dt_so3:.3f} s, r3 {weighting.dt_r3:.3f} s")

    print("\n" + "=" * 60)
    print("COMPUTING IMU-CAMERA CALIBRATION")
    print("=" * 60)

    try:
        result = solver.calibrate()
    except InitializationError as e:
        print(f"\nERROR: Initialization failed - {e}")
        print("Possible causes:")
        print("  - Telemetry and reconstruction timestamps do not overlap")
        print("  - Wrong time offset in the rough alignment")
        print("  - Empty reconstruction")
        sys.exit(1)

    summary = result.summary
    print(f"  Termination: {summary.termination.value} ({summary.message})")
    print(f"  Iterations:  {summary.iterations}")
    print(f"  Cost:        {summary.initial_cost:.6e} -> {summary.final_cost:.6e}")

    # Print results
    print("\n" + "=" * 60)
    print("CALIBRATION RESULTS")
    print("=" * 60)

    t, q = matrix_to_transform(result.T_i_c)
    g = result.gravity
    print("\nCamera in IMU frame (T_i_c):")
    print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}] m")
    print(f"  Quaternion:  [{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
    print(f"  Time offset: {result.time_offset_s * 1e3:.3f} ms")
    print(f"\nGyro bias:   {np.array2string(result.gyro_bias, precision=6)} rad/s")
    print(f"Accel bias:  {np.array2string(result.accel_bias, precision=6)} m/s^2")
    print(f"Gravity:     [{g[0]:.4f}, {g[1]:.4f}, {g[2]:.4f}] (|g| = {result.gravity_magnitude:.4f})")
    print(f"\nMean reprojection error: {result.mean_reprojection_error:.4f} px "
          f"({result.num_corners} corners, {result.num_frames} frames)")

    if args.verbose and 'residuals' in solver.get_statistics():
        for kind, entry in solver.get_statistics()['residuals'].items():
            print(f"  {kind}: {entry['count']} residuals, cost {entry['cost']:.6e}, "
                  f"rms {entry['rms']:.4f}")

    # Save results
    print("\n" + "=" * 60)
    print("SAVING RESULTS")
    print("=" * 60)

    save_calibration_yaml(result, args.output)

    if not result.success:
        print("\n✗ Calibration failed - results saved for inspection")
        print(f"  Calibration saved to: {args.output}")
        sys.exit(1)

    print("\n✓ Calibration complete!")
    print(f"  Calibration saved to: {args.output}")


if __name__ == '__main__':
    main()
