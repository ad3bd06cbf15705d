#!/usr/bin/env python3
"""
Unit tests for IMU-camera calibration package.
"""

import unittest
import numpy as np
import os
import shutil
import sys
import tempfile

import cv2
import yaml

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_camera_calibration.utils import (
    quaternion_from_matrix,
    matrix_from_quaternion,
    transform_to_matrix,
    matrix_to_transform,
    invert_transform,
    rotation_angle,
    save_calibration_yaml,
)
from imu_camera_calibration.camera import CalibrationTarget
from imu_camera_calibration.config import (
    CalibrationOptions, ImuBias, load_calibration_options, load_imu_bias,
    load_reconstruction, load_rough_alignment, load_spline_weighting, load_telemetry
)
from imu_camera_calibration.diagnostics import (
    STANDARD_GRAVITY, check_gravity, reprojection_statistics
)
from imu_camera_calibration.calibration_solver import ImuCameraCalibrationSolver
from imu_camera_calibration.estimator import EstimatorStatus, TerminationReason
from imu_camera_calibration.observations import CornerObservation, SensorKind

import synthetic


class TestTransformUtils(unittest.TestCase):
    """Test transformation utility functions."""

    def test_quaternion_roundtrip(self):
        """Test quaternion to matrix and back."""
        # Identity rotation
        R_identity = np.eye(3)
        q = quaternion_from_matrix(R_identity)
        np.testing.assert_array_almost_equal(q, [0.0, 0.0, 0.0, 1.0], decimal=9)
        np.testing.assert_array_almost_equal(matrix_from_quaternion(q), R_identity, decimal=9)

        # Random rotation
        from scipy.spatial.transform import Rotation
        R_random = Rotation.random(random_state=4).as_matrix()
        q = quaternion_from_matrix(R_random)
        self.assertGreaterEqual(q[3], 0.0)
        np.testing.assert_array_almost_equal(R_random, matrix_from_quaternion(q), decimal=9)

    def test_unnormalized_quaternion(self):
        R = matrix_from_quaternion([0.0, 0.0, 2.0, 2.0])
        np.testing.assert_array_almost_equal(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], decimal=9)
        with self.assertRaises(ValueError):
            matrix_from_quaternion([0.0, 0.0, 0.0, 0.0])

    def test_transform_roundtrip(self):
        """Test transform to matrix and back."""
        translation = np.array([1.0, 2.0, 3.0])
        rotation = matrix_from_quaternion([0.0, 0.0, 0.707, 0.707])  # 90 deg around Z

        T = transform_to_matrix(rotation, translation)
        t_back, q_back = matrix_to_transform(T)

        np.testing.assert_array_almost_equal(translation, t_back, decimal=9)
        np.testing.assert_array_almost_equal(q_back, [0.0, 0.0, np.sqrt(0.5), np.sqrt(0.5)], decimal=9)

    def test_invert_transform(self):
        """Test transform inversion."""
        from scipy.spatial.transform import Rotation
        T = transform_to_matrix(Rotation.from_euler('z', 45, degrees=True).as_matrix(),
                                [1.0, 2.0, 3.0])
        np.testing.assert_array_almost_equal(T @ invert_transform(T), np.eye(4), decimal=9)

    def test_rotation_angle(self):
        from scipy.spatial.transform import Rotation
        R_a = Rotation.from_euler('x', 10, degrees=True).as_matrix()
        R_b = Rotation.from_euler('x', 25, degrees=True).as_matrix()
        self.assertAlmostEqual(rotation_angle(R_a, R_b), np.radians(15.0), places=9)


class TestCalibrationTarget(unittest.TestCase):
    """Test ChArUco target geometry."""

    def test_charuco_landmarks(self):
        config = {
            'squares_x': 6,
            'squares_y': 8,
            'square_length': 0.04,
            'marker_length': 0.03,
            'aruco_dictionary': 'DICT_6X6_250'
        }
        target = CalibrationTarget.from_charuco_board(config, synthetic.make_intrinsics())
        # Inner chessboard corners
        self.assertEqual(len(target.landmarks), 5 * 7)
        points = target.points(np.arange(35))
        np.testing.assert_array_equal(points[:, 2], 0.0)
        self.assertAlmostEqual(np.linalg.norm(points[1] - points[0]), 0.04, places=6)

    def test_unknown_dictionary(self):
        config = {'squares_x': 6, 'squares_y': 8, 'square_length': 0.04,
                  'marker_length': 0.03, 'aruco_dictionary': 'DICT_9X9_1'}
        with self.assertRaises(ValueError):
            CalibrationTarget.from_charuco_board(config, synthetic.make_intrinsics())

    def test_unknown_track_id(self):
        with self.assertRaises(ValueError):
            synthetic.make_target().points([0, 999])

    def test_line_delay_from_readout(self):
        intrinsics = synthetic.make_intrinsics(readout_time_s=0.024)
        self.assertAlmostEqual(intrinsics.line_delay_s, 0.024 / 480)
        self.assertEqual(synthetic.make_intrinsics().line_delay_s, 0.0)


class TestConfigLoaders(unittest.TestCase):
    """Test the YAML artifact loaders."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, name, data):
        path = os.path.join(self.tmpdir, name)
        with open(path, 'w') as f:
            yaml.safe_dump(data, f)
        return path

    def test_spline_weighting(self):
        path = self.write('weighting.yaml', {'dt_so3': 0.1, 'dt_r3': 0.05,
                                             'var_so3': 1e-4, 'var_r3': [1e-2, 1e-2, 2e-2]})
        weighting = load_spline_weighting(path)
        self.assertEqual(weighting.dt_so3_ns, 100_000_000)
        self.assertEqual(weighting.dt_r3_ns, 50_000_000)
        self.assertEqual(weighting.var_r3, [1e-2, 1e-2, 2e-2])

        with self.assertRaises(ValueError):
            load_spline_weighting(self.write('bad.yaml', {'dt_so3': 0.1}))
        with self.assertRaises(ValueError):
            load_spline_weighting(self.write('neg.yaml', {'dt_so3': 0.1, 'dt_r3': -1.0}))

    def test_rough_alignment(self):
        path = self.write('alignment.yaml', {'imu_to_camera_quaternion': [0.0, 0.0, 1.0, 1.0],
                                             'time_offset_s': -0.02})
        alignment = load_rough_alignment(path)
        np.testing.assert_array_almost_equal(alignment.R_c_i @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
        np.testing.assert_array_almost_equal(alignment.R_i_c, alignment.R_c_i.T)
        self.assertEqual(alignment.time_offset_s, -0.02)
        np.testing.assert_array_equal(alignment.camera_position, np.zeros(3))

    def test_imu_bias(self):
        bias = load_imu_bias(self.write('bias.yaml', {'gyro_bias': [0.1, 0.2, 0.3],
                                                      'accl_bias': [1.0, 2.0, 3.0]}))
        np.testing.assert_array_equal(bias.accel, [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(load_imu_bias(None).gyro, np.zeros(3))

    def test_calibration_options(self):
        path = self.write('options.yaml', {'imu_subsample': 2, 'rolling_shutter': True,
                                           'fixed_blocks': ['gravity'], 'unknown_key': 1})
        options = load_calibration_options(path)
        self.assertEqual(options.imu_subsample, 2)
        self.assertTrue(options.rolling_shutter)
        self.assertEqual(options.fixed_blocks, ('gravity',))
        self.assertEqual(options.gravity_tolerance_ns, 3_000_000)

        with self.assertRaises(ValueError):
            CalibrationOptions(imu_subsample=0)

    def test_telemetry(self):
        path = self.write('telemetry.yaml', {
            'gyroscope': {'timestamps_ms': [1.0, 2.5], 'samples': [[0, 0, 1], [0, 1, 0]]},
            'accelerometer': {'timestamps_ms': [1.0], 'samples': [[0, 9.81, 0]]},
        })
        telemetry = load_telemetry(path)
        self.assertEqual([s.timestamp_ns for s in telemetry.gyroscope], [1_000_000, 2_500_000])
        self.assertIs(telemetry.accelerometer[0].kind, SensorKind.ACCELEROMETER)

        bad = self.write('bad.yaml', {
            'gyroscope': {'timestamps_ms': [1.0, 2.0], 'samples': [[0, 0, 1]]},
            'accelerometer': {'timestamps_ms': [], 'samples': []},
        })
        with self.assertRaises(ValueError):
            load_telemetry(bad)

    def test_reconstruction(self):
        R_w_c = np.diag([1.0, -1.0, -1.0])
        p_w_c = np.array([0.1, 0.2, 1.5])
        R_c_w = R_w_c.T
        rvec, _ = cv2.Rodrigues(R_c_w)
        tvec = -R_c_w @ p_w_c

        intrinsics = {
            'image_width': 640,
            'image_height': 480,
            'camera_matrix': {'rows': 3, 'cols': 3,
                              'data': [500.0, 0.0, 320.0, 0.0, 500.0, 240.0, 0.0, 0.0, 1.0]},
            'distortion_model': 'plumb_bob',
            'distortion_coefficients': {'rows': 1, 'cols': 5, 'data': [0.0] * 5},
            'readout_time_s': 0.024,
        }
        self.write('intrinsics.yaml', intrinsics)
        path = self.write('reconstruction.yaml', {
            'intrinsics_file': 'intrinsics.yaml',
            'landmarks': {0: [0.0, 0.0, 0.0], 1: [0.1, 0.0, 0.0]},
            'views': [
                {'timestamp': 1.25, 'rvec': rvec.ravel().tolist(), 'tvec': tvec.tolist(),
                 'track_ids': [0, 1], 'corners': [[300.0, 200.0], [340.0, 200.0]]},
                {'timestamp': 1.5, 'rvec': rvec.ravel().tolist(), 'tvec': tvec.tolist()},
            ],
        })

        reconstruction = load_reconstruction(path)
        self.assertEqual(len(reconstruction.poses), 2)
        self.assertEqual(len(reconstruction.corners), 1)
        pose = reconstruction.poses[0]
        self.assertEqual(pose.timestamp_ns, 1_250_000_000)
        np.testing.assert_array_almost_equal(pose.rotation, R_w_c, decimal=9)
        np.testing.assert_array_almost_equal(pose.position, p_w_c, decimal=9)
        self.assertAlmostEqual(reconstruction.target.line_delay_s, 0.024 / 480)

        self.assertEqual(load_reconstruction(path, line_delay_s=0.0).target.line_delay_s, 0.0)

    def test_reconstruction_from_charuco_board(self):
        board = {'squares_x': 6, 'squares_y': 8, 'square_length': 0.04,
                 'marker_length': 0.03, 'aruco_dictionary': 'DICT_6X6_250'}
        intrinsics = {
            'image_width': 640,
            'image_height': 480,
            'camera_matrix': {'rows': 3, 'cols': 3,
                              'data': [500.0, 0.0, 320.0, 0.0, 500.0, 240.0, 0.0, 0.0, 1.0]},
        }
        views = [{'timestamp': 2.0, 'rvec': [0.0, 0.0, 0.0], 'tvec': [0.0, 0.0, 1.0],
                  'track_ids': [0, 34], 'corners': [[300.0, 200.0], [340.0, 260.0]]}]

        inline = load_reconstruction(self.write('inline.yaml', {
            'intrinsics': intrinsics, 'charuco_board': board, 'views': views}))
        self.assertEqual(len(inline.target.landmarks), 35)
        self.assertEqual(inline.target.points([34]).shape, (1, 3))

        self.write('board.yaml', board)
        from_file = load_reconstruction(self.write('from_file.yaml', {
            'intrinsics': intrinsics, 'charuco_board': 'board.yaml', 'views': views}))
        np.testing.assert_array_equal(from_file.target.points(np.arange(35)),
                                      inline.target.points(np.arange(35)))

        with self.assertRaises(ValueError):
            load_reconstruction(self.write('no_target.yaml', {
                'intrinsics': intrinsics, 'views': views}))

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_spline_weighting(os.path.join(self.tmpdir, 'missing.yaml'))


class TestDiagnostics(unittest.TestCase):
    """Test fit-quality diagnostics."""

    @classmethod
    def setUpClass(cls):
        cls.scenario = synthetic.make_scenario(num_frames=12, num_imu=20)

    def test_reprojection_statistics_at_ground_truth(self):
        s = self.scenario
        stats = reprojection_statistics(s.state, s.corners, s.target)
        self.assertLess(stats.max, 1e-6)
        self.assertEqual(stats.num_frames, 12)
        self.assertEqual(stats.num_corners, 12 * 35)

    def test_out_of_domain_frames_are_skipped(self):
        s = self.scenario
        outside = CornerObservation(s.end_ns + 10 ** 9, s.corners[0].track_ids, s.corners[0].corners)
        stats = reprojection_statistics(s.state, s.corners[:3] + [outside], s.target)
        self.assertEqual(stats.skipped_frames, 1)
        self.assertEqual(stats.num_frames, 3)

        empty = reprojection_statistics(s.state, [outside], s.target)
        self.assertTrue(np.isnan(empty.mean))

    def test_check_gravity(self):
        self.assertAlmostEqual(check_gravity(np.array([0.0, 0.0, -STANDARD_GRAVITY])), 0.0)
        with self.assertLogs('imu_camera_calibration.diagnostics', level='WARNING'):
            self.assertAlmostEqual(check_gravity(np.array([0.0, 0.0, 9.0])), 9.0 - STANDARD_GRAVITY)


class TestCalibrationSolver(unittest.TestCase):
    """End-to-end calibration on synthetic data."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def make_solver(self, scenario, **options):
        solver = ImuCameraCalibrationSolver(scenario.target, synthetic.spline_weighting(),
                                            synthetic.rough_alignment(), ImuBias(),
                                            CalibrationOptions(**options))
        solver.add_camera_data(scenario.poses, scenario.corners)
        solver.add_imu_data(scenario.gyroscope, scenario.accelerometer)
        return solver

    def test_calibrate(self):
        scenario = synthetic.make_scenario(num_frames=60, num_imu=150)
        solver = self.make_solver(scenario)
        self.assertEqual(solver.get_statistics()['num_gyro'], 150)

        result = solver.calibrate()
        self.assertTrue(result.success)
        self.assertIs(result.summary.termination, TerminationReason.CONVERGED)
        self.assertLess(rotation_angle(result.T_i_c[:3, :3], synthetic.R_I_C), 1e-3)
        np.testing.assert_allclose(result.T_i_c[:3, 3], synthetic.P_I_C, atol=1e-3)
        self.assertAlmostEqual(result.time_offset_s, synthetic.TIME_OFFSET_S, delta=1e-4)
        self.assertLess(result.mean_reprojection_error, 1e-3)
        self.assertEqual(result.num_frames, 60)
        self.assertEqual(result.num_corners, 60 * 35)
        self.assertAlmostEqual(result.duration_s, 59 * 0.025)

        stats = solver.get_statistics()
        self.assertEqual(stats['residuals']['gyroscope']['count'], 150)

        output = os.path.join(self.tmpdir, 'imu_camera_calibration.yaml')
        save_calibration_yaml(result, output)
        with open(output) as f:
            saved = yaml.safe_load(f)
        self.assertEqual(len(saved['T_i_c']), 7)
        np.testing.assert_allclose(saved['T_i_c'][:3], synthetic.P_I_C, atol=1e-3)
        self.assertEqual(saved['measurements']['gyroscope'], 150)
        self.assertEqual(saved['optimization']['termination'], result.summary.termination.value)

    def test_iteration_budget_is_not_success(self):
        scenario = synthetic.make_scenario(num_frames=24, num_imu=40)
        solver = self.make_solver(scenario, max_iterations=1)
        result = solver.calibrate()
        self.assertIs(result.summary.termination, TerminationReason.MAX_ITERATIONS)
        self.assertEqual(solver.estimator.status, EstimatorStatus.CONVERGED)
        self.assertFalse(result.success)
        self.assertLess(result.summary.final_cost, result.summary.initial_cost)

    def test_rolling_shutter_disabled_by_default(self):
        scenario = synthetic.make_scenario(num_frames=12, num_imu=20, line_delay_s=5e-5)
        self.assertEqual(self.make_solver(scenario).target.line_delay_s, 0.0)
        self.assertEqual(self.make_solver(scenario, rolling_shutter=True).target.line_delay_s, 5e-5)

    def test_clear_data(self):
        solver = self.make_solver(synthetic.make_scenario(num_frames=12, num_imu=20))
        solver.clear_data()
        stats = solver.get_statistics()
        self.assertEqual(stats['num_poses'], 0)
        self.assertEqual(stats['avg_corners_per_frame'], 0)


if __name__ == '__main__':
    unittest.main()
