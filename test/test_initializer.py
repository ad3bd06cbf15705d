#!/usr/bin/env python3
"""
Unit tests for trajectory, gravity and measurement initialization.
"""

import unittest
import numpy as np
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imu_camera_calibration.config import CalibrationOptions, ImuBias
from imu_camera_calibration.estimator import EstimatorStatus
from imu_camera_calibration.initializer import (
    CalibrationInitializer, InitializationError, seed_gravity, seed_trajectory,
    select_time_window
)
from imu_camera_calibration.lie import so3_exp
from imu_camera_calibration.measurements import MeasurementKind
from imu_camera_calibration.observations import IMUSample, SensorKind, TimestampedPose
from imu_camera_calibration.utils import rotation_angle

import synthetic


T0 = 2_000_000_000


def accel(timestamp_ns, value):
    return IMUSample(timestamp_ns, value, SensorKind.ACCELEROMETER)


class TestTimeWindow(unittest.TestCase):
    """Test calibration window selection."""

    def test_window_spans_poses(self):
        poses = [TimestampedPose(t, np.eye(3), np.zeros(3)) for t in (T0 + 500, T0, T0 + 9_000)]
        self.assertEqual(select_time_window(poses), (T0, T0 + 9_000))

    def test_max_duration_caps_window(self):
        poses = [TimestampedPose(T0 + k * 1_000_000_000, np.eye(3), np.zeros(3)) for k in range(10)]
        self.assertEqual(select_time_window(poses, max_duration_s=2.5), (T0, T0 + 2_500_000_000))

    def test_empty_pose_set(self):
        with self.assertRaises(InitializationError):
            select_time_window([])


class TestGravitySeeding(unittest.TestCase):
    """Test gravity initialization from the nearest accelerometer sample."""

    def setUp(self):
        self.R_w_c = so3_exp(np.array([0.3, -0.2, 0.1]))
        self.pose = TimestampedPose(T0, self.R_w_c, np.zeros(3))
        self.reading = np.array([0.2, 9.7, -0.4])

    def test_sample_inside_tolerance(self):
        samples = [accel(T0 + 1_000_000, self.reading)]
        gravity = seed_gravity([self.pose], samples, np.eye(3))
        np.testing.assert_allclose(gravity, self.R_w_c @ self.reading, atol=1e-12)

    def test_no_sample_inside_tolerance(self):
        samples = [accel(T0 + 3_500_000, self.reading), accel(T0 - 4_000_000, self.reading)]
        with self.assertRaises(InitializationError):
            seed_gravity([self.pose], samples, np.eye(3))

    def test_tolerance_is_strict(self):
        with self.assertRaises(InitializationError):
            seed_gravity([self.pose], [accel(T0 + 3_000_000, self.reading)], np.eye(3))

    def test_nearest_sample_wins(self):
        samples = [accel(T0 - 2_000_000, -self.reading), accel(T0 + 500_000, self.reading)]
        gravity = seed_gravity([self.pose], samples, np.eye(3))
        np.testing.assert_allclose(gravity, self.R_w_c @ self.reading, atol=1e-12)

    def test_falls_back_to_later_pose(self):
        later = TimestampedPose(T0 + 50_000_000, np.eye(3), np.zeros(3))
        samples = [accel(T0 + 51_000_000, self.reading)]
        gravity = seed_gravity([later, self.pose], samples, np.eye(3))
        np.testing.assert_allclose(gravity, self.reading, atol=1e-12)

    def test_extrinsic_bias_and_time_offset(self):
        R_i_c = so3_exp(np.array([0.0, 0.5, 0.0]))
        bias = np.array([0.1, 0.0, -0.1])
        # Sample stamped 10 ms early on the IMU clock
        samples = [accel(T0 - 9_000_000, self.reading)]
        gravity = seed_gravity([self.pose], samples, R_i_c, bias, time_offset_s=0.01)
        np.testing.assert_allclose(gravity, self.R_w_c @ R_i_c.T @ (self.reading - bias), atol=1e-12)

    def test_no_accelerometer_samples(self):
        with self.assertRaises(InitializationError):
            seed_gravity([self.pose], [], np.eye(3))


class TestTrajectorySeeding(unittest.TestCase):
    """Test knot seeding from camera poses."""

    def test_single_pose_gives_constant_knots(self):
        R_w_c = so3_exp(np.array([0.1, 0.2, -0.3]))
        R_i_c = so3_exp(np.array([-0.2, 0.0, 0.4]))
        p_i_c = np.array([0.1, 0.0, -0.05])
        pose = TimestampedPose(T0, R_w_c, np.array([1.0, 2.0, 3.0]))
        trajectory = seed_trajectory([pose], T0, T0, synthetic.spline_weighting(), R_i_c, p_i_c)

        self.assertEqual(trajectory.num_knots_so3, 5)
        R_w_i = R_w_c @ R_i_c.T
        for R in trajectory.so3.knots:
            np.testing.assert_allclose(R, R_w_i, atol=1e-12)
        for p in trajectory.r3.knots:
            np.testing.assert_allclose(p, pose.position - R_w_i @ p_i_c, atol=1e-12)

    def test_seeded_trajectory_follows_poses(self):
        scenario = synthetic.make_scenario(num_frames=40, num_imu=50)
        poses = scenario.poses
        trajectory = seed_trajectory(poses, poses[0].timestamp_ns, poses[-1].timestamp_ns,
                                     synthetic.spline_weighting(), synthetic.R_I_C, synthetic.P_I_C)
        self.assertEqual(trajectory.num_knots_so3, scenario.state.trajectory.num_knots_so3)
        for pose in poses[::5]:
            R_w_i = trajectory.evaluate_rotation(pose.timestamp_ns)
            self.assertLess(rotation_angle(R_w_i @ synthetic.R_I_C, pose.rotation), 0.02)
            p_w_c = trajectory.evaluate_position(pose.timestamp_ns) + R_w_i @ synthetic.P_I_C
            self.assertLess(np.linalg.norm(p_w_c - pose.position), 0.02)


class TestCalibrationInitializer(unittest.TestCase):
    """Test the seeded estimator built from raw inputs."""

    @classmethod
    def setUpClass(cls):
        cls.scenario = synthetic.make_scenario(num_frames=40, num_imu=60)

    def make_initializer(self, **options):
        return CalibrationInitializer(synthetic.spline_weighting(), synthetic.rough_alignment(),
                                      ImuBias(), CalibrationOptions(**options))

    def test_create_estimator(self):
        s = self.scenario
        estimator = self.make_initializer().create_estimator(
            s.target, s.poses, s.corners, s.gyroscope, s.accelerometer)
        self.assertEqual(estimator.status, EstimatorStatus.SEEDED)

        kinds = [m.kind for m in estimator.measurements]
        self.assertEqual(kinds.count(MeasurementKind.REPROJECTION), 40)
        self.assertEqual(kinds.count(MeasurementKind.GYROSCOPE), 60)
        self.assertEqual(kinds.count(MeasurementKind.ACCELEROMETER), 60)

        state = estimator.state
        alignment = synthetic.rough_alignment()
        np.testing.assert_allclose(state.R_i_c, alignment.R_i_c, atol=1e-12)
        self.assertEqual(state.time_offset_s, 0.0)
        self.assertEqual(state.trajectory.num_knots_so3, s.state.trajectory.num_knots_so3)
        # Seeded from one accelerometer reading, so only roughly right
        self.assertLess(abs(np.linalg.norm(state.gravity) - 9.81), 1.0)

    def test_window_filters_inputs(self):
        s = self.scenario
        late = [IMUSample(s.end_ns + 50_000_000, np.zeros(3), SensorKind.GYROSCOPE)]
        initializer = self.make_initializer(max_duration_s=0.5)
        initializer.initialize(s.poses, s.accelerometer)
        t0, tend = initializer.window
        self.assertEqual(tend - t0, 500_000_000)

        measurements = initializer.build_measurements(
            s.target, s.corners, s.gyroscope + late, s.accelerometer)
        margin = initializer.options.imu_time_margin_s * 1e9
        for m in measurements:
            first, last = m.evaluation_times_ns()
            self.assertGreaterEqual(first, t0)
            self.assertLessEqual(last, tend)
            if m.kind is not MeasurementKind.REPROJECTION:
                self.assertGreaterEqual(first, t0 + margin)
                self.assertLess(last, tend - margin)

    def test_imu_subsampling(self):
        s = self.scenario
        initializer = self.make_initializer(imu_subsample=3)
        initializer.initialize(s.poses, s.accelerometer)
        measurements = initializer.build_measurements(s.target, s.corners, s.gyroscope, s.accelerometer)
        gyro = [m for m in measurements if m.kind is MeasurementKind.GYROSCOPE]
        self.assertEqual(len(gyro), 20)

    def test_build_before_initialize(self):
        s = self.scenario
        with self.assertRaises(InitializationError):
            self.make_initializer().build_measurements(s.target, s.corners, s.gyroscope, s.accelerometer)

    def test_no_imu_in_window(self):
        s = self.scenario
        initializer = self.make_initializer()
        initializer.initialize(s.poses, s.accelerometer)
        with self.assertRaises(InitializationError):
            initializer.build_measurements(s.target, s.corners, [], [])

    def test_gravity_seeding_failure_propagates(self):
        s = self.scenario
        far = [accel(s.end_ns + 10 ** 9, np.array([0.0, 9.81, 0.0]))]
        with self.assertRaises(InitializationError):
            self.make_initializer().initialize(s.poses, far)


if __name__ == '__main__':
    unittest.main()
