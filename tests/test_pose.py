"""
Tests for pose estimation functionality.
"""

import json
import os
import sys
import tempfile
import unittest

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from imagetracker.pose import (  # type: ignore
    CV_TO_GL,
    PoseResult,
    PoseSolver,
    load_calibration,
    to_gl_buffer,
    validate_camera_matrix,
)


class TestCalibration(unittest.TestCase):
    """Loading and validating camera intrinsics."""

    def setUp(self):
        self.calibration = {
            "camera_matrix": [
                [800.0, 0.0, 320.0],
                [0.0, 800.0, 240.0],
                [0.0, 0.0, 1.0],
            ],
            "dist_coeffs": [0.0, 0.0, 0.0, 0.0, 0.0],
        }

    def test_inline_calibration(self):
        calibration = load_calibration(self.calibration)
        self.assertEqual(calibration.camera_matrix.shape, (3, 3))
        self.assertEqual(calibration.dist_coeffs.shape, (5, 1))

    def test_calibration_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "camera.json")
            with open(path, "w") as f:
                json.dump(self.calibration, f)
            calibration = load_calibration({"calibration_file": path})
        np.testing.assert_array_equal(calibration.camera_matrix, self.calibration["camera_matrix"])

    def test_missing_calibration_file(self):
        with self.assertRaises(FileNotFoundError):
            load_calibration({"calibration_file": "no-such-camera.json"})

    def test_invalid_camera_matrix(self):
        with self.assertRaises(ValueError):
            validate_camera_matrix(None)
        with self.assertRaises(ValueError):
            validate_camera_matrix(np.zeros((3, 3)))
        with self.assertRaises(ValueError):
            validate_camera_matrix(np.eye(4))


class TestPoseSolver(unittest.TestCase):
    """Solving the object-to-camera pose from correspondences."""

    def setUp(self):
        self.K = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
        rng = np.random.default_rng(4)
        self.object_points = np.column_stack(
            (rng.uniform(-0.5, 0.5, 60), rng.uniform(-0.4, 0.4, 60), np.zeros(60))
        )
        self.rvec = np.array([[0.1], [-0.2], [0.05]])
        self.tvec = np.array([[0.1], [0.05], [2.0]])
        projected, _ = cv2.projectPoints(self.object_points, self.rvec, self.tvec, self.K, None)
        self.image_points = projected.reshape(-1, 2)

    def test_recovers_pose(self):
        solver = PoseSolver(self.K)
        pose = solver.solve(self.object_points, self.image_points)

        self.assertTrue(pose.success)
        np.testing.assert_allclose(pose.rotation_vector, self.rvec, atol=1e-4)
        np.testing.assert_allclose(pose.translation_vector, self.tvec, atol=1e-4)
        self.assertLess(pose.reprojection_error, 1e-3)
        self.assertTrue(solver.has_seed)

    def test_ransac_tolerates_outliers(self):
        image_points = self.image_points.copy()
        image_points[:10] += 60.0
        solver = PoseSolver(self.K, use_ransac=True, ransac_reproj_threshold=4.0)
        pose = solver.solve(self.object_points, image_points)

        self.assertTrue(pose.success)
        self.assertLessEqual(pose.inliers, 50)
        np.testing.assert_allclose(pose.translation_vector, self.tvec, atol=1e-2)

    def test_seeded_solve(self):
        solver = PoseSolver(self.K)
        R, _ = cv2.Rodrigues(self.rvec + 0.02)
        solver.seed(R, self.tvec + 0.05)
        pose = solver.solve(self.object_points, self.image_points)
        np.testing.assert_allclose(pose.translation_vector, self.tvec, atol=1e-4)

    def test_too_few_points(self):
        solver = PoseSolver(self.K, min_points=6)
        pose = solver.solve(self.object_points[:5], self.image_points[:5])
        self.assertFalse(pose.success)
        self.assertIsNone(pose.as_matrix())
        self.assertIsNone(pose.model_view_matrix())

    def test_mismatched_points_raise(self):
        with self.assertRaises(ValueError):
            PoseSolver(self.K).solve(self.object_points, self.image_points[:-1])

    def test_reset_forgets_seed(self):
        solver = PoseSolver(self.K)
        solver.solve(self.object_points, self.image_points)
        solver.reset()
        self.assertFalse(solver.has_seed)


class TestModelViewMatrix(unittest.TestCase):
    """Conversion of a pose to the rendering convention."""

    def make_pose(self):
        return PoseResult(
            success=True,
            rotation_vector=np.zeros((3, 1)),
            translation_vector=np.array([[0.1], [0.2], [2.0]]),
            rotation_matrix=np.eye(3),
            method="planar",
            inliers=10,
        )

    def test_model_view_flips_y_and_z(self):
        model_view = self.make_pose().model_view_matrix()
        np.testing.assert_allclose(np.diag(model_view), [1.0, -1.0, -1.0, 1.0])
        np.testing.assert_allclose(model_view[:3, 3], [0.1, -0.2, -2.0])
        np.testing.assert_allclose(CV_TO_GL @ model_view, self.make_pose().as_matrix())

    def test_gl_buffer_is_column_major(self):
        buffer = to_gl_buffer(self.make_pose().model_view_matrix())
        self.assertEqual(buffer.shape, (16,))
        self.assertEqual(buffer.dtype, np.float32)
        np.testing.assert_allclose(buffer[12:15], [0.1, -0.2, -2.0])

    def test_copy_is_independent(self):
        pose = self.make_pose()
        clone = pose.copy()
        clone.translation_vector[2, 0] = 5.0
        self.assertEqual(pose.translation_vector[2, 0], 2.0)


if __name__ == "__main__":
    unittest.main()
