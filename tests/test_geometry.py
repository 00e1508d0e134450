"""
Tests for the two-view geometry helpers.
"""

import os
import sys
import unittest

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.append(os.path.dirname(__file__))

from imagetracker.geometry import (  # type: ignore
    decompose_essential_matrix,
    essential_from_pose,
    fit_dominant_plane,
    has_sufficient_parallax,
    pose_candidates,
    projection_matrix,
    triangulate_and_check_reproj,
)
from synthetic import CAMERA_MATRIX, project, random_scene, rotation  # type: ignore

SECOND_ROTATION = rotation([0.02, -0.1, 0.01])
SECOND_TRANSLATION = np.array([-0.6, 0.05, 0.05])


class TestEssentialDecomposition(unittest.TestCase):

    def setUp(self):
        self.R = rotation([0.1, -0.2, 0.05])
        self.t = np.array([1.0, 0.2, -0.1])

    def assert_contains_true_pose(self, decomposition):
        self.assertIsNotNone(decomposition)
        unit_t = self.t / np.linalg.norm(self.t)
        found = [
            c.tag
            for c in pose_candidates(*decomposition)
            if np.allclose(c.rotation, self.R, atol=1e-6) and np.allclose(c.translation.ravel(), unit_t, atol=1e-6)
        ]
        self.assertEqual(len(found), 1)

    def test_candidates_contain_true_pose(self):
        decomposition = decompose_essential_matrix(essential_from_pose(self.R, self.t))
        self.assert_contains_true_pose(decomposition)

    def test_sign_of_essential_does_not_matter(self):
        decomposition = decompose_essential_matrix(-3.0 * essential_from_pose(self.R, self.t))
        self.assert_contains_true_pose(decomposition)

    def test_rotations_are_proper(self):
        R1, R2, t1, t2 = decompose_essential_matrix(essential_from_pose(self.R, self.t))
        for R in (R1, R2):
            self.assertAlmostEqual(np.linalg.det(R), 1.0, places=6)
            np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-9)
        np.testing.assert_allclose(t1, -t2)
        self.assertAlmostEqual(float(np.linalg.norm(t1)), 1.0, places=9)

    def test_rejects_non_essential_matrices(self):
        self.assertIsNone(decompose_essential_matrix(np.diag([1.0, 0.1, 0.0])))
        self.assertIsNone(decompose_essential_matrix(np.zeros((3, 3))))


class TestTriangulation(unittest.TestCase):

    def setUp(self):
        self.points = random_scene()
        self.pts1 = project(self.points, np.eye(3), np.zeros(3))
        self.pts2 = project(self.points, SECOND_ROTATION, SECOND_TRANSLATION)
        self.P = projection_matrix(np.eye(3), np.zeros(3))
        self.P1 = projection_matrix(SECOND_ROTATION, SECOND_TRANSLATION)

    def test_accepts_consistent_pair(self):
        result = triangulate_and_check_reproj(self.P, self.P1, self.pts1, self.pts2, CAMERA_MATRIX)

        self.assertTrue(result.accepted)
        self.assertEqual(result.positive_depth_ratio, 1.0)
        self.assertLess(result.reprojection_error, 1e-3)
        np.testing.assert_allclose(result.points_3d, self.points, atol=1e-4)

    def test_rejects_camera_behind_points(self):
        P1 = projection_matrix(SECOND_ROTATION, -SECOND_TRANSLATION)
        result = triangulate_and_check_reproj(self.P, P1, self.pts1, self.pts2, CAMERA_MATRIX)
        self.assertFalse(result.accepted)

    def test_rejects_corrupted_correspondences(self):
        corrupted = self.pts2 + np.array([0.0, 40.0])
        result = triangulate_and_check_reproj(self.P, self.P1, self.pts1, corrupted, CAMERA_MATRIX)

        self.assertFalse(result.accepted)
        self.assertGreater(result.reprojection_error, 5.0)

    def test_only_one_candidate_survives(self):
        E = essential_from_pose(SECOND_ROTATION, SECOND_TRANSLATION)
        accepted = [
            c.tag
            for c in pose_candidates(*decompose_essential_matrix(E))
            if triangulate_and_check_reproj(
                self.P,
                projection_matrix(c.rotation, c.translation),
                self.pts1,
                self.pts2,
                CAMERA_MATRIX,
            ).accepted
        ]
        self.assertEqual(len(accepted), 1)

    def test_mismatched_lengths_raise(self):
        with self.assertRaises(ValueError):
            triangulate_and_check_reproj(self.P, self.P1, self.pts1, self.pts2[:-1], CAMERA_MATRIX)

    def test_empty_input_is_rejected(self):
        empty = np.empty((0, 2))
        result = triangulate_and_check_reproj(self.P, self.P1, empty, empty, CAMERA_MATRIX)
        self.assertFalse(result.accepted)


class TestParallaxAndPlane(unittest.TestCase):

    def setUp(self):
        self.points = random_scene()
        self.pts1 = project(self.points, np.eye(3), np.zeros(3))

    def test_translation_gives_parallax(self):
        pts2 = project(self.points, SECOND_ROTATION, SECOND_TRANSLATION)
        ok, displacement, ratio = has_sufficient_parallax(self.pts1, pts2)
        self.assertTrue(ok)
        self.assertGreater(displacement, 5.0)
        self.assertLessEqual(ratio, 0.8)

    def test_two_depth_scene_gives_parallax(self):
        rng = np.random.default_rng(5)
        count = 200
        depths = np.where(np.arange(count) % 2 == 0, 4.0, 6.0)
        points = np.column_stack((rng.uniform(-1.5, 1.5, count), rng.uniform(-1.0, 1.0, count), depths))
        pts1 = project(points, np.eye(3), np.zeros(3))
        pts2 = project(points, np.eye(3), np.array([-0.15, 0.0, 0.0]))

        ok, displacement, ratio = has_sufficient_parallax(pts1, pts2)
        self.assertTrue(ok)
        self.assertGreater(displacement, 5.0)
        self.assertLess(ratio, 0.8)

    def test_pure_rotation_is_degenerate(self):
        H = CAMERA_MATRIX @ rotation([0.0, 0.08, 0.0]) @ np.linalg.inv(CAMERA_MATRIX)
        pts2 = cv2.perspectiveTransform(self.pts1.reshape(-1, 1, 2), H).reshape(-1, 2)
        ok, displacement, ratio = has_sufficient_parallax(self.pts1, pts2)
        self.assertFalse(ok)
        self.assertGreater(displacement, 5.0)
        self.assertGreater(ratio, 0.8)

    def test_small_motion_is_degenerate(self):
        ok, displacement, _ = has_sufficient_parallax(self.pts1, self.pts1 + 1.0)
        self.assertFalse(ok)
        self.assertAlmostEqual(displacement, np.sqrt(2.0), places=3)

    def test_too_few_points(self):
        ok, _, _ = has_sufficient_parallax(self.pts1[:5], self.pts1[:5] + 20.0)
        self.assertFalse(ok)

    def test_dominant_plane_alignment(self):
        rng = np.random.default_rng(5)
        tilt = rotation([0.3, 0.2, 0.0])
        plane = np.column_stack((rng.uniform(-1, 1, 100), rng.uniform(-1, 1, 100), np.zeros(100)))
        points = plane @ tilt.T + np.array([0.2, -0.1, 5.0])

        align, centroid = fit_dominant_plane(points)
        aligned = (points - centroid) @ align.T

        np.testing.assert_allclose(aligned[:, 2], 0.0, atol=1e-9)
        self.assertAlmostEqual(np.linalg.det(align), 1.0, places=9)
        self.assertGreater(np.dot(align[2], centroid), 0.0)


if __name__ == "__main__":
    unittest.main()
