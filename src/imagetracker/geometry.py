"""
Two-view geometry helpers used by the structure-from-motion bootstrap.

Everything in this module is a pure function of its inputs, so it is safe to
call from any thread without locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)

# W from Hartley & Zisserman, result 9.19
_W = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])


class PoseCandidate(NamedTuple):
    """One (rotation, translation) hypothesis from an essential matrix."""

    tag: str
    rotation: np.ndarray
    translation: np.ndarray


@dataclass
class TriangulationResult:
    """Outcome of triangulating correspondences for a candidate camera pair."""

    accepted: bool
    points_3d: np.ndarray
    in_front: np.ndarray
    positive_depth_ratio: float
    reprojection_error: float


def skew(vector: np.ndarray) -> np.ndarray:
    x, y, z = np.asarray(vector, dtype=np.float64).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def essential_from_pose(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """E = [t]x R for a camera with ``x2 = R x1 + t``."""
    return skew(translation) @ np.asarray(rotation, dtype=np.float64)


def projection_matrix(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """3x4 ``[R|t]`` (normalized camera, no intrinsics)."""
    return np.hstack(
        (np.asarray(rotation, dtype=np.float64).reshape(3, 3),
         np.asarray(translation, dtype=np.float64).reshape(3, 1))
    )


def decompose_essential_matrix(
    essential: np.ndarray,
    min_singular_ratio: float = 0.7,
) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]]:
    """
    Split an essential matrix into its two rotations and two translations.

    Both rotations are proper (determinant +1): when the SVD yields a
    reflection the sign of E is flipped and the rotations are rebuilt. Which
    of the four combinations is physically valid is left to the caller.

    Returns:
        (R1, R2, t1, t2), or None when the two leading singular values are too
        far apart for ``essential`` to be an essential matrix.
    """
    E = np.asarray(essential, dtype=np.float64).reshape(3, 3)
    U, singular_values, Vt = np.linalg.svd(E)

    if singular_values[1] < 1e-12:
        LOGGER.debug("Essential matrix has rank < 2: %s", singular_values)
        return None
    ratio = abs(singular_values[0] / singular_values[1])
    if ratio > 1.0:
        ratio = 1.0 / ratio
    if ratio < min_singular_ratio:
        LOGGER.debug("Singular values too far apart: %s", singular_values)
        return None

    R1 = U @ _W @ Vt
    if np.linalg.det(R1) < 0:
        # -E = (-U) S Vt
        U = -U
        R1 = U @ _W @ Vt
    R2 = U @ _W.T @ Vt
    t1 = U[:, 2].reshape(3, 1).copy()
    t2 = -t1
    return R1, R2, t1, t2


def pose_candidates(
    R1: np.ndarray, R2: np.ndarray, t1: np.ndarray, t2: np.ndarray
) -> List[PoseCandidate]:
    """The four (R, t) combinations in the order they are tried."""
    return [
        PoseCandidate("R1,t1", R1, t1),
        PoseCandidate("R1,t2", R1, t2),
        PoseCandidate("R2,t1", R2, t1),
        PoseCandidate("R2,t2", R2, t2),
    ]


def triangulate_and_check_reproj(
    P: np.ndarray,
    P1: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
    camera_matrix: np.ndarray,
    min_positive_depth_ratio: float = 0.75,
    max_reprojection_error: float = 5.0,
) -> TriangulationResult:
    """
    Triangulate ``pts1``/``pts2`` seen by cameras ``P`` and ``P1`` (both 3x4
    ``[R|t]``) and decide whether the camera pair is plausible.

    The pair is accepted when more than ``min_positive_depth_ratio`` of the
    points lie in front of both cameras and the mean reprojection error of
    those points (averaged over both views) is below
    ``max_reprojection_error`` pixels.
    """
    P = np.asarray(P, dtype=np.float64).reshape(3, 4)
    P1 = np.asarray(P1, dtype=np.float64).reshape(3, 4)
    K = np.asarray(camera_matrix, dtype=np.float64).reshape(3, 3)
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)

    if len(pts1) != len(pts2):
        raise ValueError(f"Point count mismatch: {len(pts1)} vs {len(pts2)}")

    count = len(pts1)
    if count == 0:
        return TriangulationResult(
            accepted=False,
            points_3d=np.empty((0, 3)),
            in_front=np.zeros(0, dtype=bool),
            positive_depth_ratio=0.0,
            reprojection_error=float("inf"),
        )

    points_4d = cv2.triangulatePoints(K @ P, K @ P1, pts1.T.copy(), pts2.T.copy())
    w = points_4d[3]
    finite = np.abs(w) > 1e-12
    points_3d = np.zeros((count, 3), dtype=np.float64)
    points_3d[finite] = (points_4d[:3, finite] / w[finite]).T

    homogeneous = np.hstack((points_3d, np.ones((count, 1))))
    cam1 = homogeneous @ P.T
    cam2 = homogeneous @ P1.T
    in_front = finite & (cam1[:, 2] > 0) & (cam2[:, 2] > 0)
    positive_ratio = float(np.count_nonzero(in_front)) / count

    if np.any(in_front):
        errors1 = _reprojection_errors(K, cam1[in_front], pts1[in_front])
        errors2 = _reprojection_errors(K, cam2[in_front], pts2[in_front])
        reprojection_error = float(np.mean((errors1 + errors2) * 0.5))
    else:
        reprojection_error = float("inf")

    accepted = (
        positive_ratio > min_positive_depth_ratio
        and reprojection_error < max_reprojection_error
    )
    LOGGER.debug(
        "Triangulation check: %.1f%% in front, reprojection error %.3f px -> %s",
        positive_ratio * 100.0,
        reprojection_error,
        "accepted" if accepted else "rejected",
    )
    return TriangulationResult(
        accepted=accepted,
        points_3d=points_3d,
        in_front=in_front,
        positive_depth_ratio=positive_ratio,
        reprojection_error=reprojection_error,
    )


def _reprojection_errors(K: np.ndarray, camera_points: np.ndarray, observed: np.ndarray) -> np.ndarray:
    projected = camera_points @ K.T
    projected = projected[:, :2] / projected[:, 2:3]
    return np.linalg.norm(projected - observed, axis=1)


def has_sufficient_parallax(
    pts1: np.ndarray,
    pts2: np.ndarray,
    min_parallax: float = 5.0,
    homography_threshold: float = 1.5,
    max_homography_inlier_ratio: float = 0.8,
) -> Tuple[bool, float, float]:
    """
    Check that two views are not a degenerate pair for triangulation.

    A pair is rejected when the features barely moved, or when a single
    homography explains nearly as many correspondences as the epipolar
    geometry does (a planar scene or a pure camera rotation), since the
    fundamental matrix is then ill-defined. Both models are fitted with
    RANSAC at the same pixel threshold.

    Returns:
        (ok, mean_displacement, homography_to_fundamental_inlier_ratio)
    """
    pts1 = np.asarray(pts1, dtype=np.float32).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float32).reshape(-1, 2)
    if len(pts1) < 8:
        return False, 0.0, 1.0

    displacement = float(np.linalg.norm(pts2 - pts1, axis=1).mean())
    if displacement < min_parallax:
        return False, displacement, 1.0

    homography_inliers = _ransac_inliers(
        cv2.findHomography, pts1, pts2, cv2.RANSAC, homography_threshold
    )
    fundamental_inliers = _ransac_inliers(
        cv2.findFundamentalMat, pts1, pts2, cv2.FM_RANSAC, homography_threshold, 0.99
    )
    if fundamental_inliers == 0:
        LOGGER.debug("No epipolar geometry between the views")
        return False, displacement, 1.0

    ratio = homography_inliers / float(fundamental_inliers)
    LOGGER.debug(
        "Parallax check: %.1f px, %d homography vs %d fundamental inliers",
        displacement,
        homography_inliers,
        fundamental_inliers,
    )
    return ratio <= max_homography_inlier_ratio, displacement, ratio


def _ransac_inliers(estimator, pts1: np.ndarray, pts2: np.ndarray, *args) -> int:
    try:
        model, mask = estimator(pts1, pts2, *args)
    except cv2.error as e:
        LOGGER.debug("%s failed: %s", estimator.__name__, e)
        return 0
    if model is None or mask is None:
        return 0
    return int(np.count_nonzero(mask))


def fit_dominant_plane(points_3d: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Frame aligned with the best-fit plane of ``points_3d``.

    Returns ``(rotation, centroid)`` such that
    ``aligned = (points_3d - centroid) @ rotation.T`` has the plane at z=0.
    The z axis points away from the origin of the input frame (the first
    camera), so the camera sees the surface the same way it sees a marker.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    centroid = points_3d.mean(axis=0)
    _, _, Vt = np.linalg.svd(points_3d - centroid)
    rotation = Vt.copy()
    if np.dot(rotation[2], -centroid) > 0:
        rotation[2] = -rotation[2]
    if np.linalg.det(rotation) < 0:
        rotation[1] = -rotation[1]
    return rotation, centroid
