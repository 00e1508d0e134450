"""
Ad-hoc marker tracker.

Turns any textured surface into a trackable "marker" by reconstructing a
sparse point cloud from two views (structure from motion), then tracks those
3D points with optical flow and solves the camera pose against them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from ..geometry import (
    decompose_essential_matrix,
    fit_dominant_plane,
    has_sufficient_parallax,
    pose_candidates,
    projection_matrix,
    triangulate_and_check_reproj,
)
from ..pose import PoseSolver
from ..utils import dataclass_from_dict
from .base import BaseTracker, FailureReason, TrackerFrameResult, TrackingState
from .feature import FeatureBackend, OpticalFlowConfig, keypoints_to_array, to_gray, track_optical_flow

LOGGER = logging.getLogger(__name__)


@dataclass
class AdHocTrackerConfig:
    """Configuration for the structure-from-motion tracker."""

    min_bootstrap_features: int = 40
    min_tracked_features: int = 10
    min_pose_points: int = 6

    # Degeneracy check between the two bootstrap views
    min_parallax: float = 5.0  # Mean feature displacement in pixels
    homography_reproj_threshold: float = 1.5  # Same threshold for the epipolar comparison
    max_homography_inlier_ratio: float = 0.8

    # Two-view reconstruction
    fundamental_threshold: float = 1.0  # pixels
    fundamental_confidence: float = 0.99
    min_positive_depth_ratio: float = 0.75
    max_reprojection_error: float = 5.0  # pixels
    align_to_dominant_plane: bool = True

    pnp_reproj_threshold: float = 8.0


@dataclass
class SfMBootstrapResult:
    """Relative pose and structure recovered from the two bootstrap views."""

    rotation: np.ndarray  # Second camera w.r.t. the first
    translation: np.ndarray  # Unit length, up to scale
    points_3d: np.ndarray  # (M, 3) in the first camera's frame
    point_mask: np.ndarray  # (N,) which input pairs produced a point
    candidate: str
    reprojection_error: float


class AdHocSfMTracker(BaseTracker):
    """
    Builds its own 3D marker from two frames, then tracks it.

    The first frame is stored as the bootstrap reference; features are
    followed into later frames until there is enough parallax to recover the
    relative camera pose and triangulate the surface.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        config: Optional[Dict] = None,
        backend: Optional[FeatureBackend] = None,
        dist_coeffs: Optional[np.ndarray] = None,
    ):
        cfg_dict = dict(config or {})
        self.config = dataclass_from_dict(AdHocTrackerConfig, cfg_dict)
        super().__init__(
            camera_matrix,
            backend=backend,
            flow_config=dataclass_from_dict(OpticalFlowConfig, cfg_dict.get("optical_flow")),
            backend_config=cfg_dict.get("feature_backend"),
        )
        self.solver = PoseSolver(
            self.camera_matrix,
            dist_coeffs,
            min_points=self.config.min_pose_points,
            use_ransac=True,
            ransac_reproj_threshold=self.config.pnp_reproj_threshold,
            method="adhoc",
        )
        self.bootstrap_points = np.empty((0, 2), dtype=np.float32)
        self.points_3d = np.empty((0, 3), dtype=np.float64)

    # ------------------------------------------------------------------ #
    # Per-frame processing
    # ------------------------------------------------------------------ #
    def process(self, frame: np.ndarray, newmap: bool = False) -> TrackerFrameResult:
        """Advance the state machine with ``frame``.

        ``newmap`` throws away the current point cloud and starts a new
        bootstrap from this frame.
        """
        gray = to_gray(frame)
        self.frame_index += 1
        self.last_failure = None

        if newmap:
            LOGGER.info("New map requested, discarding %d points", len(self.points_3d))
            self.reset()

        if self.state == TrackingState.IDLE:
            self.bootstrap(gray)
        elif self.state == TrackingState.BOOTSTRAPPING:
            self.bootstrap_track(gray)
        else:
            self.track(gray)

        pose_updated = False
        if self.can_calc_model_view_matrix():
            pose_updated = self.calc_model_view_matrix()
        return TrackerFrameResult(
            state=self.state,
            tracked_count=len(self.tracked_points),
            pose_updated=pose_updated,
            failure=self.last_failure,
            frame_index=self.frame_index,
        )

    def bootstrap(self, frame: np.ndarray) -> bool:
        """Store the first view's keypoints as the bootstrap reference.

        Stays IDLE when the frame has too few keypoints.
        """
        gray = to_gray(frame)
        if not self._capture_reference(gray):
            self.state = TrackingState.IDLE
            return False
        self.state = TrackingState.BOOTSTRAPPING
        return True

    def bootstrap_track(self, frame: np.ndarray) -> bool:
        """Track the reference features into ``frame`` and try to reconstruct.

        With no reference yet (after a loss, or when the last restart found
        too few keypoints) this frame becomes the reference instead.
        """
        gray = to_gray(frame)
        if self.state != TrackingState.BOOTSTRAPPING:
            return self.bootstrap(gray)
        if self.prev_gray is None or len(self.bootstrap_points) == 0:
            return self._capture_reference(gray)

        next_points, keep = track_optical_flow(
            self.prev_gray, gray, self.tracked_points, self.flow_config
        )
        self._keep_features(keep, next_points)
        self.bootstrap_points = self.bootstrap_points[keep]
        self.prev_gray = gray

        if len(self.tracked_points) < self.config.min_bootstrap_features:
            LOGGER.info(
                "Only %d bootstrap features survived, restarting bootstrap",
                len(self.tracked_points),
            )
            self._capture_reference(gray)
            self.last_failure = FailureReason.INSUFFICIENT_FEATURES
            return False

        ok, displacement, homography_ratio = has_sufficient_parallax(
            self.bootstrap_points,
            self.tracked_points,
            min_parallax=self.config.min_parallax,
            homography_threshold=self.config.homography_reproj_threshold,
            max_homography_inlier_ratio=self.config.max_homography_inlier_ratio,
        )
        if not ok:
            return self._fail(
                FailureReason.DEGENERATE_GEOMETRY,
                "not enough parallax (mean %.1f px, homography explains %.0f%%)",
                displacement,
                homography_ratio * 100.0,
            )

        result = self.camera_pose_and_triangulation_from_fundamental()
        if result is None:
            self.last_failure = FailureReason.DEGENERATE_GEOMETRY
            return False

        points_3d = result.points_3d
        rotation, translation = result.rotation, result.translation
        if self.config.align_to_dominant_plane:
            align, centroid = fit_dominant_plane(points_3d)
            points_3d = (points_3d - centroid) @ align.T
            # X_cam = R (align^T X' + c) + t
            translation = rotation @ centroid.reshape(3, 1) + translation
            rotation = rotation @ align.T

        self._begin_tracking(
            points_3d,
            self.tracked_points[result.point_mask],
            rotation=rotation,
            translation=translation,
        )
        LOGGER.info(
            "Ad-hoc map created from %s: %d points, reprojection error %.2f px",
            result.candidate,
            len(points_3d),
            result.reprojection_error,
        )
        return True

    def camera_pose_and_triangulation_from_fundamental(
        self,
        pts1: Optional[np.ndarray] = None,
        pts2: Optional[np.ndarray] = None,
    ) -> Optional[SfMBootstrapResult]:
        """
        Recover the second camera and the scene from two-view correspondences.

        Defaults to the bootstrap reference and the currently tracked points.
        Tries each (R, t) decomposition of the essential matrix and keeps the
        first one whose triangulation passes the depth and reprojection checks.
        """
        if pts1 is None or pts2 is None:
            pts1, pts2 = self.bootstrap_points, self.tracked_points
        pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
        pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
        if len(pts1) != len(pts2):
            raise ValueError(f"Point count mismatch: {len(pts1)} vs {len(pts2)}")
        if len(pts1) < 8:
            self._fail(FailureReason.INSUFFICIENT_FEATURES, "%d correspondences", len(pts1))
            return None

        try:
            fundamental, inlier_mask = cv2.findFundamentalMat(
                pts1,
                pts2,
                cv2.FM_RANSAC,
                self.config.fundamental_threshold,
                self.config.fundamental_confidence,
            )
        except cv2.error as e:
            LOGGER.debug("Fundamental matrix estimation failed: %s", e)
            fundamental, inlier_mask = None, None

        if fundamental is None or inlier_mask is None or fundamental.shape != (3, 3):
            self._fail(FailureReason.DEGENERATE_GEOMETRY, "no fundamental matrix")
            return None

        inliers = inlier_mask.reshape(-1).astype(bool)
        if np.count_nonzero(inliers) < 8:
            self._fail(
                FailureReason.INSUFFICIENT_FEATURES,
                "%d fundamental inliers",
                int(np.count_nonzero(inliers)),
            )
            return None

        K = self.camera_matrix
        essential = K.T @ fundamental @ K
        decomposition = decompose_essential_matrix(essential)
        if decomposition is None:
            self._fail(FailureReason.DEGENERATE_GEOMETRY, "essential matrix decomposition failed")
            return None

        reference = projection_matrix(np.eye(3), np.zeros(3))
        for candidate in pose_candidates(*decomposition):
            check = triangulate_and_check_reproj(
                reference,
                projection_matrix(candidate.rotation, candidate.translation),
                pts1[inliers],
                pts2[inliers],
                K,
                min_positive_depth_ratio=self.config.min_positive_depth_ratio,
                max_reprojection_error=self.config.max_reprojection_error,
            )
            if not check.accepted:
                continue

            point_mask = np.zeros(len(pts1), dtype=bool)
            point_mask[np.flatnonzero(inliers)[check.in_front]] = True
            return SfMBootstrapResult(
                rotation=candidate.rotation,
                translation=candidate.translation.reshape(3, 1),
                points_3d=check.points_3d[check.in_front],
                point_mask=point_mask,
                candidate=candidate.tag,
                reprojection_error=check.reprojection_error,
            )

        self._fail(FailureReason.DEGENERATE_GEOMETRY, "no valid camera pose candidate")
        return None

    def track(self, frame: np.ndarray) -> bool:
        """Follow the reconstructed points into ``frame``."""
        gray = to_gray(frame)
        prev_gray, self.prev_gray = self.prev_gray, gray

        if prev_gray is not None and len(self.tracked_points):
            next_points, keep = track_optical_flow(
                prev_gray, gray, self.tracked_points, self.flow_config
            )
            self._keep_features(keep, next_points)
        else:
            self._clear_features()

        if len(self.tracked_points) < self.config.min_tracked_features:
            LOGGER.info(
                "Ad-hoc tracking lost with %d features, re-bootstrapping",
                len(self.tracked_points),
            )
            self._discard_map()
            self.prev_gray = None
            self.state = TrackingState.BOOTSTRAPPING
            self._capture_reference(gray)
            self.last_failure = FailureReason.TRACKING_LOST
            return False
        return True

    # ------------------------------------------------------------------ #
    # Pose
    # ------------------------------------------------------------------ #
    def can_calc_model_view_matrix(self) -> bool:
        return (
            self.state == TrackingState.TRACKING
            and len(self.tracked_points) >= self.config.min_pose_points
        )

    def calc_model_view_matrix(self) -> bool:
        """Solve the pose against the point cloud; keep the old one on failure."""
        if not self.can_calc_model_view_matrix():
            return False
        pose = self.solver.solve(self.points_3d[self.tracked_indices], self.tracked_points)
        if not pose.success:
            LOGGER.debug("Ad-hoc pose solve failed")
            return False
        self._publish_pose(pose)
        return True

    def get_tracked_points_3d(self) -> np.ndarray:
        """Reconstructed points that are still being tracked."""
        if self.state != TrackingState.TRACKING:
            return np.empty((0, 3), dtype=np.float64)
        return self.points_3d[self.tracked_indices].copy()

    # ------------------------------------------------------------------ #
    # Reset / helpers
    # ------------------------------------------------------------------ #
    def reset(self):
        """Discard the map, the features and the pose."""
        self._discard_map()
        self.prev_gray = None
        self.state = TrackingState.IDLE
        self._clear_pose()

    def _capture_reference(self, gray: np.ndarray) -> bool:
        """Make ``gray`` the bootstrap reference; leaves the state alone.

        On failure the reference is left empty so the next frame retries.
        """
        keypoints = self.backend.detect(gray)
        if len(keypoints) < self.config.min_bootstrap_features:
            self._clear_features()
            self.bootstrap_points = np.empty((0, 2), dtype=np.float32)
            self.prev_gray = None
            return self._fail(
                FailureReason.INSUFFICIENT_FEATURES,
                "%d bootstrap keypoints (need %d)",
                len(keypoints),
                self.config.min_bootstrap_features,
            )

        points = keypoints_to_array(keypoints)
        self.bootstrap_points = points.copy()
        self._set_features(points, np.arange(len(points)))
        self.points_3d = np.empty((0, 3), dtype=np.float64)
        self.prev_gray = gray
        LOGGER.info("Bootstrap reference captured with %d features", len(points))
        return True

    def _discard_map(self):
        self._clear_features()
        self.bootstrap_points = np.empty((0, 2), dtype=np.float32)
        self.points_3d = np.empty((0, 3), dtype=np.float64)
        self.solver.reset()

    def _begin_tracking(
        self,
        points_3d: np.ndarray,
        image_points: np.ndarray,
        rotation: Optional[np.ndarray] = None,
        translation: Optional[np.ndarray] = None,
    ):
        """Start tracking ``image_points``, linked row by row to ``points_3d``."""
        self.points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        self._set_features(image_points, np.arange(len(self.points_3d)))
        self.bootstrap_points = np.empty((0, 2), dtype=np.float32)
        self.solver.reset()
        if rotation is not None and translation is not None:
            self.solver.seed(rotation, translation)
        self.state = TrackingState.TRACKING
