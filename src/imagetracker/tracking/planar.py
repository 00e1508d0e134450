"""
Natural-feature tracker for a known planar marker.

The tracker is given a textured marker image. It finds the marker in the
video by descriptor matching and a RANSAC homography (bootstrap), then follows
the matched features frame to frame with optical flow, solving the camera pose
from the 2D features and their marker-plane coordinates on every frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from ..pose import PoseSolver
from ..utils import dataclass_from_dict
from .base import BaseTracker, FailureReason, TrackerFrameResult, TrackingState
from .feature import (
    FeatureBackend,
    OpticalFlowConfig,
    keypoints_to_array,
    to_gray,
    track_optical_flow,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class PlanarTrackerConfig:
    """Configuration for the planar marker tracker."""

    min_marker_keypoints: int = 20
    min_bootstrap_inliers: int = 10  # Never below 4, the homography minimum
    min_tracked_features: int = 10  # Fewer than this means tracking is lost
    min_pose_points: int = 4
    ransac_reproj_threshold: float = 3.0  # pixels
    marker_size: float = 1.0  # Physical length of the marker's longer side
    reestimate_homography: bool = True  # Reject flow outliers with a homography
    use_pnp_ransac: bool = False
    pnp_reproj_threshold: float = 8.0


@dataclass(frozen=True)
class Marker:
    """A registered marker image and its features."""

    image: np.ndarray
    keypoints: Tuple[cv2.KeyPoint, ...]
    points: np.ndarray  # (N, 2) keypoint positions in marker pixels
    descriptors: np.ndarray
    quad: np.ndarray  # (4, 2) marker corners in marker pixels
    object_points: np.ndarray  # (N, 3) keypoints on the z=0 marker plane

    @property
    def size(self) -> Tuple[int, int]:
        height, width = self.image.shape[:2]
        return width, height


class PlanarTracker(BaseTracker):
    """
    Tracks one planar marker and exposes its pose as a model-view matrix.

    Switches automatically from bootstrap (descriptor matching) to
    optical-flow tracking, and back when too many features are lost.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        config: Optional[Dict] = None,
        backend: Optional[FeatureBackend] = None,
        dist_coeffs: Optional[np.ndarray] = None,
    ):
        cfg_dict = dict(config or {})
        self.config = dataclass_from_dict(PlanarTrackerConfig, cfg_dict)
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
            use_ransac=self.config.use_pnp_ransac,
            ransac_reproj_threshold=self.config.pnp_reproj_threshold,
            method="planar",
        )
        self.marker: Optional[Marker] = None
        self.homography: Optional[np.ndarray] = None
        self.label: str = ""

    # ------------------------------------------------------------------ #
    # Marker registration
    # ------------------------------------------------------------------ #
    def set_marker(self, image: np.ndarray, label: str = "") -> bool:
        """Register the marker to track.

        Returns False when the marker has too little texture to be tracked.
        The marker, state, features and pose are then left as they were; only
        the diagnostic ``last_failure`` records the reason.
        """
        gray = to_gray(image)
        keypoints, descriptors = self.backend.detect_and_compute(gray)

        if descriptors is None or len(keypoints) < self.config.min_marker_keypoints:
            self.last_failure = FailureReason.INSUFFICIENT_FEATURES
            LOGGER.warning(
                "Marker %r rejected: %d keypoints (need %d)",
                label,
                len(keypoints),
                self.config.min_marker_keypoints,
            )
            return False

        height, width = gray.shape[:2]
        points = keypoints_to_array(keypoints)
        scale = self.config.marker_size / float(max(width, height))
        object_points = np.zeros((len(points), 3), dtype=np.float64)
        object_points[:, 0] = (points[:, 0] - width / 2.0) * scale
        object_points[:, 1] = (points[:, 1] - height / 2.0) * scale

        self.marker = Marker(
            image=gray.copy(),
            keypoints=tuple(keypoints),
            points=points,
            descriptors=descriptors,
            quad=np.array(
                [[0, 0], [width, 0], [width, height], [0, height]], dtype=np.float32
            ),
            object_points=object_points,
        )
        self.label = label
        self.reset()
        LOGGER.info("Marker %r set: %dx%d, %d keypoints", label, width, height, len(keypoints))
        return True

    # ------------------------------------------------------------------ #
    # Per-frame processing
    # ------------------------------------------------------------------ #
    def process(self, frame: np.ndarray, mask: Optional[np.ndarray] = None) -> TrackerFrameResult:
        """Bootstrap or track on ``frame``, then update the pose."""
        gray = to_gray(frame)
        self.frame_index += 1
        self.last_failure = None

        if self.state == TrackingState.IDLE:
            return self._result(pose_updated=False)

        if self.state == TrackingState.BOOTSTRAPPING:
            self.bootstrap_tracking(gray, mask=mask)
        else:
            self.track(gray)

        pose_updated = False
        if self.can_calc_model_view_matrix():
            pose_updated = self.calc_model_view_matrix()
        return self._result(pose_updated)

    def bootstrap_tracking(
        self,
        frame: np.ndarray,
        homography: Optional[np.ndarray] = None,
        mask: Optional[np.ndarray] = None,
    ) -> bool:
        """Find the marker in ``frame`` by matching and a robust homography."""
        gray = to_gray(frame)
        if self.marker is None:
            raise RuntimeError("No marker set; call set_marker() first.")
        self.prev_gray = gray

        min_inliers = max(4, self.config.min_bootstrap_inliers)
        keypoints, descriptors = self.backend.detect_and_compute(gray, mask)
        if descriptors is None or len(keypoints) < min_inliers:
            return self._fail(
                FailureReason.INSUFFICIENT_FEATURES, "%d frame keypoints", len(keypoints)
            )

        matches = self.backend.match(descriptors, self.marker.descriptors)
        if len(matches) < min_inliers:
            return self._fail(FailureReason.INSUFFICIENT_FEATURES, "%d matches", len(matches))

        frame_points = np.array([keypoints[m.queryIdx].pt for m in matches], dtype=np.float32)
        marker_indices = np.array([m.trainIdx for m in matches], dtype=np.int64)
        marker_points = self.marker.points[marker_indices]

        if homography is None:
            try:
                homography, inlier_mask = cv2.findHomography(
                    marker_points, frame_points, cv2.RANSAC, self.config.ransac_reproj_threshold
                )
            except cv2.error as e:
                LOGGER.debug("Bootstrap homography failed: %s", e)
                homography, inlier_mask = None, None
            if homography is None or inlier_mask is None:
                return self._fail(FailureReason.DEGENERATE_GEOMETRY, "no homography")
            inliers = inlier_mask.reshape(-1).astype(bool)
        else:
            homography = np.asarray(homography, dtype=np.float64).reshape(3, 3)
            projected = cv2.perspectiveTransform(
                marker_points.reshape(-1, 1, 2), homography
            ).reshape(-1, 2)
            errors = np.linalg.norm(projected - frame_points, axis=1)
            inliers = errors < self.config.ransac_reproj_threshold

        inlier_count = int(np.count_nonzero(inliers))
        if inlier_count < min_inliers:
            return self._fail(
                FailureReason.INSUFFICIENT_FEATURES,
                "%d homography inliers (need %d)",
                inlier_count,
                min_inliers,
            )

        self._set_features(frame_points[inliers], marker_indices[inliers])
        self.homography = homography
        self.state = TrackingState.TRACKING
        LOGGER.info(
            "Marker %r found: %d/%d inliers, switching to tracking",
            self.label,
            inlier_count,
            len(matches),
        )
        return True

    def track(self, frame: np.ndarray) -> bool:
        """Follow the tracked features into ``frame`` with optical flow."""
        gray = to_gray(frame)
        if self.marker is None:
            raise RuntimeError("No marker set; call set_marker() first.")
        prev_gray, self.prev_gray = self.prev_gray, gray

        if prev_gray is not None and len(self.tracked_points):
            next_points, keep = track_optical_flow(
                prev_gray, gray, self.tracked_points, self.flow_config
            )
            self._keep_features(keep, next_points)
        else:
            self._clear_features()

        if self.config.reestimate_homography and len(self.tracked_points) >= 4:
            self._reject_homography_outliers()

        if len(self.tracked_points) < self.config.min_tracked_features:
            LOGGER.info(
                "Tracking of marker %r lost: %d features left",
                self.label,
                len(self.tracked_points),
            )
            self._restart_bootstrap()
            self.last_failure = FailureReason.TRACKING_LOST
            return False
        return True

    # ------------------------------------------------------------------ #
    # Pose
    # ------------------------------------------------------------------ #
    def can_calc_model_view_matrix(self) -> bool:
        return (
            self.state == TrackingState.TRACKING
            and self.marker is not None
            and len(self.tracked_points) >= self.config.min_pose_points
        )

    def calc_model_view_matrix(self) -> bool:
        """Solve the pose from the tracked features; keep the old one on failure."""
        if not self.can_calc_model_view_matrix():
            return False
        object_points = self.marker.object_points[self.tracked_indices]
        pose = self.solver.solve(object_points, self.tracked_points)
        if not pose.success:
            LOGGER.debug("Pose solve failed for marker %r", self.label)
            return False
        self._publish_pose(pose)
        return True

    # ------------------------------------------------------------------ #
    # Reset / helpers
    # ------------------------------------------------------------------ #
    def reset(self):
        """Drop all tracked features and the pose, and bootstrap again."""
        self._restart_bootstrap()
        self._clear_pose()

    def get_marker_quad(self) -> Optional[np.ndarray]:
        """Marker corners in the current frame, if the marker is located."""
        return self._project_quad(self.marker, self.homography)

    def get_marker_mask(self, shape: Tuple[int, ...]) -> np.ndarray:
        """uint8 mask (255 inside) of the marker's current image region.

        Safe to call while a worker thread is processing frames: the state,
        marker and homography are each read once.
        """
        mask = np.zeros(shape[:2], dtype=np.uint8)
        state, marker, homography = self.state, self.marker, self.homography
        if state != TrackingState.TRACKING:
            return mask
        quad = self._project_quad(marker, homography)
        if quad is not None:
            cv2.fillConvexPoly(mask, np.round(quad).astype(np.int32), 255)
        return mask

    @staticmethod
    def _project_quad(marker: Optional[Marker], homography: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if marker is None or homography is None:
            return None
        return cv2.perspectiveTransform(marker.quad.reshape(-1, 1, 2), homography).reshape(-1, 2)

    def _restart_bootstrap(self):
        self._clear_features()
        self.homography = None
        self.solver.reset()
        self.state = TrackingState.BOOTSTRAPPING if self.marker is not None else TrackingState.IDLE

    def _reject_homography_outliers(self):
        marker_points = self.marker.points[self.tracked_indices]
        try:
            homography, inlier_mask = cv2.findHomography(
                marker_points, self.tracked_points, cv2.RANSAC, self.config.ransac_reproj_threshold
            )
        except cv2.error as e:
            LOGGER.debug("Tracking homography failed: %s", e)
            return
        if homography is None or inlier_mask is None:
            return
        self._keep_features(inlier_mask.reshape(-1).astype(bool))
        self.homography = homography

    def _result(self, pose_updated: bool) -> TrackerFrameResult:
        homography = self.homography
        return TrackerFrameResult(
            state=self.state,
            tracked_count=len(self.tracked_points),
            pose_updated=pose_updated,
            failure=self.last_failure,
            homography=None if homography is None else homography.copy(),
            frame_index=self.frame_index,
        )
