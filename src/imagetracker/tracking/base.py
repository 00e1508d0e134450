"""
State, results and bookkeeping shared by the planar and ad-hoc trackers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from ..pose import PoseResult, PoseSolver, validate_camera_matrix
from ..worker import LatestSlot
from .feature import FeatureBackend, OpenCVFeatureBackend, OpticalFlowConfig

LOGGER = logging.getLogger(__name__)


class TrackingState(Enum):
    """Tracker life cycle."""
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    TRACKING = "tracking"


class FailureReason(Enum):
    """Expected, recoverable conditions reported instead of raised."""
    INSUFFICIENT_FEATURES = "insufficient_features"
    DEGENERATE_GEOMETRY = "degenerate_geometry"
    TRACKING_LOST = "tracking_lost"
    CLASSIFICATION_UNCERTAIN = "classification_uncertain"


@dataclass
class TrackerFrameResult:
    """Result container for one ``process`` call."""

    state: TrackingState
    tracked_count: int = 0
    pose_updated: bool = False
    failure: Optional[FailureReason] = None
    homography: Optional[np.ndarray] = None
    frame_index: int = 0


class BaseTracker:
    """
    Holds the tracked 2D features, their link array and the published pose.

    ``tracked_points[i]`` is always linked through ``tracked_indices[i]``:
    every removal goes through ``_keep_features`` so both arrays shrink
    together.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        backend: Optional[FeatureBackend] = None,
        flow_config: Optional[OpticalFlowConfig] = None,
        backend_config: Optional[dict] = None,
    ):
        self.camera_matrix = validate_camera_matrix(camera_matrix)
        self.backend: FeatureBackend = backend or OpenCVFeatureBackend(backend_config)
        self.flow_config = flow_config or OpticalFlowConfig()

        self.state = TrackingState.IDLE
        self.last_failure: Optional[FailureReason] = None
        self.frame_index = 0

        self.tracked_points = np.empty((0, 2), dtype=np.float32)
        self.tracked_indices = np.empty(0, dtype=np.int64)
        self.prev_gray: Optional[np.ndarray] = None

        self.pose: Optional[PoseResult] = None
        self.solver: Optional[PoseSolver] = None
        self._model_view: LatestSlot[np.ndarray] = LatestSlot(np.eye(4))

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def get_tracked_features(self) -> np.ndarray:
        return self.tracked_points.copy()

    def is_tracking(self) -> bool:
        return self.state == TrackingState.TRACKING

    def get_model_view_matrix(self) -> np.ndarray:
        """Latest model-view matrix; identity until a pose has been computed."""
        return self._model_view.read()

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #
    def _set_features(self, points: np.ndarray, indices: np.ndarray):
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        indices = np.asarray(indices, dtype=np.int64).reshape(-1)
        if len(points) != len(indices):
            raise ValueError(
                f"Feature/link length mismatch: {len(points)} points, {len(indices)} links"
            )
        self.tracked_points = points
        self.tracked_indices = indices

    def _keep_features(self, keep: np.ndarray, points: Optional[np.ndarray] = None):
        """Keep the rows selected by ``keep`` in both the features and links."""
        keep = np.asarray(keep, dtype=bool).reshape(-1)
        source = self.tracked_points if points is None else np.asarray(points, dtype=np.float32)
        self._set_features(source.reshape(-1, 2)[keep], self.tracked_indices[keep])

    def _clear_features(self):
        self.tracked_points = np.empty((0, 2), dtype=np.float32)
        self.tracked_indices = np.empty(0, dtype=np.int64)

    def _fail(self, reason: FailureReason, message: str, *args) -> bool:
        self.last_failure = reason
        LOGGER.debug("%s: " + message, reason.value, *args)
        return False

    def _publish_pose(self, pose: PoseResult):
        self.pose = pose
        self._model_view.put(pose.model_view_matrix())

    def _clear_pose(self):
        self.pose = None
        self._model_view.write(np.eye(4))
        if self.solver is not None:
            self.solver.reset()
