"""
imagetracker - monocular visual tracking for augmented reality.

This package provides functionality for:
- Planar marker tracking (homography bootstrap, optical flow, PnP)
- Ad-hoc surface tracking from two-view structure from motion
- Bag-of-visual-words marker recognition
- Multi-marker orchestration with optional worker threads
"""

from .geometry import decompose_essential_matrix, triangulate_and_check_reproj
from .image_tracker import ImageTracker, ImageTrackerConfig
from .marker_detect import MarkerDetector, MarkerDetectorConfig
from .pose import CalibrationData, PoseResult, PoseSolver, load_calibration, to_gl_buffer
from .tracking import (
    AdHocSfMTracker,
    AdHocTrackerConfig,
    FailureReason,
    FeatureBackend,
    OpenCVFeatureBackend,
    PlanarTracker,
    PlanarTrackerConfig,
    TrackerFrameResult,
    TrackingState,
)
from .worker import LatestSlot, TrackerWorker

__version__ = "0.1.0"

__all__ = [
    # Trackers
    "PlanarTracker",
    "PlanarTrackerConfig",
    "AdHocSfMTracker",
    "AdHocTrackerConfig",
    "TrackerFrameResult",
    "TrackingState",
    "FailureReason",
    # Features
    "FeatureBackend",
    "OpenCVFeatureBackend",
    # Recognition / orchestration
    "MarkerDetector",
    "MarkerDetectorConfig",
    "ImageTracker",
    "ImageTrackerConfig",
    # Pose / geometry
    "CalibrationData",
    "PoseResult",
    "PoseSolver",
    "load_calibration",
    "to_gl_buffer",
    "decompose_essential_matrix",
    "triangulate_and_check_reproj",
    # Threading
    "LatestSlot",
    "TrackerWorker",
]
