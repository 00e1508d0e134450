"""
Tracking subpackage.

Provides the planar marker tracker, the structure-from-motion ad-hoc tracker
and the feature backend they share.

Supported detectors:
- ORB (default, fast and robust)
- FAST + BRIEF (very fast)
- AKAZE (scale/rotation invariant)
- BRISK (balanced)
- SIFT (most robust)
- GFTT + ORB (Good Features To Track with ORB descriptors)
"""

from .adhoc import AdHocSfMTracker, AdHocTrackerConfig, SfMBootstrapResult
from .base import FailureReason, TrackerFrameResult, TrackingState
from .feature import (
    DetectorType,
    FeatureBackend,
    FeatureBackendConfig,
    FeatureDetectorFactory,
    MatcherType,
    OpenCVFeatureBackend,
    OpticalFlowConfig,
    track_optical_flow,
)
from .planar import Marker, PlanarTracker, PlanarTrackerConfig

__all__ = [
    "AdHocSfMTracker",
    "AdHocTrackerConfig",
    "DetectorType",
    "FailureReason",
    "FeatureBackend",
    "FeatureBackendConfig",
    "FeatureDetectorFactory",
    "Marker",
    "MatcherType",
    "OpenCVFeatureBackend",
    "OpticalFlowConfig",
    "PlanarTracker",
    "PlanarTrackerConfig",
    "SfMBootstrapResult",
    "TrackerFrameResult",
    "TrackingState",
    "track_optical_flow",
]
