"""
Feature backend and sparse optical-flow utilities shared by the trackers.

Supports multiple detector/descriptor combinations:
- ORB (default, fast and robust)
- FAST + BRIEF (very fast, less distinctive)
- AKAZE (good for scale/rotation invariance)
- BRISK (balanced speed/accuracy)
- SIFT (most robust)
- Good Features to Track + ORB descriptors

Trackers and the marker detector only rely on the ``FeatureBackend``
protocol, so any object exposing ``detect``/``compute``/``match`` can be
swapped in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from ..utils import dataclass_from_dict

LOGGER = logging.getLogger(__name__)


class DetectorType(Enum):
    """Supported feature detector types."""
    ORB = "orb"
    FAST_BRIEF = "fast_brief"
    AKAZE = "akaze"
    BRISK = "brisk"
    SIFT = "sift"
    GFTT_ORB = "gftt_orb"  # Good Features To Track + ORB descriptors


class MatcherType(Enum):
    """Supported descriptor matcher types."""
    BF = "bf"  # Brute force, norm picked from the descriptor type
    FLANN = "flann"  # Fast approximate matching


@dataclass
class FeatureBackendConfig:
    """Configuration for keypoint detection, description and matching."""

    method: str = "orb"
    max_features: int = 1000

    # ORB-specific
    fast_threshold: int = 20
    orb_scale_factor: float = 1.2
    orb_nlevels: int = 8
    orb_edge_threshold: int = 31
    orb_patch_size: int = 31

    # FAST-specific
    fast_nonmax_suppression: bool = True

    # AKAZE-specific
    akaze_threshold: float = 0.001

    # BRISK-specific
    brisk_threshold: int = 30
    brisk_octaves: int = 3

    # SIFT-specific
    sift_contrast_threshold: float = 0.04
    sift_edge_threshold: float = 10.0

    # GFTT-specific
    quality_level: float = 0.01
    min_distance: float = 7.0

    # Matching
    matcher_type: str = "bf"
    match_ratio_threshold: float = 0.75  # Lowe's ratio test threshold
    cross_check: bool = False  # Use symmetric matches instead of the ratio test
    min_match_distance: float = 30.0  # Accept a lone knn match below this distance


@dataclass
class OpticalFlowConfig:
    """Pyramidal Lucas-Kanade parameters."""

    win_size: int = 21
    max_level: int = 3
    criteria_count: int = 30
    criteria_eps: float = 0.03
    min_eig_threshold: float = 0.001
    forward_backward_check: bool = True
    max_forward_backward_error: float = 0.0  # <= 0 uses half the window size


class FeatureBackend(Protocol):
    """Capability set the trackers need: detect, describe and match."""

    norm: str

    def detect(self, gray: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        ...

    def compute(
        self, gray: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        ...

    def detect_and_compute(
        self, gray: np.ndarray, mask: Optional[np.ndarray] = None
    ) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        ...

    def match(self, query: Optional[np.ndarray], train: Optional[np.ndarray]) -> List[cv2.DMatch]:
        ...


class FeatureDetectorFactory:
    """Factory for creating feature detectors and descriptors."""

    @staticmethod
    def create_detector(
        detector_type: str,
        config: FeatureBackendConfig,
    ) -> Tuple[Optional[cv2.Feature2D], cv2.Feature2D, str]:
        """
        Create detector and descriptor extractor.

        Returns:
            (detector, descriptor_extractor, matcher_norm)
        """
        dtype = detector_type.lower()

        if dtype == DetectorType.ORB.value:
            detector = cv2.ORB_create(
                nfeatures=config.max_features,
                scaleFactor=config.orb_scale_factor,
                nlevels=config.orb_nlevels,
                edgeThreshold=config.orb_edge_threshold,
                patchSize=config.orb_patch_size,
                fastThreshold=config.fast_threshold,
            )
            return detector, detector, "hamming"

        elif dtype == DetectorType.FAST_BRIEF.value:
            detector = cv2.FastFeatureDetector_create(
                threshold=config.fast_threshold,
                nonmaxSuppression=config.fast_nonmax_suppression,
            )
            try:
                descriptor = cv2.xfeatures2d.BriefDescriptorExtractor_create()
            except AttributeError:
                LOGGER.warning("BRIEF not available, falling back to ORB descriptors")
                descriptor = cv2.ORB_create(nfeatures=config.max_features)
            return detector, descriptor, "hamming"

        elif dtype == DetectorType.AKAZE.value:
            detector = cv2.AKAZE_create(threshold=config.akaze_threshold)
            return detector, detector, "hamming"

        elif dtype == DetectorType.BRISK.value:
            detector = cv2.BRISK_create(
                thresh=config.brisk_threshold,
                octaves=config.brisk_octaves,
            )
            return detector, detector, "hamming"

        elif dtype == DetectorType.SIFT.value:
            try:
                detector = cv2.SIFT_create(
                    nfeatures=config.max_features,
                    contrastThreshold=config.sift_contrast_threshold,
                    edgeThreshold=config.sift_edge_threshold,
                )
                return detector, detector, "l2"
            except AttributeError:
                LOGGER.warning("SIFT not available, falling back to ORB")
                return FeatureDetectorFactory.create_detector("orb", config)

        elif dtype == DetectorType.GFTT_ORB.value:
            # Good Features To Track for detection, ORB for description
            descriptor = cv2.ORB_create(nfeatures=config.max_features)
            return None, descriptor, "hamming"  # None detector = use GFTT

        else:
            LOGGER.warning("Unknown detector type '%s', using ORB", dtype)
            return FeatureDetectorFactory.create_detector("orb", config)

    @staticmethod
    def create_matcher(matcher_type: str, norm: str, cross_check: bool = False) -> cv2.DescriptorMatcher:
        """Create a descriptor matcher."""
        if matcher_type == MatcherType.FLANN.value and not cross_check:
            if norm == "hamming":
                # FLANN for binary descriptors
                index_params = dict(
                    algorithm=6,  # FLANN_INDEX_LSH
                    table_number=6,
                    key_size=12,
                    multi_probe_level=1,
                )
            else:
                # FLANN for float descriptors
                index_params = dict(algorithm=1, trees=5)  # FLANN_INDEX_KDTREE
            search_params = dict(checks=50)
            return cv2.FlannBasedMatcher(index_params, search_params)

        norm_type = cv2.NORM_HAMMING if norm == "hamming" else cv2.NORM_L2
        return cv2.BFMatcher(norm_type, crossCheck=cross_check)


class OpenCVFeatureBackend:
    """``FeatureBackend`` built from OpenCV detectors, extractors and matchers."""

    def __init__(self, config: Optional[Dict] = None):
        self.config = dataclass_from_dict(FeatureBackendConfig, config)
        self.detector, self.descriptor_extractor, self.norm = (
            FeatureDetectorFactory.create_detector(self.config.method, self.config)
        )
        self.matcher = FeatureDetectorFactory.create_matcher(
            self.config.matcher_type, self.norm, self.config.cross_check
        )
        LOGGER.debug(
            "Feature backend initialized: detector=%s, matcher=%s, cross_check=%s",
            self.config.method,
            self.config.matcher_type,
            self.config.cross_check,
        )

    def detect(self, gray: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        """Detect keypoints, keeping the strongest ``max_features``."""
        if self.detector is None:
            corners = cv2.goodFeaturesToTrack(
                gray,
                maxCorners=self.config.max_features,
                qualityLevel=self.config.quality_level,
                minDistance=self.config.min_distance,
                mask=mask,
            )
            if corners is None:
                return []
            return [
                cv2.KeyPoint(x=float(pt[0][0]), y=float(pt[0][1]), size=31)
                for pt in corners
            ]

        keypoints = list(self.detector.detect(gray, mask))
        if len(keypoints) > self.config.max_features:
            keypoints = sorted(keypoints, key=lambda x: x.response, reverse=True)
            keypoints = keypoints[:self.config.max_features]
        return keypoints

    def compute(
        self, gray: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        if not keypoints:
            return [], None
        keypoints, descriptors = self.descriptor_extractor.compute(gray, list(keypoints))
        return list(keypoints or []), descriptors

    def detect_and_compute(
        self, gray: np.ndarray, mask: Optional[np.ndarray] = None
    ) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        return self.compute(gray, self.detect(gray, mask))

    def match(self, query: Optional[np.ndarray], train: Optional[np.ndarray]) -> List[cv2.DMatch]:
        """Match ``query`` descriptors to ``train`` descriptors.

        Ambiguous matches are rejected either with Lowe's ratio test (default)
        or, when ``cross_check`` is set, by keeping only mutual best matches.
        """
        if query is None or train is None or len(query) == 0 or len(train) == 0:
            return []

        try:
            if self.config.cross_check:
                return list(self.matcher.match(query, train))
            knn_matches = self.matcher.knnMatch(query, train, k=2)
        except cv2.error as e:
            LOGGER.debug("Descriptor matching failed: %s", e)
            return []

        good_matches = []
        for match_pair in knn_matches:
            if len(match_pair) >= 2:
                m, n = match_pair[0], match_pair[1]
                if m.distance < self.config.match_ratio_threshold * n.distance:
                    good_matches.append(m)
            elif len(match_pair) == 1:
                # Only one match found, use if distance is good
                if match_pair[0].distance < self.config.min_match_distance:
                    good_matches.append(match_pair[0])
        return good_matches


# ---------------------------------------------------------------------- #
# Optical flow
# ---------------------------------------------------------------------- #
def track_optical_flow(
    prev_gray: np.ndarray,
    gray: np.ndarray,
    points: np.ndarray,
    config: Optional[OpticalFlowConfig] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Track points from ``prev_gray`` into ``gray``.

    Returns:
        (next_points, keep_mask) where both have one row per input point;
        ``keep_mask`` is False for points that failed to track, failed the
        forward-backward check, or left the image.
    """
    config = config or OpticalFlowConfig()
    prev_points = np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)
    count = len(prev_points)
    if count == 0:
        return np.empty((0, 2), dtype=np.float32), np.zeros(0, dtype=bool)

    lk_params = dict(
        winSize=(config.win_size, config.win_size),
        maxLevel=config.max_level,
        criteria=(
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT,
            config.criteria_count,
            config.criteria_eps,
        ),
        minEigThreshold=config.min_eig_threshold,
    )

    try:
        next_pts, status, _ = cv2.calcOpticalFlowPyrLK(
            prev_gray, gray, prev_points, None, **lk_params
        )
    except cv2.error as e:
        LOGGER.debug("Optical flow failed: %s", e)
        return prev_points.reshape(-1, 2), np.zeros(count, dtype=bool)

    if next_pts is None or status is None:
        return prev_points.reshape(-1, 2), np.zeros(count, dtype=bool)

    keep = status.reshape(-1).astype(bool)

    if config.forward_backward_check:
        back_pts, back_status, _ = cv2.calcOpticalFlowPyrLK(
            gray, prev_gray, next_pts, None, **lk_params
        )
        if back_pts is None or back_status is None:
            keep[:] = False
        else:
            max_error = config.max_forward_backward_error
            if max_error <= 0:
                max_error = config.win_size * 0.5
            fb_error = np.linalg.norm(
                prev_points.reshape(-1, 2) - back_pts.reshape(-1, 2), axis=1
            )
            keep &= back_status.reshape(-1).astype(bool) & (fb_error < max_error)

    next_flat = next_pts.reshape(-1, 2)
    height, width = gray.shape[:2]
    in_bounds = (
        np.isfinite(next_flat).all(axis=1)
        & (next_flat[:, 0] >= 0)
        & (next_flat[:, 1] >= 0)
        & (next_flat[:, 0] <= width - 1)
        & (next_flat[:, 1] <= height - 1)
    )
    keep &= in_bounds
    return next_flat, keep


# ---------------------------------------------------------------------- #
# Utilities
# ---------------------------------------------------------------------- #
def to_gray(frame: Optional[np.ndarray]) -> np.ndarray:
    """Return a single-channel view of ``frame``; reject empty input."""
    if frame is None or frame.size == 0:
        raise ValueError("Frame cannot be empty.")
    if frame.ndim == 2:
        return frame
    if frame.ndim == 3 and frame.shape[2] == 1:
        return frame[:, :, 0]
    if frame.ndim == 3 and frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    if frame.ndim == 3 and frame.shape[2] == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    raise ValueError(f"Unsupported frame shape: {frame.shape}")


def keypoints_to_array(keypoints: Optional[Sequence[cv2.KeyPoint]]) -> np.ndarray:
    if not keypoints:
        return np.empty((0, 2), dtype=np.float32)
    return np.array([kp.pt for kp in keypoints], dtype=np.float32)
