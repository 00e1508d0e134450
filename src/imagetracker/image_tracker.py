"""
Multi-marker orchestration.

``ImageTracker`` recognises registered markers in the part of the frame that
is not already being tracked and runs one ``PlanarTracker`` per recognised
marker, either inline or on per-tracker worker threads.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .marker_detect import MarkerDetector
from .pose import validate_camera_matrix
from .tracking.base import TrackingState
from .tracking.feature import FeatureBackend, OpenCVFeatureBackend, to_gray
from .tracking.planar import PlanarTracker
from .utils import dataclass_from_dict, section_config
from .worker import TrackerWorker

LOGGER = logging.getLogger(__name__)

MarkerSource = Union[str, Path, Tuple[np.ndarray, str]]


@dataclass
class ImageTrackerConfig:
    use_workers: bool = False
    max_bootstrap_frames: int = 30  # Drop a tracker after this many frames without tracking
    mask_margin: int = 10  # Pixels around tracked markers also hidden from recognition


class ImageTracker:
    """
    Finds known markers in the video and keeps a planar tracker on each.

    Typical use::

        tracker = ImageTracker(camera_matrix, config)
        tracker.setup(["poster.png", "cover.png"])
        for frame in frames:
            tracker.update(frame)
            for planar in tracker.get_trackers():
                render(planar.label, planar.get_model_view_matrix())
        tracker.stop()
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        config: Optional[Dict] = None,
        backend: Optional[FeatureBackend] = None,
        dist_coeffs: Optional[np.ndarray] = None,
    ):
        self.config = dict(config or {})
        self.settings = dataclass_from_dict(ImageTrackerConfig, self.config.get("image_tracker"))
        self.camera_matrix = validate_camera_matrix(camera_matrix)
        self.dist_coeffs = dist_coeffs

        self._shared_backend = backend
        self.backend: FeatureBackend = backend or OpenCVFeatureBackend(self.config.get("feature_backend"))
        self.detector = MarkerDetector(section_config(self.config, "marker_detector"), backend=self.backend)

        self._trackers: List[PlanarTracker] = []
        self._workers: Dict[int, TrackerWorker] = {}
        self._missed_frames: Dict[int, int] = {}
        self._untrackable: set = set()

    # ------------------------------------------------------------------ #
    # Setup
    # ------------------------------------------------------------------ #
    def setup(self, markers: Iterable[MarkerSource]) -> int:
        """Register markers, build the vocabulary and train one sample each.

        ``markers`` holds image file paths (labelled by file stem) or
        ``(image, label)`` pairs. Returns the number of trained markers.
        """
        for marker in markers:
            if isinstance(marker, (str, Path)):
                self.detector.add_marker_file(marker)
            else:
                image, label = marker
                self.detector.add_marker(image, label)

        self.detector.cluster()

        trained = 0
        for image, label in zip(self.detector.markers, self.detector.marker_labels):
            if self.detector.add_image_to_training(image, label):
                trained += 1
        LOGGER.info("Image tracker set up with %d/%d markers", trained, len(self.detector.markers))
        return trained

    def load_model(self, path: Union[str, Path]):
        """Use a detector previously saved with ``save_model``.

        Without an injected backend the trackers switch to the feature
        backend stored with the model.
        """
        self.detector.read_from_file(path)
        if self._shared_backend is None and isinstance(self.detector.backend, OpenCVFeatureBackend):
            self.backend = self.detector.backend
            self.config["feature_backend"] = asdict(self.backend.config)

    def save_model(self, path: Union[str, Path]) -> Path:
        return self.detector.save_to_file(path)

    # ------------------------------------------------------------------ #
    # Per-frame processing
    # ------------------------------------------------------------------ #
    def update(self, frame: np.ndarray) -> str:
        """Feed ``frame`` to all trackers and look for new markers.

        Returns the label of a marker newly recognised in this frame, or "".
        """
        gray = to_gray(frame)

        for tracker in list(self._trackers):
            worker = self._workers.get(id(tracker))
            if worker is not None:
                worker.submit(gray)
            else:
                tracker.process(gray)
        self._drop_stalled_trackers()

        label = self.detector.detect_marker_in_image(gray, self._untracked_mask(gray.shape))
        if not label or label in self._untrackable or self._is_tracked(label):
            return ""

        tracker = self._create_tracker(label)
        if tracker is None:
            return ""
        worker = self._workers.get(id(tracker))
        if worker is not None:
            worker.submit(gray)
        else:
            tracker.process(gray)
        return label

    def get_trackers(self) -> List[PlanarTracker]:
        return list(self._trackers)

    def get_model_view_matrices(self) -> Dict[str, np.ndarray]:
        """Latest model-view matrix per tracked label."""
        return {tracker.label: tracker.get_model_view_matrix() for tracker in self._trackers}

    def stop(self):
        """Stop all worker threads and forget the trackers."""
        for worker in self._workers.values():
            worker.stop()
        self._workers.clear()
        self._trackers.clear()
        self._missed_frames.clear()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _is_tracked(self, label: str) -> bool:
        return any(tracker.label == label for tracker in self._trackers)

    def _untracked_mask(self, shape: Sequence[int]) -> np.ndarray:
        tracked = np.zeros(shape[:2], dtype=np.uint8)
        for tracker in self._trackers:
            tracked |= tracker.get_marker_mask(shape)
        margin = self.settings.mask_margin
        if margin > 0 and self._trackers:
            kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (2 * margin + 1, 2 * margin + 1))
            tracked = cv2.dilate(tracked, kernel)
        return cv2.bitwise_not(tracked)

    def _create_tracker(self, label: str) -> Optional[PlanarTracker]:
        marker = self.detector.get_marker(label)
        if marker is None:
            LOGGER.warning("Recognised label %r has no marker image", label)
            self._untrackable.add(label)
            return None

        tracker = PlanarTracker(
            self.camera_matrix,
            section_config(self.config, "planar_tracker"),
            backend=self._tracker_backend(),
            dist_coeffs=self.dist_coeffs,
        )
        if not tracker.set_marker(marker, label):
            LOGGER.warning("Marker %r cannot be tracked; ignoring further detections", label)
            self._untrackable.add(label)
            return None

        self._trackers.append(tracker)
        self._missed_frames[id(tracker)] = 0
        if self.settings.use_workers:
            worker = TrackerWorker(tracker, name=f"tracker-{label}")
            self._workers[id(tracker)] = worker
            worker.start()
        LOGGER.info("Started tracking marker %r (%d active)", label, len(self._trackers))
        return tracker

    def _tracker_backend(self) -> FeatureBackend:
        # Worker threads get their own OpenCV objects
        if self._shared_backend is not None or not self.settings.use_workers:
            return self.backend
        return OpenCVFeatureBackend(self.config.get("feature_backend"))

    def _drop_stalled_trackers(self):
        for tracker in list(self._trackers):
            key = id(tracker)
            if tracker.state == TrackingState.TRACKING:
                self._missed_frames[key] = 0
                continue
            self._missed_frames[key] = self._missed_frames.get(key, 0) + 1
            if self._missed_frames[key] < self.settings.max_bootstrap_frames:
                continue

            LOGGER.info(
                "Dropping tracker for %r after %d frames without tracking",
                tracker.label,
                self._missed_frames[key],
            )
            worker = self._workers.pop(key, None)
            if worker is not None:
                worker.stop()
            self._trackers.remove(tracker)
            del self._missed_frames[key]
