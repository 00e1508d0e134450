"""
Marker detection module.

Recognises which of a set of known marker images is visible in a frame using
a bag-of-visual-words model:

1. descriptors of all registered markers are clustered into a vocabulary,
2. every image is encoded as a normalised histogram of vocabulary words,
3. an optional PCA basis compresses the histograms,
4. a k-nearest-neighbour classifier names the marker.

The trained state can be saved to and restored from a single ``.npz`` file.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import cv2
import numpy as np

from .tracking.feature import FeatureBackend, OpenCVFeatureBackend, to_gray
from .utils import dataclass_from_dict

LOGGER = logging.getLogger(__name__)

# Settings that change classification results and are stored with the model
_PERSISTED_SETTINGS = ("pca_components", "knn_k", "max_distance")


@dataclass
class MarkerDetectorConfig:
    """Configuration for vocabulary building and classification."""

    vocabulary_size: int = 100
    kmeans_attempts: int = 3
    kmeans_max_iterations: int = 100
    kmeans_epsilon: float = 1e-3
    random_seed: int = 0
    pca_components: int = 0  # 0 disables PCA
    knn_k: int = 1
    max_distance: float = 1.0  # Reject matches farther than this (L2, unit histograms)


class MarkerDetector:
    """Bag-of-visual-words marker recogniser."""

    def __init__(self, config: Optional[Dict] = None, backend: Optional[FeatureBackend] = None):
        cfg_dict = dict(config or {})
        self.config = dataclass_from_dict(MarkerDetectorConfig, cfg_dict)
        self.backend: FeatureBackend = backend or OpenCVFeatureBackend(cfg_dict.get("feature_backend"))

        self.markers: List[np.ndarray] = []
        self.marker_labels: List[str] = []
        self._pooled_descriptors: List[np.ndarray] = []

        self.vocabulary: Optional[np.ndarray] = None
        self._vocabulary_matcher: Optional[cv2.DescriptorMatcher] = None

        self._training_rows: List[np.ndarray] = []
        self.training_labels: List[str] = []
        self.pca_mean: Optional[np.ndarray] = None
        self.pca_eigenvectors: Optional[np.ndarray] = None

        self._classifier = None
        self._classifier_dirty = True
        self.last_distance: Optional[float] = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def training(self) -> np.ndarray:
        if not self._training_rows:
            return np.empty((0, 0), dtype=np.float32)
        return np.vstack(self._training_rows).astype(np.float32)

    @property
    def labels(self) -> List[str]:
        """Distinct training labels in the order they were first seen."""
        return list(dict.fromkeys(self.training_labels))

    def get_marker(self, label: str) -> Optional[np.ndarray]:
        """Image registered under ``label``, if any."""
        for marker, marker_label in zip(self.markers, self.marker_labels):
            if marker_label == label:
                return marker
        return None

    # ------------------------------------------------------------------ #
    # Vocabulary
    # ------------------------------------------------------------------ #
    def add_marker(self, image: np.ndarray, label: str) -> bool:
        """Register a marker and pool its descriptors for clustering."""
        gray = to_gray(image)
        keypoints, descriptors = self.backend.detect_and_compute(gray)
        self.markers.append(gray.copy())
        self.marker_labels.append(label)

        if descriptors is None or len(descriptors) == 0:
            LOGGER.warning("Marker %r has no descriptors; it cannot shape the vocabulary", label)
            return False

        self._pooled_descriptors.append(descriptors.astype(np.float32))
        LOGGER.info("Marker %r added with %d descriptors", label, len(keypoints))
        return True

    def add_marker_file(self, marker_file: Union[str, Path]) -> bool:
        """Register a marker image from disk, labelled by its file stem."""
        image = cv2.imread(str(marker_file), cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise FileNotFoundError(f"Marker image not found or unreadable: {marker_file}")
        return self.add_marker(image, Path(marker_file).stem)

    def cluster(self):
        """Build the vocabulary from the pooled marker descriptors (k-means)."""
        if not self._pooled_descriptors:
            raise ValueError("No marker descriptors to cluster; add markers first.")

        data = np.vstack(self._pooled_descriptors).astype(np.float32)
        k = min(self.config.vocabulary_size, len(data))
        criteria = (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_MAX_ITER,
            self.config.kmeans_max_iterations,
            self.config.kmeans_epsilon,
        )
        cv2.setRNGSeed(self.config.random_seed)
        _, _, centers = cv2.kmeans(
            data, k, None, criteria, self.config.kmeans_attempts, cv2.KMEANS_PP_CENTERS
        )
        self.set_vocabulary(centers)
        LOGGER.info("Vocabulary built: %d words from %d descriptors", k, len(data))

    def set_vocabulary(self, vocabulary: np.ndarray):
        """Install a vocabulary; drops training data encoded with the old one."""
        self.vocabulary = np.ascontiguousarray(vocabulary, dtype=np.float32)
        self._vocabulary_matcher = cv2.BFMatcher(cv2.NORM_L2)
        self._training_rows = []
        self.training_labels = []
        self.pca_mean = None
        self.pca_eigenvectors = None
        self._classifier_dirty = True

    # ------------------------------------------------------------------ #
    # Encoding
    # ------------------------------------------------------------------ #
    def extract_bow_descriptor(
        self, image: np.ndarray, mask: Optional[np.ndarray] = None
    ) -> Optional[np.ndarray]:
        """Encode ``image`` as a unit-length histogram of vocabulary words.

        Returns None when no features are found in the (masked) image.
        """
        if self.vocabulary is None:
            raise RuntimeError("Vocabulary not built; call cluster() first.")

        gray = to_gray(image)
        _, descriptors = self.backend.detect_and_compute(gray, mask)
        if descriptors is None or len(descriptors) == 0:
            return None

        if descriptors.shape[1] != self.vocabulary.shape[1]:
            raise ValueError(
                f"Descriptor width {descriptors.shape[1]} does not match the vocabulary "
                f"width {self.vocabulary.shape[1]}; the feature backend differs from the "
                "one the vocabulary was built with."
            )

        matches = self._vocabulary_matcher.match(descriptors.astype(np.float32), self.vocabulary)
        words = np.array([m.trainIdx for m in matches], dtype=np.int64)
        histogram = np.bincount(words, minlength=len(self.vocabulary)).astype(np.float32)
        norm = np.linalg.norm(histogram)
        if norm > 0:
            histogram /= norm
        return histogram

    def fit_pca(self) -> bool:
        """Fit the PCA basis once over the current training encodings."""
        if self.config.pca_components <= 0 or self.pca_eigenvectors is not None:
            return False
        if not self._training_rows:
            return False

        data = self.training
        mean, eigenvectors = cv2.PCACompute(data, mean=None, maxComponents=self.config.pca_components)
        self.pca_mean = mean.astype(np.float32)
        self.pca_eigenvectors = eigenvectors.astype(np.float32)
        self._training_rows = list(self._project(data))
        self._classifier_dirty = True
        LOGGER.info(
            "PCA fitted on %d encodings: %d -> %d dimensions",
            len(data),
            data.shape[1],
            self.pca_eigenvectors.shape[0],
        )
        return True

    def _project(self, encodings: np.ndarray) -> np.ndarray:
        data = np.asarray(encodings, dtype=np.float32).reshape(-1, self.pca_mean.shape[1])
        return ((data - self.pca_mean) @ self.pca_eigenvectors.T).astype(np.float32)

    # ------------------------------------------------------------------ #
    # Training / classification
    # ------------------------------------------------------------------ #
    def add_image_to_training(self, image: np.ndarray, label: str) -> bool:
        """Encode ``image`` and append it to the training set under ``label``."""
        encoding = self.extract_bow_descriptor(image)
        if encoding is None:
            LOGGER.warning("Training image for %r has no features; skipped", label)
            return False

        if self.pca_eigenvectors is not None:
            encoding = self._project(encoding)[0]

        self._training_rows.append(encoding)
        self.training_labels.append(label)
        self._classifier_dirty = True
        return True

    def detect_marker_in_image(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> str:
        """Name the marker visible in ``image``, or return "" if none is recognised."""
        self.last_distance = None
        if not self._training_rows:
            LOGGER.debug("No training data; cannot classify")
            return ""

        if self.config.pca_components > 0 and self.pca_eigenvectors is None:
            self.fit_pca()

        encoding = self.extract_bow_descriptor(image, mask)
        if encoding is None:
            return ""
        if self.pca_eigenvectors is not None:
            encoding = self._project(encoding)[0]

        classifier = self._get_classifier()
        k = max(1, min(self.config.knn_k, len(self._training_rows)))
        _, _, neighbours, dists = classifier.findNearest(
            encoding.reshape(1, -1).astype(np.float32), k
        )
        distances = np.sqrt(np.maximum(dists.reshape(-1), 0.0))
        neighbour_ids = neighbours.reshape(-1).astype(np.int64)
        self.last_distance = float(distances[0])

        if distances[0] > self.config.max_distance:
            LOGGER.debug(
                "No confident match: nearest distance %.3f > %.3f",
                distances[0],
                self.config.max_distance,
            )
            return ""

        votes = Counter(neighbour_ids.tolist())
        best_count = max(votes.values())
        # Ties go to the label of the closest neighbour among the tied ones
        winner = next(i for i in neighbour_ids.tolist() if votes[i] == best_count)
        return self.labels[winner]

    def _get_classifier(self):
        if self._classifier is None or self._classifier_dirty:
            label_ids = {label: i for i, label in enumerate(self.labels)}
            responses = np.array(
                [label_ids[label] for label in self.training_labels], dtype=np.float32
            ).reshape(-1, 1)
            classifier = cv2.ml.KNearest_create()
            classifier.train(self.training, cv2.ml.ROW_SAMPLE, responses)
            self._classifier = classifier
            self._classifier_dirty = False
        return self._classifier

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def save_to_file(self, path: Union[str, Path]) -> Path:
        """Save vocabulary, training set, PCA basis and markers to ``path``."""
        path = Path(path)
        if path.suffix != ".npz":
            path = path.with_suffix(".npz")

        settings = {key: asdict(self.config)[key] for key in _PERSISTED_SETTINGS}
        if isinstance(self.backend, OpenCVFeatureBackend):
            settings["feature_backend"] = asdict(self.backend.config)

        arrays = {
            "vocabulary": self._or_empty(self.vocabulary),
            "training": self.training,
            "training_labels": np.array(self.training_labels, dtype=str),
            "pca_mean": self._or_empty(self.pca_mean),
            "pca_eigenvectors": self._or_empty(self.pca_eigenvectors),
            "marker_labels": np.array(self.marker_labels, dtype=str),
            "settings": np.array(json.dumps(settings)),
        }
        for i, marker in enumerate(self.markers):
            arrays[f"marker_{i}"] = marker

        np.savez_compressed(path, **arrays)
        LOGGER.info(
            "Marker detector saved to %s (%d markers, %d training samples)",
            path,
            len(self.markers),
            len(self.training_labels),
        )
        return path

    def read_from_file(self, path: Union[str, Path]):
        """Restore the state written by ``save_to_file``."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Marker detector file not found: {path}")

        with np.load(path, allow_pickle=False) as data:
            vocabulary = data["vocabulary"]
            if vocabulary.size:
                self.set_vocabulary(vocabulary)
            else:
                self.vocabulary = None
                self._vocabulary_matcher = None

            settings = json.loads(str(data["settings"]))
            for key in _PERSISTED_SETTINGS:
                if key in settings:
                    setattr(self.config, key, settings[key])
            self._restore_backend(settings.get("feature_backend"))

            training = data["training"]
            self._training_rows = [row.astype(np.float32) for row in training] if training.size else []
            self.training_labels = [str(label) for label in data["training_labels"]]

            pca_mean = data["pca_mean"]
            pca_eigenvectors = data["pca_eigenvectors"]
            self.pca_mean = pca_mean.astype(np.float32) if pca_mean.size else None
            self.pca_eigenvectors = pca_eigenvectors.astype(np.float32) if pca_eigenvectors.size else None

            self.marker_labels = [str(label) for label in data["marker_labels"]]
            self.markers = [data[f"marker_{i}"] for i in range(len(self.marker_labels))]

        self._pooled_descriptors = []
        self._classifier_dirty = True
        LOGGER.info(
            "Marker detector loaded from %s (%d markers, %d training samples)",
            path,
            len(self.markers),
            len(self.training_labels),
        )

    def _restore_backend(self, backend_settings: Optional[Dict]):
        """Rebuild the OpenCV backend the saved vocabulary was built with.

        Custom backends are kept as they are.
        """
        if not backend_settings or not isinstance(self.backend, OpenCVFeatureBackend):
            return
        if asdict(self.backend.config) == backend_settings:
            return
        LOGGER.info(
            "Switching feature backend from %s to the saved %s configuration",
            self.backend.config.method,
            backend_settings.get("method"),
        )
        self.backend = OpenCVFeatureBackend(backend_settings)

    @staticmethod
    def _or_empty(array: Optional[np.ndarray]) -> np.ndarray:
        if array is None:
            return np.empty((0, 0), dtype=np.float32)
        return array
