"""
Tests for marker detection functionality.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import cv2
import numpy as np

# Add src directory to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.append(os.path.dirname(__file__))

from imagetracker.marker_detect import MarkerDetector  # type: ignore
from imagetracker.tracking.feature import OpenCVFeatureBackend  # type: ignore
from synthetic import make_marker, shift_image  # type: ignore


class WrappedBackend:
    """A custom feature backend that only delegates to OpenCV."""

    def __init__(self, config):
        self._inner = OpenCVFeatureBackend(config)
        self.norm = self._inner.norm

    def detect(self, gray, mask=None):
        return self._inner.detect(gray, mask)

    def compute(self, gray, keypoints):
        return self._inner.compute(gray, keypoints)

    def detect_and_compute(self, gray, mask=None):
        return self._inner.detect_and_compute(gray, mask)

    def match(self, query, train):
        return self._inner.match(query, train)


class TestMarkerDetect(unittest.TestCase):
    """Vocabulary building, training and classification."""

    @classmethod
    def setUpClass(cls):
        cls.markers = {
            "A": make_marker(seed=1, style="rect"),
            "B": make_marker(seed=2, style="circle"),
            "C": make_marker(seed=3, style="poly"),
        }
        cls.shifted_a = shift_image(cls.markers["A"], 5.0, 3.0, border=90)

    def make_detector(self, **overrides):
        config = {"vocabulary_size": 50}
        config.update(overrides)
        detector = MarkerDetector(config)
        for label, image in self.markers.items():
            self.assertTrue(detector.add_marker(image, label))
        detector.cluster()
        for label, image in self.markers.items():
            self.assertTrue(detector.add_image_to_training(image, label))
        return detector

    def test_vocabulary_is_built(self):
        detector = self.make_detector()
        self.assertEqual(detector.vocabulary.shape, (50, 32))
        self.assertEqual(detector.vocabulary.dtype, np.float32)
        self.assertEqual(detector.labels, ["A", "B", "C"])
        self.assertEqual(detector.training.shape, (3, 50))

    def test_clustering_is_repeatable(self):
        first = self.make_detector()
        second = self.make_detector()
        np.testing.assert_array_equal(first.vocabulary, second.vocabulary)

    def test_encoding_is_unit_histogram(self):
        detector = self.make_detector()
        encoding = detector.extract_bow_descriptor(self.markers["B"])
        self.assertEqual(encoding.shape, (50,))
        self.assertAlmostEqual(float(np.linalg.norm(encoding)), 1.0, places=5)
        self.assertTrue(np.all(encoding >= 0))

    def test_training_images_classify_as_themselves(self):
        detector = self.make_detector()
        for label, image in self.markers.items():
            self.assertEqual(detector.detect_marker_in_image(image), label)
            self.assertAlmostEqual(detector.last_distance, 0.0, places=4)

    def test_shifted_marker_is_recognised(self):
        detector = self.make_detector()
        self.assertEqual(detector.detect_marker_in_image(self.shifted_a), "A")

    def test_distant_match_is_rejected(self):
        detector = self.make_detector(max_distance=0.05)
        unknown = make_marker(seed=50)
        self.assertEqual(detector.detect_marker_in_image(unknown), "")
        self.assertGreater(detector.last_distance, 0.05)

    def test_majority_vote_and_tie_break(self):
        detector = self.make_detector(knn_k=3)
        detector.add_image_to_training(self.shifted_a, "A")
        self.assertEqual(detector.detect_marker_in_image(self.markers["A"]), "A")

        # One vote each: the nearest neighbour wins
        detector = self.make_detector(knn_k=2)
        self.assertEqual(detector.detect_marker_in_image(self.markers["C"]), "C")

    def test_featureless_image_gives_no_label(self):
        detector = self.make_detector()
        blank = np.full((300, 400), 90, dtype=np.uint8)
        self.assertIsNone(detector.extract_bow_descriptor(blank))
        self.assertEqual(detector.detect_marker_in_image(blank), "")

    def test_mask_limits_the_search(self):
        detector = self.make_detector()
        mask = np.zeros(self.markers["A"].shape, dtype=np.uint8)
        self.assertEqual(detector.detect_marker_in_image(self.markers["A"], mask), "")

    def test_untrained_detector(self):
        detector = MarkerDetector()
        with self.assertRaises(ValueError):
            detector.cluster()
        with self.assertRaises(RuntimeError):
            detector.extract_bow_descriptor(self.markers["A"])
        self.assertEqual(detector.detect_marker_in_image(self.markers["A"]), "")

    def test_marker_without_descriptors(self):
        detector = MarkerDetector()
        self.assertFalse(detector.add_marker(np.full((100, 100), 90, dtype=np.uint8), "blank"))
        self.assertEqual(detector.marker_labels, ["blank"])
        with self.assertRaises(ValueError):
            detector.cluster()

    def test_add_marker_file(self):
        detector = MarkerDetector()
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "poster.png"
            cv2.imwrite(str(path), self.markers["A"])
            self.assertTrue(detector.add_marker_file(path))
            with self.assertRaises(FileNotFoundError):
                detector.add_marker_file(Path(tmp) / "missing.png")

        self.assertEqual(detector.marker_labels, ["poster"])
        np.testing.assert_array_equal(detector.get_marker("poster"), self.markers["A"])
        self.assertIsNone(detector.get_marker("missing"))

    def test_pca_is_fitted_once(self):
        detector = self.make_detector(pca_components=2)
        self.assertIsNone(detector.pca_eigenvectors)

        self.assertEqual(detector.detect_marker_in_image(self.markers["B"]), "B")
        basis = detector.pca_eigenvectors.copy()
        self.assertEqual(basis.shape, (2, 50))
        self.assertEqual(detector.training.shape, (3, 2))

        detector.add_image_to_training(self.shifted_a, "A")
        self.assertFalse(detector.fit_pca())
        np.testing.assert_array_equal(detector.pca_eigenvectors, basis)
        self.assertEqual(detector.training.shape, (4, 2))
        self.assertEqual(detector.detect_marker_in_image(self.markers["A"]), "A")

    def test_save_and_load_round_trip(self):
        for overrides in ({}, {"pca_components": 2}):
            detector = self.make_detector(**overrides)
            queries = list(self.markers.values()) + [self.shifted_a]
            expected = [detector.detect_marker_in_image(q) for q in queries]

            with tempfile.TemporaryDirectory() as tmp:
                path = detector.save_to_file(Path(tmp) / "markers")
                self.assertEqual(path.suffix, ".npz")
                loaded = MarkerDetector()
                loaded.read_from_file(path)

            np.testing.assert_array_equal(loaded.vocabulary, detector.vocabulary)
            np.testing.assert_array_equal(loaded.training, detector.training)
            self.assertEqual(loaded.training_labels, detector.training_labels)
            self.assertEqual(loaded.config.pca_components, detector.config.pca_components)
            for label, image in self.markers.items():
                np.testing.assert_array_equal(loaded.get_marker(label), image)
            self.assertEqual([loaded.detect_marker_in_image(q) for q in queries], expected)

    def test_load_restores_feature_backend(self):
        detector = self.make_detector(feature_backend={"method": "sift", "max_features": 500})
        queries = list(self.markers.values()) + [self.shifted_a]
        expected = [detector.detect_marker_in_image(q) for q in queries]

        with tempfile.TemporaryDirectory() as tmp:
            path = detector.save_to_file(Path(tmp) / "sift_markers")
            loaded = MarkerDetector()
            self.assertEqual(loaded.backend.config.method, "orb")
            loaded.read_from_file(path)

        self.assertEqual(loaded.backend.config.method, "sift")
        self.assertEqual(loaded.backend.config.max_features, 500)
        self.assertEqual([loaded.detect_marker_in_image(q) for q in queries], expected)

    def test_mismatched_backend_raises_value_error(self):
        detector = self.make_detector()
        with tempfile.TemporaryDirectory() as tmp:
            path = detector.save_to_file(Path(tmp) / "orb_markers")
            loaded = MarkerDetector(backend=WrappedBackend({"method": "sift"}))
            loaded.read_from_file(path)

        self.assertIsInstance(loaded.backend, WrappedBackend)
        with self.assertRaises(ValueError):
            loaded.detect_marker_in_image(self.markers["A"])

    def test_load_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            MarkerDetector().read_from_file("does-not-exist.npz")


if __name__ == "__main__":
    unittest.main()
