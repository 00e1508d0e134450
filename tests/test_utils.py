"""
Tests for configuration helpers and the command-line entry point.
"""

import json
import os
import sys
import tempfile
import unittest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from imagetracker.main import main, parse_args  # type: ignore
from imagetracker.tracking.planar import PlanarTrackerConfig  # type: ignore
from imagetracker.utils import (  # type: ignore
    dataclass_from_dict,
    get_config,
    merge_config,
    save_config,
    section_config,
    validate_config,
)


class TestConfig(unittest.TestCase):

    def test_defaults_are_valid(self):
        config = get_config()
        self.assertTrue(validate_config(config))
        self.assertEqual(config["feature_backend"]["method"], "orb")

    def test_file_overrides_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.json")
            with open(path, "w") as f:
                json.dump({"planar_tracker": {"min_tracked_features": 25}}, f)
            config = get_config(path)

        self.assertEqual(config["planar_tracker"]["min_tracked_features"], 25)
        self.assertEqual(config["planar_tracker"]["marker_size"], 1.0)

    def test_save_and_reload(self):
        config = get_config()
        config["marker_detector"]["knn_k"] = 3
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "saved.json")
            self.assertTrue(save_config(config, path))
            self.assertEqual(get_config(path)["marker_detector"]["knn_k"], 3)

    def test_merge_does_not_modify_base(self):
        base = {"a": {"b": 1, "c": 2}}
        merged = merge_config(base, {"a": {"b": 5}})
        self.assertEqual(merged, {"a": {"b": 5, "c": 2}})
        self.assertEqual(base, {"a": {"b": 1, "c": 2}})

    def test_invalid_configs(self):
        config = get_config()
        config["calibration"]["camera_matrix"] = [[0.0] * 3] * 3
        self.assertFalse(validate_config(config))

        config = get_config()
        config["marker_detector"]["vocabulary_size"] = 0
        self.assertFalse(validate_config(config))

        self.assertFalse(validate_config({}))

    def test_section_config_carries_shared_settings(self):
        config = get_config()
        section = section_config(config, "planar_tracker")
        self.assertEqual(section["min_marker_keypoints"], 20)
        self.assertEqual(section["optical_flow"]["win_size"], 21)
        self.assertEqual(section["feature_backend"]["method"], "orb")

    def test_dataclass_from_dict_ignores_unknown_keys(self):
        settings = dataclass_from_dict(PlanarTrackerConfig, {"marker_size": 0.2, "unknown": 1})
        self.assertEqual(settings.marker_size, 0.2)
        self.assertEqual(settings.min_marker_keypoints, 20)


class TestCommandLine(unittest.TestCase):

    def test_mode_is_required(self):
        with self.assertRaises(SystemExit):
            parse_args([])

    def test_modes_are_exclusive(self):
        with self.assertRaises(SystemExit):
            parse_args(["--adhoc", "--markers", "a.png"])

    def test_parses_adhoc_video(self):
        args = parse_args(["--adhoc", "--video", "clip.mp4", "--no-display", "--max-frames", "5"])
        self.assertTrue(args.adhoc)
        self.assertEqual(args.video, "clip.mp4")
        self.assertTrue(args.no_display)
        self.assertEqual(args.max_frames, 5)

    def test_missing_video_fails_cleanly(self):
        status = main(["--adhoc", "--video", "no-such-video.mp4", "--no-display"])
        self.assertEqual(status, 1)


if __name__ == "__main__":
    unittest.main()
