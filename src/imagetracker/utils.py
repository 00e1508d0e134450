"""
Shared helper functions and utilities.

This module contains logging setup and the configuration layer used across the
project.
"""

import copy
import json
import logging
import os
from dataclasses import fields

import numpy as np


def setup_logging(level=logging.INFO):
    """Set up logging configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)
    logger.info("Logging initialized")


def dataclass_from_dict(cls, values=None):
    """Build a config dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in dict(values or {}).items() if k in known})


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Args:
        config_path: Path to configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    default_config = {
        # Video settings (CLI only)
        'camera_id': 0,
        'video_width': 640,
        'video_height': 480,

        # Camera intrinsics
        'calibration': {
            'calibration_file': None,  # Optional JSON file with camera_matrix/dist_coeffs
            'camera_matrix': [
                [800.0, 0.0, 320.0],
                [0.0, 800.0, 240.0],
                [0.0, 0.0, 1.0],
            ],
            'dist_coeffs': [0.0, 0.0, 0.0, 0.0, 0.0],
        },

        # Keypoints, descriptors and matching
        'feature_backend': {
            # 'orb', 'fast_brief', 'akaze', 'brisk', 'sift', 'gftt_orb'
            'method': 'orb',
            'max_features': 1000,
            'matcher_type': 'bf',  # 'bf' or 'flann'
            'match_ratio_threshold': 0.75,  # Lowe's ratio test
            'cross_check': False,
        },

        # Lucas-Kanade tracking
        'optical_flow': {
            'win_size': 21,
            'max_level': 3,
            'criteria_count': 30,
            'criteria_eps': 0.03,
            'forward_backward_check': True,
        },

        'planar_tracker': {
            'min_marker_keypoints': 20,
            'min_bootstrap_inliers': 10,
            'min_tracked_features': 10,
            'ransac_reproj_threshold': 3.0,
            'marker_size': 1.0,  # Physical length of the marker's longer side
        },

        'adhoc_tracker': {
            'min_bootstrap_features': 40,
            'min_tracked_features': 10,
            'min_parallax': 5.0,  # pixels
            'max_homography_inlier_ratio': 0.8,
            'min_positive_depth_ratio': 0.75,
            'max_reprojection_error': 5.0,  # pixels
            'align_to_dominant_plane': True,
        },

        'marker_detector': {
            'vocabulary_size': 100,
            'pca_components': 0,  # 0 disables PCA
            'knn_k': 1,
            'max_distance': 1.0,
        },

        'image_tracker': {
            'use_workers': False,
            'max_bootstrap_frames': 30,
            'mask_margin': 10,
        },
    }

    # Load from file if provided
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
            default_config = merge_config(default_config, loaded_config)
            logging.info(f"Configuration loaded from {config_path}")
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config from {config_path}: {e}")

    return default_config


def merge_config(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def section_config(config, section):
    """Sub-config for one component, with the shared feature/flow settings attached."""
    config = config or {}
    section_dict = dict(config.get(section) or {})
    for shared in ('feature_backend', 'optical_flow'):
        if shared in config and shared not in section_dict:
            section_dict[shared] = copy.deepcopy(config[shared])
    return section_dict


def save_config(config, config_path):
    """Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file

    Returns:
        bool: True if save successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=4)
        logging.info(f"Configuration saved to {config_path}")
        return True
    except (OSError, TypeError) as e:
        logging.error(f"Failed to save config to {config_path}: {e}")
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    calibration = config.get('calibration')
    if not calibration:
        logging.error("Missing required config key: calibration")
        return False

    if not calibration.get('calibration_file'):
        matrix = calibration.get('camera_matrix')
        if matrix is None:
            logging.error("Calibration needs a camera_matrix or calibration_file")
            return False
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (3, 3) or abs(np.linalg.det(matrix)) < 1e-12:
            logging.error("Camera matrix must be an invertible 3x3 matrix")
            return False

    detector = config.get('marker_detector', {})
    if detector.get('vocabulary_size', 1) <= 0:
        logging.error("Vocabulary size must be positive")
        return False

    logging.info("Configuration validated successfully")
    return True
