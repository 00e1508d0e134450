"""
Camera/object pose estimation module.

Provides utilities for loading calibration data, solving the camera pose from
2D-3D correspondences and converting it into a model-view matrix for the
rendering side.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)

# OpenCV cameras look down +Z with +Y down; OpenGL looks down -Z with +Y up.
CV_TO_GL = np.diag([1.0, -1.0, -1.0, 1.0])


@dataclass
class CalibrationData:
    """Container for camera calibration parameters."""

    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray


@dataclass
class PoseResult:
    """Structured container for pose estimation output."""

    success: bool
    rotation_vector: Optional[np.ndarray] = None
    translation_vector: Optional[np.ndarray] = None
    rotation_matrix: Optional[np.ndarray] = None
    method: str = ""
    inliers: int = 0
    reprojection_error: Optional[float] = None

    def as_matrix(self) -> Optional[np.ndarray]:
        """Return the 4x4 object-to-camera transform if pose is valid."""
        if not self.success or self.rotation_matrix is None or self.translation_vector is None:
            return None
        transform = np.eye(4, dtype=np.float64)
        transform[:3, :3] = self.rotation_matrix
        transform[:3, 3] = self.translation_vector.flatten()
        return transform

    def model_view_matrix(self) -> Optional[np.ndarray]:
        """Return the transform in the rendering (OpenGL) convention."""
        transform = self.as_matrix()
        if transform is None:
            return None
        return CV_TO_GL @ transform

    def copy(self) -> PoseResult:
        """Create a copy of this pose result."""
        return PoseResult(
            success=self.success,
            rotation_vector=self.rotation_vector.copy() if self.rotation_vector is not None else None,
            translation_vector=self.translation_vector.copy() if self.translation_vector is not None else None,
            rotation_matrix=self.rotation_matrix.copy() if self.rotation_matrix is not None else None,
            method=self.method,
            inliers=self.inliers,
            reprojection_error=self.reprojection_error,
        )


def to_gl_buffer(model_view: np.ndarray) -> np.ndarray:
    """Flatten a row-major model-view matrix into OpenGL's column-major order."""
    return np.ascontiguousarray(model_view.T, dtype=np.float32).reshape(-1)


# ---------------------------------------------------------------------- #
# Calibration
# ---------------------------------------------------------------------- #
def validate_camera_matrix(camera_matrix) -> np.ndarray:
    """Return the intrinsics as a 3x3 float64 array, rejecting singular ones."""
    if camera_matrix is None:
        raise ValueError("Camera matrix must be provided for pose estimation.")
    matrix = np.array(camera_matrix, dtype=np.float64)
    if matrix.size != 9:
        raise ValueError(f"Camera matrix must be 3x3, got shape {matrix.shape}")
    matrix = matrix.reshape(3, 3)
    if not np.all(np.isfinite(matrix)) or abs(np.linalg.det(matrix)) < 1e-12:
        raise ValueError("Camera matrix must be invertible.")
    return matrix


def load_calibration(config: Optional[Dict] = None) -> CalibrationData:
    """Load calibration data from config or external file."""
    config = config or {}
    calibration_file = config.get("calibration_file")

    if calibration_file:
        data = _read_calibration_file(calibration_file)
    else:
        data = {
            "camera_matrix": config.get("camera_matrix"),
            "dist_coeffs": config.get("dist_coeffs"),
        }

    camera_matrix = validate_camera_matrix(data.get("camera_matrix"))
    dist_coeffs = normalize_dist_coeffs(data.get("dist_coeffs"))
    return CalibrationData(camera_matrix=camera_matrix, dist_coeffs=dist_coeffs)


def _read_calibration_file(path: str) -> Dict:
    calib_path = Path(path)
    if not calib_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {path}")
    with calib_path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    return payload


def normalize_dist_coeffs(coeffs: Optional[Sequence[float]]) -> np.ndarray:
    if coeffs is None:
        coeffs = [0.0, 0.0, 0.0, 0.0, 0.0]
    arr = np.array(coeffs, dtype=np.float64).reshape(-1, 1)
    return arr


# ---------------------------------------------------------------------- #
# Pose solving
# ---------------------------------------------------------------------- #
class PoseSolver:
    """
    Perspective-n-point solver with warm starts.

    The previous rotation/translation are kept as the initial guess for the
    next solve, which keeps the iterative solver fast and stable from frame to
    frame. ``reset`` discards them.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        dist_coeffs: Optional[np.ndarray] = None,
        min_points: int = 4,
        use_ransac: bool = False,
        ransac_reproj_threshold: float = 8.0,
        method: str = "pnp",
    ):
        self.camera_matrix = validate_camera_matrix(camera_matrix)
        self.dist_coeffs = normalize_dist_coeffs(dist_coeffs)
        self.min_points = max(int(min_points), 4)
        self.use_ransac = use_ransac
        self.ransac_reproj_threshold = ransac_reproj_threshold
        self.method = method
        self._rvec: Optional[np.ndarray] = None
        self._tvec: Optional[np.ndarray] = None

    def reset(self):
        """Forget the warm-start seeds."""
        self._rvec = None
        self._tvec = None

    @property
    def has_seed(self) -> bool:
        return self._rvec is not None and self._tvec is not None

    def seed(self, rotation_matrix: np.ndarray, translation: np.ndarray):
        """Provide an initial guess for the next solve."""
        rvec, _ = cv2.Rodrigues(np.asarray(rotation_matrix, dtype=np.float64))
        self._rvec = rvec.reshape(3, 1)
        self._tvec = np.asarray(translation, dtype=np.float64).reshape(3, 1)

    def solve(self, object_points: np.ndarray, image_points: np.ndarray) -> PoseResult:
        """Solve the object-to-camera pose from 2D-3D correspondences."""
        obj = np.ascontiguousarray(object_points, dtype=np.float64).reshape(-1, 3)
        img = np.ascontiguousarray(image_points, dtype=np.float64).reshape(-1, 2)

        if len(obj) != len(img):
            raise ValueError(
                f"Correspondence count mismatch: {len(obj)} object vs {len(img)} image points"
            )
        if len(obj) < self.min_points:
            return PoseResult(success=False, method=self.method)

        inlier_count = len(obj)
        try:
            if self.use_ransac:
                if self.has_seed:
                    ok, rvec, tvec, inliers = cv2.solvePnPRansac(
                        obj, img, self.camera_matrix, self.dist_coeffs,
                        rvec=self._rvec.copy(), tvec=self._tvec.copy(),
                        useExtrinsicGuess=True,
                        reprojectionError=self.ransac_reproj_threshold,
                        iterationsCount=100,
                        confidence=0.99,
                    )
                else:
                    ok, rvec, tvec, inliers = cv2.solvePnPRansac(
                        obj, img, self.camera_matrix, self.dist_coeffs,
                        reprojectionError=self.ransac_reproj_threshold,
                        iterationsCount=100,
                        confidence=0.99,
                    )
                if inliers is not None:
                    inlier_count = len(inliers)
            else:
                if self.has_seed:
                    ok, rvec, tvec = cv2.solvePnP(
                        obj, img, self.camera_matrix, self.dist_coeffs,
                        rvec=self._rvec.copy(), tvec=self._tvec.copy(),
                        useExtrinsicGuess=True,
                        flags=cv2.SOLVEPNP_ITERATIVE,
                    )
                else:
                    ok, rvec, tvec = cv2.solvePnP(
                        obj, img, self.camera_matrix, self.dist_coeffs,
                        flags=cv2.SOLVEPNP_ITERATIVE,
                    )
        except cv2.error as exc:
            LOGGER.debug("PnP solve failed: %s", exc)
            return PoseResult(success=False, method=self.method)

        if not ok or rvec is None or tvec is None:
            return PoseResult(success=False, method=self.method)
        if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            LOGGER.debug("PnP solve produced non-finite pose")
            return PoseResult(success=False, method=self.method)

        rvec = rvec.reshape(3, 1)
        tvec = tvec.reshape(3, 1)
        self._rvec = rvec.copy()
        self._tvec = tvec.copy()

        rotation_matrix, _ = cv2.Rodrigues(rvec)
        return PoseResult(
            success=True,
            rotation_vector=rvec,
            translation_vector=tvec,
            rotation_matrix=rotation_matrix,
            method=self.method,
            inliers=inlier_count,
            reprojection_error=self.reprojection_error(obj, rvec, tvec, img),
        )

    def reprojection_error(
        self,
        object_points: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        image_points: np.ndarray,
    ) -> float:
        projected, _ = cv2.projectPoints(
            object_points,
            rvec,
            tvec,
            self.camera_matrix,
            self.dist_coeffs,
        )
        projected = projected.reshape(-1, 2)
        error = np.linalg.norm(projected - image_points.reshape(-1, 2), axis=1).mean()
        return float(error)
