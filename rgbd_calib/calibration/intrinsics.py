"""
Pinhole intrinsics of the color and depth sensors.

This module handles the intrinsic parameters shared by the color camera and the
depth sensor: focal lengths, principal point, image size and lens distortion.

Mathematical Background:
========================

    K = | fx   0  cx |
        |  0  fy  cy |
        |  0   0   1 |

Projection of a point (X, Y, Z) in camera coordinates:

    x = X / Z,  y = Y / Z                 (normalized coordinates)
    (x_d, y_d) = distort(x, y)            (OpenCV radial-tangential model)
    u = fx * x_d + cx
    v = fy * y_d + cy

Distortion coefficients follow the OpenCV ordering (k1, k2, p1, p2[, k3]).
Projection with distortion is delegated to ``cv2.projectPoints`` and the
inverse mapping to ``cv2.undistortPoints``.

Depth intrinsics correction:
============================
The full optimizer refines the depth intrinsics with a 4-vector delta
[sx, sy, dx, dy]:

    fx' = fx * sx,  fy' = fy * sy,  cx' = cx + dx,  cy' = cy + dy
"""

from dataclasses import dataclass, field
from typing import Dict, Sequence, Tuple, Union

import cv2
import numpy as np


@dataclass
class CameraIntrinsics:
    """
    Camera intrinsic parameters.

    Attributes:
        fx: Focal length in x direction (pixels).
        fy: Focal length in y direction (pixels).
        cx: Principal point x coordinate (pixels).
        cy: Principal point y coordinate (pixels).
        width: Image width in pixels.
        height: Image height in pixels.
        distortion: Lens distortion coefficients (OpenCV ordering).

    Example:
        >>> intrinsics = CameraIntrinsics(fx=525.0, fy=525.0, cx=319.5, cy=239.5,
        ...                                width=640, height=480)
        >>> pixel = intrinsics.project_point(np.array([0.1, 0.0, 1.0]))
    """

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    width: int  # Image width (pixels)
    height: int  # Image height (pixels)
    distortion: np.ndarray = field(default_factory=lambda: np.zeros(5))

    def __post_init__(self):
        self.distortion = np.asarray(self.distortion, dtype=np.float64).flatten()
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")

    @property
    def K(self) -> np.ndarray:
        """3x3 intrinsic matrix (alias for get_K_matrix())."""
        return self.get_K_matrix()

    @property
    def image_size(self) -> Tuple[int, int]:
        """Image size as (width, height)."""
        return self.width, self.height

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.distortion != 0))

    def get_K_matrix(self) -> np.ndarray:
        """
        Get the 3x3 camera intrinsic (calibration) matrix.

        Returns:
            np.ndarray: 3x3 intrinsic matrix K with dtype float64.
        """
        return np.array([
            [self.fx, 0, self.cx],
            [0, self.fy, self.cy],
            [0, 0, 1]
        ], dtype=np.float64)

    def project_point(self, point_3d: np.ndarray) -> np.ndarray:
        """
        Project 3D point(s) in camera frame to 2D pixel coordinates.

        Lens distortion is applied when distortion coefficients are non-zero.

        Args:
            point_3d: 3D point (3,) or points (N, 3) in camera coordinates.
                      Points should have positive Z (in front of camera).

        Returns:
            np.ndarray: 2D pixel coordinates (2,) or (N, 2).
        """
        point_3d = np.atleast_2d(np.asarray(point_3d, dtype=np.float64))

        if self.has_distortion:
            points_2d, _ = cv2.projectPoints(
                point_3d.reshape(-1, 1, 3),
                np.zeros(3),
                np.zeros(3),
                self.get_K_matrix(),
                self.distortion,
            )
            return points_2d.reshape(-1, 2).squeeze()

        x = point_3d[:, 0] / point_3d[:, 2]
        y = point_3d[:, 1] / point_3d[:, 2]

        u = self.fx * x + self.cx
        v = self.fy * y + self.cy

        return np.stack([u, v], axis=1).squeeze()

    def undistort_normalized(self, normalized: np.ndarray) -> np.ndarray:
        """
        Remove lens distortion from normalized (distorted) image coordinates.

        Args:
            normalized: Distorted normalized coordinates (N, 2), i.e.
                        ((u - cx) / fx, (v - cy) / fy).

        Returns:
            np.ndarray: Undistorted normalized coordinates (N, 2).
        """
        normalized = np.atleast_2d(np.asarray(normalized, dtype=np.float64))
        if not self.has_distortion or len(normalized) == 0:
            return normalized

        undistorted = cv2.undistortPoints(
            normalized.reshape(-1, 1, 2),
            np.eye(3),
            self.distortion,
        )
        return undistorted.reshape(-1, 2)

    def pixel_to_ray(self, point_2d: np.ndarray) -> np.ndarray:
        """
        Convert pixel coordinates to rays with unit depth (z = 1).

        Args:
            point_2d: 2D pixel coordinate(s) (N, 2).

        Returns:
            np.ndarray: Ray direction(s) (N, 3) with z = 1.
        """
        point_2d = np.atleast_2d(np.asarray(point_2d, dtype=np.float64))
        normalized = np.stack([
            (point_2d[:, 0] - self.cx) / self.fx,
            (point_2d[:, 1] - self.cy) / self.fy,
        ], axis=1)
        normalized = self.undistort_normalized(normalized)
        return np.hstack([normalized, np.ones((len(normalized), 1))])

    def scaled(self, ratio: int) -> "CameraIntrinsics":
        """
        Intrinsics of an image down-sampled by an integer block ratio.

        A block of ``ratio x ratio`` pixels is averaged into one output pixel,
        whose center sits at ``ratio * u' + (ratio - 1) / 2`` in the input.
        """
        if ratio < 1:
            raise ValueError(f"Down-sample ratio must be >= 1, got {ratio}")
        if ratio == 1:
            return self
        offset = (ratio - 1) / 2.0
        return CameraIntrinsics(
            fx=self.fx / ratio,
            fy=self.fy / ratio,
            cx=(self.cx - offset) / ratio,
            cy=(self.cy - offset) / ratio,
            width=self.width // ratio,
            height=self.height // ratio,
            distortion=self.distortion.copy(),
        )

    def with_delta(self, delta: Sequence[float]) -> "CameraIntrinsics":
        """
        Apply a multiplicative/additive correction [sx, sy, dx, dy].

        Returns:
            CameraIntrinsics: Corrected copy (image size and distortion kept).
        """
        sx, sy, dx, dy = [float(v) for v in delta]
        return CameraIntrinsics(
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=self.cx + dx,
            cy=self.cy + dy,
            width=self.width,
            height=self.height,
            distortion=self.distortion.copy(),
        )

    def to_dict(self) -> Dict[str, Union[float, int, list]]:
        return {
            "fx": float(self.fx),
            "fy": float(self.fy),
            "cx": float(self.cx),
            "cy": float(self.cy),
            "width": int(self.width),
            "height": int(self.height),
            "distortion": self.distortion.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CameraIntrinsics":
        """
        Create intrinsics from a configuration mapping.

        Raises:
            KeyError: If a required key (fx, fy, cx, cy, width, height) is missing.
        """
        for key in ("fx", "fy", "cx", "cy", "width", "height"):
            if key not in data:
                raise KeyError(f"Missing intrinsic parameter '{key}'")
        return cls(
            fx=float(data["fx"]),
            fy=float(data["fy"]),
            cx=float(data["cx"]),
            cy=float(data["cy"]),
            width=int(data["width"]),
            height=int(data["height"]),
            distortion=np.asarray(data.get("distortion", np.zeros(5)), dtype=np.float64),
        )

    def __repr__(self) -> str:
        return (
            f"CameraIntrinsics(fx={self.fx:.2f}, fy={self.fy:.2f}, "
            f"cx={self.cx:.2f}, cy={self.cy:.2f}, "
            f"width={self.width}, height={self.height})"
        )
