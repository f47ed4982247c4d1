"""
Rigid poses between depth sensor, color sensor and checkerboard.

This module handles rigid transformations between the reference frames of the
calibration problem: the depth sensor (root frame), the color sensor and the
checkerboard target.

Mathematical Background:
========================

Rigid Body Transformation:
--------------------------
A rigid body transformation consists of a rotation R (3x3 orthonormal matrix)
and translation t (3x1 vector). For a point P expressed in a child frame, its
coordinates in the parent frame are:

    P_parent = R * P_child + t

As a 4x4 homogeneous matrix:

    T = | R   t |
        | 0   1 |

Inverse Transformation:
-----------------------

    T^(-1) = | R^T  -R^T * t |
             |  0       1    |

Frames used by the calibration:
===============================

    depth sensor  (root)
      └── color sensor       pose = sensor extrinsic (color -> depth)
            └── checkerboard pose = detected board pose (board -> color)

A checkerboard corner X (board-local) is therefore seen in the depth frame at

    X_depth = T_color * T_board * X

Rotation parameterizations:
===========================
Rotation vectors (axis * angle) are used for 6-DoF blocks that live in a
Euclidean chart, unit quaternions for blocks constrained to the quaternion
manifold. Quaternions follow the scipy convention [x, y, z, w].
"""

from dataclasses import dataclass, field
from typing import Dict, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from .projection import transform_points


@dataclass
class Pose:
    """
    Rigid pose of a child frame expressed in a parent frame.

    Attributes:
        R: Rotation matrix (3x3) - rotates vectors from child to parent frame.
        t: Translation vector (3,) - position of child origin in parent frame.

    Example:
        >>> pose = Pose(R=np.eye(3), t=np.array([0.025, 0.0, 0.0]))
        >>> pose.transform_points(np.zeros((1, 3)))
        array([0.025, 0.   , 0.   ])
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        """Validate inputs after initialization."""
        self.R = np.asarray(self.R, dtype=np.float64)
        self.t = np.asarray(self.t, dtype=np.float64).flatten()

        if self.R.shape != (3, 3):
            raise ValueError(f"R must be 3x3, got {self.R.shape}")
        if self.t.shape != (3,):
            raise ValueError(f"t must be (3,), got {self.t.shape}")

    def get_transform_matrix(self) -> np.ndarray:
        """
        Get the 4x4 homogeneous transformation matrix.

        Returns:
            np.ndarray: 4x4 transformation matrix.
        """
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.R
        T[:3, 3] = self.t
        return T

    def inverse(self) -> "Pose":
        """
        Get the inverse transformation (parent -> child).

        Returns:
            Pose: New instance representing the inverse transform.
        """
        R_inv = self.R.T
        t_inv = -R_inv @ self.t
        return Pose(R=R_inv, t=t_inv)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """
        Transform 3D points from the child frame to the parent frame.

        Args:
            points: 3D points (N, 3) or (3,) in child frame.

        Returns:
            np.ndarray: Transformed points in parent frame.
        """
        return transform_points(points, self.R, self.t).squeeze()

    def compose(self, other: "Pose") -> "Pose":
        """
        Chain two poses: returns self * other.

        If ``other`` maps frame C to frame B and ``self`` maps B to A, the
        result maps C to A (``other`` is applied first).

        Args:
            other: Pose of a grandchild frame in this pose's child frame.

        Returns:
            Pose: Combined transformation.
        """
        R_combined = self.R @ other.R
        t_combined = self.R @ other.t + self.t
        return Pose(R=R_combined, t=t_combined)

    def as_quaternion(self) -> np.ndarray:
        """Rotation as unit quaternion [x, y, z, w]."""
        return Rotation.from_matrix(self.R).as_quat()

    def as_rotvec(self) -> np.ndarray:
        """Rotation as rotation vector (axis * angle, radians)."""
        return Rotation.from_matrix(self.R).as_rotvec()

    def rotation_angle_to(self, other: "Pose") -> float:
        """Angle (radians) of the relative rotation between two poses."""
        relative = Rotation.from_matrix(self.R.T @ other.R)
        return float(np.linalg.norm(relative.as_rotvec()))

    def to_dict(self) -> Dict[str, list]:
        """Serializable representation (quaternion [x, y, z, w] + translation)."""
        return {
            "rotation": self.as_quaternion().tolist(),
            "translation": self.t.tolist(),
        }

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    @classmethod
    def from_quaternion(cls, q: Sequence[float], t: Sequence[float]) -> "Pose":
        """Create from quaternion [x, y, z, w] (normalized here) and translation."""
        q = np.asarray(q, dtype=np.float64)
        norm = np.linalg.norm(q)
        if norm == 0:
            raise ValueError("Quaternion must be non-zero")
        return cls(R=Rotation.from_quat(q / norm).as_matrix(), t=t)

    @classmethod
    def from_rotvec(cls, rotvec: Sequence[float], t: Sequence[float]) -> "Pose":
        """Create from rotation vector (axis * angle) and translation."""
        return cls(R=Rotation.from_rotvec(np.asarray(rotvec, dtype=np.float64)).as_matrix(), t=t)

    @classmethod
    def from_dict(cls, data: Dict) -> "Pose":
        """
        Create from a configuration mapping.

        Accepted keys:
            rotation: quaternion [x, y, z, w] or 3x3 matrix (default identity).
            translation: 3-vector (default zeros).
        """
        rotation = np.asarray(data.get("rotation", [0.0, 0.0, 0.0, 1.0]), dtype=np.float64)
        translation = data.get("translation", [0.0, 0.0, 0.0])

        if rotation.shape == (3, 3):
            return cls(R=rotation, t=translation)
        if rotation.shape == (4,):
            return cls.from_quaternion(rotation, translation)
        raise ValueError(f"Rotation must be a quaternion or a 3x3 matrix, got {rotation.shape}")

    def __repr__(self) -> str:
        q = self.as_quaternion()
        return (
            f"Pose(q=[{q[0]:.4f}, {q[1]:.4f}, {q[2]:.4f}, {q[3]:.4f}], "
            f"t=[{self.t[0]:.4f}, {self.t[1]:.4f}, {self.t[2]:.4f}])"
        )
