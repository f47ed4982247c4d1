"""Planar checkerboard target."""

from dataclasses import dataclass
from typing import Dict

import numpy as np

from .extrinsics import Pose
from .plane import Plane


@dataclass(frozen=True)
class Checkerboard:
    """
    Checkerboard geometry.

    Corners are the inner corners of the pattern, laid out row-major in the
    board frame: corner (r, c) sits at (c * cell_width, r * cell_height, 0).

    Attributes:
        rows: Number of inner corner rows.
        cols: Number of inner corner columns.
        cell_width: Square size along the board x axis (meters).
        cell_height: Square size along the board y axis (meters).
    """

    rows: int
    cols: int
    cell_width: float
    cell_height: float

    def __post_init__(self):
        if self.rows < 2 or self.cols < 2:
            raise ValueError(f"Checkerboard needs at least 2x2 corners, got {self.rows}x{self.cols}")
        if self.cell_width <= 0 or self.cell_height <= 0:
            raise ValueError("Checkerboard cell sizes must be positive")

    @property
    def size(self) -> int:
        """Number of corners."""
        return self.rows * self.cols

    @property
    def pattern_size(self):
        """Pattern size as expected by OpenCV: (cols, rows)."""
        return self.cols, self.rows

    @property
    def corners(self) -> np.ndarray:
        """Corner positions (rows * cols, 3) in the board frame."""
        r, c = np.mgrid[0:self.rows, 0:self.cols]
        return np.stack([
            c.ravel() * self.cell_width,
            r.ravel() * self.cell_height,
            np.zeros(self.size),
        ], axis=1).astype(np.float64)

    @property
    def center(self) -> np.ndarray:
        """Board center in the board frame."""
        return np.array([
            (self.cols - 1) * self.cell_width / 2.0,
            (self.rows - 1) * self.cell_height / 2.0,
            0.0,
        ])

    def corner_index(self, row: int, col: int) -> int:
        return row * self.cols + col

    def corners_in(self, pose: Pose) -> np.ndarray:
        """Corner positions (N, 3) in the frame the pose is expressed in."""
        return np.atleast_2d(pose.transform_points(self.corners))

    def center_in(self, pose: Pose) -> np.ndarray:
        return pose.R @ self.center + pose.t

    def plane_in(self, pose: Pose) -> Plane:
        """Board plane (z = 0 in the board frame) expressed in the pose's frame."""
        return Plane(normal=np.array([0.0, 0.0, 1.0]), offset=0.0).transform(pose.R, pose.t)

    @classmethod
    def from_dict(cls, data: Dict) -> "Checkerboard":
        cell = data.get("cell_size")
        return cls(
            rows=int(data["rows"]),
            cols=int(data["cols"]),
            cell_width=float(data.get("cell_width", cell)),
            cell_height=float(data.get("cell_height", cell)),
        )
