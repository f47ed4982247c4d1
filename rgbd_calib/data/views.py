"""Checkerboard views: per-frame detections in both sensors."""

from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

import numpy as np

from ..calibration.checkerboard import Checkerboard
from ..calibration.extrinsics import Pose
from ..calibration.plane import Plane, PlaneFit
from .records import FrameRecord


@dataclass
class CheckerboardView:
    """
    Checkerboard detected in one frame.

    Attributes:
        id: View identifier.
        record: Frame record the detection comes from.
        checkerboard: Target geometry.
        color_pose: Checkerboard pose in the color frame.
        image_corners: Detected corner pixels (N, 2), same order as
                       ``checkerboard.corners``.
        depth_plane: Plane fitted to the target in the depth cloud, or None
                     when plane extraction failed or was not attempted.
    """

    id: str
    record: FrameRecord
    checkerboard: Checkerboard
    color_pose: Pose
    image_corners: np.ndarray
    depth_plane: Optional[PlaneFit] = None

    def __post_init__(self):
        self.image_corners = np.asarray(self.image_corners, dtype=np.float64).reshape(-1, 2)
        if len(self.image_corners) != self.checkerboard.size:
            raise ValueError(
                f"Expected {self.checkerboard.size} image corners, got {len(self.image_corners)}"
            )

    @property
    def has_depth_plane(self) -> bool:
        return self.depth_plane is not None

    @property
    def color_plane(self) -> Plane:
        """Checkerboard plane in the color frame."""
        return self.checkerboard.plane_in(self.color_pose)

    @property
    def center(self) -> np.ndarray:
        """Checkerboard center in the color frame."""
        return self.checkerboard.center_in(self.color_pose)

    def corners_in_depth(self, color_sensor_pose: Pose) -> np.ndarray:
        """Checkerboard corners (N, 3) in the depth frame."""
        return self.checkerboard.corners_in(color_sensor_pose.compose(self.color_pose))

    def set_plane(self, plane_fit: Optional[PlaneFit]) -> None:
        self.depth_plane = plane_fit

    def copy(self, **changes) -> "CheckerboardView":
        """Shallow copy with optional field replacements."""
        return replace(self, **changes)


def count_valid(views: Sequence[Optional[CheckerboardView]]) -> int:
    """Number of non-dropped views."""
    return sum(view is not None for view in views)


def valid_views(views: Sequence[Optional[CheckerboardView]]) -> List[CheckerboardView]:
    """Views that were not dropped and carry a depth plane."""
    return [view for view in views if view is not None and view.has_depth_plane]
