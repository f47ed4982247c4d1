"""Color camera sensor model."""

from typing import Optional

import numpy as np

from ..calibration.extrinsics import Pose
from ..calibration.intrinsics import CameraIntrinsics


class ColorSensor:
    """
    Pinhole color camera rigidly attached to the depth sensor.

    Args:
        intrinsics: Camera intrinsics (with lens distortion).
        pose: Pose of the color sensor in the depth sensor frame, or None
              while the extrinsic calibration is unknown.
        frame_id: Name of the sensor frame.
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        pose: Optional[Pose] = None,
        frame_id: str = "color",
    ):
        if intrinsics is None:
            raise ValueError("Color sensor requires intrinsics")
        self.intrinsics = intrinsics
        self.pose = pose
        self.frame_id = frame_id

    @property
    def has_parent(self) -> bool:
        """Whether the sensor is placed relative to the depth sensor."""
        return self.pose is not None

    def project(self, points: np.ndarray) -> np.ndarray:
        """Project points (N, 3) given in the color frame to pixels (N, 2)."""
        return np.atleast_2d(self.intrinsics.project_point(points))

    def set_pose(self, pose: Pose) -> None:
        self.pose = pose

    def __repr__(self) -> str:
        return f"ColorSensor(frame_id={self.frame_id!r}, pose={self.pose!r})"
