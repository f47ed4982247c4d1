"""Depth sensor model."""

from typing import Optional

import numpy as np

from ..calibration.intrinsics import CameraIntrinsics
from ..undistortion.models import GlobalModel, LocalModel
from ..undistortion.polynomial import DepthErrorFunction


class DepthSensor:
    """
    Depth sensor producing organized point clouds. Root frame of the rig.

    Args:
        intrinsics: Intrinsics at the native cloud resolution.
        depth_error_function: Expected depth noise sigma(z).
        frame_id: Name of the sensor frame.
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        depth_error_function: Optional[DepthErrorFunction] = None,
        frame_id: str = "depth",
    ):
        if intrinsics is None:
            raise ValueError("Depth sensor requires intrinsics")
        self.intrinsics = intrinsics
        self.depth_error_function = depth_error_function or DepthErrorFunction()
        self.frame_id = frame_id

        self.local_model: Optional[LocalModel] = None
        self.global_model: Optional[GlobalModel] = None

    def depth_sigma(self, z: np.ndarray) -> np.ndarray:
        """Expected standard deviation of depth measurements at depth z."""
        return self.depth_error_function.evaluate(z)

    def undistort_cloud(self, cloud: np.ndarray) -> np.ndarray:
        """Apply the local then the global model (whichever are set)."""
        if self.local_model is not None:
            cloud = self.local_model.undistort_cloud(cloud)
        if self.global_model is not None:
            cloud = self.global_model.undistort_cloud(cloud)
        return cloud

    def __repr__(self) -> str:
        return f"DepthSensor(frame_id={self.frame_id!r}, intrinsics={self.intrinsics!r})"
