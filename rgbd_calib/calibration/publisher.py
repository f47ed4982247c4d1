"""Publishing sinks for calibration state (sensors, records, views)."""

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from ..data.records import FrameRecord
from ..data.views import CheckerboardView
from ..utils.logger import LoggerMixin
from .extrinsics import Pose


class Publisher(ABC):
    """
    Sink for calibration state. Nothing returned by a publisher is used.
    """

    @abstractmethod
    def publish_pose(self, frame_id: str, pose: Optional[Pose], parent_frame_id: str) -> None:
        """Publish the pose of a sensor frame in its parent frame."""

    @abstractmethod
    def publish_record(self, record: FrameRecord) -> None:
        """Publish one frame record."""

    @abstractmethod
    def publish_view(self, view: CheckerboardView) -> None:
        """Publish one checkerboard view."""


class LoggingPublisher(Publisher, LoggerMixin):
    """Publisher writing a short description of everything to the log."""

    def publish_pose(self, frame_id, pose, parent_frame_id):
        if pose is None:
            self.logger.info(f"{frame_id}: no pose relative to {parent_frame_id}")
            return
        angle = np.degrees(np.linalg.norm(pose.as_rotvec()))
        self.logger.info(
            f"{frame_id} -> {parent_frame_id}: t={np.round(pose.t, 4).tolist()}, "
            f"rotation {angle:.3f} deg"
        )

    def publish_record(self, record):
        valid = int(np.all(np.isfinite(record.cloud), axis=2).sum())
        width, height = record.cloud_size
        self.logger.info(f"Record {record.id}: cloud {width}x{height}, {valid} valid points")

    def publish_view(self, view):
        if view.has_depth_plane:
            plane = view.depth_plane
            self.logger.info(
                f"View {view.id}: board at {np.round(view.center, 3).tolist()}, "
                f"plane {plane.num_inliers} inliers (std {plane.std_dev:.4f})"
            )
        else:
            self.logger.info(f"View {view.id}: board at {np.round(view.center, 3).tolist()}, no plane")
