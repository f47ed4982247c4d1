"""
Checkerboard view extraction.

The calibration core only depends on the ``CheckerboardExtractor`` interface:

    extract(record, constraint, only_images) -> Optional[CheckerboardView]
    extract_all(records, only_images)        -> List[Optional[CheckerboardView]]

``extract_all`` returns exactly one slot per input record (None where the
target was not found). ``OpenCVCheckerboardExtractor`` is the reference
implementation:

1. ``cv2.findChessboardCorners`` + ``cv2.cornerSubPix`` on the color image,
2. ``cv2.solvePnP`` for the board pose in the color frame,
3. unless ``only_images`` is set, the board corners are moved to the depth
   frame with the current color sensor pose, projected into the depth image
   and a plane is fitted to the cloud points inside the projected hull.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import cv2
import numpy as np

from ..calibration.checkerboard import Checkerboard
from ..calibration.extrinsics import Pose
from ..calibration.intrinsics import CameraIntrinsics
from ..calibration.plane import PlaneFitter
from ..calibration.projection import extract_plane_in_region
from ..utils.logger import LoggerMixin
from .records import FrameRecord
from .views import CheckerboardView


class CheckerboardDistanceConstraint:
    """
    Accept views whose checkerboard center is close to a point.

    Args:
        distance: Maximum distance (meters) of the board center.
        origin: Reference point in the color frame (default: sensor origin).
    """

    def __init__(self, distance: float, origin: Optional[np.ndarray] = None):
        self.distance = float(distance)
        self.origin = np.zeros(3) if origin is None else np.asarray(origin, dtype=np.float64)

    def is_valid(self, view: CheckerboardView) -> bool:
        return bool(np.linalg.norm(view.center - self.origin) <= self.distance)


class CheckerboardExtractor(ABC):
    """
    Interface of checkerboard view extractors.

    ``color_sensor_pose`` is the current color -> depth extrinsic, used to
    locate the checkerboard in the depth cloud (identity while unknown).
    """

    color_sensor_pose: Pose = Pose.identity()

    def set_color_sensor_pose(self, pose: Optional[Pose]) -> None:
        self.color_sensor_pose = pose or Pose.identity()

    @abstractmethod
    def extract(
        self,
        record: FrameRecord,
        constraint: Optional[CheckerboardDistanceConstraint] = None,
        only_images: bool = False,
    ) -> Optional[CheckerboardView]:
        """
        Extract the checkerboard view of one record.

        Args:
            record: Frame record.
            constraint: Optional acceptance constraint on the detected board.
            only_images: Skip the depth plane extraction.

        Returns:
            CheckerboardView, or None if no acceptable board was found.
        """

    def extract_all(
        self,
        records: Sequence[FrameRecord],
        only_images: bool = False,
    ) -> List[Optional[CheckerboardView]]:
        """Extract one view slot per record (None where extraction failed)."""
        return [self.extract(record, only_images=only_images) for record in records]


class OpenCVCheckerboardExtractor(CheckerboardExtractor, LoggerMixin):
    """
    Checkerboard extraction with OpenCV corner detection and PnP.

    Args:
        checkerboard: Target geometry.
        color_intrinsics: Color camera intrinsics.
        depth_intrinsics: Depth intrinsics at the record cloud resolution.
        color_sensor_pose: Current color sensor pose in the depth frame
                           (identity when unknown).
        plane_fitter: Plane fitter used in the depth cloud.
        region_margin: Relative growth of the projected board region.
    """

    SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 1e-3)

    def __init__(
        self,
        checkerboard: Checkerboard,
        color_intrinsics: CameraIntrinsics,
        depth_intrinsics: CameraIntrinsics,
        color_sensor_pose: Optional[Pose] = None,
        plane_fitter: Optional[PlaneFitter] = None,
        region_margin: float = 0.0,
    ):
        self.checkerboard = checkerboard
        self.color_intrinsics = color_intrinsics
        self.depth_intrinsics = depth_intrinsics
        self.color_sensor_pose = color_sensor_pose or Pose.identity()
        self.plane_fitter = plane_fitter or PlaneFitter()
        self.region_margin = region_margin

    def detect_corners(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Detect and refine the inner corners; returns (N, 2) or None."""
        gray = image
        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        gray = np.ascontiguousarray(gray, dtype=np.uint8)

        flags = cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
        found, corners = cv2.findChessboardCorners(gray, self.checkerboard.pattern_size, flags)
        if not found:
            return None

        corners = cv2.cornerSubPix(gray, corners, (5, 5), (-1, -1), self.SUBPIX_CRITERIA)
        return corners.reshape(-1, 2).astype(np.float64)

    def estimate_pose(self, corners: np.ndarray) -> Optional[Pose]:
        """Board pose in the color frame from detected corners."""
        ok, rvec, tvec = cv2.solvePnP(
            self.checkerboard.corners,
            corners.reshape(-1, 1, 2),
            self.color_intrinsics.K,
            self.color_intrinsics.distortion,
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
        if not ok:
            return None
        return Pose.from_rotvec(rvec.ravel(), tvec.ravel())

    def extract(
        self,
        record: FrameRecord,
        constraint: Optional[CheckerboardDistanceConstraint] = None,
        only_images: bool = False,
    ) -> Optional[CheckerboardView]:
        corners = self.detect_corners(record.image)
        if corners is None:
            self.logger.debug(f"Record {record.id}: checkerboard not found")
            return None

        pose = self.estimate_pose(corners)
        if pose is None:
            self.logger.debug(f"Record {record.id}: PnP failed")
            return None

        view = CheckerboardView(
            id=f"view_{record.id}",
            record=record,
            checkerboard=self.checkerboard,
            color_pose=pose,
            image_corners=corners,
        )

        if constraint is not None and not constraint.is_valid(view):
            self.logger.debug(f"Record {record.id}: checkerboard rejected by constraint")
            return None

        if only_images:
            return view

        plane = extract_plane_in_region(
            record.cloud,
            view.corners_in_depth(self.color_sensor_pose),
            self.depth_intrinsics,
            self.plane_fitter,
            self.region_margin,
        )
        if plane is None:
            self.logger.debug(f"Record {record.id}: plane extraction failed")
            return None

        view.set_plane(plane)
        return view
