"""
Calibration geometry for color + depth rigs.

This package provides the geometric primitives shared by the calibration
stages: poses, camera intrinsics, planes, the checkerboard target and the
organized-cloud projection helpers. The orchestrator lives in
``calibration.calibration`` and the initial transform estimator in
``calibration.plane_based``.

Classes:
    Pose: Rigid pose of a child frame in a parent frame.
    CameraIntrinsics: Pinhole intrinsics with OpenCV lens distortion.
    Plane: Plane in Hessian normal form.
    PlaneFit: Plane fitted to a subset of an organized cloud.
    PlaneFitter: RANSAC plane fitting with least-squares refinement.
    Checkerboard: Planar calibration target.

Standalone Functions:
    transform_points: Apply rigid body transformation.
    backproject_2d_to_3d: Back-project pixels to 3D using depth.
    region_mask: Rasterize the projected hull of 3D points.
    extract_plane_in_region: Fit the target plane in an organized cloud.
    fit_plane_svd: Least-squares plane through points.

Example Usage:
    >>> from rgbd_calib.calibration import Checkerboard, Pose
    >>> checkerboard = Checkerboard(rows=6, cols=9, cell_width=0.04, cell_height=0.04)
    >>> corners = checkerboard.corners_in(Pose.identity())
"""

from .checkerboard import Checkerboard
from .extrinsics import Pose
from .intrinsics import CameraIntrinsics
from .plane import Plane, PlaneFit, PlaneFitter, fit_plane_svd
from .projection import (
    backproject_2d_to_3d,
    extract_plane_in_region,
    region_mask,
    transform_points,
)

__all__ = [
    # Classes
    "Pose",
    "CameraIntrinsics",
    "Plane",
    "PlaneFit",
    "PlaneFitter",
    "Checkerboard",
    # Standalone functions
    "transform_points",
    "backproject_2d_to_3d",
    "region_mask",
    "extract_plane_in_region",
    "fit_plane_svd",
]
