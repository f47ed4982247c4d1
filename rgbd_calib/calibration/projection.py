"""
3D-2D Projection Utilities Module.

Functions for moving between organized depth clouds, pixel grids and 3D
points, and for locating the checkerboard region inside a depth image.

Organized clouds:
=================
A depth cloud is an (H, W, 3) array whose element [v, u] is the 3D point
measured through pixel (u, v). Invalid measurements are NaN. Flat indices
address the same grid in row-major order: index = v * W + u.

Ray geometry:
=============
A measured point p lies on the ray through the origin and p. Changing its
depth from z to z' keeps it on the same ray:

    p' = p * z' / z

The expected point on a plane (n, d) along that ray is

    p_plane = p * (-d / (n . p))
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from .intrinsics import CameraIntrinsics
from .plane import PlaneFit, PlaneFitter


def transform_points(
    points: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> np.ndarray:
    """
    Apply rigid body transformation to 3D points.

    Mathematical Form:
        P_out = R @ P_in + t

    Args:
        points: 3D points (N, 3) or (3,) in source frame.
        R: 3x3 rotation matrix.
        t: 3x1 or (3,) translation vector.

    Returns:
        np.ndarray: Transformed points (N, 3).
    """
    points = np.atleast_2d(points)
    t = np.asarray(t).flatten()
    return points @ R.T + t


def backproject_2d_to_3d(
    pixels: np.ndarray,
    depths: np.ndarray,
    intrinsics: CameraIntrinsics,
) -> np.ndarray:
    """
    Back-project 2D pixels to 3D points using depth values.

    Lens distortion of the intrinsics is removed before scaling the ray.

    Mathematical Form:
        (x, y) = undistort((u - cx) / fx, (v - cy) / fy)
        P = Z * (x, y, 1)

    Args:
        pixels: 2D pixel coordinates (N, 2).
        depths: Depth value(s) (N,).
        intrinsics: Camera intrinsics.

    Returns:
        np.ndarray: 3D points (N, 3) in camera coordinates.
    """
    rays = intrinsics.pixel_to_ray(pixels)
    depths = np.broadcast_to(np.asarray(depths, dtype=np.float64), (len(rays),))
    return rays * depths[:, None]


def pixel_grid(shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """Flat pixel coordinates (u, v) of an (H, W) grid in row-major order."""
    height, width = shape
    v, u = np.mgrid[0:height, 0:width]
    return u.ravel(), v.ravel()


def flat_to_pixel(indices: np.ndarray, width: int) -> Tuple[np.ndarray, np.ndarray]:
    """Convert flat grid indices to (u, v) pixel coordinates."""
    indices = np.asarray(indices, dtype=np.int64)
    return indices % width, indices // width


def finite_mask(cloud: np.ndarray) -> np.ndarray:
    """Boolean (H, W) mask of finite points with positive depth."""
    with np.errstate(invalid="ignore"):
        return np.all(np.isfinite(cloud), axis=2) & (cloud[..., 2] > 0)


def scale_points_to_depth(points: np.ndarray, new_depth: np.ndarray) -> np.ndarray:
    """Move points along their rays so that their z equals ``new_depth``."""
    points = np.atleast_2d(points)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = np.asarray(new_depth, dtype=np.float64) / points[:, 2]
    return points * scale[:, None]


def region_mask(
    corners_3d: np.ndarray,
    intrinsics: CameraIntrinsics,
    shape: Tuple[int, int],
    margin: float = 0.0,
) -> np.ndarray:
    """
    Rasterize the convex hull of projected 3D points into an image mask.

    Args:
        corners_3d: Points (N, 3) in the camera frame, e.g. checkerboard corners.
        intrinsics: Intrinsics of the camera the mask belongs to.
        shape: Mask shape (H, W).
        margin: Relative growth of the hull around its centroid
                (0.1 grows it by 10%).

    Returns:
        np.ndarray: Boolean mask (H, W); empty if the points are behind the camera.
    """
    mask = np.zeros(shape, dtype=np.uint8)
    corners_3d = np.atleast_2d(corners_3d)
    if np.any(corners_3d[:, 2] <= 0):
        return mask.astype(bool)

    pixels = np.atleast_2d(intrinsics.project_point(corners_3d))
    if margin:
        centroid = pixels.mean(axis=0)
        pixels = centroid + (pixels - centroid) * (1.0 + margin)

    hull = cv2.convexHull(np.round(pixels).astype(np.int32).reshape(-1, 1, 2))
    cv2.fillConvexPoly(mask, hull, 1)
    return mask.astype(bool)


def extract_plane_in_region(
    cloud: np.ndarray,
    corners_3d: np.ndarray,
    intrinsics: CameraIntrinsics,
    fitter: PlaneFitter,
    margin: float = 0.0,
) -> Optional[PlaneFit]:
    """
    Fit the plane of the target whose corners are given, in an organized cloud.

    Candidate points are the finite points whose pixel falls inside the
    projected corner hull; the fitter selects the inliers.

    Args:
        cloud: Organized cloud (H, W, 3).
        corners_3d: Target corners (N, 3) in the cloud's frame.
        intrinsics: Intrinsics matching the cloud resolution.
        fitter: Plane fitter.
        margin: Relative growth of the region (see ``region_mask``).

    Returns:
        PlaneFit or None if too few candidate points agree on a plane.
    """
    height, width = cloud.shape[:2]
    mask = region_mask(corners_3d, intrinsics, (height, width), margin) & finite_mask(cloud)
    indices = np.flatnonzero(mask)
    if len(indices) == 0:
        return None
    points = cloud.reshape(-1, 3)[indices]
    return fitter.fit(points, indices)
