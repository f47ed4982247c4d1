"""
Residual functions of the calibration problems.

Every residual is a callable object taking the values of its parameter
blocks, in a fixed order, and returning a flat residual vector. Rotations
are either rotation vectors (3 values) or unit quaternions [x, y, z, w]
(4 values); the residuals accept both.

Frames:
    T_color: color sensor -> depth sensor (extrinsic being calibrated)
    T_cb:    checkerboard -> color sensor (one per view)

Residual families:
==================
ReprojectionError (2N):
    (project(T_cb X_i) - x_i) / scale

DepthPlaneError (N):
    (n . (T_color T_cb X_i) + d) / sigma(z_i)
    with (n, d) the plane fitted in the depth cloud.

TransformDistortionError (3n):
    Each inlier pixel (u, v) of the depth plane is re-projected through the
    candidate depth intrinsics, undistorted by the candidate global model
    and compared with the intersection of its ray and the checkerboard
    plane under T_color T_cb:
        (ray(u, v) . z_plane - p) / (sqrt(n) sigma(z))

PlaneAlignmentError (4):
    [R n_c - n_d,  (d_c - (R n_c) . t) - d_d]
    for one plane seen as (n_c, d_c) by the color sensor and (n_d, d_d) by
    the depth sensor. Ships an analytic Jacobian.

IntrinsicsPriorError (4):
    (delta - [1, 1, 0, 0]) / sigma
    keeps the depth intrinsics delta near the factory calibration.
"""

from typing import List

import numpy as np
from scipy.spatial.transform import Rotation

from ..calibration.checkerboard import Checkerboard
from ..calibration.intrinsics import CameraIntrinsics
from ..calibration.plane import Plane
from ..calibration.projection import backproject_2d_to_3d
from ..undistortion.models import GlobalModel
from ..undistortion.polynomial import DepthErrorFunction
from .problem import AnalyticDiffCostFunction, NumericDiffCostFunction


def rotation_matrix(values: np.ndarray) -> np.ndarray:
    """Rotation matrix of a rotation vector (3,) or quaternion [x, y, z, w] (4,)."""
    values = np.asarray(values, dtype=np.float64)
    if len(values) == 4:
        return Rotation.from_quat(values).as_matrix()
    return Rotation.from_rotvec(values).as_matrix()


def skew(v: np.ndarray) -> np.ndarray:
    """Cross product matrix [v]x."""
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ])


def left_jacobian(w: np.ndarray) -> np.ndarray:
    """
    Left Jacobian of SO(3) at the rotation vector w.

    exp(w + dw) ~= exp(J_l(w) dw) exp(w) to first order.
    """
    w = np.asarray(w, dtype=np.float64)
    theta = np.linalg.norm(w)
    W = skew(w)
    if theta < 1e-8:
        return np.eye(3) + 0.5 * W + W @ W / 6.0
    return (
        np.eye(3)
        + (1.0 - np.cos(theta)) / theta ** 2 * W
        + (theta - np.sin(theta)) / theta ** 3 * W @ W
    )


def _apply(rotation: np.ndarray, translation: np.ndarray, points: np.ndarray) -> np.ndarray:
    return points @ rotation_matrix(rotation).T + translation


class ReprojectionError:
    """
    Pixel error of the checkerboard corners seen by the color camera.

    Blocks: (checkerboard rotation, checkerboard translation).

    Args:
        checkerboard: Target geometry.
        image_corners: Detected corners (N, 2).
        intrinsics: Color camera intrinsics.
        scale: Residual divisor (pixels).
    """

    def __init__(
        self,
        checkerboard: Checkerboard,
        image_corners: np.ndarray,
        intrinsics: CameraIntrinsics,
        scale: float = 0.5,
    ):
        self.corners = checkerboard.corners
        self.image_corners = np.asarray(image_corners, dtype=np.float64).reshape(-1, 2)
        self.intrinsics = intrinsics
        self.scale = float(scale)
        self.num_residuals = 2 * len(self.corners)

    def __call__(self, cb_rotation, cb_translation) -> np.ndarray:
        points = _apply(cb_rotation, cb_translation, self.corners)
        projected = np.atleast_2d(self.intrinsics.project_point(points))
        return ((projected - self.image_corners) / self.scale).ravel()

    def cost_function(self) -> NumericDiffCostFunction:
        return NumericDiffCostFunction(self, self.num_residuals)


class DepthPlaneError:
    """
    Distance of the checkerboard corners from the plane seen by the depth sensor.

    Blocks: (color rotation, color translation,
             checkerboard rotation, checkerboard translation).
    """

    def __init__(
        self,
        checkerboard: Checkerboard,
        depth_plane: Plane,
        depth_error_function: DepthErrorFunction,
    ):
        self.corners = checkerboard.corners
        self.plane = depth_plane
        self.depth_error_function = depth_error_function
        self.num_residuals = len(self.corners)

    def __call__(self, color_rotation, color_translation, cb_rotation, cb_translation) -> np.ndarray:
        in_color = _apply(cb_rotation, cb_translation, self.corners)
        in_depth = _apply(color_rotation, color_translation, in_color)
        sigma = self.depth_error_function(in_depth[:, 2])
        return self.plane.signed_distance(in_depth) / sigma

    def cost_function(self) -> NumericDiffCostFunction:
        return NumericDiffCostFunction(self, self.num_residuals)


class TransformDistortionError:
    """
    Depth consistency of a view's plane inliers under the full model.

    Blocks: (color quaternion, color translation, global free coefficients,
             checkerboard quaternion, checkerboard translation,
             depth intrinsics delta [sx, sy, dx, dy]).

    Args:
        checkerboard: Target geometry.
        pixels: Inlier pixel coordinates (n, 2) in the cloud grid.
        depths: Inlier depths (n,), already locally undistorted.
        depth_intrinsics: Depth intrinsics at the cloud resolution.
        global_model: Model whose layout (size, degrees) the free
                      coefficients follow; it is not modified.
        depth_error_function: Depth noise model.
    """

    def __init__(
        self,
        checkerboard: Checkerboard,
        pixels: np.ndarray,
        depths: np.ndarray,
        depth_intrinsics: CameraIntrinsics,
        global_model: GlobalModel,
        depth_error_function: DepthErrorFunction,
    ):
        self.pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        self.depths = np.asarray(depths, dtype=np.float64).ravel()
        if len(self.pixels) != len(self.depths):
            raise ValueError("pixels and depths must have the same length")
        if len(self.depths) == 0:
            raise ValueError("TransformDistortionError needs at least one inlier")

        corners = checkerboard.corners
        self.plane_corners = corners[[
            checkerboard.corner_index(0, 0),
            checkerboard.corner_index(0, 1),
            checkerboard.corner_index(1, 0),
        ]]
        self.depth_intrinsics = depth_intrinsics
        self.model = global_model.copy()
        self.depth_error_function = depth_error_function
        self.normalizer = np.sqrt(len(self.depths))
        self.num_residuals = 3 * len(self.depths)

    def points(self, free_coefficients, delta) -> np.ndarray:
        """Inlier points rebuilt with the candidate intrinsics and global model."""
        intrinsics = self.depth_intrinsics.with_delta(delta)
        self.model.set_free_coefficients(free_coefficients)
        depths = self.model.undistort_depth(self.pixels[:, 0], self.pixels[:, 1], self.depths)
        return backproject_2d_to_3d(self.pixels, depths, intrinsics)

    def __call__(
        self,
        color_rotation,
        color_translation,
        free_coefficients,
        cb_rotation,
        cb_translation,
        delta,
    ) -> np.ndarray:
        in_color = _apply(cb_rotation, cb_translation, self.plane_corners)
        p0, p1, p2 = _apply(color_rotation, color_translation, in_color)
        plane = Plane.through(p0, p1, p2)

        points = self.points(free_coefficients, delta)
        expected = plane.intersect_rays(points)
        sigma = self.depth_error_function(points[:, 2])
        return ((expected - points) / (self.normalizer * sigma)[:, None]).ravel()

    def cost_function(self, relative_step: float = 1e-6) -> NumericDiffCostFunction:
        return NumericDiffCostFunction(self, self.num_residuals, relative_step)


class PlaneAlignmentError:
    """
    Alignment of one plane observed by both sensors.

    Blocks: (color quaternion, color translation).
    """

    num_residuals = 4

    def __init__(self, color_plane: Plane, depth_plane: Plane):
        self.color_plane = color_plane
        self.depth_plane = depth_plane

    def __call__(self, rotation, translation) -> np.ndarray:
        normal = rotation_matrix(rotation) @ self.color_plane.normal
        offset = self.color_plane.offset - normal @ translation
        return np.concatenate([
            normal - self.depth_plane.normal,
            [offset - self.depth_plane.offset],
        ])

    def jacobian(self, rotation, translation) -> List[np.ndarray]:
        """Jacobians w.r.t. a left rotation update and the translation."""
        normal = rotation_matrix(rotation) @ self.color_plane.normal
        n_skew = skew(normal)

        d_rotation = np.vstack([-n_skew, (np.asarray(translation) @ n_skew)[None, :]])
        d_translation = np.vstack([np.zeros((3, 3)), -normal[None, :]])
        return [d_rotation, d_translation]


class IntrinsicsPriorError:
    """
    Pull of the depth intrinsics delta towards the factory calibration.

    Block: (depth intrinsics delta [sx, sy, dx, dy]).

    Args:
        sigma: Expected deviation of each delta component; scale factors are
               unitless, offsets are in cloud pixels.
    """

    IDENTITY = np.array([1.0, 1.0, 0.0, 0.0])

    num_residuals = 4

    def __init__(self, sigma):
        self.sigma = np.asarray(sigma, dtype=np.float64).ravel()
        if self.sigma.shape != (4,) or np.any(self.sigma <= 0):
            raise ValueError(f"sigma must hold 4 positive values, got {sigma}")

    def __call__(self, delta) -> np.ndarray:
        return (np.asarray(delta) - self.IDENTITY) / self.sigma

    def jacobian(self, delta) -> List[np.ndarray]:
        return [np.diag(1.0 / self.sigma)]

    def cost_function(self) -> AnalyticDiffCostFunction:
        return AnalyticDiffCostFunction(self, self.jacobian, self.num_residuals)
