"""
Joint refinement of the color/depth extrinsic.

Two problems are built from the surviving checkerboard views:

Transform-only (``optimize_transform``):
    Parameters: extrinsic (rotation vector + translation), one checkerboard
    pose per view (rotation vector + translation).
    Residuals per view: ReprojectionError (scale 0.5) and DepthPlaneError,
    each with a Cauchy loss. Checkerboard poses are eliminated with the Schur
    complement.

Full (``optimize_all``):
    Parameters: extrinsic (unit quaternion + translation), one checkerboard
    pose per view (unit quaternion + translation), the three free cells of the
    global undistortion model and the depth intrinsics delta [sx, sy, dx, dy].
    Residuals per view: TransformDistortionError on the plane inliers and
    ReprojectionError (scale 0.5 sqrt(N)), no loss. One IntrinsicsPriorError
    on the intrinsics delta unless the prior is disabled. Sparse normal
    equations.

Both write the refined extrinsic back into the color sensor. The full
problem also writes back the global model (continuity cell re-derived) and
the corrected depth intrinsics.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..calibration.extrinsics import Pose
from ..calibration.intrinsics import CameraIntrinsics
from ..calibration.projection import flat_to_pixel
from ..data.views import CheckerboardView
from ..sensors import ColorSensor, DepthSensor
from ..undistortion.models import GlobalModel
from ..utils.logger import LoggerMixin
from .problem import CauchyLoss, Problem, UnitQuaternion
from .residuals import (
    DepthPlaneError,
    IntrinsicsPriorError,
    ReprojectionError,
    TransformDistortionError,
)
from .solver import LevenbergMarquardtSolver, SolverOptions, SolverSummary

COLOR_ROTATION = "color/rotation"
COLOR_TRANSLATION = "color/translation"
GLOBAL_MODEL = "global_model"
INTRINSICS_DELTA = "depth_intrinsics_delta"


@dataclass
class JointOptimizationResult:
    """Outcome of one joint optimization."""

    color_pose: Pose
    summary: SolverSummary
    checkerboard_poses: Dict[str, Pose] = field(default_factory=dict)
    global_model: Optional[GlobalModel] = None
    depth_intrinsics: Optional[CameraIntrinsics] = None
    intrinsics_delta: Optional[np.ndarray] = None


class JointOptimizer(LoggerMixin):
    """
    Nonlinear refinement of extrinsics, checkerboard poses and depth model.

    Args:
        color_sensor: Color sensor; its pose is the initial extrinsic.
        depth_sensor: Depth sensor (native resolution intrinsics).
        downsample_ratio: Ratio between native and cloud resolution.
        max_workers: Threads used by the solver (capped at 8).
        transform_iterations: Iteration cap of the transform-only problem.
        full_iterations: Iteration cap of the full problem.
        loss_scale: Cauchy loss scale of the transform-only problem.
        intrinsics_prior_sigma: Expected deviation of the depth intrinsics
            delta [sx, sy, dx, dy] (offsets in cloud pixels); None leaves the
            delta unconstrained.
    """

    DEFAULT_INTRINSICS_PRIOR = (0.01, 0.01, 1.0, 1.0)

    def __init__(
        self,
        color_sensor: ColorSensor,
        depth_sensor: DepthSensor,
        downsample_ratio: int = 1,
        max_workers: int = 8,
        transform_iterations: int = 100,
        full_iterations: int = 20,
        loss_scale: float = 1.0,
        intrinsics_prior_sigma: Optional[Sequence[float]] = DEFAULT_INTRINSICS_PRIOR,
    ):
        self.color_sensor = color_sensor
        self.depth_sensor = depth_sensor
        self.downsample_ratio = int(downsample_ratio)
        self.max_workers = max_workers
        self.transform_iterations = transform_iterations
        self.full_iterations = full_iterations
        self.loss_scale = loss_scale
        self.intrinsics_prior_sigma = intrinsics_prior_sigma

    def _initial_pose(self) -> Pose:
        if self.color_sensor.pose is None:
            raise RuntimeError("Color sensor pose must be initialized before optimization")
        return self.color_sensor.pose

    @staticmethod
    def _view_blocks(view: CheckerboardView):
        return f"{view.id}/rotation", f"{view.id}/translation"

    # -------------------------------------------------------------------------
    # Transform-only
    # -------------------------------------------------------------------------

    def optimize_transform(
        self,
        views: Sequence[CheckerboardView],
    ) -> Optional[JointOptimizationResult]:
        """
        Refine the extrinsic with plane and reprojection constraints.

        Args:
            views: Views with a depth plane.

        Returns:
            JointOptimizationResult, or None when no view is usable.
        """
        views = [view for view in views if view is not None and view.has_depth_plane]
        if not views:
            self.logger.warning("No valid views, skipping transform optimization")
            return None

        pose = self._initial_pose()
        problem = Problem()
        problem.add_parameter_block(COLOR_ROTATION, pose.as_rotvec())
        problem.add_parameter_block(COLOR_TRANSLATION, pose.t)

        groups: List[List[str]] = []
        error_function = self.depth_sensor.depth_error_function

        for view in views:
            rotation, translation = self._view_blocks(view)
            problem.add_parameter_block(rotation, view.color_pose.as_rotvec())
            problem.add_parameter_block(translation, view.color_pose.t)
            groups.append([rotation, translation])

            reprojection = ReprojectionError(
                view.checkerboard, view.image_corners, self.color_sensor.intrinsics, scale=0.5
            )
            problem.add_residual_block(
                reprojection.cost_function(),
                [rotation, translation],
                CauchyLoss(self.loss_scale),
            )

            depth = DepthPlaneError(view.checkerboard, view.depth_plane.plane, error_function)
            problem.add_residual_block(
                depth.cost_function(),
                [COLOR_ROTATION, COLOR_TRANSLATION, rotation, translation],
                CauchyLoss(self.loss_scale),
            )

        options = SolverOptions(
            max_iterations=self.transform_iterations,
            linear_solver="sparse_schur",
            elimination_groups=groups,
            max_workers=self.max_workers,
        )
        summary = LevenbergMarquardtSolver(options).solve(problem)
        self.logger.info(f"Transform optimization: {summary.brief_report()}")

        color_pose = Pose.from_rotvec(
            problem.block(COLOR_ROTATION).values, problem.block(COLOR_TRANSLATION).values
        )
        self.color_sensor.set_pose(color_pose)

        checkerboard_poses = {}
        for view in views:
            rotation, translation = self._view_blocks(view)
            checkerboard_poses[view.id] = Pose.from_rotvec(
                problem.block(rotation).values, problem.block(translation).values
            )

        return JointOptimizationResult(
            color_pose=color_pose,
            summary=summary,
            checkerboard_poses=checkerboard_poses,
        )

    # -------------------------------------------------------------------------
    # Full
    # -------------------------------------------------------------------------

    def optimize_all(
        self,
        views: Sequence[CheckerboardView],
        global_model: GlobalModel,
    ) -> Optional[JointOptimizationResult]:
        """
        Jointly refine extrinsic, checkerboard poses, global model and depth intrinsics.

        Args:
            views: Views over locally undistorted clouds, with re-fitted planes.
            global_model: Current global model; refined in place.

        Returns:
            JointOptimizationResult, or None when no view is usable.
        """
        views = [
            view for view in views
            if view is not None and view.has_depth_plane and view.depth_plane.num_inliers > 0
        ]
        if not views:
            self.logger.warning("No valid views, skipping full optimization")
            return None

        pose = self._initial_pose()
        native = self.depth_sensor.intrinsics
        intrinsics = native.scaled(self.downsample_ratio)
        error_function = self.depth_sensor.depth_error_function

        problem = Problem()
        problem.add_parameter_block(COLOR_ROTATION, pose.as_quaternion(), UnitQuaternion())
        problem.add_parameter_block(COLOR_TRANSLATION, pose.t)
        problem.add_parameter_block(GLOBAL_MODEL, global_model.free_coefficients)
        problem.add_parameter_block(INTRINSICS_DELTA, np.array([1.0, 1.0, 0.0, 0.0]))

        for view in views:
            rotation, translation = self._view_blocks(view)
            problem.add_parameter_block(rotation, view.color_pose.as_quaternion(), UnitQuaternion())
            problem.add_parameter_block(translation, view.color_pose.t)

            cloud = view.record.cloud
            indices = view.depth_plane.indices
            points = cloud.reshape(-1, 3)[indices]
            u, v = flat_to_pixel(indices, cloud.shape[1])

            distortion = TransformDistortionError(
                view.checkerboard,
                np.stack([u, v], axis=1),
                points[:, 2],
                intrinsics,
                global_model,
                error_function,
            )
            problem.add_residual_block(
                distortion.cost_function(),
                [COLOR_ROTATION, COLOR_TRANSLATION, GLOBAL_MODEL, rotation, translation, INTRINSICS_DELTA],
            )

            reprojection = ReprojectionError(
                view.checkerboard,
                view.image_corners,
                self.color_sensor.intrinsics,
                scale=0.5 * np.sqrt(view.checkerboard.size),
            )
            problem.add_residual_block(reprojection.cost_function(), [rotation, translation])

        if self.intrinsics_prior_sigma is not None:
            prior = IntrinsicsPriorError(self.intrinsics_prior_sigma)
            problem.add_residual_block(prior.cost_function(), [INTRINSICS_DELTA])

        options = SolverOptions(
            max_iterations=self.full_iterations,
            linear_solver="sparse_normal",
            max_workers=self.max_workers,
        )
        summary = LevenbergMarquardtSolver(options).solve(problem)
        self.logger.info(f"Full optimization: {summary.brief_report()}")

        color_pose = Pose.from_quaternion(
            problem.block(COLOR_ROTATION).values, problem.block(COLOR_TRANSLATION).values
        )
        self.color_sensor.set_pose(color_pose)

        global_model.set_free_coefficients(problem.block(GLOBAL_MODEL).values)

        delta = problem.block(INTRINSICS_DELTA).values.copy()
        ratio = self.downsample_ratio
        refined = native.with_delta([delta[0], delta[1], delta[2] * ratio, delta[3] * ratio])
        self.depth_sensor.intrinsics = refined

        checkerboard_poses = {}
        for view in views:
            rotation, translation = self._view_blocks(view)
            checkerboard_poses[view.id] = Pose.from_quaternion(
                problem.block(rotation).values, problem.block(translation).values
            )

        return JointOptimizationResult(
            color_pose=color_pose,
            summary=summary,
            checkerboard_poses=checkerboard_poses,
            global_model=global_model,
            depth_intrinsics=refined,
            intrinsics_delta=delta,
        )
