"""
Plane-Based Extrinsic Calibration.

Bootstraps the color -> depth extrinsic from checkerboard planes seen by both
sensors.

Mathematical Background:
========================

A plane (n_c, d_c) in the color frame appears in the depth frame as

    n' = R n_c,    d' = d_c - n' . t

Given k >= 3 views with the same physical plane fitted in the depth cloud as
(n_d, d_d):

Rotation (Kabsch on normals):
    H = sum_i n_d,i n_c,i^T = U S V^T
    R = U diag(1, 1, det(U V^T)) V^T

Translation (linear least squares, one row per view):
    (R n_c,i) . t = d_c,i - d_d,i

Refinement:
    Nonlinear least squares on [R n_c - n_d, (d_c - (R n_c) . t) - d_d] over
    the increment (w, dt) of R = exp(w) R0, t = t0 + dt, with the analytic
    Jacobian chained through the SO(3) left Jacobian.

Both planes of a pair are put in canonical orientation (d >= 0) first, so
that the normals of a pair point the same way.
"""

from typing import List, Optional, Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation

from ..data.extraction import CheckerboardDistanceConstraint, CheckerboardExtractor
from ..data.records import FrameRecord
from ..data.views import CheckerboardView
from ..optim.residuals import PlaneAlignmentError, left_jacobian
from ..utils.logger import LoggerMixin
from .extrinsics import Pose


class PlaneBasedExtrinsicCalibration(LoggerMixin):
    """
    Initial extrinsic estimation from plane correspondences.

    Args:
        max_views: Maximum number of views to sample.
        max_distance: Maximum distance of the checkerboard center from the
                      color sensor for a view to be accepted (meters).
        seed: Seed of the frame sampler.
        refine: Run the nonlinear refinement after the closed form.
        max_iterations: Cap on residual evaluations of the refinement.
    """

    MIN_CORRESPONDENCES = 3

    def __init__(
        self,
        max_views: int = 10,
        max_distance: float = 2.0,
        seed: int = 0,
        refine: bool = True,
        max_iterations: int = 50,
    ):
        self.max_views = max_views
        self.max_distance = max_distance
        self.seed = seed
        self.refine = refine
        self.max_iterations = max_iterations

    def sample_views(
        self,
        records: Sequence[FrameRecord],
        extractor: CheckerboardExtractor,
    ) -> List[CheckerboardView]:
        """
        Draw frames in a seeded random order until ``max_views`` views are accepted.

        Every record is tried at most once. A view is accepted when the
        extractor finds the checkerboard within ``max_distance`` and a plane
        in the depth cloud.
        """
        rng = np.random.default_rng(self.seed)
        constraint = CheckerboardDistanceConstraint(self.max_distance)
        views: List[CheckerboardView] = []

        for index in rng.permutation(len(records)):
            if len(views) >= self.max_views:
                break
            view = extractor.extract(records[int(index)], constraint)
            if view is not None and view.has_depth_plane:
                views.append(view)

        self.logger.debug(f"Sampled {len(views)} views from {len(records)} records")
        return views

    @staticmethod
    def correspondences(views: Sequence[CheckerboardView]):
        """Canonical (color plane, depth plane) pairs of views holding a depth plane."""
        return [
            (view.color_plane.canonical(), view.depth_plane.plane.canonical())
            for view in views
            if view is not None and view.has_depth_plane
        ]

    @staticmethod
    def closed_form(pairs: Sequence[tuple]) -> Pose:
        """Closed form rotation and translation from plane pairs."""
        normals_c = np.stack([c.normal for c, _ in pairs])
        normals_d = np.stack([d.normal for _, d in pairs])

        H = normals_d.T @ normals_c
        U, _, Vt = np.linalg.svd(H)
        R = U @ np.diag([1.0, 1.0, np.linalg.det(U @ Vt)]) @ Vt

        A = normals_c @ R.T
        b = np.array([c.offset - d.offset for c, d in pairs])
        t, *_ = np.linalg.lstsq(A, b, rcond=None)
        return Pose(R=R, t=t)

    def refine_pose(self, pose: Pose, pairs: Sequence[tuple]) -> Pose:
        """
        Nonlinear refinement of the plane alignment residual.

        The unknowns are increments x = (w, dt) around the starting pose,
        R = exp(w) R0 and t = t0 + dt, solved with ``scipy.optimize.least_squares``.
        """
        errors = [PlaneAlignmentError(c, d) for c, d in pairs]
        R0 = Rotation.from_matrix(pose.R)
        t0 = pose.t

        def unpack(x):
            return Pose(R=(Rotation.from_rotvec(x[:3]) * R0).as_matrix(), t=t0 + x[3:])

        def residuals(x):
            return self.plane_residuals(unpack(x), pairs).ravel()

        def jacobian(x):
            candidate = unpack(x)
            J_l = left_jacobian(x[:3])
            rows = []
            for error in errors:
                d_rotation, d_translation = error.jacobian(candidate.as_quaternion(), candidate.t)
                rows.append(np.hstack([d_rotation @ J_l, d_translation]))
            return np.vstack(rows)

        result = least_squares(
            residuals,
            np.zeros(6),
            jac=jacobian,
            xtol=1e-12,
            ftol=1e-12,
            gtol=1e-12,
            max_nfev=self.max_iterations,
        )
        self.logger.debug(
            f"Plane alignment refinement: cost {result.cost:.6g} after "
            f"{result.nfev} evaluations ({result.message})"
        )
        return unpack(result.x)

    def estimate(self, views: Sequence[CheckerboardView]) -> Optional[Pose]:
        """
        Estimate the color -> depth pose from views.

        Args:
            views: Views with a color pose and a depth plane.

        Returns:
            Pose, or None when fewer than 3 correspondences are available.
        """
        pairs = self.correspondences(views)
        if len(pairs) < self.MIN_CORRESPONDENCES:
            self.logger.warning(
                f"Only {len(pairs)} plane correspondences, at least "
                f"{self.MIN_CORRESPONDENCES} are needed for the initial transform"
            )
            return None

        normals = np.stack([d.normal for _, d in pairs])
        if np.linalg.matrix_rank(normals, tol=1e-3) < 3:
            self.logger.warning("Checkerboard normals do not span 3D, translation is ill-conditioned")

        pose = self.closed_form(pairs)
        if self.refine:
            pose = self.refine_pose(pose, pairs)

        angle = np.degrees(np.linalg.norm(Rotation.from_matrix(pose.R).as_rotvec()))
        self.logger.info(
            f"Initial transform from {len(pairs)} views: rotation {angle:.3f} deg, "
            f"translation {np.round(pose.t, 4).tolist()}"
        )
        return pose

    def perform(
        self,
        records: Sequence[FrameRecord],
        extractor: CheckerboardExtractor,
    ) -> Optional[Pose]:
        """Sample views from the records and estimate the initial transform."""
        return self.estimate(self.sample_views(records, extractor))

    @staticmethod
    def plane_residuals(pose: Pose, pairs: Sequence[tuple]) -> np.ndarray:
        """Plane alignment residuals (k, 4) of a pose."""
        return np.stack([
            PlaneAlignmentError(c, d)(pose.as_quaternion(), pose.t) for c, d in pairs
        ])

