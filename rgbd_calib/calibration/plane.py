"""
Plane primitives and robust plane fitting for organized depth clouds.

A plane is stored in Hessian normal form

    n . x + d = 0,    |n| = 1

so that ``d`` is the signed distance of the plane from the origin, measured
against the normal. ``canonical()`` flips the sign of (n, d) so that d >= 0,
i.e. the normal points towards the side of the plane holding the origin. Two
sensors mounted close together see the same target from the same side, so
canonical planes of one physical target agree in orientation in both frames.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass
class Plane:
    """Plane in Hessian normal form (unit normal, scalar offset)."""

    normal: np.ndarray
    offset: float

    def __post_init__(self):
        normal = np.asarray(self.normal, dtype=np.float64).flatten()
        norm = np.linalg.norm(normal)
        if normal.shape != (3,) or norm == 0:
            raise ValueError(f"Plane normal must be a non-zero 3-vector, got {self.normal}")
        self.normal = normal / norm
        self.offset = float(self.offset) / norm

    @classmethod
    def through(cls, p0: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> "Plane":
        """Plane through three non-collinear points."""
        normal = np.cross(np.asarray(p1) - p0, np.asarray(p2) - p0)
        if np.linalg.norm(normal) == 0:
            raise ValueError("Points are collinear")
        normal = normal / np.linalg.norm(normal)
        return cls(normal=normal, offset=-float(normal @ p0))

    def canonical(self) -> "Plane":
        """Same plane with the sign chosen so that offset >= 0."""
        if self.offset < 0:
            return Plane(normal=-self.normal, offset=-self.offset)
        return Plane(normal=self.normal.copy(), offset=self.offset)

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(points)
        return points @ self.normal + self.offset

    def abs_distance(self, points: np.ndarray) -> np.ndarray:
        return np.abs(self.signed_distance(points))

    def intersect_rays(self, directions: np.ndarray) -> np.ndarray:
        """
        Intersect rays leaving the origin with the plane.

        Args:
            directions: Ray directions (N, 3), any length.

        Returns:
            np.ndarray: Intersection points (N, 3); NaN for rays parallel
            to the plane.
        """
        directions = np.atleast_2d(directions)
        denom = directions @ self.normal
        with np.errstate(divide="ignore", invalid="ignore"):
            scale = np.where(np.abs(denom) > 1e-12, -self.offset / denom, np.nan)
        return directions * scale[:, None]

    def transform(self, R: np.ndarray, t: np.ndarray) -> "Plane":
        """Express the plane in a parent frame given the child->parent pose."""
        normal = R @ self.normal
        return Plane(normal=normal, offset=self.offset - float(normal @ t))

    def to_dict(self) -> dict:
        return {"normal": self.normal.tolist(), "offset": float(self.offset)}


@dataclass
class PlaneFit:
    """
    Plane fitted to a subset of an organized point cloud.

    Attributes:
        plane: Fitted plane.
        indices: Flat indices (row-major, into the H x W grid) of the inliers.
        std_dev: Standard deviation of inlier distances from the plane.
    """

    plane: Plane
    indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    std_dev: float = 0.0

    @property
    def num_inliers(self) -> int:
        return int(len(self.indices))


def fit_plane_svd(points: np.ndarray) -> Plane:
    """Least-squares plane through points (smallest singular vector)."""
    points = np.atleast_2d(points)
    centroid = points.mean(axis=0)
    _, _, vh = np.linalg.svd(points - centroid, full_matrices=False)
    normal = vh[-1]
    return Plane(normal=normal, offset=-float(normal @ centroid))


class PlaneFitter:
    """
    RANSAC plane fitting followed by least-squares refinement.

    Args:
        threshold: Inlier distance threshold (meters).
        iterations: Number of RANSAC hypotheses.
        min_inliers: Minimum inlier count for a fit to be accepted.
        seed: Seed of the hypothesis sampler.
    """

    def __init__(
        self,
        threshold: float = 0.02,
        iterations: int = 100,
        min_inliers: int = 50,
        seed: int = 0,
    ):
        self.threshold = threshold
        self.iterations = iterations
        self.min_inliers = min_inliers
        self.seed = seed

    def fit(self, points: np.ndarray, indices: np.ndarray) -> Optional[PlaneFit]:
        """
        Fit a plane to candidate points.

        Args:
            points: Candidate points (N, 3), all finite.
            indices: Flat cloud indices of the candidates (N,).

        Returns:
            PlaneFit or None when fewer than ``min_inliers`` points agree.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        indices = np.asarray(indices, dtype=np.int64)
        n = len(points)

        if n < max(self.min_inliers, 3):
            return None

        rng = np.random.default_rng(self.seed)
        best_mask = None
        best_count = 0

        for _ in range(self.iterations):
            sample = points[rng.choice(n, 3, replace=False)]
            normal = np.cross(sample[1] - sample[0], sample[2] - sample[0])
            norm = np.linalg.norm(normal)
            if norm < 1e-12:
                continue
            normal /= norm
            distances = np.abs((points - sample[0]) @ normal)
            mask = distances < self.threshold
            count = int(mask.sum())
            if count > best_count:
                best_count = count
                best_mask = mask
                if count == n:
                    break

        if best_mask is None or best_count < self.min_inliers:
            return None

        # Refine on inliers, then re-select inliers against the refined plane
        plane = fit_plane_svd(points[best_mask])
        mask = plane.abs_distance(points) < self.threshold
        if mask.sum() < self.min_inliers:
            return None
        plane = fit_plane_svd(points[mask]).canonical()

        distances = plane.signed_distance(points[mask])
        return PlaneFit(
            plane=plane,
            indices=indices[mask],
            std_dev=float(np.std(distances)),
        )
