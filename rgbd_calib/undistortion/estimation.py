"""
Depth Undistortion Estimation.

Estimates the local and the global undistortion models from depth clouds of
a checkerboard whose true plane is known from the color camera.

Pipeline:
=========

    INGEST --estimate_local_model--> LOCAL
           --estimate_local_model_reverse--> REVERSED
           --estimate_global_model--> GLOBAL

1. Ingest (``add_depth_data``): the checkerboard region of the raw cloud is
   located by projecting the board corners into the depth image and a plane
   is fitted to it. For every inlier p the expected point is the
   intersection of its viewing ray with the checkerboard plane; the sample
   is (p.z, expected.z).

2. Local fit: per bin, least squares regression expected = f(raw) over the
   samples of every frame with a valid plane.

3. Reverse pass: every cloud is locally undistorted and its plane fitted
   again, since correcting depth moves the plane and changes the inliers.
   Points in unavailable bins are dropped from the undistorted cloud, so
   the re-fitted plane, the global samples and the joint optimization only
   see corrected depth.
   Frames whose plane cannot be fitted again become invalid. Samples
   (locally undistorted z, expected z) are collected for the new inliers.

4. Global fit: joint linear least squares over the three free cells of the
   global model; the fourth cell is derived from them.

Failure policy: bins without enough samples become unavailable, frames
without a plane become invalid; nothing aborts the batch.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

import numpy as np

from ..calibration.intrinsics import CameraIntrinsics
from ..calibration.plane import Plane, PlaneFit, PlaneFitter, fit_plane_svd
from ..calibration.projection import extract_plane_in_region, flat_to_pixel
from ..utils.logger import LoggerMixin, ProgressLogger
from .models import GlobalModel, LocalModel
from .polynomial import fit_polynomial


class Phase(IntEnum):
    """Estimation phases, in the order they must run."""

    INGEST = 0
    LOCAL = 1
    REVERSED = 2
    GLOBAL = 3


@dataclass
class DepthSamples:
    """
    Depth samples of one frame.

    Attributes:
        indices: Flat cloud indices of the samples.
        measured: Measured depth.
        expected: Depth of the checkerboard plane along the same ray.
    """

    indices: np.ndarray
    measured: np.ndarray
    expected: np.ndarray

    def __len__(self) -> int:
        return len(self.indices)


@dataclass
class DepthData:
    """
    Depth information of one frame.

    Attributes:
        id: Frame identifier.
        cloud: Raw organized cloud (H, W, 3).
        checkerboard_corners: Checkerboard corners (N, 3) in the depth frame.
        checkerboard_plane: Checkerboard plane in the depth frame.
        plane_extracted: Whether the frame currently holds a valid plane.
        estimated_plane: Plane fitted in the cloud (raw, then undistorted).
        samples: Samples used by the current phase.
        undistorted_cloud: Locally undistorted cloud (after the reverse pass).
    """

    id: object
    cloud: np.ndarray
    checkerboard_corners: np.ndarray
    checkerboard_plane: Plane
    plane_extracted: bool = False
    estimated_plane: Optional[PlaneFit] = None
    samples: Optional[DepthSamples] = None
    undistorted_cloud: Optional[np.ndarray] = None


def plane_samples(cloud: np.ndarray, plane_fit: PlaneFit, reference: Plane) -> DepthSamples:
    """
    Pair the depth of plane inliers with the depth of a reference plane.

    Args:
        cloud: Organized cloud the inliers index.
        plane_fit: Fitted plane with inlier indices.
        reference: Plane the true surface lies on.

    Returns:
        DepthSamples: Samples with a finite expected depth.
    """
    points = cloud.reshape(-1, 3)[plane_fit.indices]
    expected = reference.intersect_rays(points)[:, 2]
    valid = np.isfinite(expected) & (expected > 0)
    return DepthSamples(
        indices=plane_fit.indices[valid],
        measured=points[valid, 2],
        expected=expected[valid],
    )


class DepthUndistortionEstimation(LoggerMixin):
    """
    Three-phase estimator of the local and global depth undistortion models.

    Args:
        local_model: Model filled by ``estimate_local_model``.
        global_model: Model filled by ``estimate_global_model``.
        depth_intrinsics: Depth intrinsics at the cloud resolution.
        plane_fitter: Plane fitter for the checkerboard region.
        region_margin: Relative growth of the projected checkerboard region.
        min_samples: Minimum samples for a bin to be fitted.
        max_workers: Worker threads (capped at 8).
    """

    MAX_WORKERS = 8

    def __init__(
        self,
        local_model: LocalModel,
        global_model: GlobalModel,
        depth_intrinsics: CameraIntrinsics,
        plane_fitter: Optional[PlaneFitter] = None,
        region_margin: float = 0.1,
        min_samples: int = 20,
        max_workers: int = 8,
    ):
        if local_model is None or global_model is None:
            raise RuntimeError("Local and global models must be set")
        if local_model.image_size != depth_intrinsics.image_size:
            raise ValueError(
                f"Local model size {local_model.image_size} differs from depth image size "
                f"{depth_intrinsics.image_size}"
            )
        self.local_model = local_model
        self.global_model = global_model
        self.depth_intrinsics = depth_intrinsics
        self.plane_fitter = plane_fitter or PlaneFitter()
        self.region_margin = region_margin
        self.min_samples = max(int(min_samples), local_model.polynomial_size)
        self.max_workers = max(1, min(self.MAX_WORKERS, int(max_workers)))

        self.depth_data: List[DepthData] = []
        self.phase = Phase.INGEST

    def _require(self, phase: Phase, action: str) -> None:
        if self.phase != phase:
            raise RuntimeError(
                f"Cannot {action} in phase {self.phase.name}, expected {phase.name}"
            )

    @property
    def valid_depth_data(self) -> List[DepthData]:
        return [data for data in self.depth_data if data.plane_extracted]

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    def add_depth_data(
        self,
        cloud: np.ndarray,
        checkerboard_corners: np.ndarray,
        frame_id=None,
    ) -> DepthData:
        """
        Register the cloud of one frame.

        Args:
            cloud: Raw organized cloud (H, W, 3) at the model resolution.
            checkerboard_corners: Checkerboard corners (N, 3) in the depth frame.
            frame_id: Frame identifier (defaults to the insertion index).

        Returns:
            DepthData: The stored record; ``plane_extracted`` tells whether
            the frame contributes samples.
        """
        self._require(Phase.INGEST, "add depth data")
        cloud = np.asarray(cloud, dtype=np.float64)
        if (cloud.shape[1], cloud.shape[0]) != self.local_model.image_size:
            raise ValueError(
                f"Cloud size {(cloud.shape[1], cloud.shape[0])} differs from model size "
                f"{self.local_model.image_size}"
            )

        corners = np.atleast_2d(checkerboard_corners)
        data = DepthData(
            id=len(self.depth_data) if frame_id is None else frame_id,
            cloud=cloud,
            checkerboard_corners=corners,
            checkerboard_plane=fit_plane_svd(corners).canonical(),
        )

        plane_fit = self._extract_plane(cloud, corners)
        if plane_fit is not None:
            data.estimated_plane = plane_fit
            data.samples = plane_samples(cloud, plane_fit, data.checkerboard_plane)
            data.plane_extracted = len(data.samples) > 0

        if not data.plane_extracted:
            self.logger.debug(f"Frame {data.id}: checkerboard plane not found in depth cloud")

        self.depth_data.append(data)
        return data

    def _extract_plane(self, cloud: np.ndarray, corners: np.ndarray) -> Optional[PlaneFit]:
        return extract_plane_in_region(
            cloud, corners, self.depth_intrinsics, self.plane_fitter, self.region_margin
        )

    # -------------------------------------------------------------------------
    # Local model
    # -------------------------------------------------------------------------

    def _pooled_samples(self):
        """Samples of all valid frames sorted by bin: (bin ids, measured, expected)."""
        valid = [data.samples for data in self.valid_depth_data]
        if not valid:
            return np.zeros(0, dtype=np.int64), np.zeros(0), np.zeros(0)

        indices = np.concatenate([s.indices for s in valid])
        measured = np.concatenate([s.measured for s in valid])
        expected = np.concatenate([s.expected for s in valid])

        u, v = flat_to_pixel(indices, self.local_model.image_size[0])
        rows, cols = self.local_model.bin_of(u, v)
        bins = rows * self.local_model.shape[1] + cols

        order = np.argsort(bins, kind="stable")
        return bins[order], measured[order], expected[order]

    def estimate_local_model(self) -> LocalModel:
        """
        Fit one polynomial per bin from the ingested samples.

        Returns:
            LocalModel: The fitted model (same object as ``local_model``).
        """
        self._require(Phase.INGEST, "estimate the local model")
        model = self.local_model
        rows, cols = model.shape
        model.coefficients[:] = np.nan

        bins, measured, expected = self._pooled_samples()
        starts = np.searchsorted(bins, np.arange(rows * cols), side="left")
        ends = np.searchsorted(bins, np.arange(rows * cols), side="right")

        def fit_row(row: int) -> int:
            fitted = 0
            for col in range(cols):
                b = row * cols + col
                start, end = starts[b], ends[b]
                if end - start < self.min_samples:
                    continue
                coefficients = fit_polynomial(
                    measured[start:end], expected[start:end], model.degree, model.min_degree
                )
                if coefficients is not None:
                    model.coefficients[row, col] = coefficients
                    fitted += 1
            return fitted

        fitted_per_row = [0] * rows
        with ProgressLogger(rows, self.logger, "Local model fit") as progress:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {executor.submit(fit_row, row): row for row in range(rows)}
                for future in as_completed(futures):
                    fitted_per_row[futures[future]] = future.result()
                    progress.update()

        self.logger.info(
            f"Local model: {sum(fitted_per_row)}/{model.num_bins} bins fitted "
            f"from {len(measured)} samples"
        )
        self.phase = Phase.LOCAL
        return model

    def estimate_local_model_reverse(self) -> List[DepthData]:
        """
        Undistort every valid cloud with the local model and fit its plane again.

        Returns:
            List[DepthData]: All depth data; invalid frames have
            ``plane_extracted`` set to False.
        """
        self._require(Phase.LOCAL, "reverse the local model")
        depth_data = self.depth_data
        results: List[Optional[tuple]] = [None] * len(depth_data)

        def refit(index: int) -> None:
            data = depth_data[index]
            if not data.plane_extracted:
                return
            undistorted = self.local_model.undistort_cloud(data.cloud, drop_unavailable=True)
            plane_fit = self._extract_plane(undistorted, data.checkerboard_corners)
            samples = None
            if plane_fit is not None:
                samples = plane_samples(undistorted, plane_fit, data.checkerboard_plane)
            results[index] = (undistorted, plane_fit, samples)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            list(executor.map(refit, range(len(depth_data))))

        before = len(self.valid_depth_data)
        for data, result in zip(depth_data, results):
            if result is None:
                continue
            undistorted, plane_fit, samples = result
            data.undistorted_cloud = undistorted
            if plane_fit is None or samples is None or len(samples) == 0:
                data.plane_extracted = False
                data.estimated_plane = None
                data.samples = None
                self.logger.debug(f"Frame {data.id}: plane lost after local undistortion")
                continue
            data.estimated_plane = plane_fit
            data.samples = samples

        self.logger.info(
            f"Reverse pass: {len(self.valid_depth_data)}/{before} frames kept their plane"
        )
        self.phase = Phase.REVERSED
        return depth_data

    # -------------------------------------------------------------------------
    # Global model
    # -------------------------------------------------------------------------

    def estimate_global_model(self) -> GlobalModel:
        """
        Fit the three free cells of the global model on locally undistorted samples.

        Returns:
            GlobalModel: The fitted model (same object as ``global_model``).
        """
        self._require(Phase.REVERSED, "estimate the global model")
        model = self.global_model
        valid = [data.samples for data in self.valid_depth_data]

        if valid:
            indices = np.concatenate([s.indices for s in valid])
            measured = np.concatenate([s.measured for s in valid])
            expected = np.concatenate([s.expected for s in valid])
            u, v = flat_to_pixel(indices, model.image_size[0])

            A = model.design_matrix(u, v, measured)
            solution, _, rank, _ = np.linalg.lstsq(A, expected, rcond=None)
            if rank < A.shape[1]:
                self.logger.warning(
                    f"Global model design matrix is rank deficient ({rank}/{A.shape[1]}), "
                    f"keeping the current model"
                )
            else:
                model.set_free_coefficients(solution)
                self.logger.info(f"Global model fitted from {len(expected)} samples")
        else:
            self.logger.warning("No valid frames, global model left unchanged")

        self.phase = Phase.GLOBAL
        return model
