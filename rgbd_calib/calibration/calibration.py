"""
Color + Depth Calibration Orchestrator.

Sequences the calibration stages over the stored frame records:

perform():
    1. Initial transform from plane correspondences, when requested or when
       the color sensor has no pose yet.
    2. With depth undistortion enabled: image-only checkerboard extraction
       over all records, local model fit, plane re-fit on locally undistorted
       clouds, global model fit. Views whose plane cannot be re-fitted are
       dropped for good.
    3. Transform-only optimization over the surviving views.

optimize():
    With depth undistortion enabled, the full optimization over copies of the
    views holding locally undistorted clouds and re-fitted planes; otherwise
    the transform-only optimization again.

Example Usage:
    >>> calibration = Calibration()
    >>> calibration.set_color_sensor(color_sensor)
    >>> calibration.set_depth_sensor(depth_sensor)
    >>> calibration.set_checkerboard(checkerboard)
    >>> for image, cloud in frames:
    ...     calibration.add_data(image, cloud)
    >>> calibration.perform()
    >>> calibration.optimize()
    >>> result = calibration.result()
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..data.extraction import CheckerboardExtractor, OpenCVCheckerboardExtractor
from ..data.records import FrameRecord, FrameRecordStore
from ..data.views import CheckerboardView, count_valid, valid_views
from ..optim.joint import JointOptimizationResult, JointOptimizer
from ..sensors import ColorSensor, DepthSensor
from ..undistortion.estimation import DepthData, DepthUndistortionEstimation, Phase
from ..undistortion.models import GlobalModel, LocalModel
from ..undistortion.polynomial import DepthErrorFunction
from ..utils.config import CalibrationConfig
from ..utils.logger import LoggerMixin
from .checkerboard import Checkerboard
from .extrinsics import Pose
from .intrinsics import CameraIntrinsics
from .plane import PlaneFitter
from .plane_based import PlaneBasedExtrinsicCalibration
from .publisher import Publisher
from .result import CalibrationResult


class Calibration(LoggerMixin):
    """
    Extrinsic and depth undistortion calibration of a color + depth rig.

    Args:
        downsample_ratio: Cloud down-sampling ratio applied in ``add_data``.
        estimate_initial_transform: Always run the initial transform estimation.
        estimate_depth_undistortion_model: Estimate the local and global models.
        bootstrap: Initial transform estimator.
        plane_fitter: Plane fitter for checkerboard regions.
        region_margin: Relative growth of projected checkerboard regions.
        local_min_samples: Minimum samples per local model bin.
        max_workers: Worker threads (capped at 8).
        transform_iterations: Iteration cap of the transform-only optimization.
        full_iterations: Iteration cap of the full optimization.
        loss_scale: Cauchy loss scale of the transform-only optimization.
        intrinsics_prior_sigma: Expected deviation of the depth intrinsics delta
            in the full optimization; None leaves it unconstrained.
    """

    MAX_WORKERS = 8

    def __init__(
        self,
        downsample_ratio: int = 1,
        estimate_initial_transform: bool = False,
        estimate_depth_undistortion_model: bool = False,
        bootstrap: Optional[PlaneBasedExtrinsicCalibration] = None,
        plane_fitter: Optional[PlaneFitter] = None,
        region_margin: float = 0.1,
        local_min_samples: int = 20,
        max_workers: int = 8,
        transform_iterations: int = 100,
        full_iterations: int = 20,
        loss_scale: float = 1.0,
        intrinsics_prior_sigma: Optional[Sequence[float]] = JointOptimizer.DEFAULT_INTRINSICS_PRIOR,
    ):
        self.color_sensor: Optional[ColorSensor] = None
        self.depth_sensor: Optional[DepthSensor] = None
        self.checkerboard: Optional[Checkerboard] = None
        self.publisher: Optional[Publisher] = None
        self.extractor: Optional[CheckerboardExtractor] = None
        self.local_model: Optional[LocalModel] = None
        self.global_model: Optional[GlobalModel] = None

        self.set_downsample_ratio(downsample_ratio)
        self.estimate_initial_transform = estimate_initial_transform
        self.estimate_depth_undistortion_model = estimate_depth_undistortion_model
        self.bootstrap = bootstrap or PlaneBasedExtrinsicCalibration()
        self.plane_fitter = plane_fitter or PlaneFitter()
        self.region_margin = region_margin
        self.local_min_samples = local_min_samples
        self.max_workers = max(1, min(self.MAX_WORKERS, int(max_workers)))
        self.transform_iterations = transform_iterations
        self.full_iterations = full_iterations
        self.loss_scale = loss_scale
        self.intrinsics_prior_sigma = intrinsics_prior_sigma

        self._store: Optional[FrameRecordStore] = None
        self.views: List[Optional[CheckerboardView]] = []
        self.depth_data: List[Optional[DepthData]] = []
        self.undistortion_estimation: Optional[DepthUndistortionEstimation] = None
        self.last_optimization: Optional[JointOptimizationResult] = None

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def set_color_sensor(self, sensor: ColorSensor) -> None:
        self.color_sensor = sensor

    def set_depth_sensor(self, sensor: DepthSensor) -> None:
        self.depth_sensor = sensor

    def set_checkerboard(self, checkerboard: Checkerboard) -> None:
        self.checkerboard = checkerboard

    def set_publisher(self, publisher: Optional[Publisher]) -> None:
        self.publisher = publisher

    def set_extractor(self, extractor: CheckerboardExtractor) -> None:
        self.extractor = extractor

    def set_downsample_ratio(self, ratio: int) -> None:
        if int(ratio) < 1:
            raise ValueError(f"Down-sample ratio must be >= 1, got {ratio}")
        if self._has_records():
            raise RuntimeError("Down-sample ratio cannot change once data has been added")
        self.downsample_ratio = int(ratio)

    def set_local_model(self, model: LocalModel) -> None:
        self.local_model = model

    def set_global_model(self, model: GlobalModel) -> None:
        self.global_model = model

    def _has_records(self) -> bool:
        return getattr(self, "_store", None) is not None and len(self._store) > 0

    def _require_sensors(self) -> None:
        if self.color_sensor is None or self.depth_sensor is None:
            raise RuntimeError("Color and depth sensors must be set")

    @property
    def depth_intrinsics(self) -> CameraIntrinsics:
        """Depth intrinsics at the stored cloud resolution."""
        self._require_sensors()
        return self.depth_sensor.intrinsics.scaled(self.downsample_ratio)

    def init_depth_undistortion_model(
        self,
        bin_size: Tuple[int, int] = (8, 8),
        local_degree: int = 2,
        local_min_degree: int = 0,
        global_degree: int = 2,
        global_min_degree: int = 1,
    ) -> None:
        """Create empty local and global models at the cloud resolution."""
        size = self.depth_intrinsics.image_size
        self.local_model = LocalModel(size, bin_size, local_degree, local_min_degree)
        self.global_model = GlobalModel(size, global_degree, global_min_degree)

    @classmethod
    def from_config(cls, config: CalibrationConfig) -> "Calibration":
        """Build a fully set up calibration from a configuration."""
        calibration = cls(
            downsample_ratio=config.downsample_ratio,
            estimate_initial_transform=config.bootstrap.enabled,
            estimate_depth_undistortion_model=config.undistortion.estimate,
            bootstrap=PlaneBasedExtrinsicCalibration(
                max_views=config.bootstrap.max_views,
                max_distance=config.bootstrap.max_distance,
                seed=config.bootstrap.seed,
            ),
            plane_fitter=PlaneFitter(
                threshold=config.plane_fit.threshold,
                iterations=config.plane_fit.iterations,
                min_inliers=config.plane_fit.min_inliers,
            ),
            region_margin=config.plane_fit.region_margin,
            local_min_samples=config.undistortion.local_min_samples,
            max_workers=config.solver.max_workers,
            transform_iterations=config.solver.transform_iterations,
            full_iterations=config.solver.full_iterations,
            loss_scale=config.solver.loss_scale,
            intrinsics_prior_sigma=config.solver.intrinsics_prior_sigma,
        )
        calibration.set_color_sensor(
            ColorSensor(config.color_intrinsics, pose=config.initial_extrinsic)
        )
        calibration.set_depth_sensor(
            DepthSensor(
                config.depth_intrinsics,
                depth_error_function=DepthErrorFunction(config.depth_error_function),
            )
        )
        calibration.set_checkerboard(config.checkerboard)
        if config.undistortion.estimate:
            calibration.init_depth_undistortion_model(
                bin_size=config.undistortion.local_bin_size,
                local_degree=config.undistortion.local_degree,
                local_min_degree=config.undistortion.local_min_degree,
                global_degree=config.undistortion.global_degree,
                global_min_degree=config.undistortion.global_min_degree,
            )
        return calibration

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    def add_data(self, image: np.ndarray, cloud: np.ndarray) -> FrameRecord:
        """
        Store one synchronized image / cloud pair.

        Raises:
            RuntimeError: If the sensors are not set.
        """
        if self._store is None:
            self._store = FrameRecordStore(self.color_sensor, self.depth_sensor, self.downsample_ratio)
        return self._store.add(image, cloud)

    @property
    def records(self) -> List[FrameRecord]:
        return [] if self._store is None else self._store.records

    def _get_extractor(self) -> CheckerboardExtractor:
        if self.checkerboard is None:
            raise RuntimeError("Checkerboard must be set")
        if self.extractor is None:
            self.extractor = OpenCVCheckerboardExtractor(
                self.checkerboard,
                self.color_sensor.intrinsics,
                self.depth_intrinsics,
                plane_fitter=self.plane_fitter,
                region_margin=self.region_margin,
            )
        return self.extractor

    def _optimizer(self) -> JointOptimizer:
        return JointOptimizer(
            self.color_sensor,
            self.depth_sensor,
            downsample_ratio=self.downsample_ratio,
            max_workers=self.max_workers,
            transform_iterations=self.transform_iterations,
            full_iterations=self.full_iterations,
            loss_scale=self.loss_scale,
            intrinsics_prior_sigma=self.intrinsics_prior_sigma,
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def estimate_initial_pose(self) -> Optional[Pose]:
        """
        Run the plane-based initial transform estimation.

        The color sensor keeps its current pose (identity if it has none)
        when too few correspondences are found.
        """
        extractor = self._get_extractor()
        extractor.set_color_sensor_pose(None)
        pose = self.bootstrap.perform(self.records, extractor)

        if pose is not None:
            self.color_sensor.set_pose(pose)
        elif self.color_sensor.has_parent:
            self.logger.warning("Initial transform estimation failed, keeping the current pose")
        else:
            self.logger.warning("Initial transform estimation failed, falling back to identity")
            self.color_sensor.set_pose(Pose.identity())
        return pose

    def estimate_depth_undistortion(self) -> List[Optional[CheckerboardView]]:
        """
        Extract views over all records and estimate the local and global models.

        Returns:
            List[Optional[CheckerboardView]]: One slot per record; views whose
            plane was lost are None, the others hold the re-fitted plane.
        """
        if self.local_model is None or self.global_model is None:
            raise RuntimeError("Depth undistortion models must be initialized")

        extractor = self._get_extractor()
        extractor.set_color_sensor_pose(self.color_sensor.pose)
        views = extractor.extract_all(self.records, only_images=True)
        extracted = count_valid(views)

        estimation = DepthUndistortionEstimation(
            self.local_model,
            self.global_model,
            self.depth_intrinsics,
            plane_fitter=self.plane_fitter,
            region_margin=self.region_margin,
            min_samples=self.local_min_samples,
            max_workers=self.max_workers,
        )

        depth_data: List[Optional[DepthData]] = [None] * len(views)
        for i, view in enumerate(views):
            if view is None:
                continue
            depth_data[i] = estimation.add_depth_data(
                view.record.cloud,
                view.corners_in_depth(self.color_sensor.pose),
                frame_id=view.id,
            )

        self.logger.info("Estimating local undistortion model...")
        estimation.estimate_local_model()
        self.logger.info("Re-fitting planes on locally undistorted clouds...")
        estimation.estimate_local_model_reverse()
        self.logger.info("Estimating global undistortion model...")
        estimation.estimate_global_model()

        for i, view in enumerate(views):
            if view is None:
                continue
            if depth_data[i].plane_extracted:
                view.set_plane(depth_data[i].estimated_plane)
            else:
                views[i] = None

        self.logger.info(f"Depth undistortion: {count_valid(views)}/{extracted} views kept")
        self.depth_sensor.local_model = self.local_model
        self.depth_sensor.global_model = self.global_model
        self.undistortion_estimation = estimation
        self.depth_data = depth_data
        return views

    def perform(self) -> Optional[JointOptimizationResult]:
        """
        Run the calibration pass.

        Returns:
            JointOptimizationResult of the transform-only optimization, or None
            when no view survived.

        Raises:
            RuntimeError: If sensors, checkerboard or data are missing.
        """
        self._require_sensors()
        if not self.records:
            raise RuntimeError("No data to calibrate, call add_data() first")

        if self.estimate_initial_transform or not self.color_sensor.has_parent:
            self.logger.info("Estimating initial transform...")
            self.estimate_initial_pose()

        if self.estimate_depth_undistortion_model:
            self.views = self.estimate_depth_undistortion()
        elif not self.views:
            extractor = self._get_extractor()
            extractor.set_color_sensor_pose(self.color_sensor.pose)
            self.views = [
                view if view is not None and view.has_depth_plane else None
                for view in extractor.extract_all(self.records)
            ]
            self.logger.info(f"Extracted {count_valid(self.views)}/{len(self.records)} views")

        self.logger.info("Optimizing transform...")
        self.last_optimization = self._optimizer().optimize_transform(valid_views(self.views))
        return self.last_optimization

    def _undistorted_views(self) -> List[CheckerboardView]:
        """Copies of the valid views holding locally undistorted clouds and re-fitted planes."""
        undistorted: List[Optional[CheckerboardView]] = [None] * len(self.views)

        def build(index: int) -> None:
            view = self.views[index]
            data = self.depth_data[index] if index < len(self.depth_data) else None
            if view is None or data is None or not data.plane_extracted:
                return
            record = view.record.with_cloud(data.undistorted_cloud)
            undistorted[index] = view.copy(
                id=f"{view.id}_undistorted",
                record=record,
                depth_plane=data.estimated_plane,
            )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            list(executor.map(build, range(len(self.views))))

        return [view for view in undistorted if view is not None]

    def optimize(self) -> Optional[JointOptimizationResult]:
        """
        Run the refinement pass.

        Returns:
            JointOptimizationResult, or None when no view is usable.

        Raises:
            RuntimeError: If depth undistortion is enabled and ``perform()``
                          has not estimated the models yet.
        """
        self._require_sensors()
        self.logger.info("Optimizing...")

        if self.estimate_depth_undistortion_model:
            estimation = self.undistortion_estimation
            if estimation is None or estimation.phase != Phase.GLOBAL:
                raise RuntimeError("perform() must estimate the depth models before optimize()")
            views = self._undistorted_views()
            result = self._optimizer().optimize_all(views, self.global_model)
            self.depth_sensor.global_model = self.global_model
        else:
            result = self._optimizer().optimize_transform(valid_views(self.views))

        self.last_optimization = result
        return result

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def publish_data(self) -> None:
        """Hand sensors, records and views to the publisher, if one is set."""
        if self.publisher is None:
            return
        self._require_sensors()
        self.publisher.publish_pose(self.depth_sensor.frame_id, Pose.identity(), self.depth_sensor.frame_id)
        self.publisher.publish_pose(self.color_sensor.frame_id, self.color_sensor.pose, self.depth_sensor.frame_id)
        for record in self.records:
            self.publisher.publish_record(record)
        for view in self.views:
            if view is not None:
                self.publisher.publish_view(view)

    def result(self) -> CalibrationResult:
        """Snapshot of the current calibration state."""
        self._require_sensors()
        summary = None if self.last_optimization is None else self.last_optimization.summary
        return CalibrationResult(
            color_pose=self.color_sensor.pose,
            color_intrinsics=self.color_sensor.intrinsics,
            depth_intrinsics=self.depth_sensor.intrinsics,
            global_model=self.depth_sensor.global_model,
            local_model=self.depth_sensor.local_model,
            num_records=len(self.records),
            num_views=0 if self.last_optimization is None else len(self.last_optimization.checkerboard_poses),
            final_cost=None if summary is None else summary.final_cost,
        )
