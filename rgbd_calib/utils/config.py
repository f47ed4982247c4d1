"""
Typed calibration configuration.

``CalibrationConfig.from_dict`` turns the mapping loaded from YAML (see
``configs/default.yaml``) into typed sections. Only the two sensor sections
and the checkerboard are required; every other key has a default.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..calibration.checkerboard import Checkerboard
from ..calibration.extrinsics import Pose
from ..calibration.intrinsics import CameraIntrinsics
from .config_loader import ConfigLoader, load_config


@dataclass
class UndistortionConfig:
    """Depth undistortion settings."""

    estimate: bool = False
    local_bin_size: Tuple[int, int] = (8, 8)
    local_degree: int = 2
    local_min_degree: int = 0
    local_min_samples: int = 20
    global_degree: int = 2
    global_min_degree: int = 1


@dataclass
class BootstrapConfig:
    """Initial transform estimation settings."""

    enabled: bool = False
    max_views: int = 10
    max_distance: float = 2.0
    seed: int = 0


@dataclass
class PlaneFitConfig:
    """Checkerboard plane extraction settings."""

    threshold: float = 0.02
    iterations: int = 100
    min_inliers: int = 50
    region_margin: float = 0.1


@dataclass
class SolverConfig:
    """Optimization settings."""

    max_workers: int = 8
    transform_iterations: int = 100
    full_iterations: int = 20
    loss_scale: float = 1.0
    intrinsics_prior_sigma: Optional[List[float]] = field(default_factory=lambda: [0.01, 0.01, 1.0, 1.0])


@dataclass
class CalibrationConfig:
    """
    Complete calibration configuration.

    Attributes:
        color_intrinsics: Color camera intrinsics.
        depth_intrinsics: Depth sensor intrinsics at native resolution.
        checkerboard: Calibration target.
        initial_extrinsic: Optional color -> depth pose guess.
        depth_error_function: Coefficients of sigma(z), lowest power first.
        downsample_ratio: Cloud down-sampling ratio.
        undistortion: Depth undistortion settings.
        bootstrap: Initial transform estimation settings.
        plane_fit: Plane extraction settings.
        solver: Optimization settings.
        log_level: Logging level name.
    """

    color_intrinsics: CameraIntrinsics
    depth_intrinsics: CameraIntrinsics
    checkerboard: Checkerboard
    initial_extrinsic: Optional[Pose] = None
    depth_error_function: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0035])
    downsample_ratio: int = 1
    undistortion: UndistortionConfig = field(default_factory=UndistortionConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    plane_fit: PlaneFitConfig = field(default_factory=PlaneFitConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    log_level: str = "INFO"

    def __post_init__(self):
        if int(self.downsample_ratio) < 1:
            raise ValueError(f"downsample_ratio must be >= 1, got {self.downsample_ratio}")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "CalibrationConfig":
        """
        Build a configuration from a nested mapping.

        Raises:
            KeyError: If a required section or key is missing.
        """
        for section in ("color_sensor", "depth_sensor", "checkerboard"):
            if section not in config:
                raise KeyError(f"Missing configuration section '{section}'")

        undistortion = dict(config.get("undistortion", {}))
        if "local_bin_size" in undistortion:
            undistortion["local_bin_size"] = tuple(int(s) for s in undistortion["local_bin_size"])

        initial = config.get("initial_extrinsic")

        return cls(
            color_intrinsics=CameraIntrinsics.from_dict(config["color_sensor"]),
            depth_intrinsics=CameraIntrinsics.from_dict(config["depth_sensor"]),
            checkerboard=Checkerboard.from_dict(config["checkerboard"]),
            initial_extrinsic=Pose.from_dict(initial) if initial else None,
            depth_error_function=[
                float(c) for c in config.get("depth_error_function", [0.0, 0.0, 0.0035])
            ],
            downsample_ratio=int(config.get("downsample_ratio", 1)),
            undistortion=UndistortionConfig(**undistortion),
            bootstrap=BootstrapConfig(**config.get("bootstrap", {})),
            plane_fit=PlaneFitConfig(**config.get("plane_fit", {})),
            solver=SolverConfig(**config.get("solver", {})),
            log_level=str(config.get("log_level", "INFO")),
        )

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "CalibrationConfig":
        return cls.from_dict(load_config(path, overrides))

    def to_dict(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "color_sensor": self.color_intrinsics.to_dict(),
            "depth_sensor": self.depth_intrinsics.to_dict(),
            "checkerboard": {
                "rows": self.checkerboard.rows,
                "cols": self.checkerboard.cols,
                "cell_width": self.checkerboard.cell_width,
                "cell_height": self.checkerboard.cell_height,
            },
            "depth_error_function": list(self.depth_error_function),
            "downsample_ratio": self.downsample_ratio,
            "undistortion": {
                **self.undistortion.__dict__,
                "local_bin_size": list(self.undistortion.local_bin_size),
            },
            "bootstrap": dict(self.bootstrap.__dict__),
            "plane_fit": dict(self.plane_fit.__dict__),
            "solver": dict(self.solver.__dict__),
            "log_level": self.log_level,
        }
        if self.initial_extrinsic is not None:
            config["initial_extrinsic"] = self.initial_extrinsic.to_dict()
        return config

    def save_yaml(self, path: Union[str, Path]) -> None:
        ConfigLoader().save(self.to_dict(), path)
