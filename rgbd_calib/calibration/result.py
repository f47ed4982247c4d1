"""Calibration results and their persistence."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..undistortion.models import GlobalModel, LocalModel
from .extrinsics import Pose
from .intrinsics import CameraIntrinsics


@dataclass
class CalibrationResult:
    """
    Snapshot of the calibrated rig.

    Attributes:
        color_pose: Color sensor pose in the depth frame.
        color_intrinsics: Color camera intrinsics.
        depth_intrinsics: Depth intrinsics (refined by the full optimization).
        global_model: Global undistortion model, if estimated.
        local_model: Local undistortion model, if estimated.
        num_records: Number of stored frame records.
        num_views: Number of views used by the last optimization.
        final_cost: Final cost of the last optimization.
    """

    color_pose: Optional[Pose]
    color_intrinsics: CameraIntrinsics
    depth_intrinsics: CameraIntrinsics
    global_model: Optional[GlobalModel] = None
    local_model: Optional[LocalModel] = None
    num_records: int = 0
    num_views: int = 0
    final_cost: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation (the local model is stored separately)."""
        return {
            "color_pose": None if self.color_pose is None else self.color_pose.to_dict(),
            "color_intrinsics": self.color_intrinsics.to_dict(),
            "depth_intrinsics": self.depth_intrinsics.to_dict(),
            "global_model": None if self.global_model is None else self.global_model.to_dict(),
            "num_records": int(self.num_records),
            "num_views": int(self.num_views),
            "final_cost": None if self.final_cost is None else float(self.final_cost),
        }

    def save_yaml(self, path: Union[str, Path]) -> Optional[Path]:
        """
        Save the result to YAML; the local model goes to ``<stem>_local_model.npz``.

        Returns:
            Path of the local model archive, or None if there is no local model.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=None, sort_keys=False)

        if self.local_model is None:
            return None
        local_path = path.with_name(f"{path.stem}_local_model.npz")
        self.local_model.save(local_path)
        return local_path

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationResult":
        pose = data.get("color_pose")
        global_model = data.get("global_model")
        return cls(
            color_pose=None if pose is None else Pose.from_dict(pose),
            color_intrinsics=CameraIntrinsics.from_dict(data["color_intrinsics"]),
            depth_intrinsics=CameraIntrinsics.from_dict(data["depth_intrinsics"]),
            global_model=None if global_model is None else GlobalModel.from_dict(global_model),
            num_records=int(data.get("num_records", 0)),
            num_views=int(data.get("num_views", 0)),
            final_cost=data.get("final_cost"),
        )

    @classmethod
    def load_yaml(cls, path: Union[str, Path]) -> "CalibrationResult":
        """Load a result saved by ``save_yaml`` (with its local model, if any)."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration result not found: {path}")
        with open(path, "r") as f:
            result = cls.from_dict(yaml.safe_load(f))

        local_path = path.with_name(f"{path.stem}_local_model.npz")
        if local_path.exists():
            result.local_model = LocalModel.load(local_path)
        return result
