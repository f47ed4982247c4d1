"""
Frame records: synchronized color image + organized depth cloud pairs.

Down-sampling:
==============
With an integer ratio r, every r x r block of the input cloud becomes one
output point, the mean of the finite points in the block. A block without a
single finite point becomes an explicit NaN point and the output cloud is
flagged as not dense. Trailing rows/columns that do not fill a block are
dropped (output size is (H // r, W // r)).
"""

from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Tuple

import numpy as np

from ..sensors import ColorSensor, DepthSensor


def downsample_cloud(
    cloud: np.ndarray,
    ratio: int,
    is_dense: bool = True,
) -> Tuple[np.ndarray, bool]:
    """
    Block-average an organized cloud.

    Args:
        cloud: Organized cloud (H, W, 3).
        ratio: Integer block size (>= 1).
        is_dense: Whether the input cloud is dense.

    Returns:
        Tuple[np.ndarray, bool]:
            - Down-sampled cloud (H // ratio, W // ratio, 3).
            - Dense flag of the output cloud.

    Raises:
        ValueError: If ratio < 1 or the cloud is not (H, W, 3).
    """
    ratio = int(ratio)
    if ratio < 1:
        raise ValueError(f"Down-sample ratio must be >= 1, got {ratio}")
    cloud = np.asarray(cloud, dtype=np.float64)
    if cloud.ndim != 3 or cloud.shape[2] != 3:
        raise ValueError(f"Expected an organized cloud (H, W, 3), got {cloud.shape}")
    if ratio == 1:
        return cloud.copy(), is_dense

    height, width = cloud.shape[0] // ratio, cloud.shape[1] // ratio
    blocks = cloud[:height * ratio, :width * ratio].reshape(height, ratio, width, ratio, 3)

    finite = np.all(np.isfinite(blocks), axis=-1)
    count = finite.sum(axis=(1, 3))
    total = np.where(finite[..., None], blocks, 0.0).sum(axis=(1, 3))

    with np.errstate(invalid="ignore", divide="ignore"):
        result = total / count[..., None]
    empty = count == 0
    result[empty] = np.nan

    return result, bool(is_dense and not empty.any())


@dataclass(frozen=True)
class FrameRecord:
    """
    One synchronized color image / depth cloud pair.

    Attributes:
        id: Unique id, 1-based in arrival order.
        image: Color image (H, W[, C]).
        cloud: Organized depth cloud (h, w, 3), NaN marks invalid points.
        is_dense: True if the cloud has no invalid points.
        color_sensor: Sensor that captured the image.
        depth_sensor: Sensor that captured the cloud.
    """

    id: int
    image: np.ndarray
    cloud: np.ndarray
    is_dense: bool
    color_sensor: ColorSensor
    depth_sensor: DepthSensor

    @property
    def cloud_size(self) -> Tuple[int, int]:
        """Cloud size as (width, height)."""
        return self.cloud.shape[1], self.cloud.shape[0]

    def with_cloud(self, cloud: np.ndarray) -> "FrameRecord":
        """Copy of the record holding another cloud of the same size."""
        if cloud.shape != self.cloud.shape:
            raise ValueError(f"Cloud shape {cloud.shape} differs from {self.cloud.shape}")
        dense = bool(np.all(np.isfinite(cloud)))
        return replace(self, cloud=cloud, is_dense=dense)


class FrameRecordStore:
    """
    Ordered collection of frame records.

    Args:
        color_sensor: Color sensor referenced by every record.
        depth_sensor: Depth sensor referenced by every record.
        downsample_ratio: Cloud down-sampling ratio applied on insertion.
    """

    def __init__(
        self,
        color_sensor: ColorSensor,
        depth_sensor: DepthSensor,
        downsample_ratio: int = 1,
    ):
        if color_sensor is None or depth_sensor is None:
            raise RuntimeError("Both sensors must be set before adding data")
        if int(downsample_ratio) < 1:
            raise ValueError(f"Down-sample ratio must be >= 1, got {downsample_ratio}")
        self.color_sensor = color_sensor
        self.depth_sensor = depth_sensor
        self.downsample_ratio = int(downsample_ratio)
        self._records: List[FrameRecord] = []

    def add(
        self,
        image: np.ndarray,
        cloud: np.ndarray,
        is_dense: Optional[bool] = None,
    ) -> FrameRecord:
        """
        Create and store a record.

        Args:
            image: Color image.
            cloud: Organized cloud (H, W, 3) at native resolution.
            is_dense: Dense flag of the input; computed when None.

        Returns:
            FrameRecord: The stored record.
        """
        cloud = np.asarray(cloud, dtype=np.float64)
        if is_dense is None:
            is_dense = bool(np.all(np.isfinite(cloud)))
        cloud, is_dense = downsample_cloud(cloud, self.downsample_ratio, is_dense)

        record = FrameRecord(
            id=len(self._records) + 1,
            image=image,
            cloud=cloud,
            is_dense=is_dense,
            color_sensor=self.color_sensor,
            depth_sensor=self.depth_sensor,
        )
        self._records.append(record)
        return record

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> FrameRecord:
        return self._records[index]

    def __iter__(self) -> Iterator[FrameRecord]:
        return iter(self._records)

    @property
    def records(self) -> List[FrameRecord]:
        return list(self._records)
