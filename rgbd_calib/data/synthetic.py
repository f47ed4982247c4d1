"""
Synthetic Color + Depth Rig.

Generates frames with known ground truth, for tests and for the demo script.

Rendering:
==========
- Depth cloud: every depth pixel casts a ray through the depth intrinsics;
  the ray is intersected with the checkerboard plane (expressed in the depth
  frame through ``color_pose * board_pose``). Hits inside the board extent
  (inner corners plus ``board_margin`` cells on every side) are kept; other
  rays hit the background wall at ``background`` meters or become NaN.
- Depth distortion: an optional ``depth_bias(u, v, z) -> z_measured`` moves
  every point along its ray, then Gaussian noise of ``noise_std`` is added
  to the depth.
- Color image: a checkerboard texture warped into the color image through
  the plane homography H = K [r1 r2 t] (undistorted color camera only).
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from ..calibration.checkerboard import Checkerboard
from ..calibration.extrinsics import Pose
from ..calibration.intrinsics import CameraIntrinsics
from ..calibration.plane import Plane, PlaneFitter
from ..calibration.projection import extract_plane_in_region, pixel_grid
from ..utils.logger import LoggerMixin
from .extraction import CheckerboardDistanceConstraint, CheckerboardExtractor
from .records import FrameRecord
from .views import CheckerboardView

DepthBias = Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]


@dataclass
class SyntheticFrame:
    """
    One rendered frame with its ground truth.

    Attributes:
        image: Color image (H, W) uint8, or None when images are not rendered.
        cloud: Organized depth cloud (H, W, 3) at native resolution.
        board_pose: Checkerboard pose in the color frame.
        image_corners: Exact projections of the checkerboard corners (N, 2).
    """

    image: Optional[np.ndarray]
    cloud: np.ndarray
    board_pose: Pose
    image_corners: np.ndarray


class SyntheticRig:
    """
    Color + depth rig with a known extrinsic.

    Args:
        checkerboard: Calibration target.
        color_intrinsics: Color camera intrinsics.
        depth_intrinsics: Depth intrinsics at native resolution.
        color_pose: True color sensor pose in the depth frame.
        depth_bias: Optional systematic depth error z -> z_measured per pixel.
        noise_std: Standard deviation of the depth noise (meters).
        board_margin: Board extent beyond the inner corners (cells).
        background: Depth of the background wall, or None for NaN.
        seed: Seed of the noise and pose generators.
    """

    def __init__(
        self,
        checkerboard: Checkerboard,
        color_intrinsics: CameraIntrinsics,
        depth_intrinsics: CameraIntrinsics,
        color_pose: Pose,
        depth_bias: Optional[DepthBias] = None,
        noise_std: float = 0.0,
        board_margin: float = 1.0,
        background: Optional[float] = None,
        seed: int = 0,
    ):
        self.checkerboard = checkerboard
        self.color_intrinsics = color_intrinsics
        self.depth_intrinsics = depth_intrinsics
        self.color_pose = color_pose
        self.depth_bias = depth_bias
        self.noise_std = noise_std
        self.board_margin = board_margin
        self.background = background
        self.rng = np.random.default_rng(seed)

    # -------------------------------------------------------------------------
    # Poses
    # -------------------------------------------------------------------------

    def random_board_poses(
        self,
        count: int,
        distance_range: Tuple[float, float] = (0.8, 1.6),
        max_tilt: float = 35.0,
        max_offset: float = 0.15,
    ) -> List[Pose]:
        """
        Board poses in the color frame, centered near the optical axis.

        Args:
            count: Number of poses.
            distance_range: Range of the board center depth (meters).
            max_tilt: Maximum tilt of the board around x and y (degrees).
            max_offset: Maximum lateral offset of the board center, relative
                        to its depth.
        """
        poses = []
        for _ in range(count):
            distance = self.rng.uniform(*distance_range)
            tilt = self.rng.uniform(-max_tilt, max_tilt, size=2)
            spin = self.rng.uniform(-10.0, 10.0)
            R = Rotation.from_euler("xyz", [tilt[0], tilt[1], spin], degrees=True).as_matrix()
            center = np.array([
                self.rng.uniform(-max_offset, max_offset) * distance,
                self.rng.uniform(-max_offset, max_offset) * distance,
                distance,
            ])
            poses.append(Pose(R=R, t=center - R @ self.checkerboard.center))
        return poses

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def board_extent(self) -> Tuple[float, float, float, float]:
        """Board rectangle (x_min, x_max, y_min, y_max) in the board frame."""
        cb = self.checkerboard
        mx = self.board_margin * cb.cell_width
        my = self.board_margin * cb.cell_height
        return (
            -mx,
            (cb.cols - 1) * cb.cell_width + mx,
            -my,
            (cb.rows - 1) * cb.cell_height + my,
        )

    def render_cloud(self, board_pose: Pose) -> np.ndarray:
        """Organized depth cloud (H, W, 3) of the board seen by the depth sensor."""
        intrinsics = self.depth_intrinsics
        height, width = intrinsics.height, intrinsics.width
        u, v = pixel_grid((height, width))
        rays = intrinsics.pixel_to_ray(np.stack([u, v], axis=1))

        board_in_depth = self.color_pose.compose(board_pose)
        plane = self.checkerboard.plane_in(board_in_depth)
        points = plane.intersect_rays(rays)

        local = np.atleast_2d(board_in_depth.inverse().transform_points(points))
        x_min, x_max, y_min, y_max = self.board_extent()
        with np.errstate(invalid="ignore"):
            on_board = (
                (points[:, 2] > 0)
                & (local[:, 0] >= x_min) & (local[:, 0] <= x_max)
                & (local[:, 1] >= y_min) & (local[:, 1] <= y_max)
            )

        if self.background is None:
            points[~on_board] = np.nan
        else:
            wall = Plane(normal=np.array([0.0, 0.0, 1.0]), offset=-self.background)
            points[~on_board] = wall.intersect_rays(rays[~on_board])

        z = points[:, 2]
        measured = z
        if self.depth_bias is not None:
            measured = self.depth_bias(u.astype(np.float64), v.astype(np.float64), z)
        if self.noise_std > 0:
            measured = measured + self.rng.normal(0.0, self.noise_std, size=measured.shape)
        with np.errstate(invalid="ignore", divide="ignore"):
            points = points * (measured / z)[:, None]

        return points.reshape(height, width, 3)

    def image_corners(self, board_pose: Pose) -> np.ndarray:
        """Exact pixel positions (N, 2) of the board corners in the color image."""
        corners = self.checkerboard.corners_in(board_pose)
        return np.atleast_2d(self.color_intrinsics.project_point(corners))

    def render_image(self, board_pose: Pose, pixels_per_cell: int = 40) -> np.ndarray:
        """
        Grayscale color image of the board.

        The texture holds the (rows + 1) x (cols + 1) squares of the pattern
        inside a white border one cell wide.
        """
        cb = self.checkerboard
        squares_y, squares_x = cb.rows + 1, cb.cols + 1
        texture = np.full(((squares_y + 2) * pixels_per_cell, (squares_x + 2) * pixels_per_cell),
                          255, dtype=np.uint8)
        for r in range(squares_y):
            for c in range(squares_x):
                if (r + c) % 2 == 0:
                    y0 = (r + 1) * pixels_per_cell
                    x0 = (c + 1) * pixels_per_cell
                    texture[y0:y0 + pixels_per_cell, x0:x0 + pixels_per_cell] = 0

        # Texture pixel -> board coordinates: first inner corner sits two cells in.
        S = np.array([
            [cb.cell_width / pixels_per_cell, 0.0, -2.0 * cb.cell_width],
            [0.0, cb.cell_height / pixels_per_cell, -2.0 * cb.cell_height],
            [0.0, 0.0, 1.0],
        ])
        Rt = np.column_stack([board_pose.R[:, 0], board_pose.R[:, 1], board_pose.t])
        H = self.color_intrinsics.K @ Rt @ S

        # OpenCV texel j is centered at j, S expects it at j + 0.5.
        shift = np.array([[1.0, 0.0, -0.5], [0.0, 1.0, -0.5], [0.0, 0.0, 1.0]])
        size = (self.color_intrinsics.width, self.color_intrinsics.height)
        return cv2.warpPerspective(texture, H @ np.linalg.inv(shift), size,
                                   flags=cv2.INTER_LINEAR, borderValue=128)

    def render(self, board_pose: Pose, with_image: bool = False) -> SyntheticFrame:
        return SyntheticFrame(
            image=self.render_image(board_pose) if with_image else None,
            cloud=self.render_cloud(board_pose),
            board_pose=board_pose,
            image_corners=self.image_corners(board_pose),
        )

    def frames(self, board_poses: Sequence[Pose], with_image: bool = False) -> List[SyntheticFrame]:
        return [self.render(pose, with_image) for pose in board_poses]


class SyntheticCheckerboardExtractor(CheckerboardExtractor, LoggerMixin):
    """
    Extractor returning ground-truth detections of a synthetic rig.

    Corners and board poses come from the rig (optionally with pixel noise);
    the depth plane is fitted in the record cloud like the OpenCV extractor
    does.

    Args:
        rig: Rig the frames were rendered with.
        board_poses: True board pose per record id.
        depth_intrinsics: Depth intrinsics at the record cloud resolution.
        plane_fitter: Plane fitter used in the depth cloud.
        region_margin: Relative growth of the projected board region.
        corner_noise: Standard deviation of the corner pixel noise.
        seed: Seed of the corner noise.
    """

    def __init__(
        self,
        rig: SyntheticRig,
        board_poses: Dict[int, Pose],
        depth_intrinsics: CameraIntrinsics,
        plane_fitter: Optional[PlaneFitter] = None,
        region_margin: float = 0.0,
        corner_noise: float = 0.0,
        seed: int = 0,
    ):
        self.rig = rig
        self.board_poses = dict(board_poses)
        self.depth_intrinsics = depth_intrinsics
        self.plane_fitter = plane_fitter or PlaneFitter()
        self.region_margin = region_margin
        self.corner_noise = corner_noise
        self.rng = np.random.default_rng(seed)

    def extract(
        self,
        record: FrameRecord,
        constraint: Optional[CheckerboardDistanceConstraint] = None,
        only_images: bool = False,
    ) -> Optional[CheckerboardView]:
        pose = self.board_poses.get(record.id)
        if pose is None:
            return None

        corners = self.rig.image_corners(pose)
        if self.corner_noise > 0:
            corners = corners + self.rng.normal(0.0, self.corner_noise, size=corners.shape)

        view = CheckerboardView(
            id=f"view_{record.id}",
            record=record,
            checkerboard=self.rig.checkerboard,
            color_pose=pose,
            image_corners=corners,
        )
        if constraint is not None and not constraint.is_valid(view):
            return None
        if only_images:
            return view

        plane = extract_plane_in_region(
            record.cloud,
            view.corners_in_depth(self.color_sensor_pose),
            self.depth_intrinsics,
            self.plane_fitter,
            self.region_margin,
        )
        if plane is None:
            self.logger.debug(f"Record {record.id}: plane extraction failed")
            return None
        view.set_plane(plane)
        return view
