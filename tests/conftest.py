"""Shared fixtures: a small simulated color + depth rig."""

import numpy as np
import pytest


@pytest.fixture
def checkerboard():
    """7 x 5 inner corners, 5 cm squares."""
    from rgbd_calib.calibration.checkerboard import Checkerboard

    return Checkerboard(rows=5, cols=7, cell_width=0.05, cell_height=0.05)


@pytest.fixture
def color_intrinsics():
    from rgbd_calib.calibration.intrinsics import CameraIntrinsics

    return CameraIntrinsics(
        fx=300.0, fy=300.0,
        cx=159.5, cy=119.5,
        width=320, height=240,
    )


@pytest.fixture
def depth_intrinsics():
    from rgbd_calib.calibration.intrinsics import CameraIntrinsics

    return CameraIntrinsics(
        fx=150.0, fy=150.0,
        cx=79.5, cy=59.5,
        width=160, height=120,
    )


@pytest.fixture
def true_color_pose():
    """Color sensor 2.5 cm to the side of the depth sensor, slightly rotated."""
    from rgbd_calib.calibration.extrinsics import Pose

    return Pose.from_rotvec(np.radians([0.8, -1.2, 0.5]), [0.025, 0.003, -0.002])


@pytest.fixture
def board_poses(checkerboard):
    """Eight board poses in the color frame with well spread normals."""
    from scipy.spatial.transform import Rotation
    from rgbd_calib.calibration.extrinsics import Pose

    settings = [
        # (tilt x, tilt y, spin) degrees, center
        ((25.0, 0.0, 0.0), (0.00, 0.00, 1.0)),
        ((0.0, 25.0, 5.0), (0.05, -0.03, 1.1)),
        ((-20.0, -20.0, 0.0), (-0.05, 0.02, 0.9)),
        ((15.0, -25.0, -5.0), (0.03, 0.04, 1.3)),
        ((-25.0, 10.0, 3.0), (-0.04, -0.04, 1.2)),
        ((10.0, 20.0, 0.0), (0.06, 0.05, 1.5)),
        ((-10.0, -5.0, -8.0), (-0.06, 0.0, 0.8)),
        ((30.0, 15.0, 2.0), (0.0, -0.05, 1.4)),
    ]
    poses = []
    for angles, center in settings:
        R = Rotation.from_euler("xyz", angles, degrees=True).as_matrix()
        poses.append(Pose(R=R, t=np.asarray(center) - R @ checkerboard.center))
    return poses


@pytest.fixture
def make_rig(checkerboard, color_intrinsics, depth_intrinsics, true_color_pose):
    """Factory of synthetic rigs sharing the fixture sensors."""
    from rgbd_calib.data.synthetic import SyntheticRig

    def factory(**kwargs):
        return SyntheticRig(
            checkerboard,
            color_intrinsics,
            depth_intrinsics,
            kwargs.pop("color_pose", true_color_pose),
            **kwargs,
        )

    return factory


@pytest.fixture
def sensors(color_intrinsics, depth_intrinsics):
    """Fresh (color, depth) sensors without extrinsic."""
    from rgbd_calib.sensors import ColorSensor, DepthSensor

    return ColorSensor(color_intrinsics), DepthSensor(depth_intrinsics)
