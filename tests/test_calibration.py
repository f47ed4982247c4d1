"""
Tests for calibration geometry.

Test Coverage:
- Intrinsics: K matrix, down-scaling, intrinsics delta, config round trip
- Poses: inverse, composition, quaternion / rotation vector constructors
- Planes: Hessian form, canonical orientation, ray intersection, transforms
- Plane fitting: exact planes, outliers, too few points
- Checkerboard: corner layout, center, plane in a pose
"""

import numpy as np
import pytest


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def simple_intrinsics():
    """Simple camera intrinsics for testing."""
    from rgbd_calib.calibration.intrinsics import CameraIntrinsics

    return CameraIntrinsics(
        fx=100.0, fy=100.0,
        cx=50.0, cy=50.0,
        width=100, height=100,
    )


@pytest.fixture
def tilted_plane():
    """Plane tilted 30 degrees about x, 1.5 m away."""
    from rgbd_calib.calibration.plane import Plane

    normal = np.array([0.0, np.sin(np.radians(30.0)), -np.cos(np.radians(30.0))])
    return Plane(normal=normal, offset=1.5)


# =============================================================================
# Test CameraIntrinsics
# =============================================================================

class TestCameraIntrinsics:
    """Tests for CameraIntrinsics class."""

    def test_intrinsic_matrix_construction(self, simple_intrinsics):
        """Test intrinsic matrix K has correct structure."""
        K = simple_intrinsics.K

        assert K.shape == (3, 3)
        assert K[0, 0] == 100.0  # fx
        assert K[1, 1] == 100.0  # fy
        assert K[0, 2] == 50.0   # cx
        assert K[1, 2] == 50.0   # cy
        assert K[2, 2] == 1.0    # homogeneous
        assert K[0, 1] == 0.0    # no skew

    def test_invalid_focal_length(self):
        """Non-positive focal lengths are rejected."""
        from rgbd_calib.calibration.intrinsics import CameraIntrinsics

        with pytest.raises(ValueError):
            CameraIntrinsics(fx=0.0, fy=100.0, cx=50.0, cy=50.0, width=100, height=100)

    def test_scaled_keeps_block_centers(self, simple_intrinsics):
        """A point projects to the center of its r x r block after scaling."""
        scaled = simple_intrinsics.scaled(4)
        point = np.array([0.13, -0.07, 1.0])

        full = simple_intrinsics.project_point(point)
        reduced = scaled.project_point(point)

        # Output pixel u' covers input pixels 4u' .. 4u' + 3, centered at 4u' + 1.5
        assert np.allclose(4.0 * reduced + 1.5, full)
        assert scaled.image_size == (25, 25)

    def test_scaled_identity_ratio(self, simple_intrinsics):
        assert simple_intrinsics.scaled(1) is simple_intrinsics

    def test_scaled_invalid_ratio(self, simple_intrinsics):
        with pytest.raises(ValueError):
            simple_intrinsics.scaled(0)

    def test_with_delta(self, simple_intrinsics):
        """[sx, sy, dx, dy] scales focal lengths and shifts the principal point."""
        corrected = simple_intrinsics.with_delta([1.1, 0.9, 2.0, -3.0])

        assert np.isclose(corrected.fx, 110.0)
        assert np.isclose(corrected.fy, 90.0)
        assert np.isclose(corrected.cx, 52.0)
        assert np.isclose(corrected.cy, 47.0)
        assert corrected.image_size == simple_intrinsics.image_size

    def test_dict_round_trip(self, simple_intrinsics):
        from rgbd_calib.calibration.intrinsics import CameraIntrinsics

        restored = CameraIntrinsics.from_dict(simple_intrinsics.to_dict())

        assert np.allclose(restored.K, simple_intrinsics.K)
        assert restored.image_size == simple_intrinsics.image_size

    def test_from_dict_missing_key(self):
        from rgbd_calib.calibration.intrinsics import CameraIntrinsics

        with pytest.raises(KeyError):
            CameraIntrinsics.from_dict({"fx": 1.0, "fy": 1.0, "cx": 0.0, "cy": 0.0, "width": 10})

    def test_pixel_to_ray_inverts_projection(self, simple_intrinsics):
        """Ray through a projected point passes through the point."""
        point = np.array([0.4, -0.2, 2.0])
        ray = simple_intrinsics.pixel_to_ray(simple_intrinsics.project_point(point)[None, :])[0]

        assert np.isclose(ray[2], 1.0)
        assert np.allclose(ray * point[2], point)

    def test_pixel_to_ray_with_distortion(self):
        """Rays undo the lens distortion applied by the projection."""
        from rgbd_calib.calibration.intrinsics import CameraIntrinsics

        intrinsics = CameraIntrinsics(
            fx=300.0, fy=300.0, cx=160.0, cy=120.0, width=320, height=240,
            distortion=[-0.1, 0.02, 0.001, -0.001, 0.0],
        )
        points = np.array([[0.2, 0.1, 1.0], [-0.3, 0.25, 1.5]])
        rays = intrinsics.pixel_to_ray(intrinsics.project_point(points))

        assert np.allclose(rays * points[:, 2:3], points, atol=1e-4)


# =============================================================================
# Test Pose
# =============================================================================

class TestPose:
    """Tests for rigid poses."""

    def test_inverse(self):
        from rgbd_calib.calibration.extrinsics import Pose

        pose = Pose.from_rotvec([0.1, -0.2, 0.3], [0.5, -0.1, 2.0])
        identity = pose.compose(pose.inverse())

        assert np.allclose(identity.R, np.eye(3))
        assert np.allclose(identity.t, 0.0)

    def test_compose_order(self):
        """compose applies the argument first."""
        from rgbd_calib.calibration.extrinsics import Pose

        a = Pose.from_rotvec([0.0, 0.0, np.pi / 2], [1.0, 0.0, 0.0])
        b = Pose(t=np.array([1.0, 0.0, 0.0]))
        point = np.zeros(3)

        expected = a.transform_points(b.transform_points(point))

        assert np.allclose(a.compose(b).transform_points(point), expected)
        assert np.allclose(expected, [1.0, 1.0, 0.0])

    def test_quaternion_round_trip(self):
        from rgbd_calib.calibration.extrinsics import Pose

        pose = Pose.from_rotvec([0.3, 0.2, -0.1], [0.0, 0.1, 0.2])
        restored = Pose.from_quaternion(pose.as_quaternion(), pose.t)

        assert np.allclose(restored.R, pose.R)
        assert np.isclose(np.linalg.norm(pose.as_quaternion()), 1.0)

    def test_from_dict_matrix_and_quaternion(self):
        from rgbd_calib.calibration.extrinsics import Pose

        by_matrix = Pose.from_dict({"rotation": np.eye(3).tolist(), "translation": [1, 2, 3]})
        by_quaternion = Pose.from_dict({"rotation": [0, 0, 0, 1], "translation": [1, 2, 3]})

        assert np.allclose(by_matrix.R, by_quaternion.R)
        assert np.allclose(by_matrix.t, [1.0, 2.0, 3.0])

    def test_from_dict_bad_rotation(self):
        from rgbd_calib.calibration.extrinsics import Pose

        with pytest.raises(ValueError):
            Pose.from_dict({"rotation": [1.0, 0.0]})

    def test_rotation_angle_to(self):
        from rgbd_calib.calibration.extrinsics import Pose

        a = Pose.identity()
        b = Pose.from_rotvec([0.0, np.radians(10.0), 0.0], np.zeros(3))

        assert np.isclose(np.degrees(a.rotation_angle_to(b)), 10.0)

    def test_invalid_shapes(self):
        from rgbd_calib.calibration.extrinsics import Pose

        with pytest.raises(ValueError):
            Pose(R=np.eye(2))
        with pytest.raises(ValueError):
            Pose(t=np.zeros(2))


# =============================================================================
# Test Plane
# =============================================================================

class TestPlane:
    """Tests for plane primitives."""

    def test_normal_is_normalized(self):
        from rgbd_calib.calibration.plane import Plane

        plane = Plane(normal=[0.0, 0.0, 2.0], offset=-4.0)

        assert np.isclose(np.linalg.norm(plane.normal), 1.0)
        assert np.isclose(plane.offset, -2.0)

    def test_zero_normal_rejected(self):
        from rgbd_calib.calibration.plane import Plane

        with pytest.raises(ValueError):
            Plane(normal=[0.0, 0.0, 0.0], offset=1.0)

    def test_canonical_has_positive_offset(self):
        from rgbd_calib.calibration.plane import Plane

        plane = Plane(normal=[0.0, 0.0, 1.0], offset=-2.0).canonical()

        assert plane.offset >= 0
        assert np.allclose(plane.normal, [0.0, 0.0, -1.0])

    def test_through_points(self):
        from rgbd_calib.calibration.plane import Plane

        points = np.array([[0.0, 0.0, 2.0], [1.0, 0.0, 2.0], [0.0, 1.0, 2.0]])
        plane = Plane.through(*points)

        assert np.allclose(plane.signed_distance(points), 0.0)
        assert np.isclose(abs(plane.offset), 2.0)

    def test_through_collinear_points(self):
        from rgbd_calib.calibration.plane import Plane

        with pytest.raises(ValueError):
            Plane.through(np.zeros(3), np.ones(3), 2.0 * np.ones(3))

    def test_intersect_rays(self, tilted_plane):
        rays = np.array([[0.0, 0.0, 1.0], [0.2, -0.1, 1.0]])
        points = tilted_plane.intersect_rays(rays)

        assert np.allclose(tilted_plane.signed_distance(points), 0.0)
        # Intersections stay on their rays
        assert np.allclose(points[:, :2] / points[:, 2:3], rays[:, :2])

    def test_intersect_parallel_ray(self):
        from rgbd_calib.calibration.plane import Plane

        plane = Plane(normal=[0.0, 0.0, 1.0], offset=-1.0)

        assert np.all(np.isnan(plane.intersect_rays(np.array([[1.0, 0.0, 0.0]]))))

    def test_transform(self, tilted_plane):
        """Points on a plane stay on the transformed plane."""
        from rgbd_calib.calibration.extrinsics import Pose

        pose = Pose.from_rotvec([0.1, 0.2, -0.3], [0.3, -0.2, 0.1])
        points = tilted_plane.intersect_rays(np.array([[0.0, 0.0, 1.0], [0.3, 0.2, 1.0]]))
        moved = tilted_plane.transform(pose.R, pose.t)

        assert np.allclose(moved.signed_distance(pose.transform_points(points)), 0.0)


# =============================================================================
# Test Plane Fitting
# =============================================================================

class TestPlaneFitter:
    """Tests for RANSAC + least-squares plane fitting."""

    def test_fit_exact_plane(self, tilted_plane):
        from rgbd_calib.calibration.plane import PlaneFitter

        rng = np.random.default_rng(0)
        rays = np.column_stack([rng.uniform(-0.3, 0.3, (200, 2)), np.ones(200)])
        points = tilted_plane.intersect_rays(rays)

        fit = PlaneFitter(threshold=0.01, min_inliers=50).fit(points, np.arange(200))

        assert fit is not None
        assert fit.num_inliers == 200
        assert np.allclose(fit.plane.canonical().normal, tilted_plane.canonical().normal, atol=1e-9)
        assert np.isclose(fit.plane.canonical().offset, tilted_plane.canonical().offset)

    def test_fit_rejects_outliers(self, tilted_plane):
        from rgbd_calib.calibration.plane import PlaneFitter

        rng = np.random.default_rng(1)
        rays = np.column_stack([rng.uniform(-0.3, 0.3, (200, 2)), np.ones(200)])
        points = tilted_plane.intersect_rays(rays)
        points[:30] += rng.uniform(0.2, 0.5, (30, 1)) * tilted_plane.normal

        fit = PlaneFitter(threshold=0.01, min_inliers=50).fit(points, np.arange(200) + 1000)

        assert fit is not None
        assert fit.num_inliers == 170
        assert np.all(fit.indices >= 1030)

    def test_fit_too_few_points(self):
        from rgbd_calib.calibration.plane import PlaneFitter

        points = np.random.default_rng(0).normal(size=(10, 3))

        assert PlaneFitter(min_inliers=50).fit(points, np.arange(10)) is None


# =============================================================================
# Test Checkerboard
# =============================================================================

class TestCheckerboard:
    """Tests for the checkerboard target."""

    def test_corner_layout(self, checkerboard):
        corners = checkerboard.corners

        assert corners.shape == (35, 3)
        assert np.allclose(corners[0], [0.0, 0.0, 0.0])
        # Row-major: corner (0, 1) is one cell along x
        assert np.allclose(corners[checkerboard.corner_index(0, 1)], [0.05, 0.0, 0.0])
        assert np.allclose(corners[checkerboard.corner_index(1, 0)], [0.0, 0.05, 0.0])
        assert np.allclose(corners[:, 2], 0.0)

    def test_center(self, checkerboard):
        assert np.allclose(checkerboard.center, checkerboard.corners.mean(axis=0))

    def test_plane_in_pose(self, checkerboard):
        from rgbd_calib.calibration.extrinsics import Pose

        pose = Pose.from_rotvec([0.3, -0.2, 0.1], [0.1, 0.0, 1.2])
        plane = checkerboard.plane_in(pose)

        assert np.allclose(plane.signed_distance(checkerboard.corners_in(pose)), 0.0)

    def test_pattern_size(self, checkerboard):
        assert checkerboard.pattern_size == (7, 5)

    def test_invalid_sizes(self):
        from rgbd_calib.calibration.checkerboard import Checkerboard

        with pytest.raises(ValueError):
            Checkerboard(rows=1, cols=5, cell_width=0.05, cell_height=0.05)
        with pytest.raises(ValueError):
            Checkerboard(rows=5, cols=5, cell_width=0.0, cell_height=0.05)

    def test_from_dict_single_cell_size(self):
        from rgbd_calib.calibration.checkerboard import Checkerboard

        checkerboard = Checkerboard.from_dict({"rows": 6, "cols": 9, "cell_size": 0.04})

        assert checkerboard.cell_width == checkerboard.cell_height == 0.04
