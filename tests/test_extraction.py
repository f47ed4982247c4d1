"""Tests for checkerboard view extraction."""

import numpy as np
import pytest


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def rig(make_rig):
    return make_rig(background=3.0)


@pytest.fixture
def records(rig, board_poses, sensors):
    """Records of the first three board poses, rendered with color images."""
    from rgbd_calib.data.records import FrameRecordStore

    store = FrameRecordStore(*sensors)
    for pose in board_poses[:3]:
        frame = rig.render(pose, with_image=True)
        store.add(frame.image, frame.cloud)
    return store.records


@pytest.fixture
def opencv_extractor(checkerboard, color_intrinsics, depth_intrinsics, true_color_pose):
    from rgbd_calib.data.extraction import OpenCVCheckerboardExtractor

    return OpenCVCheckerboardExtractor(
        checkerboard,
        color_intrinsics,
        depth_intrinsics,
        color_sensor_pose=true_color_pose,
        region_margin=0.05,
    )


# =============================================================================
# OpenCV extractor
# =============================================================================

class TestOpenCVCheckerboardExtractor:
    """Tests for corner detection, PnP and depth plane extraction."""

    def test_detects_rendered_corners(self, opencv_extractor, rig, board_poses):
        image = rig.render_image(board_poses[6])
        expected = rig.image_corners(board_poses[6])

        corners = opencv_extractor.detect_corners(image)

        assert corners is not None
        assert corners.shape == expected.shape
        # OpenCV may report the grid in reverse order: match by proximity
        distances = np.linalg.norm(corners[:, None, :] - expected[None, :, :], axis=2)
        assert np.all(distances.min(axis=1) < 0.75)

    def test_no_board_in_blank_image(self, opencv_extractor, color_intrinsics):
        image = np.full((color_intrinsics.height, color_intrinsics.width), 128, dtype=np.uint8)

        assert opencv_extractor.detect_corners(image) is None

    def test_extract_view(self, opencv_extractor, records, board_poses, checkerboard, true_color_pose):
        view = opencv_extractor.extract(records[0])
        truth = board_poses[0]

        assert view is not None
        assert view.id == "view_1"
        assert view.record is records[0]
        assert np.allclose(view.center, checkerboard.center_in(truth), atol=5e-3)
        assert abs(view.color_plane.normal @ checkerboard.plane_in(truth).normal) > 0.999

        expected_plane = checkerboard.plane_in(true_color_pose.compose(truth)).canonical()
        assert view.has_depth_plane
        assert view.depth_plane.plane.normal @ expected_plane.normal > 0.999
        assert view.depth_plane.plane.offset == pytest.approx(expected_plane.offset, abs=5e-3)

    def test_only_images_skips_plane(self, opencv_extractor, records):
        view = opencv_extractor.extract(records[0], only_images=True)

        assert view is not None
        assert not view.has_depth_plane

    def test_constraint_rejects_far_board(self, opencv_extractor, records):
        from rgbd_calib.data.extraction import CheckerboardDistanceConstraint

        assert opencv_extractor.extract(records[0], CheckerboardDistanceConstraint(0.5)) is None
        assert opencv_extractor.extract(records[0], CheckerboardDistanceConstraint(2.0)) is not None

    def test_extract_all_keeps_slots(self, opencv_extractor, records, sensors):
        from rgbd_calib.data.records import FrameRecordStore

        store = FrameRecordStore(*sensors)
        blank = store.add(np.full((240, 320), 128, dtype=np.uint8), records[0].cloud)

        views = opencv_extractor.extract_all([records[0], blank, records[1]])

        assert len(views) == 3
        assert views[0] is not None
        assert views[1] is None
        assert views[2] is not None


# =============================================================================
# Synthetic extractor
# =============================================================================

class TestSyntheticCheckerboardExtractor:
    """Tests for ground-truth extraction."""

    @pytest.fixture
    def extractor(self, rig, records, board_poses, depth_intrinsics, true_color_pose):
        from rgbd_calib.data.synthetic import SyntheticCheckerboardExtractor

        extractor = SyntheticCheckerboardExtractor(
            rig,
            {record.id: pose for record, pose in zip(records, board_poses)},
            depth_intrinsics,
        )
        extractor.set_color_sensor_pose(true_color_pose)
        return extractor

    def test_exact_detection(self, extractor, records, board_poses, rig):
        view = extractor.extract(records[1])

        assert np.allclose(view.image_corners, rig.image_corners(board_poses[1]))
        assert view.color_pose is board_poses[1]
        assert view.depth_plane.std_dev < 1e-6

    def test_unknown_record(self, extractor, records, sensors, rig, board_poses):
        from rgbd_calib.data.records import FrameRecordStore

        store = FrameRecordStore(*sensors)
        for _ in range(5):
            record = store.add(np.zeros((1, 1)), records[0].cloud)

        assert extractor.extract(record) is None

    def test_corner_noise(self, rig, records, board_poses, depth_intrinsics):
        from rgbd_calib.data.synthetic import SyntheticCheckerboardExtractor

        extractor = SyntheticCheckerboardExtractor(
            rig, {records[0].id: board_poses[0]}, depth_intrinsics, corner_noise=0.5,
        )
        view = extractor.extract(records[0], only_images=True)
        offsets = view.image_corners - rig.image_corners(board_poses[0])

        assert 0.2 < np.std(offsets) < 1.0

    def test_identity_pose_when_unset(self, extractor):
        from rgbd_calib.calibration.extrinsics import Pose

        extractor.set_color_sensor_pose(None)

        assert np.allclose(extractor.color_sensor_pose.get_transform_matrix(), np.eye(4))
        assert isinstance(extractor.color_sensor_pose, Pose)
