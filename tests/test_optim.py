"""Tests for the least-squares problem, the LM solver and the calibration residuals."""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def grouped_problem():
    """
    Linear problem with one shared offset c and per-group values a_k:

        a_k + c = y_k,   a_k = z_k,   c = 0.5
    """
    from rgbd_calib.optim.problem import NumericDiffCostFunction, Problem

    def build():
        problem = Problem()
        problem.add_parameter_block("c", [0.0])
        y = [1.5, 2.5, -0.5]
        z = [1.0, 2.0, -1.0]
        for k in range(3):
            problem.add_parameter_block(f"a{k}", [0.0])
            problem.add_residual_block(
                NumericDiffCostFunction(lambda a, c, y=y[k]: a + c - y, 1), [f"a{k}", "c"]
            )
            problem.add_residual_block(
                NumericDiffCostFunction(lambda a, z=z[k]: a - z, 1), [f"a{k}"]
            )
        problem.add_residual_block(NumericDiffCostFunction(lambda c: c - 0.5, 1), ["c"])
        return problem

    return build


@pytest.fixture
def views(make_rig, board_poses, sensors, true_color_pose, depth_intrinsics):
    """Ground-truth views with depth planes for every board pose."""
    from rgbd_calib.data.records import FrameRecordStore
    from rgbd_calib.data.synthetic import SyntheticCheckerboardExtractor

    rig = make_rig()
    store = FrameRecordStore(*sensors)
    for frame in rig.frames(board_poses):
        store.add(np.zeros((1, 1)), frame.cloud)

    extractor = SyntheticCheckerboardExtractor(
        rig, {record.id: pose for record, pose in zip(store, board_poses)}, depth_intrinsics
    )
    extractor.set_color_sensor_pose(true_color_pose)
    return extractor.extract_all(store.records)


# =============================================================================
# Problem
# =============================================================================

class TestProblem:
    """Tests for parameter blocks and manifolds."""

    def test_quaternion_update_stays_unit(self):
        from rgbd_calib.optim.problem import UnitQuaternion

        manifold = UnitQuaternion()
        q = Rotation.from_rotvec([0.1, -0.2, 0.3]).as_quat()

        updated = manifold.plus(q, np.array([0.5, 0.1, -0.4]))

        assert np.linalg.norm(updated) == pytest.approx(1.0)

    def test_quaternion_update_is_left_multiplied(self):
        from rgbd_calib.optim.problem import UnitQuaternion

        q = Rotation.from_rotvec([0.1, -0.2, 0.3]).as_quat()
        delta = np.array([0.05, 0.02, -0.01])

        updated = Rotation.from_quat(UnitQuaternion().plus(q, delta))
        expected = Rotation.from_rotvec(delta) * Rotation.from_quat(q)

        assert np.allclose(updated.as_matrix(), expected.as_matrix())

    def test_quaternion_block_normalized(self):
        from rgbd_calib.optim.problem import ParameterBlock, UnitQuaternion

        block = ParameterBlock("q", [0.0, 0.0, 0.0, 2.0], UnitQuaternion())

        assert np.allclose(block.values, [0.0, 0.0, 0.0, 1.0])
        assert (block.size, block.tangent_size) == (4, 3)

    def test_invalid_blocks(self):
        from rgbd_calib.optim.problem import ParameterBlock, UnitQuaternion

        with pytest.raises(ValueError):
            ParameterBlock("q", [0.0, 0.0, 1.0], UnitQuaternion())
        with pytest.raises(ValueError):
            ParameterBlock("q", np.zeros(4), UnitQuaternion())

    def test_duplicate_block(self):
        from rgbd_calib.optim.problem import Problem

        problem = Problem()
        problem.add_parameter_block("x", [1.0])

        with pytest.raises(ValueError):
            problem.add_parameter_block("x", [2.0])

    def test_unknown_and_foreign_blocks(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, ParameterBlock, Problem

        problem = Problem()
        cost = NumericDiffCostFunction(lambda x: x, 1)

        with pytest.raises(KeyError):
            problem.add_residual_block(cost, ["missing"])
        with pytest.raises(ValueError):
            problem.add_residual_block(cost, [ParameterBlock("x", [1.0])])

    def test_residual_size_checked(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction

        cost = NumericDiffCostFunction(lambda x: np.concatenate([x, x]), 1)

        with pytest.raises(ValueError):
            cost.residuals([np.ones(1)])

    def test_evaluate(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, Problem

        problem = Problem()
        problem.add_parameter_block("x", [3.0, 4.0])
        problem.add_residual_block(NumericDiffCostFunction(lambda x: x, 2), ["x"])

        assert problem.evaluate() == pytest.approx(12.5)


class TestLosses:
    """Tests for robust losses."""

    def test_cauchy_values(self):
        from rgbd_calib.optim.problem import CauchyLoss

        rho, rho1, rho2 = CauchyLoss(2.0).evaluate(4.0)

        assert rho == pytest.approx(4.0 * np.log(2.0))
        assert rho1 == pytest.approx(0.5)
        assert rho2 == pytest.approx(-0.25 * 0.25)

    def test_zero_residual_unchanged(self):
        from rgbd_calib.optim.problem import CauchyLoss

        J = np.eye(2)
        rho, r, (corrected,) = CauchyLoss().correct(np.zeros(2), [J])

        assert rho == 0.0
        assert np.allclose(r, 0.0)
        assert np.allclose(corrected, J)

    def test_cauchy_rejects_outlier(self):
        from rgbd_calib.optim.problem import CauchyLoss, NumericDiffCostFunction, Problem
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        samples = [1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 10.0]
        fits = {}
        for loss in (None, CauchyLoss(0.5)):
            problem = Problem()
            problem.add_parameter_block("c", [0.0])
            for y in samples:
                problem.add_residual_block(NumericDiffCostFunction(lambda c, y=y: c - y, 1), ["c"], loss)
            LevenbergMarquardtSolver(SolverOptions(linear_solver="dense")).solve(problem)
            fits[loss is None] = problem.block("c").values[0]

        assert fits[True] == pytest.approx(np.mean(samples), abs=1e-4)
        assert fits[False] == pytest.approx(1.0, abs=0.05)


# =============================================================================
# Solver
# =============================================================================

class TestLevenbergMarquardtSolver:
    """Tests for the trust region solver and its linear solvers."""

    @pytest.mark.parametrize("linear_solver", ["sparse_schur", "sparse_normal", "dense"])
    def test_linear_solvers_agree(self, grouped_problem, linear_solver):
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = grouped_problem()
        options = SolverOptions(
            linear_solver=linear_solver,
            elimination_groups=[["a0"], ["a1"], ["a2"]],
        )
        summary = LevenbergMarquardtSolver(options).solve(problem)

        assert summary.is_converged
        assert summary.final_cost < summary.initial_cost
        assert problem.block("c").values[0] == pytest.approx(0.5, abs=1e-5)
        assert problem.block("a0").values[0] == pytest.approx(1.0, abs=1e-5)
        assert problem.block("a2").values[0] == pytest.approx(-1.0, abs=1e-5)

    def test_sparse_normal_cholesky(self):
        import scipy.sparse as sp
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver

        rng = np.random.default_rng(7)
        A = rng.normal(size=(12, 5))
        H = sp.csr_matrix(A.T @ A + 0.1 * np.eye(5))
        g = rng.normal(size=5)
        solver = LevenbergMarquardtSolver()

        delta = solver._solve_sparse_normal(H, g)

        assert np.allclose(H @ delta, -g)
        assert np.allclose(delta, solver._solve_dense(H.toarray(), g))
        with pytest.raises(np.linalg.LinAlgError):
            solver._solve_sparse_normal(sp.csr_matrix(-np.eye(3)), np.ones(3))

    def test_sparse_normal_unobserved_block(self, grouped_problem):
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = grouped_problem()
        problem.add_parameter_block("unobserved", [0.3])
        summary = LevenbergMarquardtSolver(SolverOptions(linear_solver="sparse_normal")).solve(problem)

        assert summary.is_converged
        assert problem.block("unobserved").values[0] == pytest.approx(0.3)
        assert problem.block("c").values[0] == pytest.approx(0.5, abs=1e-5)

    def test_rosenbrock(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, Problem
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = Problem()
        problem.add_parameter_block("x", [-1.2, 1.0])
        problem.add_residual_block(
            NumericDiffCostFunction(lambda x: [10.0 * (x[1] - x[0] ** 2), 1.0 - x[0]], 2), ["x"]
        )
        options = SolverOptions(linear_solver="dense", max_iterations=200)
        summary = LevenbergMarquardtSolver(options).solve(problem)

        assert np.allclose(problem.block("x").values, [1.0, 1.0], atol=1e-4)
        assert summary.successful_steps > 0

    def test_constant_block_not_moved(self, grouped_problem):
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = grouped_problem()
        problem.set_constant("c")
        LevenbergMarquardtSolver(SolverOptions(linear_solver="sparse_normal")).solve(problem)

        assert problem.block("c").values[0] == 0.0
        # a_k balances y_k and z_k with c fixed at 0
        assert problem.block("a0").values[0] == pytest.approx(1.25, abs=1e-5)

    def test_no_variables(self, grouped_problem):
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver

        problem = grouped_problem()
        for block in problem.parameter_blocks:
            block.constant = True
        summary = LevenbergMarquardtSolver().solve(problem)

        assert summary.termination == "converged_no_variables"
        assert summary.final_cost == summary.initial_cost

    def test_iteration_cap(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, Problem
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = Problem()
        problem.add_parameter_block("x", [-1.2, 1.0])
        problem.add_residual_block(
            NumericDiffCostFunction(lambda x: [10.0 * (x[1] - x[0] ** 2), 1.0 - x[0]], 2), ["x"]
        )
        options = SolverOptions(linear_solver="dense", max_iterations=2)
        summary = LevenbergMarquardtSolver(options).solve(problem)

        assert summary.iterations == 2
        assert summary.termination == "max_iterations"
        assert not summary.is_converged

    def test_coupled_groups_rejected(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, Problem
        from rgbd_calib.optim.solver import LevenbergMarquardtSolver, SolverOptions

        problem = Problem()
        problem.add_parameter_block("a", [0.0])
        problem.add_parameter_block("b", [0.0])
        problem.add_residual_block(NumericDiffCostFunction(lambda a, b: a - b - 1.0, 1), ["a", "b"])

        with pytest.raises(ValueError):
            LevenbergMarquardtSolver(SolverOptions(elimination_groups=[["a"], ["b"]])).solve(problem)
        with pytest.raises(ValueError):
            LevenbergMarquardtSolver(SolverOptions(elimination_groups=[["a"], ["a"]])).solve(problem)

    def test_unknown_linear_solver(self):
        from rgbd_calib.optim.solver import SolverOptions

        with pytest.raises(ValueError):
            SolverOptions(linear_solver="cholmod")


# =============================================================================
# Residuals
# =============================================================================

class TestResiduals:
    """Tests for the calibration residuals at and around the truth."""

    def test_reprojection_zero_at_truth(self, checkerboard, color_intrinsics, board_poses):
        from rgbd_calib.optim.residuals import ReprojectionError

        pose = board_poses[2]
        pixels = color_intrinsics.project_point(checkerboard.corners_in(pose))
        error = ReprojectionError(checkerboard, pixels, color_intrinsics, scale=0.5)

        assert error.num_residuals == 70
        assert np.allclose(error(pose.as_rotvec(), pose.t), 0.0)
        assert np.allclose(error(pose.as_quaternion(), pose.t), 0.0)
        shifted = error(pose.as_rotvec(), pose.t + [0.001, 0.0, 0.0])
        assert np.all(np.abs(shifted.reshape(-1, 2)[:, 0]) > 0.1)

    def test_depth_plane_zero_at_truth(self, checkerboard, board_poses, true_color_pose):
        from rgbd_calib.optim.residuals import DepthPlaneError
        from rgbd_calib.undistortion.polynomial import DepthErrorFunction

        pose = board_poses[3]
        plane = checkerboard.plane_in(true_color_pose.compose(pose)).canonical()
        error = DepthPlaneError(checkerboard, plane, DepthErrorFunction())

        args = (true_color_pose.as_rotvec(), true_color_pose.t, pose.as_rotvec(), pose.t)
        assert np.allclose(error(*args), 0.0)

        moved = error(true_color_pose.as_rotvec(), true_color_pose.t + 0.01 * plane.normal,
                      pose.as_rotvec(), pose.t)
        corners = checkerboard.corners_in(true_color_pose.compose(pose)) + 0.01 * plane.normal
        sigma = DepthErrorFunction()(corners[:, 2])
        assert np.allclose(moved, 0.01 / sigma, rtol=1e-6)

    def test_transform_distortion_zero_at_truth(self, checkerboard, board_poses, true_color_pose,
                                                depth_intrinsics, make_rig):
        from rgbd_calib.calibration.projection import finite_mask, pixel_grid
        from rgbd_calib.optim.residuals import TransformDistortionError
        from rgbd_calib.undistortion.models import GlobalModel
        from rgbd_calib.undistortion.polynomial import DepthErrorFunction

        pose = board_poses[0]
        cloud = make_rig().render_cloud(pose)
        mask = finite_mask(cloud).ravel()
        u, v = pixel_grid(cloud.shape[:2])
        model = GlobalModel(depth_intrinsics.image_size)

        error = TransformDistortionError(
            checkerboard,
            np.stack([u[mask], v[mask]], axis=1),
            cloud.reshape(-1, 3)[mask, 2],
            depth_intrinsics,
            model,
            DepthErrorFunction(),
        )
        args = [
            true_color_pose.as_quaternion(), true_color_pose.t, model.free_coefficients,
            pose.as_quaternion(), pose.t, np.array([1.0, 1.0, 0.0, 0.0]),
        ]

        assert error.num_residuals == 3 * mask.sum()
        assert np.allclose(error(*args), 0.0, atol=1e-8)
        args[2] = args[2] * 1.01
        assert np.abs(error(*args)).max() > 0.01
        # The model passed in is left untouched
        assert np.allclose(model.free_coefficients, GlobalModel(depth_intrinsics.image_size).free_coefficients)

    def test_transform_distortion_needs_inliers(self, checkerboard, depth_intrinsics):
        from rgbd_calib.optim.residuals import TransformDistortionError
        from rgbd_calib.undistortion.models import GlobalModel
        from rgbd_calib.undistortion.polynomial import DepthErrorFunction

        with pytest.raises(ValueError):
            TransformDistortionError(
                checkerboard, np.zeros((0, 2)), np.zeros(0), depth_intrinsics,
                GlobalModel(depth_intrinsics.image_size), DepthErrorFunction(),
            )

    def test_intrinsics_prior(self):
        from rgbd_calib.optim.problem import NumericDiffCostFunction, ParameterBlock
        from rgbd_calib.optim.residuals import IntrinsicsPriorError

        error = IntrinsicsPriorError([0.01, 0.02, 1.0, 2.0])
        delta = ParameterBlock("delta", [1.01, 0.98, 0.5, -1.0])
        residual = error(delta.values)

        assert np.allclose(error([1.0, 1.0, 0.0, 0.0]), 0.0)
        assert np.allclose(residual, [1.0, -1.0, 0.5, -0.5])
        (analytic,) = error.cost_function().jacobians([delta.values], [delta], residual)
        (numeric,) = NumericDiffCostFunction(error, 4).jacobians([delta.values], [delta], residual)
        assert np.allclose(analytic, numeric, atol=1e-6)

    @pytest.mark.parametrize("sigma", [[0.01, 0.01, 1.0], [0.01, 0.0, 1.0, 1.0]])
    def test_intrinsics_prior_invalid_sigma(self, sigma):
        from rgbd_calib.optim.residuals import IntrinsicsPriorError

        with pytest.raises(ValueError):
            IntrinsicsPriorError(sigma)

    @pytest.mark.parametrize("w", [[0.0, 0.0, 0.0], [1e-10, -2e-10, 0.0], [0.3, -0.2, 0.5], [1.2, 0.4, -2.0]])
    def test_left_jacobian(self, w):
        from rgbd_calib.optim.residuals import left_jacobian

        w = np.asarray(w)
        J = left_jacobian(w)
        for k in range(3):
            dw = np.zeros(3)
            dw[k] = 1e-6
            moved = Rotation.from_rotvec(w + dw) * Rotation.from_rotvec(w).inv()
            assert np.allclose(moved.as_rotvec() / 1e-6, J[:, k], atol=1e-4)

    def test_plane_alignment_analytic_jacobian(self, true_color_pose):
        from rgbd_calib.calibration.plane import Plane
        from rgbd_calib.optim.problem import (
            AnalyticDiffCostFunction,
            NumericDiffCostFunction,
            ParameterBlock,
            UnitQuaternion,
        )
        from rgbd_calib.optim.residuals import PlaneAlignmentError

        color_plane = Plane(np.array([0.2, -0.3, -1.0]), 1.2)
        depth_plane = Plane(np.array([0.25, -0.28, -1.0]), 1.15)
        error = PlaneAlignmentError(color_plane, depth_plane)

        rotation = ParameterBlock("r", true_color_pose.as_quaternion(), UnitQuaternion())
        translation = ParameterBlock("t", true_color_pose.t)
        values = [rotation.values, translation.values]
        blocks = [rotation, translation]
        residual = error(*values)

        analytic = AnalyticDiffCostFunction(error, error.jacobian, 4).jacobians(values, blocks, residual)
        numeric = NumericDiffCostFunction(error, 4).jacobians(values, blocks, residual)

        for a, n in zip(analytic, numeric):
            assert a.shape == n.shape
            assert np.allclose(a, n, atol=1e-6)

    def test_plane_alignment_zero_for_consistent_planes(self, true_color_pose):
        from rgbd_calib.calibration.plane import Plane
        from rgbd_calib.optim.residuals import PlaneAlignmentError

        color_plane = Plane(np.array([0.1, 0.2, -1.0]), 1.0)
        depth_plane = color_plane.transform(true_color_pose.R, true_color_pose.t)
        error = PlaneAlignmentError(color_plane, depth_plane)

        assert np.allclose(error(true_color_pose.as_quaternion(), true_color_pose.t), 0.0)


# =============================================================================
# Joint optimizer
# =============================================================================

class TestJointOptimizer:
    """Tests for the transform-only and full problems."""

    def test_transform_converges_to_truth(self, views, sensors, true_color_pose):
        from rgbd_calib.calibration.extrinsics import Pose
        from rgbd_calib.optim.joint import JointOptimizer

        color, depth = sensors
        color.set_pose(true_color_pose.compose(
            Pose.from_rotvec(np.radians([0.8, -0.5, 0.6]), [0.008, -0.005, 0.004])
        ))

        result = JointOptimizer(color, depth).optimize_transform(views)

        assert result is not None
        assert color.pose is result.color_pose
        assert np.degrees(result.color_pose.rotation_angle_to(true_color_pose)) < 0.01
        assert np.linalg.norm(result.color_pose.t - true_color_pose.t) < 1e-4
        assert result.summary.final_cost < 1e-6
        assert set(result.checkerboard_poses) == {view.id for view in views}

    def test_full_stays_at_truth(self, views, sensors, true_color_pose, depth_intrinsics):
        from rgbd_calib.optim.joint import JointOptimizer
        from rgbd_calib.undistortion.models import GlobalModel

        color, depth = sensors
        color.set_pose(true_color_pose)
        model = GlobalModel(depth_intrinsics.image_size)

        result = JointOptimizer(color, depth, full_iterations=5).optimize_all(views[:4], model)

        assert result.global_model is model
        assert np.degrees(result.color_pose.rotation_angle_to(true_color_pose)) < 1e-3
        assert np.linalg.norm(result.color_pose.t - true_color_pose.t) < 1e-5
        assert np.allclose(result.intrinsics_delta, [1.0, 1.0, 0.0, 0.0], atol=1e-6)
        assert depth.intrinsics.fx == pytest.approx(depth_intrinsics.fx)
        assert np.allclose(model.coefficients[..., 0], 1.0, atol=1e-6)

    def test_full_intrinsics_prior_optional(self, views, sensors, true_color_pose, depth_intrinsics):
        from rgbd_calib.optim.joint import JointOptimizer
        from rgbd_calib.undistortion.models import GlobalModel

        color, depth = sensors
        color.set_pose(true_color_pose)
        summaries = {}
        for sigma in (JointOptimizer.DEFAULT_INTRINSICS_PRIOR, None):
            optimizer = JointOptimizer(color, depth, full_iterations=1, intrinsics_prior_sigma=sigma)
            result = optimizer.optimize_all(views[:2], GlobalModel(depth_intrinsics.image_size))
            summaries[sigma is None] = result.summary

        assert summaries[False].num_residuals == summaries[True].num_residuals + 4
        assert summaries[False].final_cost < 1e-10

    def test_requires_initial_pose(self, views, sensors):
        from rgbd_calib.optim.joint import JointOptimizer

        with pytest.raises(RuntimeError):
            JointOptimizer(*sensors).optimize_transform(views)

    def test_no_views(self, sensors, true_color_pose, depth_intrinsics):
        from rgbd_calib.optim.joint import JointOptimizer
        from rgbd_calib.undistortion.models import GlobalModel

        color, depth = sensors
        color.set_pose(true_color_pose)
        optimizer = JointOptimizer(color, depth)

        assert optimizer.optimize_transform([None, None]) is None
        assert optimizer.optimize_all([], GlobalModel(depth_intrinsics.image_size)) is None
        assert color.pose is true_color_pose
