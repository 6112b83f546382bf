"""Tests for the reference lifted optimiser and robust kernels."""

import numpy as np
import pytest

from cosmo_dpgo.partition import partition_measurements
from cosmo_dpgo_solver.loader import make_synthetic_team
from cosmo_dpgo_solver.models import has_orthonormal_columns
from cosmo_dpgo_solver.optimizer import LiftedPoseGraphOptimizer, OptimizationResult, OptimizerConfig
from cosmo_dpgo_solver.robust import cauchy_weight, gnc_tls_weight, huber_weight, robust_weight


def _loaded(agent_id=0, dimension=3, poses=8, robots=1):
    dataset = make_synthetic_team(robots, poses, dimension=dimension, seed=3)
    graph = partition_measurements(agent_id, dataset.measurements_for(agent_id))
    opt = LiftedPoseGraphOptimizer(agent_id, OptimizerConfig(dimension=dimension), seed=1)
    opt.set_pose_graph(graph.odometry, graph.private_loop_closures, graph.shared_loop_closures)
    return opt


class TestConfig:
    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            OptimizerConfig(dimension=4).validate()
        with pytest.raises(ValueError):
            OptimizerConfig(relaxation_rank=2).validate()
        with pytest.raises(ValueError):
            OptimizerConfig(robust_kind="tukey").validate()
        OptimizerConfig(robust_kind=None).validate()

    def test_relative_change_of_failed_step(self):
        assert OptimizationResult(False, 5.0, 5.0).relative_change == 0.0
        assert OptimizationResult(True, 4.0, 3.0).relative_change == pytest.approx(0.25)


class TestLiftedOptimizer:
    """Lifting matrix, initialisation and descent."""

    def test_root_generates_lifting_matrix(self):
        opt = _loaded()
        assert not opt.initialized
        Y = opt.get_lifting_matrix()
        assert Y.shape == (5, 3)
        assert has_orthonormal_columns(Y)
        assert opt.initialized
        assert np.array_equal(Y, opt.get_lifting_matrix())

    def test_non_root_waits_for_matrix(self):
        opt = _loaded(agent_id=1, robots=2)
        assert opt.get_lifting_matrix() is None
        with pytest.raises(ValueError):
            opt.set_lifting_matrix(np.eye(3))
        with pytest.raises(ValueError):
            opt.set_lifting_matrix(np.ones((5, 3)))
        opt.set_lifting_matrix(np.eye(5)[:, :3])
        assert opt.initialized

    def test_optimize_before_initialisation(self):
        opt = _loaded()
        assert opt.optimize().success is False

    def test_cost_never_increases(self):
        opt = _loaded()
        opt.get_lifting_matrix()
        costs = [opt.cost()]
        for _ in range(15):
            result = opt.optimize()
            assert result.cost_after <= result.cost_before
            costs.append(opt.cost())
        assert costs[-1] <= costs[0]
        assert all(b <= a + 1e-12 for a, b in zip(costs, costs[1:]))

    def test_trajectory_in_anchor_frame(self):
        opt = _loaded()
        opt.get_lifting_matrix()
        opt.optimize()
        anchor = opt.get_pose_estimate(0)
        traj = opt.get_trajectory_in_global_frame(anchor)
        assert traj.shape == (8, 3, 4)
        assert np.allclose(traj[0][:, :3], np.eye(3), atol=1e-8)
        assert np.allclose(traj[0][:, 3], 0.0, atol=1e-8)
        for pose in traj:
            assert np.isclose(np.linalg.det(pose[:, :3]), 1.0)
        with pytest.raises(ValueError):
            opt.get_trajectory_in_global_frame(np.zeros((3, 4)))

    def test_two_dimensional_team(self):
        opt = _loaded(dimension=2, poses=5)
        opt.get_lifting_matrix()
        assert opt.get_pose_estimate(0).shape == (5, 3)
        assert opt.get_pose_estimate(99) is None

    def test_public_poses_and_neighbors(self):
        opt = _loaded(agent_id=1, robots=3)
        assert opt.neighbors() == {0, 2}
        assert opt.public_pose_indices() == sorted(set(opt.public_pose_indices()))
        assert opt.public_pose_indices()

    def test_edge_weights(self):
        opt = _loaded(agent_id=0, robots=2)
        key = opt.shared_edges()[0]
        assert opt.compute_edge_weight((9, 9, 9, 9)) is None
        assert opt.set_edge_weight(key, 1.5) is True
        assert opt.set_edge_weight((9, 9, 9, 9), 0.5) is False
        opt.reset()
        assert opt.compute_edge_weight(key) == 1.0

    def test_complete_reset_forgets_graph(self):
        opt = _loaded()
        opt.get_lifting_matrix()
        opt.reset(complete=True)
        assert not opt.initialized
        assert opt.num_poses() == 0

    def test_neighbor_pose_shape_checked(self):
        opt = _loaded(agent_id=0, robots=2)
        with pytest.raises(ValueError):
            opt.update_neighbor_pose(1, 0, np.zeros((3, 4)))
        opt.update_neighbor_pose(1, 0, np.zeros((5, 4)))


class TestRobustKernels:
    """Weights in [0, 1]."""

    def test_gnc_tls_limits(self):
        assert gnc_tls_weight(0.0, 1.0, 1.0) == 1.0
        assert gnc_tls_weight(1e6, 1.0, 1.0) == 0.0
        assert 0.0 <= gnc_tls_weight(1.0, 1.0, 1.0) <= 1.0

    def test_huber_and_cauchy(self):
        assert huber_weight(0.5) == 1.0
        assert huber_weight(100.0, 1.0) == pytest.approx(0.1)
        assert cauchy_weight(0.0) == 1.0
        assert cauchy_weight(3.0, 1.0) == pytest.approx(0.25)

    def test_dispatch(self):
        assert robust_weight(None, 1e9) == 1.0
        assert robust_weight("HUBER", 0.0) == 1.0
        with pytest.raises(ValueError):
            robust_weight("tukey", 1.0)
