"""Tests for the lifting matrix query, initialisation handshake and anchor."""

import numpy as np
import pytest

from cosmo_dpgo.bootstrap import BootstrapCoordinator, BootstrapError, InitializationFailed
from cosmo_dpgo.communication import InProcessBus
from cosmo_dpgo.messages import Anchor, LiftingMatrixRequest, LiftingMatrixResponse
from cosmo_dpgo.partition import partition_measurements
from cosmo_dpgo_solver.loader import make_synthetic_team
from cosmo_dpgo_solver.optimizer import LiftedPoseGraphOptimizer


@pytest.fixture
def team():
    dataset = make_synthetic_team(2, 5, seed=1)
    bus = InProcessBus([0, 1])
    optimizers, coords = {}, {}
    for rid in (0, 1):
        graph = partition_measurements(rid, dataset.measurements_for(rid))
        opt = LiftedPoseGraphOptimizer(rid, seed=4)
        opt.set_pose_graph(graph.odometry, graph.private_loop_closures, graph.shared_loop_closures)
        optimizers[rid] = opt
        coords[rid] = BootstrapCoordinator(rid, bus, opt, relaxation_rank=5, dimension=3, max_init_steps=3)
    bus.register_responder(0, coords[0].answer)
    return bus, optimizers, coords


class TestLiftingMatrix:
    """Every agent ends up with agent 0's matrix."""

    def test_matrix_is_bit_identical(self, team):
        _, optimizers, coords = team
        root_matrix = coords[0].acquire_lifting_matrix()
        received = coords[1].acquire_lifting_matrix()
        assert np.array_equal(received, root_matrix)
        assert np.array_equal(optimizers[1].get_lifting_matrix(), optimizers[0].get_lifting_matrix())
        assert optimizers[1].initialized

    def test_root_offline_is_fatal(self, team):
        bus, _, coords = team
        bus.set_online(0, False)
        with pytest.raises(BootstrapError):
            coords[1].acquire_lifting_matrix()

    def test_missing_responder_is_fatal(self):
        bus = InProcessBus([0, 1])
        coord = BootstrapCoordinator(1, bus, LiftedPoseGraphOptimizer(1), relaxation_rank=5, dimension=3)
        with pytest.raises(BootstrapError):
            coord.acquire_lifting_matrix()

    def test_refusal_is_fatal(self, team):
        bus, _, coords = team
        bus.register_responder(0, lambda payload: LiftingMatrixResponse(owner=0, matrix=None, success=False))
        with pytest.raises(BootstrapError):
            coords[1].acquire_lifting_matrix()

    def test_wrong_shape_is_fatal(self, team):
        bus, optimizers, coords = team
        bus.register_responder(0, lambda payload: LiftingMatrixResponse(owner=0, matrix=np.eye(3), success=True))
        with pytest.raises(BootstrapError):
            coords[1].acquire_lifting_matrix()
        assert optimizers[1].get_lifting_matrix() is None

    def test_non_root_refuses_queries(self, team):
        _, _, coords = team
        reply = coords[1].answer(LiftingMatrixRequest(requester=0, owner=0))
        assert isinstance(reply, LiftingMatrixResponse)
        assert reply.success is False

    def test_misaddressed_query_refused(self, team):
        _, _, coords = team
        reply = coords[0].answer(LiftingMatrixRequest(requester=1, owner=3))
        assert reply.success is False


class TestHandshake:
    """Bounded acknowledgment wait."""

    def test_exhausted_budget_raises(self, team):
        _, _, coords = team
        coord = coords[1]
        coord.begin_handshake()
        assert [coord.attempt() for _ in range(3)] == [False, False, False]
        with pytest.raises(InitializationFailed):
            coord.attempt()

    def test_acknowledged_completes(self, team):
        _, _, coords = team
        coord = coords[1]
        coord.begin_handshake()
        assert coord.attempt() is False
        coord.acknowledge(0)
        assert coord.attempt() is True
        assert coord.acknowledged_by == 0

    def test_restart_resets_attempts(self, team):
        _, _, coords = team
        coord = coords[1]
        coord.begin_handshake()
        coord.attempt()
        coord.acknowledge(0)
        coord.begin_handshake()
        assert coord.attempts == 0
        assert coord.acknowledged is False


class TestAnchor:
    """Agent 0 owns the global frame."""

    def test_root_makes_anchor_from_first_pose(self, team):
        _, optimizers, coords = team
        coords[0].acquire_lifting_matrix()
        anchor = coords[0].make_anchor(0)
        assert anchor.owner == 0
        assert anchor.pose.shape == (5, 4)
        assert np.allclose(anchor.pose, optimizers[0].get_pose_estimate(0))

    def test_non_root_cannot_make_anchor(self, team):
        _, _, coords = team
        assert coords[1].make_anchor(0) is None

    def test_store_rejects_foreign_and_older(self, team):
        _, _, coords = team
        coord = coords[1]
        assert coord.store_anchor(Anchor(owner=1, pose=np.zeros((5, 4)))) is False
        assert coord.store_anchor(Anchor(owner=0, pose=np.zeros((5, 4)), iteration=4)) is True
        assert coord.store_anchor(Anchor(owner=0, pose=np.ones((5, 4)), iteration=2)) is False
        assert coord.anchor.iteration == 4

    def test_query_anchor(self, team):
        bus, _, coords = team
        coords[0].acquire_lifting_matrix()
        coords[0].make_anchor(3)
        anchor = coords[1].query_anchor()
        assert anchor is not None and anchor.iteration == 3
        bus.set_online(0, False)
        coords[1].reset()
        assert coords[1].query_anchor() is None
