"""Tests for the per-agent command dispatcher and state machine."""

import numpy as np
import pytest

from cosmo_dpgo.agents import PGOAgentCoordinator
from cosmo_dpgo.bootstrap import BootstrapError
from cosmo_dpgo.communication import Channel, Envelope, InProcessBus
from cosmo_dpgo.config import CoordinationConfig
from cosmo_dpgo.messages import (
    AgentState,
    Anchor,
    Command,
    CommandType,
    LiftingMatrixRequest,
    LiftingMatrixResponse,
    PublicPoses,
    Status,
)
from cosmo_dpgo.runner import ManualClock
from cosmo_dpgo_solver.models import RelativeMeasurement
from cosmo_dpgo_solver.optimizer import OptimizationResult, PoseGraphOptimizer

LIFT = np.eye(5)[:, :3]


class StubOptimizer(PoseGraphOptimizer):
    """Counts local steps; everything else is inert."""

    def __init__(self):
        self.optimize_calls = 0
        self.lifting = None
        self.graph = None

    def set_pose_graph(self, odometry, private_loop_closures, shared_loop_closures):
        self.graph = (list(odometry), list(private_loop_closures), list(shared_loop_closures))

    def set_lifting_matrix(self, matrix):
        self.lifting = np.array(matrix)

    def get_lifting_matrix(self):
        return self.lifting

    def optimize(self):
        self.optimize_calls += 1
        return OptimizationResult(True, 10.0, 9.0)

    def get_pose_estimate(self, index):
        return np.zeros((5, 4))

    def get_trajectory_in_global_frame(self, anchor):
        return np.zeros((2, 3, 4))

    def update_neighbor_pose(self, owner, index, pose):
        pass

    def clear_neighbor_poses(self):
        pass

    def public_pose_indices(self):
        return []

    def neighbors(self):
        return set()

    def num_poses(self):
        return 2

    def shared_edges(self):
        return []

    def compute_edge_weight(self, key):
        return None

    def set_edge_weight(self, key, weight):
        return False

    def advance_robust_schedule(self):
        pass

    def reset(self, complete=False):
        pass


def _responder(payload):
    if isinstance(payload, LiftingMatrixRequest):
        return LiftingMatrixResponse(owner=0, matrix=LIFT, success=True)
    return Anchor(owner=0, pose=np.zeros((5, 4)), iteration=0)


def _edge(r1, p1, r2, p2):
    return RelativeMeasurement(r1, p1, r2, p2, np.eye(3), np.zeros(3))


def _agent(agent_id=1, *, optimizing=True, **cfg):
    clock = ManualClock()
    bus = InProcessBus([0, 1, 2])
    config = CoordinationConfig(**cfg)
    agent = PGOAgentCoordinator(agent_id, bus, StubOptimizer(), config, clock=clock)
    if optimizing:
        agent.state = AgentState.OPTIMIZING
    return agent, bus, clock


def _update(epoch, executor, publisher=0, kind=CommandType.UPDATE):
    return Command(kind, executor, publisher, epoch=epoch)


class TestRoundCommands:
    """UPDATE and UPDATE_WEIGHT dispatch."""

    def test_single_execution_per_epoch(self):
        agent, _, _ = _agent()
        cmd = _update(1, 1)
        assert agent.handle_command(cmd) is True
        assert agent.handle_command(cmd) is False
        assert agent.optimizer.optimize_calls == 1
        assert agent.executed_epochs == [1]
        assert agent.iteration == 1

    def test_stale_epoch_ignored(self):
        agent, _, _ = _agent()
        agent.handle_command(_update(5, 0))
        assert agent.handle_command(_update(3, 1)) is False
        assert agent.latest_epoch == 5
        assert agent.optimizer.optimize_calls == 0

    def test_update_for_other_agent_only_tracks_epoch(self):
        agent, _, _ = _agent()
        assert agent.handle_command(_update(2, 0)) is True
        assert agent.latest_epoch == 2
        assert agent.current_command.executing_agent == 0
        assert agent.optimizer.optimize_calls == 0

    def test_handoff_issued_on_tick(self):
        agent, bus, _ = _agent()
        agent.handle_command(_update(1, 1))
        bus.drain(0)
        agent.tick()
        # alone in its active set, the agent hands the next epoch to itself
        assert agent.executed_epochs == [1, 2]
        commands = [e.message for e in bus.drain(0) if e.channel is Channel.COMMAND]
        assert [c.epoch for c in commands] == [2]

    def test_newer_command_cancels_handoff(self):
        agent, _, _ = _agent()
        agent.handle_command(_update(1, 1))
        assert agent._handoff is not None
        agent.handle_command(_update(2, 0))
        assert agent._handoff is None
        agent.tick()
        assert agent.executed_epochs == [1]

    def test_uninitialised_executor_skips_and_hands_off(self):
        agent, _, _ = _agent(optimizing=False)
        assert agent.handle_command(_update(1, 1)) is True
        assert agent.optimizer.optimize_calls == 0
        assert agent._handoff is not None
        assert agent._handoff[1].epoch == 2

    def test_weight_phase_state_flips(self):
        agent, bus, _ = _agent()
        agent.handle_command(_update(1, 0, kind=CommandType.UPDATE_WEIGHT))
        assert agent.state is AgentState.WEIGHT_UPDATING
        agent.handle_command(_update(2, 0))
        assert agent.state is AgentState.OPTIMIZING

    def test_weight_round_publishes_weights(self):
        agent, bus, _ = _agent()
        agent.handle_command(_update(1, 1, kind=CommandType.UPDATE_WEIGHT))
        channels = [e.channel for e in bus.drain(0)]
        assert Channel.WEIGHTS in channels
        assert agent.weights.weight_round == 1
        assert agent.optimizer.optimize_calls == 0

    def test_converged_flag_propagates(self):
        agent, _, _ = _agent()
        cmd = Command(CommandType.UPDATE, 0, 0, epoch=1, weights_converged=True)
        agent.handle_command(cmd)
        assert agent.weights_converged is True

    def test_inter_update_sleep_delays_handoff(self):
        agent, _, clock = _agent(inter_update_sleep_time=0.5)
        agent.handle_command(_update(1, 1))
        agent.tick()
        assert agent.executed_epochs == [1]
        clock.advance(0.5)
        agent.tick()
        assert agent.executed_epochs == [1, 2]

    def test_same_epoch_for_two_executors_runs_once(self):
        agent, _, _ = _agent()
        assert agent.handle_command(_update(3, 0)) is True
        assert agent.handle_command(_update(3, 1)) is False
        assert agent.optimizer.optimize_calls == 0
        assert agent.current_command.executing_agent == 0

    def test_newer_generation_supersedes_handoff(self):
        agent, _, _ = _agent()
        agent.handle_command(_update(4, 1))
        assert agent._handoff is not None
        # re-election restarts the epoch count under a new generation
        reelected = Command(CommandType.UPDATE, 0, 0, epoch=1, generation=1)
        assert agent.handle_command(reelected) is True
        assert agent.generation == 1
        assert agent._handoff is None
        agent.tick()
        assert agent.executed_epochs == [4]

    def test_handoff_from_old_generation_ignored(self):
        agent, _, _ = _agent()
        agent.handle_command(Command(CommandType.UPDATE, 0, 0, epoch=2, generation=1))
        stale = Command(CommandType.UPDATE, 1, 2, epoch=9, generation=0)
        assert agent.handle_command(stale) is False
        assert agent.optimizer.optimize_calls == 0
        assert agent.latest_epoch == 2

    def test_handoff_carries_generation(self):
        agent, _, _ = _agent()
        agent.handle_command(Command(CommandType.UPDATE, 1, 0, epoch=1, generation=2))
        assert agent._handoff[1].generation == 2
        assert agent._handoff[1].epoch == 2


class TestOtherCommands:
    """NOOP, unknown commands and termination."""

    def test_noop_is_accepted_without_effect(self):
        agent, _, _ = _agent()
        assert agent.handle_command(Command(CommandType.NOOP, 1, 0)) is True
        assert agent.state is AgentState.OPTIMIZING
        assert agent.latest_epoch == 0

    def test_unknown_command_dropped(self):
        agent, _, _ = _agent()
        cmd = Command(42, 1, 0, epoch=9)
        assert cmd.command == 42
        assert agent.handle_command(cmd) is False
        assert agent.latest_epoch == 0

    def test_graceful_terminate_exports_trajectory(self):
        agent, _, _ = _agent()
        agent.bootstrap.anchor = Anchor(owner=0, pose=np.zeros((5, 4)))
        agent.handle_command(Command(CommandType.TERMINATE, -1, 0))
        assert agent.terminated
        assert agent.final_trajectory.shape == (2, 3, 4)
        assert agent.handle_command(_update(1, 1)) is False

    def test_hard_terminate_skips_export(self):
        agent, _, _ = _agent()
        agent.bootstrap.anchor = Anchor(owner=0, pose=np.zeros((5, 4)))
        agent.handle_command(Command(CommandType.HARD_TERMINATE, -1, 0))
        assert agent.terminated
        assert agent.final_trajectory is None

    def test_terminate_addressed_elsewhere_ignored(self):
        agent, _, _ = _agent()
        agent.handle_command(Command(CommandType.TERMINATE, 2, 0))
        assert not agent.terminated

    def test_active_set_only_from_root(self):
        agent, _, _ = _agent()
        agent.handle_command(Command(CommandType.ACTIVE_ROBOTS, -1, 2, active_robots={1, 2}))
        assert agent.active_robots() == frozenset({1})
        agent.handle_command(Command(CommandType.ACTIVE_ROBOTS, -1, 0, active_robots={0, 1, 2}))
        assert agent.active_robots() == frozenset({0, 1, 2})


class TestMessages:
    """Non-command channels."""

    def test_handler_errors_do_not_escape(self):
        agent, _, _ = _agent()
        assert agent.handle(Envelope(Channel.STATUS, 2, object())) is False

    def test_poses_from_other_cluster_rejected(self):
        agent, bus, _ = _agent(optimizing=False)
        bus.register_responder(0, _responder)
        agent.load_pose_graph([_edge(1, 0, 1, 1), _edge(1, 1, 0, 0)])
        agent.start_initialization()
        assert agent.state is AgentState.INITIALIZING
        assert agent.handle_public_poses(PublicPoses(sender=0, iteration=0, cluster_id=3)) is False
        assert agent.bootstrap.acknowledged is False
        assert agent.handle_public_poses(PublicPoses(sender=0, iteration=0, cluster_id=0)) is True
        agent.tick()
        assert agent.state is AgentState.OPTIMIZING
        assert agent.cluster_id == 0
        assert agent.bootstrap.anchor is not None


class TestPeerRestart:
    """Heartbeat sequence numbers across a peer restart."""

    @staticmethod
    def _status(sequence, sender=2):
        return Status(agent_id=sender, iteration=0, state=AgentState.OPTIMIZING, sequence=sequence)

    def test_lower_sequence_dropped_while_peer_is_fresh(self):
        agent, _, _ = _agent(timeout_threshold=1.0)
        for seq in range(1, 6):
            assert agent.handle_status(self._status(seq)) is True
        assert agent.handle_status(self._status(3)) is False
        assert agent.handle_status(self._status(5)) is False

    def test_restarted_peer_is_heard_again(self):
        agent, _, clock = _agent(timeout_threshold=1.0)
        for seq in range(1, 6):
            agent.handle_status(self._status(seq))
        clock.advance(2.0)
        agent.tick()
        assert 2 not in agent.connectivity.local_view()
        for seq in range(1, 4):
            assert agent.handle_status(self._status(seq)) is True
        assert 2 in agent.connectivity.local_view()
        assert agent.connectivity.last_seen(2) == clock()
        # counting from the new sequence again
        assert agent.handle_status(self._status(2)) is False


class TestLifecycle:
    """Loading, initialisation failures and reset."""

    def test_load_discards_foreign_edges(self):
        agent, _, _ = _agent(optimizing=False)
        assert agent.load_pose_graph([_edge(1, 0, 1, 1), _edge(0, 0, 2, 0)]) is True
        assert agent.state is AgentState.POSEGRAPH_LOADED
        assert agent.graph.num_measurements == 1

    def test_load_only_from_idle(self):
        agent, _, _ = _agent()
        assert agent.load_pose_graph([_edge(1, 0, 1, 1)]) is False

    def test_unreachable_root_is_fatal(self):
        agent, _, _ = _agent(optimizing=False)
        agent.load_pose_graph([_edge(1, 0, 1, 1)])
        with pytest.raises(BootstrapError):
            agent.start_initialization()
        assert agent.terminated

    def test_handshake_exhaustion_returns_to_loaded(self):
        agent, bus, _ = _agent(optimizing=False, max_distributed_init_steps=2)
        bus.register_responder(0, _responder)
        agent.load_pose_graph([_edge(1, 0, 1, 1), _edge(1, 1, 0, 0)])
        agent.start_initialization()
        for _ in range(3):
            agent.tick()
        assert agent.state is AgentState.POSEGRAPH_LOADED

    def test_reset_is_idempotent(self):
        agent, _, _ = _agent()
        agent.handle_command(_update(1, 1))

        def snapshot():
            return (agent.state, agent.latest_epoch, agent.iteration, agent.weights_converged,
                    agent._pending_update, agent._handoff, agent.cluster_id)

        agent.reset()
        first = snapshot()
        agent.reset()
        assert snapshot() == first
        assert agent.latest_epoch == 0

    def test_complete_reset_returns_to_idle(self):
        agent, _, _ = _agent(complete_reset=True)
        agent.handle_command(_update(1, 1))
        agent.reset()
        agent.reset()
        assert agent.state is AgentState.IDLE
        assert agent.iteration == 0
        assert agent.graph is None

    def test_complete_reset_restarts_counters(self):
        agent, _, _ = _agent(complete_reset=True)
        agent.handle_command(_update(1, 1))
        agent.tick()
        agent.handle_status(Status(agent_id=2, iteration=3, state=AgentState.OPTIMIZING, sequence=7))
        assert agent.executed_epochs
        assert agent.status_sequence > 0
        agent.reset()
        assert agent.executed_epochs == []
        assert agent.status_sequence == 0
        assert agent.generation == 0
        # a peer restarting alongside is accepted from its first heartbeat
        assert agent.handle_status(Status(agent_id=2, iteration=0, state=AgentState.IDLE, sequence=1)) is True
