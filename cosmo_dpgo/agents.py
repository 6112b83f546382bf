from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple
import logging
import math
import os
import time
import numpy as np

from cosmo_dpgo_solver.models import RelativeMeasurement
from cosmo_dpgo_solver.optimizer import OptimizationResult, PoseGraphOptimizer
from cosmo_dpgo_common.kpi_logging import KPILogger

from .barrier import BarrierDecision, SynchronizationBarrier
from .bootstrap import ROOT_AGENT, BootstrapCoordinator, BootstrapError, InitializationFailed
from .communication import Channel, Envelope, MessageBus
from .config import CoordinationConfig
from .connectivity import ConnectivityMonitor
from .messages import (
    ALL_AGENTS,
    AgentState,
    Anchor,
    Command,
    CommandType,
    MeasurementWeights,
    PublicPose,
    PublicPoses,
    Status,
)
from .partition import AgentPoseGraph, partition_measurements
from .scheduler import make_scheduler
from .weights import EdgeWeightProtocol, TeamConvergenceTracker

logger = logging.getLogger("cosmo_dpgo.agent")

PoseGraphSource = Callable[[int], List[RelativeMeasurement]]


class PGOAgentCoordinator:
    """Command dispatcher and state machine of one agent.

    The agent is driven by :meth:`spin_once`, which drains its mailbox and then
    runs :meth:`tick`.  Handlers never block apart from the bootstrap
    lifting-matrix query, and every timer (settle delay, hand-off sleep,
    heartbeat timeout) is measured on ``clock`` so a simulated clock makes a
    whole team run deterministic.

    Agent 0 additionally supervises the run: it drives initialisation of the
    other agents, issues the first UPDATE, re-elects an executor when the
    in-flight one is lost, publishes the authoritative active set and decides
    when to terminate.
    """

    SUPERVISION_PERIOD = 1.0

    def __init__(
        self,
        agent_id: int,
        bus: MessageBus,
        optimizer: PoseGraphOptimizer,
        config: Optional[CoordinationConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        pose_graph_source: Optional[PoseGraphSource] = None,
        kpi: Optional[KPILogger] = None,
        weight_log: Optional[KPILogger] = None,
    ) -> None:
        self.agent_id = int(agent_id)
        self.bus = bus
        self.optimizer = optimizer
        self.config = config or CoordinationConfig()
        self.config.validate()
        self.clock = clock
        self._pose_graph_source = pose_graph_source

        opt_cfg = self.config.optimizer
        self.connectivity = ConnectivityMonitor(
            self.agent_id,
            self.config.timeout_threshold,
            on_peer_lost=self._on_peer_lost,
            on_peer_recovered=self._on_peer_recovered,
        )
        self.barrier = SynchronizationBarrier(self.agent_id, self.config.max_delayed_iterations)
        self.scheduler = make_scheduler(self.config.update_rule, seed=self.config.seed + self.agent_id)
        self.bootstrap = BootstrapCoordinator(
            self.agent_id,
            bus,
            optimizer,
            relaxation_rank=opt_cfg.relaxation_rank,
            dimension=opt_cfg.dimension,
            lifting_matrix_timeout=self.config.lifting_matrix_timeout,
            max_init_steps=self.config.max_distributed_init_steps,
        )
        self.weights = EdgeWeightProtocol(self.agent_id, optimizer, self.config.weight_convergence_threshold)
        self.team = TeamConvergenceTracker()

        if kpi is None and self.config.log_dir:
            kpi = KPILogger(
                extra_fields={"agent": self.agent_id},
                log_path=os.path.join(self.config.log_dir, f"agent_{self.agent_id}_iterations.jsonl"),
                clock=self.clock,
            )
        if weight_log is None and self.config.log_dir and opt_cfg.robust_enabled:
            weight_log = KPILogger(
                extra_fields={"agent": self.agent_id},
                log_path=os.path.join(self.config.log_dir, f"agent_{self.agent_id}_weights.jsonl"),
                clock=self.clock,
            )
        self.kpi = kpi
        self.weight_log = weight_log

        self.state = AgentState.IDLE
        self.graph: Optional[AgentPoseGraph] = None
        self.cluster_id = self.agent_id
        self.iteration = 0
        self.status_sequence = 0
        self.peer_status: Dict[int, Status] = {}
        self._peer_sequence: Dict[int, int] = {}
        self.final_trajectory: Optional[np.ndarray] = None
        self.latest_trajectory: Optional[np.ndarray] = None
        self.last_result: Optional[OptimizationResult] = None
        self._reset_round_state()

        self._loaded_at: Optional[float] = None
        self._supervision_sent: Dict[Tuple[int, int], float] = {}
        self._last_active_broadcast: Optional[frozenset] = None

        bus.register(self.agent_id)
        bus.register_responder(self.agent_id, self.bootstrap.answer)

    def _reset_round_state(self) -> None:
        self.latest_epoch = 0
        self.generation = 0
        self.executed_epochs: List[int] = []
        self.current_command: Optional[Command] = None
        self.weights_converged = False
        self.ready_to_terminate = False
        self._pending_update: Optional[Command] = None
        self._handoff: Optional[Tuple[float, Command]] = None
        self._phase_updates = 0
        self._awaiting_team_eval = False
        self._last_command_time: Optional[float] = None
        self._kicked_off = False
        self._kickoff_wait_ticks = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def is_root(self) -> bool:
        return self.agent_id == ROOT_AGENT

    @property
    def initialized(self) -> bool:
        return self.state.initialized

    @property
    def terminated(self) -> bool:
        return self.state is AgentState.TERMINATED

    def active_robots(self) -> frozenset:
        return self.connectivity.active_robots()

    def _set_state(self, new: AgentState) -> None:
        if new is self.state:
            return
        logger.info("[%s] %s -> %s", self.agent_id, self.state.value, new.value)
        if self.kpi is not None:
            self.kpi.state_change(self.state.value, new.value, iteration=self.iteration)
        self.state = new

    # ------------------------------------------------------------------
    # Pose graph
    # ------------------------------------------------------------------
    def load_pose_graph(self, measurements: List[RelativeMeasurement]) -> bool:
        """IDLE -> POSEGRAPH_LOADED; edges not referencing this agent are discarded."""
        if self.state is not AgentState.IDLE:
            logger.warning("[%s] Ignoring pose graph while %s", self.agent_id, self.state.value)
            return False
        graph = partition_measurements(self.agent_id, measurements)
        if graph.num_measurements == 0:
            logger.warning("[%s] Pose graph has no measurements for this agent", self.agent_id)
            return False
        self.optimizer.set_pose_graph(graph.odometry, graph.private_loop_closures, graph.shared_loop_closures)
        self.graph = graph
        self.barrier.set_neighbors(graph.neighbors)
        self._loaded_at = self.clock()
        logger.info(
            "[%s] Loaded %d odometry, %d private and %d shared measurements (%d poses, neighbours %s)",
            self.agent_id,
            len(graph.odometry),
            len(graph.private_loop_closures),
            len(graph.shared_loop_closures),
            graph.num_poses(),
            sorted(graph.neighbors),
        )
        self._set_state(AgentState.POSEGRAPH_LOADED)
        return True

    def _request_pose_graph(self) -> bool:
        if self._pose_graph_source is None:
            logger.warning("[%s] Pose graph requested but no source is configured", self.agent_id)
            return False
        return self.load_pose_graph(list(self._pose_graph_source(self.agent_id)))

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------
    def start_initialization(self) -> bool:
        """POSEGRAPH_LOADED -> INITIALIZING.  :class:`BootstrapError` is fatal."""
        if self.state is not AgentState.POSEGRAPH_LOADED:
            return False
        self._set_state(AgentState.INITIALIZING)
        try:
            self.bootstrap.acquire_lifting_matrix()
        except BootstrapError:
            logger.error("[%s] Lifting matrix unavailable; shutting down", self.agent_id)
            self._set_state(AgentState.TERMINATED)
            raise
        self.bootstrap.begin_handshake()
        if self.is_root:
            self.bootstrap.acknowledge(self.agent_id)
            self._finish_initialization()
        else:
            self._publish_status()
        return True

    def _finish_initialization(self) -> None:
        self.cluster_id = 0
        self._set_state(AgentState.OPTIMIZING)
        if self.is_root:
            anchor = self.bootstrap.make_anchor(self.iteration)
            if anchor is not None:
                self.bus.publish(self.agent_id, Channel.ANCHOR, anchor)
        elif self.bootstrap.anchor is None:
            self.bootstrap.query_anchor()
        self._publish_public_poses()
        self._publish_status()

    def _handshake_step(self) -> None:
        try:
            done = self.bootstrap.attempt()
        except InitializationFailed as exc:
            logger.warning("%s", exc)
            self._set_state(AgentState.POSEGRAPH_LOADED)
            return
        if done:
            self._finish_initialization()
        else:
            self._publish_status()

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------
    def handle(self, envelope: Envelope) -> bool:
        """Dispatch one delivered message.  Only :class:`BootstrapError` escapes."""
        try:
            if envelope.channel is Channel.COMMAND:
                return self.handle_command(envelope.message)
            if self.terminated:
                if self.is_root and envelope.channel is Channel.STATUS and envelope.message.state is not AgentState.TERMINATED:
                    # the TERMINATE broadcast may have been lost on the way to this peer
                    self.bus.publish(
                        self.agent_id,
                        Channel.COMMAND,
                        Command(CommandType.TERMINATE, ALL_AGENTS, self.agent_id, epoch=self.latest_epoch),
                    )
                return False
            if envelope.channel is Channel.STATUS:
                return self.handle_status(envelope.message)
            if envelope.channel is Channel.PUBLIC_POSES:
                return self.handle_public_poses(envelope.message)
            if envelope.channel is Channel.WEIGHTS:
                return self.handle_weights(envelope.message)
            if envelope.channel is Channel.ANCHOR:
                return self.handle_anchor(envelope.message)
            logger.warning("[%s] Unknown channel %s", self.agent_id, envelope.channel)
            return False
        except BootstrapError:
            raise
        except Exception as exc:
            logger.warning(
                "[%s] Failed to handle %s from %s: %s", self.agent_id, envelope.channel.value, envelope.sender, exc
            )
            return False

    def handle_command(self, cmd: Command) -> bool:
        if not isinstance(cmd.command, CommandType):
            logger.warning("[%s] Dropping unknown command type %s from %s", self.agent_id, cmd.command, cmd.publishing_agent)
            return False
        if self.terminated:
            logger.debug("[%s] Terminated; ignoring %s", self.agent_id, cmd.command.name)
            return False
        kind = cmd.command
        if kind is CommandType.NOOP:
            return True
        if kind in (CommandType.UPDATE, CommandType.UPDATE_WEIGHT):
            return self._handle_round_command(cmd)
        if not cmd.addressed_to(self.agent_id):
            return True
        if kind is CommandType.REQUEST_POSE_GRAPH:
            if self.state is AgentState.IDLE and not self._request_pose_graph():
                return False
            return self.start_initialization()
        if kind is CommandType.INITIALIZE:
            return self.start_initialization()
        if kind is CommandType.TERMINATE:
            self.terminate(graceful=True)
            return True
        if kind is CommandType.HARD_TERMINATE:
            self.terminate(graceful=False)
            return True
        if kind is CommandType.ACTIVE_ROBOTS:
            return self._adopt_active_robots(cmd)
        return False

    def _handle_round_command(self, cmd: Command) -> bool:
        if (cmd.generation, cmd.epoch) <= (self.generation, self.latest_epoch):
            logger.debug(
                "[%s] Ignoring stale %s generation %s epoch %s (newest %s/%s)",
                self.agent_id, cmd.command.name, cmd.generation, cmd.epoch, self.generation, self.latest_epoch,
            )
            return False
        if cmd.generation > self.generation:
            if self._handoff is not None or self._pending_update is not None:
                logger.info(
                    "[%s] Generation %s supersedes the in-flight round; dropping it", self.agent_id, cmd.generation
                )
            self._handoff = None
            self._pending_update = None
            self.generation = cmd.generation
        self.latest_epoch = cmd.epoch
        self.current_command = cmd
        self._last_command_time = self.clock()
        self._kicked_off = True
        if cmd.weights_converged and not self.weights_converged:
            logger.info("[%s] Team weights converged", self.agent_id)
            self.weights_converged = True
        if self._pending_update is not None and self._pending_update.epoch < cmd.epoch:
            self._pending_update = None
        if self._handoff is not None and self._handoff[1].epoch <= cmd.epoch and cmd.publishing_agent != self.agent_id:
            self._handoff = None

        if cmd.command is CommandType.UPDATE_WEIGHT:
            self._phase_updates = 0
            if self.state is AgentState.OPTIMIZING:
                self._set_state(AgentState.WEIGHT_UPDATING)
        else:
            self._phase_updates += 1
            if self.state is AgentState.WEIGHT_UPDATING:
                self._set_state(AgentState.OPTIMIZING)

        if cmd.executing_agent != self.agent_id:
            if cmd.executing_agent not in self.active_robots():
                logger.debug("[%s] %s addressed to inactive agent %s", self.agent_id, cmd.command.name, cmd.executing_agent)
            return True
        if cmd.command is CommandType.UPDATE_WEIGHT:
            return self._run_weight_round(cmd)
        self._pending_update = cmd
        self._try_execute_pending()
        return True

    def handle_status(self, status: Status) -> bool:
        sender = status.agent_id
        if sender == self.agent_id:
            return False
        if status.sequence <= self._peer_sequence.get(sender, -1):
            if not self.connectivity.has_expired(sender, self.clock()):
                logger.debug("[%s] Duplicate/out-of-order status %s from %s", self.agent_id, status.sequence, sender)
                return False
            # silent past the timeout and counting from scratch: the peer restarted
            logger.info("[%s] Peer %s restarted (status sequence %s)", self.agent_id, sender, status.sequence)
        self._peer_sequence[sender] = status.sequence
        self.connectivity.on_heartbeat(sender, self.clock())
        self.peer_status[sender] = status
        if self.is_root:
            self.team.report(sender, status.weight_round, status.weights_converged)
        neighbors = self.graph.neighbors if self.graph is not None else set()
        if status.state is AgentState.INITIALIZING and self.initialized and sender in neighbors:
            # initialised neighbours acknowledge by re-publishing their public poses
            self._publish_public_poses()
        if (
            self.state is AgentState.INITIALIZING
            and sender == ROOT_AGENT
            and status.state.initialized
            and not neighbors
        ):
            self.bootstrap.acknowledge(sender)
        return True

    def handle_public_poses(self, msg: PublicPoses) -> bool:
        if self.graph is None or msg.sender not in self.graph.neighbors:
            return False
        if msg.cluster_id != 0:
            logger.debug("[%s] Rejecting poses from %s: not merged in active cluster", self.agent_id, msg.sender)
            return False
        if self.state is AgentState.INITIALIZING:
            self.bootstrap.acknowledge(msg.sender)
        if not self.barrier.record_public_poses(msg.sender, msg.iteration):
            return False
        for pose in msg.poses:
            if pose.cluster_id != 0:
                continue
            self.optimizer.update_neighbor_pose(pose.owner, pose.pose_index, pose.pose)
        if self._pending_update is not None and not self.barrier.lagging(self.active_robots()):
            self._try_execute_pending()
        return True

    def handle_weights(self, msg: MeasurementWeights) -> bool:
        if self.graph is None:
            return False
        return self.weights.apply_remote(msg) > 0

    def handle_anchor(self, anchor: Anchor) -> bool:
        return self.bootstrap.store_anchor(anchor)

    def _adopt_active_robots(self, cmd: Command) -> bool:
        if cmd.publishing_agent != ROOT_AGENT:
            logger.warning("[%s] Ignoring active set from non-root agent %s", self.agent_id, cmd.publishing_agent)
            return False
        if self.is_root:
            return True
        self.connectivity.adopt(cmd.active_robots)
        for peer in self.barrier.neighbors:
            if peer in cmd.active_robots:
                self.barrier.readmit(peer)
            else:
                self.barrier.exclude(peer)
        return True

    def _on_peer_lost(self, peer: int) -> None:
        self.barrier.exclude(peer)
        if self.kpi is not None:
            self.kpi.peer_event(peer, "lost")

    def _on_peer_recovered(self, peer: int) -> None:
        self.barrier.readmit(peer)
        if self.kpi is not None:
            self.kpi.peer_event(peer, "recovered")

    # ------------------------------------------------------------------
    # Local update
    # ------------------------------------------------------------------
    def _try_execute_pending(self) -> bool:
        """Run the deferred UPDATE if the barrier allows; each call counts as one round."""
        cmd = self._pending_update
        if cmd is None:
            return False
        if not self.initialized:
            logger.info("[%s] Not optimising yet; skipping epoch %s", self.agent_id, cmd.epoch)
            self._pending_update = None
            self._schedule_handoff(cmd)
            return True
        decision = self.barrier.evaluate(self.active_robots())
        if decision is BarrierDecision.WAIT:
            logger.debug(
                "[%s] Deferring epoch %s until %s catch up",
                self.agent_id, cmd.epoch, self.barrier.lagging(self.active_robots()),
            )
            return False
        self._pending_update = None
        self._execute_update(cmd, stale=decision is BarrierDecision.PROCEED_STALE)
        return True

    def _execute_update(self, cmd: Command, *, stale: bool) -> None:
        if self.is_root and self._awaiting_team_eval:
            self._awaiting_team_eval = False
            if not self.weights_converged and self.team.team_converged(self.active_robots()):
                logger.info("[%s] Team weights converged after round %s", self.agent_id, self.weights.weight_round)
                self.weights_converged = True
        result = self.optimizer.optimize()
        self.last_result = result
        self.iteration += 1
        self.executed_epochs.append(cmd.epoch)
        self.barrier.record_local_update()
        if self.kpi is not None:
            self.kpi.iteration(
                self.iteration, cmd.epoch, result.cost_before, result.cost_after, result.elapsed_s,
                stale=stale, success=result.success,
            )
        logger.debug(
            "[%s] Epoch %s iteration %s cost %.6g -> %.6g%s",
            self.agent_id, cmd.epoch, self.iteration, result.cost_before, result.cost_after, " (stale)" if stale else "",
        )
        converged_locally = result.relative_change < self.config.optimizer.relative_change_tolerance
        robust_done = self.weights_converged or not self.config.optimizer.robust_enabled
        self.ready_to_terminate = bool(converged_locally and robust_done)

        self._publish_public_poses()
        if self.is_root:
            anchor = self.bootstrap.make_anchor(self.iteration)
            if anchor is not None:
                self.bus.publish(self.agent_id, Channel.ANCHOR, anchor)
        if self.config.publish_iterate and self.bootstrap.anchor is not None:
            self.latest_trajectory = self.optimizer.get_trajectory_in_global_frame(self.bootstrap.anchor.pose)
        self._publish_status()
        self._schedule_handoff(cmd)

    def _run_weight_round(self, cmd: Command) -> bool:
        if self.initialized:
            result = self.weights.run_round()
            self.bus.publish(self.agent_id, Channel.WEIGHTS, result.message)
            if self.weight_log is not None:
                self.weight_log.weight_round(result.weight_round, result.max_delta, result.converged, result.deltas)
            if self.is_root:
                self.team.begin_round()
                self.team.report(self.agent_id, result.weight_round, result.converged)
                self._awaiting_team_eval = True
            self._publish_status()
        else:
            logger.info("[%s] Not optimising yet; skipping weight round of epoch %s", self.agent_id, cmd.epoch)
        self._schedule_handoff(cmd)
        return True

    # ------------------------------------------------------------------
    # Hand-off
    # ------------------------------------------------------------------
    def _next_command(self, after: Command) -> Command:
        active = self.active_robots()
        epoch = max(self.latest_epoch, after.epoch) + 1
        if after.command is CommandType.UPDATE_WEIGHT:
            later = sorted(a for a in active if a > self.agent_id)
            if later:
                kind, executor = CommandType.UPDATE_WEIGHT, later[0]
            else:
                kind, executor = CommandType.UPDATE, ROOT_AGENT if ROOT_AGENT in active else min(active)
        elif (
            self.config.optimizer.robust_enabled
            and not self.weights_converged
            and self._phase_updates >= self.config.optimizer.robust_opt_inner_iters
            and ROOT_AGENT in active
        ):
            kind, executor = CommandType.UPDATE_WEIGHT, ROOT_AGENT
        else:
            kind, executor = CommandType.UPDATE, self.scheduler.select_next(active, self.agent_id)
        return Command(
            command=kind,
            executing_agent=executor,
            publishing_agent=self.agent_id,
            epoch=epoch,
            weights_converged=self.weights_converged,
            generation=self.generation,
        )

    def _schedule_handoff(self, after: Command) -> None:
        nxt = self._next_command(after)
        self._handoff = (self.clock() + self.config.inter_update_sleep_time, nxt)

    def _issue(self, cmd: Command) -> None:
        """Publish a command and observe it locally (the bus skips the sender)."""
        self.bus.publish(self.agent_id, Channel.COMMAND, cmd)
        self.handle_command(cmd)

    # ------------------------------------------------------------------
    # Status / poses
    # ------------------------------------------------------------------
    def _publish_status(self) -> None:
        self.status_sequence += 1
        status = Status(
            agent_id=self.agent_id,
            iteration=self.iteration,
            state=self.state,
            connected_peers=self.connectivity.local_view() - {self.agent_id},
            sequence=self.status_sequence,
            weight_round=self.weights.weight_round,
            weights_converged=self.weights.monitor.converged,
            max_weight_delta=self.weights.monitor.last_delta,
            ready_to_terminate=self.ready_to_terminate,
            cluster_id=self.cluster_id,
        )
        self.bus.publish(self.agent_id, Channel.STATUS, status)

    def _publish_public_poses(self) -> None:
        if not self.initialized:
            return
        poses = []
        for index in self.optimizer.public_pose_indices():
            estimate = self.optimizer.get_pose_estimate(index)
            if estimate is None:
                logger.warning("[%s] Missing estimate for public pose %s", self.agent_id, index)
                continue
            poses.append(PublicPose(self.agent_id, index, estimate, cluster_id=self.cluster_id))
        msg = PublicPoses(sender=self.agent_id, iteration=self.iteration, poses=poses, cluster_id=self.cluster_id)
        self.bus.publish(self.agent_id, Channel.PUBLIC_POSES, msg)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def spin_once(self) -> int:
        """Drain the mailbox, run every handler, then :meth:`tick`."""
        envelopes = self.bus.drain(self.agent_id)
        for env in envelopes:
            self.handle(env)
        self.tick()
        return len(envelopes)

    def tick(self) -> None:
        if self.terminated:
            return
        now = self.clock()
        self.connectivity.tick(now)
        if self.state is AgentState.INITIALIZING:
            self._handshake_step()
        else:
            self._publish_status()
        if self._pending_update is not None:
            self._try_execute_pending()
        if self._handoff is not None and now >= self._handoff[0]:
            _, cmd = self._handoff
            self._handoff = None
            self._issue(cmd)
        if self.is_root and not self.terminated:
            self._root_tick(now)

    def _root_tick(self, now: float) -> None:
        view = self.connectivity.local_view()
        if view != self._last_active_broadcast:
            self._last_active_broadcast = view
            self.bus.publish(
                self.agent_id,
                Channel.COMMAND,
                Command(CommandType.ACTIVE_ROBOTS, ALL_AGENTS, self.agent_id, active_robots=view),
            )
        if self.state is AgentState.IDLE and self._pose_graph_source is not None:
            self._request_pose_graph()
        loaded_at = self._loaded_at if self._loaded_at is not None else now
        if self.state is AgentState.POSEGRAPH_LOADED and now - loaded_at >= self.config.settle_delay:
            self.start_initialization()
        if not self.initialized:
            return
        self._supervise_initialization(now, view)
        if not self._kicked_off:
            self._maybe_kick_off(view)
            return
        if self._maybe_terminate(view):
            return
        self._maybe_reelect(now, view)

    def _supervise_initialization(self, now: float, view: frozenset) -> None:
        for peer in sorted(view - {self.agent_id}):
            status = self.peer_status.get(peer)
            if status is None:
                continue
            if status.state is AgentState.IDLE:
                kind = CommandType.REQUEST_POSE_GRAPH
            elif status.state is AgentState.POSEGRAPH_LOADED:
                kind = CommandType.INITIALIZE
            else:
                continue
            last = self._supervision_sent.get((peer, int(kind)))
            if last is not None and now - last < self.SUPERVISION_PERIOD:
                continue
            self._supervision_sent[(peer, int(kind))] = now
            self.bus.publish(self.agent_id, Channel.COMMAND, Command(kind, peer, self.agent_id))

    def _maybe_kick_off(self, view: frozenset) -> None:
        peers = view - {self.agent_id}
        ready = all(p in self.peer_status and self.peer_status[p].state.initialized for p in peers)
        self._kickoff_wait_ticks += 1
        if not ready and self._kickoff_wait_ticks < self.config.max_distributed_init_steps:
            return
        if not ready:
            logger.warning("[%s] Starting optimisation before every agent finished initialising", self.agent_id)
        executor = self.scheduler.select_next(view, None)
        logger.info("[%s] Kicking off optimisation with agent %s", self.agent_id, executor)
        self._issue(
            Command(CommandType.UPDATE, executor, self.agent_id, epoch=self.latest_epoch + 1, generation=self.generation)
        )

    def _maybe_reelect(self, now: float, view: frozenset) -> None:
        cmd = self.current_command
        if cmd is None or self._handoff is not None or self._pending_update is not None:
            return
        lost = cmd.executing_agent not in view
        silent = self._last_command_time is not None and now - self._last_command_time > self.config.timeout_threshold
        if not (lost or silent):
            return
        executor = self.scheduler.select_next(view, cmd.executing_agent if cmd.executing_agent in view else None)
        logger.warning(
            "[%s] Executor %s %s; re-electing agent %s",
            self.agent_id, cmd.executing_agent, "left the active set" if lost else "went silent", executor,
        )
        self._issue(
            Command(
                CommandType.UPDATE,
                executor,
                self.agent_id,
                epoch=self.latest_epoch + 1,
                weights_converged=self.weights_converged,
                generation=self.generation + 1,
            )
        )

    def _maybe_terminate(self, view: frozenset) -> bool:
        max_epochs = self.config.optimizer.max_iterations
        reason = None
        if self.latest_epoch >= max_epochs:
            reason = f"reached {max_epochs} epochs"
        elif self.ready_to_terminate and all(
            p in self.peer_status and self.peer_status[p].ready_to_terminate for p in view - {self.agent_id}
        ):
            reason = "every active agent converged"
        if reason is None:
            return False
        logger.info("[%s] Terminating team: %s", self.agent_id, reason)
        self._issue(Command(CommandType.TERMINATE, ALL_AGENTS, self.agent_id, epoch=self.latest_epoch))
        return True

    # ------------------------------------------------------------------
    # Termination / reset
    # ------------------------------------------------------------------
    def terminate(self, graceful: bool = True) -> None:
        if self.terminated:
            return
        self._pending_update = None
        self._handoff = None
        if graceful and self.initialized:
            anchor = self.bootstrap.anchor or self.bootstrap.query_anchor()
            if anchor is not None:
                self.final_trajectory = self.optimizer.get_trajectory_in_global_frame(anchor.pose)
            else:
                logger.warning("[%s] No anchor available; final trajectory not exported", self.agent_id)
        self._set_state(AgentState.TERMINATED)
        self._publish_status()
        if self.kpi is not None:
            self.kpi.close()
        if self.weight_log is not None:
            self.weight_log.close()

    def reset(self) -> None:
        """Clear round state; with ``complete_reset`` also return to IDLE.

        Idempotent: calling it twice leaves the agent as calling it once.
        """
        complete = self.config.complete_reset
        self.barrier.reset()
        self.weights.reset()
        self.team.reset()
        self.bootstrap.reset(complete=complete)
        self.optimizer.reset(complete=complete)
        self._reset_round_state()
        self.latest_trajectory = None
        self._supervision_sent.clear()
        if complete:
            self.connectivity.reset()
            self.peer_status.clear()
            self._peer_sequence.clear()
            self.status_sequence = 0
            self.graph = None
            self.barrier.set_neighbors(())
            self.cluster_id = self.agent_id
            self.iteration = 0
            self.final_trajectory = None
            self._loaded_at = None
            self._last_active_broadcast = None
            self._set_state(AgentState.IDLE)
        elif not self.terminated and self.graph is not None:
            self.cluster_id = self.agent_id
            self._set_state(AgentState.POSEGRAPH_LOADED)

    # ------------------------------------------------------------------
    def summary(self) -> Dict[str, object]:
        cost = float("nan")
        if self.last_result is not None and math.isfinite(self.last_result.cost_after):
            cost = self.last_result.cost_after
        return {
            "agent": self.agent_id,
            "state": self.state.value,
            "iterations": self.iteration,
            "latest_epoch": self.latest_epoch,
            "cost": cost,
            "weights_converged": self.weights_converged,
            "weight_rounds": self.weights.weight_round,
        }
