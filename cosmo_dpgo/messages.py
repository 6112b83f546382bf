"""Message types exchanged between agents.

All messages are plain dataclasses; the in-process bus passes copies and the
ROS 2 transport serialises them with :mod:`cosmo_dpgo_ros2.codec`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import FrozenSet, List, Optional
import numpy as np

from cosmo_dpgo_solver.models import EdgeKey, edge_key

ALL_AGENTS = -1


class CommandType(IntEnum):
    REQUEST_POSE_GRAPH = 0
    INITIALIZE = 1
    UPDATE = 2
    UPDATE_WEIGHT = 3
    TERMINATE = 4
    HARD_TERMINATE = 5
    ACTIVE_ROBOTS = 6
    NOOP = 7


class AgentState(str, Enum):
    IDLE = "IDLE"
    POSEGRAPH_LOADED = "POSEGRAPH_LOADED"
    INITIALIZING = "INITIALIZING"
    OPTIMIZING = "OPTIMIZING"
    WEIGHT_UPDATING = "WEIGHT_UPDATING"
    TERMINATED = "TERMINATED"

    @property
    def initialized(self) -> bool:
        return self in (AgentState.OPTIMIZING, AgentState.WEIGHT_UPDATING)


@dataclass
class Command:
    """Coordination command observed by every agent.

    ``executing_agent`` is ``ALL_AGENTS`` for commands addressed to the team
    (TERMINATE, HARD_TERMINATE, ACTIVE_ROBOTS).  ``command`` is kept as an int
    when decoding an unknown type so the dispatcher can log and drop it.

    ``generation`` is raised by agent 0 each time it re-elects an executor and
    is copied into every hand-off.  Round commands are ordered by
    ``(generation, epoch)``, so a chain started before a re-election dies out.
    """

    command: int
    executing_agent: int
    publishing_agent: int
    epoch: int = 0
    active_robots: FrozenSet[int] = frozenset()
    weights_converged: bool = False
    generation: int = 0

    def __post_init__(self):
        try:
            self.command = CommandType(int(self.command))
        except ValueError:
            self.command = int(self.command)
        self.active_robots = frozenset(int(a) for a in self.active_robots)

    def addressed_to(self, agent_id: int) -> bool:
        return self.executing_agent in (ALL_AGENTS, agent_id)


@dataclass
class Status:
    """Heartbeat; its arrival time is the sender's last-seen timestamp."""

    agent_id: int
    iteration: int
    state: AgentState
    connected_peers: FrozenSet[int] = frozenset()
    sequence: int = 0
    weight_round: int = 0
    weights_converged: bool = False
    max_weight_delta: Optional[float] = None
    ready_to_terminate: bool = False
    cluster_id: int = 0

    def __post_init__(self):
        self.state = AgentState(self.state)
        self.connected_peers = frozenset(int(a) for a in self.connected_peers)


@dataclass
class PublicPose:
    owner: int
    pose_index: int
    pose: np.ndarray  # r x (d+1)
    cluster_id: int = 0

    def __post_init__(self):
        self.pose = np.array(self.pose, dtype=float)


@dataclass
class PublicPoses:
    sender: int
    iteration: int
    poses: List[PublicPose] = field(default_factory=list)
    cluster_id: int = 0


@dataclass
class MeasurementWeight:
    agent_a: int
    pose_a: int
    agent_b: int
    pose_b: int
    weight: float

    def __post_init__(self):
        self.weight = float(min(1.0, max(0.0, self.weight)))

    @property
    def key(self) -> EdgeKey:
        return edge_key(self.agent_a, self.pose_a, self.agent_b, self.pose_b)


@dataclass
class MeasurementWeights:
    sender: int
    weight_round: int
    weights: List[MeasurementWeight] = field(default_factory=list)


@dataclass
class Anchor:
    owner: int
    pose: np.ndarray  # r x (d+1)
    iteration: int = 0

    def __post_init__(self):
        self.pose = np.array(self.pose, dtype=float)


@dataclass
class LiftingMatrixRequest:
    requester: int
    owner: int = 0


@dataclass
class LiftingMatrixResponse:
    owner: int
    matrix: Optional[np.ndarray]
    success: bool = True

    def __post_init__(self):
        if self.matrix is not None:
            self.matrix = np.array(self.matrix, dtype=float)


@dataclass
class AnchorRequest:
    requester: int
    owner: int = 0
