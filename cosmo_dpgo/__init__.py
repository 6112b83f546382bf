"""Coordination layer for distributed pose-graph optimisation.

A team of agents (one per robot) jointly refines a shared pose graph.  Each
agent owns its partition, exchanges boundary poses with its neighbours over a
message bus, takes a local optimisation step when it holds the UPDATE command,
and hands execution to the next agent.  The modules here sequence those
rounds: which agent updates when, how stale neighbour data may be, which
peers are still alive, how the team agrees on a common frame, and when the
robust weights of inter-robot loop closures have settled.

The numerical optimiser is a collaborator behind
``cosmo_dpgo_solver.optimizer.PoseGraphOptimizer``.
"""

from .messages import AgentState, Command, CommandType, Status
from .partition import AgentPoseGraph, partition_measurements, partition_team
from .config import CoordinationConfig, UpdateRule
from .communication import Channel, InProcessBus
from .bootstrap import BootstrapError, InitializationFailed
from .agents import PGOAgentCoordinator
from .runner import ManualClock, TeamRunner, TeamRunResult

__all__ = [
    "AgentState",
    "Command",
    "CommandType",
    "Status",
    "AgentPoseGraph",
    "partition_measurements",
    "partition_team",
    "CoordinationConfig",
    "UpdateRule",
    "Channel",
    "InProcessBus",
    "BootstrapError",
    "InitializationFailed",
    "PGOAgentCoordinator",
    "ManualClock",
    "TeamRunner",
    "TeamRunResult",
]
