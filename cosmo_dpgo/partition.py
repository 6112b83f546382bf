from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set
import logging

from cosmo_dpgo_solver.models import MeasurementKind, RelativeMeasurement

logger = logging.getLogger("cosmo_dpgo.partition")


@dataclass
class AgentPoseGraph:
    """Container grouping the measurements relevant to a single agent.

    Attributes
    ----------
    odometry:
        Edges ``(a, i) -> (a, i + 1)`` along this agent's own trajectory.
    private_loop_closures:
        Other edges whose endpoints both belong to this agent.
    shared_loop_closures:
        Edges where exactly one endpoint belongs to this agent and the other
        belongs to a different agent.  These are the edges that require
        peer-to-peer coordination when optimising.
    """

    agent_id: int
    odometry: List[RelativeMeasurement] = field(default_factory=list)
    private_loop_closures: List[RelativeMeasurement] = field(default_factory=list)
    shared_loop_closures: List[RelativeMeasurement] = field(default_factory=list)

    @property
    def neighbors(self) -> Set[int]:
        return {m.other_agent(self.agent_id) for m in self.shared_loop_closures}

    @property
    def num_measurements(self) -> int:
        return len(self.odometry) + len(self.private_loop_closures) + len(self.shared_loop_closures)

    def num_poses(self) -> int:
        indices = [-1]
        for m in [*self.odometry, *self.private_loop_closures, *self.shared_loop_closures]:
            if m.r1 == self.agent_id:
                indices.append(m.p1)
            if m.r2 == self.agent_id:
                indices.append(m.p2)
        return max(indices) + 1

    def add(self, measurement: RelativeMeasurement) -> bool:
        """Route a measurement into its bucket.

        Returns ``False`` (and logs) when the measurement does not reference
        this agent; such edges are protocol violations and are discarded.
        """
        if not measurement.involves(self.agent_id):
            logger.warning(
                "[%s] Discarding irrelevant measurement (%s, %s) -> (%s, %s)",
                self.agent_id, measurement.r1, measurement.p1, measurement.r2, measurement.p2,
            )
            return False
        kind = classify_measurement(measurement)
        if kind is MeasurementKind.ODOMETRY:
            self.odometry.append(measurement)
        elif kind is MeasurementKind.PRIVATE_LOOP_CLOSURE:
            self.private_loop_closures.append(measurement)
        else:
            self.shared_loop_closures.append(measurement)
        return True


def classify_measurement(measurement: RelativeMeasurement) -> MeasurementKind:
    """Odometry if ``r1 == r2`` and ``p1 + 1 == p2``; private loop closure for
    other same-agent edges; shared loop closure when the agents differ."""
    return measurement.kind()


def partition_measurements(agent_id: int, measurements: Iterable[RelativeMeasurement]) -> AgentPoseGraph:
    """Build the pose graph of one agent from a team measurement stream."""
    graph = AgentPoseGraph(int(agent_id))
    dropped = 0
    for m in measurements:
        if not graph.add(m):
            dropped += 1
    if dropped:
        logger.info("[%s] Dropped %d measurements not referencing this agent", agent_id, dropped)
    return graph


def partition_team(measurements: Iterable[RelativeMeasurement], num_robots: int) -> Dict[int, AgentPoseGraph]:
    """Split a team measurement stream into per-agent pose graphs.

    Shared loop closures land in both endpoints' graphs.  Agents that only
    participate via shared loop closures are still represented so the caller
    can instantiate agents for them.
    """
    graphs: Dict[int, AgentPoseGraph] = {rid: AgentPoseGraph(rid) for rid in range(int(num_robots))}

    def ensure(agent: int) -> AgentPoseGraph:
        if agent not in graphs:
            graphs[agent] = AgentPoseGraph(agent)
        return graphs[agent]

    for m in measurements:
        ensure(m.r1).add(m)
        if m.r2 != m.r1:
            ensure(m.r2).add(m)
    return graphs
