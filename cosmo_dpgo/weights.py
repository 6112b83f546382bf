"""Robust-weight convergence subprotocol for shared loop closures.

The endpoint with the lower AgentID owns each shared edge's weight: it
recomputes the weight from its current estimate and broadcasts it, and the
other endpoint adopts what it receives.  Agent 0 aggregates per-agent
convergence reports into a team decision.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from cosmo_dpgo_solver.models import EdgeKey
from cosmo_dpgo_solver.optimizer import PoseGraphOptimizer

from .messages import MeasurementWeight, MeasurementWeights

logger = logging.getLogger("cosmo_dpgo.weights")


def responsible_agent(key: EdgeKey) -> int:
    return min(key[0], key[2])


class WeightConvergenceMonitor:
    """Per-agent convergence test on the largest weight change of a round.

    Reflects the most recent round only: a later large change clears it.
    """

    def __init__(self, threshold: float) -> None:
        self.threshold = float(threshold)
        self.converged = False
        self.rounds = 0
        self.last_delta: Optional[float] = None

    def observe(self, max_delta: float) -> bool:
        self.rounds += 1
        self.last_delta = float(max_delta)
        converged = self.last_delta < self.threshold
        if converged != self.converged:
            logger.info(
                "Weights %s at round %d (max delta %.3g)",
                "converged" if converged else "moved again", self.rounds, self.last_delta,
            )
        self.converged = converged
        return self.converged

    def reset(self) -> None:
        self.converged = False
        self.rounds = 0
        self.last_delta = None


@dataclass
class WeightRoundResult:
    weight_round: int
    message: MeasurementWeights
    deltas: Dict[EdgeKey, float]
    max_delta: float
    converged: bool


class EdgeWeightProtocol:
    def __init__(self, agent_id: int, optimizer: PoseGraphOptimizer, threshold: float) -> None:
        self.agent_id = int(agent_id)
        self.optimizer = optimizer
        self.monitor = WeightConvergenceMonitor(threshold)
        self.weight_round = 0
        self._weights: Dict[EdgeKey, float] = {}

    def weight(self, key: EdgeKey) -> float:
        return self._weights.get(tuple(key), 1.0)

    def responsible_edges(self) -> List[EdgeKey]:
        return [k for k in self.optimizer.shared_edges() if responsible_agent(k) == self.agent_id]

    def run_round(self) -> WeightRoundResult:
        """Recompute and apply weights of the edges this agent is responsible for."""
        self.optimizer.advance_robust_schedule()
        self.weight_round += 1
        deltas: Dict[EdgeKey, float] = {}
        outgoing: List[MeasurementWeight] = []
        for key in self.responsible_edges():
            value = self.optimizer.compute_edge_weight(key)
            if value is None:
                logger.warning("[%s] No weight available for edge %s", self.agent_id, key)
                continue
            value = float(min(1.0, max(0.0, value)))
            deltas[key] = abs(value - self.weight(key))
            self._weights[key] = value
            self.optimizer.set_edge_weight(key, value)
            outgoing.append(MeasurementWeight(*key, weight=value))
        max_delta = max(deltas.values(), default=0.0)
        converged = self.monitor.observe(max_delta)
        msg = MeasurementWeights(sender=self.agent_id, weight_round=self.weight_round, weights=outgoing)
        return WeightRoundResult(self.weight_round, msg, deltas, max_delta, converged)

    def apply_remote(self, msg: MeasurementWeights) -> int:
        """Adopt weights sent by the responsible endpoint; returns how many applied."""
        applied = 0
        known = set(self.optimizer.shared_edges())
        for w in msg.weights:
            key = w.key
            if key not in known:
                continue
            owner = responsible_agent(key)
            if owner == self.agent_id:
                continue
            if msg.sender != owner:
                logger.warning(
                    "[%s] Rejecting weight for %s from non-responsible agent %s", self.agent_id, key, msg.sender
                )
                continue
            self._weights[key] = w.weight
            self.optimizer.set_edge_weight(key, w.weight)
            applied += 1
        return applied

    def reset(self) -> None:
        self._weights.clear()
        self.weight_round = 0
        self.monitor.reset()


class TeamConvergenceTracker:
    """Agent 0's view of which agents report converged weights.

    A team round starts when agent 0 runs its own weight round
    (:meth:`begin_round`).  Only reports from a weight round an agent ran
    after that point count, so a converged report left over from an earlier
    round never decides the current one.
    """

    def __init__(self) -> None:
        self._reports: Dict[int, Tuple[int, bool]] = {}
        self._baseline: Dict[int, int] = {}

    def report(self, agent_id: int, weight_round: int, converged: bool) -> None:
        prev = self._reports.get(int(agent_id))
        if prev is not None and weight_round < prev[0]:
            return
        self._reports[int(agent_id)] = (int(weight_round), bool(converged))

    def begin_round(self) -> None:
        self._baseline = {agent: entry[0] for agent, entry in self._reports.items()}

    def team_converged(self, active_set: Iterable[int]) -> bool:
        active = list(active_set)
        if not active:
            return False
        for agent in active:
            entry = self._reports.get(int(agent))
            if entry is None or not entry[1]:
                return False
            if entry[0] <= self._baseline.get(int(agent), 0):
                return False
        return True

    def reset(self) -> None:
        self._reports.clear()
        self._baseline.clear()
