from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Set
import logging

logger = logging.getLogger("cosmo_dpgo.barrier")


class BarrierDecision(str, Enum):
    PROCEED = "proceed"
    PROCEED_STALE = "proceed_stale"
    WAIT = "wait"


class SynchronizationBarrier:
    """Bounded-staleness gate in front of every local update.

    ``iter_required[j]`` counts local updates that needed fresh data from
    neighbour ``j``; ``iter_received[j]`` counts fresh PublicPoses batches
    from ``j``.  Both only grow.  A WAIT is counted as one deferred round and
    after ``max_delayed_iterations`` of them the agent proceeds on the most
    recent data it has.
    """

    def __init__(self, agent_id: int, max_delayed_iterations: int) -> None:
        self.agent_id = int(agent_id)
        self.max_delayed_iterations = int(max_delayed_iterations)
        self._neighbors: Set[int] = set()
        self.iter_received: Dict[int, int] = {}
        self.iter_required: Dict[int, int] = {}
        self._last_iteration: Dict[int, int] = {}
        self._excluded: Set[int] = set()
        self._deferred = 0

    def set_neighbors(self, neighbors: Iterable[int]) -> None:
        self._neighbors = {int(n) for n in neighbors if int(n) != self.agent_id}
        for n in self._neighbors:
            self.iter_received.setdefault(n, 0)
            self.iter_required.setdefault(n, 0)

    @property
    def neighbors(self) -> Set[int]:
        return set(self._neighbors)

    @property
    def deferred_rounds(self) -> int:
        return self._deferred

    def record_public_poses(self, sender: int, iteration: int) -> bool:
        """Return ``True`` when the batch is fresh (newer than any seen from ``sender``)."""
        sender = int(sender)
        if sender not in self._neighbors:
            return False
        if iteration <= self._last_iteration.get(sender, -1):
            logger.debug("[%s] Stale public poses from %s (iteration %s)", self.agent_id, sender, iteration)
            return False
        self._last_iteration[sender] = int(iteration)
        self.iter_received[sender] = self.iter_received.get(sender, 0) + 1
        return True

    def record_local_update(self) -> None:
        for n in self._neighbors:
            self.iter_required[n] = self.iter_required.get(n, 0) + 1

    def lagging(self, active_set: Iterable[int]) -> List[int]:
        active = set(active_set)
        return sorted(
            n for n in self._neighbors
            if n in active and n not in self._excluded
            and self.iter_received.get(n, 0) < self.iter_required.get(n, 0)
        )

    def evaluate(self, active_set: Iterable[int]) -> BarrierDecision:
        behind = self.lagging(active_set)
        if not behind:
            self._deferred = 0
            return BarrierDecision.PROCEED
        if self._deferred >= self.max_delayed_iterations:
            logger.info(
                "[%s] Proceeding with stale data from %s after %d deferred rounds",
                self.agent_id, behind, self._deferred,
            )
            for n in behind:
                self._resync(n)
            self._deferred = 0
            return BarrierDecision.PROCEED_STALE
        self._deferred += 1
        return BarrierDecision.WAIT

    def _resync(self, peer: int) -> None:
        self.iter_required[peer] = self.iter_received.get(peer, 0)

    def exclude(self, peer: int) -> None:
        peer = int(peer)
        if peer in self._neighbors:
            self._excluded.add(peer)

    def readmit(self, peer: int) -> None:
        peer = int(peer)
        if peer in self._excluded:
            self._excluded.discard(peer)
            self._resync(peer)

    def reset(self) -> None:
        for n in self._neighbors:
            self.iter_received[n] = 0
            self.iter_required[n] = 0
        self._last_iteration.clear()
        self._excluded.clear()
        self._deferred = 0
