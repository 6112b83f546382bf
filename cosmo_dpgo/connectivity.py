from __future__ import annotations

from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set
import logging

logger = logging.getLogger("cosmo_dpgo.connectivity")

PeerCallback = Callable[[int], None]


class ConnectivityMonitor:
    """Tracks heartbeat freshness and derives the active set.

    A peer is active while ``now - last_seen <= timeout``; peers never heard
    from are inactive.  Transitions fire ``on_peer_lost`` / ``on_peer_recovered``
    so the barrier can stop (or resume) waiting for that peer.  Agent 0's
    ACTIVE_ROBOTS broadcast, once adopted, is what ``active_robots()`` returns.
    """

    def __init__(
        self,
        agent_id: int,
        timeout: float,
        *,
        on_peer_lost: Optional[PeerCallback] = None,
        on_peer_recovered: Optional[PeerCallback] = None,
    ) -> None:
        self.agent_id = int(agent_id)
        self.timeout = float(timeout)
        self._on_peer_lost = on_peer_lost
        self._on_peer_recovered = on_peer_recovered
        self._last_seen: Dict[int, float] = {}
        self._reachable: Set[int] = set()
        self._adopted: Optional[FrozenSet[int]] = None

    def on_heartbeat(self, agent_id: int, now: float) -> None:
        agent_id = int(agent_id)
        if agent_id == self.agent_id:
            return
        prev = self._last_seen.get(agent_id)
        if prev is not None and now < prev:
            # out-of-order delivery: keep the newest timestamp
            return
        self._last_seen[agent_id] = float(now)
        if agent_id not in self._reachable:
            self._reachable.add(agent_id)
            if prev is not None:
                logger.info("[%s] Peer %s reconnected", self.agent_id, agent_id)
                if self._on_peer_recovered is not None:
                    self._on_peer_recovered(agent_id)

    def tick(self, now: float) -> FrozenSet[int]:
        for peer in sorted(self._reachable):
            if now - self._last_seen[peer] > self.timeout:
                self._reachable.discard(peer)
                logger.warning(
                    "[%s] Peer %s timed out (last seen %.2fs ago)", self.agent_id, peer, now - self._last_seen[peer]
                )
                if self._on_peer_lost is not None:
                    self._on_peer_lost(peer)
        return self.local_view()

    def local_view(self) -> FrozenSet[int]:
        return frozenset({self.agent_id, *self._reachable})

    def is_active(self, agent_id: int) -> bool:
        return int(agent_id) in self.active_robots()

    def adopt(self, active_robots: Iterable[int]) -> None:
        self._adopted = frozenset(int(a) for a in active_robots)

    def active_robots(self) -> FrozenSet[int]:
        if self._adopted is not None:
            return self._adopted
        return self.local_view()

    def last_seen(self, agent_id: int) -> Optional[float]:
        return self._last_seen.get(int(agent_id))

    def has_expired(self, agent_id: int, now: float) -> bool:
        """True when the peer has been silent for longer than the timeout."""
        last = self._last_seen.get(int(agent_id))
        return last is None or now - last > self.timeout

    def reset(self) -> None:
        self._last_seen.clear()
        self._reachable.clear()
        self._adopted = None
