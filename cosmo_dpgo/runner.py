from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set
import logging
import math
import numpy as np

from cosmo_dpgo_solver.loader import TeamDataset
from cosmo_dpgo_solver.optimizer import LiftedPoseGraphOptimizer, PoseGraphOptimizer
from cosmo_dpgo_common.bandwidth import BandwidthTracker
from cosmo_dpgo_ros2.impair import ImpairmentPolicy

from .agents import PGOAgentCoordinator
from .bootstrap import BootstrapError
from .communication import InProcessBus
from .config import CoordinationConfig

logger = logging.getLogger("cosmo_dpgo.runner")


class ManualClock:
    """Simulated clock advanced explicitly by the runner."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> float:
        self.now += float(dt)
        return self.now


@dataclass
class TeamRunResult:
    """Aggregated output of an in-process team run."""

    ticks: int
    terminated: bool
    latest_epoch: int
    trajectories: Dict[int, np.ndarray] = field(default_factory=dict)
    summaries: Dict[int, Dict[str, object]] = field(default_factory=dict)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        costs = [s.get("cost") for s in self.summaries.values()]
        return float(sum(c for c in costs if isinstance(c, float) and math.isfinite(c)))


class TeamRunner:
    """High-level orchestrator running a whole team on one process.

    Usage pattern:

    ```python
    runner = TeamRunner(make_synthetic_team(3, 20), CoordinationConfig())
    result = runner.run(max_ticks=2000)
    trajectories = result.trajectories
    ```

    Each tick every online agent drains its mailbox and ticks once, then the
    simulated clock advances by ``tick_period`` seconds.
    """

    def __init__(
        self,
        dataset: TeamDataset,
        config: Optional[CoordinationConfig] = None,
        *,
        tick_period: float = 0.1,
        impairment: Optional[ImpairmentPolicy] = None,
        bandwidth: Optional[BandwidthTracker] = None,
        optimizer_factory: Optional[Callable[[int], PoseGraphOptimizer]] = None,
        preload: bool = False,
        clock: Optional[ManualClock] = None,
    ) -> None:
        self.dataset = dataset
        self.config = config or CoordinationConfig()
        if self.config.optimizer.dimension != dataset.dimension:
            raise ValueError(
                f"Dataset dimension {dataset.dimension} does not match optimiser dimension "
                f"{self.config.optimizer.dimension}"
            )
        self.tick_period = float(tick_period)
        self.clock = clock or ManualClock()
        self.bus = InProcessBus(range(dataset.num_robots), impairment=impairment, bandwidth=bandwidth)
        self.failed: Dict[int, str] = {}
        self.ticks = 0

        factory = optimizer_factory or (
            lambda rid: LiftedPoseGraphOptimizer(rid, self.config.optimizer, seed=self.config.seed)
        )
        self.agents: Dict[int, PGOAgentCoordinator] = {}
        for rid in range(dataset.num_robots):
            self.agents[rid] = PGOAgentCoordinator(
                rid,
                self.bus,
                factory(rid),
                self.config,
                clock=self.clock,
                pose_graph_source=dataset.measurements_for,
            )
            if preload:
                self.agents[rid].load_pose_graph(dataset.measurements_for(rid))

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------
    def crash(self, agent_id: int) -> None:
        logger.info("Crashing agent %s", agent_id)
        self.bus.set_online(agent_id, False)

    def restart(self, agent_id: int) -> None:
        logger.info("Restarting agent %s", agent_id)
        self.bus.set_online(agent_id, True)

    def online_agents(self) -> List[int]:
        return [rid for rid in self.agents if self.bus.is_online(rid) and rid not in self.failed]

    # ------------------------------------------------------------------
    def step(self) -> None:
        for rid in self.online_agents():
            try:
                self.agents[rid].spin_once()
            except BootstrapError as exc:
                logger.error("Agent %s shut down: %s", rid, exc)
                self.failed[rid] = str(exc)
        self.clock.advance(self.tick_period)
        self.ticks += 1

    def finished(self, agents: Optional[Iterable[int]] = None) -> bool:
        ids: Set[int] = set(agents) if agents is not None else set(self.online_agents())
        return all(self.agents[rid].terminated for rid in ids)

    def run(self, max_ticks: int = 5000) -> TeamRunResult:
        for _ in range(int(max_ticks)):
            if self.finished():
                break
            self.step()
        else:
            logger.warning("Team did not terminate within %d ticks", max_ticks)
        self.bus.close()
        return self.result()

    def result(self) -> TeamRunResult:
        trajectories = {
            rid: agent.final_trajectory for rid, agent in self.agents.items() if agent.final_trajectory is not None
        }
        root = self.agents.get(0)
        return TeamRunResult(
            ticks=self.ticks,
            terminated=self.finished(),
            latest_epoch=root.latest_epoch if root is not None else 0,
            trajectories=trajectories,
            summaries={rid: agent.summary() for rid, agent in self.agents.items()},
            failed=dict(self.failed),
        )
