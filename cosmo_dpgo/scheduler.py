from __future__ import annotations

from typing import Iterable, Optional
import random

from .config import UpdateRule


class Scheduler:
    """Chooses which active agent performs the next update."""

    def select_next(self, active_set: Iterable[int], last_executed: Optional[int]) -> int:  # pragma: no cover - interface method
        raise NotImplementedError


class RoundRobinScheduler(Scheduler):
    """Cyclic ascending AgentID order over the current active set."""

    def select_next(self, active_set: Iterable[int], last_executed: Optional[int]) -> int:
        ordered = sorted(set(active_set))
        if not ordered:
            raise ValueError("Cannot schedule over an empty active set")
        if last_executed is None:
            return ordered[0]
        for agent in ordered:
            if agent > last_executed:
                return agent
        return ordered[0]


class UniformScheduler(Scheduler):
    """Uniform draw from the active set.

    With ``exclude_self`` the caller (``last_executed``) is skipped unless it is
    the only active agent.
    """

    def __init__(self, seed: Optional[int] = None, *, exclude_self: bool = False) -> None:
        self._rng = random.Random(seed)
        self.exclude_self = exclude_self

    def select_next(self, active_set: Iterable[int], last_executed: Optional[int]) -> int:
        ordered = sorted(set(active_set))
        if not ordered:
            raise ValueError("Cannot schedule over an empty active set")
        if self.exclude_self and last_executed is not None and len(ordered) > 1:
            ordered = [a for a in ordered if a != last_executed]
        return self._rng.choice(ordered)


def make_scheduler(rule, seed: Optional[int] = None) -> Scheduler:
    rule = UpdateRule.parse(rule)
    if rule is UpdateRule.UNIFORM:
        return UniformScheduler(seed)
    return RoundRobinScheduler()
