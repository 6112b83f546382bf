"""Tests for executor selection rules."""

from collections import Counter

import pytest

from cosmo_dpgo.config import UpdateRule
from cosmo_dpgo.scheduler import RoundRobinScheduler, UniformScheduler, make_scheduler


class TestRoundRobin:
    """Cyclic ascending order over the active set."""

    def test_cycles_in_ascending_order(self):
        sched = RoundRobinScheduler()
        active = {0, 1, 2}
        picks, last = [], None
        for _ in range(4):
            last = sched.select_next(active, last)
            picks.append(last)
        assert picks == [0, 1, 2, 0]

    def test_skips_departed_agents(self):
        sched = RoundRobinScheduler()
        active = {0, 2}
        picks, last = [], 0
        for _ in range(4):
            last = sched.select_next(active, last)
            picks.append(last)
        assert picks == [2, 0, 2, 0]

    def test_last_executor_not_in_active_set(self):
        assert RoundRobinScheduler().select_next({0, 2}, 1) == 2
        assert RoundRobinScheduler().select_next({0, 2}, 5) == 0

    def test_empty_active_set(self):
        with pytest.raises(ValueError):
            RoundRobinScheduler().select_next(set(), None)


class TestUniform:
    """Random draw over the active set."""

    def test_fair_over_many_trials(self):
        sched = UniformScheduler(seed=7)
        counts = Counter(sched.select_next({0, 1, 2, 3}, None) for _ in range(10000))
        assert set(counts) == {0, 1, 2, 3}
        for agent in range(4):
            assert abs(counts[agent] - 2500) < 300

    def test_only_active_agents_drawn(self):
        sched = UniformScheduler(seed=1)
        draws = {sched.select_next({1, 4}, 1) for _ in range(200)}
        assert draws == {1, 4}

    def test_exclude_self(self):
        sched = UniformScheduler(seed=3, exclude_self=True)
        assert all(sched.select_next({0, 1}, 1) == 0 for _ in range(50))
        assert sched.select_next({1}, 1) == 1

    def test_same_seed_same_sequence(self):
        a, b = UniformScheduler(seed=11), UniformScheduler(seed=11)
        assert [a.select_next(range(5), None) for _ in range(20)] == [b.select_next(range(5), None) for _ in range(20)]


class TestFactory:
    def test_rule_parsing(self):
        assert isinstance(make_scheduler("RoundRobin"), RoundRobinScheduler)
        assert isinstance(make_scheduler("round_robin"), RoundRobinScheduler)
        assert isinstance(make_scheduler(UpdateRule.UNIFORM, seed=0), UniformScheduler)
        with pytest.raises(ValueError):
            make_scheduler("greedy")
