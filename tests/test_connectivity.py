"""Tests for heartbeat-based liveness tracking."""

from cosmo_dpgo.connectivity import ConnectivityMonitor


class TestConnectivityMonitor:
    """Active set derivation from heartbeats."""

    def test_unseen_peers_are_inactive(self):
        mon = ConnectivityMonitor(0, timeout=15.0)
        assert mon.local_view() == frozenset({0})
        assert mon.last_seen(1) is None

    def test_timeout_excludes_then_heartbeat_recovers(self):
        lost, recovered = [], []
        mon = ConnectivityMonitor(0, timeout=15.0, on_peer_lost=lost.append, on_peer_recovered=recovered.append)
        mon.on_heartbeat(1, 0.0)
        mon.on_heartbeat(2, 0.0)
        assert mon.tick(15.0) == frozenset({0, 1, 2})

        mon.on_heartbeat(2, 10.0)
        assert mon.tick(15.5) == frozenset({0, 2})
        assert lost == [1]

        mon.on_heartbeat(1, 16.0)
        assert mon.local_view() == frozenset({0, 1, 2})
        assert recovered == [1]

    def test_first_heartbeat_is_not_a_recovery(self):
        recovered = []
        mon = ConnectivityMonitor(0, timeout=1.0, on_peer_recovered=recovered.append)
        mon.on_heartbeat(3, 0.0)
        assert recovered == []

    def test_out_of_order_heartbeat_keeps_newest(self):
        mon = ConnectivityMonitor(0, timeout=5.0)
        mon.on_heartbeat(1, 5.0)
        mon.on_heartbeat(1, 3.0)
        assert mon.last_seen(1) == 5.0

    def test_own_heartbeat_ignored(self):
        mon = ConnectivityMonitor(2, timeout=5.0)
        mon.on_heartbeat(2, 1.0)
        assert mon.last_seen(2) is None
        assert mon.local_view() == frozenset({2})

    def test_adopted_set_overrides_local_view(self):
        mon = ConnectivityMonitor(1, timeout=5.0)
        mon.on_heartbeat(0, 0.0)
        mon.adopt([0, 1, 3])
        assert mon.active_robots() == frozenset({0, 1, 3})
        assert mon.is_active(3)
        assert mon.local_view() == frozenset({0, 1})

    def test_reset_forgets_everything(self):
        mon = ConnectivityMonitor(1, timeout=5.0)
        mon.on_heartbeat(0, 0.0)
        mon.adopt([0, 1])
        mon.reset()
        assert mon.active_robots() == frozenset({1})
        assert mon.last_seen(0) is None
