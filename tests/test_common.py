"""Tests for KPI logging, bandwidth accounting and resource monitoring."""

import json
import logging

import pytest

from cosmo_dpgo.messages import AgentState, Status
from cosmo_dpgo_common.bandwidth import BandwidthTracker, message_bytes
from cosmo_dpgo_common.kpi_logging import KPILogger
from cosmo_dpgo_common.resource_monitor import ResourceMonitor


def _read(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


class TestKPILogger:
    """JSON-lines event log."""

    def test_iteration_event(self, tmp_path):
        path = tmp_path / "logs" / "agent_1_iterations.jsonl"
        kpi = KPILogger(extra_fields={"agent": 1}, log_path=str(path), clock=lambda: 2.5)
        kpi.iteration(3, 7, 10.0, 9.0, 0.01, stale=True)
        kpi.close()
        (event,) = _read(path)
        assert event["event"] == "iteration"
        assert event["agent"] == 1
        assert event["epoch"] == 7
        assert event["stale"] is True
        assert event["ts"] == 2.5

    def test_append_mode_and_none_fields(self, tmp_path):
        path = tmp_path / "kpi.jsonl"
        first = KPILogger(log_path=str(path))
        first.state_change("IDLE", "POSEGRAPH_LOADED", iteration=None)
        first.close()
        second = KPILogger(log_path=str(path))
        second.weight_round(1, 0.5, False, {(0, 1, 1, 2): 0.5})
        second.close()
        events = _read(path)
        assert [e["event"] for e in events] == ["state_change", "weight_round"]
        assert "iteration" not in events[0]
        assert events[1]["deltas"] == [[0, 1, 1, 2, 0.5]]

    def test_disabled_logger_writes_nothing(self, tmp_path):
        path = tmp_path / "kpi.jsonl"
        kpi = KPILogger(enabled=False, log_path=str(path))
        kpi.peer_event(2, "lost")
        kpi.close()
        assert _read(path) == []

    def test_emit_to_logger(self, caplog):
        kpi = KPILogger(emit_to_logger=True)
        with caplog.at_level(logging.INFO, logger="cosmo_dpgo.kpi"):
            kpi.peer_event(2, "recovered")
        assert "recovered" in caplog.text


class TestBandwidth:
    def test_counts_and_export(self, tmp_path):
        tracker = BandwidthTracker()
        size = message_bytes(Status(agent_id=0, iteration=0, state=AgentState.IDLE))
        tracker.add_uplink("status", size)
        tracker.add_uplink("status", size)
        tracker.add_downlink("status", size)
        assert tracker.uplink["status"] == {"messages": 2, "bytes": 2 * size}
        out = tmp_path / "bw.json"
        tracker.export_json(str(out))
        with open(out, encoding="utf-8") as f:
            doc = json.load(f)
        assert doc["downlink"]["status"]["messages"] == 1
        assert doc["totals"]["uplink"] == {"messages": 2, "bytes": 2 * size}
        assert doc["per_agent"] == {}

    def test_per_agent_split(self):
        tracker = BandwidthTracker()
        tracker.add_uplink("command", 10, agent_id=0)
        tracker.add_uplink("status", 4, agent_id=1)
        tracker.add_downlink("command", 10, agent_id=1)
        assert tracker.agent_totals(0) == {"uplink": {"messages": 1, "bytes": 10}, "downlink": {"messages": 0, "bytes": 0}}
        assert tracker.agent_totals(1)["downlink"]["bytes"] == 10
        assert set(tracker.summary()["per_agent"]) == {"0", "1"}


class TestResourceMonitor:
    def test_start_stop_summary(self, tmp_path):
        monitor = ResourceMonitor(0.05)
        monitor.start({"run": "test"})
        monitor.stop()
        summary = monitor.summary()
        if monitor.available:
            assert summary["num_samples"] >= 1
        out = tmp_path / "resources.json"
        monitor.export_json(str(out))
        with open(out, encoding="utf-8") as f:
            assert json.load(f)["metadata"] == {"run": "test"}

    def test_samples_tagged_by_phase(self):
        monitor = ResourceMonitor(10.0)
        monitor.start()
        monitor.mark("optimize")
        monitor.stop()
        if not monitor.available:
            pytest.skip("psutil not installed")
        summary = monitor.summary()
        assert set(summary["by_phase"]) == {"setup", "optimize"}
        assert summary["by_phase"]["optimize"]["num_samples"] == 1
        assert not monitor.running

    def test_interval_from_env(self, monkeypatch):
        monkeypatch.setenv("COSMO_RESOURCE_INTERVAL", "2.0")
        assert ResourceMonitor().interval == 2.0
        monkeypatch.setenv("COSMO_RESOURCE_INTERVAL", "bogus")
        assert ResourceMonitor().interval == 0.5
