"""Bandwidth accounting for coordination traffic (common).

Byte counts use the same encoder as the ROS 2 transport so that in-process
runs report what ``ros2 topic bw`` would show for the coordination topics.
Traffic is kept per channel and, when the caller names the agent, per agent
as well: uplink is charged to the sender, downlink to the receiver.
"""
from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Dict, Optional

Counter = Dict[str, int]


def message_bytes(msg: Any) -> int:
    """Serialized payload size for a single coordination message."""
    from cosmo_dpgo_ros2.codec import encode_message

    return len(encode_message(msg))


def _counter() -> Counter:
    return {"messages": 0, "bytes": 0}


def _charge(bucket: Counter, size_bytes: int) -> None:
    bucket["messages"] += 1
    bucket["bytes"] += int(size_bytes)


class BandwidthTracker:
    """Message and byte counts per channel, split into uplink and downlink."""

    def __init__(self):
        self._channels = {"uplink": defaultdict(_counter), "downlink": defaultdict(_counter)}
        self._agents = {"uplink": defaultdict(_counter), "downlink": defaultdict(_counter)}

    def _record(self, direction: str, channel: str, size_bytes: int, agent_id: Optional[int]) -> None:
        _charge(self._channels[direction][channel], size_bytes)
        if agent_id is not None:
            _charge(self._agents[direction][int(agent_id)], size_bytes)

    def add_uplink(self, channel: str, size_bytes: int, agent_id: Optional[int] = None) -> None:
        self._record("uplink", channel, size_bytes, agent_id)

    def add_downlink(self, channel: str, size_bytes: int, agent_id: Optional[int] = None) -> None:
        self._record("downlink", channel, size_bytes, agent_id)

    @property
    def uplink(self) -> Dict[str, Counter]:
        return dict(self._channels["uplink"])

    @property
    def downlink(self) -> Dict[str, Counter]:
        return dict(self._channels["downlink"])

    def agent_totals(self, agent_id: int) -> Dict[str, Counter]:
        return {
            direction: dict(self._agents[direction].get(int(agent_id), _counter()))
            for direction in ("uplink", "downlink")
        }

    def totals(self) -> Dict[str, Counter]:
        out = {}
        for direction, channels in self._channels.items():
            total = _counter()
            for bucket in channels.values():
                total["messages"] += bucket["messages"]
                total["bytes"] += bucket["bytes"]
            out[direction] = total
        return out

    def summary(self) -> Dict[str, Any]:
        return {
            "uplink": self.uplink,
            "downlink": self.downlink,
            "totals": self.totals(),
            "per_agent": {
                str(aid): self.agent_totals(aid)
                for aid in sorted(set(self._agents["uplink"]) | set(self._agents["downlink"]))
            },
        }

    def export_json(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.summary(), f, indent=2)

    def log_summary(self, logger) -> None:
        totals = self.totals()
        if not totals["uplink"]["messages"] and not totals["downlink"]["messages"]:
            logger.info("BandwidthTracker: no traffic recorded.")
            return
        for direction in ("uplink", "downlink"):
            for channel, stats in sorted(self._channels[direction].items()):
                logger.info("%s %s: %d msgs, %.3f kB", direction, channel, stats["messages"], stats["bytes"] / 1024.0)
        logger.info(
            "Coordination traffic: %d msgs up (%.3f kB), %d msgs down (%.3f kB)",
            totals["uplink"]["messages"],
            totals["uplink"]["bytes"] / 1024.0,
            totals["downlink"]["messages"],
            totals["downlink"]["bytes"] / 1024.0,
        )
