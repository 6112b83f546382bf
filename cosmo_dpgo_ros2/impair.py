"""Reproducible network impairment for coordination traffic.

Configure via environment variables (set by orchestrator or caller):
- COSMO_IMPAIR: JSON string with impairment spec, or a path to a JSON file.
- COSMO_IMPAIR_OUT_DIR: directory to write ``robustness_metrics.json``.

Spec fields (all optional):
- seed: int (default 42)
- random_loss_p: float (Bernoulli drop per delivery)
- duplicate_p: float (probability a delivered message arrives twice)
- warmup_s: float, no random drops before this many seconds
- blackouts: list of {agent: 1, start_s: 120, end_s: 180, mode: "sender|either"}
- channels: optional list restricting random loss to these channel names

Time is measured on the clock handed to the policy (monotonic perf counter
by default) relative to its value at construction.
"""
from __future__ import annotations

import json
import logging
import math
import os
import random
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("cosmo_dpgo_ros2.impair")


def _read_spec_from_env() -> Optional[Dict[str, Any]]:
    spec_raw = os.environ.get("COSMO_IMPAIR")
    if not spec_raw or not spec_raw.strip():
        return None
    if os.path.exists(spec_raw):
        with open(spec_raw, "r", encoding="utf-8") as f:
            return json.load(f)
    try:
        return json.loads(spec_raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparsable COSMO_IMPAIR value")
        return None


def _safe_float(x: Any, default: float = 0.0) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


class ImpairmentPolicy:
    """Decides per delivery whether a message is dropped or duplicated."""

    def __init__(
        self,
        spec: Optional[Dict[str, Any]],
        *,
        out_dir: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.spec = dict(spec or {})
        self._clock = clock or time.perf_counter
        self.anchor = self._clock()
        self.seed = int(self.spec.get("seed", 42))
        self.rng = random.Random(self.seed)
        self.p_loss = _safe_float(self.spec.get("random_loss_p"), 0.0)
        self.p_duplicate = _safe_float(self.spec.get("duplicate_p"), 0.0)
        self.warmup_s = _safe_float(self.spec.get("warmup_s"), 0.0)
        channels = self.spec.get("channels")
        self.channels = {str(c) for c in channels} if channels else None
        self.blackouts: List[Dict[str, Any]] = []
        for b in self.spec.get("blackouts", []) or []:
            self.add_blackout(
                int(b.get("agent", b.get("rid"))),
                _safe_float(b.get("start_s"), 0.0),
                _safe_float(b.get("end_s"), math.inf),
                mode=str(b.get("mode", "sender")),
            )
        self.out_dir = out_dir or os.environ.get("COSMO_IMPAIR_OUT_DIR")
        self.stats: Dict[str, Any] = {
            "seed": self.seed,
            "random_loss_p": self.p_loss,
            "duplicate_p": self.p_duplicate,
            "drops": {"random": 0, "blackout": 0},
            "duplicates": 0,
            "channels": {},
        }

    @classmethod
    def from_env(cls, *, clock: Optional[Callable[[], float]] = None) -> Optional["ImpairmentPolicy"]:
        spec = _read_spec_from_env()
        if spec is None:
            return None
        return cls(spec, out_dir=os.environ.get("COSMO_IMPAIR_OUT_DIR"), clock=clock)

    def elapsed(self) -> float:
        return self._clock() - self.anchor

    def add_blackout(self, agent: int, start_s: float, end_s: float = math.inf, *, mode: str = "either") -> None:
        """Silence ``agent`` between ``start_s`` and ``end_s`` (seconds since construction)."""
        if mode not in ("sender", "either"):
            raise ValueError(f"Unsupported blackout mode {mode!r}")
        self.blackouts.append({"agent": int(agent), "start_s": start_s, "end_s": end_s, "mode": mode})

    def _is_blackout(self, sender: int, receiver: Optional[int], t: float) -> bool:
        for b in self.blackouts:
            if not (b["start_s"] <= t <= b["end_s"]):
                continue
            if sender == b["agent"]:
                return True
            if b["mode"] == "either" and receiver == b["agent"]:
                return True
        return False

    def on_send(self, *, sender: int, receiver: Optional[int], channel: str) -> Tuple[int, Optional[str]]:
        """Return ``(copies, drop_reason)`` for one delivery.

        ``copies`` is 0 when dropped, 2 when the message is duplicated.
        """
        t = self.elapsed()
        chan = self.stats["channels"].setdefault(channel, {"attempts": 0, "drops": 0, "delivered": 0})
        chan["attempts"] += 1
        if self._is_blackout(int(sender), receiver, t):
            self.stats["drops"]["blackout"] += 1
            chan["drops"] += 1
            return 0, "blackout"
        in_warmup = self.warmup_s > 0.0 and t < self.warmup_s
        lossy = self.channels is None or channel in self.channels
        if lossy and not in_warmup and self.p_loss > 0.0 and self.rng.random() < self.p_loss:
            self.stats["drops"]["random"] += 1
            chan["drops"] += 1
            return 0, "random"
        chan["delivered"] += 1
        if self.p_duplicate > 0.0 and self.rng.random() < self.p_duplicate:
            self.stats["duplicates"] += 1
            return 2, None
        return 1, None

    def export(self) -> Optional[str]:
        if not self.out_dir:
            return None
        for data in self.stats["channels"].values():
            attempts = int(data.get("attempts", 0))
            data["delivery_rate"] = float(data.get("delivered", 0)) / attempts if attempts else None
        os.makedirs(self.out_dir, exist_ok=True)
        path = os.path.join(self.out_dir, "robustness_metrics.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"spec": self.spec, "stats": self.stats}, f, indent=2, default=str)
        return path
