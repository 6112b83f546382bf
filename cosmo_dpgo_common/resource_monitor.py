"""Process resource sampling for team runs, broken down by run phase."""
from __future__ import annotations

import json
import logging
import os
import statistics
import threading
import time
from typing import Dict, List, Optional

try:
    import psutil  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    psutil = None

logger = logging.getLogger("cosmo_dpgo.resource")

DEFAULT_INTERVAL = 0.5
METRICS = ("cpu_process_pct", "rss_bytes", "num_threads")


def _interval_from_env() -> Optional[float]:
    raw = os.environ.get("COSMO_RESOURCE_INTERVAL")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring COSMO_RESOURCE_INTERVAL=%r (not a number)", raw)
        return None


def _describe(values: List[float]) -> Dict[str, float]:
    if not values:
        return {}
    out = {
        "min": min(values),
        "max": max(values),
        "mean": statistics.mean(values),
    }
    if len(values) > 1:
        out["stdev"] = statistics.pstdev(values)
    return out


class ResourceMonitor:
    """Samples CPU, RSS and thread count of this process on a background thread.

    Every sample is tagged with the phase set through :meth:`mark`, so a run
    report can separate dataset loading from the optimisation loop and the
    export step.
    """

    def __init__(self, interval: float | None = None):
        if interval is None:
            interval = _interval_from_env()
        if interval is None or interval <= 0.0:
            interval = DEFAULT_INTERVAL
        self.interval = float(interval)
        self.phase = "setup"
        self._samples: List[Dict[str, object]] = []
        self._metadata: Dict[str, object] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._process = None

    @property
    def available(self) -> bool:
        return psutil is not None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self, metadata: Optional[Dict[str, object]] = None) -> None:
        if self.running:
            return
        if metadata:
            self._metadata.update(metadata)
        if psutil is None:
            logger.warning("psutil not available; resource monitoring disabled.")
            return
        self._process = psutil.Process(os.getpid())
        # First cpu_percent call only primes the counter.
        self._process.cpu_percent(None)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cosmo-dpgo-resources", daemon=True)
        self._thread.start()

    def mark(self, phase: str) -> None:
        """Switch the phase recorded on subsequent samples."""
        self.sample()
        self.phase = phase

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.sample()

    def sample(self) -> Optional[Dict[str, object]]:
        if self._process is None:
            return None
        try:
            with self._process.oneshot():
                sample = {
                    "ts": time.time(),
                    "phase": self.phase,
                    "cpu_process_pct": float(self._process.cpu_percent(None)),
                    "rss_bytes": float(self._process.memory_info().rss),
                    "num_threads": float(self._process.num_threads()),
                }
        except psutil.Error as exc:  # pragma: no cover - process vanished
            logger.debug("resource sample failed: %s", exc)
            return None
        with self._lock:
            self._samples.append(sample)
        return sample

    def stop(self) -> None:
        if not self.running:
            return
        self._stop.set()
        self._thread.join(timeout=self.interval * 2)
        self._thread = None
        # Short runs may finish before the first interval elapses.
        self.sample()

    def update_metadata(self, **entries: object) -> None:
        self._metadata.update(entries)

    @property
    def samples(self) -> List[Dict[str, object]]:
        with self._lock:
            return list(self._samples)

    def summary(self) -> Dict[str, object]:
        samples = self.samples
        phases: Dict[str, List[Dict[str, object]]] = {}
        for s in samples:
            phases.setdefault(str(s["phase"]), []).append(s)
        out: Dict[str, object] = {"num_samples": len(samples)}
        for metric in METRICS:
            out[metric] = _describe([float(s[metric]) for s in samples])
        out["by_phase"] = {
            phase: {
                "num_samples": len(group),
                "cpu_process_pct": _describe([float(s["cpu_process_pct"]) for s in group]),
                "rss_max_bytes": max(float(s["rss_bytes"]) for s in group),
            }
            for phase, group in phases.items()
        }
        return out

    def export_json(self, path: str) -> None:
        doc = {
            "metadata": self._metadata,
            "interval_s": self.interval,
            "summary": self.summary(),
            "samples": self.samples,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)

    def log_summary(self, log: logging.Logger) -> None:
        summary = self.summary()
        if not summary["num_samples"]:
            log.info("ResourceMonitor: no samples recorded.")
            return
        cpu = summary["cpu_process_pct"]
        log.info(
            "Resource usage: cpu mean=%.2f%% max=%.2f%% | rss max=%.2f MiB | %d samples over %s",
            cpu.get("mean", 0.0),
            cpu.get("max", 0.0),
            summary["rss_bytes"].get("max", 0.0) / (1024 * 1024),
            summary["num_samples"],
            ", ".join(summary["by_phase"]),
        )
