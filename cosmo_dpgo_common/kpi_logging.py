"""KPI logging helpers (common across agents and runners)."""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("cosmo_dpgo.kpi")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    if hasattr(value, "tolist"):
        return value.tolist()
    return value


class KPILogger:
    """Emit structured KPI events as JSON lines.

    Files are opened in append mode so that an agent restarted after a reset
    keeps extending the same log.
    """

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = False,
        clock=time.time,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._clock = clock
        self._fh = None
        self.log_path = log_path
        if log_path:
            parent = os.path.dirname(log_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            self._fh = open(log_path, "a", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": self._clock()}
        payload.update(self._extra)
        payload.update({k: _jsonable(v) for k, v in fields.items() if v is not None})
        line = json.dumps(payload, sort_keys=True)
        if self._emit_to_logger:
            logger.info("KPI %s", line)
        if self._fh:
            self._fh.write(line + "\n")
            self._fh.flush()

    def iteration(
        self,
        iteration: int,
        epoch: int,
        cost_before: float,
        cost_after: float,
        duration_s: float,
        *,
        stale: bool = False,
        success: bool = True,
    ) -> None:
        self._emit(
            "iteration",
            iteration=iteration,
            epoch=epoch,
            cost_before=cost_before,
            cost_after=cost_after,
            duration_s=duration_s,
            stale=stale,
            success=success,
        )

    def weight_round(
        self,
        weight_round: int,
        max_delta: float,
        converged: bool,
        deltas: Optional[Dict[Any, float]] = None,
    ) -> None:
        self._emit(
            "weight_round",
            weight_round=weight_round,
            max_delta=max_delta,
            converged=converged,
            deltas=[[*k, v] for k, v in (deltas or {}).items()],
        )

    def state_change(self, old: str, new: str, **fields: Any) -> None:
        self._emit("state_change", old=old, new=new, **fields)

    def peer_event(self, peer: int, event: str) -> None:
        self._emit("peer", peer=peer, change=event)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
