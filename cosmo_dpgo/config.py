"""Coordination settings shared by every agent in a run."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional
import logging
import os

from cosmo_dpgo_solver.optimizer import OptimizerConfig

logger = logging.getLogger("cosmo_dpgo.config")


class UpdateRule(str, Enum):
    UNIFORM = "Uniform"
    ROUND_ROBIN = "RoundRobin"

    @classmethod
    def parse(cls, value) -> "UpdateRule":
        if isinstance(value, cls):
            return value
        norm = str(value).replace("_", "").replace("-", "").lower()
        for rule in cls:
            if rule.value.lower() == norm:
                return rule
        raise ValueError(f"Unsupported update rule {value!r}")


@dataclass
class CoordinationConfig:
    """Protocol knobs; numerical settings live in ``optimizer``.

    Times are in seconds and are measured on the clock the agent is given,
    so a simulated clock makes every timeout deterministic.
    """

    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    update_rule: UpdateRule = UpdateRule.ROUND_ROBIN
    publish_iterate: bool = True
    complete_reset: bool = False
    max_distributed_init_steps: int = 30
    max_delayed_iterations: int = 3
    weight_convergence_threshold: float = 1e-6
    inter_update_sleep_time: float = 0.0
    timeout_threshold: float = 15.0
    settle_delay: float = 3.0
    lifting_matrix_timeout: float = 5.0
    seed: int = 0
    log_dir: Optional[str] = None

    def __post_init__(self):
        self.update_rule = UpdateRule.parse(self.update_rule)

    def validate(self) -> None:
        self.optimizer.validate()
        if self.max_distributed_init_steps < 1:
            raise ValueError("max_distributed_init_steps must be >= 1")
        if self.max_delayed_iterations < 0:
            raise ValueError("max_delayed_iterations must be >= 0")
        if self.weight_convergence_threshold <= 0.0:
            raise ValueError("weight_convergence_threshold must be positive")
        for name in ("inter_update_sleep_time", "settle_delay"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be non-negative")
        for name in ("timeout_threshold", "lifting_matrix_timeout"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoordinationConfig":
        """Build from a flat or nested mapping; unknown keys raise ``ValueError``."""
        data = dict(data or {})
        opt_names = {f.name for f in fields(OptimizerConfig)}
        own_names = {f.name for f in fields(cls)} - {"optimizer"}
        opt_kwargs = dict(data.pop("optimizer", {}) or {})
        own_kwargs = {}
        for key, value in data.items():
            if key in own_names:
                own_kwargs[key] = value
            elif key in opt_names:
                opt_kwargs[key] = value
            else:
                raise ValueError(f"Unknown configuration key {key!r}")
        cfg = cls(optimizer=OptimizerConfig(**opt_kwargs), **own_kwargs)
        cfg.validate()
        return cfg

    def apply_env(self) -> "CoordinationConfig":
        """Honour ``COSMO_RUN_SEED`` the way the rest of the tooling does."""
        seed_env = os.environ.get("COSMO_RUN_SEED")
        if seed_env:
            try:
                self.seed = int(seed_env)
            except ValueError:
                logger.warning("Ignoring non-integer COSMO_RUN_SEED=%r", seed_env)
        return self
