"""Bootstrap protocol: common lifting matrix, distributed initialisation, anchor.

Agent 0 owns the canonical lifting matrix and the anchor.  Every other agent
queries the matrix once (blocking, with a timeout), verifies it, and then
completes a handshake with its already-initialised neighbours before it
starts optimising.
"""
from __future__ import annotations

from typing import Any, Optional
import logging
import numpy as np

from cosmo_dpgo_solver.models import has_orthonormal_columns
from cosmo_dpgo_solver.optimizer import PoseGraphOptimizer

from .communication import MessageBus, RequestTimeout
from .messages import (
    Anchor,
    AnchorRequest,
    LiftingMatrixRequest,
    LiftingMatrixResponse,
)

logger = logging.getLogger("cosmo_dpgo.bootstrap")

ROOT_AGENT = 0


class BootstrapError(RuntimeError):
    """The lifting matrix could not be obtained; the agent cannot continue."""


class InitializationFailed(RuntimeError):
    """Handshake budget exhausted without acknowledgment (recoverable)."""


class BootstrapCoordinator:
    def __init__(
        self,
        agent_id: int,
        bus: MessageBus,
        optimizer: PoseGraphOptimizer,
        *,
        relaxation_rank: int,
        dimension: int,
        lifting_matrix_timeout: float = 5.0,
        max_init_steps: int = 30,
    ) -> None:
        self.agent_id = int(agent_id)
        self.bus = bus
        self.optimizer = optimizer
        self.relaxation_rank = int(relaxation_rank)
        self.dimension = int(dimension)
        self.lifting_matrix_timeout = float(lifting_matrix_timeout)
        self.max_init_steps = int(max_init_steps)

        self.lifting_matrix: Optional[np.ndarray] = None
        self.anchor: Optional[Anchor] = None
        self.attempts = 0
        self.acknowledged = False
        self.acknowledged_by: Optional[int] = None

    @property
    def is_root(self) -> bool:
        return self.agent_id == ROOT_AGENT

    # ------------------------------------------------------------------
    # Lifting matrix
    # ------------------------------------------------------------------
    def acquire_lifting_matrix(self) -> np.ndarray:
        """Obtain, verify and install the team's lifting matrix.

        Raises :class:`BootstrapError` if agent 0 does not answer in time,
        refuses, or answers with a matrix of the wrong shape.
        """
        if self.is_root:
            matrix = self.optimizer.get_lifting_matrix()
            if matrix is None:
                raise BootstrapError(f"[{self.agent_id}] root optimiser has no lifting matrix")
        else:
            request = LiftingMatrixRequest(requester=self.agent_id, owner=ROOT_AGENT)
            try:
                response = self.bus.request(self.agent_id, ROOT_AGENT, request, self.lifting_matrix_timeout)
            except RequestTimeout as exc:
                raise BootstrapError(f"[{self.agent_id}] failed to query lifting matrix: {exc}") from exc
            if not isinstance(response, LiftingMatrixResponse) or not response.success or response.matrix is None:
                raise BootstrapError(f"[{self.agent_id}] agent {ROOT_AGENT} refused the lifting matrix query")
            matrix = np.asarray(response.matrix, dtype=float)
        expected = (self.relaxation_rank, self.dimension)
        if matrix.shape != expected:
            raise BootstrapError(
                f"[{self.agent_id}] lifting matrix has shape {matrix.shape}, expected {expected}"
            )
        if not has_orthonormal_columns(matrix):
            raise BootstrapError(f"[{self.agent_id}] lifting matrix columns are not orthonormal")
        self.optimizer.set_lifting_matrix(matrix)
        self.lifting_matrix = matrix.copy()
        logger.info("[%s] Lifting matrix installed", self.agent_id)
        return matrix

    def answer(self, payload: Any) -> Any:
        """Responder for the request channel (only meaningful on agent 0)."""
        if isinstance(payload, LiftingMatrixRequest):
            if not self.is_root or payload.owner != self.agent_id:
                logger.warning(
                    "[%s] Refusing lifting matrix query from %s addressed to %s",
                    self.agent_id, payload.requester, payload.owner,
                )
                return LiftingMatrixResponse(owner=self.agent_id, matrix=None, success=False)
            matrix = self.optimizer.get_lifting_matrix()
            if matrix is None:
                return LiftingMatrixResponse(owner=self.agent_id, matrix=None, success=False)
            return LiftingMatrixResponse(owner=self.agent_id, matrix=matrix, success=True)
        if isinstance(payload, AnchorRequest):
            if not self.is_root or payload.owner != self.agent_id or self.anchor is None:
                return None
            return Anchor(owner=self.anchor.owner, pose=self.anchor.pose, iteration=self.anchor.iteration)
        logger.warning("[%s] Unsupported request payload %s", self.agent_id, type(payload).__name__)
        return None

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------
    def begin_handshake(self) -> None:
        self.attempts = 0
        self.acknowledged = False
        self.acknowledged_by = None

    def acknowledge(self, source: int) -> None:
        if not self.acknowledged:
            logger.info("[%s] Initialisation acknowledged by %s", self.agent_id, source)
        self.acknowledged = True
        self.acknowledged_by = int(source)

    def attempt(self) -> bool:
        """One handshake step; ``True`` once acknowledged.

        Raises :class:`InitializationFailed` when the budget is spent.
        """
        if self.acknowledged:
            return True
        self.attempts += 1
        if self.attempts > self.max_init_steps:
            raise InitializationFailed(
                f"[{self.agent_id}] no acknowledgment after {self.max_init_steps} initialisation steps"
            )
        return False

    # ------------------------------------------------------------------
    # Anchor
    # ------------------------------------------------------------------
    def make_anchor(self, iteration: int) -> Optional[Anchor]:
        if not self.is_root:
            return None
        pose = self.optimizer.get_pose_estimate(0)
        if pose is None:
            return None
        self.anchor = Anchor(owner=self.agent_id, pose=pose, iteration=int(iteration))
        return self.anchor

    def store_anchor(self, anchor: Anchor) -> bool:
        if anchor.owner != ROOT_AGENT:
            logger.warning("[%s] Ignoring anchor from non-root agent %s", self.agent_id, anchor.owner)
            return False
        if self.anchor is not None and anchor.iteration < self.anchor.iteration:
            return False
        self.anchor = anchor
        return True

    def query_anchor(self) -> Optional[Anchor]:
        """Ask agent 0 for its anchor; failures are logged, never fatal."""
        if self.is_root:
            return self.anchor
        try:
            response = self.bus.request(
                self.agent_id, ROOT_AGENT, AnchorRequest(requester=self.agent_id), self.lifting_matrix_timeout
            )
        except RequestTimeout as exc:
            logger.warning("[%s] Anchor query failed: %s", self.agent_id, exc)
            return None
        if isinstance(response, Anchor) and self.store_anchor(response):
            return self.anchor
        return None

    def reset(self, complete: bool = False) -> None:
        self.begin_handshake()
        self.anchor = None
        if complete:
            self.lifting_matrix = None
