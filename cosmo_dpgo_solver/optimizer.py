"""Local optimiser collaborator consumed by the coordination layer.

``PoseGraphOptimizer`` is the interface the agent dispatcher talks to; the
coordination protocol never looks inside it.  ``LiftedPoseGraphOptimizer`` is
a small numpy reference implementation so that teams can be simulated end to
end without a native solver.  It keeps one lifted pose per local pose,
``X_i = [A_i | b_i]`` with ``A_i`` an ``r x d`` matrix with orthonormal columns,
and takes one projected gradient step with backtracking per ``optimize()``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging
import math
import time
import numpy as np

from .models import (
    EdgeKey,
    RelativeMeasurement,
    has_orthonormal_columns,
    project_to_rotation,
    project_to_stiefel,
)
from .robust import SUPPORTED_KERNELS, robust_weight

logger = logging.getLogger("cosmo_dpgo.solver")


@dataclass
class OptimizerConfig:
    """Numerical settings of the local optimiser.

    ``robust_opt_inner_iters``, ``max_iterations`` and
    ``relative_change_tolerance`` are read by the coordination layer to pace
    weight rounds and termination; the rest only matter to the optimiser.
    """

    dimension: int = 3
    relaxation_rank: int = 5
    step_size: float = 1.0
    max_backtracking: int = 20
    robust_kind: Optional[str] = "gnc_tls"
    robust_threshold: Optional[float] = None
    gnc_mu_init: float = 0.05
    gnc_mu_step: float = 1.4
    robust_opt_inner_iters: int = 10
    max_iterations: int = 500
    relative_change_tolerance: float = 1e-5

    @property
    def robust_enabled(self) -> bool:
        return bool(self.robust_kind)

    def validate(self) -> None:
        if self.dimension not in (2, 3):
            raise ValueError(f"dimension must be 2 or 3, got {self.dimension}")
        if self.relaxation_rank < self.dimension:
            raise ValueError("relaxation_rank must be >= dimension")
        if self.step_size <= 0.0:
            raise ValueError("step_size must be positive")
        if self.max_backtracking < 1:
            raise ValueError("max_backtracking must be >= 1")
        if self.robust_kind and self.robust_kind.lower() not in SUPPORTED_KERNELS:
            raise ValueError(f"Unsupported robust kernel: {self.robust_kind}")
        if self.gnc_mu_init <= 0.0 or self.gnc_mu_step <= 1.0:
            raise ValueError("GNC schedule needs gnc_mu_init > 0 and gnc_mu_step > 1")
        if self.robust_opt_inner_iters < 1:
            raise ValueError("robust_opt_inner_iters must be >= 1")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.relative_change_tolerance < 0.0:
            raise ValueError("relative_change_tolerance must be non-negative")


@dataclass
class OptimizationResult:
    success: bool
    cost_before: float
    cost_after: float
    elapsed_s: float = 0.0

    @property
    def relative_change(self) -> float:
        if not self.success or not math.isfinite(self.cost_before):
            return 0.0
        return (self.cost_before - self.cost_after) / max(abs(self.cost_before), 1e-12)


class PoseGraphOptimizer:
    """Interface of the per-agent optimiser used by the dispatcher."""

    def set_pose_graph(
        self,
        odometry: Iterable[RelativeMeasurement],
        private_loop_closures: Iterable[RelativeMeasurement],
        shared_loop_closures: Iterable[RelativeMeasurement],
    ) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def set_lifting_matrix(self, matrix: np.ndarray) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def get_lifting_matrix(self) -> Optional[np.ndarray]:  # pragma: no cover - interface method
        raise NotImplementedError

    def optimize(self) -> OptimizationResult:  # pragma: no cover - interface method
        raise NotImplementedError

    def get_pose_estimate(self, index: int) -> Optional[np.ndarray]:  # pragma: no cover - interface method
        raise NotImplementedError

    def get_trajectory_in_global_frame(self, anchor: np.ndarray) -> Optional[np.ndarray]:  # pragma: no cover
        raise NotImplementedError

    def update_neighbor_pose(self, owner: int, index: int, pose: np.ndarray) -> None:  # pragma: no cover
        raise NotImplementedError

    def clear_neighbor_poses(self) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def public_pose_indices(self) -> List[int]:  # pragma: no cover - interface method
        raise NotImplementedError

    def neighbors(self) -> Set[int]:  # pragma: no cover - interface method
        raise NotImplementedError

    def num_poses(self) -> int:  # pragma: no cover - interface method
        raise NotImplementedError

    def shared_edges(self) -> List[EdgeKey]:  # pragma: no cover - interface method
        raise NotImplementedError

    def compute_edge_weight(self, key: EdgeKey) -> Optional[float]:  # pragma: no cover - interface method
        raise NotImplementedError

    def set_edge_weight(self, key: EdgeKey, weight: float) -> bool:  # pragma: no cover - interface method
        raise NotImplementedError

    def advance_robust_schedule(self) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def reset(self, complete: bool = False) -> None:  # pragma: no cover - interface method
        raise NotImplementedError


class LiftedPoseGraphOptimizer(PoseGraphOptimizer):
    """Reference optimiser over lifted poses ``[A_i | b_i]`` (numpy only)."""

    def __init__(self, agent_id: int, config: Optional[OptimizerConfig] = None, *, seed: int = 0) -> None:
        self.agent_id = int(agent_id)
        self.config = config or OptimizerConfig()
        self.config.validate()
        self._d = self.config.dimension
        self._r = self.config.relaxation_rank
        self._seed = int(seed)

        self._odometry: List[RelativeMeasurement] = []
        self._private: List[RelativeMeasurement] = []
        self._shared: List[RelativeMeasurement] = []
        self._shared_by_key: Dict[EdgeKey, RelativeMeasurement] = {}
        self._n = 0
        self._graph_loaded = False

        self._Y: Optional[np.ndarray] = None
        self._X: Optional[np.ndarray] = None
        self._neighbor_poses: Dict[Tuple[int, int], np.ndarray] = {}
        self._mu = self.config.gnc_mu_init

    # ------------------------------------------------------------------
    # Graph / lifting matrix
    # ------------------------------------------------------------------
    def set_pose_graph(self, odometry, private_loop_closures, shared_loop_closures) -> None:
        odometry = [m.copy() for m in odometry]
        private_loop_closures = [m.copy() for m in private_loop_closures]
        shared_loop_closures = [m.copy() for m in shared_loop_closures]
        max_index = -1
        for m in [*odometry, *private_loop_closures, *shared_loop_closures]:
            if m.dimension != self._d:
                raise ValueError(f"Measurement {m.key} has dimension {m.dimension}, expected {self._d}")
            if m.r1 == self.agent_id:
                max_index = max(max_index, m.p1)
            if m.r2 == self.agent_id:
                max_index = max(max_index, m.p2)
        self._odometry = odometry
        self._private = private_loop_closures
        self._shared = shared_loop_closures
        self._shared_by_key = {m.key: m for m in shared_loop_closures}
        self._n = max_index + 1
        self._graph_loaded = True
        self._neighbor_poses.clear()
        if self._Y is not None:
            self._initialize()

    def set_lifting_matrix(self, matrix: np.ndarray) -> None:
        Y = np.array(matrix, dtype=float)
        if Y.shape != (self._r, self._d):
            raise ValueError(f"Lifting matrix must be {self._r}x{self._d}, got {Y.shape}")
        if not has_orthonormal_columns(Y):
            raise ValueError("Lifting matrix columns are not orthonormal")
        self._Y = Y
        if self._graph_loaded:
            self._initialize()

    def get_lifting_matrix(self) -> Optional[np.ndarray]:
        if self._Y is None and self.agent_id == 0:
            rng = np.random.default_rng(self._seed)
            q, _ = np.linalg.qr(rng.standard_normal((self._r, self._d)))
            self._Y = q
            if self._graph_loaded:
                self._initialize()
        return None if self._Y is None else self._Y.copy()

    def _initialize(self) -> None:
        """Chain odometry from the identity to seed the local lifted poses."""
        d = self._d
        rotations = [np.eye(d) for _ in range(self._n)]
        translations = [np.zeros(d) for _ in range(self._n)]
        for m in sorted(self._odometry, key=lambda e: e.p1):
            if m.r1 != self.agent_id:
                continue
            rotations[m.p2] = project_to_rotation(rotations[m.p1] @ m.rotation)
            translations[m.p2] = translations[m.p1] + rotations[m.p1] @ m.translation
        X = np.zeros((self._n, self._r, d + 1))
        for i in range(self._n):
            X[i, :, :d] = self._Y @ rotations[i]
            X[i, :, d] = self._Y @ translations[i]
        self._X = X
        logger.debug("[%s] Initialised %d lifted poses from odometry", self.agent_id, self._n)

    @property
    def initialized(self) -> bool:
        return self._X is not None

    # ------------------------------------------------------------------
    # Cost / gradient
    # ------------------------------------------------------------------
    def _edges(self) -> List[RelativeMeasurement]:
        return [*self._odometry, *self._private, *self._shared]

    def _endpoint(self, X: np.ndarray, robot: int, pose: int) -> Optional[np.ndarray]:
        if robot == self.agent_id:
            if 0 <= pose < self._n:
                return X[pose]
            return None
        return self._neighbor_poses.get((robot, pose))

    def _residuals(self, m: RelativeMeasurement, Xi: np.ndarray, Xj: np.ndarray):
        d = self._d
        Ai, bi = Xi[:, :d], Xi[:, d]
        Aj, bj = Xj[:, :d], Xj[:, d]
        err_rot = Aj - Ai @ m.rotation
        err_trans = bj - bi - Ai @ m.translation
        return err_rot, err_trans

    def _cost_of(self, X: np.ndarray) -> float:
        total = 0.0
        for m in self._edges():
            Xi = self._endpoint(X, m.r1, m.p1)
            Xj = self._endpoint(X, m.r2, m.p2)
            if Xi is None or Xj is None:
                continue
            err_rot, err_trans = self._residuals(m, Xi, Xj)
            total += 0.5 * m.weight * (m.kappa * float(np.sum(err_rot * err_rot)) + m.tau * float(err_trans @ err_trans))
        return total

    def cost(self) -> float:
        if self._X is None:
            return float("nan")
        return self._cost_of(self._X)

    def _gradient(self, X: np.ndarray) -> np.ndarray:
        d = self._d
        G = np.zeros_like(X)
        for m in self._edges():
            Xi = self._endpoint(X, m.r1, m.p1)
            Xj = self._endpoint(X, m.r2, m.p2)
            if Xi is None or Xj is None:
                continue
            err_rot, err_trans = self._residuals(m, Xi, Xj)
            w = m.weight
            if m.r2 == self.agent_id:
                G[m.p2, :, :d] += w * m.kappa * err_rot
                G[m.p2, :, d] += w * m.tau * err_trans
            if m.r1 == self.agent_id:
                G[m.p1, :, :d] -= w * m.kappa * err_rot @ m.rotation.T + w * m.tau * np.outer(err_trans, m.translation)
                G[m.p1, :, d] -= w * m.tau * err_trans
        return G

    def _curvature_bound(self) -> float:
        degree = np.zeros(self._n)
        for m in self._edges():
            c = m.weight * (m.kappa + m.tau * (1.0 + float(m.translation @ m.translation)))
            if m.r1 == self.agent_id and m.p1 < self._n:
                degree[m.p1] += c
            if m.r2 == self.agent_id and m.p2 < self._n:
                degree[m.p2] += c
        return max(float(degree.max()) if self._n else 0.0, 1e-9)

    def _retract(self, X: np.ndarray) -> np.ndarray:
        d = self._d
        out = X.copy()
        for i in range(out.shape[0]):
            out[i, :, :d] = project_to_stiefel(out[i, :, :d])
        return out

    def optimize(self) -> OptimizationResult:
        start = time.perf_counter()
        if self._X is None:
            logger.warning("[%s] optimize() called before initialisation", self.agent_id)
            return OptimizationResult(False, float("nan"), float("nan"))
        f0 = self._cost_of(self._X)
        G = self._gradient(self._X)
        if float(np.linalg.norm(G)) < 1e-12:
            return OptimizationResult(True, f0, f0, time.perf_counter() - start)
        alpha = self.config.step_size / self._curvature_bound()
        for _ in range(self.config.max_backtracking):
            candidate = self._retract(self._X - alpha * G)
            f1 = self._cost_of(candidate)
            if f1 < f0:
                self._X = candidate
                return OptimizationResult(True, f0, f1, time.perf_counter() - start)
            alpha *= 0.5
        logger.debug("[%s] Backtracking exhausted; keeping current iterate", self.agent_id)
        return OptimizationResult(False, f0, f0, time.perf_counter() - start)

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------
    def num_poses(self) -> int:
        return self._n

    def get_pose_estimate(self, index: int) -> Optional[np.ndarray]:
        if self._X is None or not (0 <= int(index) < self._n):
            return None
        return self._X[int(index)].copy()

    def get_trajectory_in_global_frame(self, anchor: np.ndarray) -> Optional[np.ndarray]:
        """Return ``n x d x (d+1)`` poses ``[R | t]`` expressed in the anchor frame."""
        if self._X is None:
            return None
        d = self._d
        anchor = np.asarray(anchor, dtype=float)
        if anchor.shape != (self._r, d + 1):
            raise ValueError(f"Anchor must be {self._r}x{d + 1}, got {anchor.shape}")
        Ya, ta = anchor[:, :d], anchor[:, d]
        traj = np.zeros((self._n, d, d + 1))
        for i in range(self._n):
            traj[i, :, :d] = project_to_rotation(Ya.T @ self._X[i, :, :d])
            traj[i, :, d] = Ya.T @ (self._X[i, :, d] - ta)
        return traj

    def update_neighbor_pose(self, owner: int, index: int, pose: np.ndarray) -> None:
        pose = np.asarray(pose, dtype=float)
        if pose.shape != (self._r, self._d + 1):
            raise ValueError(f"Neighbour pose must be {self._r}x{self._d + 1}, got {pose.shape}")
        self._neighbor_poses[(int(owner), int(index))] = pose.copy()

    def clear_neighbor_poses(self) -> None:
        self._neighbor_poses.clear()

    def public_pose_indices(self) -> List[int]:
        indices = set()
        for m in self._shared:
            indices.add(m.p1 if m.r1 == self.agent_id else m.p2)
        return sorted(indices)

    def neighbors(self) -> Set[int]:
        return {m.other_agent(self.agent_id) for m in self._shared}

    # ------------------------------------------------------------------
    # Robust weights
    # ------------------------------------------------------------------
    def shared_edges(self) -> List[EdgeKey]:
        return [m.key for m in self._shared]

    def edge_weight(self, key: EdgeKey) -> Optional[float]:
        """Weight currently applied to a shared loop closure."""
        m = self._shared_by_key.get(tuple(key))
        return None if m is None else m.weight

    def compute_edge_weight(self, key: EdgeKey) -> Optional[float]:
        m = self._shared_by_key.get(tuple(key))
        if m is None:
            return None
        if m.fixed_weight or not self.config.robust_enabled or self._X is None:
            return m.weight
        Xi = self._endpoint(self._X, m.r1, m.p1)
        Xj = self._endpoint(self._X, m.r2, m.p2)
        if Xi is None or Xj is None:
            return m.weight
        err_rot, err_trans = self._residuals(m, Xi, Xj)
        residual_sq = m.kappa * float(np.sum(err_rot * err_rot)) + m.tau * float(err_trans @ err_trans)
        return robust_weight(self.config.robust_kind, residual_sq, self.config.robust_threshold, self._mu)

    def set_edge_weight(self, key: EdgeKey, weight: float) -> bool:
        m = self._shared_by_key.get(tuple(key))
        if m is None:
            return False
        m.weight = float(min(1.0, max(0.0, weight)))
        return True

    def advance_robust_schedule(self) -> None:
        if self.config.robust_kind and self.config.robust_kind.lower() == "gnc_tls":
            self._mu *= self.config.gnc_mu_step

    def reset(self, complete: bool = False) -> None:
        self._neighbor_poses.clear()
        self._mu = self.config.gnc_mu_init
        for m in self._shared:
            if not m.fixed_weight:
                m.weight = 1.0
        if complete:
            self._odometry, self._private, self._shared = [], [], []
            self._shared_by_key = {}
            self._n = 0
            self._graph_loaded = False
            self._Y = None
            self._X = None
        elif self._Y is not None and self._graph_loaded:
            self._initialize()
