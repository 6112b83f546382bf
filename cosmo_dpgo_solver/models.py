from dataclasses import dataclass, replace
from enum import Enum
from typing import Tuple
import numpy as np

EdgeKey = Tuple[int, int, int, int]


class MeasurementKind(str, Enum):
    ODOMETRY = "odometry"
    PRIVATE_LOOP_CLOSURE = "private_loop_closure"
    SHARED_LOOP_CLOSURE = "shared_loop_closure"


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order.

    Why: datasets disagree on ordering; we fix wxyz internally and convert
    at the loader.
    """
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)

    def to_rotation(self) -> np.ndarray:
        q = self.to_numpy()
        n = np.linalg.norm(q)
        if n == 0.0:
            return np.eye(3)
        w, x, y, z = q / n
        return np.array([
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ], dtype=float)


def edge_key(agent_a: int, pose_a: int, agent_b: int, pose_b: int) -> EdgeKey:
    return (int(agent_a), int(pose_a), int(agent_b), int(pose_b))


@dataclass
class RelativeMeasurement:
    """Relative pose measurement from pose (r1, p1) to pose (r2, p2).

    ``kappa`` and ``tau`` are the rotational and translational precisions.
    ``weight`` is the robust weight in [0, 1]; only shared loop closures have
    their weight refined during optimisation.
    """
    r1: int
    p1: int
    r2: int
    p2: int
    rotation: np.ndarray  # d x d
    translation: np.ndarray  # d
    kappa: float = 1.0
    tau: float = 1.0
    weight: float = 1.0
    fixed_weight: bool = False

    def __post_init__(self):
        self.r1, self.p1, self.r2, self.p2 = int(self.r1), int(self.p1), int(self.r2), int(self.p2)
        self.rotation = np.asarray(self.rotation, dtype=float)
        self.translation = np.asarray(self.translation, dtype=float).reshape(-1)
        d = self.rotation.shape[0] if self.rotation.ndim == 2 else -1
        if d not in (2, 3) or self.rotation.shape != (d, d):
            raise ValueError(f"Rotation must be 2x2 or 3x3, got shape {self.rotation.shape}")
        if self.translation.shape != (d,):
            raise ValueError(f"Translation must have {d} elements, got shape {self.translation.shape}")
        self.weight = float(min(1.0, max(0.0, self.weight)))

    @property
    def dimension(self) -> int:
        return self.rotation.shape[0]

    @property
    def key(self) -> EdgeKey:
        return edge_key(self.r1, self.p1, self.r2, self.p2)

    def kind(self) -> MeasurementKind:
        if self.r1 == self.r2:
            if self.p1 + 1 == self.p2:
                return MeasurementKind.ODOMETRY
            return MeasurementKind.PRIVATE_LOOP_CLOSURE
        return MeasurementKind.SHARED_LOOP_CLOSURE

    def involves(self, agent_id: int) -> bool:
        return self.r1 == agent_id or self.r2 == agent_id

    def other_agent(self, agent_id: int) -> int:
        return self.r2 if self.r1 == agent_id else self.r1

    def copy(self) -> "RelativeMeasurement":
        """Independent copy; each agent owns the weights of its own edges."""
        return replace(self, rotation=self.rotation.copy(), translation=self.translation.copy())


def project_to_stiefel(mat: np.ndarray) -> np.ndarray:
    """Closest matrix with orthonormal columns (polar factor)."""
    u, _, vt = np.linalg.svd(mat, full_matrices=False)
    return u @ vt


def project_to_rotation(mat: np.ndarray) -> np.ndarray:
    u, _, vt = np.linalg.svd(mat)
    det = np.linalg.det(u @ vt)
    fix = np.eye(mat.shape[0])
    fix[-1, -1] = 1.0 if det >= 0 else -1.0
    return u @ fix @ vt


def has_orthonormal_columns(mat: np.ndarray, tol: float = 1e-8) -> bool:
    mat = np.asarray(mat, dtype=float)
    if mat.ndim != 2 or mat.shape[0] < mat.shape[1]:
        return False
    gram = mat.T @ mat
    return bool(np.allclose(gram, np.eye(mat.shape[1]), atol=tol))
