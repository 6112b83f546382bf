import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import numpy as np

from .models import Quaternion, RelativeMeasurement, project_to_rotation

logger = logging.getLogger("cosmo_dpgo.loader")


@dataclass
class LoaderConfig:
    quaternion_order: str = "wxyz"   # used when a measurement stores "q" instead of "R"
    validate_schema: bool = True


@dataclass
class TeamDataset:
    """Multi-robot pose graph: every measurement is tagged with both robot IDs."""

    dimension: int
    num_robots: int
    measurements: List[RelativeMeasurement] = field(default_factory=list)
    ground_truth: Dict[int, np.ndarray] = field(default_factory=dict)

    def measurements_for(self, agent_id: int) -> List[RelativeMeasurement]:
        return [m.copy() for m in self.measurements if m.involves(agent_id)]


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if len(q) != 4:
        raise ValueError(f"Quaternion must have 4 elements, got {len(q)}")
    if order == "wxyz":
        return Quaternion(q[0], q[1], q[2], q[3])
    if order == "xyzw":
        return Quaternion(q[3], q[0], q[1], q[2])
    raise ValueError(f"Unsupported quaternion order: {order}")


def measurement_from_dict(entry: Dict[str, Any], cfg: Optional[LoaderConfig] = None) -> RelativeMeasurement:
    cfg = cfg or LoaderConfig()
    if "R" in entry:
        rotation = np.asarray(entry["R"], dtype=float)
    elif "q" in entry:
        rotation = _q_from_list(list(map(float, entry["q"])), cfg.quaternion_order).to_rotation()
    elif "theta" in entry:
        c, s = math.cos(float(entry["theta"])), math.sin(float(entry["theta"]))
        rotation = np.array([[c, -s], [s, c]])
    else:
        raise ValueError("Measurement needs one of 'R', 'q' or 'theta'")
    return RelativeMeasurement(
        r1=entry["r1"],
        p1=entry["p1"],
        r2=entry["r2"],
        p2=entry["p2"],
        rotation=rotation,
        translation=entry["t"],
        kappa=float(entry.get("kappa", 1.0)),
        tau=float(entry.get("tau", 1.0)),
        weight=float(entry.get("weight", 1.0)),
        fixed_weight=bool(entry.get("fixed_weight", False)),
    )


def measurement_to_dict(m: RelativeMeasurement) -> Dict[str, Any]:
    return {
        "r1": m.r1, "p1": m.p1, "r2": m.r2, "p2": m.p2,
        "R": m.rotation.tolist(),
        "t": m.translation.tolist(),
        "kappa": m.kappa, "tau": m.tau,
        "weight": m.weight, "fixed_weight": m.fixed_weight,
    }


def load_team_dataset(path: str, cfg: Optional[LoaderConfig] = None) -> TeamDataset:
    cfg = cfg or LoaderConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    raw = data.get("measurements", [])
    if cfg.validate_schema and not isinstance(raw, list):
        raise ValueError(f"'measurements' must be a list; got {type(raw).__name__}")
    measurements = []
    skipped = 0
    for entry in raw:
        try:
            measurements.append(measurement_from_dict(entry, cfg))
        except (KeyError, TypeError, ValueError) as exc:
            skipped += 1
            logger.warning("Skipping malformed measurement %s: %s", entry, exc)
    if not measurements:
        raise ValueError(f"No usable measurements in {path}")
    dimension = int(data.get("dimension", measurements[0].dimension))
    robots = {m.r1 for m in measurements} | {m.r2 for m in measurements}
    num_robots = int(data.get("num_robots", max(robots) + 1))
    ground_truth = {int(k): np.asarray(v, dtype=float) for k, v in (data.get("ground_truth") or {}).items()}
    logger.info("Loaded %d measurements for %d robots from %s (%d skipped)",
                len(measurements), num_robots, path, skipped)
    return TeamDataset(dimension, num_robots, measurements, ground_truth)


def save_team_dataset(dataset: TeamDataset, path: str) -> None:
    doc = {
        "dimension": dataset.dimension,
        "num_robots": dataset.num_robots,
        "measurements": [measurement_to_dict(m) for m in dataset.measurements],
        "ground_truth": {str(k): v.tolist() for k, v in dataset.ground_truth.items()},
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f, indent=2)


def _random_rotation(dimension: int, rng: np.random.Generator, scale: float) -> np.ndarray:
    if dimension == 2:
        a = rng.normal(0.0, scale)
        return np.array([[math.cos(a), -math.sin(a)], [math.sin(a), math.cos(a)]])
    w = rng.normal(0.0, scale, size=3)
    theta = float(np.linalg.norm(w))
    if theta < 1e-12:
        return np.eye(3)
    k = w / theta
    K = np.array([[0.0, -k[2], k[1]], [k[2], 0.0, -k[0]], [-k[1], k[0], 0.0]])
    return np.eye(3) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def _relative(Ti: np.ndarray, Tj: np.ndarray, d: int):
    Ri, ti = Ti[:, :d], Ti[:, d]
    Rj, tj = Tj[:, :d], Tj[:, d]
    return Ri.T @ Rj, Ri.T @ (tj - ti)


def make_synthetic_team(
    num_robots: int,
    poses_per_robot: int,
    *,
    dimension: int = 3,
    shared_per_pair: int = 2,
    private_per_robot: int = 1,
    outliers_per_pair: int = 0,
    rotation_noise: float = 0.01,
    translation_noise: float = 0.02,
    seed: int = 0,
) -> TeamDataset:
    """Random-walk trajectories with odometry, loop closures and optional outliers.

    Shared loop closures connect robot ``k`` with robot ``k + 1``, so the
    team graph is a chain and every robot except the ends has two neighbours.
    """
    if num_robots < 1 or poses_per_robot < 2:
        raise ValueError("Need at least one robot with two poses")
    rng = np.random.default_rng(seed)
    d = dimension
    truth: Dict[int, np.ndarray] = {}
    for rid in range(num_robots):
        poses = np.zeros((poses_per_robot, d, d + 1))
        R = np.eye(d)
        t = rng.normal(0.0, 2.0, size=d)
        for i in range(poses_per_robot):
            poses[i, :, :d] = R
            poses[i, :, d] = t
            R = project_to_rotation(R @ _random_rotation(d, rng, 0.3))
            t = t + R @ np.concatenate([[1.0], np.zeros(d - 1)])
        truth[rid] = poses

    def noisy(r1, p1, r2, p2, corrupt=False) -> RelativeMeasurement:
        Rij, tij = _relative(truth[r1][p1], truth[r2][p2], d)
        if corrupt:
            Rij = _random_rotation(d, rng, 1.0) @ Rij
            tij = tij + rng.normal(0.0, 5.0, size=d)
        Rij = project_to_rotation(Rij @ _random_rotation(d, rng, rotation_noise))
        tij = tij + rng.normal(0.0, translation_noise, size=d)
        return RelativeMeasurement(r1, p1, r2, p2, Rij, tij,
                                   kappa=1.0 / max(rotation_noise, 1e-3) ** 2 / 100.0,
                                   tau=1.0 / max(translation_noise, 1e-3) ** 2 / 100.0)

    measurements: List[RelativeMeasurement] = []
    for rid in range(num_robots):
        for i in range(poses_per_robot - 1):
            measurements.append(noisy(rid, i, rid, i + 1))
        for _ in range(private_per_robot):
            if poses_per_robot < 3:
                break
            p1 = int(rng.integers(0, poses_per_robot - 2))
            p2 = int(rng.integers(p1 + 2, poses_per_robot))
            measurements.append(noisy(rid, p1, rid, p2))
    for rid in range(num_robots - 1):
        for k in range(shared_per_pair + outliers_per_pair):
            p1 = int(rng.integers(0, poses_per_robot))
            p2 = int(rng.integers(0, poses_per_robot))
            measurements.append(noisy(rid, p1, rid + 1, p2, corrupt=k >= shared_per_pair))
    return TeamDataset(d, num_robots, measurements, truth)
