import math
from typing import Optional

SUPPORTED_KERNELS = ("gnc_tls", "huber", "cauchy")


def gnc_tls_weight(residual_sq: float, threshold: float, mu: float) -> float:
    """Graduated non-convexity weight for the truncated least squares kernel.

    Why: as ``mu`` grows the surrogate approaches TLS and weights are driven
    to exactly 0 (outlier) or 1 (inlier), which is what makes the team-wide
    weight rounds converge.
    """
    barc_sq = float(threshold) ** 2
    mu = max(float(mu), 1e-12)
    r_sq = max(float(residual_sq), 0.0)
    if r_sq >= (mu + 1.0) / mu * barc_sq:
        return 0.0
    if r_sq <= mu / (mu + 1.0) * barc_sq:
        return 1.0
    w = math.sqrt(barc_sq * mu * (mu + 1.0) / r_sq) - mu
    return min(1.0, max(0.0, w))


def huber_weight(residual_sq: float, k: float = 1.345) -> float:
    r = math.sqrt(max(float(residual_sq), 0.0))
    if r <= k:
        return 1.0
    return k / r


def cauchy_weight(residual_sq: float, k: float = 1.0) -> float:
    return 1.0 / (1.0 + max(float(residual_sq), 0.0) / (k * k))


def robust_weight(kind: Optional[str], residual_sq: float, k: Optional[float] = None, mu: float = 1.0) -> float:
    """Weight of one measurement under a robust kernel.

    kind: 'gnc_tls' | 'huber' | 'cauchy' | None
    k: tuning constant (default: TLS 5.0, Huber 1.345, Cauchy 1.0)
    """
    if not kind:
        return 1.0
    kind = kind.lower()
    if kind == "gnc_tls":
        return gnc_tls_weight(residual_sq, 5.0 if k is None else k, mu)
    if kind == "huber":
        return huber_weight(residual_sq, 1.345 if k is None else k)
    if kind == "cauchy":
        return cauchy_weight(residual_sq, 1.0 if k is None else k)
    raise ValueError(f"Unsupported robust kernel: {kind}")
