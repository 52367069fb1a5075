"""
Differential geometry of implicit surfaces.

The shape operator (Weingarten map) of the level set through a point is the
Hessian of the field restricted to the tangent plane, divided by the gradient
norm. Its eigenvalues are the principal curvatures. With a field that grows
outward, a sphere of radius R has K1 = K2 = +1/R.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from .errors import InvalidArgument, NumericFault

if TYPE_CHECKING:
    from .mls_surface import MlsSurface

GRADIENT_EPS = 1e-8


class CurvatureType(Enum):
    MEAN = "mean"
    GAUSS = "gauss"
    K1 = "k1"
    K2 = "k2"
    APPROX_MEAN = "approx_mean"

    @classmethod
    def parse(cls, value) -> "CurvatureType":
        if isinstance(value, CurvatureType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise InvalidArgument(f"Unknown curvature type: {value!r}") from e


@dataclass(frozen=True)
class CurvatureSample:
    """
    Curvature at one or several surface points.

    Attributes:
        mean: (K1 + K2) / 2
        gauss: K1 * K2
        k1, k2: principal curvatures, k1 >= k2
        dir1, dir2: unit principal directions, tangent and orthogonal
        valid: False where the gradient is degenerate (values are then zero)
    """
    mean: np.ndarray
    gauss: np.ndarray
    k1: np.ndarray
    k2: np.ndarray
    dir1: np.ndarray
    dir2: np.ndarray
    valid: np.ndarray


def _tangent_basis(n: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    helper = np.zeros_like(n)
    use_x = np.abs(n[:, 0]) < 0.9
    helper[use_x, 0] = 1.0
    helper[~use_x, 1] = 1.0

    t1 = np.cross(n, helper)
    t1 /= np.linalg.norm(t1, axis=1, keepdims=True)
    t2 = np.cross(n, t1)
    return t1, t2


def weingarten_map(gradient, hessian, *, eps: float = GRADIENT_EPS) -> CurvatureSample:
    """
    Principal curvatures and directions from a gradient and a Hessian.

    Args:
        gradient: (3,) or (N, 3)
        hessian: (3, 3) or (N, 3, 3)
        eps: minimum gradient norm of a valid sample

    Returns:
        CurvatureSample (scalars for a single input)

    Raises:
        NumericFault: finite inputs produced a non-finite curvature
    """
    g = np.asarray(gradient, dtype=np.float64)
    single = g.ndim == 1
    g = g.reshape(-1, 3)
    h = np.asarray(hessian, dtype=np.float64).reshape(-1, 3, 3)
    if h.shape[0] != g.shape[0]:
        raise InvalidArgument("gradient and hessian batches differ in size")
    n_pts = int(g.shape[0])

    norm = np.linalg.norm(g, axis=1)
    valid = (
        np.isfinite(norm)
        & (norm > float(eps))
        & np.isfinite(h.reshape(n_pts, -1)).all(axis=1)
    )

    k1 = np.zeros(n_pts, dtype=np.float64)
    k2 = np.zeros(n_pts, dtype=np.float64)
    dir1 = np.zeros((n_pts, 3), dtype=np.float64)
    dir2 = np.zeros((n_pts, 3), dtype=np.float64)

    if np.any(valid):
        gv = g[valid]
        hv = h[valid]
        inv_norm = 1.0 / norm[valid]
        nrm = gv * inv_norm[:, None]
        t1, t2 = _tangent_basis(nrm)

        ht1 = np.einsum("ijk,ik->ij", hv, t1)
        ht2 = np.einsum("ijk,ik->ij", hv, t2)
        a = np.einsum("ij,ij->i", t1, ht1) * inv_norm
        b = 0.5 * (np.einsum("ij,ij->i", t1, ht2) + np.einsum("ij,ij->i", t2, ht1)) * inv_norm
        c = np.einsum("ij,ij->i", t2, ht2) * inv_norm

        w = np.empty((a.shape[0], 2, 2), dtype=np.float64)
        w[:, 0, 0] = a
        w[:, 0, 1] = b
        w[:, 1, 0] = b
        w[:, 1, 1] = c
        evals, evecs = np.linalg.eigh(w)  # ascending

        k2[valid] = evals[:, 0]
        k1[valid] = evals[:, 1]
        d1 = t1 * evecs[:, 0, 1, None] + t2 * evecs[:, 1, 1, None]
        d2 = t1 * evecs[:, 0, 0, None] + t2 * evecs[:, 1, 0, None]
        dir1[valid] = d1 / np.linalg.norm(d1, axis=1, keepdims=True)
        dir2[valid] = d2 / np.linalg.norm(d2, axis=1, keepdims=True)

    mean = 0.5 * (k1 + k2)
    gauss = k1 * k2

    finite = (
        np.isfinite(k1) & np.isfinite(k2) & np.isfinite(mean) & np.isfinite(gauss)
        & np.isfinite(dir1).all(axis=1) & np.isfinite(dir2).all(axis=1)
    )
    if not bool(np.all(finite[valid])):
        raise NumericFault("Non-finite curvature computed from a finite gradient/Hessian")

    if single:
        return CurvatureSample(
            mean=float(mean[0]),
            gauss=float(gauss[0]),
            k1=float(k1[0]),
            k2=float(k2[0]),
            dir1=dir1[0],
            dir2=dir2[0],
            valid=bool(valid[0]),
        )
    return CurvatureSample(mean=mean, gauss=gauss, k1=k1, k2=k2, dir1=dir1, dir2=dir2, valid=valid)


def evaluate_curvature(model: "MlsSurface", p, *, eps: float = GRADIENT_EPS) -> CurvatureSample:
    """Curvature of the MLS surface of ``model`` at surface point(s) ``p``."""
    return weingarten_map(model.gradient(p), model.hessian(p), eps=eps)


def select_curvature(sample: CurvatureSample, curvature_type) -> np.ndarray:
    """Pick one scalar of a sample. APPROX_MEAN is not part of a sample."""
    ct = CurvatureType.parse(curvature_type)
    if ct is CurvatureType.MEAN:
        return sample.mean
    if ct is CurvatureType.GAUSS:
        return sample.gauss
    if ct is CurvatureType.K1:
        return sample.k1
    if ct is CurvatureType.K2:
        return sample.k2
    raise InvalidArgument("APPROX_MEAN comes from the fitted APSS sphere, not from a CurvatureSample")
