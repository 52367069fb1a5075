"""
Algebraic Point Set Surfaces (APSS).

At each query a local algebraic sphere ``s(y) = u0 + u1.y + u4 |y|^2`` (in
coordinates centered at the query) is fitted to the weighted positions and
normals of the neighbors. The field value at the query is ``u0`` and, near the
surface, approximates the signed distance.

Reference: Guennebaud and Gross, "Algebraic Point Set Surfaces", SIGGRAPH 2007.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS
from .mls_surface import MlsSurface, Neighborhood, SurfaceFit
from .point_set import PointSet

_LOGGER = logging.getLogger(__name__)

GRADIENT_ACCURATE = "accurate"
GRADIENT_APPROX = "approx"

# |u4| below this is treated as a plane
_PLANE_EPS = 1e-12


@dataclass
class AlgebraicSphereFit(SurfaceFit):
    """
    SurfaceFit plus the algebraic sphere coefficients of each query.

    The coefficients are expressed in coordinates centered at the query.
    """
    u0: np.ndarray = None
    u1: np.ndarray = None
    u4: np.ndarray = None

    @property
    def is_plane(self) -> np.ndarray:
        return np.abs(self.u4) <= _PLANE_EPS

    def sphere_radius(self) -> np.ndarray:
        """Radius of the fitted spheres (inf for planes, NaN when imaginary)."""
        radius = np.full(self.u4.shape, np.inf, dtype=np.float64)
        sph = ~self.is_plane & self.valid
        if np.any(sph):
            u4 = self.u4[sph]
            center = -self.u1[sph] / (2.0 * u4[:, None])
            r2 = np.einsum("ij,ij->i", center, center) - self.u0[sph] / u4
            radius[sph] = np.where(r2 > 0.0, np.sqrt(np.maximum(r2, 0.0)), np.nan)
        radius[~self.valid] = np.nan
        return radius


class APSSModel(MlsSurface):
    """
    APSS surface.

    Args:
        point_set: input points; normals are required (derived from the faces
            of a mesh when missing)
        spherical_parameter: 0 = plane fit, 1 = sphere fit; other values are
            accepted but can make the fit unstable
        gradient_hint: "accurate" (derivative of the full MLS fit) or "approx"
            (gradient of the fitted sphere)
    """

    def __init__(
        self,
        point_set: PointSet,
        *,
        filter_scale: float = DEFAULTS.filter_scale,
        projection_accuracy: float = DEFAULTS.projection_accuracy,
        max_projection_iters: int = DEFAULTS.max_projection_iters,
        spherical_parameter: float = DEFAULTS.spherical_parameter,
        gradient_hint: str = GRADIENT_ACCURATE,
    ):
        hint = str(gradient_hint).strip().lower()
        if hint not in {GRADIENT_ACCURATE, GRADIENT_APPROX}:
            raise InvalidArgument(f"Unknown gradient hint: {gradient_hint!r}")
        spherical_parameter = float(spherical_parameter)
        if not np.isfinite(spherical_parameter):
            raise InvalidArgument("spherical_parameter must be finite")

        super().__init__(
            point_set,
            filter_scale=filter_scale,
            projection_accuracy=projection_accuracy,
            max_projection_iters=max_projection_iters,
        )
        self._spherical_parameter = spherical_parameter
        self._gradient_hint = hint
        _LOGGER.debug(
            "APSS surface: %d points, filter_scale=%.3g, spherical=%.3g, gradient=%s",
            self.n_points,
            self.filter_scale,
            spherical_parameter,
            hint,
        )

    def _prepare_normals(self, point_set: PointSet) -> np.ndarray:
        if point_set.normals is not None:
            normals = np.array(point_set.normals, dtype=np.float64, copy=True)
        elif point_set.has_faces:
            tmp = point_set.copy()
            tmp.compute_normals(force=True)
            normals = tmp.normals
            _LOGGER.info("APSS: point set has no normals; using face-averaged vertex normals")
        else:
            raise InvalidArgument("APSS requires oriented normals")
        return np.where(np.isfinite(normals), normals, 0.0)

    @property
    def spherical_parameter(self) -> float:
        return self._spherical_parameter

    @property
    def gradient_hint(self) -> str:
        return self._gradient_hint

    def _fit(self, queries: np.ndarray) -> AlgebraicSphereFit:
        nb = self._neighborhood(queries)
        return self._fit_sphere(nb)

    def _fit_sphere(self, nb: Neighborhood) -> AlgebraicSphereFit:
        n_q = nb.n_queries
        w = nb.weight
        dw = nb.dweight
        q = -nb.diff  # neighbor positions relative to the query
        nrm = self._normals[nb.index]
        qn = np.einsum("ij,ij->i", q, nrm)
        qq = np.einsum("ij,ij->i", q, q)

        sum_w = nb.sum(w)
        sum_p = nb.sum(w[:, None] * q)
        sum_n = nb.sum(w[:, None] * nrm)
        sum_pn = nb.sum(w * qn)
        sum_pp = nb.sum(w * qq)

        valid = sum_w > 0.0
        inv_w = np.zeros(n_q, dtype=np.float64)
        inv_w[valid] = 1.0 / sum_w[valid]

        beta = 0.5 * self._spherical_parameter
        num = sum_pn - inv_w * np.einsum("ij,ij->i", sum_p, sum_n)
        den = sum_pp - inv_w * np.einsum("ij,ij->i", sum_p, sum_p)
        sphere = valid & (np.abs(den) > _PLANE_EPS * np.maximum(sum_pp, 1e-300))

        u4 = np.zeros(n_q, dtype=np.float64)
        u4[sphere] = beta * num[sphere] / den[sphere]
        u1 = (sum_n - 2.0 * u4[:, None] * sum_p) * inv_w[:, None]
        u0 = -inv_w * (np.einsum("ij,ij->i", u1, sum_p) + u4 * sum_pp)

        if self._gradient_hint == GRADIENT_APPROX:
            gradient = u1.copy()
        else:
            # derivatives of the weighted sums with respect to the query (index k first)
            d_w = nb.sum(dw)
            d_p = nb.sum(dw[:, :, None] * q[:, None, :])
            d_n = nb.sum(dw[:, :, None] * nrm[:, None, :])
            d_pn = nb.sum(dw * qn[:, None])
            d_pp = nb.sum(dw * qq[:, None])

            inv_w2 = inv_w * inv_w
            dp_dot_n = np.einsum("ikl,il->ik", d_p, sum_n)
            p_dot_dn = np.einsum("il,ikl->ik", sum_p, d_n)
            dp_dot_p = np.einsum("ikl,il->ik", d_p, sum_p)
            d_num = (
                d_pn
                - (dp_dot_n + p_dot_dn) * inv_w[:, None]
                + (np.einsum("ij,ij->i", sum_p, sum_n) * inv_w2)[:, None] * d_w
            )
            d_den = (
                d_pp
                - 2.0 * dp_dot_p * inv_w[:, None]
                + (np.einsum("ij,ij->i", sum_p, sum_p) * inv_w2)[:, None] * d_w
            )

            d_u4 = np.zeros((n_q, 3), dtype=np.float64)
            if np.any(sphere):
                den_s = den[sphere][:, None]
                d_u4[sphere] = beta * (d_num[sphere] * den_s - num[sphere][:, None] * d_den[sphere]) / (
                    den_s * den_s
                )

            d_u1 = (
                d_n
                - 2.0 * d_u4[:, :, None] * sum_p[:, None, :]
                - 2.0 * u4[:, None, None] * d_p
            ) * inv_w[:, None, None] - d_w[:, :, None] * u1[:, None, :] * inv_w[:, None, None]
            d_u0 = (
                -(
                    np.einsum("ikl,il->ik", d_u1, sum_p)
                    + np.einsum("il,ikl->ik", u1, d_p)
                    + d_u4 * sum_pp[:, None]
                    + u4[:, None] * d_pp
                )
                * inv_w[:, None]
                - u0[:, None] * d_w * inv_w[:, None]
            )
            gradient = d_u0 + u1

        potential = u0.copy()
        potential[~valid] = np.nan
        gradient[~valid] = np.nan

        return AlgebraicSphereFit(
            potential=potential,
            gradient=gradient,
            local_radius=self._local_radius(nb, sum_w),
            valid=valid,
            u0=u0,
            u1=u1,
            u4=u4,
        )

    def _hessian_batch(self, x: np.ndarray) -> np.ndarray:
        if self._gradient_hint != GRADIENT_APPROX:
            return super()._hessian_batch(x)
        # Hessian of the fitted sphere only
        fit = self._fit(x)
        hess = (2.0 * fit.u4)[:, None, None] * np.eye(3)[None, :, :]
        hess[~fit.valid] = np.nan
        return hess

    def fit_spheres(self, p) -> AlgebraicSphereFit:
        """Algebraic sphere coefficients at (N, 3) queries."""
        x, _ = self._as_batch(p)
        return self._fit(x)

    def approx_mean_curvature(self, p):
        """
        Cheap mean curvature proxy: the reciprocal of the signed radius of the
        sphere fitted at ``p`` (0 for planes, NaN outside the domain).
        """
        x, single = self._as_batch(p)
        fit = self._fit(x)
        radius = fit.sphere_radius()
        curv = np.zeros(x.shape[0], dtype=np.float64)
        finite = np.isfinite(radius) & (radius > 0.0)
        curv[finite] = np.sign(fit.u4[finite]) / radius[finite]
        curv[~fit.valid] = np.nan
        return float(curv[0]) if single else curv
