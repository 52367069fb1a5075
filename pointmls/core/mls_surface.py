"""
Moving least squares surface base class.

An MLS surface is an implicit scalar field built from weighted contributions of
the input points around each query. Neighbors of a query ``x`` are the points
``p_j`` with ``|x - p_j| < filter_scale * r_j``; their weight is the compactly
supported kernel ``(1 - d^2 / h_j^2)^4``. Queries without neighbors are outside
the domain of the surface.

All queries are vectorized: every public method takes a single point (3,) or a
batch (N, 3) and returns results of the matching shape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import itertools
import logging
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS
from .point_set import PointSet
from .projection import ProjectionResult, project as project_onto_surface
from .spacing import estimate_radii

_LOGGER = logging.getLogger(__name__)

# relative finite difference step of the Hessian, in units of the local radius
HESSIAN_STEP = 1e-3


@dataclass(frozen=True)
class Neighborhood:
    """
    Query/point pairs within the support of the point.

    Attributes:
        query: (E,) query index of each pair
        index: (E,) point index of each pair
        diff: (E, 3) ``x_query - p_index``
        weight: (E,) spatial weight
        dweight: (E, 3) gradient of the weight with respect to the query position
        n_queries: number of queries
    """
    query: np.ndarray
    index: np.ndarray
    diff: np.ndarray
    weight: np.ndarray
    dweight: np.ndarray
    n_queries: int

    def sum(self, values: np.ndarray) -> np.ndarray:
        """Per-query sum of per-pair values of shape (E,) or (E, ...)."""
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 1:
            return np.bincount(self.query, weights=values, minlength=self.n_queries)
        width = int(np.prod(values.shape[1:], dtype=np.int64))
        flat = values.reshape(values.shape[0], width)
        out = np.empty((self.n_queries, flat.shape[1]), dtype=np.float64)
        for c in range(flat.shape[1]):
            out[:, c] = np.bincount(self.query, weights=flat[:, c], minlength=self.n_queries)
        return out.reshape((self.n_queries,) + values.shape[1:])


@dataclass
class SurfaceFit:
    """
    Result of fitting the MLS surface at a batch of queries.

    Attributes:
        potential: (N,) scalar field value (NaN outside the domain)
        gradient: (N, 3) field gradient (NaN outside the domain)
        local_radius: (N,) weight-averaged radius of the neighbors
        valid: (N,) True when the query is inside the domain
    """
    potential: np.ndarray
    gradient: np.ndarray
    local_radius: np.ndarray
    valid: np.ndarray


class MlsSurface(ABC):
    """
    Common machinery of the MLS variants.

    Subclasses implement ``_fit``; evaluation, gradient, Hessian and projection
    are shared. The model copies its inputs and is read-only afterwards, so a
    single instance can be queried from several threads.
    """

    def __init__(
        self,
        point_set: PointSet,
        *,
        filter_scale: float = DEFAULTS.filter_scale,
        projection_accuracy: float = DEFAULTS.projection_accuracy,
        max_projection_iters: int = DEFAULTS.max_projection_iters,
    ):
        if point_set is None or point_set.n_points == 0:
            raise InvalidArgument("Cannot build an MLS surface from an empty point set")
        filter_scale = float(filter_scale)
        projection_accuracy = float(projection_accuracy)
        max_projection_iters = int(max_projection_iters)
        if not np.isfinite(filter_scale) or filter_scale <= 0.0:
            raise InvalidArgument(f"filter_scale must be > 0 (got {filter_scale})")
        if not np.isfinite(projection_accuracy) or projection_accuracy <= 0.0:
            raise InvalidArgument(f"projection_accuracy must be > 0 (got {projection_accuracy})")
        if max_projection_iters < 1:
            raise InvalidArgument(f"max_projection_iters must be >= 1 (got {max_projection_iters})")

        positions = np.array(point_set.positions, dtype=np.float64, copy=True)
        if not np.isfinite(positions).all():
            raise InvalidArgument("Point positions must be finite")

        if point_set.radii is not None:
            radii = np.array(point_set.radii, dtype=np.float64, copy=True)
        else:
            _LOGGER.info(
                "Point set has no per vertex radius; estimating it from %d neighbors",
                DEFAULTS.radius_neighbors,
            )
            radii = estimate_radii(positions, DEFAULTS.radius_neighbors)
        radii = np.where(np.isfinite(radii) & (radii > 0.0), radii, 0.0)
        if not np.any(radii > 0.0):
            raise InvalidArgument("All point radii are zero; the MLS support is empty")

        self._positions = positions
        self._normals = self._prepare_normals(point_set)
        self._radii = radii
        self._filter_scale = filter_scale
        self._projection_accuracy = projection_accuracy
        self._max_projection_iters = max_projection_iters

        self._support = filter_scale * radii
        self._max_support = float(self._support.max())
        self._average_spacing = float(radii[radii > 0.0].mean())
        self._tree = cKDTree(positions)

    def _prepare_normals(self, point_set: PointSet) -> Optional[np.ndarray]:
        """Copy of the input normals; subclasses may require them."""
        if point_set.normals is None:
            return None
        return np.array(point_set.normals, dtype=np.float64, copy=True)

    # ------------------------------------------------------------------
    # configuration (read-only)

    @property
    def filter_scale(self) -> float:
        return self._filter_scale

    @property
    def projection_accuracy(self) -> float:
        return self._projection_accuracy

    @property
    def max_projection_iters(self) -> int:
        return self._max_projection_iters

    @property
    def average_spacing(self) -> float:
        return self._average_spacing

    @property
    def max_support(self) -> float:
        """Largest support radius of any point."""
        return self._max_support

    @property
    def n_points(self) -> int:
        return int(self._positions.shape[0])

    def bounding_box(self) -> np.ndarray:
        return np.array([self._positions.min(axis=0), self._positions.max(axis=0)])

    # ------------------------------------------------------------------
    # neighborhoods

    def _neighborhood(self, queries: np.ndarray) -> Neighborhood:
        n_q = int(queries.shape[0])
        # non-finite queries get no neighbors, i.e. they are outside the domain
        rows = np.flatnonzero(np.isfinite(queries).all(axis=1))
        if rows.size == 0:
            empty = np.zeros((0,), dtype=np.int64)
            return Neighborhood(
                query=empty,
                index=empty,
                diff=np.zeros((0, 3)),
                weight=np.zeros((0,)),
                dweight=np.zeros((0, 3)),
                n_queries=n_q,
            )

        lists = self._tree.query_ball_point(queries[rows], r=self._max_support, workers=-1)
        counts = np.fromiter((len(ids) for ids in lists), dtype=np.int64, count=int(rows.size))
        pj = np.fromiter(
            itertools.chain.from_iterable(lists), dtype=np.int64, count=int(counts.sum())
        )
        qi = np.repeat(rows.astype(np.int64), counts)
        dist = np.linalg.norm(queries[qi] - self._positions[pj], axis=1)

        h = self._support[pj]
        keep = dist < h
        qi = qi[keep]
        pj = pj[keep]
        dist = dist[keep]
        h = h[keep]

        diff = queries[qi] - self._positions[pj]
        inv_h2 = 1.0 / (h * h)
        base = 1.0 - dist * dist * inv_h2
        base = np.clip(base, 0.0, 1.0)
        base3 = base * base * base
        weight = base3 * base
        dweight = (-8.0 * base3 * inv_h2)[:, None] * diff

        return Neighborhood(
            query=qi,
            index=pj,
            diff=diff,
            weight=weight,
            dweight=dweight,
            n_queries=n_q,
        )

    def _local_radius(self, nb: Neighborhood, sum_w: np.ndarray) -> np.ndarray:
        sum_wr = nb.sum(nb.weight * self._radii[nb.index])
        out = np.full(nb.n_queries, self._average_spacing, dtype=np.float64)
        ok = sum_w > 0.0
        out[ok] = sum_wr[ok] / sum_w[ok]
        return out

    @abstractmethod
    def _fit(self, queries: np.ndarray) -> SurfaceFit:
        """Fit the local implicit function at each query of an (N, 3) batch."""

    # ------------------------------------------------------------------
    # capability set

    @staticmethod
    def _as_batch(p) -> tuple[np.ndarray, bool]:
        arr = np.asarray(p, dtype=np.float64)
        single = arr.ndim == 1
        if arr.ndim == 0 or arr.shape[-1] != 3:
            raise InvalidArgument(f"Expected points of shape (3,) or (N, 3), got {arr.shape}")
        return arr.reshape(-1, 3), single

    def fit(self, p) -> SurfaceFit:
        """Fit at an (N, 3) batch of queries (exposed for advanced callers)."""
        x, _ = self._as_batch(p)
        return self._fit(x)

    def in_domain(self, p):
        x, single = self._as_batch(p)
        fit = self._fit(x)
        return bool(fit.valid[0]) if single else fit.valid

    def evaluate(self, p):
        """Signed field value; NaN outside the domain."""
        x, single = self._as_batch(p)
        fit = self._fit(x)
        return float(fit.potential[0]) if single else fit.potential

    def gradient(self, p):
        x, single = self._as_batch(p)
        fit = self._fit(x)
        return fit.gradient[0] if single else fit.gradient

    def hessian(self, p):
        """
        3x3 symmetric Hessian of the field.

        Central differences of the analytic gradient with a step proportional to
        the local radius. NaN where a stencil sample leaves the domain.
        """
        x, single = self._as_batch(p)
        h = self._hessian_batch(x)
        return h[0] if single else h

    def _hessian_batch(self, x: np.ndarray) -> np.ndarray:
        n = int(x.shape[0])
        center = self._fit(x)
        delta = HESSIAN_STEP * center.local_radius

        offsets = np.eye(3)[None, :, :] * delta[:, None, None]  # (N, 3, 3)
        plus = (x[:, None, :] + offsets).reshape(-1, 3)
        minus = (x[:, None, :] - offsets).reshape(-1, 3)
        stencil = self._fit(np.vstack([plus, minus]))
        g = stencil.gradient
        g_plus = g[: 3 * n].reshape(n, 3, 3)
        g_minus = g[3 * n:].reshape(n, 3, 3)

        # column k = d(gradient)/dx_k
        hess = np.transpose((g_plus - g_minus) / (2.0 * delta[:, None, None]), (0, 2, 1))
        hess = 0.5 * (hess + np.transpose(hess, (0, 2, 1)))
        hess[~center.valid] = np.nan
        return hess

    def local_radius(self, p):
        x, single = self._as_batch(p)
        fit = self._fit(x)
        return float(fit.local_radius[0]) if single else fit.local_radius

    def tangent_distance(self, p):
        """
        Signed distance to the tangent plane of the nearest input point.

        Defined everywhere, also outside the MLS domain; NaN when the nearest
        point has no usable normal.
        """
        x, single = self._as_batch(p)
        out = np.full(x.shape[0], np.nan, dtype=np.float64)
        if self._normals is None:
            return float(out[0]) if single else out

        rows = np.flatnonzero(np.isfinite(x).all(axis=1))
        if rows.size:
            _dist, idx = self._tree.query(x[rows], k=1, workers=-1)
            nrm = self._normals[idx]
            lengths = np.linalg.norm(nrm, axis=1)
            ok = np.isfinite(lengths) & (lengths > 1e-12)
            signed = np.einsum("ij,ij->i", x[rows] - self._positions[idx], nrm)
            out[rows[ok]] = signed[ok] / lengths[ok]
        return float(out[0]) if single else out

    def project(self, p, *, with_normal: bool = True, max_iters: Optional[int] = None,
                accuracy: Optional[float] = None) -> ProjectionResult:
        """Project point(s) onto the zero level set (see projection.project)."""
        return project_onto_surface(
            self,
            p,
            max_iters=self._max_projection_iters if max_iters is None else max_iters,
            accuracy=self._projection_accuracy if accuracy is None else accuracy,
            with_normal=with_normal,
        )
