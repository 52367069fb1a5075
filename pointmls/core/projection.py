"""
Projection of points onto the zero level set of an MLS surface.

Newton-like fixed-point iteration along the field gradient::

    p <- p - f(p) * g(p) / |g(p)|^2

The step threshold is scaled by the local point radius so the accuracy
parameter does not depend on the sampling resolution.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, TYPE_CHECKING

import numpy as np

from .errors import InvalidArgument
from .logging_utils import log_once

if TYPE_CHECKING:
    from .mls_surface import MlsSurface

_LOGGER = logging.getLogger(__name__)

GRADIENT_EPS = 1e-10


@dataclass
class ProjectionResult:
    """
    Projection output. Shapes follow the input: (3,) / scalar for a single
    point, (N, 3) / (N,) for a batch.

    Attributes:
        position: final estimate (returned even when not converged)
        converged: the last step was below the accuracy threshold
        normal: unit gradient at the final estimate (None if not requested)
        iterations: number of steps taken
        degenerate: stopped on a near-zero gradient or outside the domain
    """
    position: np.ndarray
    converged: np.ndarray
    normal: Optional[np.ndarray]
    iterations: np.ndarray
    degenerate: np.ndarray

    @property
    def n_converged(self) -> int:
        return int(np.count_nonzero(self.converged))

    @property
    def n_degenerate(self) -> int:
        return int(np.count_nonzero(self.degenerate))


def project(
    model: "MlsSurface",
    p,
    *,
    max_iters: int,
    accuracy: float,
    with_normal: bool = True,
) -> ProjectionResult:
    """
    Project point(s) onto the surface of ``model``.

    Args:
        model: MLS surface
        p: (3,) or (N, 3) start positions
        max_iters: iteration cap, >= 1
        accuracy: step threshold relative to the local radius, > 0
        with_normal: also return the unit gradient at the result

    Returns:
        ProjectionResult
    """
    max_iters = int(max_iters)
    accuracy = float(accuracy)
    if max_iters < 1:
        raise InvalidArgument(f"max_iters must be >= 1 (got {max_iters})")
    if not np.isfinite(accuracy) or accuracy <= 0.0:
        raise InvalidArgument(f"accuracy must be > 0 (got {accuracy})")

    arr = np.asarray(p, dtype=np.float64)
    single = arr.ndim == 1
    x = np.array(arr.reshape(-1, 3), dtype=np.float64, copy=True)
    n = int(x.shape[0])

    converged = np.zeros(n, dtype=bool)
    degenerate = np.zeros(n, dtype=bool)
    iterations = np.zeros(n, dtype=np.int32)
    active = np.arange(n, dtype=np.int64)

    for _ in range(max_iters):
        if active.size == 0:
            break
        fit = model.fit(x[active])
        f = fit.potential
        g = fit.gradient
        g2 = np.einsum("ij,ij->i", g, g)

        ok = fit.valid & np.isfinite(f) & np.isfinite(g2) & (g2 > GRADIENT_EPS * GRADIENT_EPS)
        if not bool(np.all(ok)):
            degenerate[active[~ok]] = True
            log_once(
                _LOGGER,
                "projection:degenerate",
                logging.DEBUG,
                "Projection stopped on a flat gradient or outside the MLS domain",
            )

        idx = active[ok]
        step = (f[ok] / g2[ok])[:, None] * g[ok]
        new_x = x[idx] - step
        finite = np.isfinite(new_x).all(axis=1)
        if not bool(np.all(finite)):
            degenerate[idx[~finite]] = True
        idx = idx[finite]
        step = step[finite]
        x[idx] = new_x[finite]
        iterations[idx] += 1

        step_len = np.linalg.norm(step, axis=1)
        threshold = accuracy * fit.local_radius[ok][finite]
        done = step_len < threshold
        converged[idx[done]] = True
        active = idx[~done]

    normal = None
    if with_normal:
        g = model.fit(x).gradient
        norms = np.linalg.norm(g, axis=1)
        normal = np.zeros_like(x)
        good = np.isfinite(norms) & (norms > GRADIENT_EPS)
        normal[good] = g[good] / norms[good, None]

    if single:
        return ProjectionResult(
            position=x[0],
            converged=bool(converged[0]),
            normal=None if normal is None else normal[0],
            iterations=int(iterations[0]),
            degenerate=bool(degenerate[0]),
        )
    return ProjectionResult(
        position=x,
        converged=converged,
        normal=normal,
        iterations=iterations,
        degenerate=degenerate,
    )
