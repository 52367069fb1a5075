"""
Local point spacing (radius) estimation from neighbor density.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.spatial import cKDTree

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS
from .point_set import PointSet

_LOGGER = logging.getLogger(__name__)


def estimate_radii(points: np.ndarray, k: int = DEFAULTS.radius_neighbors) -> np.ndarray:
    """
    Estimate the local point spacing around each point.

    The radius is ``2 * d_k / sqrt(k)`` where ``d_k`` is the distance to the
    k-th nearest neighbor (the point itself excluded). Larger ``k`` gives
    smoother, less noise sensitive radii.

    Args:
        points: (N, 3) positions
        k: number of neighbors, >= 1

    Returns:
        (N,) radii
    """
    try:
        k = int(k)
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"k must be an integer (got {k!r})") from e
    if k < 1:
        raise InvalidArgument(f"k must be >= 1 (got {k})")

    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if pts.shape[0] < k + 1:
        raise InvalidArgument(
            f"Radius estimation with k={k} needs at least {k + 1} points (got {pts.shape[0]})"
        )
    if not np.isfinite(pts).all():
        raise InvalidArgument("Point positions must be finite")

    tree = cKDTree(pts)
    dist, _ = tree.query(pts, k=k + 1)
    d_k = np.asarray(dist, dtype=np.float64).reshape(pts.shape[0], -1)[:, -1]
    return 2.0 * d_k / np.sqrt(float(k))


def ensure_radii(point_set: PointSet, k: int = DEFAULTS.radius_neighbors) -> bool:
    """
    Fill ``point_set.radii`` if the attribute is missing.

    Returns:
        True when radii had to be computed (the caller may want to log it).
    """
    if point_set.radii is not None:
        return False
    point_set.radii = estimate_radii(point_set.positions, k)
    _LOGGER.info(
        "Point set has no per vertex radius; computed with default neighbourhood (k=%d)", int(k)
    )
    return True
