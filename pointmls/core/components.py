"""
Connected components of a triangle mesh.

Faces are connected when they share an edge. A component is "small" when its
face count is below ``ratio`` times the face count of the largest component.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np
from scipy import sparse
from scipy.sparse import csgraph

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS
from .point_set import PointSet

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceComponents:
    """
    Attributes:
        labels: (F,) component id of each face
        sizes: (C,) face count of each component
        closed: (C,) True when no edge of the component is a boundary edge
    """
    labels: np.ndarray
    sizes: np.ndarray
    closed: np.ndarray

    @property
    def n_components(self) -> int:
        return int(self.sizes.shape[0])


def face_components(faces: np.ndarray) -> FaceComponents:
    """면(face) adjacency(공유 edge) 기준 연결 컴포넌트"""
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    m = int(faces.shape[0])
    if m == 0:
        return FaceComponents(
            labels=np.zeros((0,), dtype=np.int64),
            sizes=np.zeros((0,), dtype=np.int64),
            closed=np.zeros((0,), dtype=bool),
        )

    half = np.sort(np.stack([faces, np.roll(faces, -1, axis=1)], axis=2).reshape(-1, 2), axis=1)
    face_ids = np.repeat(np.arange(m, dtype=np.int64), 3)
    order = np.lexsort((half[:, 1], half[:, 0]))
    half_s = half[order]
    face_s = face_ids[order]

    same = np.all(half_s[1:] == half_s[:-1], axis=1)
    # consecutive half-edges of the same edge link their faces
    rows = face_s[:-1][same]
    cols = face_s[1:][same]
    graph = sparse.coo_matrix(
        (np.ones(rows.shape[0], dtype=np.int8), (rows, cols)), shape=(m, m)
    ).tocsr()
    n_comp, labels = csgraph.connected_components(graph, directed=False, return_labels=True)
    labels = labels.astype(np.int64, copy=False)
    sizes = np.bincount(labels, minlength=n_comp).astype(np.int64)

    # boundary edge: used by exactly one face
    is_new = np.empty(half_s.shape[0], dtype=bool)
    is_new[0] = True
    is_new[1:] = ~same
    starts = np.flatnonzero(is_new)
    counts = np.diff(np.append(starts, half_s.shape[0]))
    open_comp = np.zeros(n_comp, dtype=bool)
    open_comp[labels[face_s[starts[counts == 1]]]] = True

    return FaceComponents(labels=labels, sizes=sizes, closed=~open_comp)


def select_small_components(
    faces: np.ndarray,
    ratio: float = DEFAULTS.small_component_ratio,
    *,
    non_closed_only: bool = False,
) -> np.ndarray:
    """
    Faces of the components smaller than ``ratio`` x the largest one.

    Args:
        faces: (F, 3) triangles
        ratio: threshold in [0, 1]; a larger value selects more components
        non_closed_only: only select components that have a boundary

    Returns:
        (F,) bool face mask
    """
    ratio = float(ratio)
    if not np.isfinite(ratio) or ratio < 0.0 or ratio > 1.0:
        raise InvalidArgument(f"small component ratio must be in [0, 1] (got {ratio})")

    comps = face_components(faces)
    if comps.n_components == 0:
        return np.zeros((0,), dtype=bool)

    small = comps.sizes < ratio * float(comps.sizes.max())
    if non_closed_only:
        small &= ~comps.closed
    _LOGGER.debug(
        "Small components: %d of %d selected (ratio=%.3f)",
        int(np.count_nonzero(small)),
        comps.n_components,
        ratio,
    )
    return small[comps.labels]


def delete_faces(point_set: PointSet, face_mask: np.ndarray) -> tuple[int, int]:
    """
    Remove the masked faces and the vertices left unreferenced, in place.

    Returns:
        (removed faces, removed vertices)
    """
    if not point_set.has_faces:
        return 0, 0
    face_mask = np.asarray(face_mask, dtype=bool).reshape(-1)
    if face_mask.shape[0] != point_set.n_faces:
        raise InvalidArgument("face mask does not match the face count")
    n_removed = int(np.count_nonzero(face_mask))
    if n_removed == 0:
        return 0, 0

    keep = point_set.faces[~face_mask]
    if keep.shape[0] == 0:
        n_vertices = point_set.n_points
        point_set.positions = np.zeros((0, 3), dtype=np.float64)
        point_set.faces = np.zeros((0, 3), dtype=np.int64)
        for name in ("normals", "radii", "selection", "quality", "k1", "k2", "pd1", "pd2", "colors"):
            value = getattr(point_set, name)
            if value is not None:
                setattr(point_set, name, np.asarray(value)[:0])
        return n_removed, n_vertices

    point_set.faces = keep
    return n_removed, point_set.remove_unreferenced_vertices()
