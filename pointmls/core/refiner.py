"""
Adaptive refinement before MLS projection.

Loop-style subdivision restricted to the edges whose two adjacent faces are
nearly coplanar: edges across a crease sharper than the threshold angle are left
untouched so projection does not round the feature off.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Callable, Optional

import numpy as np

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS
from .point_set import PointSet
from .progress import ProgressReporter

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EdgeAnglePredicate:
    """An edge may be split only if the cosine between its face normals is above ``th_cos_angle``."""

    th_cos_angle: float

    @classmethod
    def from_angle_deg(cls, angle_deg: float) -> "EdgeAnglePredicate":
        angle = float(angle_deg)
        if not math.isfinite(angle):
            raise InvalidArgument(f"crease angle must be finite (got {angle_deg})")
        return cls(th_cos_angle=math.cos(math.radians(angle)))

    def __call__(self, cos_angle: np.ndarray) -> np.ndarray:
        return np.asarray(cos_angle, dtype=np.float64) > self.th_cos_angle


@dataclass(frozen=True)
class EdgeTopology:
    """
    Unique undirected edges of a triangle mesh.

    Attributes:
        edges: (E, 2) vertex indices, sorted per row
        face_pairs: (E, 2) adjacent faces; -1 in column 1 for boundary edges
        slot_pairs: (E, 2) slot of the edge inside each adjacent face
            (slot i joins face[i] and face[(i + 1) % 3])
        counts: (E,) number of faces using the edge
        face_edges: (F, 3) edge id of each face slot
    """
    edges: np.ndarray
    face_pairs: np.ndarray
    slot_pairs: np.ndarray
    counts: np.ndarray
    face_edges: np.ndarray


def build_edge_topology(faces: np.ndarray) -> EdgeTopology:
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    n_faces = int(faces.shape[0])
    if n_faces == 0:
        z2 = np.zeros((0, 2), dtype=np.int64)
        return EdgeTopology(
            edges=z2,
            face_pairs=z2,
            slot_pairs=z2,
            counts=np.zeros((0,), dtype=np.int64),
            face_edges=np.zeros((0, 3), dtype=np.int64),
        )

    # half-edges ordered face-major: row 3*f + i is slot i of face f
    half = np.stack([faces, np.roll(faces, -1, axis=1)], axis=2).reshape(-1, 2)
    half = np.sort(half, axis=1)
    face_ids = np.repeat(np.arange(n_faces, dtype=np.int64), 3)
    slots = np.tile(np.arange(3, dtype=np.int64), n_faces)

    order = np.lexsort((half[:, 1], half[:, 0]))
    half_s = half[order]

    is_new = np.empty((half_s.shape[0],), dtype=bool)
    is_new[0] = True
    is_new[1:] = np.any(half_s[1:] != half_s[:-1], axis=1)
    starts = np.flatnonzero(is_new)
    counts = np.diff(np.append(starts, half_s.shape[0]))

    edge_of_sorted = np.cumsum(is_new) - 1
    edge_of_half = np.empty_like(edge_of_sorted)
    edge_of_half[order] = edge_of_sorted

    face_s = face_ids[order]
    slot_s = slots[order]
    face_pairs = np.full((starts.shape[0], 2), -1, dtype=np.int64)
    slot_pairs = np.full((starts.shape[0], 2), -1, dtype=np.int64)
    face_pairs[:, 0] = face_s[starts]
    slot_pairs[:, 0] = slot_s[starts]
    two = counts >= 2
    face_pairs[two, 1] = face_s[starts[two] + 1]
    slot_pairs[two, 1] = slot_s[starts[two] + 1]

    return EdgeTopology(
        edges=half_s[starts],
        face_pairs=face_pairs,
        slot_pairs=slot_pairs,
        counts=counts.astype(np.int64, copy=False),
        face_edges=edge_of_half.reshape(n_faces, 3),
    )


def face_normals(positions: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Normalized face normals; zero rows for degenerate faces."""
    v0 = positions[faces[:, 0]]
    v1 = positions[faces[:, 1]]
    v2 = positions[faces[:, 2]]
    n = np.cross(v1 - v0, v2 - v0)
    norms = np.linalg.norm(n, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return n / norms


def edge_cosines(normals: np.ndarray, topo: EdgeTopology) -> np.ndarray:
    """
    Cosine between the two face normals of every edge.

    Boundary edges count as flat (1.0); non-manifold edges get -inf so they are
    never split.
    """
    cos = np.ones(topo.edges.shape[0], dtype=np.float64)
    two = topo.counts == 2
    if np.any(two):
        n0 = normals[topo.face_pairs[two, 0]]
        n1 = normals[topo.face_pairs[two, 1]]
        cos[two] = np.clip(np.einsum("ij,ij->i", n0, n1), -1.0, 1.0)
    cos[topo.counts > 2] = -np.inf
    return cos


def vertex_selection_from_faces_strict(
    n_vertices: int,
    faces: np.ndarray,
    face_selection: np.ndarray,
    fallback: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    A vertex is selected iff all its incident faces are selected.

    Vertices without faces keep ``fallback`` (False when not given).
    """
    has_face = np.zeros(n_vertices, dtype=bool)
    has_face[faces.reshape(-1)] = True
    unselected = np.zeros(n_vertices, dtype=bool)
    unselected[faces[~face_selection].reshape(-1)] = True
    out = has_face & ~unselected
    if fallback is not None:
        out[~has_face] = np.asarray(fallback, dtype=bool)[~has_face]
    return out


@dataclass
class RefinementReport:
    passes: int = 0
    split_edges: list[int] = field(default_factory=list)
    vertex_counts: list[int] = field(default_factory=list)
    face_counts: list[int] = field(default_factory=list)


class AdaptiveRefiner:
    """
    Crease-aware Loop refinement interleaved with projection.

    Args:
        max_subdivisions: number of refinement passes (0 = project only)
        crease_angle_deg: edges whose face normals differ by more than this are
            never split
    """

    def __init__(
        self,
        max_subdivisions: int = DEFAULTS.max_subdivisions,
        crease_angle_deg: float = DEFAULTS.crease_angle_deg,
    ):
        max_subdivisions = int(max_subdivisions)
        if max_subdivisions < 0:
            raise InvalidArgument(f"max_subdivisions must be >= 0 (got {max_subdivisions})")
        self.max_subdivisions = max_subdivisions
        self.crease_angle_deg = float(crease_angle_deg)
        self.predicate = EdgeAnglePredicate.from_angle_deg(crease_angle_deg)

    def eligible_edges(
        self,
        positions: np.ndarray,
        faces: np.ndarray,
        topo: EdgeTopology,
        face_selection: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """(E,) mask of the edges a pass would split."""
        cos = edge_cosines(face_normals(positions, faces), topo)
        eligible = self.predicate(cos) & (topo.counts <= 2)
        if face_selection is not None:
            sel0 = face_selection[topo.face_pairs[:, 0]]
            f1 = topo.face_pairs[:, 1]
            sel1 = np.where(f1 >= 0, face_selection[np.maximum(f1, 0)], True)
            eligible &= sel0 & sel1
        return eligible

    def refine_once(
        self,
        mesh: PointSet,
        *,
        face_selection: Optional[np.ndarray] = None,
    ) -> tuple[int, Optional[np.ndarray]]:
        """
        One refinement pass, applied in place on ``mesh``.

        Returns:
            (number of split edges, updated face selection or None)
        """
        if not mesh.has_faces:
            return 0, face_selection

        pos = mesh.positions
        faces = mesh.faces
        n_v = int(pos.shape[0])
        topo = build_edge_topology(faces)
        split = self.eligible_edges(pos, faces, topo, face_selection)
        n_split = int(np.count_nonzero(split))
        if n_split == 0:
            return 0, face_selection

        split_ids = np.flatnonzero(split)
        edge_vertex = np.full(topo.edges.shape[0], -1, dtype=np.int64)
        edge_vertex[split_ids] = n_v + np.arange(n_split, dtype=np.int64)

        odd = self._odd_positions(pos, faces, topo, split_ids)
        even = self._even_positions(pos, topo, split)

        new_pos = np.vstack([even, odd])
        new_faces, parents = self._split_faces(new_pos, faces, topo.face_edges, edge_vertex)

        a = topo.edges[split_ids, 0]
        b = topo.edges[split_ids, 1]
        if mesh.normals is not None:
            nrm = mesh.normals[a] + mesh.normals[b]
            lengths = np.linalg.norm(nrm, axis=1, keepdims=True)
            lengths[lengths == 0] = 1.0
            mesh.normals = np.vstack([mesh.normals, nrm / lengths])
        if mesh.radii is not None:
            mesh.radii = np.concatenate([mesh.radii, 0.5 * (mesh.radii[a] + mesh.radii[b])])

        new_face_sel = None
        if face_selection is not None:
            new_face_sel = np.asarray(face_selection, dtype=bool)[parents]
            fallback = np.concatenate([mesh.selected_mask(), np.ones(n_split, dtype=bool)])
            mesh.selection = vertex_selection_from_faces_strict(
                new_pos.shape[0], new_faces, new_face_sel, fallback
            )
        elif mesh.selection is not None:
            mesh.selection = np.concatenate([mesh.selection, mesh.selection[a] & mesh.selection[b]])

        mesh.positions = new_pos
        mesh.faces = new_faces
        # per-vertex outputs no longer match the topology
        mesh.quality = mesh.k1 = mesh.k2 = mesh.pd1 = mesh.pd2 = mesh.colors = None
        return n_split, new_face_sel

    @staticmethod
    def _odd_positions(pos, faces, topo: EdgeTopology, split_ids: np.ndarray) -> np.ndarray:
        a = pos[topo.edges[split_ids, 0]]
        b = pos[topo.edges[split_ids, 1]]
        odd = 0.5 * (a + b)

        interior = topo.counts[split_ids] == 2
        if np.any(interior):
            ids = split_ids[interior]
            f0 = topo.face_pairs[ids, 0]
            f1 = topo.face_pairs[ids, 1]
            c = pos[faces[f0, (topo.slot_pairs[ids, 0] + 2) % 3]]
            d = pos[faces[f1, (topo.slot_pairs[ids, 1] + 2) % 3]]
            odd[interior] = 0.375 * (a[interior] + b[interior]) + 0.125 * (c + d)
        return odd

    @staticmethod
    def _even_positions(pos, topo: EdgeTopology, split: np.ndarray) -> np.ndarray:
        """Loop even rule for interior vertices whose incident edges are all split."""
        n_v = int(pos.shape[0])
        ends = topo.edges.reshape(-1)
        valence = np.bincount(ends, minlength=n_v)
        split_valence = np.bincount(ends, weights=np.repeat(split, 2).astype(np.float64), minlength=n_v)

        on_boundary = np.zeros(n_v, dtype=bool)
        on_boundary[topo.edges[topo.counts != 2].reshape(-1)] = True

        movable = (valence >= 3) & (split_valence == valence) & ~on_boundary
        if not np.any(movable):
            return pos.copy()

        neighbor_sum = np.zeros_like(pos)
        np.add.at(neighbor_sum, topo.edges[:, 0], pos[topo.edges[:, 1]])
        np.add.at(neighbor_sum, topo.edges[:, 1], pos[topo.edges[:, 0]])

        n = valence[movable].astype(np.float64)
        beta = (0.625 - (0.375 + 0.25 * np.cos(2.0 * np.pi / n)) ** 2) / n
        out = pos.copy()
        out[movable] = (1.0 - n * beta)[:, None] * pos[movable] + beta[:, None] * neighbor_sum[movable]
        return out

    @staticmethod
    def _split_faces(pos, faces, face_edges, edge_vertex) -> tuple[np.ndarray, np.ndarray]:
        mids = edge_vertex[face_edges]  # (F, 3), -1 where not split
        n_split = np.count_nonzero(mids >= 0, axis=1)
        fidx = np.arange(faces.shape[0], dtype=np.int64)
        out_faces = [faces[n_split == 0]]
        out_parents = [fidx[n_split == 0]]

        def rotated(sel: np.ndarray, shift: np.ndarray):
            rows = np.flatnonzero(sel)
            cols = (np.arange(3)[None, :] + shift[:, None]) % 3
            return rows, faces[rows[:, None], cols], mids[rows[:, None], cols]

        # one split edge, rotated to slot 0
        one = n_split == 1
        if np.any(one):
            shift = np.argmax(mids[one] >= 0, axis=1)
            rows, v, m = rotated(one, shift)
            out_faces += [
                np.stack([v[:, 0], m[:, 0], v[:, 2]], axis=1),
                np.stack([m[:, 0], v[:, 1], v[:, 2]], axis=1),
            ]
            out_parents += [rows, rows]

        # two split edges, unsplit edge rotated to slot 2
        two = n_split == 2
        if np.any(two):
            unsplit = np.argmin(mids[two] >= 0, axis=1)
            rows, v, m = rotated(two, (unsplit + 1) % 3)
            diag_a = np.linalg.norm(pos[v[:, 0]] - pos[m[:, 1]], axis=1)
            diag_b = np.linalg.norm(pos[m[:, 0]] - pos[v[:, 2]], axis=1)
            use_a = diag_a <= diag_b
            t2 = np.where(use_a[:, None],
                          np.stack([v[:, 0], m[:, 0], m[:, 1]], axis=1),
                          np.stack([v[:, 0], m[:, 0], v[:, 2]], axis=1))
            t3 = np.where(use_a[:, None],
                          np.stack([v[:, 0], m[:, 1], v[:, 2]], axis=1),
                          np.stack([m[:, 0], m[:, 1], v[:, 2]], axis=1))
            out_faces += [np.stack([m[:, 0], v[:, 1], m[:, 1]], axis=1), t2, t3]
            out_parents += [rows, rows, rows]

        three = n_split == 3
        if np.any(three):
            rows = np.flatnonzero(three)
            v = faces[rows]
            m = mids[rows]
            out_faces += [
                np.stack([v[:, 0], m[:, 0], m[:, 2]], axis=1),
                np.stack([m[:, 0], v[:, 1], m[:, 1]], axis=1),
                np.stack([m[:, 2], m[:, 1], v[:, 2]], axis=1),
                np.stack([m[:, 0], m[:, 1], m[:, 2]], axis=1),
            ]
            out_parents += [rows, rows, rows, rows]

        return (
            np.vstack(out_faces).astype(np.int64, copy=False),
            np.concatenate(out_parents).astype(np.int64, copy=False),
        )

    def run(
        self,
        mesh: PointSet,
        project_fn: Callable[[PointSet, np.ndarray], None],
        *,
        selection_only: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ) -> RefinementReport:
        """
        Refine/project loop: ``max_subdivisions + 1`` passes, the first one
        projecting only.

        Args:
            mesh: mesh (or point cloud) refined and projected in place
            project_fn: ``project_fn(mesh, mask)`` projects the masked vertices
            selection_only: restrict refinement and projection to the selection
            reporter: progress/cancellation

        Returns:
            RefinementReport
        """
        report = RefinementReport()
        face_sel = None
        if selection_only:
            vsel = mesh.selected_mask()
            if mesh.has_faces:
                face_sel = vsel[mesh.faces].all(axis=1)
                mesh.selection = vertex_selection_from_faces_strict(
                    mesh.n_points, mesh.faces, face_sel, vsel
                )
            else:
                mesh.selection = vsel

        n_passes = self.max_subdivisions + 1
        for k in range(n_passes):
            if reporter is not None:
                reporter.report(1 + 98 * k / n_passes, "MLS refinement...")
            n_split = 0
            if k != 0:
                n_split, face_sel = self.refine_once(mesh, face_selection=face_sel)
                _LOGGER.debug("Refinement pass %d: split %d edges", k, n_split)

            mask = mesh.selected_mask() if selection_only else np.ones(mesh.n_points, dtype=bool)
            project_fn(mesh, mask)

            report.passes += 1
            report.split_edges.append(n_split)
            report.vertex_counts.append(mesh.n_points)
            report.face_counts.append(mesh.n_faces)
        return report
