"""
Iso-surface extraction of an MLS surface by marching cubes.

The field is sampled on a regular grid covering the point bounding box, inflated
by the largest support radius. Samples outside the MLS domain are extrapolated
from the nearest tangent plane and cells with no corner in the domain are
skipped. The raw marching cubes vertices are then projected onto the surface
and the small spurious components that appear where the field crosses zero far
from the points are removed.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

import numpy as np
import trimesh
from skimage import measure

from .components import delete_faces, select_small_components
from .errors import InvalidArgument
from .logging_utils import log_once
from .mls_defaults import DEFAULTS
from .mls_surface import MlsSurface
from .point_set import PointSet
from .progress import ProgressReporter

_LOGGER = logging.getLogger(__name__)

PROJECTION_CHUNK = 4096


@dataclass
class ExtractedMesh:
    """
    Marching cubes output.

    Attributes:
        vertices: (N, 3) positions
        faces: (M, 3) triangles, wound outward
        normals: (N, 3) unit normals
        n_degenerate: vertices whose re-projection stopped on a degenerate gradient
        n_removed_faces: faces dropped with the small components
    """
    vertices: np.ndarray
    faces: np.ndarray
    normals: np.ndarray
    n_degenerate: int = 0
    n_removed_faces: int = 0

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_faces(self) -> int:
        return int(self.faces.shape[0])

    def to_trimesh(self) -> trimesh.Trimesh:
        return trimesh.Trimesh(
            vertices=self.vertices,
            faces=self.faces,
            vertex_normals=self.normals,
            process=False,
        )

    def to_point_set(self) -> PointSet:
        return PointSet(positions=self.vertices, normals=self.normals, faces=self.faces)


def _empty_mesh() -> ExtractedMesh:
    return ExtractedMesh(
        vertices=np.zeros((0, 3), dtype=np.float64),
        faces=np.zeros((0, 3), dtype=np.int64),
        normals=np.zeros((0, 3), dtype=np.float64),
    )


class IsoSurfaceExtractor:
    """
    Args:
        model: MLS surface to polygonize
        resolution: grid cells per bounding box axis (>= 2)
        small_component_ratio: components with fewer faces than this fraction of
            the largest are removed (0 disables the cleanup)
    """

    def __init__(
        self,
        model: MlsSurface,
        resolution: int = DEFAULTS.mc_resolution,
        small_component_ratio: float = DEFAULTS.small_component_ratio,
    ):
        resolution = int(resolution)
        if resolution < 2:
            raise InvalidArgument(f"resolution must be >= 2 (got {resolution})")
        small_component_ratio = float(small_component_ratio)
        if not np.isfinite(small_component_ratio) or not 0.0 <= small_component_ratio <= 1.0:
            raise InvalidArgument(
                f"small_component_ratio must be in [0, 1] (got {small_component_ratio})"
            )
        self.model = model
        self.resolution = resolution
        self.small_component_ratio = small_component_ratio

    def grid_box(self) -> np.ndarray:
        """[[min], [max]] of the sampling grid."""
        box = self.model.bounding_box()
        pad = self.model.max_support
        return np.array([box[0] - pad, box[1] + pad])

    def sample_volume(
        self, reporter: Optional[ProgressReporter] = None
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Field samples on the (resolution + 1)^3 grid, one x slice at a time.

        Samples outside the MLS domain take the signed distance to the tangent
        plane of the nearest point, so cells crossing the domain border keep a
        consistent sign.

        Returns:
            (volume, in_domain, spacing)
        """
        lo, hi = self.grid_box()
        n = self.resolution + 1
        spacing = (hi - lo) / float(self.resolution)
        ys = lo[1] + spacing[1] * np.arange(n)
        zs = lo[2] + spacing[2] * np.arange(n)
        yy, zz = np.meshgrid(ys, zs, indexing="ij")
        slice_pts = np.empty((n * n, 3), dtype=np.float64)
        slice_pts[:, 1] = yy.reshape(-1)
        slice_pts[:, 2] = zz.reshape(-1)

        step = None if reporter is None else reporter.span(0, 70, "Marching cubes: sampling MLS field...")
        volume = np.empty((n, n, n), dtype=np.float64)
        in_domain = np.empty((n, n, n), dtype=bool)
        for i in range(n):
            slice_pts[:, 0] = lo[0] + spacing[0] * i
            values = np.asarray(self.model.evaluate(slice_pts), dtype=np.float64)
            inside = np.isfinite(values)
            if not bool(np.all(inside)):
                values[~inside] = self.model.tangent_distance(slice_pts[~inside])
            volume[i] = values.reshape(n, n)
            in_domain[i] = inside.reshape(n, n)
            if step is not None:
                step((i + 1) / n)
        return volume, in_domain, spacing

    @staticmethod
    def cell_mask(volume: np.ndarray, in_domain: np.ndarray) -> np.ndarray:
        """
        Cells to polygonize: all 8 corners finite and at least one inside the
        MLS domain. skimage reads the flag of a cell at its far corner.
        """
        def _corners(a, op):
            return op.reduce(
                [
                    a[:-1, :-1, :-1], a[1:, :-1, :-1], a[:-1, 1:, :-1], a[:-1, :-1, 1:],
                    a[1:, 1:, :-1], a[1:, :-1, 1:], a[:-1, 1:, 1:], a[1:, 1:, 1:],
                ]
            )

        cell = _corners(np.isfinite(volume), np.logical_and) & _corners(in_domain, np.logical_or)
        mask = np.zeros(volume.shape, dtype=bool)
        mask[1:, 1:, 1:] = cell
        return mask

    def extract(self, reporter: Optional[ProgressReporter] = None) -> ExtractedMesh:
        """
        Polygonize the zero level set.

        Raises:
            Cancelled: when the progress callback asks to stop
        """
        if reporter is None:
            reporter = ProgressReporter()

        volume, in_domain, spacing = self.sample_volume(reporter)
        lo = self.grid_box()[0]
        mask = self.cell_mask(volume, in_domain)

        finite = volume[in_domain]
        if finite.size == 0 or not (finite.min() < 0.0 < finite.max()) or not np.any(mask):
            log_once(
                _LOGGER,
                "iso_surface:no_crossing",
                logging.WARNING,
                "Marching cubes: the MLS field has no zero crossing on the grid",
            )
            return _empty_mesh()

        # masked-out cells never read these values
        filled = np.where(np.isfinite(volume), volume, 1.0)
        reporter.report(72, "Marching cubes: polygonizing...")
        verts, faces, normals, _values = measure.marching_cubes(
            filled,
            level=0.0,
            spacing=tuple(float(s) for s in spacing),
            gradient_direction="ascent",
            allow_degenerate=False,
            mask=mask,
        )
        verts = verts.astype(np.float64) + lo[None, :]
        faces = faces.astype(np.int64)
        normals = normals.astype(np.float64)
        _LOGGER.debug("Marching cubes: %d vertices, %d faces", verts.shape[0], faces.shape[0])

        n_degenerate = self._reproject(verts, normals, reporter)
        faces = self._orient_outward(verts, faces, normals)

        mesh = PointSet(positions=verts, normals=normals, faces=faces)
        mesh.remove_unreferenced_vertices()
        n_removed = 0
        if self.small_component_ratio > 0.0 and mesh.has_faces:
            reporter.report(96, "Marching cubes: removing small components...")
            small = select_small_components(mesh.faces, self.small_component_ratio)
            n_removed, n_removed_vertices = delete_faces(mesh, small)
            if n_removed:
                _LOGGER.info(
                    "Marching cubes: removed %d faces and %d vertices of small components",
                    n_removed,
                    n_removed_vertices,
                )

        reporter.report(100, "Marching cubes MLS meshing done.", force=True)
        return ExtractedMesh(
            vertices=mesh.positions,
            faces=mesh.faces,
            normals=mesh.normals,
            n_degenerate=n_degenerate,
            n_removed_faces=n_removed,
        )

    @staticmethod
    def _orient_outward(verts: np.ndarray, faces: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """Flip the winding if face normals disagree with the field gradient."""
        if faces.shape[0] == 0:
            return faces
        v0 = verts[faces[:, 0]]
        fn = np.cross(verts[faces[:, 1]] - v0, verts[faces[:, 2]] - v0)
        vn = normals[faces[:, 0]] + normals[faces[:, 1]] + normals[faces[:, 2]]
        if float(np.einsum("ij,ij->", fn, vn)) < 0.0:
            return np.ascontiguousarray(faces[:, ::-1])
        return faces

    def _reproject(self, verts: np.ndarray, normals: np.ndarray, reporter: ProgressReporter) -> int:
        """Project vertices onto the surface in place; returns the degenerate count."""
        n = int(verts.shape[0])
        step = reporter.span(75, 95, "MLS projection...")
        n_degenerate = 0
        for start in range(0, n, PROJECTION_CHUNK):
            stop = min(n, start + PROJECTION_CHUNK)
            res = self.model.project(verts[start:stop], with_normal=True)
            ok = ~res.degenerate
            verts[start:stop][ok] = res.position[ok]
            normals[start:stop][ok] = res.normal[ok]
            n_degenerate += int(np.count_nonzero(res.degenerate))
            step(stop / n)

        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        lengths[lengths == 0] = 1.0
        normals /= lengths
        if n_degenerate:
            _LOGGER.info("Marching cubes: %d vertices kept their grid position (degenerate projection)", n_degenerate)
        return n_degenerate
