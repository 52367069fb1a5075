"""
Point Set Module
점군/메쉬 데이터 컨테이너

The host hands the engine a vertex collection with positions, optional normals,
radii, selection flags and optional triangle faces. Output slots (quality,
principal curvatures and directions, colors) are assigned in place.
"""

from dataclasses import dataclass, field
from typing import Optional
import numpy as np

import trimesh

from .errors import InvalidArgument


@dataclass
class PointSet:
    """
    점군 데이터 컨테이너

    Attributes:
        positions: (N, 3) point positions
        normals: (N, 3) unit normals (optional)
        radii: (N,) local point spacing (optional, see spacing.estimate_radii)
        faces: (M, 3) triangle indices when the set is a mesh (optional)
        selection: (N,) vertex selection flags (optional)
        quality: (N,) scalar output slot
        k1, k2: (N,) principal curvature output slots
        pd1, pd2: (N, 3) principal direction output slots
        colors: (N, 4) uint8 RGBA output slot
    """
    positions: np.ndarray
    normals: Optional[np.ndarray] = None
    radii: Optional[np.ndarray] = None
    faces: Optional[np.ndarray] = None
    selection: Optional[np.ndarray] = None

    quality: Optional[np.ndarray] = field(default=None, repr=False)
    k1: Optional[np.ndarray] = field(default=None, repr=False)
    k2: Optional[np.ndarray] = field(default=None, repr=False)
    pd1: Optional[np.ndarray] = field(default=None, repr=False)
    pd2: Optional[np.ndarray] = field(default=None, repr=False)
    colors: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        """데이터 검증 및 타입 변환"""
        self.positions = np.asarray(self.positions, dtype=np.float64).reshape(-1, 3)
        n = self.n_points

        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float64).reshape(-1, 3)
            if self.normals.shape[0] != n:
                raise InvalidArgument(f"normals has {self.normals.shape[0]} rows, expected {n}")
        if self.radii is not None:
            self.radii = np.asarray(self.radii, dtype=np.float64).reshape(-1)
            if self.radii.shape[0] != n:
                raise InvalidArgument(f"radii has {self.radii.shape[0]} entries, expected {n}")
        if self.faces is not None:
            self.faces = np.asarray(self.faces, dtype=np.int64).reshape(-1, 3)
            if self.faces.size and (self.faces.min() < 0 or self.faces.max() >= n):
                raise InvalidArgument("faces reference vertices out of range")
        if self.selection is not None:
            self.selection = np.asarray(self.selection, dtype=bool).reshape(-1)
            if self.selection.shape[0] != n:
                raise InvalidArgument(f"selection has {self.selection.shape[0]} entries, expected {n}")

    @property
    def n_points(self) -> int:
        return int(self.positions.shape[0])

    @property
    def n_faces(self) -> int:
        return 0 if self.faces is None else int(self.faces.shape[0])

    @property
    def has_faces(self) -> bool:
        return self.n_faces > 0

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    @property
    def has_radii(self) -> bool:
        return self.radii is not None

    @property
    def bounds(self) -> np.ndarray:
        """경계 박스 [[min_x, min_y, min_z], [max_x, max_y, max_z]]"""
        if self.n_points == 0:
            return np.zeros((2, 3), dtype=np.float64)
        return np.array([self.positions.min(axis=0), self.positions.max(axis=0)])

    def selected_mask(self) -> np.ndarray:
        """Selection flags, all True when no selection is attached."""
        if self.selection is None:
            return np.ones(self.n_points, dtype=bool)
        return self.selection.copy()

    def compute_face_normals(self) -> np.ndarray:
        """Unit face normals (zero rows for degenerate faces)."""
        if not self.has_faces:
            return np.zeros((0, 3), dtype=np.float64)
        v0 = self.positions[self.faces[:, 0]]
        v1 = self.positions[self.faces[:, 1]]
        v2 = self.positions[self.faces[:, 2]]

        cross = np.cross(v1 - v0, v2 - v0)
        norms = np.linalg.norm(cross, axis=1, keepdims=True)
        norms[norms == 0] = 1  # 0으로 나누기 방지
        return cross / norms

    def compute_normals(self, *, force: bool = False) -> None:
        """정점 법선 = 인접 면 법선의 평균 (면이 있을 때만)"""
        if self.normals is not None and not force:
            return
        if not self.has_faces:
            return

        face_normals = self.compute_face_normals()
        normals = np.zeros_like(self.positions)
        np.add.at(normals, self.faces[:, 0], face_normals)
        np.add.at(normals, self.faces[:, 1], face_normals)
        np.add.at(normals, self.faces[:, 2], face_normals)

        norms = np.linalg.norm(normals, axis=1, keepdims=True)
        norms[norms == 0] = 1
        self.normals = normals / norms

    def remove_unreferenced_vertices(self) -> int:
        """
        Drop vertices not used by any face (normals are undefined there).

        Only applies to meshes; point clouds are left untouched.

        Returns:
            number of removed vertices
        """
        if not self.has_faces:
            return 0
        used = np.zeros(self.n_points, dtype=bool)
        used[self.faces.reshape(-1)] = True
        removed = int(self.n_points - np.count_nonzero(used))
        if removed == 0:
            return 0

        remap = np.full(self.n_points, -1, dtype=np.int64)
        remap[used] = np.arange(int(np.count_nonzero(used)), dtype=np.int64)
        self.faces = remap[self.faces]
        for name in ("positions", "normals", "radii", "selection", "quality",
                     "k1", "k2", "pd1", "pd2", "colors"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, np.asarray(value)[used])
        return removed

    def copy(self) -> "PointSet":
        def _c(a):
            return None if a is None else np.array(a, copy=True)

        out = PointSet(
            positions=self.positions.copy(),
            normals=_c(self.normals),
            radii=_c(self.radii),
            faces=_c(self.faces),
            selection=_c(self.selection),
        )
        out.quality = _c(self.quality)
        out.k1 = _c(self.k1)
        out.k2 = _c(self.k2)
        out.pd1 = _c(self.pd1)
        out.pd2 = _c(self.pd2)
        out.colors = _c(self.colors)
        return out

    def to_trimesh(self) -> trimesh.Trimesh:
        """trimesh 객체로 변환"""
        faces = self.faces if self.faces is not None else np.zeros((0, 3), dtype=np.int64)
        return trimesh.Trimesh(
            vertices=self.positions,
            faces=faces,
            vertex_normals=self.normals,
            process=False,
        )

    @classmethod
    def from_trimesh(cls, mesh: trimesh.Trimesh, *, with_normals: bool = True) -> "PointSet":
        """trimesh 객체에서 생성"""
        if not isinstance(mesh, trimesh.Trimesh):
            raise TypeError(f"Expected trimesh.Trimesh, got {type(mesh).__name__}")
        normals = np.asarray(mesh.vertex_normals, dtype=np.float64) if with_normals else None
        return cls(
            positions=np.asarray(mesh.vertices, dtype=np.float64),
            normals=normals,
            faces=np.asarray(mesh.faces, dtype=np.int64),
        )
