import unittest

import numpy as np

from pointmls.core.components import delete_faces, face_components, select_small_components
from pointmls.core.errors import InvalidArgument
from pointmls.core.point_set import PointSet


def _grid(nx: int, ny: int, offset=(0.0, 0.0, 0.0), start: int = 0):
    xs, ys = np.meshgrid(np.arange(nx + 1, dtype=np.float64), np.arange(ny + 1, dtype=np.float64), indexing="ij")
    vertices = np.stack([xs.reshape(-1), ys.reshape(-1), np.zeros((nx + 1) * (ny + 1))], axis=1)
    vertices += np.asarray(offset, dtype=np.float64)
    faces = []
    for i in range(nx):
        for j in range(ny):
            a = i * (ny + 1) + j
            b = a + ny + 1
            faces.append([a, b, b + 1])
            faces.append([a, b + 1, a + 1])
    return vertices, np.asarray(faces, dtype=np.int64) + start


def _tetrahedron(start: int):
    vertices = np.asarray(
        [[0.0, 0.0, 10.0], [1.0, 0.0, 10.0], [0.0, 1.0, 10.0], [0.0, 0.0, 11.0]]
    )
    faces = np.asarray([[0, 2, 1], [0, 1, 3], [1, 2, 3], [0, 3, 2]], dtype=np.int64) + start
    return vertices, faces


def _big_and_small() -> PointSet:
    v_big, f_big = _grid(25, 20)  # 1000 faces
    v_small, f_small = _grid(5, 5, offset=(100.0, 0.0, 0.0), start=v_big.shape[0])  # 50 faces
    return PointSet(positions=np.vstack([v_big, v_small]), faces=np.vstack([f_big, f_small]))


class TestComponents(unittest.TestCase):
    def test_component_labels(self):
        mesh = _big_and_small()
        comps = face_components(mesh.faces)

        self.assertEqual(comps.n_components, 2)
        self.assertEqual(sorted(comps.sizes.tolist()), [50, 1000])
        self.assertFalse(bool(np.any(comps.closed)))

    def test_small_component_is_selected(self):
        mesh = _big_and_small()
        sel = select_small_components(mesh.faces, 0.1)

        self.assertEqual(int(np.count_nonzero(sel)), 50)
        self.assertTrue(bool(np.all(sel[1000:])))

    def test_delete_small_component(self):
        mesh = _big_and_small()
        n_vertices_big = 26 * 21
        removed_faces, removed_vertices = delete_faces(mesh, select_small_components(mesh.faces, 0.1))

        self.assertEqual(removed_faces, 50)
        self.assertEqual(removed_vertices, 36)
        self.assertEqual(mesh.n_faces, 1000)
        self.assertEqual(mesh.n_points, n_vertices_big)
        self.assertLess(float(mesh.positions[:, 0].max()), 50.0)

    def test_non_closed_only(self):
        v_big, f_big = _grid(25, 20)
        v_tet, f_tet = _tetrahedron(v_big.shape[0])
        faces = np.vstack([f_big, f_tet])

        comps = face_components(faces)
        self.assertEqual(sorted(comps.closed.tolist()), [False, True])

        self.assertEqual(int(np.count_nonzero(select_small_components(faces, 0.1))), 4)
        self.assertEqual(
            int(np.count_nonzero(select_small_components(faces, 0.1, non_closed_only=True))), 0
        )

    def test_ratio_bounds(self):
        _, faces = _grid(2, 2)
        with self.assertRaises(InvalidArgument):
            select_small_components(faces, 1.5)
        self.assertFalse(bool(np.any(select_small_components(faces, 0.0))))


if __name__ == "__main__":
    unittest.main()
