import unittest

import numpy as np
import trimesh

from pointmls.core.apss import APSSModel
from pointmls.core.errors import Cancelled, InvalidArgument
from pointmls.core.mls_filters import (
    build_surface,
    colorize_curvature,
    estimate_radius_from_density,
    marching_cubes,
    mls_projection,
    quality_ramp,
    select_small_components,
)
from pointmls.core.parameters import MlsParameters
from pointmls.core.point_set import PointSet
from pointmls.core.rimls import RIMLSModel


def _fibonacci_sphere(n: int):
    i = np.arange(n, dtype=np.float64) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / n)
    theta = np.pi * (1.0 + 5.0 ** 0.5) * i
    return np.stack(
        [np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1
    )


def _control(n: int = 2000) -> PointSet:
    dirs = _fibonacci_sphere(n)
    return PointSet(positions=dirs.copy(), normals=dirs.copy())


def _noisy_proxy(n: int = 300, scale: float = 1.04) -> PointSet:
    dirs = _fibonacci_sphere(n)
    return PointSet(positions=dirs * scale)


class TestBuildSurface(unittest.TestCase):
    def test_variants(self):
        ps = _control(500)
        self.assertIsInstance(build_surface(ps, "apss"), APSSModel)
        self.assertIsInstance(build_surface(ps, "RIMLS", {"SigmaN": 1.0}), RIMLSModel)
        approx = build_surface(ps, "apss", MlsParameters(accurate_normal=False))
        self.assertEqual(approx.gradient_hint, "approx")
        with self.assertRaises(InvalidArgument):
            build_surface(ps, "imls")


class TestProjectionFilter(unittest.TestCase):
    def test_project_proxy_points(self):
        control = _control()
        proxy = _noisy_proxy()
        report = mls_projection(control, proxy, "apss")

        self.assertEqual(report.n_projected, proxy.n_points)
        self.assertEqual(report.n_degenerate, 0)
        self.assertTrue(report.radii_computed)
        r = np.linalg.norm(proxy.positions, axis=1)
        np.testing.assert_allclose(r, 1.0, atol=1e-3)
        dots = np.einsum("ij,ij->i", proxy.normals, proxy.positions / r[:, None])
        self.assertGreater(float(dots.min()), 0.999)
        # the control set is not moved
        np.testing.assert_allclose(np.linalg.norm(control.positions, axis=1), 1.0)

    def test_project_control_onto_itself(self):
        control = _control(1000)
        control.positions *= 1.0 + 0.01 * np.sin(np.arange(1000))[:, None]
        report = mls_projection(control, variant="rimls")

        self.assertEqual(report.n_projected, 1000)
        self.assertEqual(report.refinement.passes, 1)

    def test_refined_proxy_mesh(self):
        control = _control()
        proxy = PointSet.from_trimesh(trimesh.creation.icosphere(subdivisions=2, radius=1.02))
        report = mls_projection(
            control, proxy, "apss", {"MaxSubdivisions": 1, "ThAngleInDegree": 45.0}
        )

        self.assertEqual(report.refinement.vertex_counts, [162, 642])
        self.assertEqual(proxy.n_points, 642)
        self.assertEqual(proxy.n_faces, 1280)
        np.testing.assert_allclose(np.linalg.norm(proxy.positions, axis=1), 1.0, atol=1e-3)

    def test_selection_only_point_cloud(self):
        control = _control()
        proxy = _noisy_proxy()
        selected = proxy.positions[:, 2] > 0.0
        proxy.selection = selected.copy()
        before = proxy.positions.copy()

        mls_projection(control, proxy, "apss", {"SelectionOnly": True})

        np.testing.assert_allclose(proxy.positions[~selected], before[~selected])
        np.testing.assert_allclose(np.linalg.norm(proxy.positions[selected], axis=1), 1.0, atol=1e-3)

    def test_unreferenced_vertices_are_removed_first(self):
        ico = trimesh.creation.icosphere(subdivisions=3)
        control = PointSet(
            positions=np.vstack([ico.vertices, [[5.0, 5.0, 5.0]]]),
            faces=np.asarray(ico.faces),
        )
        report = mls_projection(control, _noisy_proxy(50), "apss")

        self.assertEqual(report.n_removed_unreferenced, 1)
        self.assertEqual(control.n_points, len(ico.vertices))

    def test_cancellation_leaves_proxy_untouched(self):
        control = _control(500)
        proxy = _noisy_proxy(100)
        before = proxy.positions.copy()

        with self.assertRaises(Cancelled):
            mls_projection(control, proxy, "apss", callback=lambda pct, msg: False)
        np.testing.assert_array_equal(proxy.positions, before)
        self.assertIsNone(proxy.normals)

    def test_cancellation_leaves_control_untouched(self):
        ico = trimesh.creation.icosphere(subdivisions=3)
        control = PointSet(
            positions=np.vstack([ico.vertices, [[5.0, 5.0, 5.0]]]),
            faces=np.asarray(ico.faces),
        )

        with self.assertRaises(Cancelled):
            mls_projection(control, _noisy_proxy(50), "apss", callback=lambda pct, msg: False)
        self.assertEqual(control.n_points, len(ico.vertices) + 1)
        self.assertIsNone(control.radii)

    def test_invalid_parameters_raise_before_work(self):
        control = _control(200)
        with self.assertRaises(InvalidArgument):
            mls_projection(control, _noisy_proxy(10), "apss", {"FilterScale": -2})
        self.assertIsNone(control.radii)


class TestColorizeFilter(unittest.TestCase):
    def test_mean_curvature_on_sphere(self):
        ps = _control(1500)
        report = colorize_curvature(ps, "apss", {"CurvatureType": "Mean"})

        self.assertEqual(report.n_evaluated, 1500)
        self.assertEqual(report.n_invalid, 0)
        np.testing.assert_allclose(ps.quality, 1.0, rtol=1e-2)
        np.testing.assert_allclose(ps.k1, 1.0, rtol=1e-2)
        np.testing.assert_allclose(ps.k2, 1.0, rtol=1e-2)
        self.assertEqual(ps.pd1.shape, (1500, 3))
        self.assertEqual(ps.colors.shape, (1500, 4))
        self.assertEqual(ps.colors.dtype, np.uint8)
        # colorization does not move the points
        np.testing.assert_allclose(np.linalg.norm(ps.positions, axis=1), 1.0)

    def test_approx_mean_requires_apss(self):
        ps = _control(500)
        report = colorize_curvature(ps, "apss", {"CurvatureType": 4})
        self.assertEqual(report.curvature_type, "approx_mean")
        np.testing.assert_allclose(ps.quality, 1.0, rtol=1e-3)

        with self.assertRaises(InvalidArgument):
            colorize_curvature(_control(500), "rimls", {"CurvatureType": "ApproxMean"})

    def test_selection_only(self):
        ps = _control(800)
        ps.selection = ps.positions[:, 0] > 0.0
        colorize_curvature(ps, "apss", {"SelectionOnly": True, "CurvatureType": "K1"})

        np.testing.assert_allclose(ps.quality[~ps.selection], 0.0)
        np.testing.assert_allclose(ps.quality[ps.selection], 1.0, rtol=1e-2)

    def test_cancellation_leaves_point_set_untouched(self):
        ps = _control(300)
        with self.assertRaises(Cancelled):
            colorize_curvature(ps, "apss", callback=lambda pct, msg: False)
        self.assertIsNone(ps.radii)
        self.assertIsNone(ps.quality)
        self.assertIsNone(ps.colors)

    def test_quality_ramp_endpoints(self):
        colors = quality_ramp(np.array([-1.0, 0.0, 0.5, 1.0, 2.0]), 0.0, 1.0)
        np.testing.assert_array_equal(colors[0], [255, 0, 0, 255])
        np.testing.assert_array_equal(colors[1], [255, 0, 0, 255])
        np.testing.assert_array_equal(colors[2], [0, 255, 0, 255])
        np.testing.assert_array_equal(colors[3], [0, 0, 255, 255])
        np.testing.assert_array_equal(colors[4], [0, 0, 255, 255])


class TestOtherFilters(unittest.TestCase):
    def test_radius_from_density(self):
        ps = _control(600)
        ps.radii = np.full(600, 9.0)
        report = estimate_radius_from_density(ps, {"NbNeighbors": 8})

        self.assertEqual(report.k, 8)
        self.assertLess(float(ps.radii.max()), 1.0)
        self.assertAlmostEqual(report.mean_radius, float(ps.radii.mean()))

    def test_select_small_components_filter(self):
        big = trimesh.creation.icosphere(subdivisions=3)  # 1280 faces
        small = trimesh.creation.icosphere(subdivisions=0)  # 20 faces
        small.apply_translation([5.0, 0.0, 0.0])
        mesh = PointSet(
            positions=np.vstack([big.vertices, small.vertices]),
            faces=np.vstack([big.faces, np.asarray(small.faces) + len(big.vertices)]),
        )

        report = select_small_components(mesh, {"NbFaceRatio": 0.1})
        self.assertEqual(report.n_components, 2)
        self.assertEqual(report.n_selected_faces, 20)
        self.assertEqual(int(mesh.selection.sum()), 12)

        closed_only = select_small_components(mesh.copy(), {"NbFaceRatio": 0.1, "NonClosedOnly": True})
        self.assertEqual(closed_only.n_selected_faces, 0)

        report = select_small_components(mesh, {"NbFaceRatio": 0.1}, delete=True)
        self.assertEqual(report.n_deleted_faces, 20)
        self.assertEqual(mesh.n_faces, 1280)

    def test_marching_cubes_filter(self):
        center = np.array([-0.017, 0.011, 0.023])
        control = _control()
        control.positions += center
        mesh = marching_cubes(control, "apss", {"Resolution": 30, "FilterScale": 3.0})

        tm = mesh.to_trimesh()
        self.assertTrue(tm.is_watertight)
        self.assertEqual(int(tm.euler_number), 2)
        np.testing.assert_allclose(np.linalg.norm(mesh.vertices - center, axis=1), 1.0, atol=1e-3)
        self.assertEqual(mesh.to_point_set().n_faces, mesh.n_faces)
        self.assertIsNotNone(control.radii)

    def test_marching_cubes_default_support(self):
        control = _control()
        control.positions += np.array([0.013, -0.021, 0.007])
        mesh = marching_cubes(control, "rimls", {"Resolution": 20})

        tm = mesh.to_trimesh()
        self.assertTrue(tm.is_watertight)
        self.assertEqual(int(tm.euler_number), 2)

    def test_marching_cubes_cancellation(self):
        control = _control(500)
        with self.assertRaises(Cancelled):
            marching_cubes(control, "apss", {"Resolution": 10}, callback=lambda pct, msg: False)
        self.assertIsNone(control.radii)


if __name__ == "__main__":
    unittest.main()
