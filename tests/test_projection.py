import unittest

import numpy as np

from pointmls.core.errors import InvalidArgument
from pointmls.core.mls_surface import SurfaceFit
from pointmls.core.projection import project


class _PlaneField:
    """f(x) = z with an optional flat (zero gradient) region for x < 0."""

    def __init__(self, flat_left: bool = False):
        self.flat_left = flat_left
        self.calls = 0

    def fit(self, p):
        self.calls += 1
        x = np.asarray(p, dtype=np.float64).reshape(-1, 3)
        g = np.tile([0.0, 0.0, 1.0], (x.shape[0], 1))
        if self.flat_left:
            g[x[:, 0] < 0.0] = 0.0
        return SurfaceFit(
            potential=x[:, 2].copy(),
            gradient=g,
            local_radius=np.ones(x.shape[0]),
            valid=np.ones(x.shape[0], dtype=bool),
        )


class TestProjection(unittest.TestCase):
    def test_plane_converges_in_two_steps(self):
        pts = np.array([[0.3, -0.2, 0.7], [1.0, 2.0, -3.0]])
        res = project(_PlaneField(), pts, max_iters=15, accuracy=1e-4)

        np.testing.assert_allclose(res.position[:, 2], 0.0, atol=1e-12)
        np.testing.assert_allclose(res.position[:, :2], pts[:, :2])
        self.assertTrue(bool(np.all(res.converged)))
        # first step lands on the plane, second step is zero
        np.testing.assert_array_equal(res.iterations, [2, 2])
        np.testing.assert_allclose(res.normal, [[0.0, 0.0, 1.0]] * 2)
        self.assertEqual(res.n_converged, 2)

    def test_max_iters_one(self):
        res = project(_PlaneField(), np.array([0.0, 0.0, 5.0]), max_iters=1, accuracy=1e-4)
        self.assertEqual(res.iterations, 1)
        self.assertFalse(res.converged)
        self.assertAlmostEqual(float(res.position[2]), 0.0)

    def test_flat_gradient_is_not_an_error(self):
        pts = np.array([[-1.0, 0.0, 0.5], [1.0, 0.0, 0.5]])
        res = project(_PlaneField(flat_left=True), pts, max_iters=10, accuracy=1e-6)

        np.testing.assert_array_equal(res.degenerate, [True, False])
        np.testing.assert_array_equal(res.converged, [False, True])
        # the degenerate point keeps its last finite estimate
        np.testing.assert_allclose(res.position[0], pts[0])
        np.testing.assert_allclose(res.normal[0], 0.0)
        self.assertEqual(res.n_degenerate, 1)

    def test_invalid_arguments(self):
        with self.assertRaises(InvalidArgument):
            project(_PlaneField(), np.zeros(3), max_iters=0, accuracy=1e-4)
        with self.assertRaises(InvalidArgument):
            project(_PlaneField(), np.zeros(3), max_iters=5, accuracy=0.0)


if __name__ == "__main__":
    unittest.main()
