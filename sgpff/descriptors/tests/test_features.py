import unittest

import numpy as np
from numpy.testing import assert_allclose, assert_almost_equal, assert_equal

from sgpff.descriptors.features import (
    B2Calculator,
    ThreeBodyCalculator,
    TwoBodyCalculator,
)
from sgpff.descriptors.structure import LocalEnvironment
from sgpff.errors import ConfigurationError

DELTA = 1e-6


def random_rotation(seed):
    rng = np.random.RandomState(seed)
    q, r = np.linalg.qr(rng.normal(size=(3, 3)))
    return q * np.sign(np.diag(r))


def assert_jacobian(test, calc, env, attr="values"):
    feat = calc.compute(env)
    scale = max(np.abs(feat.jacobian).max(), 1.0)
    for j in range(env.n_neighbors):
        for c in range(3):
            dp = env.displacements.copy()
            dm = env.displacements.copy()
            dp[j, c] += 0.5 * DELTA
            dm[j, c] -= 0.5 * DELTA
            fp = calc.compute(LocalEnvironment(env.species, env.neighbor_species, dp))
            fm = calc.compute(LocalEnvironment(env.species, env.neighbor_species, dm))
            fd = (getattr(fp, attr) - getattr(fm, attr)) / DELTA
            if attr == "values":
                ref = feat.jacobian[:, :, j, c]
            else:
                ref = np.einsum("ud,ud->u", feat.weight_derivs, feat.jacobian[:, :, j, c])
            assert_allclose(fd, ref, atol=1e-5 * scale, rtol=1e-5)


class TestFeatures(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        np.random.seed(11)
        n = 9
        dirs = np.random.normal(size=(n, 3))
        dirs /= np.linalg.norm(dirs, axis=1)[:, None]
        dists = np.random.uniform(1.0, 3.6, size=n)
        cls.disp = dirs * dists[:, None]
        cls.nspec = np.random.choice([1, 8], size=n)
        cls.env = LocalEnvironment(8, cls.nspec, cls.disp, cutoff=4.0)
        cls.b2 = B2Calculator([1, 8], 4.0, 3, 2)
        cls.two = TwoBodyCalculator(4.0)
        cls.three = ThreeBodyCalculator(4.0, cutoff_function="cosine")

    def test_b2_size(self):
        feat = self.b2.compute(self.env)
        n_rad = 2 * 3
        assert_equal(self.b2.n_features, n_rad * (n_rad + 1) // 2 * 3)
        assert_equal(feat.values.shape, (1, self.b2.n_features))
        assert_equal(feat.jacobian.shape, (1, self.b2.n_features, 9, 3))
        assert_equal(feat.keys, [[8]])
        derivs = self.b2.env_derivatives(self.env)
        assert_equal(derivs.shape, (27, self.b2.n_features))
        assert_almost_equal(derivs[3 * 4 + 1], feat.jacobian[0, :, 4, 1])
        assert_almost_equal(
            self.b2.center_derivatives(self.env), -feat.jacobian[0].sum(axis=1)
        )

    def test_b2_power_spectrum(self):
        c, _ = self.b2.single_bond(self.env)
        feat = self.b2.compute(self.env)
        # p_{n1 n2 l} for n1 = 0, n2 = 1, l = 2 follows n1, n2 >= n1, l ordering
        ind = 1 * 3 + 2
        assert_almost_equal(feat.values[0, ind], c[0, 4:9].dot(c[1, 4:9]))
        ind = 6 * 3 + 0
        assert_almost_equal(feat.values[0, ind], c[1, 0] * c[1, 0])

    def test_b2_invariance(self):
        ref = self.b2.compute(self.env).values
        rot = random_rotation(3)
        env = LocalEnvironment(8, self.nspec, self.disp.dot(rot.T))
        assert_allclose(self.b2.compute(env).values, ref, rtol=1e-10, atol=1e-10)
        perm = np.random.permutation(self.nspec.size)
        env = LocalEnvironment(8, self.nspec[perm], self.disp[perm])
        assert_allclose(self.b2.compute(env).values, ref, rtol=1e-10, atol=1e-10)

    def test_b2_jacobian(self):
        assert_jacobian(self, self.b2, self.env)
        calc = B2Calculator(
            [1, 8],
            4.0,
            4,
            3,
            radial_basis="equispaced_gaussians",
            cutoff_function="cosine",
        )
        assert_jacobian(self, calc, self.env)

    def test_two_body(self):
        feat = self.two.compute(self.env)
        assert_equal(feat.values.shape, (9, 1))
        assert_almost_equal(feat.values[:, 0], np.linalg.norm(self.disp, axis=1))
        assert_equal(feat.keys, np.sort(np.stack([[8] * 9, self.nspec], axis=1), axis=1))
        assert_jacobian(self, self.two, self.env)
        assert_jacobian(self, self.two, self.env, attr="weights")

    def test_three_body(self):
        feat = self.three.compute(self.env)
        assert_equal(feat.values.shape, (72, 3))
        assert_equal(feat.keys[:, 0], 8)
        assert_jacobian(self, self.three, self.env)
        assert_jacobian(self, self.three, self.env, attr="weights")

    def test_no_neighbors(self):
        env = LocalEnvironment(1, [8], [[5.0, 0.0, 0.0]], cutoff=4.0)
        assert_equal(env.n_neighbors, 0)
        feat = self.b2.compute(env)
        assert_equal(feat.values, np.zeros((1, self.b2.n_features)))
        assert_equal(feat.jacobian.shape, (1, self.b2.n_features, 0, 3))
        assert_equal(self.two.compute(env).n_units, 0)
        assert_equal(self.three.compute(env).n_units, 0)

    def test_errors(self):
        env = LocalEnvironment(8, [6], [[1.0, 0.0, 0.0]])
        with self.assertRaises(ConfigurationError):
            self.b2.compute(env)
        env = LocalEnvironment(6, [8], [[1.0, 0.0, 0.0]])
        with self.assertRaises(ConfigurationError):
            self.b2.compute(env)
        with self.assertRaises(ConfigurationError):
            B2Calculator([1, 8], 4.0, 3, 2, radial_basis="bessel")
        env = LocalEnvironment(8, [8], [[1.0, 0.0, 0.0]], cutoff=3.0)
        with self.assertRaises(ConfigurationError):
            self.b2.compute(env)
        with self.assertRaises(ConfigurationError):
            LocalEnvironment(8, [8, 8], [[1.0, 0.0, 0.0]])

    def test_cache_key(self):
        other = B2Calculator([1, 8], 4.0, 3, 2)
        assert other == self.b2
        assert hash(other) == hash(self.b2)
        assert other != B2Calculator([1, 8], 4.0, 3, 3)
        env = LocalEnvironment(8, self.nspec, self.disp)
        assert env.get_features(self.b2) is env.get_features(other)
        clone = B2Calculator.from_dict(self.b2.to_dict())
        assert clone == self.b2


if __name__ == "__main__":
    unittest.main()
