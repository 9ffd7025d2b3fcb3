import unittest

import numpy as np
from numpy.testing import assert_allclose, assert_almost_equal

from sgpff.descriptors.cutoffs import CUTOFF_FUNCTIONS, get_cutoff_function
from sgpff.descriptors.radial import RADIAL_BASES, get_radial_basis
from sgpff.descriptors.sph_harm import get_lm_index, real_sph_harm
from sgpff.errors import ConfigurationError

DELTA = 1e-6


class TestRadial(unittest.TestCase):
    def test_cutoffs(self):
        rcut = 4.0
        r = np.linspace(0.1, 4.5, 41)
        for name in CUTOFF_FUNCTIONS:
            fn = get_cutoff_function(name)
            f, df = fn(r, rcut)
            assert_almost_equal(f[r >= rcut], 0)
            assert_almost_equal(df[r >= rcut], 0)
            inside = r < rcut - 2 * DELTA
            fp, _ = fn(r + 0.5 * DELTA, rcut)
            fm, _ = fn(r - 0.5 * DELTA, rcut)
            assert_allclose(df[inside], ((fp - fm) / DELTA)[inside], atol=1e-6)
        f, _ = get_cutoff_function("quadratic")(np.array([rcut - 1e-4]), rcut)
        assert f[0] < 1e-7
        f, _ = get_cutoff_function("cosine")(np.array([0.0]), rcut)
        assert_almost_equal(f[0], 1)

    def test_radial(self):
        r = np.linspace(0.3, 3.9, 25)
        for name in RADIAL_BASES:
            fn = get_radial_basis(name)
            g, dg = fn(r, 6, 0.0, 4.0)
            assert g.shape == (r.size, 6)
            gp, _ = fn(r + 0.5 * DELTA, 6, 0.0, 4.0)
            gm, _ = fn(r - 0.5 * DELTA, 6, 0.0, 4.0)
            assert_allclose(dg, (gp - gm) / DELTA, atol=1e-6, rtol=1e-6)

    def test_chebyshev_values(self):
        fn = get_radial_basis("chebyshev")
        r = np.array([0.0, 1.0, 2.0])
        g, _ = fn(r, 4, 0.0, 2.0)
        x = r - 1.0
        assert_almost_equal(g[:, 0], 1)
        assert_almost_equal(g[:, 1], x)
        assert_almost_equal(g[:, 2], 2 * x * x - 1)
        assert_almost_equal(g[:, 3], 4 * x**3 - 3 * x)

    def test_unknown_names(self):
        with self.assertRaises(ConfigurationError):
            get_cutoff_function("gaussian")
        with self.assertRaises(ConfigurationError):
            get_radial_basis("bessel")


class TestSphHarm(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        np.random.seed(42)
        cls.vecs = np.random.normal(size=(20, 3))
        cls.l_max = 5

    def test_l1(self):
        ylm, _ = real_sph_harm(self.vecs, 1)
        u = self.vecs / np.linalg.norm(self.vecs, axis=1)[:, None]
        fac = np.sqrt(3 / (4 * np.pi))
        assert_almost_equal(ylm[:, 0], 0.5 / np.sqrt(np.pi))
        assert_almost_equal(np.abs(ylm[:, 1]), fac * np.abs(u[:, 1]))
        assert_almost_equal(ylm[:, 2], fac * u[:, 2])
        assert_almost_equal(np.abs(ylm[:, 3]), fac * np.abs(u[:, 0]))

    def test_addition_theorem(self):
        ylm, _ = real_sph_harm(self.vecs, self.l_max)
        for l in range(self.l_max + 1):
            block = ylm[:, get_lm_index(l, -l) : get_lm_index(l, l) + 1]
            assert_almost_equal(
                np.sum(block**2, axis=1), (2 * l + 1) / (4 * np.pi) * np.ones(20)
            )

    def test_orthonormal(self):
        nth = self.l_max + 2
        nphi = 2 * self.l_max + 2
        ct, wt = np.polynomial.legendre.leggauss(nth)
        phi = 2 * np.pi * np.arange(nphi) / nphi
        st = np.sqrt(1 - ct**2)
        vecs = np.stack(
            [
                np.outer(st, np.cos(phi)).ravel(),
                np.outer(st, np.sin(phi)).ravel(),
                np.outer(ct, np.ones(nphi)).ravel(),
            ],
            axis=1,
        )
        weights = np.outer(wt, np.ones(nphi) * 2 * np.pi / nphi).ravel()
        l_max = self.l_max // 2
        ylm, _ = real_sph_harm(vecs, l_max)
        ovlp = np.einsum("g,gi,gj->ij", weights, ylm, ylm)
        assert_almost_equal(ovlp, np.identity((l_max + 1) ** 2))

    def test_gradient(self):
        ylm, dylm = real_sph_harm(self.vecs, self.l_max)
        for c in range(3):
            vp = self.vecs.copy()
            vm = self.vecs.copy()
            vp[:, c] += 0.5 * DELTA
            vm[:, c] -= 0.5 * DELTA
            yp, _ = real_sph_harm(vp, self.l_max)
            ym, _ = real_sph_harm(vm, self.l_max)
            assert_allclose(dylm[:, :, c], (yp - ym) / DELTA, atol=1e-6)

    def test_scale_invariance(self):
        ylm, dylm = real_sph_harm(self.vecs, 3)
        ylm2, dylm2 = real_sph_harm(2.5 * self.vecs, 3)
        assert_almost_equal(ylm, ylm2)
        assert_almost_equal(dylm, 2.5 * dylm2)
        assert_almost_equal(np.einsum("nkc,nc->nk", dylm, self.vecs), 0)

    def test_zero_vector(self):
        with self.assertRaises(ValueError):
            real_sph_harm(np.zeros((1, 3)), 2)


if __name__ == "__main__":
    unittest.main()
