import io
import unittest

import numpy as np
from numpy.testing import assert_allclose, assert_almost_equal
from scipy.stats import multivariate_normal

from sgpff.errors import ConfigurationError
from sgpff.models.sparse_gp import SparseGP
from sgpff.models.tests.utils import get_kernels, random_structure

DELTA = 1e-5


class TestLikelihood(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.strucs = [
            random_structure(0),
            random_structure(1, stress=None),
            random_structure(2, forces=None, stress=None, energy_noise_scale=2.0),
        ]

    def _make_gp(self, hyps=None):
        kernels = get_kernels()[:2]
        gp = SparseGP(kernels, 0.2, 0.3, 0.1, jitter=1e-8, stdout=io.StringIO())
        gp.add_sparse_environments(self.strucs[0].environments[:3])
        for s in self.strucs:
            gp.add_training_structure(s)
        gp.add_sparse_environments(self.strucs[1].environments[1:])
        if hyps is not None:
            gp.set_hyperparameters(hyps)
        gp.update_matrices()
        return gp

    def test_dtc_dense(self):
        gp = self._make_gp()
        lml = gp.compute_likelihood("DTC", gradient=False)
        qff = gp.Kuf.T.dot(gp.Kuu_inverse).dot(gp.Kuf)
        cov = qff + np.diag(1 / gp.noise_vector)
        ref = multivariate_normal(mean=np.zeros(gp.n_labels), cov=cov).logpdf(gp.y)
        assert_allclose(lml, ref, rtol=1e-7)
        assert_almost_equal(gp.trace_term, 0)
        assert_almost_equal(
            gp.data_fit + gp.complexity_penalty + gp.constant_term, lml, 10
        )

    def test_vfe(self):
        gp = self._make_gp()
        dtc = gp.compute_DTC_likelihood(gradient=False)
        vfe = gp.compute_VFE_likelihood(gradient=False)
        kff = np.concatenate(
            [
                sum(k.struc_struc_diag(s) for k in gp.kernels)
                for s in gp.training_structures
            ]
        )
        qff = np.einsum("uf,uv,vf->f", gp.Kuf, gp.Kuu_inverse, gp.Kuf)
        trace = -0.5 * np.sum(gp.noise_vector * (kff - qff))
        assert trace <= 0
        assert_allclose(vfe, dtc + trace, rtol=1e-10)

    def _check_gradient(self, approximation):
        gp = self._make_gp()
        gp.compute_likelihood(approximation, gradient=True)
        grad = gp.likelihood_gradient.copy()
        hyps = gp.hyperparameters
        assert grad.shape == hyps.shape
        for i in range(hyps.size):
            dh = np.zeros_like(hyps)
            dh[i] = 0.5 * DELTA * hyps[i]
            lp = self._make_gp(hyps + dh).compute_likelihood(approximation, False)
            lm = self._make_gp(hyps - dh).compute_likelihood(approximation, False)
            fd = (lp - lm) / (2 * dh[i])
            assert_allclose(grad[i], fd, rtol=1e-4, atol=1e-4)

    def test_dtc_gradient(self):
        self._check_gradient("DTC")

    def test_vfe_gradient(self):
        self._check_gradient("VFE")

    def test_bad_approximation(self):
        gp = self._make_gp()
        with self.assertRaises(ConfigurationError):
            gp.compute_likelihood("FITC")


if __name__ == "__main__":
    unittest.main()
