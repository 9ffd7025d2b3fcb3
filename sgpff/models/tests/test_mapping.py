import io
import os
import tempfile
import unittest

import numpy as np
from numpy.testing import assert_allclose, assert_almost_equal, assert_equal

from sgpff.descriptors.features import TwoBodyCalculator
from sgpff.errors import ConfigurationError, UnsupportedOperationError
from sgpff.models.kernels import NormalizedDotProduct, TwoBody
from sgpff.models.mapping import MappedPotential, MappedUncertainty
from sgpff.models.sparse_gp import SparseGP
from sgpff.models.tests.utils import CUTOFF, get_b2, random_structure


class FakeComm:
    """Single-process stand-in for an mpi4py communicator."""

    rank = 0

    def __init__(self):
        self.ncalls = 0

    def allreduce(self, obj):
        self.ncalls += 1
        return obj

    def bcast(self, obj, root=0):
        return obj


def train_gp(power):
    kernel = NormalizedDotProduct(get_b2(), signal_variance=2.0, power=power)
    gp = SparseGP([kernel], 0.1, 0.05, 0.02, jitter=1e-8, stdout=io.StringIO())
    for seed in range(3):
        gp.add_training_structure(random_structure(seed), sparse_atoms="all")
    gp.update_matrices()
    return gp


class TestMapping(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.gp2 = train_gp(2)
        cls.gp1 = train_gp(1)
        cls.test_struc = random_structure(9, labels=False)
        cls.tmpdir = tempfile.TemporaryDirectory()

    @classmethod
    def tearDownClass(cls):
        cls.tmpdir.cleanup()

    def _path(self, name):
        return os.path.join(self.tmpdir.name, name)

    def test_mean_mapping(self):
        model = self.gp2.map(contributor="Test Person")
        energy, forces, stress, local = model.compute(self.test_struc)
        pred = self.gp2.predict(self.test_struc)
        atol = 1e-8 * np.abs(pred.mean).max()
        assert_allclose(local, self.gp2.predict_local_energies(self.test_struc), atol=atol)
        assert_allclose(energy, pred.energy, atol=atol)
        assert_allclose(forces, pred.forces, atol=atol)
        assert_allclose(stress, pred.stress, atol=atol)

        fname = self._path("beta.txt")
        self.gp2.write_mapping_coefficients(fname, contributor="Test Person")
        loaded = MappedPotential.read_coefficients(fname)
        assert_equal(loaded.contributor, "Test Person")
        self.assertEqual(loaded.descriptor, model.descriptor)
        assert_allclose(
            loaded.beta, model.beta, rtol=1e-12, atol=1e-12 * np.abs(model.beta).max()
        )
        assert_allclose(loaded.compute(self.test_struc)[1], forces, rtol=1e-6, atol=atol)

    def test_partitioned_compute(self):
        model = self.gp2.map()
        ref = model.compute(self.test_struc)
        part1 = model.compute(self.test_struc, atoms=[0, 1])
        part2 = model.compute(self.test_struc, atoms=[2, 3])
        for i in range(4):
            assert_allclose(part1[i] + part2[i], ref[i], atol=1e-12)
        comm = FakeComm()
        res = model.compute(self.test_struc, comm=comm)
        assert comm.ncalls > 0
        assert_allclose(res[1], ref[1])

    def test_compute_atom(self):
        model = self.gp2.map()
        env = self.test_struc.environments[0]
        energy, fij = model.compute_atom(
            env.species, env.neighbor_species, env.displacements
        )
        far = np.array([[CUTOFF + 0.5, 0.0, 0.0]])
        energy2, fij2 = model.compute_atom(
            env.species,
            np.append(env.neighbor_species, env.neighbor_species[0]),
            np.concatenate([env.displacements, far]),
        )
        assert_almost_equal(energy2, energy)
        assert_equal(fij2.shape, (env.n_neighbors + 1, 3))
        assert_almost_equal(fij2[-1], 0)
        assert_almost_equal(fij2[:-1], fij)
        energy, fij = model.compute_atom(14, [], np.zeros((0, 3)))
        assert_equal(energy, 0.0)
        assert_equal(fij.shape, (0, 3))

    def test_variance_mapping(self):
        model = self.gp1.map_uncertainty()
        assert_equal(model.beta_size, model.descriptor.n_features**2)
        stds = model.compute(self.test_struc)
        ref = self.gp1.predict_local_variances(self.test_struc)
        assert_allclose(stds**2, ref, atol=1e-6)

        fname = self._path("beta_var.txt")
        self.gp1.write_varmap_coefficients(fname)
        loaded = MappedUncertainty.read_coefficients(fname)
        assert_allclose(
            loaded.beta, model.beta, rtol=1e-12, atol=1e-12 * np.abs(model.beta).max()
        )

    def test_unsupported(self):
        with self.assertRaises(UnsupportedOperationError):
            self.gp1.map()
        with self.assertRaises(UnsupportedOperationError):
            self.gp2.map_uncertainty()
        kernel = TwoBody(TwoBodyCalculator(CUTOFF))
        gp = SparseGP([kernel], 0.1, 0.1, 0.1, stdout=io.StringIO())
        gp.add_training_structure(random_structure(0), sparse_atoms="all")
        gp.update_matrices()
        with self.assertRaises(UnsupportedOperationError):
            gp.map()

    def _write_modified(self, name, line_index, new_line=None, drop_last=False):
        src = self._path("src_" + name)
        self.gp2.write_mapping_coefficients(src)
        with open(src, "r") as f:
            lines = f.read().splitlines()
        if new_line is not None:
            lines[line_index] = new_line
        if drop_last:
            lines = lines[:-1]
        fname = self._path(name)
        with open(fname, "w") as f:
            f.write("\n".join(lines) + "\n")
        return fname

    def test_bad_files(self):
        nd = self.gp2.kernels[0].descriptor.n_features
        fname = self._write_modified("size.txt", 2, "2 3 2 {}".format(nd * nd))
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)
        fname = self._write_modified("radial.txt", 1, "bessel")
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)
        fname = self._write_modified("cutoff.txt", 3, "step")
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)
        fname = self._write_modified("header.txt", 2, "2 3 two")
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)
        fname = self._write_modified("short.txt", 0, drop_last=True)
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)
        with self.assertRaises(ConfigurationError):
            MappedUncertainty.read_coefficients(self._write_modified("kind.txt", 0))
        fname = self._path("truncated.txt")
        with open(fname, "w") as f:
            f.write("DATE: today\nchebyshev\n")
        with self.assertRaises(ConfigurationError):
            MappedPotential.read_coefficients(fname)

    def test_species_from_argument(self):
        fname = self._write_modified("nospecies.txt", 0, "DATE: today CONTRIBUTOR: me")
        model = MappedPotential.read_coefficients(fname, species=[8, 14])
        assert_equal(model.descriptor.species, [8, 14])
        assert_equal(model.contributor, "me")
        model = MappedPotential.read_coefficients(fname)
        assert_equal(model.descriptor.species, [0, 1])

    def test_yaml_and_bcast(self):
        model = self.gp2.map(contributor="someone")
        fname = self._path("model.yaml")
        model.dump(fname)
        loaded = MappedPotential.load(fname)
        assert_equal(loaded.contributor, "someone")
        assert_allclose(loaded.beta, model.beta)
        copy = MappedPotential.bcast(FakeComm(), model)
        assert_allclose(copy.beta, model.beta)
        self.assertEqual(copy.descriptor, model.descriptor)
        with self.assertRaises(ConfigurationError):
            MappedUncertainty.from_dict(model.to_dict())


if __name__ == "__main__":
    unittest.main()
