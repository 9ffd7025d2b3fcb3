import unittest

import numpy as np
from numpy.testing import assert_equal

from sgpff.lib.matrix_buffer import GrowableMatrix, GrowableVector


class TestGrowableMatrix(unittest.TestCase):
    def test_append(self):
        np.random.seed(7)
        ref = np.random.normal(size=(20, 30))
        mat = GrowableMatrix()
        mat.append_rows(np.zeros((0, 0)))
        nr, nc = 0, 0
        for step in range(5):
            new_r, new_c = 4, 6
            mat.append_cols(ref[:nr, nc : nc + new_c])
            mat.append_rows(ref[nr : nr + new_r, : nc + new_c])
            nr += new_r
            nc += new_c
            assert_equal(mat.shape, (nr, nc))
            assert_equal(mat.array, ref[:nr, :nc])
        assert mat.capacity[0] >= 20 and mat.capacity[1] >= 30

    def test_rows_without_cols(self):
        mat = GrowableMatrix()
        mat.append_rows(np.zeros((3, 0)))
        assert_equal(mat.shape, (3, 0))
        mat.append_cols(np.ones((3, 2)))
        assert_equal(mat.array, np.ones((3, 2)))

    def test_scale(self):
        ref = np.arange(12.0).reshape(3, 4)
        mat = GrowableMatrix.from_array(ref)
        mat.scale(2.5)
        assert_equal(mat.array, 2.5 * ref)
        mat.scale(0.4)
        np.testing.assert_allclose(mat.array, ref)

    def test_bad_shape(self):
        mat = GrowableMatrix(2, 3)
        with self.assertRaises(ValueError):
            mat.append_rows(np.zeros((1, 2)))
        with self.assertRaises(ValueError):
            mat.append_cols(np.zeros((3, 1)))


class TestGrowableVector(unittest.TestCase):
    def test_append(self):
        vec = GrowableVector()
        ref = []
        for i in range(10):
            vals = np.arange(i, 2 * i + 1, dtype=np.float64)
            vec.append(vals)
            ref.extend(vals.tolist())
        assert_equal(len(vec), len(ref))
        assert_equal(vec.array, ref)


if __name__ == "__main__":
    unittest.main()
