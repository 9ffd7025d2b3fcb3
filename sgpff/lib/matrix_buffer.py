#!/usr/bin/env python
# SGPFF: Sparse Gaussian process force fields for atomistic simulation
# Copyright (C) 2024 The President and Fellows of Harvard College
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>
#
# Author: Kyle Bystrom <kylebystrom@gmail.com>
#

"""
Append-only buffers for covariance blocks. The logical size is kept
separate from the allocated capacity, which grows geometrically, so
appending rows or columns is amortized O(new entries). Arrays
returned by the ``array`` property are views and are invalidated by
the next append that reallocates.
"""

import numpy as np


def _grow(cap, need):
    return max(need, 2 * cap, 8)


class GrowableMatrix:
    def __init__(self, nrows=0, ncols=0, dtype=np.float64):
        self.dtype = dtype
        self._nrows = nrows
        self._ncols = ncols
        self._buf = np.zeros((max(nrows, 1), max(ncols, 1)), dtype=dtype)

    @classmethod
    def from_array(cls, arr):
        arr = np.asarray(arr)
        if arr.ndim != 2:
            raise ValueError("Expected a 2D array, got shape {}".format(arr.shape))
        mat = cls(arr.shape[0], arr.shape[1], dtype=arr.dtype)
        mat._buf[: arr.shape[0], : arr.shape[1]] = arr
        return mat

    @property
    def shape(self):
        return (self._nrows, self._ncols)

    @property
    def capacity(self):
        return self._buf.shape

    @property
    def array(self):
        return self._buf[: self._nrows, : self._ncols]

    def _reserve(self, nrows, ncols):
        caprows, capcols = self._buf.shape
        if nrows <= caprows and ncols <= capcols:
            return
        if nrows > caprows:
            caprows = _grow(caprows, nrows)
        if ncols > capcols:
            capcols = _grow(capcols, ncols)
        buf = np.zeros((caprows, capcols), dtype=self.dtype)
        buf[: self._nrows, : self._ncols] = self.array
        self._buf = buf

    def append_rows(self, rows):
        rows = np.asarray(rows, dtype=self.dtype)
        if rows.ndim != 2 or rows.shape[1] != self._ncols:
            raise ValueError(
                "Cannot append rows of shape {} to matrix of shape {}".format(
                    rows.shape, self.shape
                )
            )
        n = rows.shape[0]
        self._reserve(self._nrows + n, self._ncols)
        self._buf[self._nrows : self._nrows + n, : self._ncols] = rows
        self._nrows += n

    def append_cols(self, cols):
        cols = np.asarray(cols, dtype=self.dtype)
        if cols.ndim != 2 or cols.shape[0] != self._nrows:
            raise ValueError(
                "Cannot append columns of shape {} to matrix of shape {}".format(
                    cols.shape, self.shape
                )
            )
        n = cols.shape[1]
        self._reserve(self._nrows, self._ncols + n)
        self._buf[: self._nrows, self._ncols : self._ncols + n] = cols
        self._ncols += n

    def scale(self, c):
        self._buf[: self._nrows, : self._ncols] *= c


class GrowableVector:
    def __init__(self, dtype=np.float64):
        self.dtype = dtype
        self._size = 0
        self._buf = np.zeros(8, dtype=dtype)

    def __len__(self):
        return self._size

    @property
    def array(self):
        return self._buf[: self._size]

    def append(self, vals):
        vals = np.asarray(vals, dtype=self.dtype).ravel()
        n = vals.size
        if self._size + n > self._buf.size:
            buf = np.zeros(_grow(self._buf.size, self._size + n), dtype=self.dtype)
            buf[: self._size] = self.array
            self._buf = buf
        self._buf[self._size : self._size + n] = vals
        self._size += n
