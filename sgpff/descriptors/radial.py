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
Radial basis sets for the single-bond expansion. Each basis takes
distances r (n_r,), the number of basis functions and the interval
(r1, r2) on which the basis is defined, and returns values and
radial derivatives, both of shape (n_r, n_max).
"""

import numpy as np

from sgpff.errors import ConfigurationError


def chebyshev(r, n_max, r1, r2):
    """
    Chebyshev polynomials of the first kind with the interval
    [r1, r2] mapped onto [-1, 1].
    """
    r = np.asarray(r, dtype=np.float64)
    scale = 2.0 / (r2 - r1)
    x = scale * (r - r1) - 1.0
    vals = np.zeros((r.size, n_max))
    dvals = np.zeros((r.size, n_max))
    if n_max == 0:
        return vals, dvals
    vals[:, 0] = 1.0
    if n_max > 1:
        vals[:, 1] = x
        dvals[:, 1] = 1.0
    for n in range(2, n_max):
        vals[:, n] = 2 * x * vals[:, n - 1] - vals[:, n - 2]
        dvals[:, n] = (
            2 * vals[:, n - 1] + 2 * x * dvals[:, n - 1] - dvals[:, n - 2]
        )
    dvals *= scale
    return vals, dvals


def equispaced_gaussians(r, n_max, r1, r2):
    """
    Gaussians centered on an even grid between r1 and r2, with widths
    equal to the grid spacing.
    """
    r = np.asarray(r, dtype=np.float64)
    if n_max == 1:
        centers = np.array([r1])
        width = r2 - r1
    else:
        centers = np.linspace(r1, r2, n_max)
        width = centers[1] - centers[0]
    diff = r[:, None] - centers
    vals = np.exp(-0.5 * diff * diff / width**2)
    dvals = -diff / width**2 * vals
    return vals, dvals


RADIAL_BASES = {
    "chebyshev": chebyshev,
    "equispaced_gaussians": equispaced_gaussians,
}


def get_radial_basis(name):
    try:
        return RADIAL_BASES[name]
    except KeyError:
        raise ConfigurationError(
            "Unknown radial basis {}, must be one of {}".format(
                name, list(RADIAL_BASES.keys())
            )
        )
