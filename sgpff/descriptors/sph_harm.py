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
Real spherical harmonics with Cartesian gradients.

The harmonics are built from the complex regular solid harmonics
R_lm = r^l P_l^m(cos theta) exp(i m phi) / (l + m)!, which obey

    R_ll = -(x + iy) R_{l-1,l-1} / (2l)
    R_lm = ((2l - 1) z R_{l-1,m} - r^2 R_{l-2,m}) / ((l + m)(l - m)).

The recursion is evaluated on the unit vector and differentiated
alongside, then the gradient is projected onto the tangent plane to
get the derivative with respect to the unnormalized vector.
Harmonic (l, m) is stored at index l * l + l + m.
"""

from math import factorial

import numpy as np


def get_lm_index(l, m):
    return l * l + l + m


def real_sph_harm(vecs, l_max):
    """
    Args:
        vecs (np.ndarray): (n, 3) nonzero vectors
        l_max (int): maximum angular momentum

    Returns:
        ylm (n, (l_max + 1)**2): orthonormal real spherical harmonics
            of the direction of each vector
        dylm (n, (l_max + 1)**2, 3): derivative of ylm with respect
            to the Cartesian components of vecs
    """
    vecs = np.asarray(vecs, dtype=np.float64).reshape(-1, 3)
    n = vecs.shape[0]
    nlm = (l_max + 1) ** 2
    r = np.linalg.norm(vecs, axis=1)
    if np.any(r == 0):
        raise ValueError("Spherical harmonics are undefined for zero vectors")
    u = vecs / r[:, None]
    x, y, z = u[:, 0], u[:, 1], u[:, 2]
    rsq = x * x + y * y + z * z
    drsq = 2 * u
    xy = x + 1j * y
    dxy = np.array([1.0, 1.0j, 0.0])
    ez = np.array([0.0, 0.0, 1.0])

    R = {(0, 0): np.ones(n, dtype=np.complex128)}
    dR = {(0, 0): np.zeros((n, 3), dtype=np.complex128)}
    for l in range(1, l_max + 1):
        prev = R[l - 1, l - 1]
        R[l, l] = -xy * prev / (2 * l)
        dR[l, l] = -(dxy * prev[:, None] + xy[:, None] * dR[l - 1, l - 1]) / (2 * l)
        for m in range(l):
            val = (2 * l - 1) * z * R[l - 1, m]
            dval = (2 * l - 1) * (
                ez * R[l - 1, m][:, None] + z[:, None] * dR[l - 1, m]
            )
            if m <= l - 2:
                val = val - rsq * R[l - 2, m]
                dval = dval - (
                    drsq * R[l - 2, m][:, None] + rsq[:, None] * dR[l - 2, m]
                )
            denom = (l + m) * (l - m)
            R[l, m] = val / denom
            dR[l, m] = dval / denom

    ylm = np.zeros((n, nlm))
    dylm_du = np.zeros((n, nlm, 3))
    for l in range(l_max + 1):
        norm_l = np.sqrt((2 * l + 1) / (4 * np.pi))
        ind = get_lm_index(l, 0)
        fac = norm_l * factorial(l)
        ylm[:, ind] = fac * R[l, 0].real
        dylm_du[:, ind] = fac * dR[l, 0].real
        for m in range(1, l + 1):
            fac = np.sqrt(2.0 * factorial(l - m) * factorial(l + m)) * norm_l
            ylm[:, get_lm_index(l, m)] = fac * R[l, m].real
            ylm[:, get_lm_index(l, -m)] = fac * R[l, m].imag
            dylm_du[:, get_lm_index(l, m)] = fac * dR[l, m].real
            dylm_du[:, get_lm_index(l, -m)] = fac * dR[l, m].imag

    radial_part = np.einsum("nki,ni->nk", dylm_du, u)
    dylm = dylm_du - radial_part[:, :, None] * u[:, None, :]
    dylm /= r[:, None, None]
    return ylm, dylm
