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
Smooth cutoff envelopes. Every function takes an array of distances
and the cutoff radius and returns the envelope and its derivative
with respect to the distance, both zero for r >= rcut.
"""

import numpy as np

from sgpff.errors import ConfigurationError


def quadratic_cutoff(r, rcut):
    r = np.asarray(r, dtype=np.float64)
    inside = r < rcut
    diff = np.where(inside, rcut - r, 0.0)
    return diff * diff, -2.0 * diff


def cosine_cutoff(r, rcut):
    r = np.asarray(r, dtype=np.float64)
    inside = r < rcut
    arg = np.pi * r / rcut
    f = np.where(inside, 0.5 * (np.cos(arg) + 1), 0.0)
    df = np.where(inside, -0.5 * np.pi / rcut * np.sin(arg), 0.0)
    return f, df


def hard_cutoff(r, rcut):
    r = np.asarray(r, dtype=np.float64)
    return (r < rcut).astype(np.float64), np.zeros_like(r)


CUTOFF_FUNCTIONS = {
    "quadratic": quadratic_cutoff,
    "cosine": cosine_cutoff,
    "hard": hard_cutoff,
}


def get_cutoff_function(name):
    try:
        return CUTOFF_FUNCTIONS[name]
    except KeyError:
        raise ConfigurationError(
            "Unknown cutoff function {}, must be one of {}".format(
                name, list(CUTOFF_FUNCTIONS.keys())
            )
        )
