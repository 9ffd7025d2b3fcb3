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
Exceptions raised by the sparse GP engine. Each one derives from the
builtin exception that plain numpy/scipy code would raise in the same
situation, so callers that already catch ValueError or LinAlgError
keep working.
"""

import numpy as np


class ConfigurationError(ValueError):
    """
    Bad model or input configuration: unknown basis/cutoff names,
    coefficient-count mismatches, malformed coefficient files,
    malformed neighbor lists or structure labels.
    """


class NumericalError(np.linalg.LinAlgError):
    """
    A factorization of a covariance block failed. The message carries
    the size, jitter and condition estimate of the offending matrix.
    """


class UnsupportedOperationError(NotImplementedError):
    """
    Declared entry point that is not implemented.
    """


class StaleModelError(RuntimeError):
    """
    The posterior matrices are out of date with respect to the sparse
    set, training set or hyperparameters.
    """
