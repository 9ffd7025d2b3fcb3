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
Descriptor calculators. A calculator maps a LocalEnvironment to a
FeatureBlock: a set of invariant feature units together with their
derivatives with respect to every neighbor displacement. Kernels
compare units pairwise and contract the unit derivatives with the
jacobian, so the calculators never need to know about kernels.
"""

from abc import ABC, abstractmethod

import numpy as np

from sgpff.descriptors.cutoffs import get_cutoff_function
from sgpff.descriptors.radial import get_radial_basis
from sgpff.descriptors.sph_harm import real_sph_harm
from sgpff.errors import ConfigurationError


class FeatureBlock:
    """
    Feature units of one local environment.

    Attributes:
        values (n_units, d): unit values
        jacobian (n_units, d, n_neighbors, 3): derivative of each value
            with respect to each neighbor displacement
        keys (n_units, k): integer species key of each unit. Only units
            with identical keys are compared by kernels.
        weights (n_units,): envelope weight of each unit, or None
        weight_derivs (n_units, d): derivative of the weight with
            respect to the unit values, or None
    """

    def __init__(self, values, jacobian, keys, weights=None, weight_derivs=None):
        self.values = values
        self.jacobian = jacobian
        self.keys = keys
        self.weights = weights
        self.weight_derivs = weight_derivs

    @property
    def n_units(self):
        return self.values.shape[0]

    @property
    def dim(self):
        return self.values.shape[1]

    @property
    def n_neighbors(self):
        return self.jacobian.shape[2]


class DescriptorCalculator(ABC):
    """
    Base class for descriptor calculators. Subclasses must be fully
    described by their settings dict, which also serves as the cache
    key for features stored on environments.
    """

    name = None

    @abstractmethod
    def compute(self, env):
        """
        Args:
            env (LocalEnvironment): environment to featurize

        Returns:
            FeatureBlock
        """

    @abstractmethod
    def to_dict(self):
        pass

    @classmethod
    def from_dict(cls, d):
        d = dict(d)
        name = d.pop("type", cls.name)
        if name != cls.name:
            raise ConfigurationError(
                "Cannot build {} from settings of type {}".format(cls.__name__, name)
            )
        return cls(**d)

    @property
    def key(self):
        items = []
        for k, v in sorted(self.to_dict().items()):
            if isinstance(v, list):
                v = tuple(v)
            items.append((k, v))
        return tuple(items)

    def __eq__(self, other):
        return type(self) is type(other) and self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def _check_env(self, env):
        if env.cutoff is not None and env.cutoff < self.cutoff:
            raise ConfigurationError(
                "Environment cutoff {} is smaller than descriptor cutoff {}".format(
                    env.cutoff, self.cutoff
                )
            )


class B2Calculator(DescriptorCalculator):
    """
    Rotationally invariant power spectrum of the single-bond
    expansion of the neighbor density.

    The single-bond coefficients are
    c_{snlm} = sum_{j in s} g_n(r_j) f_c(r_j) Y_lm(r_j / |r_j|),
    and the invariants are p_{n1 n2 l} = sum_m c_{n1 lm} c_{n2 lm} over
    the combined (species, radial) index with n1 <= n2.
    """

    name = "B2"

    def __init__(
        self,
        species,
        cutoff,
        n_max,
        l_max,
        radial_basis="chebyshev",
        cutoff_function="quadratic",
        radial_hyps=None,
    ):
        """
        Args:
            species (list of int): atomic numbers, in the order used
                to index the species blocks of the descriptor
            cutoff (float): cutoff radius
            n_max (int): number of radial basis functions
            l_max (int): maximum angular momentum
            radial_basis (str): name in RADIAL_BASES
            cutoff_function (str): name in CUTOFF_FUNCTIONS
            radial_hyps (list): (r1, r2) interval of the radial basis,
                defaults to (0, cutoff)
        """
        self.species = [int(s) for s in species]
        self.cutoff = float(cutoff)
        self.n_max = int(n_max)
        self.l_max = int(l_max)
        self.radial_basis = radial_basis
        self.cutoff_function = cutoff_function
        if radial_hyps is None:
            radial_hyps = [0.0, self.cutoff]
        self.radial_hyps = [float(h) for h in radial_hyps]
        self._radial_fn = get_radial_basis(radial_basis)
        self._cutoff_fn = get_cutoff_function(cutoff_function)
        if len(set(self.species)) != len(self.species):
            raise ConfigurationError("Duplicate species in {}".format(self.species))
        self._species_index = {s: i for i, s in enumerate(self.species)}
        n_rad = self.n_rad
        self._triu = np.triu_indices(n_rad)
        lvals = np.concatenate(
            [np.full(2 * l + 1, l) for l in range(self.l_max + 1)]
        ).astype(int)
        self._lmask = (lvals[:, None] == np.arange(self.l_max + 1)).astype(np.float64)

    @property
    def n_species(self):
        return len(self.species)

    @property
    def n_rad(self):
        return self.n_species * self.n_max

    @property
    def n_features(self):
        n_rad = self.n_rad
        return n_rad * (n_rad + 1) // 2 * (self.l_max + 1)

    def species_index(self, species):
        try:
            return self._species_index[int(species)]
        except KeyError:
            raise ConfigurationError(
                "Species {} is not one of the descriptor species {}".format(
                    species, self.species
                )
            )

    def to_dict(self):
        return {
            "type": self.name,
            "species": list(self.species),
            "cutoff": self.cutoff,
            "n_max": self.n_max,
            "l_max": self.l_max,
            "radial_basis": self.radial_basis,
            "cutoff_function": self.cutoff_function,
            "radial_hyps": list(self.radial_hyps),
        }

    def single_bond(self, env):
        """
        Single-bond coefficients of an environment.

        Returns:
            c (n_rad, (l_max + 1)**2): coefficients
            dc (n_neighbors, n_rad, (l_max + 1)**2, 3): derivatives of
                the coefficients with respect to each neighbor
                displacement
        """
        self._check_env(env)
        nlm = (self.l_max + 1) ** 2
        n_rad = self.n_rad
        nn = env.n_neighbors
        self.species_index(env.species)
        c = np.zeros((n_rad, nlm))
        dc = np.zeros((nn, n_rad, nlm, 3))
        if nn == 0:
            return c, dc
        r = env.distances
        sidx = np.array([self.species_index(s) for s in env.neighbor_species])
        g, dg = self._radial_fn(r, self.n_max, *self.radial_hyps)
        fc, dfc = self._cutoff_fn(r, self.cutoff)
        gf = g * fc[:, None]
        dgf = dg * fc[:, None] + g * dfc[:, None]
        ylm, dylm = real_sph_harm(env.displacements, self.l_max)
        unit = env.displacements / r[:, None]
        # b[j, n, lm] = g_n(r_j) f_c(r_j) Y_lm(j)
        b = gf[:, :, None] * ylm[:, None, :]
        db = (
            dgf[:, :, None, None] * ylm[:, None, :, None] * unit[:, None, None, :]
            + gf[:, :, None, None] * dylm[:, None, :, :]
        )
        rows = sidx[:, None] * self.n_max + np.arange(self.n_max)
        np.add.at(c, rows, b)
        dc[np.arange(nn)[:, None], rows] = db
        return c, dc

    def compute(self, env):
        c, dc = self.single_bond(env)
        iu0, iu1 = self._triu
        nn = env.n_neighbors
        power = np.einsum("nm,km,ml->nkl", c, c, self._lmask)
        values = power[iu0, iu1].reshape(1, -1)
        tmp = np.einsum("jnmc,km,ml->jnklc", dc, c, self._lmask)
        dpower = tmp + tmp.transpose(0, 2, 1, 3, 4)
        dvals = dpower[:, iu0, iu1].reshape(nn, self.n_features, 3)
        jacobian = dvals.transpose(1, 0, 2)[None]
        keys = np.array([[int(env.species)]])
        return FeatureBlock(values, jacobian, keys)

    def env_derivatives(self, env):
        """
        Jacobian of the descriptor as a (3 * n_neighbors, n_features)
        matrix, row 3 * j + c holding the derivative with respect to
        component c of the displacement of neighbor j.
        """
        jac = env.get_features(self).jacobian[0]
        return jac.transpose(1, 2, 0).reshape(-1, self.n_features)

    def center_derivatives(self, env):
        """
        Derivative of the descriptor with respect to the position of the
        central atom, (n_features, 3).
        """
        return -env.get_features(self).jacobian[0].sum(axis=1)


class TwoBodyCalculator(DescriptorCalculator):
    """
    One unit per neighbor holding the neighbor distance.
    """

    name = "two_body"

    def __init__(self, cutoff, cutoff_function="quadratic"):
        self.cutoff = float(cutoff)
        self.cutoff_function = cutoff_function
        self._cutoff_fn = get_cutoff_function(cutoff_function)

    def to_dict(self):
        return {
            "type": self.name,
            "cutoff": self.cutoff,
            "cutoff_function": self.cutoff_function,
        }

    def compute(self, env):
        self._check_env(env)
        nn = env.n_neighbors
        r = env.distances
        fc, dfc = self._cutoff_fn(r, self.cutoff)
        jacobian = np.zeros((nn, 1, nn, 3))
        if nn > 0:
            jacobian[np.arange(nn), 0, np.arange(nn)] = env.displacements / r[:, None]
        keys = np.sort(
            np.stack(
                [np.full(nn, int(env.species)), env.neighbor_species.astype(int)],
                axis=1,
            ),
            axis=1,
        )
        return FeatureBlock(r[:, None].copy(), jacobian, keys, fc, dfc[:, None])


class ThreeBodyCalculator(DescriptorCalculator):
    """
    One unit per ordered pair of distinct neighbors (j, k) holding
    (r_j, r_k, r_jk). The envelope is f_c(r_j) f_c(r_k).
    """

    name = "three_body"

    def __init__(self, cutoff, cutoff_function="quadratic"):
        self.cutoff = float(cutoff)
        self.cutoff_function = cutoff_function
        self._cutoff_fn = get_cutoff_function(cutoff_function)

    def to_dict(self):
        return {
            "type": self.name,
            "cutoff": self.cutoff,
            "cutoff_function": self.cutoff_function,
        }

    def compute(self, env):
        self._check_env(env)
        nn = env.n_neighbors
        r = env.distances
        disp = env.displacements
        fc, dfc = self._cutoff_fn(r, self.cutoff)
        J, K = np.nonzero(~np.eye(nn, dtype=bool))
        npair = J.size
        rjk_vec = disp[K] - disp[J]
        rjk = np.linalg.norm(rjk_vec, axis=1)
        values = np.stack([r[J], r[K], rjk], axis=1)
        jacobian = np.zeros((npair, 3, nn, 3))
        if npair > 0:
            if np.any(rjk == 0):
                raise ConfigurationError("Two neighbors share the same position")
            p = np.arange(npair)
            unit = disp / r[:, None]
            ujk = rjk_vec / rjk[:, None]
            jacobian[p, 0, J] = unit[J]
            jacobian[p, 1, K] = unit[K]
            jacobian[p, 2, K] = ujk
            jacobian[p, 2, J] = -ujk
        weights = fc[J] * fc[K]
        weight_derivs = np.stack(
            [dfc[J] * fc[K], fc[J] * dfc[K], np.zeros(npair)], axis=1
        )
        keys = np.stack(
            [
                np.full(npair, int(env.species)),
                env.neighbor_species[J].astype(int),
                env.neighbor_species[K].astype(int),
            ],
            axis=1,
        )
        return FeatureBlock(values, jacobian, keys, weights, weight_derivs)


DESCRIPTORS = {
    B2Calculator.name: B2Calculator,
    TwoBodyCalculator.name: TwoBodyCalculator,
    ThreeBodyCalculator.name: ThreeBodyCalculator,
}
