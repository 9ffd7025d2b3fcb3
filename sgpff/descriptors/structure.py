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
Local environments and labelled structures.
"""

import numpy as np
from ase import Atoms
from ase.neighborlist import neighbor_list
from joblib import Parallel, delayed

from sgpff.errors import ConfigurationError

# component order of the stress label, (alpha, beta) of sigma_{alpha beta}
VOIGT_PAIRS = [(0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2)]
LABEL_TYPES = {"energy": 0, "force": 1, "stress": 2}


class LocalEnvironment:
    """
    Neighborhood of one atom. Neighbors at or beyond the cutoff are
    dropped. Features are computed on demand and cached per calculator.
    """

    def __init__(
        self,
        species,
        neighbor_species,
        displacements,
        neighbor_indices=None,
        center_index=0,
        cutoff=None,
    ):
        displacements = np.asarray(displacements, dtype=np.float64).reshape(-1, 3)
        neighbor_species = np.asarray(neighbor_species, dtype=int).reshape(-1)
        n = displacements.shape[0]
        if neighbor_species.size != n:
            raise ConfigurationError(
                "Got {} neighbor species for {} displacements".format(
                    neighbor_species.size, n
                )
            )
        if neighbor_indices is None:
            neighbor_indices = np.full(n, -1, dtype=int)
        else:
            neighbor_indices = np.asarray(neighbor_indices, dtype=int).reshape(-1)
            if neighbor_indices.size != n:
                raise ConfigurationError(
                    "Got {} neighbor indices for {} displacements".format(
                        neighbor_indices.size, n
                    )
                )
        distances = np.linalg.norm(displacements, axis=1)
        if cutoff is not None:
            keep = distances < cutoff
            displacements = displacements[keep]
            neighbor_species = neighbor_species[keep]
            neighbor_indices = neighbor_indices[keep]
            distances = distances[keep]
        if np.any(distances == 0):
            raise ConfigurationError("A neighbor coincides with the central atom")
        self.species = int(species)
        self.center_index = int(center_index)
        self.cutoff = None if cutoff is None else float(cutoff)
        self.neighbor_species = neighbor_species
        self.neighbor_indices = neighbor_indices
        self.displacements = displacements
        self.distances = distances
        self._features = {}

    @property
    def n_neighbors(self):
        return self.displacements.shape[0]

    def get_features(self, calculator):
        key = calculator.key
        feat = self._features.get(key)
        if feat is None:
            feat = calculator.compute(self)
            self._features[key] = feat
        return feat

    def clear_features(self):
        self._features = {}


class LabelLayout:
    """
    Which labels of a structure are in use. Labels are ordered as
    energy, forces (atom by atom, x y z), stress (xx xy xz yy yz zz).
    """

    def __init__(self, n_atoms, energy=False, forces=False, stress=False):
        self.n_atoms = n_atoms
        self.energy = bool(energy)
        self.forces = bool(forces)
        self.stress = bool(stress)

    @property
    def key(self):
        return (self.n_atoms, self.energy, self.forces, self.stress)

    @property
    def force_offset(self):
        return int(self.energy)

    @property
    def stress_offset(self):
        return self.force_offset + (3 * self.n_atoms if self.forces else 0)

    @property
    def n_labels(self):
        return self.stress_offset + (6 if self.stress else 0)

    @property
    def label_types(self):
        types = np.empty(self.n_labels, dtype=int)
        if self.energy:
            types[0] = LABEL_TYPES["energy"]
        types[self.force_offset : self.stress_offset] = LABEL_TYPES["force"]
        types[self.stress_offset :] = LABEL_TYPES["stress"]
        return types

    def split(self, vec):
        """
        Split a per-label vector into (energy, forces, stress). Absent
        labels are returned as None.
        """
        energy = vec[0] if self.energy else None
        forces = None
        if self.forces:
            forces = vec[self.force_offset : self.stress_offset].reshape(-1, 3)
        stress = vec[self.stress_offset :] if self.stress else None
        return energy, forces, stress


class StructureDescriptor:
    """
    Atomic configuration with its local environments and optional
    energy, force and stress labels.
    """

    def __init__(
        self,
        cell,
        positions,
        species,
        cutoff,
        pbc=True,
        energy=None,
        forces=None,
        stress=None,
        energy_noise_scale=1.0,
        force_noise_scale=1.0,
        stress_noise_scale=1.0,
        environments=None,
    ):
        """
        Args:
            cell (3, 3): lattice vectors as rows
            positions (N, 3): Cartesian positions
            species (N,): atomic numbers
            cutoff (float): neighbor cutoff
            pbc (bool or 3 bools): periodic directions
            energy (float): total energy label
            forces (N, 3): force labels
            stress (6,) or (3, 3): stress label, (1/V) dE/dstrain.
                A 6-vector is in the order xx, xy, xz, yy, yz, zz.
            *_noise_scale (float): multiplier of the model noise for
                the labels of this structure
            environments (list of LocalEnvironment): precomputed
                environments. If None they are built with the ASE
                neighbor list.
        """
        self.cell = np.asarray(cell, dtype=np.float64).reshape(3, 3)
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        self.species = np.asarray(species, dtype=int).reshape(-1)
        self.cutoff = float(cutoff)
        self.pbc = np.broadcast_to(np.asarray(pbc, dtype=bool), (3,)).copy()
        n_atoms = self.positions.shape[0]
        if self.species.size != n_atoms:
            raise ConfigurationError(
                "Got {} species for {} atoms".format(self.species.size, n_atoms)
            )
        if np.all(self.pbc):
            self.volume = abs(np.linalg.det(self.cell))
        else:
            self.volume = 0.0

        self.energy = None if energy is None else float(energy)
        self.forces = None
        if forces is not None:
            self.forces = np.asarray(forces, dtype=np.float64).reshape(n_atoms, 3)
        self.stress = None
        if stress is not None:
            if self.volume == 0:
                raise ConfigurationError(
                    "Stress labels require a periodic structure with nonzero volume"
                )
            stress = np.asarray(stress, dtype=np.float64)
            if stress.shape == (3, 3):
                stress = np.array([stress[a, b] for a, b in VOIGT_PAIRS])
            if stress.shape != (6,):
                raise ConfigurationError(
                    "Stress must have shape (6,) or (3, 3), got {}".format(stress.shape)
                )
            self.stress = stress
        self.noise_scales = np.array(
            [energy_noise_scale, force_noise_scale, stress_noise_scale],
            dtype=np.float64,
        )

        if environments is None:
            environments = self._build_environments()
        elif len(environments) != n_atoms:
            raise ConfigurationError(
                "Got {} environments for {} atoms".format(len(environments), n_atoms)
            )
        self.environments = list(environments)

        self.layout = LabelLayout(
            n_atoms,
            energy=self.energy is not None,
            forces=self.forces is not None,
            stress=self.stress is not None,
        )
        self.full_layout = LabelLayout(
            n_atoms, energy=True, forces=True, stress=self.volume > 0
        )
        self._label_maps = {}

    @classmethod
    def from_atoms(cls, atoms, cutoff, use_calculator_labels=True, **kwargs):
        """
        Build from an ase.Atoms object. If use_calculator_labels is set
        and the atoms carry a calculator, its energy, forces and (for
        periodic cells) stress become the labels, unless given
        explicitly in kwargs.
        """
        if use_calculator_labels and atoms.calc is not None:
            if "energy" not in kwargs:
                kwargs["energy"] = atoms.get_potential_energy()
            if "forces" not in kwargs:
                kwargs["forces"] = atoms.get_forces()
            if "stress" not in kwargs and np.all(atoms.pbc):
                try:
                    kwargs["stress"] = atoms.get_stress(voigt=False)
                except NotImplementedError:
                    pass
        return cls(
            atoms.cell.array,
            atoms.positions,
            atoms.numbers,
            cutoff,
            pbc=atoms.pbc,
            **kwargs,
        )

    def to_atoms(self):
        return Atoms(
            numbers=self.species, positions=self.positions, cell=self.cell, pbc=self.pbc
        )

    def _build_environments(self):
        i, j, D = neighbor_list("ijD", self.to_atoms(), self.cutoff)
        order = np.argsort(i, kind="stable")
        i, j, D = i[order], j[order], D[order]
        bounds = np.searchsorted(i, np.arange(self.n_atoms + 1))
        envs = []
        for a in range(self.n_atoms):
            sl = slice(bounds[a], bounds[a + 1])
            envs.append(
                LocalEnvironment(
                    self.species[a],
                    self.species[j[sl]],
                    D[sl],
                    neighbor_indices=j[sl],
                    center_index=a,
                    cutoff=self.cutoff,
                )
            )
        return envs

    @property
    def n_atoms(self):
        return self.positions.shape[0]

    @property
    def labels(self):
        """Label vector in the order of self.layout."""
        parts = []
        if self.energy is not None:
            parts.append([self.energy])
        if self.forces is not None:
            parts.append(self.forces.ravel())
        if self.stress is not None:
            parts.append(self.stress)
        if len(parts) == 0:
            return np.zeros(0)
        return np.concatenate(parts)

    @property
    def label_types(self):
        return self.layout.label_types

    @property
    def label_noise_scales(self):
        return self.noise_scales[self.label_types]

    def compute_features(self, calculators, n_jobs=1):
        """
        Fill the feature caches of all environments. Each worker thread
        writes only to the cache of its own environment.
        """
        if not isinstance(calculators, (list, tuple)):
            calculators = [calculators]

        def _fill(env):
            for calc in calculators:
                env.get_features(calc)

        Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_fill)(env) for env in self.environments
        )

    def label_map(self, i, layout=None):
        """
        Linear map from the local energy of atom i and its derivatives
        with respect to the neighbor displacements,
        [eps_i, deps_i/dr_0, ..., deps_i/dr_{n-1}] (length 1 + 3n),
        to the contribution of atom i to each label of the layout.

        Returns:
            (n_labels, 1 + 3n) array
        """
        if layout is None:
            layout = self.layout
        key = (i, layout.key)
        if key in self._label_maps:
            return self._label_maps[key]
        env = self.environments[i]
        n = env.n_neighbors
        cols = 1 + 3 * np.arange(n)
        pmat = np.zeros((layout.n_labels, 1 + 3 * n))
        if layout.energy:
            pmat[0, 0] = 1.0
        if layout.forces and n > 0:
            if np.any(env.neighbor_indices < 0):
                raise ConfigurationError(
                    "Force labels need the atom index of every neighbor"
                )
            f0 = layout.force_offset
            for c in range(3):
                np.add.at(pmat, (f0 + 3 * env.neighbor_indices + c, cols + c), -1.0)
                pmat[f0 + 3 * i + c, cols + c] += 1.0
        if layout.stress and n > 0:
            if self.volume == 0:
                raise ConfigurationError(
                    "Stress labels require a periodic structure with nonzero volume"
                )
            s0 = layout.stress_offset
            for k, (a, b) in enumerate(VOIGT_PAIRS):
                pmat[s0 + k, cols + b] += env.displacements[:, a] / self.volume
        self._label_maps[key] = pmat
        return pmat
