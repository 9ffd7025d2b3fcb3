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
Mapped evaluators. A sparse GP with a normalized dot product kernel
on the B2 descriptor has a local energy (power 2) or local variance
(power 1) that is a quadratic form in the normalized descriptor, so
the whole sparse set can be folded into one matrix per species.
These classes hold those matrices, read and write them as
coefficient files for simulation hosts, and evaluate energies,
pairwise partial forces, stresses and uncertainties from them.
"""

import datetime
import re
import sys

import numpy as np
import yaml
from pyscf.lib import logger

from sgpff.descriptors.features import B2Calculator
from sgpff.descriptors.structure import VOIGT_PAIRS, LocalEnvironment
from sgpff.errors import ConfigurationError, UnsupportedOperationError
from sgpff.models.kernels import NormalizedDotProduct

VALUES_PER_LINE = 5


class MappedSerializable:
    def to_dict(self):
        raise NotImplementedError

    @classmethod
    def from_dict(cls, d):
        raise NotImplementedError

    def dump(self, fname):
        """
        Save the evaluator to a file name fname as yaml format.
        """
        state_dict = self.to_dict()
        with open(fname, "w") as f:
            yaml.dump(state_dict, f)

    @classmethod
    def load(cls, fname):
        """
        Load an instance of this class from yaml
        """
        with open(fname, "r") as f:
            state_dict = yaml.load(f, Loader=yaml.CLoader)
        return cls.from_dict(state_dict)

    @classmethod
    def bcast(cls, comm, model=None, root=0):
        """
        Broadcast a model from the root process of an mpi4py-style
        communicator. Only the root needs to pass the model.
        """
        state_dict = model.to_dict() if comm.rank == root else None
        state_dict = comm.bcast(state_dict, root=root)
        return cls.from_dict(state_dict)


def _parse_header(line):
    contributor = None
    species = None
    match = re.search(r"CONTRIBUTOR:\s*(.*?)\s*(SPECIES:|$)", line)
    if match is not None and match.group(1) != "":
        contributor = match.group(1)
    match = re.search(r"SPECIES:\s*(.*)$", line)
    if match is not None:
        try:
            species = [int(s) for s in match.group(1).split()]
        except ValueError:
            raise ConfigurationError("Malformed species list in header: " + line)
    return contributor, species


class _MappedB2Model(MappedSerializable):

    power = None
    kind = None

    def __init__(self, descriptor, beta, contributor=None, verbose=logger.NOTE):
        """
        Args:
            descriptor (B2Calculator): descriptor the model was trained on
            beta (n_species, n_features, n_features): symmetric matrix
                of the quadratic form for each central species
            contributor (str): name written to coefficient file headers
        """
        if not isinstance(descriptor, B2Calculator):
            raise UnsupportedOperationError(
                "Mapping is only implemented for the B2 descriptor"
            )
        beta = np.asarray(beta, dtype=np.float64)
        nd = descriptor.n_features
        if beta.shape != (descriptor.n_species, nd, nd):
            raise ConfigurationError(
                "Expected coefficients of shape {}, got {}".format(
                    (descriptor.n_species, nd, nd), beta.shape
                )
            )
        self.descriptor = descriptor
        self.beta = beta
        self.contributor = contributor
        self.verbose = verbose
        self.stdout = sys.stdout

    def __getstate__(self):
        state = self.__dict__.copy()
        state["stdout"] = None
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self.stdout = sys.stdout

    @classmethod
    def from_sparse_gp(cls, gp, kernel_index=0, contributor=None):
        gp._check_current()
        kernel = gp.kernels[kernel_index]
        if not isinstance(kernel, NormalizedDotProduct) or not isinstance(
            kernel.descriptor, B2Calculator
        ):
            raise UnsupportedOperationError(
                "Mapping needs a NormalizedDotProduct kernel on the B2 descriptor"
            )
        if kernel.power != cls.power:
            raise UnsupportedOperationError(
                "Mapping the {} needs power {}, got {}".format(
                    cls.kind, cls.power, kernel.power
                )
            )
        return cls(
            kernel.descriptor,
            cls._get_beta(gp, kernel_index),
            contributor=contributor,
            verbose=gp.verbose,
        )

    @staticmethod
    def _normalized_sparse_descriptors(gp, calc):
        """(n_species, n_sparse, n_features) normalized descriptors,
        zero in the rows of other species."""
        dmat = np.zeros((calc.n_species, gp.n_sparse, calc.n_features))
        for u, env in enumerate(gp.sparse_environments):
            d = env.get_features(calc).values[0]
            norm = np.linalg.norm(d)
            if norm > 0:
                dmat[calc.species_index(env.species), u] = d / norm
        return dmat

    @classmethod
    def _get_beta(cls, gp, kernel_index):
        raise NotImplementedError

    @property
    def beta_size(self):
        raise NotImplementedError

    def _pack(self, beta_s):
        raise NotImplementedError

    @classmethod
    def _unpack(cls, values, nd):
        raise NotImplementedError

    def to_dict(self):
        return {
            "kind": self.kind,
            "descriptor": self.descriptor.to_dict(),
            "beta": self.beta.tolist(),
            "contributor": self.contributor,
        }

    @classmethod
    def from_dict(cls, d):
        if d.get("kind") != cls.kind:
            raise ConfigurationError(
                "Cannot build a {} model from a {} state".format(cls.kind, d.get("kind"))
            )
        return cls(
            B2Calculator.from_dict(d["descriptor"]),
            d["beta"],
            contributor=d.get("contributor"),
        )

    def write_coefficients(self, fname):
        """
        Write the coefficient file read by simulation hosts.
        """
        calc = self.descriptor
        if calc.radial_hyps != [0.0, calc.cutoff]:
            raise ConfigurationError(
                "Coefficient files assume a radial basis on [0, cutoff]"
            )
        header = "DATE: {} CONTRIBUTOR: {} SPECIES: {}".format(
            datetime.date.today().isoformat(),
            self.contributor if self.contributor is not None else "",
            " ".join(str(s) for s in calc.species),
        )
        lines = [
            header,
            calc.radial_basis,
            "{} {} {} {}".format(calc.n_species, calc.n_max, calc.l_max, self.beta_size),
            calc.cutoff_function,
            repr(calc.cutoff),
        ]
        for s in range(calc.n_species):
            vals = self._pack(self.beta[s])
            for p0 in range(0, vals.size, VALUES_PER_LINE):
                lines.append(
                    " ".join(
                        "{:.15e}".format(v) for v in vals[p0 : p0 + VALUES_PER_LINE]
                    )
                )
        with open(fname, "w") as f:
            f.write("\n".join(lines) + "\n")
        logger.info(self, "Wrote %s coefficients to %s", self.kind, fname)

    @classmethod
    def read_coefficients(cls, fname, species=None):
        """
        Read a coefficient file. The species list is taken from the
        header if present, otherwise from the species argument, and
        defaults to the type indices 0 .. n_species - 1.
        """
        with open(fname, "r") as f:
            lines = f.read().splitlines()
        if len(lines) < 5:
            raise ConfigurationError("Coefficient file header is truncated")
        contributor, file_species = _parse_header(lines[0])
        radial_basis = lines[1].strip()
        try:
            n_species, n_max, l_max, beta_size = [int(x) for x in lines[2].split()]
        except ValueError:
            raise ConfigurationError(
                "Expected 'n_species n_max l_max beta_size', got '{}'".format(lines[2])
            )
        cutoff_function = lines[3].strip()
        try:
            cutoff = float(lines[4].split()[0])
        except (ValueError, IndexError):
            raise ConfigurationError("Malformed cutoff line '{}'".format(lines[4]))
        if file_species is not None:
            species = file_species
        elif species is None:
            species = list(range(n_species))
        if len(species) != n_species:
            raise ConfigurationError(
                "Got {} species for {} coefficient blocks".format(
                    len(species), n_species
                )
            )
        calc = B2Calculator(
            species,
            cutoff,
            n_max,
            l_max,
            radial_basis=radial_basis,
            cutoff_function=cutoff_function,
        )
        nd = calc.n_features
        expected = cls._size_for(nd)
        if beta_size != expected:
            raise ConfigurationError(
                "beta_size {} does not match {} expected for {} features".format(
                    beta_size, expected, nd
                )
            )
        try:
            values = np.array([float(x) for line in lines[5:] for x in line.split()])
        except ValueError:
            raise ConfigurationError("Non-numeric coefficient in " + fname)
        if values.size != beta_size * n_species:
            raise ConfigurationError(
                "Expected {} coefficients, found {}".format(
                    beta_size * n_species, values.size
                )
            )
        values = values.reshape(n_species, beta_size)
        beta = np.stack([cls._unpack(values[s], nd) for s in range(n_species)])
        return cls(calc, beta, contributor=contributor)

    def _descriptor(self, species, neighbor_species, displacements):
        disp = np.asarray(displacements, dtype=np.float64).reshape(-1, 3)
        neighbor_species = np.asarray(neighbor_species, dtype=int).reshape(-1)
        inside = np.linalg.norm(disp, axis=1) < self.descriptor.cutoff
        env = LocalEnvironment(species, neighbor_species[inside], disp[inside])
        fb = self.descriptor.compute(env)
        return fb.values[0], fb.jacobian[0], inside


class MappedPotential(_MappedB2Model):
    """
    Local energy eps(d) = d^T beta d / |d|^2 of a mapped power-2
    normalized dot product model.
    """

    power = 2
    kind = "mean"

    @classmethod
    def _get_beta(cls, gp, kernel_index):
        kernel = gp.kernels[kernel_index]
        calc = kernel.descriptor
        dmat = cls._normalized_sparse_descriptors(gp, calc)
        beta = np.einsum("u,sui,suj->sij", gp.alpha, dmat, dmat)
        return kernel.signal_variance * beta

    @staticmethod
    def _size_for(nd):
        return nd * (nd + 1) // 2

    @property
    def beta_size(self):
        return self._size_for(self.descriptor.n_features)

    def _pack(self, beta_s):
        iu0, iu1 = np.triu_indices(beta_s.shape[0])
        return np.where(iu0 == iu1, 1.0, 2.0) * beta_s[iu0, iu1]

    @classmethod
    def _unpack(cls, values, nd):
        beta = np.zeros((nd, nd))
        beta[np.triu_indices(nd)] = values
        return 0.5 * (beta + beta.T)

    def compute_atom(self, species, neighbor_species, displacements):
        """
        Local energy of one atom and the pairwise partial forces
        f_ij = -d eps_i / d r_ij on each neighbor displacement.
        Neighbors beyond the cutoff get zero partial force.

        Returns:
            energy (float), partial_forces (n_neighbors, 3)
        """
        d, jac, inside = self._descriptor(species, neighbor_species, displacements)
        fij = np.zeros((inside.size, 3))
        nsq = d.dot(d)
        if nsq == 0:
            return 0.0, fij
        beta = self.beta[self.descriptor.species_index(species)]
        bd = beta.dot(d)
        energy = d.dot(bd) / nsq
        de = 2 * (
            np.einsum("f,fnc->nc", bd, jac) - energy * np.einsum("f,fnc->nc", d, jac)
        )
        fij[inside] = -de / nsq
        return energy, fij

    def compute(self, structure, atoms=None, comm=None):
        """
        Energy, forces and stress of a structure. If atoms is given,
        only those atoms are evaluated; with comm, partial results of
        all processes are summed.

        Returns:
            energy (float), forces (N, 3), stress (6,) or None,
            local_energies (N,)
        """
        t0 = (logger.process_clock(), logger.perf_counter())
        n = structure.n_atoms
        if atoms is None:
            atoms = range(n)
        local_energies = np.zeros(n)
        forces = np.zeros((n, 3))
        virial = np.zeros((3, 3))
        for i in atoms:
            env = structure.environments[i]
            if env.n_neighbors > 0 and np.any(env.neighbor_indices < 0):
                raise ConfigurationError(
                    "Forces need the atom index of every neighbor"
                )
            energy, fij = self.compute_atom(
                env.species, env.neighbor_species, env.displacements
            )
            local_energies[i] = energy
            forces[i] -= fij.sum(axis=0)
            np.add.at(forces, env.neighbor_indices, fij)
            virial -= np.einsum("na,nb->ab", env.displacements, fij)
        if comm is not None:
            local_energies = comm.allreduce(local_energies)
            forces = comm.allreduce(forces)
            virial = comm.allreduce(virial)
        stress = None
        if structure.volume > 0:
            stress = np.array([virial[a, b] for a, b in VOIGT_PAIRS])
            stress /= structure.volume
        logger.timer(self, "mapped compute", *t0)
        return local_energies.sum(), forces, stress, local_energies


class MappedUncertainty(_MappedB2Model):
    """
    Local energy variance var(d) = d^T beta d / |d|^2 of a mapped
    power-1 normalized dot product model.
    """

    power = 1
    kind = "variance"

    @classmethod
    def _get_beta(cls, gp, kernel_index):
        if len(gp.kernels) != 1:
            raise UnsupportedOperationError(
                "Variance mapping needs a model with a single kernel"
            )
        kernel = gp.kernels[kernel_index]
        calc = kernel.descriptor
        sig = kernel.signal_variance
        dmat = cls._normalized_sparse_descriptors(gp, calc)
        R = gp.Kuu_inverse - gp.Sigma
        beta = np.einsum("sui,uv,svj->sij", dmat, R, dmat)
        return sig * np.identity(calc.n_features)[None] - sig**2 * beta

    @staticmethod
    def _size_for(nd):
        return nd * nd

    @property
    def beta_size(self):
        return self._size_for(self.descriptor.n_features)

    def _pack(self, beta_s):
        return beta_s.ravel()

    @classmethod
    def _unpack(cls, values, nd):
        return values.reshape(nd, nd).copy()

    def compute_atom(self, species, neighbor_species, displacements):
        """
        Standard deviation of the local energy of one atom.
        """
        d, jac, inside = self._descriptor(species, neighbor_species, displacements)
        nsq = d.dot(d)
        if nsq == 0:
            return 0.0
        beta = self.beta[self.descriptor.species_index(species)]
        var = d.dot(beta.dot(d)) / nsq
        return np.sqrt(max(var, 0.0))

    def compute(self, structure, atoms=None, comm=None):
        """
        Standard deviation of the local energy of every atom, (N,).
        """
        n = structure.n_atoms
        if atoms is None:
            atoms = range(n)
        stds = np.zeros(n)
        for i in atoms:
            env = structure.environments[i]
            stds[i] = self.compute_atom(
                env.species, env.neighbor_species, env.displacements
            )
        if comm is not None:
            stds = comm.allreduce(stds)
        return stds


MAPPED_MODELS = {
    MappedPotential.kind: MappedPotential,
    MappedUncertainty.kind: MappedUncertainty,
}
