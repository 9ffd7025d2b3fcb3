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

import sys

import numpy as np
from pyscf.lib import logger
from pyscf.lib.scipy_helper import pivoted_cholesky
from scipy.linalg import cho_solve, cholesky

from sgpff.errors import (
    ConfigurationError,
    NumericalError,
    StaleModelError,
    UnsupportedOperationError,
)
from sgpff.lib.matrix_buffer import GrowableMatrix, GrowableVector

UNINITIALIZED = "uninitialized"
STALE = "stale"
CURRENT = "current"


def select_representative_environments(kernel, envs, tol=1e-5, nmax=None):
    """
    Choose a well-conditioned subset of candidate environments by
    pivoted Cholesky decomposition of their normalized kernel matrix.
    Environments with zero prior variance are never selected.

    Args:
        kernel (SparseKernel): kernel defining the similarity
        envs (list of LocalEnvironment): candidates
        tol (float): stopping tolerance of the decomposition
        nmax (int): maximum number of environments to return

    Returns:
        list of LocalEnvironment
    """
    envs = [env for env, d in zip(envs, kernel.diag(envs)) if d > 0]
    if len(envs) == 0:
        return []
    S = kernel(envs)
    normlz = np.power(np.diag(S), -0.5)
    Snorm = normlz[:, None] * S * normlz[None, :]
    odS = np.abs(Snorm)
    np.fill_diagonal(odS, 0.0)
    odSs = np.sum(odS, axis=0)
    sortidx = np.argsort(odSs, kind="stable")

    Ssort = Snorm[np.ix_(sortidx, sortidx)].copy()
    c, piv, r_c = pivoted_cholesky(Ssort, tol=tol)
    if nmax is not None and nmax < r_c:
        r_c = nmax
    idx = sortidx[piv[:r_c]]
    return [envs[i] for i in idx]


class Prediction:
    """
    Posterior prediction for one structure. Every label the structure
    supports is predicted: the energy, the forces and, for periodic
    structures, the stress.

    Attributes:
        layout (LabelLayout): labels that were predicted
        mean (n_labels,): posterior mean of each label
        variance (n_labels,): posterior variance of each label,
            clipped at zero
        contributions (n_sparse, n_labels): contribution of each
            sparse environment to the mean
        kernel_means (list): mean of each label due to each kernel
    """

    def __init__(self, layout, mean, variance, contributions, kernel_means):
        self.layout = layout
        self.mean = mean
        self.variance = variance
        self.contributions = contributions
        self.kernel_means = kernel_means
        self.energy, self.forces, self.stress = layout.split(mean)
        (
            self.energy_variance,
            self.force_variances,
            self.stress_variance,
        ) = layout.split(variance)


class SparseGP:
    """
    Sparse Gaussian process over local energies, trained on total
    energies, forces and stresses of structures.

    The kernels share one set of sparse (inducing) environments. For
    each kernel the covariance between sparse environments (Kuu) and
    between sparse environments and training labels (Kuf) is stored
    and grown in place as environments and structures are added.
    The posterior is computed from the sums of these blocks over
    kernels by ``update_matrices`` and is out of date after any
    change to the sparse set, the training set or the
    hyperparameters.
    """

    def __init__(
        self,
        kernels,
        energy_noise,
        force_noise,
        stress_noise,
        jitter=0.0,
        n_jobs=1,
        verbose=logger.NOTE,
        stdout=None,
    ):
        """
        Args:
            kernels (list[SparseKernel]): kernels whose sum is the
                covariance of local energies
            energy_noise (float): noise standard deviation of energy labels
            force_noise (float): noise standard deviation of force labels
            stress_noise (float): noise standard deviation of stress labels
            jitter (float): added to the diagonal of Kuu before
                factorization
            n_jobs (int): number of threads used to compute descriptors
        """
        if not isinstance(kernels, list):
            kernels = [kernels]
        if len(kernels) < 1:
            raise ValueError("Need at least 1 covariance kernel")
        self.kernels = kernels
        self.energy_noise = energy_noise
        self.force_noise = force_noise
        self.stress_noise = stress_noise
        self._check_noise()
        self.jitter = jitter
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.stdout = sys.stdout if stdout is None else stdout

        self.sparse_environments = []
        self.training_structures = []
        self.Kuu_kernels = [GrowableMatrix() for _ in kernels]
        self.Kuf_kernels = [GrowableMatrix() for _ in kernels]
        self._labels = GrowableVector()
        self._label_types = GrowableVector(dtype=int)
        self._label_noise_scales = GrowableVector()

        self.state = UNINITIALIZED
        self.Kuu = None
        self.Kuf = None
        self.y = None
        self.Kuu_inverse = None
        self.Sigma = None
        self.alpha = None
        self.L_Kuu = None
        self.L_Sigma_inv = None

        self.log_marginal_likelihood = None
        self.data_fit = None
        self.complexity_penalty = None
        self.trace_term = None
        self.constant_term = None
        self.likelihood_gradient = None

    def __getstate__(self):
        state = self.__dict__.copy()
        state["stdout"] = None
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self.stdout = sys.stdout

    @staticmethod
    def _check_noise_values(noise):
        for name, value in zip(["energy_noise", "force_noise", "stress_noise"], noise):
            if not value > 0:
                raise ConfigurationError(
                    "{} must be positive, got {}".format(name, value)
                )

    def _check_noise(self):
        self._check_noise_values(self.noise_stds)

    def _mark_stale(self):
        self.state = STALE

    def _check_current(self):
        if self.state != CURRENT:
            raise StaleModelError(
                "Posterior is {}; call update_matrices() first".format(self.state)
            )

    @property
    def descriptors(self):
        descs = []
        for kernel in self.kernels:
            if kernel.descriptor not in descs:
                descs.append(kernel.descriptor)
        return descs

    @property
    def n_sparse(self):
        return len(self.sparse_environments)

    @property
    def n_labels(self):
        return len(self._labels)

    @property
    def labels(self):
        return self._labels.array.copy()

    @property
    def label_types(self):
        return self._label_types.array.copy()

    @property
    def label_noise_scales(self):
        return self._label_noise_scales.array.copy()

    @property
    def noise_stds(self):
        return np.array([self.energy_noise, self.force_noise, self.stress_noise])

    @property
    def noise_vector(self):
        """Inverse noise variance of every training label."""
        sigma = self.noise_stds[self._label_types.array] * self._label_noise_scales.array
        return 1.0 / sigma**2

    @property
    def hyperparameters(self):
        return np.concatenate([k.hyps for k in self.kernels] + [self.noise_stds])

    @property
    def n_hyperparameters(self):
        return sum(k.n_hyps for k in self.kernels) + 3

    def _kuf_block(self, kernel, envs, hyp_grad=False):
        nl = self.n_labels
        if not hyp_grad:
            if len(self.training_structures) == 0:
                return np.zeros((len(envs), nl))
            return np.concatenate(
                [kernel.envs_struc(envs, s) for s in self.training_structures], axis=1
            )
        if len(self.training_structures) == 0:
            return np.zeros((len(envs), nl)), np.zeros((kernel.n_hyps, len(envs), nl))
        res = [kernel.envs_struc(envs, s, hyp_grad=True) for s in self.training_structures]
        return (
            np.concatenate([r[0] for r in res], axis=1),
            np.concatenate([r[1] for r in res], axis=2),
        )

    def _kuu_block(self, kernel, envs1, envs2=None):
        if envs2 is None:
            kmat = kernel.envs_envs(envs1, envs1)
            upper = np.triu(kmat)
            return upper + np.triu(kmat, 1).T
        return kernel.envs_envs(envs1, envs2)

    def add_sparse_environment(self, env):
        self.add_sparse_environments([env])

    def add_sparse_environments(self, envs):
        """
        Append environments to the sparse set. Only the new rows and
        columns of Kuu and the new rows of Kuf are computed.
        """
        envs = list(envs)
        if len(envs) == 0:
            return
        t0 = (logger.process_clock(), logger.perf_counter())
        for kernel, Kuu, Kuf in zip(self.kernels, self.Kuu_kernels, self.Kuf_kernels):
            new = self._kuu_block(kernel, envs)
            if self.n_sparse > 0:
                cross = self._kuu_block(kernel, envs, self.sparse_environments)
            else:
                cross = np.zeros((len(envs), 0))
            Kuu.append_rows(cross)
            Kuu.append_cols(np.concatenate([cross.T, new], axis=0))
            Kuf.append_rows(self._kuf_block(kernel, envs))
        self.sparse_environments.extend(envs)
        self._mark_stale()
        logger.info(
            self, "Added %d sparse environments, %d total", len(envs), self.n_sparse
        )
        logger.timer(self, "add_sparse_environments", *t0)

    def add_training_structure(self, structure, sparse_atoms=None):
        """
        Append the labels of a structure to the training set.

        Args:
            structure (StructureDescriptor): labelled structure
            sparse_atoms ("all" or list of int): atoms whose
                environments are also added to the sparse set
        """
        if isinstance(sparse_atoms, str):
            if sparse_atoms != "all":
                raise ConfigurationError(
                    "sparse_atoms must be 'all' or a list of atom indices"
                )
            sparse_atoms = range(structure.n_atoms)
        t0 = (logger.process_clock(), logger.perf_counter())
        structure.compute_features(self.descriptors, n_jobs=self.n_jobs)
        layout = structure.layout
        if layout.n_labels == 0:
            logger.warn(self, "Training structure has no labels")
        for kernel, Kuf in zip(self.kernels, self.Kuf_kernels):
            Kuf.append_cols(kernel.envs_struc(self.sparse_environments, structure))
        self._labels.append(structure.labels)
        self._label_types.append(layout.label_types)
        self._label_noise_scales.append(structure.label_noise_scales)
        self.training_structures.append(structure)
        self._mark_stale()
        logger.info(
            self,
            "Added training structure with %d atoms and %d labels, %d labels total",
            structure.n_atoms,
            layout.n_labels,
            self.n_labels,
        )
        logger.timer(self, "add_training_structure", *t0)
        if sparse_atoms is not None:
            self.add_sparse_environments(
                [structure.environments[i] for i in sparse_atoms]
            )

    def add_training_environment(self, env):
        raise UnsupportedOperationError(
            "Training on individual local environments is not supported"
        )

    def add_training_environments(self, envs):
        raise UnsupportedOperationError(
            "Training on individual local environments is not supported"
        )

    def _cholesky(self, mat, name):
        try:
            return cholesky(mat, lower=True)
        except np.linalg.LinAlgError as e:
            raise NumericalError(
                "Cholesky factorization of {} ({} x {}, jitter {}) failed; "
                "condition number estimate {:.3e}".format(
                    name, mat.shape[0], mat.shape[1], self.jitter, np.linalg.cond(mat)
                )
            ) from e

    def update_matrices(self):
        """
        Factorize the covariance blocks and compute the posterior.
        """
        if self.n_sparse == 0:
            raise ConfigurationError("Need at least 1 sparse environment")
        t0 = (logger.process_clock(), logger.perf_counter())
        Kuu = sum(K.array for K in self.Kuu_kernels)
        Kuf = sum(K.array for K in self.Kuf_kernels)
        nu = Kuu.shape[0]
        ident = np.identity(nu)
        Kuu_reg = Kuu + self.jitter * ident
        L_Kuu = self._cholesky(Kuu_reg, "Kuu")
        Kuu_inverse = cho_solve((L_Kuu, True), ident)

        noise = self.noise_vector
        y = self.labels
        KufN = Kuf * noise
        Sigma_inv = Kuu_reg + KufN.dot(Kuf.T)
        Sigma_inv = 0.5 * (Sigma_inv + Sigma_inv.T)
        L_Sigma_inv = self._cholesky(Sigma_inv, "Kuu + Kuf N Kfu")
        Sigma = cho_solve((L_Sigma_inv, True), ident)
        alpha = Sigma.dot(KufN.dot(y))

        self.Kuu = Kuu
        self.Kuf = Kuf
        self.y = y
        self.L_Kuu = L_Kuu
        self.L_Sigma_inv = L_Sigma_inv
        self.Kuu_inverse = Kuu_inverse
        self.Sigma = Sigma
        self.alpha = alpha
        self.state = CURRENT
        logger.debug(self, "Updated posterior with %d sparse, %d labels", nu, y.size)
        logger.timer(self, "update_matrices", *t0)

    def set_hyperparameters(self, hyps):
        """
        Set all hyperparameters, ordered as in self.hyperparameters.
        Kernels whose change is a pure rescaling have their blocks
        scaled in place; other kernels have their blocks recomputed.
        """
        hyps = np.asarray(hyps, dtype=np.float64).ravel()
        if hyps.size != self.n_hyperparameters:
            raise ValueError(
                "Expected {} hyperparameters, got {}".format(
                    self.n_hyperparameters, hyps.size
                )
            )
        self._check_noise_values(hyps[-3:])
        self._mark_stale()
        start = 0
        for ik, kernel in enumerate(self.kernels):
            new = hyps[start : start + kernel.n_hyps]
            start += kernel.n_hyps
            if np.array_equal(new, kernel.hyps):
                continue
            factor = kernel.rescale_factor(new)
            kernel.hyps = new
            if factor is not None:
                self.Kuu_kernels[ik].scale(factor)
                self.Kuf_kernels[ik].scale(factor)
            else:
                self._rebuild_kernel(ik)
        self.energy_noise, self.force_noise, self.stress_noise = hyps[start:]

    def _rebuild_kernel(self, ik):
        t0 = (logger.process_clock(), logger.perf_counter())
        kernel = self.kernels[ik]
        envs = self.sparse_environments
        if len(envs) > 0:
            Kuu = self._kuu_block(kernel, envs)
        else:
            Kuu = np.zeros((0, 0))
        self.Kuu_kernels[ik] = GrowableMatrix.from_array(Kuu)
        self.Kuf_kernels[ik] = GrowableMatrix.from_array(self._kuf_block(kernel, envs))
        logger.timer(self, "rebuild kernel %d" % ik, *t0)

    def predict(self, structure):
        """
        Posterior mean and variance of every label of a structure.

        Returns:
            Prediction
        """
        self._check_current()
        structure.compute_features(self.descriptors, n_jobs=self.n_jobs)
        layout = structure.full_layout
        envs = self.sparse_environments
        kernel_covs = [k.envs_struc(envs, structure, layout) for k in self.kernels]
        Kuf = sum(kernel_covs)
        mean = Kuf.T.dot(self.alpha)
        kself = sum(k.struc_struc_diag(structure, layout) for k in self.kernels)
        qself = np.einsum("uf,uv,vf->f", Kuf, self.Kuu_inverse, Kuf)
        sself = np.einsum("uf,uv,vf->f", Kuf, self.Sigma, Kuf)
        variance = np.maximum(kself - qself + sself, 0.0)
        return Prediction(
            layout,
            mean,
            variance,
            Kuf * self.alpha[:, None],
            [K.T.dot(self.alpha) for K in kernel_covs],
        )

    def _local_cov(self, structure):
        self._check_current()
        structure.compute_features(self.descriptors, n_jobs=self.n_jobs)
        return sum(
            k.envs_envs(structure.environments, self.sparse_environments)
            for k in self.kernels
        )

    def predict_local_energies(self, structure):
        """Posterior mean of the local energy of every atom."""
        return self._local_cov(structure).dot(self.alpha)

    def predict_local_variances(self, structure):
        """
        Posterior variance of the local energy of every atom, clipped
        at zero.
        """
        Kfu = self._local_cov(structure)
        kself = sum(k.diag(structure.environments) for k in self.kernels)
        qself = np.einsum("fu,uv,fv->f", Kfu, self.Kuu_inverse, Kfu)
        sself = np.einsum("fu,uv,fv->f", Kfu, self.Sigma, Kfu)
        return np.maximum(kself - qself + sself, 0.0)

    def predict_local_uncertainties(self, structure):
        """Posterior standard deviation of the local energy of every atom."""
        return np.sqrt(self.predict_local_variances(structure))

    def compute_likelihood(self, approximation="DTC", gradient=True):
        from sgpff.models.likelihood import compute_likelihood

        return compute_likelihood(self, approximation=approximation, gradient=gradient)

    def compute_DTC_likelihood(self, gradient=True):
        return self.compute_likelihood("DTC", gradient=gradient)

    def compute_VFE_likelihood(self, gradient=True):
        return self.compute_likelihood("VFE", gradient=gradient)

    def map(self, kernel_index=0, contributor=None):
        """
        Map the mean of a normalized dot product kernel with power 2
        to a MappedPotential that evaluates it without the sparse set.
        """
        from sgpff.models.mapping import MappedPotential

        return MappedPotential.from_sparse_gp(
            self, kernel_index=kernel_index, contributor=contributor
        )

    def map_uncertainty(self, kernel_index=0, contributor=None):
        """
        Map the local energy variance of a normalized dot product
        kernel with power 1 to a MappedUncertainty.
        """
        from sgpff.models.mapping import MappedUncertainty

        return MappedUncertainty.from_sparse_gp(
            self, kernel_index=kernel_index, contributor=contributor
        )

    def write_mapping_coefficients(self, fname, contributor=None, kernel_index=0):
        self.map(kernel_index, contributor).write_coefficients(fname)

    def write_varmap_coefficients(self, fname, contributor=None, kernel_index=0):
        self.map_uncertainty(kernel_index, contributor).write_coefficients(fname)
