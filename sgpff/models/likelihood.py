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
Log marginal likelihood of a sparse GP under the DTC and VFE
approximations, and its gradient with respect to the kernel
hyperparameters and the noise standard deviations.

With N = diag(noise_vector) the inverse noise covariance, the DTC
covariance of the labels is C = Kfu Kuu^-1 Kuf + N^-1. All terms
are evaluated through Sigma = (Kuu + Kuf N Kfu)^-1 and the Cholesky
factors stored by SparseGP.update_matrices, so no NxN matrix is
formed and nothing is refactorized.
"""

import numpy as np
from pyscf.lib import logger

from sgpff.errors import ConfigurationError

APPROXIMATIONS = ["DTC", "VFE"]


def _logdet_from_cholesky(L):
    return 2 * np.sum(np.log(np.diag(L)))


def _training_kff_diag(gp, kernel, hyp_grad=False):
    if not hyp_grad:
        if len(gp.training_structures) == 0:
            return np.zeros(0)
        return np.concatenate(
            [kernel.struc_struc_diag(s) for s in gp.training_structures]
        )
    if len(gp.training_structures) == 0:
        return np.zeros(0), np.zeros((kernel.n_hyps, 0))
    res = [kernel.struc_struc_diag(s, hyp_grad=True) for s in gp.training_structures]
    return (
        np.concatenate([r[0] for r in res]),
        np.concatenate([r[1] for r in res], axis=1),
    )


def compute_likelihood(gp, approximation="DTC", gradient=True):
    """
    Compute the log marginal likelihood of a SparseGP and store the
    individual terms on it: data_fit, complexity_penalty, trace_term,
    constant_term, log_marginal_likelihood and, if gradient is set,
    likelihood_gradient (ordered as gp.hyperparameters).

    Returns:
        float: log marginal likelihood
    """
    approximation = approximation.upper()
    if approximation not in APPROXIMATIONS:
        raise ConfigurationError(
            "Unknown approximation {}, must be one of {}".format(
                approximation, APPROXIMATIONS
            )
        )
    gp._check_current()
    t0 = (logger.process_clock(), logger.perf_counter())
    vfe = approximation == "VFE"
    Kuf = gp.Kuf
    Sigma = gp.Sigma
    A = gp.Kuu_inverse
    noise = gp.noise_vector
    y = gp.y
    nf = y.size

    Ny = noise * y
    b = Kuf.dot(Ny)
    Sb = Sigma.dot(b)
    data_fit = -0.5 * (y.dot(Ny) - b.dot(Sb))
    complexity_penalty = -0.5 * (
        _logdet_from_cholesky(gp.L_Sigma_inv)
        - _logdet_from_cholesky(gp.L_Kuu)
        - np.sum(np.log(noise))
    )
    constant_term = -0.5 * nf * np.log(2 * np.pi)
    trace_term = 0.0
    if vfe:
        kff = sum(_training_kff_diag(gp, kernel) for kernel in gp.kernels)
        qff = np.einsum("uf,uv,vf->f", Kuf, A, Kuf)
        kmq = kff - qff
        trace_term = -0.5 * np.sum(noise * kmq)

    gp.data_fit = data_fit
    gp.complexity_penalty = complexity_penalty
    gp.constant_term = constant_term
    gp.trace_term = trace_term
    gp.log_marginal_likelihood = data_fit + complexity_penalty + trace_term
    gp.log_marginal_likelihood += constant_term
    logger.info(
        gp,
        "%s log marginal likelihood %.8e (data fit %.6e, complexity %.6e, trace %.6e)",
        approximation,
        gp.log_marginal_likelihood,
        data_fit,
        complexity_penalty,
        trace_term,
    )

    if not gradient:
        logger.timer(gp, "compute_likelihood", *t0)
        return gp.log_marginal_likelihood

    # a = C^-1 y, c = Kuu^-1 Kuf a
    a = Ny - noise * Kuf.T.dot(Sb)
    c = A.dot(Kuf.dot(a))
    # M = Sigma Kuf N, R = Kuu^-1 - Sigma
    M = Sigma.dot(Kuf * noise)
    R = A - Sigma
    W = noise - noise**2 * np.einsum("uf,uv,vf->f", Kuf, Sigma, Kuf)
    if vfe:
        G = A.dot(Kuf)

    def _dtc_grad(dKuu, dKuf, dLam):
        fit = 2 * c.dot(dKuf.dot(a)) - c.dot(dKuu.dot(c)) + dLam.dot(a * a)
        tr = 2 * np.sum(dKuf * M) - np.sum(dKuu * R) + dLam.dot(W)
        return 0.5 * fit - 0.5 * tr

    def _trace_grad(dKuu, dKuf, dkff, dN):
        dqff = 2 * np.sum(dKuf * G, axis=0) - np.einsum("uf,uv,vf->f", G, dKuu, G)
        return -0.5 * np.sum(dN * kmq + noise * (dkff - dqff))

    grad = []
    envs = gp.sparse_environments
    zeros_f = np.zeros(nf)
    for kernel in gp.kernels:
        _, dKuu = kernel.envs_envs(envs, envs, hyp_grad=True)
        _, dKuf = gp._kuf_block(kernel, envs, hyp_grad=True)
        if vfe:
            _, dkff = _training_kff_diag(gp, kernel, hyp_grad=True)
        for h in range(kernel.n_hyps):
            g = _dtc_grad(dKuu[h], dKuf[h], zeros_f)
            if vfe:
                g += _trace_grad(dKuu[h], dKuf[h], dkff[h], zeros_f)
            grad.append(g)

    nu = Kuf.shape[0]
    zeros_uu = np.zeros((nu, nu))
    zeros_uf = np.zeros((nu, nf))
    types = gp.label_types
    for t, sigma in enumerate(gp.noise_stds):
        on = types == t
        # Lambda = 1 / noise scales as sigma^2
        dLam = np.where(on, 2 / (noise * sigma), 0.0)
        g = _dtc_grad(zeros_uu, zeros_uf, dLam)
        if vfe:
            dN = np.where(on, -2 * noise / sigma, 0.0)
            g += _trace_grad(zeros_uu, zeros_uf, zeros_f, dN)
        grad.append(g)

    gp.likelihood_gradient = np.array(grad)
    logger.timer(gp, "compute_likelihood", *t0)
    return gp.log_marginal_likelihood
