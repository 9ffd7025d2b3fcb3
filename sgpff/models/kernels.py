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

# Kernels between local environments, and their contractions with
# descriptor jacobians and structure label maps.

import numpy as np
from pyscf.lib import prange
from sklearn.gaussian_process.kernels import GenericKernelMixin, Hyperparameter, Kernel

from sgpff.descriptors.features import FeatureBlock
from sgpff.errors import ConfigurationError

MAX_BLOCK_UNITS = 2048


def _segment_sum(arr, counts, axis=0):
    """
    Sum contiguous segments of arr along axis. Segment i has length
    counts[i] and may be empty.
    """
    counts = np.asarray(counts, dtype=int)
    shape = list(arr.shape)
    shape[axis] = counts.size
    out = np.zeros(shape, dtype=arr.dtype)
    nonempty = counts > 0
    if arr.shape[axis] == 0 or not nonempty.any():
        return out
    starts = np.concatenate([[0], np.cumsum(counts)[:-1]])[nonempty]
    index = [slice(None)] * arr.ndim
    index[axis] = nonempty
    out[tuple(index)] = np.add.reduceat(arr, starts, axis=axis)
    return out


def _stack_blocks(blocks):
    counts = np.array([b.n_units for b in blocks], dtype=int)
    values = np.concatenate([b.values for b in blocks], axis=0)
    keys = np.concatenate([b.keys for b in blocks], axis=0)
    if any(b.weights is None for b in blocks):
        weights = None
        weight_derivs = None
    else:
        weights = np.concatenate([b.weights for b in blocks])
        weight_derivs = np.concatenate([b.weight_derivs for b in blocks], axis=0)
    return FeatureBlock(values, None, keys, weights, weight_derivs), counts


def _scale_terms(terms, c):
    return {name: c * val for name, val in terms.items()}


class SparseKernel(GenericKernelMixin, Kernel):
    """
    Base class for kernels between local environments.

    The kernel between two environments is a sum over pairs of
    feature units with matching species keys. Subclasses implement
    ``_pair_terms``, which returns the pairwise unit kernel and its
    derivatives with respect to the unit values; this class contracts
    them with the descriptor jacobians and label maps to get
    covariances between local energies and structure labels.

    Environments are passed in place of the X and Y arrays of the
    usual sklearn kernels, so ``__call__`` and ``diag`` work on lists
    of LocalEnvironment objects.
    """

    descriptor = None

    def _pair_terms(self, A, B, order, hyp_grad):
        """
        Args:
            A, B (FeatureBlock): stacked units
            order (int): 0 for the kernel, 1 to also return ky, 2 to
                also return kx and kxy
            hyp_grad (bool): whether to return hyperparameter
                derivatives of the same terms

        Returns:
            terms (dict): "k" (na, nb), "ky" (na, nb, d), "kx" (na, nb, d),
                "kxy" (na, nb, d, d), where x refers to A and y to B
            dterms (list of dict): one dict like terms for each entry of
                self.hyperparameters, or None if hyp_grad is False
        """
        raise NotImplementedError

    @property
    def hyps(self):
        return np.array(
            [getattr(self, hp.name) for hp in self.hyperparameters], dtype=np.float64
        )

    @hyps.setter
    def hyps(self, values):
        values = np.asarray(values, dtype=np.float64).ravel()
        hps = self.hyperparameters
        if values.size != len(hps):
            raise ValueError(
                "Expected {} hyperparameters, got {}".format(len(hps), values.size)
            )
        for hp, val in zip(hps, values):
            setattr(self, hp.name, float(val))

    @property
    def n_hyps(self):
        return len(self.hyperparameters)

    def rescale_factor(self, new_hyps):
        """
        If new_hyps differs from the current hyperparameters only in the
        signal variance, return the ratio of new to old signal variance,
        by which every covariance scales. Otherwise return None.
        """
        names = [hp.name for hp in self.hyperparameters]
        if "signal_variance" not in names:
            return None
        new_hyps = np.asarray(new_hyps, dtype=np.float64).ravel()
        old_hyps = self.hyps
        i = names.index("signal_variance")
        others = np.arange(len(names)) != i
        if not np.array_equal(new_hyps[others], old_hyps[others]):
            return None
        if old_hyps[i] == 0:
            return None
        return new_hyps[i] / old_hyps[i]

    def _get_blocks(self, envs):
        return [env.get_features(self.descriptor) for env in envs]

    def _prange(self, blocks):
        max_units = max([b.n_units for b in blocks] + [1])
        blksize = max(1, MAX_BLOCK_UNITS // max_units)
        return prange(0, len(blocks), blksize)

    def _chunks(self, blocks):
        return [
            (p0, p1) + _stack_blocks(blocks[p0:p1])
            for p0, p1 in self._prange(blocks)
        ]

    def _masked_terms(self, A, B, order, hyp_grad):
        mask = np.all(A.keys[:, None, :] == B.keys[None, :, :], axis=-1)
        if not mask.any():
            return None
        terms, dterms = self._pair_terms(A, B, order, hyp_grad)

        def _apply(tdict):
            for name, val in tdict.items():
                tdict[name] = val * mask.reshape(mask.shape + (1,) * (val.ndim - 2))

        _apply(terms)
        if dterms is not None:
            for tdict in dterms:
                _apply(tdict)
        return terms, dterms

    def _local_cols(self, terms, counts, fb):
        """
        Covariance of every A-environment with the local energy of the
        B-environment and its displacement derivatives,
        (n_envs_a, 1 + 3 * n_neighbors_b).
        """
        k = _segment_sum(terms["k"].sum(axis=1), counts)
        ky = _segment_sum(terms["ky"], counts)
        dk = np.einsum("abd,bdnc->anc", ky, fb.jacobian).reshape(k.size, -1)
        return np.concatenate([k[:, None], dk], axis=1)

    def _local_cov(self, terms, fa, fb):
        """
        Covariance between [eps_a, deps_a/dr] and [eps_b, deps_b/dr],
        (1 + 3 * n_a, 1 + 3 * n_b).
        """
        ja, jb = fa.jacobian, fb.jacobian
        na, nb = ja.shape[2], jb.shape[2]
        cov = np.empty((1 + 3 * na, 1 + 3 * nb))
        cov[0, 0] = terms["k"].sum()
        cov[0, 1:] = np.einsum("abd,bdnc->nc", terms["ky"], jb).ravel()
        cov[1:, 0] = np.einsum("abd,adnc->nc", terms["kx"], ja).ravel()
        cov[1:, 1:] = np.einsum(
            "admc,abde,benf->mcnf", ja, terms["kxy"], jb, optimize=True
        ).reshape(3 * na, 3 * nb)
        return cov

    def env_env(self, env1, env2):
        return self.envs_envs([env1], [env2])[0, 0]

    def envs_envs(self, envs1, envs2, hyp_grad=False):
        """
        Kernel matrix between two lists of environments, (n1, n2).
        If hyp_grad, also returns its derivative with respect to the
        raw hyperparameters, (n_hyps, n1, n2).
        """
        blocks1 = self._get_blocks(envs1)
        blocks2 = self._get_blocks(envs2)
        kmat = np.zeros((len(blocks1), len(blocks2)))
        dkmat = np.zeros((self.n_hyps, len(blocks1), len(blocks2)))
        chunks2 = self._chunks(blocks2)
        for p0, p1, A, ca in self._chunks(blocks1):
            for q0, q1, B, cb in chunks2:
                res = self._masked_terms(A, B, 0, hyp_grad)
                if res is None:
                    continue
                terms, dterms = res
                kmat[p0:p1, q0:q1] = _segment_sum(
                    _segment_sum(terms["k"], ca, 0), cb, 1
                )
                if hyp_grad:
                    for h, dt in enumerate(dterms):
                        dkmat[h, p0:p1, q0:q1] = _segment_sum(
                            _segment_sum(dt["k"], ca, 0), cb, 1
                        )
        if hyp_grad:
            return kmat, dkmat
        return kmat

    def env_struc(self, env, structure, layout=None):
        return self.envs_struc([env], structure, layout=layout)[0]

    def envs_struc(self, envs, structure, layout=None, hyp_grad=False):
        """
        Covariance between the local energies of envs and the labels of
        a structure, (n_envs, n_labels). If hyp_grad, also returns the
        hyperparameter derivative, (n_hyps, n_envs, n_labels).
        """
        if layout is None:
            layout = structure.layout
        blocks = self._get_blocks(envs)
        kmat = np.zeros((len(blocks), layout.n_labels))
        dkmat = np.zeros((self.n_hyps, len(blocks), layout.n_labels))
        if len(blocks) > 0 and layout.n_labels > 0:
            chunks = self._chunks(blocks)
            for i, env in enumerate(structure.environments):
                fb = env.get_features(self.descriptor)
                pmat = None
                for p0, p1, A, ca in chunks:
                    res = self._masked_terms(A, fb, 1, hyp_grad)
                    if res is None:
                        continue
                    if pmat is None:
                        pmat = structure.label_map(i, layout)
                    terms, dterms = res
                    kmat[p0:p1] += self._local_cols(terms, ca, fb).dot(pmat.T)
                    if hyp_grad:
                        for h, dt in enumerate(dterms):
                            dkmat[h, p0:p1] += self._local_cols(dt, ca, fb).dot(pmat.T)
        if hyp_grad:
            return kmat, dkmat
        return kmat

    def struc_struc_diag(self, structure, layout=None, hyp_grad=False):
        """
        Prior variance of every label of a structure, (n_labels,).
        If hyp_grad, also returns the hyperparameter derivative,
        (n_hyps, n_labels).
        """
        if layout is None:
            layout = structure.layout
        blocks = self._get_blocks(structure.environments)
        diag = np.zeros(layout.n_labels)
        ddiag = np.zeros((self.n_hyps, layout.n_labels))
        if layout.n_labels > 0:
            for i in range(len(blocks)):
                for j in range(i, len(blocks)):
                    res = self._masked_terms(blocks[i], blocks[j], 2, hyp_grad)
                    if res is None:
                        continue
                    terms, dterms = res
                    pi = structure.label_map(i, layout)
                    pj = structure.label_map(j, layout)
                    fac = 1.0 if i == j else 2.0
                    cov = self._local_cov(terms, blocks[i], blocks[j])
                    diag += fac * np.einsum("lp,pq,lq->l", pi, cov, pj)
                    if hyp_grad:
                        for h, dt in enumerate(dterms):
                            cov = self._local_cov(dt, blocks[i], blocks[j])
                            ddiag[h] += fac * np.einsum("lp,pq,lq->l", pi, cov, pj)
        if hyp_grad:
            return diag, ddiag
        return diag

    def __call__(self, X, Y=None, eval_gradient=False):
        if Y is None:
            if eval_gradient:
                kmat, dkmat = self.envs_envs(X, X, hyp_grad=True)
                # sklearn convention: gradient with respect to log(theta)
                grads = [
                    dkmat[h] * getattr(self, hp.name)
                    for h, hp in enumerate(self.hyperparameters)
                    if not hp.fixed
                ]
                if len(grads) == 0:
                    return kmat, np.empty((len(X), len(X), 0))
                return kmat, np.stack(grads, axis=-1)
            return self.envs_envs(X, X)
        elif eval_gradient:
            raise ValueError("Gradient can only be evaluated when Y is None.")
        return self.envs_envs(X, Y)

    def diag(self, X):
        return np.array([self.env_env(env, env) for env in X])

    def is_stationary(self):
        return False


class NormalizedDotProduct(SparseKernel):
    """
    k(x, y) = v (x.y / |x||y|)^p between environments with the same
    central species. Environments with a zero descriptor contribute
    nothing.
    """

    def __init__(
        self,
        descriptor,
        signal_variance=1.0,
        power=2,
        signal_variance_bounds=(1e-5, 1e5),
    ):
        self.descriptor = descriptor
        self.signal_variance = signal_variance
        self.power = power
        self.signal_variance_bounds = signal_variance_bounds

    @property
    def hyperparameter_signal_variance(self):
        return Hyperparameter("signal_variance", "numeric", self.signal_variance_bounds)

    def _pair_terms(self, A, B, order, hyp_grad):
        p = self.power
        if p < 1 or int(p) != p:
            raise ConfigurationError(
                "power must be a positive integer, got {}".format(p)
            )
        p = int(p)
        X, Y = A.values, B.values
        nx = np.linalg.norm(X, axis=1)
        ny = np.linalg.norm(Y, axis=1)
        ix = np.zeros_like(nx)
        iy = np.zeros_like(ny)
        ix[nx > 0] = 1 / nx[nx > 0]
        iy[ny > 0] = 1 / ny[ny > 0]
        xh = X * ix[:, None]
        yh = Y * iy[:, None]
        q = xh.dot(yh.T)
        base = {"k": q**p}
        if order >= 1:
            qp1 = p * q ** (p - 1)
            dqdy = (xh[:, None, :] - q[..., None] * yh[None, :, :]) * iy[None, :, None]
            base["ky"] = qp1[..., None] * dqdy
        if order >= 2:
            dqdx = (yh[None, :, :] - q[..., None] * xh[:, None, :]) * ix[:, None, None]
            base["kx"] = qp1[..., None] * dqdx
            eye = np.identity(X.shape[1])
            d2q = (
                eye
                - xh[:, None, :, None] * xh[:, None, None, :]
                - yh[None, :, :, None] * yh[None, :, None, :]
                + q[..., None, None] * xh[:, None, :, None] * yh[None, :, None, :]
            )
            d2q *= (ix[:, None] * iy[None, :])[..., None, None]
            kxy = qp1[..., None, None] * d2q
            if p >= 2:
                qp2 = p * (p - 1) * q ** (p - 2)
                kxy += qp2[..., None, None] * dqdx[..., :, None] * dqdy[..., None, :]
            base["kxy"] = kxy
        terms = _scale_terms(base, self.signal_variance)
        dterms = [base] if hyp_grad else None
        return terms, dterms


class EnvelopedRBF(SparseKernel):
    """
    k(x, y) = v exp(-|x - y|^2 / 2 l^2) w(x) w(y) summed over feature
    units with matching species keys, where w is the cutoff envelope
    carried by the units.
    """

    def __init__(
        self,
        descriptor,
        signal_variance=1.0,
        length_scale=1.0,
        signal_variance_bounds=(1e-5, 1e5),
        length_scale_bounds=(1e-3, 1e3),
    ):
        self.descriptor = descriptor
        self.signal_variance = signal_variance
        self.length_scale = length_scale
        self.signal_variance_bounds = signal_variance_bounds
        self.length_scale_bounds = length_scale_bounds

    @property
    def hyperparameter_signal_variance(self):
        return Hyperparameter("signal_variance", "numeric", self.signal_variance_bounds)

    @property
    def hyperparameter_length_scale(self):
        return Hyperparameter("length_scale", "numeric", self.length_scale_bounds)

    @staticmethod
    def _envelope(parts, A, B, order):
        E = parts["k"]
        if A.weights is None:
            F = np.ones((E.shape[0], 1))
            Fx = np.zeros((E.shape[0], 1, A.dim))
        else:
            F = A.weights[:, None]
            Fx = A.weight_derivs[:, None, :]
        if B.weights is None:
            G = np.ones((1, E.shape[1]))
            Gy = np.zeros((1, E.shape[1], B.dim))
        else:
            G = B.weights[None, :]
            Gy = B.weight_derivs[None, :, :]
        out = {"k": E * F * G}
        if order >= 1:
            Ey = parts["ky"]
            out["ky"] = F[..., None] * (Ey * G[..., None] + E[..., None] * Gy)
        if order >= 2:
            Ex = parts["kx"]
            out["kx"] = G[..., None] * (Ex * F[..., None] + E[..., None] * Fx)
            out["kxy"] = (
                parts["kxy"] * (F * G)[..., None, None]
                + F[..., None, None] * Ex[..., :, None] * Gy[..., None, :]
                + G[..., None, None] * Fx[..., :, None] * Ey[..., None, :]
                + E[..., None, None] * Fx[..., :, None] * Gy[..., None, :]
            )
        return out

    def _pair_terms(self, A, B, order, hyp_grad):
        ls = self.length_scale
        diff = A.values[:, None, :] - B.values[None, :, :]
        sq = np.einsum("abd,abd->ab", diff, diff)
        E = np.exp(-0.5 * sq / ls**2)
        eye = np.identity(diff.shape[-1])
        parts = {"k": E}
        if order >= 1:
            parts["ky"] = E[..., None] * diff / ls**2
        if order >= 2:
            outer = diff[..., :, None] * diff[..., None, :]
            parts["kx"] = -parts["ky"]
            parts["kxy"] = E[..., None, None] * (eye / ls**2 - outer / ls**4)
        base = self._envelope(parts, A, B, order)
        terms = _scale_terms(base, self.signal_variance)
        if not hyp_grad:
            return terms, None
        E_l = E * sq / ls**3
        dparts = {"k": E_l}
        if order >= 1:
            dparts["ky"] = (
                E_l[..., None] * diff / ls**2 - 2 * E[..., None] * diff / ls**3
            )
        if order >= 2:
            dparts["kx"] = -dparts["ky"]
            dparts["kxy"] = E_l[..., None, None] * (
                eye / ls**2 - outer / ls**4
            ) + E[..., None, None] * (-2 * eye / ls**3 + 4 * outer / ls**5)
        dls = _scale_terms(self._envelope(dparts, A, B, order), self.signal_variance)
        by_name = {"length_scale": dls, "signal_variance": base}
        dterms = [by_name[hp.name] for hp in self.hyperparameters]
        return terms, dterms


class TwoBody(EnvelopedRBF):
    """Enveloped RBF kernel on pair distances."""


class ThreeBody(EnvelopedRBF):
    """Enveloped RBF kernel on (r_j, r_k, r_jk) triplets."""


KERNELS = {
    "normalized_dot_product": NormalizedDotProduct,
    "two_body": TwoBody,
    "three_body": ThreeBody,
}
