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
Fit a sparse GP force field to an extended-XYZ training set.

Every frame must carry energies and forces (and optionally stresses)
readable by ase.io. The model is configured by a yaml file, see
sgpff.models.model_utils.build_sparse_gp. Sparse environments are
chosen from each frame by pivoted Cholesky decomposition of the
first kernel's covariance matrix.
"""

import argparse
import sys

import numpy as np
from ase.io import read
from pyscf.lib import logger

from sgpff.descriptors.structure import StructureDescriptor
from sgpff.models.model_utils import build_sparse_gp, save_sparse_gp
from sgpff.models.sparse_gp import select_representative_environments


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("config", help="yaml file with the model settings")
    parser.add_argument("data", help="extended-XYZ file with labelled frames")
    parser.add_argument("--out", default="sparse_gp.joblib", help="output model file")
    parser.add_argument("--coefficients", help="write mapped mean coefficients here")
    parser.add_argument(
        "--var-coefficients", help="write mapped variance coefficients here"
    )
    parser.add_argument(
        "--sparse-tol",
        type=float,
        default=1e-4,
        help="tolerance of the sparse environment selection",
    )
    parser.add_argument(
        "--sparse-max",
        type=int,
        default=None,
        help="maximum number of sparse environments per frame",
    )
    parser.add_argument("--contributor", default=None)
    parser.add_argument(
        "--likelihood", choices=["DTC", "VFE"], default="DTC", help="approximation"
    )
    args = parser.parse_args()

    gp = build_sparse_gp(args.config)
    log = logger.Logger(sys.stdout, gp.verbose)
    cutoff = max(k.descriptor.cutoff for k in gp.kernels)
    frames = read(args.data, index=":")
    log.info("Read %d frames from %s", len(frames), args.data)
    for atoms in frames:
        structure = StructureDescriptor.from_atoms(atoms, cutoff)
        gp.add_training_structure(structure)
        candidates = select_representative_environments(
            gp.kernels[0],
            structure.environments,
            tol=args.sparse_tol,
            nmax=args.sparse_max,
        )
        gp.add_sparse_environments(candidates)
    gp.update_matrices()
    gp.compute_likelihood(args.likelihood, gradient=True)
    log.note(
        "Log marginal likelihood %.8e with %d sparse environments and %d labels",
        gp.log_marginal_likelihood,
        gp.n_sparse,
        gp.n_labels,
    )
    log.note("Gradient %s", np.array2string(gp.likelihood_gradient))
    save_sparse_gp(gp, args.out)
    if args.coefficients is not None:
        gp.write_mapping_coefficients(args.coefficients, contributor=args.contributor)
    if args.var_coefficients is not None:
        gp.write_varmap_coefficients(
            args.var_coefficients, contributor=args.contributor
        )


if __name__ == "__main__":
    main()
