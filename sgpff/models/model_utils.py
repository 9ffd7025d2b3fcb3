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

import joblib
import yaml
from pyscf.lib import logger

from sgpff.descriptors.features import DESCRIPTORS
from sgpff.errors import ConfigurationError
from sgpff.models.kernels import KERNELS
from sgpff.models.mapping import MAPPED_MODELS
from sgpff.models.sparse_gp import SparseGP

# descriptor used by each kernel type when none is given
DEFAULT_DESCRIPTORS = {
    "normalized_dot_product": "B2",
    "two_body": "two_body",
    "three_body": "three_body",
}


def _load_yaml(fname):
    with open(fname, "r") as f:
        return yaml.load(f, Loader=yaml.CLoader)


def get_descriptor(settings, species=None, cutoff=None):
    """
    Build a descriptor calculator from a settings dict. The species
    list and cutoff default to the model-wide values.
    """
    settings = dict(settings)
    name = settings.pop("type", None)
    if name not in DESCRIPTORS:
        raise ConfigurationError(
            "Unknown descriptor type {}, must be one of {}".format(
                name, list(DESCRIPTORS.keys())
            )
        )
    if "cutoff" not in settings:
        if cutoff is None:
            raise ConfigurationError("No cutoff given for descriptor " + name)
        settings["cutoff"] = cutoff
    if name == "B2" and "species" not in settings:
        if species is None:
            raise ConfigurationError("No species given for the B2 descriptor")
        settings["species"] = species
    try:
        return DESCRIPTORS[name](**settings)
    except TypeError as e:
        raise ConfigurationError(
            "Bad settings for descriptor {}: {}".format(name, e)
        ) from e


def get_kernel(settings, descriptor):
    settings = dict(settings)
    name = settings.pop("type", None)
    settings.pop("descriptor", None)
    if name not in KERNELS:
        raise ConfigurationError(
            "Unknown kernel type {}, must be one of {}".format(
                name, list(KERNELS.keys())
            )
        )
    for key, val in settings.items():
        if key.endswith("_bounds") and isinstance(val, list):
            settings[key] = tuple(val)
    try:
        return KERNELS[name](descriptor, **settings)
    except TypeError as e:
        raise ConfigurationError(
            "Bad settings for kernel {}: {}".format(name, e)
        ) from e


def build_sparse_gp(config):
    """
    Build an untrained SparseGP from a configuration dict or the
    name of a yaml file containing one. Recognized keys:

        species: list of atomic numbers
        cutoff: neighbor cutoff radius
        descriptor: settings of the B2 descriptor shared by the
            normalized dot product kernels
        kernels: list of kernel settings, each with a type, its
            hyperparameters and optionally its own descriptor
        noise: energy, force and stress noise standard deviations
        jitter, n_jobs, verbose
    """
    if isinstance(config, str):
        config = _load_yaml(config)
    if "kernels" not in config or len(config["kernels"]) == 0:
        raise ConfigurationError("Configuration must list at least one kernel")
    species = config.get("species")
    cutoff = config.get("cutoff")
    shared = dict(config.get("descriptor", {"type": "B2"}))
    shared.setdefault("type", "B2")
    kernels = []
    for settings in config["kernels"]:
        desc_settings = settings.get("descriptor")
        if desc_settings is None:
            dname = DEFAULT_DESCRIPTORS.get(settings.get("type"))
            if dname == shared["type"]:
                desc_settings = shared
            else:
                desc_settings = {"type": dname}
        descriptor = get_descriptor(desc_settings, species=species, cutoff=cutoff)
        kernels.append(get_kernel(settings, descriptor))
    noise = config.get("noise", {})
    return SparseGP(
        kernels,
        noise.get("energy", 1.0),
        noise.get("force", 0.1),
        noise.get("stress", 0.01),
        jitter=config.get("jitter", 0.0),
        n_jobs=config.get("n_jobs", 1),
        verbose=config.get("verbose", logger.NOTE),
    )


def save_sparse_gp(gp, fname):
    joblib.dump(gp, fname)


def load_sparse_gp(fname):
    gp = joblib.load(fname)
    if not isinstance(gp, SparseGP):
        raise ValueError("{} does not contain a SparseGP".format(fname))
    return gp


def load_mapped_model(fname, kind="mean", fmt=None):
    """
    Load a mapped model from a coefficient file, a yaml state dict or
    a joblib file. The format is chosen from the file extension unless
    fmt is given: .yaml for yaml, .joblib for joblib, and anything else
    is read as a coefficient file.
    """
    if kind not in MAPPED_MODELS:
        raise ConfigurationError(
            "Unknown mapped model kind {}, must be one of {}".format(
                kind, list(MAPPED_MODELS.keys())
            )
        )
    cls = MAPPED_MODELS[kind]
    if fmt is None:
        if fname.endswith(".yaml"):
            fmt = "yaml"
        elif fname.endswith(".joblib"):
            fmt = "joblib"
        else:
            fmt = "coefficients"
    if fmt == "yaml":
        model = cls.load(fname)
    elif fmt == "joblib":
        model = joblib.load(fname)
    elif fmt == "coefficients":
        model = cls.read_coefficients(fname)
    else:
        raise ValueError("Unsupported file format")
    if not isinstance(model, cls):
        raise ValueError("{} does not contain a {}".format(fname, cls.__name__))
    return model
