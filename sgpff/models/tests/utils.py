import numpy as np

from sgpff.descriptors.features import (
    B2Calculator,
    DescriptorCalculator,
    FeatureBlock,
    ThreeBodyCalculator,
    TwoBodyCalculator,
)
from sgpff.descriptors.structure import LocalEnvironment, StructureDescriptor
from sgpff.models.kernels import NormalizedDotProduct, ThreeBody, TwoBody

CUTOFF = 3.0
SPECIES = [8, 14]
FRAC = np.array([[0, 0, 0], [0.5, 0.5, 0], [0.5, 0, 0.5], [0, 0.5, 0.5]], dtype=float)


def random_cell_and_positions(seed, a=3.6, noise=0.1):
    rng = np.random.RandomState(seed)
    cell = a * np.identity(3) + 0.1 * rng.uniform(size=(3, 3))
    positions = FRAC.dot(cell) + noise * rng.normal(size=(4, 3))
    return cell, positions


def random_structure(seed, labels=True, species=(14, 8, 14, 8), **kwargs):
    rng = np.random.RandomState(seed + 1000)
    cell, positions = random_cell_and_positions(seed)
    if labels:
        stress = rng.normal(size=(3, 3)) * 0.1
        kwargs.setdefault("energy", rng.normal())
        kwargs.setdefault("forces", rng.normal(size=(4, 3)))
        kwargs.setdefault("stress", stress + stress.T)
    return StructureDescriptor(cell, positions, list(species), CUTOFF, **kwargs)


def get_b2(n_max=3, l_max=2):
    return B2Calculator(SPECIES, CUTOFF, n_max, l_max)


def get_kernels():
    return [
        NormalizedDotProduct(get_b2(), signal_variance=1.5, power=2),
        TwoBody(TwoBodyCalculator(CUTOFF), signal_variance=0.7, length_scale=0.8),
        ThreeBody(ThreeBodyCalculator(CUTOFF), signal_variance=0.3, length_scale=1.1),
    ]


class PlanarDescriptor(DescriptorCalculator):
    """xy components of the summed neighbor displacements."""

    name = "planar"
    cutoff = 10.0

    def to_dict(self):
        return {"type": self.name}

    def compute(self, env):
        nn = env.n_neighbors
        values = env.displacements[:, :2].sum(axis=0)[None]
        jacobian = np.zeros((1, 2, nn, 3))
        jacobian[0, 0, :, 0] = 1.0
        jacobian[0, 1, :, 1] = 1.0
        return FeatureBlock(values, jacobian, np.array([[env.species]]))


def planar_environment(vec):
    return LocalEnvironment(1, [1], [[vec[0], vec[1], 0.0]], neighbor_indices=[0])


def planar_structure(env, energy):
    return StructureDescriptor(
        np.zeros((3, 3)),
        [[0.0, 0.0, 0.0]],
        [1],
        10.0,
        pbc=False,
        energy=energy,
        environments=[env],
    )
