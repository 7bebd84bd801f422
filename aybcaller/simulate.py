##############################################################################
# Simulation of tiles of intensities from the AYB model
#
#
# Copyright (C) 2020  Totient, Inc.
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
# You should have received a copy of the GNU General Public License v3.0
# along with this program.
# If not, see <https://www.gnu.org/licenses/gpl-3.0.en.html>.
##############################################################################

import numpy as np
from aybcaller.intensities import NBASE, expected_intensities
from aybcaller.matrix import identity_matrix
from aybcaller.tile import Tile


def phasing_matrix(ncycle, prephasing=0.01, postphasing=0.02):
    """Phasing matrix with constant leakage to the neighbouring cycles.

    P[cy, cy'] is the fraction of the signal of base cy seen at cycle cy'.

    Args:
        ncycle (int): number of cycles
        prephasing (float): fraction of signal seen one cycle early
        postphasing (float): fraction of signal seen one cycle late

    Returns:
        numpy.ndarray: ncycle x ncycle matrix
    """
    P = identity_matrix(ncycle) * (1.0 - prephasing - postphasing)
    idx = np.arange(ncycle - 1)
    P[idx, idx + 1] = postphasing
    P[idx + 1, idx] = prephasing
    return P


def simulate_tile(ncluster, ncycle, M, P=None, N=None,
                  lambda_range=(500.0, 1500.0), noise_sd=10.0, seed=None):
    """Generates random clusters from the AYB model.

    I_c = lambda_c * M * S_c * P + N + error_c,
    where error_c has independent normal entries.

    Args:
        ncluster (int): number of clusters
        ncycle (int): number of cycles
        M (numpy.ndarray): 4 x 4 crosstalk matrix
        P (numpy.ndarray or None): phasing matrix, default is identity
        N (numpy.ndarray or None): noise matrix, default is all-zero
        lambda_range (tuple): brightness is uniform on this interval
        noise_sd (float): standard deviation of the errors
        seed (int or None): seed of the random number generator

    Returns:
        (Tile, numpy.ndarray, numpy.ndarray): simulated tile, true bases
        (ncluster, ncycle) and true brightness (ncluster,)
    """
    rng = np.random.default_rng(seed)
    if P is None:
        P = identity_matrix(ncycle)
    if N is None:
        N = np.zeros((NBASE, ncycle))
    bases = rng.integers(0, NBASE, size=(ncluster, ncycle))
    lambdas = rng.uniform(lambda_range[0], lambda_range[1], size=ncluster)
    signals = expected_intensities(lambdas, bases, M, P, N)
    signals = signals + rng.normal(0.0, noise_sd, size=signals.shape)
    x = rng.integers(0, 2048, size=ncluster)
    y = rng.integers(0, 2048, size=ncluster)
    return Tile(signals, x, y, lane=1, tile=1), bases, lambdas


def write_int_file(path, tile):
    """Writes a tile in Illumina _int.txt format."""
    with open(path, 'w') as f:
        for cluster in tile:
            cycles = '\t'.join(
                ' '.join(f'{v:.1f}' for v in cluster.signals[:, cy])
                for cy in range(tile.ncycle))
            f.write(f'{tile.lane}\t{tile.tile}\t{cluster.x}\t{cluster.y}'
                    f'\t{cycles}\n')
