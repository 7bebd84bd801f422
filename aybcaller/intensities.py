##############################################################################
# Transformations between observed and processed intensities
#
# Model of the observed intensities of a cluster (4 channels x ncycle):
#
#   I = lambda * M * S * P + N + error
#
# where
#   M: 4 x 4 crosstalk matrix
#   S: 4 x ncycle indicator matrix of the bases, S[b, cy] = 1 if the
#      base at cycle cy is b (columns of ambiguous bases are all 0)
#   P: ncycle x ncycle phasing matrix
#   N: 4 x ncycle noise matrix
#   lambda: brightness of the cluster
#
# Processed intensities remove the distortions:
#
#   p = M^-1 (I - N) P^-1
#
# which is (up to error) lambda * S.
#
# All functions accept either a single cluster, with intensities of shape
# (4, ncycle), or a stack of clusters, with shape (ncluster, 4, ncycle).
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

NBASE = 4
NUC_AMBIG = NBASE


def one_hot_bases(bases):
    """Generates the indicator matrix S of base calls.

    Args:
        bases (numpy.ndarray): integer array of shape (ncycle,) or
            (ncluster, ncycle), with values 0..3 or NUC_AMBIG

    Returns:
        numpy.ndarray: float array of shape (4, ncycle) or
        (ncluster, 4, ncycle), where S[..., b, cy] = 1 if bases[..., cy] == b
        and 0 otherwise; ambiguous cycles have an all-zero column

    Raises:
        ValueError: if any of the bases is outside of 0..NUC_AMBIG
    """
    bases = np.asarray(bases, dtype=int)
    if bases.size > 0 and (np.min(bases) < 0 or np.max(bases) > NUC_AMBIG):
        raise ValueError(f'bases must be between 0 and {NUC_AMBIG}')
    # row NUC_AMBIG of the extended identity is all zero
    lookup = np.eye(NBASE + 1, NBASE)
    one_hot = lookup[bases]
    return np.moveaxis(one_hot, -1, -2)


def _check_intensities(intensities):
    if intensities.ndim not in (2, 3) or intensities.shape[-2] != NBASE:
        raise ValueError('intensities must have shape (4, ncycle) or '
                         f'(ncluster, 4, ncycle), found {intensities.shape}')


def process_intensities(intensities, Minv_t, Pinv_t, N):
    """Computes processed intensities, p = M^-1 (I - N) P^-1.

    The transposed inverses are passed in, as they are computed once per
    sweep over the clusters. Rather than forming the Kronecker product
    (Pinv^t x Minv) acting on vec(I - N), the two factors are applied on
    either side of the intensity matrix.

    Args:
        intensities (numpy.ndarray): (4, ncycle) or (ncluster, 4, ncycle)
        Minv_t (numpy.ndarray): transpose of the inverse crosstalk matrix
        Pinv_t (numpy.ndarray): transpose of the inverse phasing matrix
        N (numpy.ndarray): 4 x ncycle noise matrix

    Returns:
        numpy.ndarray: processed intensities, same shape as intensities
    """
    intensities = np.asarray(intensities, dtype=float)
    _check_intensities(intensities)
    ncycle = intensities.shape[-1]
    if Minv_t.shape != (NBASE, NBASE):
        raise ValueError(f'Minv_t must be 4 x 4, found {Minv_t.shape}')
    if Pinv_t.shape != (ncycle, ncycle):
        raise ValueError(f'Pinv_t must be {ncycle} x {ncycle}, '
                         f'found {Pinv_t.shape}')
    if N.shape != (NBASE, ncycle):
        raise ValueError(f'N must be 4 x {ncycle}, found {N.shape}')
    return Minv_t.T @ (intensities - N) @ Pinv_t.T


def expected_intensities(lambdas, bases, M, P, N):
    """Computes expected intensities, e = lambda * M * S * P + N.

    Args:
        lambdas (float or numpy.ndarray): brightness, scalar for a single
            cluster or 1-d array of length ncluster
        bases (numpy.ndarray): (ncycle,) or (ncluster, ncycle) base calls
        M (numpy.ndarray): 4 x 4 crosstalk matrix
        P (numpy.ndarray): ncycle x ncycle phasing matrix
        N (numpy.ndarray): 4 x ncycle noise matrix

    Returns:
        numpy.ndarray: expected intensities, (4, ncycle) or
        (ncluster, 4, ncycle)
    """
    lambdas = np.asarray(lambdas, dtype=float)
    if (lambdas < 0).any():
        raise ValueError('lambda must be non-negative')
    S = one_hot_bases(bases)
    ncycle = S.shape[-1]
    if M.shape != (NBASE, NBASE):
        raise ValueError(f'M must be 4 x 4, found {M.shape}')
    if P.shape != (ncycle, ncycle):
        raise ValueError(f'P must be {ncycle} x {ncycle}, found {P.shape}')
    if N.shape != (NBASE, ncycle):
        raise ValueError(f'N must be 4 x {ncycle}, found {N.shape}')
    signal = M @ S @ P
    if S.ndim == 3:
        if lambdas.shape != (S.shape[0],):
            raise ValueError('one lambda per cluster is required')
        signal = lambdas[:, None, None] * signal
    else:
        signal = lambdas * signal
    return signal + N
