##############################################################################
# Calling bases from processed intensities
#
# For cycle cy of a cluster with brightness lambda and processed
# intensities p (4-vector), the base b is called that minimizes
#
#   stat[b] = lambda * (lambda * omega[b, b] - 2 * sum_j p[j] omega[b, j])
#
# where omega is the precision matrix (inverse residual covariance) of the
# cycle. This is equivalent to minimizing the Mahalanobis distance between
# p and lambda * e_b, because
#
#   (p - lambda e_b)^t omega (p - lambda e_b) = K + stat[b],  K = p^t omega p
#
# Posterior probability of the call:
#
#   maxprob = exp(-0.5 * (K + minstat))
#   tot = sum_b exp(-0.5 * (stat[b] - minstat))
#   post_prob = (mu + maxprob) / (4 mu + maxprob * tot),   if maxprob < mu
#             = (mu / maxprob + 1) / (4 mu / maxprob + tot),  otherwise
#
# where mu is a small constant that sets the range of quality scores.
# The two forms are algebraically equal; the branch avoids loss of
# precision when maxprob is tiny or close to 1.
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
from scipy.special import logsumexp
from aybcaller.intensities import NBASE

BASES = 'ACGT'
AMBIG_SYMBOL = 'N'
MIN_QUALITY = 0
MAX_QUALITY = 40
PHRED_OFFSET = 33
DEFAULT_MU = 1e-5
NULL_BASE = 0


def call_base_simple(p):
    """Calls the brightest channel, used for the initial base calls.

    Args:
        p (numpy.ndarray): processed intensities, channels on axis -2
            (e.g. (4,), (4, ncycle) or (ncluster, 4, ncycle))

    Returns:
        int or numpy.ndarray: index of the channel with highest intensity
    """
    p = np.asarray(p)
    if p.ndim == 1:
        return int(np.argmax(p))
    return np.argmax(p, axis=-2)


def call_base_null():
    """Base and quality assigned when there is no signal to call from."""
    return NULL_BASE, MIN_QUALITY


def quality_from_prob(post_prob):
    """Phred score of a posterior probability, clamped to the allowed range.

    Args:
        post_prob (float or numpy.ndarray): probability the call is correct

    Returns:
        int or numpy.ndarray: quality = round(-10 log10(1 - post_prob))
    """
    error_prob = np.clip(1.0 - np.asarray(post_prob, dtype=float), 0.0, 1.0)
    with np.errstate(divide='ignore'):
        qual = -10.0 * np.log10(error_prob)
    qual = np.clip(np.round(qual), MIN_QUALITY, MAX_QUALITY).astype(int)
    if qual.ndim == 0:
        return int(qual)
    return qual


def _posterior(maxprob, tot, mu):
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        small = (mu + maxprob) / (4.0 * mu + maxprob * tot)
        large = (mu / maxprob + 1.0) / (4.0 * mu / maxprob + tot)
    return np.where(maxprob < mu, small, large)


def call_base(p, lam, omega, mu=DEFAULT_MU):
    """Calls the base of one cycle and computes its quality.

    Args:
        p (numpy.ndarray): processed intensities of the cycle, length 4
        lam (float): brightness of the cluster
        omega (numpy.ndarray): 4 x 4 precision matrix of the cycle
        mu (float): positive constant of the posterior probability formula

    Returns:
        tuple: (base, quality), base is an index into BASES
    """
    p = np.asarray(p, dtype=float)
    if p.shape != (NBASE,) or omega.shape != (NBASE, NBASE):
        raise ValueError('call_base needs 4 intensities and 4 x 4 omega')
    if lam == 0:
        return call_base_null()

    stat = lam * (lam * np.diag(omega) - 2.0 * omega @ p)
    call = int(np.argmin(stat))
    minstat = stat[call]
    tot = np.exp(logsumexp(-0.5 * (stat - minstat)))
    K = p @ omega @ p
    maxprob = np.exp(-0.5 * (K + minstat))
    post_prob = _posterior(maxprob, tot, mu)
    return call, quality_from_prob(post_prob)


def call_cluster(p, lam, omegas, mu=DEFAULT_MU):
    """Calls all cycles of one cluster with call_base()."""
    ncycle = p.shape[1]
    bases = np.zeros(ncycle, dtype=int)
    quals = np.zeros(ncycle, dtype=int)
    for cy in range(ncycle):
        bases[cy], quals[cy] = call_base(p[:, cy], lam, omegas[cy], mu)
    return bases, quals


def call_bases_all(p, lambdas, omegas, mu=DEFAULT_MU):
    """Calls every cycle of every cluster at once.

    Gives the same result as call_cluster() applied to each cluster.

    Args:
        p (numpy.ndarray): processed intensities, (ncluster, 4, ncycle)
        lambdas (numpy.ndarray): brightness of each cluster, (ncluster,)
        omegas (numpy.ndarray): precision matrices, (ncycle, 4, 4)
        mu (float): positive constant of the posterior probability formula

    Returns:
        (numpy.ndarray, numpy.ndarray): bases and qualities, both integer
        arrays of shape (ncluster, ncycle)
    """
    ncluster, _, ncycle = p.shape
    if omegas.shape != (ncycle, NBASE, NBASE):
        raise ValueError(f'omegas must have shape ({ncycle}, 4, 4), '
                         f'found {omegas.shape}')
    lam = np.asarray(lambdas, dtype=float)[:, None, None]
    omega_diag = np.diagonal(omegas, axis1=1, axis2=2).T  # (4, ncycle)
    # null rows are overwritten below, whatever omega contains
    with np.errstate(invalid='ignore', over='ignore'):
        cross = np.einsum('cjy,ybj->cby', p, omegas)
        stat = lam * (lam * omega_diag[None, :, :] - 2.0 * cross)
        bases = np.argmin(stat, axis=1)
        minstat = np.min(stat, axis=1)
        tot = np.exp(logsumexp(-0.5 * (stat - minstat[:, None, :]),
                               axis=1))
        K = np.einsum('ciy,yij,cjy->cy', p, omegas, p)
        maxprob = np.exp(-0.5 * (K + minstat))
        quals = quality_from_prob(_posterior(maxprob, tot, mu))

    null = (lam[:, 0, 0] == 0)
    bases[null] = NULL_BASE
    quals[null] = MIN_QUALITY
    return bases, np.asarray(quals, dtype=int).reshape(ncluster, ncycle)


def bases_to_string(bases):
    symbols = BASES + AMBIG_SYMBOL
    return ''.join(symbols[b] for b in bases)


def quals_to_string(quals):
    return ''.join(chr(q + PHRED_OFFSET) for q in quals)
