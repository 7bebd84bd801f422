##############################################################################
# Estimation of cluster brightness (lambda) from processed intensities
#
# Given the current base calls, processed intensities are modelled as
#   p[b, cy] = lambda * S[b, cy] + error
# and lambda is the (weighted) least squares slope, censored at 0.
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
from aybcaller.intensities import one_hot_bases


def _weighted_slope(p, bases, cycle_weights):
    S = one_hot_bases(bases)
    if S.shape != p.shape:
        raise ValueError(f'processed intensities {p.shape} do not match '
                         f'base calls {S.shape}')
    numer = np.sum(p * S * cycle_weights, axis=(-2, -1))
    denom = np.sum(S * cycle_weights, axis=(-2, -1))
    with np.errstate(divide='ignore', invalid='ignore'):
        lambdas = np.where(denom > 0, numer / denom, 0.0)
    return np.maximum(lambdas, 0.0)


def estimate_lambda_ols(p, bases):
    """Ordinary least squares estimate of brightness.

    Args:
        p (numpy.ndarray): processed intensities, (4, ncycle) or
            (ncluster, 4, ncycle)
        bases (numpy.ndarray): base calls, (ncycle,) or (ncluster, ncycle)

    Returns:
        float or numpy.ndarray: non-negative brightness of each cluster
    """
    return _weighted_slope(p, bases, 1.0)


def estimate_lambda_wls(p, bases, cycle_var):
    """Weighted least squares estimate of brightness.

    Cycle cy is weighted by 1 / cycle_var[cy], so noisy cycles contribute
    less to the estimate.

    Args:
        p (numpy.ndarray): processed intensities, (4, ncycle) or
            (ncluster, 4, ncycle)
        bases (numpy.ndarray): base calls, (ncycle,) or (ncluster, ncycle)
        cycle_var (numpy.ndarray): positive variance of each cycle

    Returns:
        float or numpy.ndarray: non-negative brightness of each cluster
    """
    cycle_var = np.asarray(cycle_var, dtype=float)
    if cycle_var.shape != (p.shape[-1],) or (cycle_var <= 0).any():
        raise ValueError('cycle_var must contain one positive value '
                         'per cycle')
    return _weighted_slope(p, bases, 1.0 / cycle_var)
