##############################################################################
# Implementation of the AYB base calling model
#
#
# Model of the observed intensities of cluster c:
#
#   I_c = lambda_c * M * S_c * P + N + error_c
#
# Stored attributes:
#
#   tile: intensities of ncluster clusters over ncycle cycles
#   M: 4 x 4 crosstalk matrix, |det(M)| = 1 after estimation
#   P: ncycle x ncycle phasing matrix, |det(P)| = 1 after estimation
#      (the sign of the determinant is kept, so det = -1 only when the
#      least squares solution itself has a negative determinant)
#   N: 4 x ncycle noise matrix
#   lambdas: brightness of each cluster, lambda_c >= 0
#   weights: robustness weight of each cluster, 0 < weights_c <= 1
#   cycle_var: variance of the processed residuals in each cycle
#   bases: current base calls, integer array (ncluster, ncycle)
#   quals: quality scores of the base calls, (ncluster, ncycle)
#
#
# Steps of one iteration:
#
#   1. estimate_mpn(): update robustness weights, then update M, P, N by
#       alternating weighted least squares solutions,
#       [P; N] given M, followed by [M^t; N^t] given P.
#       After each solution P and M are scaled to unit determinant and the
#       removed scale factor is moved into lambda.
#   2. estimate_bases(): compute the covariance of the processed residuals
#       and its inverse (omega) for each cycle, then re-estimate lambda,
#       call bases, and re-estimate lambda with the new calls.
#
#
# Sufficient statistics of the least squares problems (sums over clusters,
# weighted by the robustness weights w_c):
#
#   J[a, p, b, q] = sum_c w_c lambda_c^2 S_c[a, p] S_c[b, q]
#   K[a, p, h, q] = sum_c w_c lambda_c S_c[a, p] I_c[h, q]
#   Sbar[a, p] = sum_c w_c lambda_c S_c[a, p]
#   Ibar[h, q] = sum_c w_c I_c[h, q]
#   Wbar = sum_c w_c
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

import sys
import logging
import numpy as np
from aybcaller.matrix import (DETERMINANT_TOLERANCE, identity_matrix,
                              invert, matrix_from_array,
                              normalize_determinant, read_matrix_file,
                              show_matrix, solve_generalized_least_squares,
                              transpose, transpose_in_place)
from aybcaller.intensities import (NBASE, one_hot_bases,
                                   expected_intensities,
                                   process_intensities)
from aybcaller.brightness import estimate_lambda_ols, estimate_lambda_wls
from aybcaller.call_bases import (DEFAULT_MU, MIN_QUALITY, bases_to_string,
                                  call_base_simple, call_bases_all)
from aybcaller.tile import Tile

logger = logging.getLogger(__name__)

# Number of alternating M / P solutions per call of estimate_mpn()
AYB_NITER = 20
# Number of estimate_mpn() / estimate_bases() iterations
DEFAULT_NITER = 5

# Initial crosstalk matrix if not read in, approximately the right shape.
# Stored column-major: column b is the channel response to base b.
INITIAL_CROSSTALK = [
    2.0114300, 1.7217841, 0.06436576, 0.1126401,
    0.6919319, 1.8022413, 0.06436576, 0.0804572,
    0.2735545, 0.2252802, 1.39995531, 0.9976693,
    0.2896459, 0.2413716, 0.11264008, 1.3194981
]

MATRIX_NAMES = ('Crosstalk', 'Noise', 'Phasing')


class MatrixDimensionError(ValueError):
    """Raised when a supplied matrix does not fit the data."""


class MatrixSet:
    """Initial values of the crosstalk, noise and phasing matrices.

    Matrices are read once and reused for every block of data. Noise and
    phasing may be None, in which case they are initialised internally
    (all-zero noise and identity phasing).

    Attributes:
        crosstalk (numpy.ndarray): 4 x 4 matrix
        noise (numpy.ndarray or None): 4 x ncycle matrix
        phasing (numpy.ndarray or None): ncycle x ncycle matrix
    """

    def __init__(self, crosstalk=None, noise=None, phasing=None):
        if crosstalk is None:
            crosstalk = matrix_from_array(NBASE, NBASE, INITIAL_CROSSTALK)
        crosstalk = np.array(crosstalk, dtype=float)
        if crosstalk.shape != (NBASE, NBASE):
            raise MatrixDimensionError(
                f'{MATRIX_NAMES[0]} matrix must be 4 x 4, '
                f'found {crosstalk.shape}')
        if noise is not None:
            noise = np.array(noise, dtype=float)
            if noise.ndim != 2 or noise.shape[0] != NBASE:
                raise MatrixDimensionError(
                    f'{MATRIX_NAMES[1]} matrix must have 4 rows, '
                    f'found {noise.shape}')
        if phasing is not None:
            phasing = np.array(phasing, dtype=float)
            if phasing.ndim != 2 or phasing.shape[0] != phasing.shape[1]:
                raise MatrixDimensionError(
                    f'{MATRIX_NAMES[2]} matrix must be square, '
                    f'found {phasing.shape}')
        self.crosstalk = crosstalk
        self.noise = noise
        self.phasing = phasing

    @classmethod
    def from_files(cls, crosstalk_file=None, noise_file=None,
                   phasing_file=None):
        """Reads the supplied matrix files, any of them may be None."""
        matrices = []
        for name, path in zip(MATRIX_NAMES,
                              (crosstalk_file, noise_file, phasing_file)):
            if path is None:
                matrices.append(None)
                continue
            logger.info(f'{name} matrix read from {path}')
            matrices.append(read_matrix_file(path))
        return cls(*matrices)

    def initial_crosstalk(self):
        return self.crosstalk.copy()

    def initial_noise(self, ncycle):
        if self.noise is None:
            return np.zeros((NBASE, ncycle))
        if self.noise.shape != (NBASE, ncycle):
            raise MatrixDimensionError(
                f'{MATRIX_NAMES[1]} matrix wrong size, need dimension '
                f'{ncycle} not {self.noise.shape[1]}')
        return self.noise.copy()

    def initial_phasing(self, ncycle):
        # TODO: initialise phasing from the data instead of identity
        if self.phasing is None:
            return identity_matrix(ncycle)
        if self.phasing.shape != (ncycle, ncycle):
            raise MatrixDimensionError(
                f'{MATRIX_NAMES[2]} matrix wrong size, need dimension '
                f'{ncycle} not {self.phasing.shape[1]}')
        return self.phasing.copy()


class AybModel:
    """Implements the AYB model for calling bases from intensities.

    Attributes:
        tile (Tile): intensities of the clusters
        ncluster (int): number of clusters
        ncycle (int): number of cycles
        mu (float): positive constant of the quality score calculation
        M (numpy.ndarray): 4 x 4 crosstalk matrix
        P (numpy.ndarray): ncycle x ncycle phasing matrix
        N (numpy.ndarray): 4 x ncycle noise matrix
        lambdas (numpy.ndarray): brightness of each cluster
        weights (numpy.ndarray): robustness weight of each cluster
        cycle_var (numpy.ndarray): residual variance of each cycle
        bases (numpy.ndarray): base calls, integer array (ncluster, ncycle)
        quals (numpy.ndarray): quality scores, integer array
            (ncluster, ncycle)
        diagnostics (callable or None): called as diagnostics(name, value)
            with intermediate results
    """

    def __init__(self, tile, matrices=None, mu=DEFAULT_MU, diagnostics=None):
        AybModel._check_tile(tile)
        AybModel._check_positive_float(mu, 'mu')
        if matrices is None:
            matrices = MatrixSet()
        self.tile = tile
        self.ncluster = tile.ncluster
        self.ncycle = tile.ncycle
        self.matrices = matrices
        self.mu = float(mu)
        self.diagnostics = diagnostics

        ncluster = self.ncluster
        ncycle = self.ncycle
        self.M = np.zeros((NBASE, NBASE))
        self.P = np.zeros((ncycle, ncycle))
        self.N = np.zeros((NBASE, ncycle))
        self.lambdas = np.zeros(ncluster)
        self.weights = np.ones(ncluster)
        self.cycle_var = np.ones(ncycle)
        self.bases = np.zeros((ncluster, ncycle), dtype=int)
        self.quals = np.full((ncluster, ncycle), MIN_QUALITY, dtype=int)

    @staticmethod
    def _check_tile(tile):
        if not isinstance(tile, Tile):
            raise ValueError(f'tile must be a Tile object, '
                             f'value passed: {tile!r}')
        if tile.ncluster == 0 or tile.ncycle == 0:
            raise ValueError('tile must contain at least one cluster '
                             'and one cycle')

    @staticmethod
    def _check_positive_float(arg, name):
        error_message = f'{name} must be a positive floating point number, ' \
            f'value passed: {arg}'
        try:
            f = float(arg)
            if f <= 0.0:
                raise ValueError(error_message)
        except (TypeError, ValueError):
            raise ValueError(error_message)

    def _diagnose(self, name, value):
        if self.diagnostics is not None:
            self.diagnostics(name, value)

    def _inverse_transposes(self):
        Minv_t = transpose_in_place(invert(self.M))
        Pinv_t = transpose_in_place(invert(self.P))
        return Minv_t, Pinv_t

    def processed_intensities(self):
        """Processed intensities of all clusters, (ncluster, 4, ncycle)."""
        Minv_t, Pinv_t = self._inverse_transposes()
        return process_intensities(self.tile.signals, Minv_t, Pinv_t, self.N)

    def initialise(self):
        """Sets the initial values of all model parameters.

        M, N and P are copied from the MatrixSet, falling back to the
        internal defaults. Weights and cycle variances are set to 1.
        Initial bases are called as the brightest channel of the processed
        intensities, initial brightness is their least squares estimate.

        Raises:
            MatrixDimensionError: if a supplied matrix does not fit the tile
            SingularMatrixError: if M or P cannot be inverted
        """
        self.M = self.matrices.initial_crosstalk()
        self.N = self.matrices.initial_noise(self.ncycle)
        self.P = self.matrices.initial_phasing(self.ncycle)
        self.weights[:] = 1.0
        self.cycle_var[:] = 1.0

        Minv_t, Pinv_t = self._inverse_transposes()
        self._diagnose('inv_crosstalk', Minv_t)
        self._diagnose('inv_phasing', Pinv_t)
        p = process_intensities(self.tile.signals, Minv_t, Pinv_t, self.N)
        self._diagnose('processed', p.reshape(self.ncluster, -1))

        self.bases = call_base_simple(p)
        self.quals = np.full((self.ncluster, self.ncycle), MIN_QUALITY,
                             dtype=int)
        self.lambdas = estimate_lambda_ols(p, self.bases)

    def _residual_loss(self):
        e = expected_intensities(self.lambdas, self.bases,
                                 self.M, self.P, self.N)
        return np.sum((self.tile.signals - e) ** 2, axis=(1, 2))

    def weighted_loss(self):
        """Sum of squared residuals, weighted by robustness weights."""
        return float(np.sum(self.weights * self._residual_loss()))

    def update_cluster_weights(self):
        """Recomputes robustness weights from the fit of each cluster.

        The loss of a cluster is its sum of squared residuals. Weights are
        given by a Cauchy kernel of the squared deviation from the mean loss,
            weight_c = 1 / (1 + (loss_c - mean)^2 / var)
        so clusters with typical loss get weight close to 1 and outliers
        get weights close to 0.

        Returns:
            float: total (unweighted) loss over all clusters
        """
        loss = self._residual_loss()
        mean_loss = np.mean(loss)
        var_loss = np.var(loss, ddof=1) if self.ncluster > 1 else 0.0
        if var_loss > 0.0:
            d = loss - mean_loss
            self.weights = 1.0 / (1.0 + d * d / var_loss)
        else:
            self.weights = np.ones(self.ncluster)
        return float(np.sum(loss))

    def _sufficient_statistics(self):
        ncluster = self.ncluster
        ncycle = self.ncycle
        w = self.weights
        lam = self.lambdas
        S = one_hot_bases(self.bases).reshape(ncluster, NBASE * ncycle)
        I = self.tile.signals.reshape(ncluster, NBASE * ncycle)

        J = ((w * lam ** 2)[:, None] * S).T @ S
        K = ((w * lam)[:, None] * S).T @ I
        J = J.reshape(NBASE, ncycle, NBASE, ncycle)
        K = K.reshape(NBASE, ncycle, NBASE, ncycle)
        Sbar = ((w * lam) @ S).reshape(NBASE, ncycle)
        Ibar = (w @ I).reshape(NBASE, ncycle)
        Wbar = float(np.sum(w))
        return J, K, Sbar, Ibar, Wbar

    def estimate_mpn(self, niter=AYB_NITER, tolerance=DETERMINANT_TOLERANCE):
        """Updates weights, then M, P and N, and rescales lambdas.

        Args:
            niter (int): number of alternating P and M solutions
            tolerance (float): smallest determinant accepted before
                normalisation

        Returns:
            float: decrease of the weighted loss

        Raises:
            DegenerateMatrixError: if an estimate of M or P is degenerate
        """
        ncycle = self.ncycle
        sum_loss = self.update_cluster_weights()
        loss_before = self.weighted_loss()
        logger.debug(f'total loss: {sum_loss}, '
                     f'weighted loss: {loss_before}')

        J, K, Sbar, Ibar, Wbar = self._sufficient_statistics()
        Mt = transpose(self.M)
        P = self.P.copy()
        N = self.N.copy()
        lambdaf = 1.0

        for it in range(niter):
            # Solution for phasing and constant noise, given crosstalk
            M = Mt.T
            plhs = np.block([
                [np.einsum('ab,apbq->pq', M.T @ M, J), Sbar.T @ Mt],
                [M @ Sbar, Wbar * np.eye(NBASE)]
            ])
            prhs = np.vstack([np.einsum('ha,aphq->pq', M, K), Ibar])
            solution = solve_generalized_least_squares(plhs, prhs)
            P = solution[:ncycle, :]
            N = solution[ncycle:, :]
            det = normalize_determinant(P, tolerance)
            J *= det * det
            K *= det
            Sbar *= det
            lambdaf *= det

            # Solution for crosstalk and constant noise, given phasing
            SP = Sbar @ P
            mlhs = np.block([
                [np.einsum('apbq,pq->ab', J, P @ P.T), SP],
                [SP.T, Wbar * np.eye(ncycle)]
            ])
            mrhs = np.vstack([np.einsum('pq,aphq->ah', P, K), Ibar.T])
            solution = solve_generalized_least_squares(mlhs, mrhs)
            Mt = solution[:NBASE, :]
            N = solution[NBASE:, :].T
            det = normalize_determinant(Mt, tolerance)
            J *= det * det
            K *= det
            Sbar *= det
            lambdaf *= det

        self.M = transpose(Mt)
        self.P = P
        self.N = N.copy()
        self.lambdas = self.lambdas * lambdaf

        loss_after = self.weighted_loss()
        logger.debug(f'weighted loss after update: {loss_after}')
        self._diagnose('crosstalk', self.M)
        self._diagnose('phasing', self.P)
        self._diagnose('noise', self.N)
        return loss_before - loss_after

    def calculate_covariance(self):
        """Weighted covariance of the processed residuals in each cycle.

        The residual of cluster c is R = p - lambda_c S_c, and the outer
        product is accumulated as
            R R^t = p p^t - lambda (e_b p^t + p e_b^t) + lambda^2 e_b e_b^t

        Returns:
            numpy.ndarray: covariance matrices, shape (ncycle, 4, 4)
        """
        w = self.weights
        lam = self.lambdas
        p = self.processed_intensities()
        S = one_hot_bases(self.bases)

        V = np.einsum('c,ciy,cjy->yij', w, p, p)
        cross = np.einsum('c,ciy,cjy->yij', w * lam, S, p)
        V -= cross + np.transpose(cross, (0, 2, 1))
        V += np.einsum('c,ciy,cjy->yij', w * lam ** 2, S, S)
        V /= np.sum(w)
        return V

    def estimate_bases(self):
        """Calls bases using the current M, P, N.

        Updates cycle_var, lambdas, bases and quals.

        Raises:
            SingularMatrixError: if a covariance matrix cannot be inverted
        """
        V = self.calculate_covariance()
        self._diagnose('covariance', V.reshape(self.ncycle, -1))
        self.cycle_var = np.trace(V, axis1=1, axis2=2).copy()

        omegas = np.array([invert(V[cy]) for cy in range(self.ncycle)])
        self._diagnose('omega', omegas.reshape(self.ncycle, -1))

        p = self.processed_intensities()
        self.lambdas = estimate_lambda_wls(p, self.bases, self.cycle_var)
        self.bases, self.quals = call_bases_all(p, self.lambdas, omegas,
                                                self.mu)
        self.lambdas = estimate_lambda_wls(p, self.bases, self.cycle_var)
        self._diagnose('lambda', self.lambdas[:, None])

        zero_lambdas = int(np.sum(self.lambdas == 0))
        if zero_lambdas > 0:
            logger.debug(f'zero lambdas: {zero_lambdas}')

    def run(self, niter=DEFAULT_NITER):
        """Runs niter iterations of parameter estimation and base calling.

        Args:
            niter (int): number of iterations, at least 1

        Returns:
            list: decrease of the weighted loss in each iteration
        """
        if int(niter) != niter or niter < 1:
            raise ValueError(f'niter must be a positive integer, '
                             f'value passed: {niter}')
        improvements = []
        for it in range(int(niter)):
            delta = self.estimate_mpn()
            self.estimate_bases()
            logger.debug(f'iteration {it + 1}, loss decrease: {delta}')
            improvements.append(delta)
        return improvements

    def results(self):
        """Yields (index, cluster, bases, quals) for each cluster in order."""
        for idx, cluster in enumerate(self.tile):
            yield idx, cluster, self.bases[idx], self.quals[idx]

    def show(self, stream=sys.stderr):
        print(f'{self.ncycle} cycles from {self.ncluster} clusters',
              file=stream)
        print('M:', file=stream)
        show_matrix(self.M, stream)
        print('P:', file=stream)
        show_matrix(self.P, stream)
        print('N:', file=stream)
        show_matrix(self.N, stream, max_cols=8)
        print('we:', file=stream)
        show_matrix(self.weights[:, None], stream, max_rows=8)
        print('cycle_var:', file=stream)
        show_matrix(self.cycle_var[:, None], stream, max_rows=8)
        print('lambda:', file=stream)
        show_matrix(self.lambdas[:, None], stream, max_rows=8)
        print('Bases:', file=stream)
        for idx in range(min(8, self.ncluster)):
            print(bases_to_string(self.bases[idx]), file=stream)
