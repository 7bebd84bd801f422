##############################################################################
# Dense matrix operations needed by the AYB model
#
# Matrices are plain 2-d numpy.ndarray objects of floats. The functions below
# check the dimensions they rely on and raise ValueError on a mismatch,
# rather than silently broadcasting or truncating.
#
# Numerical faults (singular inversion, degenerate determinant) are raised
# as subclasses of NumericalFault, so the caller can abandon the current
# block of data and continue with the next one.
#
# Matrix files are stored column by column: each line of the file holds one
# column of the matrix, entries separated by whitespace.
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
import numpy as np
import pandas as pd
from scipy import linalg

DETERMINANT_TOLERANCE = 3e-8
SVD_RCOND = 1e-12


class NumericalFault(ArithmeticError):
    """Raised when a matrix operation cannot be carried out numerically."""


class SingularMatrixError(NumericalFault):
    pass


class DegenerateMatrixError(NumericalFault):
    pass


def _check_matrix(mat, name='matrix'):
    if not isinstance(mat, np.ndarray) or mat.ndim != 2:
        raise ValueError(f'{name} must be a 2-d numpy array, '
                         f'value passed: {mat!r}')


def _check_square(mat, name='matrix'):
    _check_matrix(mat, name)
    if mat.shape[0] != mat.shape[1]:
        raise ValueError(f'{name} must be square, shape: {mat.shape}')


def new_matrix(nrow, ncol):
    """Returns a nrow x ncol matrix of zeros."""
    if int(nrow) <= 0 or int(ncol) <= 0:
        raise ValueError('matrix dimensions must be positive integers, '
                         f'values passed: {nrow}, {ncol}')
    return np.zeros((int(nrow), int(ncol)), dtype=float)


def identity_matrix(n):
    return np.eye(int(n), dtype=float)


def matrix_from_array(nrow, ncol, values):
    """Creates a matrix from a flat sequence of values stored column-major.

    Args:
        nrow (int): number of rows
        ncol (int): number of columns
        values (sequence): nrow * ncol numbers, first column first

    Returns:
        numpy.ndarray: matrix of shape (nrow, ncol)
    """
    values = np.asarray(values, dtype=float)
    if values.size != nrow * ncol:
        raise ValueError(f'{nrow * ncol} values are required to fill a '
                         f'{nrow} x {ncol} matrix, {values.size} passed')
    return values.reshape((ncol, nrow)).T.copy()


def transpose(mat):
    """Returns a transposed copy of mat."""
    _check_matrix(mat)
    return mat.T.copy()


def transpose_in_place(mat):
    """Transposes a square matrix in place and returns it."""
    _check_square(mat)
    mat[:, :] = mat.T.copy()
    return mat


def scale(mat, f):
    """Multiplies every entry of mat by f, in place, and returns mat."""
    mat *= f
    return mat


def invert(mat):
    """Computes the inverse of a square matrix.

    Symmetric positive definite matrices (e.g. covariance matrices) are
    inverted through their Cholesky factorisation. If this fails, or the
    matrix is not symmetric, a general LU-based inverse is computed.

    Args:
        mat (numpy.ndarray): square matrix

    Returns:
        numpy.ndarray: inverse of mat

    Raises:
        SingularMatrixError: if mat is (numerically) singular
    """
    _check_square(mat)
    if not np.all(np.isfinite(mat)):
        raise SingularMatrixError('cannot invert matrix containing '
                                  'non-finite entries')
    if np.allclose(mat, mat.T):
        try:
            factor = linalg.cho_factor(mat)
            return linalg.cho_solve(factor, np.eye(mat.shape[0]))
        except linalg.LinAlgError:
            pass
    try:
        inverse = linalg.inv(mat)
    except linalg.LinAlgError as err:
        raise SingularMatrixError(f'matrix is singular: {err}') from err
    if not np.all(np.isfinite(inverse)):
        raise SingularMatrixError('matrix is singular, '
                                  'inverse contains non-finite entries')
    return inverse


def normalize_determinant(mat, tolerance=DETERMINANT_TOLERANCE):
    """Scales a square matrix in place so that its determinant is +/-1.

    The scaling factor f = |det(mat)|^(1/n) is returned, so the caller can
    move the removed scale into other parameters of the model.

    Args:
        mat (numpy.ndarray): square matrix, modified in place
        tolerance (float): smallest acceptable |det(mat)|

    Returns:
        float: the factor f the matrix has been divided by

    Raises:
        DegenerateMatrixError: if |det(mat)| < tolerance
    """
    _check_square(mat)
    n = mat.shape[0]
    sign, logdet = np.linalg.slogdet(mat)
    if sign == 0 or not np.isfinite(logdet) or logdet < np.log(tolerance):
        raise DegenerateMatrixError(
            f'determinant of {n} x {n} matrix is below tolerance '
            f'({tolerance})')
    f = np.exp(logdet / n)
    scale(mat, 1.0 / f)
    return f


def solve_generalized_least_squares(lhs, rhs, rcond=SVD_RCOND):
    """Solves the normal equations lhs X = rhs by singular value decomposition.

    Singular values smaller than rcond * max(singular values) are treated
    as zero, so rank deficient systems return the minimum norm solution
    instead of failing.

    Args:
        lhs (numpy.ndarray): symmetric n x n left-hand side
        rhs (numpy.ndarray): n x m right-hand side
        rcond (float): relative cut-off for small singular values

    Returns:
        numpy.ndarray: n x m solution
    """
    _check_square(lhs, 'lhs')
    _check_matrix(rhs, 'rhs')
    if lhs.shape[0] != rhs.shape[0]:
        raise ValueError(f'lhs {lhs.shape} and rhs {rhs.shape} '
                         'have incompatible dimensions')
    u, s, vt = linalg.svd(lhs)
    if s[0] <= 0.0:
        return np.zeros((lhs.shape[1], rhs.shape[1]))
    keep = s > rcond * s[0]
    s_inv = np.zeros_like(s)
    s_inv[keep] = 1.0 / s[keep]
    return vt.T @ (s_inv[:, None] * (u.T @ rhs))


def read_matrix_file(path):
    """Reads a matrix from a column file.

    Each non-empty line contains one column of the matrix. All lines must
    contain the same number of entries.

    Args:
        path (str): file path, optionally gzip compressed ('.gz' suffix)

    Returns:
        numpy.ndarray: the matrix

    Raises:
        ValueError: if the file is empty, ragged or contains non-numbers
    """
    compression = 'gzip' if path.endswith('.gz') else None
    try:
        df = pd.read_csv(path, sep=r'\s+', header=None,
                         compression=compression, dtype=float)
    except pd.errors.EmptyDataError:
        raise ValueError(f'matrix file {path} is empty')
    except (ValueError, pd.errors.ParserError) as err:
        raise ValueError(f'matrix file {path} has incorrect format: {err}')
    columns = df.values
    if np.isnan(columns).any():
        raise ValueError(f'matrix file {path} has columns of unequal length')
    return columns.T.copy()


def show_matrix(mat, stream=sys.stderr, max_rows=None, max_cols=None):
    nrow = mat.shape[0] if max_rows is None else min(max_rows, mat.shape[0])
    ncol = mat.shape[1] if max_cols is None else min(max_cols, mat.shape[1])
    print(f'{mat.shape[0]} x {mat.shape[1]} matrix', file=stream)
    for i in range(nrow):
        print(' '.join(f'{v:#12.6f}' for v in mat[i, :ncol]), file=stream)
