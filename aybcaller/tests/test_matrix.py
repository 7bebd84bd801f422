##############################################################################
# aybcaller is a python package supporting the aybcaller command line tool
# which is used to call bases from the intensities of a sequencing run.
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

import pytest

import os
import io
import gzip

try:
    from aybcaller import matrix as mx
except ImportError:
    import sys

    sys.path.append(
        os.path.dirname(
            os.path.dirname(os.path.dirname(os.path.realpath(__file__)))))
    from aybcaller import matrix as mx

import numpy as np


def is_approx(A, B, rel_error=1e-8, abs_error_floor=1e-10):
    A = np.array(A)
    B = np.array(B)
    if A.shape != B.shape:
        return False
    diff = np.abs(A - B)
    size = np.maximum(np.abs(A), np.abs(B))
    return (diff <= rel_error * size + abs_error_floor).all()


def test_matrix_from_array_is_column_major():
    mat = mx.matrix_from_array(2, 3, [1, 2, 3, 4, 5, 6])
    assert is_approx(mat, [[1, 3, 5], [2, 4, 6]])


def test_matrix_from_array_wrong_size():
    with pytest.raises(ValueError):
        mx.matrix_from_array(2, 2, [1, 2, 3])


def test_new_matrix():
    assert mx.new_matrix(2, 3).shape == (2, 3)
    with pytest.raises(ValueError):
        mx.new_matrix(0, 3)


def test_transpose_in_place():
    mat = np.array([[1.0, 2.0], [3.0, 4.0]])
    result = mx.transpose_in_place(mat)
    assert result is mat
    assert is_approx(mat, [[1, 3], [2, 4]])
    with pytest.raises(ValueError):
        mx.transpose_in_place(np.zeros((2, 3)))


def test_scale():
    mat = np.array([[1.0, -2.0], [0.5, 4.0]])
    result = mx.scale(mat, 2.0)
    assert result is mat
    assert is_approx(mat, [[2, -4], [1, 8]])


@pytest.mark.parametrize(
    "mat",
    [
        np.array([[4.0, 1.0], [1.0, 3.0]]),
        np.array([[2.0, 1.0, 0.0], [0.5, 3.0, 1.0], [0.0, 0.2, 1.5]]),
        np.array([[0.0, 1.0], [1.0, 0.0]]),
    ]
)
def test_invert(mat):
    inverse = mx.invert(mat)
    assert is_approx(mat @ inverse, np.eye(mat.shape[0]),
                     abs_error_floor=1e-12)


@pytest.mark.parametrize(
    "mat",
    [
        np.array([[1.0, 2.0], [2.0, 4.0]]),
        np.zeros((3, 3)),
        np.array([[1.0, np.nan], [0.0, 1.0]]),
    ]
)
def test_invert_singular(mat):
    with pytest.raises(mx.SingularMatrixError):
        mx.invert(mat)


def test_singular_matrix_is_numerical_fault():
    assert issubclass(mx.SingularMatrixError, mx.NumericalFault)
    assert issubclass(mx.DegenerateMatrixError, mx.NumericalFault)


@pytest.mark.parametrize(
    "mat, expected_factor, expected_det",
    [
        (np.diag([2.0, 8.0]), 4.0, 1.0),
        (np.array([[0.0, 2.0], [2.0, 0.0]]), 2.0, -1.0),
        (np.eye(3) * 5.0, 5.0, 1.0),
    ]
)
def test_normalize_determinant(mat, expected_factor, expected_det):
    original = mat.copy()
    f = mx.normalize_determinant(mat)
    assert is_approx(f, expected_factor)
    assert is_approx(np.linalg.det(mat), expected_det)
    assert is_approx(mat * f, original)


def test_normalize_determinant_below_tolerance():
    mat = np.diag([1e-5, 1e-5])
    with pytest.raises(mx.DegenerateMatrixError):
        mx.normalize_determinant(mat)
    with pytest.raises(mx.DegenerateMatrixError):
        mx.normalize_determinant(np.zeros((2, 2)))


def test_solve_generalized_least_squares_full_rank():
    lhs = np.array([[4.0, 1.0], [1.0, 3.0]])
    rhs = np.array([[1.0, 0.0], [2.0, 1.0]])
    solution = mx.solve_generalized_least_squares(lhs, rhs)
    assert is_approx(solution, np.linalg.solve(lhs, rhs))


def test_solve_generalized_least_squares_rank_deficient():
    lhs = np.array([[1.0, 1.0], [1.0, 1.0]])
    rhs = np.array([[2.0], [2.0]])
    solution = mx.solve_generalized_least_squares(lhs, rhs)
    assert is_approx(solution, [[1.0], [1.0]])


def test_solve_generalized_least_squares_dimension_mismatch():
    with pytest.raises(ValueError):
        mx.solve_generalized_least_squares(np.eye(3), np.ones((2, 1)))


def test_read_matrix_file(tmp_path):
    path = str(tmp_path / 'crosstalk.txt')
    with open(path, 'w') as f:
        f.write('1.0 2.0\n3.0 4.0\n')
    assert is_approx(mx.read_matrix_file(path), [[1, 3], [2, 4]])


def test_read_matrix_file_gzip(tmp_path):
    path = str(tmp_path / 'noise.txt.gz')
    with gzip.open(path, 'wt') as f:
        f.write('1 2 3 4\n5 6 7 8\n0 0 0 0\n')
    mat = mx.read_matrix_file(path)
    assert mat.shape == (4, 3)
    assert is_approx(mat[:, 1], [5, 6, 7, 8])


@pytest.mark.parametrize(
    "content",
    [
        '',
        '1.0 2.0\n3.0\n',
        '1.0 x\n3.0 4.0\n',
    ]
)
def test_read_matrix_file_bad_format(tmp_path, content):
    path = str(tmp_path / 'bad.txt')
    with open(path, 'w') as f:
        f.write(content)
    with pytest.raises(ValueError):
        mx.read_matrix_file(path)


def test_show_matrix():
    stream = io.StringIO()
    mx.show_matrix(np.eye(3), stream, max_rows=2)
    lines = stream.getvalue().splitlines()
    assert lines[0] == '3 x 3 matrix'
    assert len(lines) == 3
