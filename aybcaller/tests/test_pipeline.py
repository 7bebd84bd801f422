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

try:
    from aybcaller import output as out
    from aybcaller import pipeline as pl
    from aybcaller.model import INITIAL_CROSSTALK, MatrixSet
    from aybcaller.matrix import matrix_from_array
    from aybcaller.simulate import (phasing_matrix, simulate_tile,
                                    write_int_file)
    from aybcaller.tile import Tile, read_tile
except ImportError:
    import sys

    sys.path.append(
        os.path.dirname(
            os.path.dirname(os.path.dirname(os.path.realpath(__file__)))))
    from aybcaller import output as out
    from aybcaller import pipeline as pl
    from aybcaller.model import INITIAL_CROSSTALK, MatrixSet
    from aybcaller.matrix import matrix_from_array
    from aybcaller.simulate import (phasing_matrix, simulate_tile,
                                    write_int_file)
    from aybcaller.tile import Tile, read_tile

import numpy as np


def write_simulated(directory, name, ncluster=80, ncycle=6, seed=0):
    M = matrix_from_array(4, 4, INITIAL_CROSSTALK)
    tile, bases, _ = simulate_tile(ncluster, ncycle, M,
                                   phasing_matrix(ncycle), seed=seed)
    path = os.path.join(directory, name)
    write_int_file(path, tile)
    return path, bases


def read_records(path):
    with open(path) as f:
        return f.read().splitlines()


@pytest.mark.parametrize(
    "kwargs",
    [
        {'niter': 0},
        {'niter': 'x'},
        {'niter': 2.5},
        {'processes': 0},
        {'mu': 0.0},
        {'mu': 'x'},
        {'output_format': 'SAM'},
        {'blockstring': '10X'},
    ]
)
def test_config_errors(kwargs):
    with pytest.raises(ValueError):
        pl.AybConfig(**kwargs)


def test_config():
    config = pl.AybConfig(niter='3', output_format='fastq',
                          blockstring='4R2I')
    assert config.niter == 3
    assert config.output_format == 'FASTQ'
    assert config.ncycle == 6
    assert isinstance(config.matrices, MatrixSet)
    assert pl.AybConfig().ncycle is None


def test_write_results():
    results = [
        (0, None, np.array([0, 1, 2, 3]), np.array([40, 30, 20, 0])),
        (11, None, np.array([3, 3]), np.array([10, 10])),
    ]
    stream = io.StringIO()
    assert out.write_results(stream, results, 'FASTA') == 2
    assert stream.getvalue() == '>cluster_001\nACGT\n>cluster_012\nTT\n'

    stream = io.StringIO()
    assert out.write_results(stream, results, 'fastq') == 2
    assert stream.getvalue().splitlines()[:4] == \
        ['@cluster_001', 'ACGT', '+', 'I?5!']


@pytest.mark.parametrize(
    "input_path, block, nblock, expected_name",
    [
        ('data/s_1_0001_int.txt', 0, 1, 's_1_0001.seq'),
        ('data/s_1_0001_int.txt.gz', 1, 2, 's_1_0001.seqb'),
        ('intensities.txt', 0, 1, 'intensities.seq'),
    ]
)
def test_output_filename(input_path, block, nblock, expected_name):
    assert out.output_filename(input_path, 'results', block, nblock) == \
        os.path.join('results', expected_name)


def test_diagnostics_writer(tmp_path):
    writer = out.DiagnosticsWriter(str(tmp_path), 's_1_0001')
    writer('crosstalk', np.eye(4))
    writer('crosstalk', np.eye(4))
    writer('lambda', np.arange(3.0))
    assert len(writer.written) == 3
    values = np.loadtxt(str(tmp_path / 's_1_0001_crosstalk.txt'))
    assert values.shape == (8, 4)


def test_find_input_files(tmp_path):
    for name in ['s_1_0001_int.txt', 's_1_0002_int.txt.gz',
                 's_2_0001_int.txt', 's_1_0001_nse.txt']:
        (tmp_path / name).write_text('')
    found = pl.find_input_files(str(tmp_path), 's_1_+')
    assert [os.path.basename(p) for p in found] == \
        ['s_1_0001_int.txt', 's_1_0002_int.txt.gz']
    found = pl.find_input_files(str(tmp_path), 's_2_0001')
    assert [os.path.basename(p) for p in found] == ['s_2_0001_int.txt']
    assert pl.find_input_files(str(tmp_path), 's_3_+') == []
    with pytest.raises(ValueError):
        pl.find_input_files(str(tmp_path), 'subdir/')


def test_analyse_tile(tmp_path):
    path, bases = write_simulated(str(tmp_path), 's_1_0001_int.txt')
    config = pl.AybConfig(niter=2, output_format='FASTQ',
                          output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 1
    lines = read_records(str(tmp_path / 's_1_0001.seq'))
    assert len(lines) == 4 * 80
    assert lines[0] == '@cluster_001'
    called = np.array([list(seq) for seq in lines[1::4]])
    truth = np.array([list('ACGT')])[0][bases]
    assert np.mean(called == truth) > 0.95


def test_analyse_tile_blocks_and_working(tmp_path):
    path, _ = write_simulated(str(tmp_path), 's_1_0001_int.txt', ncycle=8)
    config = pl.AybConfig(niter=1, blockstring='4R1I3R',
                          output_dir=str(tmp_path), show_working=True)
    assert pl.analyse_tile(path, config) == 2
    first = read_records(str(tmp_path / 's_1_0001.seqa'))
    second = read_records(str(tmp_path / 's_1_0001.seqb'))
    assert len(first[1]) == 4
    assert len(second[1]) == 3
    assert os.path.exists(
        str(tmp_path / 's_1_0001_int_block2_crosstalk.txt'))


def test_analyse_tile_skips_bad_file(tmp_path):
    path = str(tmp_path / 's_1_0001_int.txt')
    with open(path, 'w') as f:
        f.write('')
    config = pl.AybConfig(output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 0
    assert pl.analyse_tile(str(tmp_path / 'missing_int.txt'), config) == 0


def test_analyse_tile_skips_insufficient_cycles(tmp_path):
    path, _ = write_simulated(str(tmp_path), 's_1_0001_int.txt', ncycle=4)
    config = pl.AybConfig(blockstring='5R', output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 0
    assert not os.path.exists(str(tmp_path / 's_1_0001.seq'))


def test_analyse_tile_skips_block_with_wrong_matrix(tmp_path):
    path, _ = write_simulated(str(tmp_path), 's_1_0001_int.txt', ncycle=6)
    matrices = MatrixSet(noise=np.zeros((4, 3)))
    config = pl.AybConfig(niter=1, blockstring='3R3R', matrices=matrices,
                          output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 2
    config = pl.AybConfig(niter=1, matrices=matrices,
                          output_dir=str(tmp_path / 'whole'))
    os.makedirs(config.output_dir)
    assert pl.analyse_tile(path, config) == 0


def test_run_pipeline(tmp_path):
    input_dir = tmp_path / 'input'
    input_dir.mkdir()
    write_simulated(str(input_dir), 's_1_0001_int.txt', seed=1)
    write_simulated(str(input_dir), 's_1_0002_int.txt', seed=2)
    (input_dir / 's_1_0003_int.txt').write_text('')
    output_dir = str(tmp_path / 'output')
    config = pl.AybConfig(niter=1, input_dir=str(input_dir),
                          output_dir=output_dir)
    paths = pl.find_input_files(config.input_dir, 's_1_+')
    assert len(paths) == 3
    assert pl.run_pipeline(config, paths) == 2
    assert sorted(os.listdir(output_dir)) == ['s_1_0001.seq', 's_1_0002.seq']
    records = read_records(os.path.join(output_dir, 's_1_0002.seq'))
    assert records[0] == '>cluster_001'
    assert len(records) == 2 * 80


def test_simulated_file_round_trip(tmp_path):
    M = matrix_from_array(4, 4, INITIAL_CROSSTALK)
    tile, _, _ = simulate_tile(10, 3, M, seed=3)
    path = str(tmp_path / 's_1_0001_int.txt')
    write_int_file(path, tile)
    read = read_tile(path)
    assert read.signals.shape == (10, 4, 3)
    assert (read.x == tile.x).all()
    assert np.max(np.abs(read.signals - tile.signals)) <= 0.05 + 1e-9


def test_analyse_tile_skips_degenerate_block(tmp_path):
    M = matrix_from_array(4, 4, INITIAL_CROSSTALK)
    tile, _, _ = simulate_tile(80, 6, M, phasing_matrix(6), seed=4)
    signals = tile.signals.copy()
    signals[:, :, :3] = 0.0
    path = str(tmp_path / 's_1_0001_int.txt')
    write_int_file(path, Tile(signals, tile.x, tile.y, lane=1, tile=1))
    config = pl.AybConfig(niter=1, blockstring='3R3R',
                          output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 1
    assert not os.path.exists(str(tmp_path / 's_1_0001.seqa'))
    assert len(read_records(str(tmp_path / 's_1_0001.seqb'))) == 2 * 80


def test_analyse_tile_skips_all_zero_file(tmp_path):
    path = str(tmp_path / 's_1_0001_int.txt')
    write_int_file(path, Tile(np.zeros((10, 4, 3)), lane=1, tile=1))
    config = pl.AybConfig(niter=1, output_dir=str(tmp_path))
    assert pl.analyse_tile(path, config) == 0
    assert not os.path.exists(str(tmp_path / 's_1_0001.seq'))
    assert pl.run_pipeline(config, [path]) == 0
