##############################################################################
# Processing of intensity files: reading, modelling blocks, writing calls
#
# Error policy:
#   - configuration errors are raised by AybConfig before any modelling
#   - input errors (unreadable file, too few cycles) skip the file
#   - wrong-dimension supplied matrices and numerical faults skip the block
#
#
# Multiprocessing considerations:
#
#   Files are independent of each other, so they can be distributed to a
#   pool of processes. The configuration (including the matrices read once
#   at startup) is passed to every worker.
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

import os
import glob
import logging
import multiprocessing as mp
from itertools import repeat
from aybcaller.call_bases import DEFAULT_MU
from aybcaller.matrix import NumericalFault
from aybcaller.model import (DEFAULT_NITER, AybModel, MatrixDimensionError,
                             MatrixSet)
from aybcaller.output import (DiagnosticsWriter, check_output_format,
                              output_filename, write_results)
from aybcaller.tile import (InputError, count_datablocks, create_datablocks,
                            parse_blockstring, read_tile, total_cycles)

logger = logging.getLogger(__name__)

PREFIX_CHAR = '+'
INTENSITY_TAG = '_int.txt'


class AybConfig:
    """Validated settings of a base calling run.

    Attributes:
        niter (int): number of model iterations, at least 1
        output_format (str): 'FASTA' or 'FASTQ'
        blocks (list or None): Block tuples, None means all cycles in one
            block
        mu (float): positive constant of the quality calculation
        input_dir (str): directory of the intensity files
        output_dir (str): directory of the output files
        matrices (MatrixSet): initial crosstalk, noise and phasing
        show_working (bool): if True, intermediate matrices are written
        processes (int): number of files processed in parallel
    """

    def __init__(self, niter=DEFAULT_NITER, output_format='FASTA',
                 blockstring=None, mu=DEFAULT_MU, input_dir='.',
                 output_dir='.', matrices=None, show_working=False,
                 processes=1):
        AybConfig._check_positive_int(niter, 'niter')
        AybConfig._check_positive_int(processes, 'processes')
        AybConfig._check_positive_float(mu, 'mu')
        self.niter = int(niter)
        self.output_format = check_output_format(output_format)
        if blockstring is None:
            self.blocks = None
        else:
            self.blocks = parse_blockstring(blockstring)
        self.mu = float(mu)
        self.input_dir = input_dir
        self.output_dir = output_dir
        self.matrices = matrices if matrices is not None else MatrixSet()
        self.show_working = bool(show_working)
        self.processes = int(processes)

    @staticmethod
    def _check_positive_int(arg, name):
        error_message = f'{name} must be a positive integer, ' \
            f'value passed: {arg}'
        try:
            i = int(arg)
            if i != float(arg) or i <= 0:
                raise ValueError(error_message)
        except (TypeError, ValueError):
            raise ValueError(error_message)

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

    @property
    def ncycle(self):
        """Number of cycles to read, None means all available."""
        if self.blocks is None:
            return None
        return total_cycles(self.blocks)


def find_input_files(input_dir, pattern):
    """Finds the intensity files matching a pattern.

    If the pattern ends with '+' it is a prefix, and any file starting with
    it and containing '_int.txt' matches. Otherwise the file name must be
    <pattern>_int.txt, optionally followed by a compression suffix.
    Any directory part of the pattern is added to input_dir.

    Args:
        input_dir (str): directory to search
        pattern (str): file name pattern

    Returns:
        list: sorted list of matching file paths
    """
    directory, name = os.path.split(pattern)
    directory = os.path.join(input_dir, directory)
    if not name:
        raise ValueError(f'no filename supplied in pattern: {pattern!r}')
    if name.endswith(PREFIX_CHAR):
        globstring = f'{glob.escape(name[:-1])}*{INTENSITY_TAG}*'
    else:
        globstring = f'{glob.escape(name)}{INTENSITY_TAG}*'
    paths = sorted(glob.glob(os.path.join(glob.escape(directory),
                                          globstring)))
    logger.info(f'input file pattern match: {pattern!r}; '
                f'{len(paths)} files found')
    return paths


def analyse_block(tile, config, diagnostics=None):
    """Initialises and runs the model on one block of data.

    Returns:
        AybModel: the model after config.niter iterations
    """
    model = AybModel(tile, matrices=config.matrices, mu=config.mu,
                     diagnostics=diagnostics)
    model.initialise()
    model.run(config.niter)
    return model


def analyse_tile(path, config):
    """Calls bases of all blocks of one intensity file.

    Args:
        path (str): intensity file path
        config (AybConfig): settings of the run

    Returns:
        int: number of blocks successfully called and written
    """
    logger.info(f'input file found: {path}')
    try:
        tile = read_tile(path, config.ncycle)
        datablocks = create_datablocks(tile, config.blocks)
    except (InputError, OSError) as err:
        logger.error(f'failed to read input file {path}: {err}')
        return 0
    logger.info(f'tile data size: {tile.ncluster} clusters of '
                f'{tile.ncycle} cycles')
    del tile

    nblock = len(datablocks)
    stem = os.path.basename(path).split('.')[0]
    written = 0
    for blk, block_tile in enumerate(datablocks):
        diagnostics = None
        if config.show_working:
            diagnostics = DiagnosticsWriter(config.output_dir,
                                            f'{stem}_block{blk + 1}')
        logger.info(f'processing block {blk + 1}, '
                    f'{block_tile.ncycle} cycles')
        try:
            model = analyse_block(block_tile, config, diagnostics)
        except MatrixDimensionError as err:
            logger.error(f'failed to initialise model for block {blk + 1} '
                         f'of {path}, {block_tile.ncycle} cycles: {err}')
            continue
        except NumericalFault as err:
            logger.error(f'processing failed for block {blk + 1} '
                         f'of {path}: {err}')
            continue

        outpath = output_filename(path, config.output_dir, blk, nblock)
        with open(outpath, 'w') as f:
            records = write_results(f, model.results(), config.output_format)
        logger.info(f'{records} records written to {outpath}')
        written += 1
    return written


def run_pipeline(config, paths):
    """Processes every intensity file.

    Args:
        config (AybConfig): settings of the run
        paths (list): intensity file paths

    Returns:
        int: number of files of which every block has been written
    """
    if not os.path.isdir(config.output_dir):
        os.makedirs(config.output_dir)
        logger.info(f'created new output directory: {config.output_dir}')

    if config.blocks is None:
        expected_blocks = 1
    else:
        expected_blocks = count_datablocks(config.blocks)

    processes = min(len(paths), config.processes)
    if processes > 1:
        with mp.Pool(processes) as pool:
            results = pool.starmap(analyse_tile, zip(paths, repeat(config)))
    else:
        results = [analyse_tile(path, config) for path in paths]
    return sum(1 for written in results if written == expected_blocks)
