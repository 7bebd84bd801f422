##############################################################################
# Clusters and tiles of intensity data
#
# A tile is an ordered collection of clusters sharing the same number of
# cycles. Intensities are stored as a single array of shape
# (ncluster, 4, ncycle), which is made read-only at construction:
# the model only ever works on copies.
#
# Input file format (Illumina _int.txt), one cluster per line:
#
#   lane  tile  x  y  A1 C1 G1 T1  A2 C2 G2 T2  ...
#
# Fields are separated by whitespace (tabs between cycles, spaces within).
#
# Block strings select and group cycles for modelling, e.g. "50R10I50R"
# means: model cycles 1-50 as one block, ignore cycles 51-60 and model
# cycles 61-110 as a second block. Block types:
#   R: start a new block
#   C: concatenate the cycles onto the current block
#   I: ignore the cycles
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

import re
import gzip
from collections import namedtuple
from warnings import warn
import numpy as np
import pandas as pd
from aybcaller.intensities import NBASE

BLOCK_READ = 'R'
BLOCK_CONCAT = 'C'
BLOCK_IGNORE = 'I'

Cluster = namedtuple('Cluster', ['x', 'y', 'signals'])
Block = namedtuple('Block', ['type', 'ncycle'])


class InputError(ValueError):
    """Raised when an intensity file cannot be used."""


class EmptyInputError(InputError):
    pass


class InsufficientCyclesError(InputError):
    pass


class Tile:
    """Intensities of an ordered collection of clusters.

    Attributes:
        signals (numpy.ndarray): read-only array of shape
            (ncluster, 4, ncycle)
        x (numpy.ndarray): 1-d integer array of x coordinates
        y (numpy.ndarray): 1-d integer array of y coordinates
        lane (int): lane number
        tile (int): tile number
    """

    def __init__(self, signals, x=None, y=None, lane=0, tile=0):
        signals = np.array(signals, dtype=float)
        if signals.ndim != 3 or signals.shape[1] != NBASE:
            raise ValueError('signals must have shape (ncluster, 4, ncycle), '
                             f'found {signals.shape}')
        ncluster = signals.shape[0]
        if x is None:
            x = np.zeros(ncluster, dtype=int)
        if y is None:
            y = np.zeros(ncluster, dtype=int)
        x = np.array(x, dtype=int)
        y = np.array(y, dtype=int)
        if x.shape != (ncluster,) or y.shape != (ncluster,):
            raise ValueError('one x and one y coordinate per cluster '
                             'is required')
        signals.flags.writeable = False
        self.signals = signals
        self.x = x
        self.y = y
        self.lane = int(lane)
        self.tile = int(tile)

    @property
    def ncluster(self):
        return self.signals.shape[0]

    @property
    def ncycle(self):
        return self.signals.shape[2]

    def __len__(self):
        return self.ncluster

    def __getitem__(self, idx):
        return Cluster(int(self.x[idx]), int(self.y[idx]), self.signals[idx])

    def __iter__(self):
        for idx in range(self.ncluster):
            yield self[idx]

    def select_cycles(self, start, end):
        """Returns a new tile containing cycles start, ..., end - 1."""
        if not 0 <= start < end <= self.ncycle:
            raise ValueError(f'invalid cycle range [{start}, {end}) '
                             f'for tile of {self.ncycle} cycles')
        return Tile(self.signals[:, :, start:end], self.x, self.y,
                    self.lane, self.tile)

    def append_cycles(self, other):
        """Returns a new tile with the cycles of other appended."""
        if other.ncluster != self.ncluster:
            raise ValueError('cannot append tiles with different number '
                             'of clusters')
        return Tile(np.concatenate([self.signals, other.signals], axis=2),
                    self.x, self.y, self.lane, self.tile)

    def show(self, stream, max_clusters=10):
        print(f'Tile {self.tile} of lane {self.lane}: '
              f'{self.ncluster} clusters of {self.ncycle} cycles',
              file=stream)
        for idx in range(min(max_clusters, self.ncluster)):
            cluster = self[idx]
            print(f'Cluster coordinates: ({cluster.x},{cluster.y})',
                  file=stream)
            for row in cluster.signals:
                print(' '.join(f'{v:#10.2f}' for v in row[:5]), file=stream)


def _read_gzip_or_nogzip(path):
    if path.endswith('.gz'):
        with gzip.open(path, mode='rt', encoding='utf-8') as f:
            for line in f:
                yield line
    else:
        with open(path, 'r') as f:
            for line in f:
                yield line


def _count_fields(path):
    """Number of fields of the first non-empty line and of the widest line."""
    first = None
    widest = 0
    for line in _read_gzip_or_nogzip(path):
        nfield = len(line.split())
        if nfield == 0:
            continue
        if first is None:
            first = nfield
        widest = max(widest, nfield)
    return first, widest


def read_tile(path, ncycle=None):
    """Reads a tile of intensities from a file in Illumina _int.txt format.

    The first ncycle cycles of every line are read, any further fields of
    a line are ignored. Lines that are too short or cannot be parsed are
    skipped with a warning.

    Args:
        path (str): file path, gzip compressed if it ends with '.gz'
        ncycle (int or None): number of cycles to read, None means the
            number of cycles in the first line of the file

    Returns:
        Tile: intensities of the clusters in the file

    Raises:
        EmptyInputError: if the file contains no usable line
        InsufficientCyclesError: if no line contains ncycle cycles
    """
    first, widest = _count_fields(path)
    if first is None:
        raise EmptyInputError(f'no data in intensity file {path}')
    if ncycle is None:
        ncycle = (first - 4) // NBASE
    available = (widest - 4) // NBASE
    if available < ncycle or ncycle <= 0:
        raise InsufficientCyclesError(
            f'intensity file {path} contains fewer cycles than requested; '
            f'{max(available, 0)} instead of {ncycle}')

    # columns of the widest line, shorter lines are padded with NaN
    compression = 'gzip' if path.endswith('.gz') else None
    df = pd.read_csv(path, sep=r'\s+', header=None, names=range(widest),
                     usecols=range(4 + NBASE * ncycle),
                     compression=compression)

    df = df.apply(pd.to_numeric, errors='coerce')
    incomplete = df.isna().any(axis=1).values
    if incomplete.any():
        warn(f'{int(np.sum(incomplete))} lines of {path} cannot be '
             'processed, they are skipped')
        df = df[~incomplete]
    if len(df) == 0:
        raise EmptyInputError(f'no usable data in intensity file {path}')

    values = df.values
    header = values[:, :4].astype(int)
    intensities = values[:, 4:4 + NBASE * ncycle].astype(float)
    signals = intensities.reshape((len(values), ncycle, NBASE))
    signals = np.transpose(signals, (0, 2, 1))
    return Tile(signals, x=header[:, 2], y=header[:, 3],
                lane=header[0, 0], tile=header[0, 1])


def parse_blockstring(blockstring):
    """Decodes a block string, such as '50R10I50R', to a list of Blocks.

    Args:
        blockstring (str): sequence of <number><type> pairs, where
            type is one of R, C, I (case insensitive)

    Returns:
        list: Block(type, ncycle) tuples in order

    Raises:
        ValueError: if the string is malformed or contains no R or C block
    """
    error_message = 'blockstring must be a sequence of <number><R|C|I> ' \
        f'pairs, value passed: {blockstring!r}'
    if not isinstance(blockstring, str):
        raise ValueError(error_message)
    pattern = re.compile(r'(\d+)([RCI])', re.IGNORECASE)
    if not re.fullmatch(r'(?:\d+[RCI])+', blockstring, re.IGNORECASE):
        raise ValueError(error_message)
    blocks = []
    for number, block_type in pattern.findall(blockstring):
        if int(number) == 0:
            raise ValueError(error_message)
        blocks.append(Block(block_type.upper(), int(number)))
    if all(block.type == BLOCK_IGNORE for block in blocks):
        raise ValueError(f'blockstring contains no data blocks: '
                         f'{blockstring!r}')
    return blocks


def total_cycles(blocks):
    return sum(block.ncycle for block in blocks)


def count_datablocks(blocks):
    """Number of tiles create_datablocks() generates from blocks."""
    count = 0
    for block in blocks:
        if block.type == BLOCK_READ or (block.type == BLOCK_CONCAT
                                        and count == 0):
            count += 1
    return count


def create_datablocks(tile, blocks=None):
    """Splits the cycles of a tile into blocks that are modelled separately.

    Args:
        tile (Tile): tile with at least total_cycles(blocks) cycles
        blocks (list or None): Block tuples from parse_blockstring(),
            None means a single block with all cycles

    Returns:
        list: Tile objects, one for each data block
    """
    if blocks is None:
        return [tile]
    if total_cycles(blocks) > tile.ncycle:
        raise InsufficientCyclesError(
            f'blocks need {total_cycles(blocks)} cycles, '
            f'tile contains {tile.ncycle}')
    datablocks = []
    colstart = 0
    for block in blocks:
        colend = colstart + block.ncycle
        if block.type != BLOCK_IGNORE:
            part = tile.select_cycles(colstart, colend)
            if block.type == BLOCK_READ or len(datablocks) == 0:
                datablocks.append(part)
            else:
                datablocks[-1] = datablocks[-1].append_cycles(part)
        colstart = colend
    return datablocks
