##############################################################################
# Output of base calls and diagnostic matrices
#
# Base calls of each cluster are written as a FASTA record
#
#   >cluster_001
#   ACGTACGT...
#
# or as a FASTQ record
#
#   @cluster_001
#   ACGTACGT...
#   +
#   IIIIIIII...
#
# Output file names are made from the input file name, by replacing the
# part after the last '_' (e.g. '_int.txt.gz') with '.seq', followed by
# the block letter (a, b, ...) if the tile was modelled in several blocks.
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
import numpy as np
from aybcaller.call_bases import bases_to_string, quals_to_string

OUTPUT_FORMATS = ('FASTA', 'FASTQ')
BLOCK_CHAR = 'a'


def check_output_format(output_format):
    """Returns the canonical name of an output format (case insensitive).

    Raises:
        ValueError: if output_format is not one of OUTPUT_FORMATS
    """
    if isinstance(output_format, str) and \
            output_format.upper() in OUTPUT_FORMATS:
        return output_format.upper()
    raise ValueError(f'output format must be one of {OUTPUT_FORMATS}, '
                     f'value passed: {output_format!r}')


def write_results(stream, results, output_format='FASTA'):
    """Writes base calls to an open text stream.

    Args:
        stream: writable text stream
        results (iterable): (index, cluster, bases, quals) tuples,
            as generated by AybModel.results()
        output_format (str): 'FASTA' or 'FASTQ'

    Returns:
        int: number of records written
    """
    output_format = check_output_format(output_format)
    symbol = '@' if output_format == 'FASTQ' else '>'
    records = 0
    for idx, cluster, bases, quals in results:
        stream.write(f'{symbol}cluster_{idx + 1:03d}\n')
        stream.write(bases_to_string(bases))
        if output_format == 'FASTQ':
            stream.write('\n+\n')
            stream.write(quals_to_string(quals))
        stream.write('\n')
        records += 1
    return records


def output_filename(input_path, output_dir, block=0, nblock=1, tag='seq'):
    """Output file path for one block of an input file.

    Args:
        input_path (str): path of the intensity file
        output_dir (str): output directory
        block (int): 0-based index of the block
        nblock (int): number of blocks of the tile
        tag (str): extension of the output file

    Returns:
        str: e.g. <output_dir>/s_1_0001.seq or <output_dir>/s_1_0001.seqb
    """
    name = os.path.basename(input_path)
    stem, delim, _ = name.rpartition('_')
    if not delim:
        stem = name.split('.')[0]
    filename = f'{stem}.{tag}'
    if nblock > 1:
        filename += chr(ord(BLOCK_CHAR) + block)
    return os.path.join(output_dir, filename)


class DiagnosticsWriter:
    """Writes intermediate matrices of the model to text files.

    Used as the diagnostics callable of AybModel. Each call writes (or
    appends to) the file <directory>/<prefix>_<name>.txt.

    Attributes:
        directory (str): output directory
        prefix (str): prefix of the file names, e.g. the input file stem
    """

    def __init__(self, directory, prefix):
        self.directory = directory
        self.prefix = prefix
        self.written = []

    def __call__(self, name, value):
        path = os.path.join(self.directory, f'{self.prefix}_{name}.txt')
        value = np.atleast_2d(np.asarray(value, dtype=float))
        with open(path, 'a') as f:
            np.savetxt(f, value, fmt='%#12.6f')
            f.write('\n')
        self.written.append(path)
