import os
import sys
import numpy as np
from aybcaller.call_bases import bases_to_string
from aybcaller.matrix import matrix_from_array
from aybcaller.model import INITIAL_CROSSTALK
from aybcaller.simulate import phasing_matrix, simulate_tile, write_int_file


def generate_noise_matrix(ncycle, level=20.0, drift=0.5):
    """ Generate a noise matrix whose baseline grows slowly over cycles

    Args:
        ncycle: number of cycles
        level: baseline of every channel at the first cycle
        drift: increase of the baseline per cycle

    Returns:
        numpy.ndarray: 4 x ncycle noise matrix
    """
    return level + drift * np.tile(np.arange(ncycle), (4, 1))


def generate_tiles(out_dir, ntile=2, ncluster=1000, ncycle=40, seed=0):
    """ Write simulated intensity files and their true sequences

    Args:
        out_dir: output directory
        ntile: number of intensity files
        ncluster: number of clusters per file
        ncycle: number of cycles
        seed: random seed
    """
    M = matrix_from_array(4, 4, INITIAL_CROSSTALK)
    P = phasing_matrix(ncycle)
    N = generate_noise_matrix(ncycle)
    os.makedirs(out_dir, exist_ok=True)
    for t in range(1, ntile + 1):
        tile, bases, lambdas = simulate_tile(ncluster, ncycle, M, P, N,
                                             seed=seed + t)
        write_int_file(os.path.join(out_dir, f's_1_{t:04d}_int.txt'), tile)
        with open(os.path.join(out_dir, f's_1_{t:04d}_true.fa'), 'w') as f:
            for idx in range(ncluster):
                f.write(f'>cluster_{idx + 1:03d}\n')
                f.write(bases_to_string(bases[idx]) + '\n')


if __name__ == '__main__':
    out_dir = sys.argv[1] if len(sys.argv) > 1 else 'example_data'
    generate_tiles(out_dir)
