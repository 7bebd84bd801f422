__author__ = 'Totient, Inc.'
__copyright__ = '2020 Totient, Inc'
__version__ = '1.0.0'

import io
from datetime import datetime
from setuptools import setup, find_packages

setup(
    name='aybcaller',
    version=__version__,
    description='Call bases from sequencing intensities with the AYB model.',
    long_description=io.open('README.md', 'r').read(),
    long_description_content_type='text/markdown',
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Operating System :: POSIX',
    ],
    author='Totient, Inc.',
    license='Copyright (c) {} Totient, Inc.'.format(
        datetime.now().year
    ),
    packages=find_packages(exclude=['example']),
    install_requires=io.open('requirements.txt').read().splitlines(),
    extras_require={'test': ['pytest']},
    include_package_data=True,
    scripts=["command-line-tool/aybcaller"],
    python_requires='>=3.8'
)
