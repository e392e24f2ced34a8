#!/usr/bin/env python
from setuptools import setup, find_packages  # This setup relies on setuptools since distutils is insufficient and badly hacked code

version = '1.0.0.dev0'

author = 'Yannick Dieter, Jens Janssen, David-Leon Pohl'
author_email = 'dieter@physik.uni-bonn.de, janssen@physik.uni-bonn.de, pohl@physik.uni-bonn.de'

# requirements for core functionality from requirements.txt
with open('requirements.txt') as f:
    install_requires = f.read().splitlines()

setup(
    name='track_alignment',
    version=version,
    description='Track based alignment of detector planes with chi2 derivatives and iterative normal equation solving.',
    license='MIT',
    long_description='',
    author=author,
    maintainer=author,
    author_email=author_email,
    maintainer_email=author_email,
    install_requires=install_requires,
    extras_require={'test': ['pytest']},
    packages=find_packages(include=['track_alignment', 'track_alignment.*']),
    include_package_data=True,  # accept all data files and directories matched by MANIFEST.in or found in source control
    keywords=['telescope', 'alignment', 'testbeam', 'kalman', 'tracking', 'pixelated-detectors'],
    python_requires='>=3.8',
    platforms='any'
)
