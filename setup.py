#!/usr/bin/env python3

# python setup.py sdist --format=zip,gztar

import importlib.util
import sys

from setuptools import setup

if sys.version_info[:3] < (3, 10, 0):
    sys.exit("Error: SPVKit requires Python version >= 3.10.0...")

with open('contrib/requirements/requirements.txt') as f:
    requirements = f.read().splitlines()

with open('contrib/requirements/requirements-dev.txt') as f:
    requirements_dev = f.read().splitlines()

version_spec = importlib.util.spec_from_file_location('version', 'spvkit/version.py')
version = importlib.util.module_from_spec(version_spec)
version_spec.loader.exec_module(version)

setup(
    name="SPVKit",
    version=version.PACKAGE_VERSION,
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        'test': requirements_dev,
    },
    packages=[
        'spvkit',
        'spvkit.util',
        'spvkit.tests',
    ],
    package_data={
        'spvkit.tests': [
            'data/*.txt',
        ]
    },
    description="Lightweight SPV Bitcoin wallet core",
    author="The ElectrumSV Developers",
    license="MIT Licence",
    url="http://electrumsv.io",
    long_description="""Lightweight SPV Bitcoin wallet core, for embedding in host applications"""
)
