#! /usr/bin/env python
# SPDX-License-Identifier: GPL-2.0-or-later

from setuptools import setup, find_packages

setup(
    name='MatchRelay',
    version='1.0',
    description='Joins private server matchmaking and relays server info',
    packages=find_packages(),
    python_requires='>=3.8',
    install_requires=[
        'aiohttp',
        'PyYAML',
        'prometheus_client',
        'psutil',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'pytest-aiohttp',
            'pytest-mock',
        ],
    },
    entry_points={
        'console_scripts': ['matchrelay = matchrelay.__main__:main'],
    },
    zip_safe=False,
)
