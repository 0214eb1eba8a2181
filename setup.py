#! /usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
#
# Copyright (C) 2024, Arm Limited and contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may
# not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

import os
import itertools
import platform

from setuptools import setup, find_packages


plat = platform.system()
if plat != 'Linux':
    raise ValueError(f'Only Linux is supported, {plat} is unsupported')


with open('README.rst', 'r') as f:
    long_description = f.read()

with open("ktree/version.py") as f:
    version_globals = dict()
    exec(f.read(), version_globals)
    ktree_version = version_globals['__version__']

def make_console_script(name):
    mod_name = name.replace('.py', '')
    cli_name = mod_name.replace('_', '-')
    return f'{cli_name}=ktree._cli_tools.{mod_name}:main'

with os.scandir('ktree/_cli_tools/') as scanner:
    console_scripts = [
        make_console_script(entry.name)
        for entry in scanner
        if entry.name.endswith('.py') and entry.is_file() and not entry.name.startswith('_')
    ]


packages = ['ktree'] + [
    f'ktree.{pkg}'
    for pkg in sorted(find_packages(where='ktree'))
]

extras_require={
    "dev": [
        "pytest",
        "build",
    ],
}

# "all" extra requires all to install all the optional dependencies
extras_require['all'] = sorted(set(
    itertools.chain.from_iterable(extras_require.values())
))

python_requires = '>= 3.8'

if __name__ == "__main__":

    setup(
        name='ktree-prep',
        license='Apache License 2.0',
        version=ktree_version,
        maintainer='Arm Ltd.',
        packages=packages,
        description='Prepare Linux kernel build trees for out-of-tree module builds',
        long_description=long_description,
        python_requires=python_requires,
        install_requires=[
            # Earlier versions have broken __slots__ deserialization
            "ruamel.yaml >= 0.16.6",
            # KernelVersion and TypedKernelConfig
            "devlib >= 1.3.4",
        ],

        extras_require=extras_require,
        classifiers=[
            "Programming Language :: Python :: 3 :: Only",
            # It has not been tested under any other OS
            "Operating System :: POSIX :: Linux",

            "Topic :: System :: Operating System Kernels :: Linux",
            "Topic :: Software Development :: Build Tools",
            "Intended Audience :: Developers",
        ],
        entry_points={
            'console_scripts': console_scripts,
        },
    )

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
