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

"""
Provisioning configuration and the immutable :class:`Policy` snapshot built
from it at startup.
"""

import enum
import os
import re
from collections import namedtuple

from ktree.conf import SimpleMultiSrcConf, KeyDesc, LevelKeyDesc, TopLevelKeyDesc
from ktree.exception import UsageError
from ktree.utils import KTREE_DEFAULT_BASE_DIR, set_nested_key


DEFAULT_SERIES = ('4.19', '5.4', '5.10', '5.15', '6.1', '6.6', '6.12', '6.18')
"""
Kernel series provisioned when none is requested explicitly.
"""

_SERIES_REGEX = re.compile(r'^[0-9]+\.[0-9]+$')


class Architecture(enum.Enum):
    """
    Target architecture of the prepared trees.

    Each member carries the value of ``ARCH`` passed to the kernel build
    system, the token expected in the compiler target triple, the kernel
    config symbol that must be enabled for that architecture and the
    conventional cross compiler prefix.
    """
    ARM64 = ('arm64', 'arm64', 'aarch64', 'CONFIG_ARM64', 'aarch64-linux-gnu-')
    ARM = ('arm', 'arm', 'arm', 'CONFIG_ARM', 'arm-linux-gnueabihf-')
    X86_64 = ('x86_64', 'x86', 'x86_64', 'CONFIG_X86_64', '')
    RISCV = ('riscv', 'riscv', 'riscv64', 'CONFIG_RISCV', 'riscv64-linux-gnu-')
    POWERPC = ('powerpc', 'powerpc', 'powerpc64', 'CONFIG_PPC64', 'powerpc64le-linux-gnu-')

    def __init__(self, id_, kernel_arch, triple_token, config_symbol, default_cross_compile):
        self.id = id_
        self.kernel_arch = kernel_arch
        self.triple_token = triple_token
        self.config_symbol = config_symbol
        self.default_cross_compile = default_cross_compile

    def __str__(self):
        return self.id

    @classmethod
    def from_str(cls, name):
        """
        Get the member corresponding to ``name``, which can also be one of the
        usual aliases (``aarch64``, ``x86``, ``amd64``).

        :raises UsageError: If the architecture is unknown.
        """
        name = name.strip().lower()
        name = _ARCH_ALIASES.get(name, name)
        for arch in cls:
            if arch.id == name:
                return arch

        allowed = ', '.join(arch.id for arch in cls)
        raise UsageError(f'Unknown architecture "{name}", allowed values are: {allowed}')


_ARCH_ALIASES = {
    'aarch64': 'arm64',
    'x86': 'x86_64',
    'amd64': 'x86_64',
}


class _StrEnumMixin:
    @classmethod
    def from_str(cls, name):
        """
        Get the member with the given value.

        :raises UsageError: If no member has that value.
        """
        try:
            return cls(name)
        except ValueError:
            allowed = ', '.join(x.value for x in cls)
            # pylint: disable=raise-missing-from
            raise UsageError(f'Invalid {cls.__name__} "{name}", allowed values are: {allowed}')

    def __str__(self):
        return self.value


class LatestMode(_StrEnumMixin, enum.Enum):
    """
    How the newest upstream release of a series is used.
    """
    NONE = 'none'
    """
    Only use the pinned version from the catalog.
    """

    ALL = 'all'
    """
    Prefer the newest retrievable upstream release for every series, keeping
    the pinned version if upstream knows nothing about the series.
    """

    ON_BROKEN = 'on-broken'
    """
    Only use the newest upstream release when the pinned archive cannot be
    found on the mirror.
    """


class MismatchPolicy(_StrEnumMixin, enum.Enum):
    """
    What to do with a prepared tree built by an incompatible compiler.
    """
    ASK = 'ask'
    REBUILD = 'rebuild'
    KEEP = 'keep'


class ProvisionConf(SimpleMultiSrcConf):
    """
    Kernel build trees provisioning configuration.

    It can be created from a YAML file with :meth:`from_yaml_map`, with the
    content hosted under the ``ktree-conf`` top-level key:

    .. code-block:: YAML

        ktree-conf:
            arch: arm64
            base-dir: /opt/kernels
            series: ['5.15', '6.6']
            latest: on-broken
            force:
                prepare: true
    """

    STRUCTURE = TopLevelKeyDesc('ktree-conf', 'Kernel build trees provisioning', (
        KeyDesc('arch', 'Target architecture: arm64, arm, x86_64, riscv or powerpc', [str]),
        KeyDesc('cross-compile', 'Cross compiler prefix, e.g. "aarch64-linux-gnu-". Defaults to the conventional prefix of the architecture', [str, None]),
        KeyDesc('toolchain-path', 'Folder prepended to PATH when running the compiler and make', [str, None]),
        KeyDesc('base-dir', 'Folder hosting one sub-folder per prepared kernel version', [str]),
        KeyDesc('jobs', 'Number of parallel make jobs', [int]),
        KeyDesc('mirror-url', 'Base URL of the kernel archives mirror', [str]),
        KeyDesc('index-url', 'URL of the upstream releases index (releases.json)', [str]),
        KeyDesc('archive-ext', 'Extension of the kernel source archives', [str]),
        KeyDesc('catalog', 'Local release lock document mapping series to pinned versions', [str, None]),
        KeyDesc('config-dir', 'Folder searched for kernel configs to import', [str, None]),
        KeyDesc('series', 'List of kernel series to provision, e.g. ["5.15", "6.6"]', [list, tuple]),
        KeyDesc('strict', 'Make any missing or corrupt artifact and any resolution failure fatal for the whole run', [bool]),
        LevelKeyDesc('force', 'Redo stages even if their output looks valid', (
            KeyDesc('download', 'Download the archive again', [bool]),
            KeyDesc('extract', 'Extract the sources again', [bool]),
            KeyDesc('prepare', 'Run the preparation pipeline again', [bool]),
            KeyDesc('all', 'Redo all the stages', [bool]),
        )),
        KeyDesc('latest', 'Use of the newest upstream release: none, all or on-broken', [str]),
        KeyDesc('toolchain-mismatch', 'Action when a tree was prepared by an incompatible compiler: ask, rebuild or keep', [str]),
        KeyDesc('per-toolchain-build-dir', 'Use one build folder per compiler under build-<arch>/', [bool]),
        LevelKeyDesc('download', 'Archive download settings', (
            KeyDesc('retries', 'Number of download attempts after the first one failed', [int]),
            KeyDesc('retry-delay', 'Delay in seconds between download attempts', [int, float]),
            KeyDesc('timeout', 'Network timeout in seconds', [int, float]),
        )),
    ))

    DEFAULT_SRC = {
        'arch': 'arm64',
        'cross-compile': None,
        'toolchain-path': None,
        'base-dir': KTREE_DEFAULT_BASE_DIR,
        'jobs': os.cpu_count() or 1,
        'mirror-url': 'https://cdn.kernel.org/pub/linux/kernel',
        'index-url': 'https://www.kernel.org/releases.json',
        'archive-ext': 'tar.xz',
        'catalog': None,
        'config-dir': None,
        'series': list(DEFAULT_SERIES),
        'strict': False,
        'force': {
            'download': False,
            'extract': False,
            'prepare': False,
            'all': False,
        },
        'latest': LatestMode.NONE.value,
        'toolchain-mismatch': MismatchPolicy.ASK.value,
        'per-toolchain-build-dir': False,
        'download': {
            'retries': 3,
            'retry-delay': 2,
            'timeout': 60,
        },
    }

    ENV_VARS = {
        'ARCH': ['arch'],
        'CROSS_COMPILE': ['cross-compile'],
        'BASE_DIR': ['base-dir'],
        'JOBS': ['jobs'],
        'RELEASES_JSON': ['catalog'],
        'KTREE_CONFIG_DIR': ['config-dir'],
        'KTREE_MIRROR_URL': ['mirror-url'],
    }
    """
    Environment variables overriding configuration keys.
    """

    @classmethod
    def env_src(cls, env=None):
        """
        Build a configuration source out of the environment variables listed
        in :attr:`ENV_VARS`. Empty variables are ignored.

        :param env: Environment to read, defaults to :data:`os.environ`.
        :type env: collections.abc.Mapping or None
        """
        env = os.environ if env is None else env
        src = {}
        for var, path in cls.ENV_VARS.items():
            val = env.get(var)
            if not val:
                continue

            if path == ['jobs']:
                try:
                    val = int(val)
                except ValueError:
                    # pylint: disable=raise-missing-from
                    raise UsageError(f'{var} must be an integer, got "{val}"')

            set_nested_key(src, path, val)

        return src


Force = namedtuple('Force', ['download', 'extract', 'prepare'])
Force.__doc__ = """
Per-stage force flags. The flags are independent: forcing a stage does not
force the following ones.
"""


_POLICY_FIELDS = [
    'arch',
    'cross_compile',
    'toolchain_path',
    'base_dir',
    'jobs',
    'mirror_url',
    'index_url',
    'archive_ext',
    'catalog',
    'config_dir',
    'series',
    'strict',
    'force',
    'latest',
    'mismatch',
    'per_toolchain_build_dir',
    'retries',
    'retry_delay',
    'timeout',
]


class Policy(namedtuple('Policy', _POLICY_FIELDS)):
    """
    Immutable snapshot of the configuration of a run.

    It is built once with :meth:`from_conf` and then passed explicitly to every
    component, which never look at the environment to take decisions.
    """
    __slots__ = ()

    @classmethod
    def from_conf(cls, conf):
        """
        Validate a :class:`ProvisionConf` and freeze it.

        :raises UsageError: If a value is invalid.
        """
        arch = Architecture.from_str(conf['arch'])

        cross_compile = conf['cross-compile']
        if cross_compile is None:
            cross_compile = arch.default_cross_compile

        jobs = conf['jobs']
        if jobs < 1:
            raise UsageError(f'Number of jobs must be positive, got {jobs}')

        series = tuple(str(s).strip() for s in conf['series'])
        if not series:
            raise UsageError('No kernel series requested')
        for s in series:
            if not _SERIES_REGEX.match(s):
                raise UsageError(f'Invalid kernel series "{s}", expected <major>.<minor> such as "5.15"')
        # Remove duplicates while keeping the order
        series = tuple(dict.fromkeys(series))

        force_conf = conf['force']
        force_all = force_conf['all']
        force = Force(
            download=force_all or force_conf['download'],
            extract=force_all or force_conf['extract'],
            prepare=force_all or force_conf['prepare'],
        )

        download_conf = conf['download']
        retries = download_conf['retries']
        if retries < 0:
            raise UsageError(f'Number of download retries cannot be negative, got {retries}')

        def optional_path(path):
            return None if path is None else os.path.abspath(os.path.expanduser(path))

        return cls(
            arch=arch,
            cross_compile=cross_compile,
            toolchain_path=optional_path(conf['toolchain-path']),
            base_dir=os.path.abspath(os.path.expanduser(conf['base-dir'])),
            jobs=jobs,
            mirror_url=conf['mirror-url'].rstrip('/'),
            index_url=conf['index-url'],
            archive_ext=conf['archive-ext'].lstrip('.'),
            catalog=optional_path(conf['catalog']),
            config_dir=optional_path(conf['config-dir']),
            series=series,
            strict=conf['strict'],
            force=force,
            latest=LatestMode.from_str(conf['latest']),
            mismatch=MismatchPolicy.from_str(conf['toolchain-mismatch']),
            per_toolchain_build_dir=conf['per-toolchain-build-dir'],
            retries=retries,
            retry_delay=download_conf['retry-delay'],
            timeout=download_conf['timeout'],
        )

    @property
    def compiler(self):
        """
        Name of the C compiler binary, including the cross prefix.
        """
        return f'{self.cross_compile}gcc'

    @property
    def make_vars(self):
        """
        Variables passed on the ``make`` command line.
        """
        return [
            f'ARCH={self.arch.kernel_arch}',
            f'CROSS_COMPILE={self.cross_compile}',
        ]

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
