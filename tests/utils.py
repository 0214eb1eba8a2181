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

import io
import json
import os
import re
import tarfile
import tempfile
from unittest import TestCase

from ktree.exception import TransportError
from ktree.policy import ProvisionConf, Policy, Architecture
from ktree.tree import remove_tree
from ktree.upstream import archive_url
from ktree._transport import Transport, CommandRunner, CommandResult


MIRROR_URL = 'https://mirror.invalid/pub/linux/kernel'
INDEX_URL = 'https://index.invalid/releases.json'


class StorageTestCase(TestCase):
    """
    A base class for tests that also provides a directory
    """
    def setUp(self):
        self.res_dir = tempfile.mkdtemp()

    def tearDown(self):
        # Sealed trees need to be unsealed before removal when not root
        remove_tree(self.res_dir)


def make_policy(base_dir, conf=None):
    """
    Build a :class:`ktree.policy.Policy` for tests, with the fake mirror and
    index URLs.
    """
    provision_conf = ProvisionConf()
    provision_conf.add_src('test-defaults', {
        'base-dir': str(base_dir),
        'jobs': 2,
        'mirror-url': MIRROR_URL,
        'index-url': INDEX_URL,
        'series': ['5.15'],
        'toolchain-mismatch': 'keep',
        'download': {
            'retries': 0,
            'retry-delay': 0,
        },
    })
    provision_conf.add_src('test', conf or {})
    return Policy.from_conf(provision_conf)


def make_archive(version, top=None, files=None):
    """
    Content of a small ``tar.xz`` kernel source archive.

    :param top: Top-level folder, defaults to ``linux-<version>``.
    :param files: Mapping of path relative to the top-level folder to content.
    """
    top = f'linux-{version}' if top is None else top
    files = files or {
        'Makefile': f'# Kernel {version}\n',
        'README': 'Linux kernel\n',
        'include/linux/module.h': '/* module */\n',
    }

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w:xz') as tar:
        for path, content in sorted(files.items()):
            data = content.encode()
            info = tarfile.TarInfo(f'{top}/{path}')
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def releases_json(versions):
    """
    Content of a kernel.org ``releases.json`` listing ``versions``.
    """
    return json.dumps({
        'releases': [
            {'moniker': 'stable', 'version': version}
            for version in versions
        ]
    })


def mirror_listing(versions, ext='tar.xz'):
    """
    HTML folder listing of a mirror branch folder.
    """
    return '\n'.join(
        f'<a href="linux-{version}.{ext}">linux-{version}.{ext}</a>'
        for version in versions
    )


class FakeTransport(Transport):
    """
    In-memory mirror.

    :param files: Mapping of URL to content served by :meth:`download`.
    :param texts: Mapping of URL to content served by :meth:`get_text`.
    """
    def __init__(self, files=None, texts=None):
        self.files = dict(files or {})
        self.texts = dict(texts or {})
        self.calls = []
        self.failing = set()
        # Number of upcoming downloads that will produce garbage
        self.corrupt_downloads = 0

    def add_release(self, policy, version, **kwargs):
        self.files[archive_url(version, policy)] = make_archive(version, **kwargs)

    def set_index(self, versions):
        self.texts[INDEX_URL] = releases_json(versions)

    def _check(self, url):
        if url in self.failing:
            raise TransportError(f'Simulated network error on {url}')

    def exists(self, url):
        self.calls.append(('exists', url))
        self._check(url)
        return url in self.files

    def download(self, url, dest):
        self.calls.append(('download', url))
        self._check(url)
        try:
            data = self.files[url]
        except KeyError:
            # pylint: disable=raise-missing-from
            raise TransportError(f'Could not download {url}: HTTP error 404')

        if self.corrupt_downloads:
            self.corrupt_downloads -= 1
            data = b'this is not an archive'

        with open(dest, 'wb') as f:
            f.write(data)

    def get_text(self, url):
        self.calls.append(('get_text', url))
        self._check(url)
        try:
            return self.texts[url]
        except KeyError:
            # pylint: disable=raise-missing-from
            raise TransportError(f'Could not fetch {url}: HTTP error 404')

    def urls(self, method):
        return [url for meth, url in self.calls if meth == method]


class FakeRunner(CommandRunner):
    """
    Simulate the compiler and the kernel build system.

    :param gcc_version: Version reported by the compiler.
    :param triple: Target triple reported by the compiler.
    :param fail_target: ``make`` target that will fail.
    :param leftovers: If ``True``, ``modules_prepare`` leaves full kernel build
        artifacts behind.
    """
    def __init__(self, gcc_version='12.2.0', triple='aarch64-linux-gnu', fail_target=None, leftovers=False):
        self.gcc_version = gcc_version
        self.triple = triple
        self.fail_target = fail_target
        self.leftovers = leftovers
        self.calls = []

    @property
    def make_calls(self):
        return [cmd for cmd in self.calls if cmd[0] == 'make']

    @property
    def make_targets(self):
        return [cmd[-1] for cmd in self.make_calls]

    def run(self, cmd, cwd=None, env=None):
        cmd = list(map(str, cmd))
        self.calls.append(cmd)
        if cmd[0] == 'make':
            return self._make(cmd)
        elif cmd[0].endswith('gcc'):
            return self._gcc(cmd)
        else:
            return CommandResult(cmd, 127, f'{cmd[0]}: command not found')

    def _gcc(self, cmd):
        option = cmd[1]
        version = self.gcc_version
        if option == '--version':
            out = f'{cmd[0]} (Debian {version}-14) {version}\nCopyright (C) 2022 Free Software Foundation, Inc.\n'
        elif option == '-dumpversion':
            out = version.split('.')[0]
        elif option == '-dumpmachine':
            out = self.triple
        else:
            return CommandResult(cmd, 1, f'unknown option {option}')
        return CommandResult(cmd, 0, out + '\n')

    def _make(self, cmd):
        src = cmd[cmd.index('-C') + 1]
        variables = dict(
            arg.split('=', 1)
            for arg in cmd
            if re.match(r'^[A-Z_]+=', arg)
        )
        build = variables['O']
        target = cmd[-1]

        if target == self.fail_target:
            return CommandResult(cmd, 2, f'make: *** [Makefile:1234: {target}] Error 2\n')

        config = os.path.join(build, '.config')
        if target == 'defconfig':
            arch = [
                arch
                for arch in Architecture
                if arch.kernel_arch == variables['ARCH']
            ][0]
            with open(config, 'w') as f:
                f.write(f'{arch.config_symbol}=y\nCONFIG_MODULES=y\n')
        elif target == 'olddefconfig':
            if not os.path.exists(config):
                return CommandResult(cmd, 2, '***\n*** Configuration file ".config" not found!\n')
        elif target == 'modules_prepare':
            version = os.path.basename(src)[len('linux-'):]
            for path, content in (
                ('include/generated/autoconf.h', '#define CONFIG_MODULES 1\n'),
                ('include/config/kernel.release', f'{version}\n'),
                ('include/generated/utsrelease.h', f'#define UTS_RELEASE "{version}"\n'),
            ):
                path = os.path.join(build, path)
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, 'w') as f:
                    f.write(content)

            link = os.path.join(build, 'source')
            if not os.path.lexists(link):
                os.symlink(src, link)

            if self.leftovers:
                for path in (
                    os.path.join(build, 'vmlinux'),
                    os.path.join(build, 'Module.symvers'),
                    os.path.join(src, 'System.map'),
                ):
                    with open(path, 'w') as f:
                        f.write('leftover\n')

        return CommandResult(cmd, 0, f'  {target} done\n')


def snapshot(path):
    """
    Mapping of every path below ``path`` to its type, mode, mtime and
    content, used to check that nothing changed.
    """
    snap = {}
    for dirpath, dirnames, filenames in os.walk(path):
        for name in sorted(dirnames + filenames):
            entry = os.path.join(dirpath, name)
            st = os.lstat(entry)
            if os.path.islink(entry):
                content = os.readlink(entry)
            elif os.path.isfile(entry):
                with open(entry, 'rb') as f:
                    content = f.read()
            else:
                content = None
            snap[os.path.relpath(entry, path)] = (st.st_mode, st.st_mtime_ns, content)
    return snap

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
