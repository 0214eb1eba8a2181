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
On-disk layout of a prepared kernel version and the helpers to seal, unseal
and delete it.

For a given version and architecture, the layout is::

    <base-dir>/<version>/_dl/linux-<version>.tar.xz
    <base-dir>/<version>/src/linux-<version>/
    <base-dir>/<version>/build-<arch>/[<compiler>-<major>/]
"""

import contextlib
import enum
import os
import re
import shutil
import stat
from collections import namedtuple

from ktree.upstream import archive_name, source_dirname, mirror_version


FINGERPRINT_FILENAME = '.ktree-toolchain.yml'
"""
Name of the file recording the toolchain fingerprint in the build folder.
"""


class ArchiveState(enum.Enum):
    """
    State of the source archive of a build tree.
    """
    MISSING = 'missing'
    VALID = 'present-valid'
    CORRUPT = 'present-corrupt'

    def __str__(self):
        return self.value


class TreeState(enum.Enum):
    """
    State of the source and build folders of a build tree.
    """
    MISSING = 'missing'
    EXTRACTED = 'extracted'
    PREPARED = 'prepared'

    def __str__(self):
        return self.value


_BUILD_TREE_FIELDS = [
    'version',
    'arch',
    'root',
    'archive_path',
    'source_dir',
    'build_dir',
]


class BuildTree(namedtuple('BuildTree', _BUILD_TREE_FIELDS)):
    """
    Paths of a kernel build tree.

    All the paths are a pure function of the version, the architecture and
    optionally the compiler, so that two versions never share a folder.

    :param version: Full kernel version, e.g. ``5.15.166``.
    :param arch: Target architecture.
    :type arch: ktree.policy.Architecture
    :param root: Folder hosting everything related to that version.
    :param archive_path: Path of the source archive.
    :param source_dir: Folder the sources are extracted in.
    :param build_dir: Folder the kernel is prepared in, to be used as
        ``KERNELDIR`` by module builds.
    """
    __slots__ = ()

    @classmethod
    def from_policy(cls, policy, version, toolchain_dir=None):
        """
        Build the tree of ``version`` according to ``policy``.

        :param toolchain_dir: Name of the per-compiler sub-folder of the build
            folder. Only used if ``policy.per_toolchain_build_dir`` is set.
        :type toolchain_dir: str or None
        """
        root = os.path.join(policy.base_dir, version)
        build_dir = os.path.join(root, f'build-{policy.arch.id}')
        if policy.per_toolchain_build_dir and toolchain_dir:
            build_dir = os.path.join(build_dir, toolchain_dir)

        return cls(
            version=version,
            arch=policy.arch,
            root=root,
            archive_path=os.path.join(root, '_dl', archive_name(version, policy)),
            source_dir=os.path.join(root, 'src', source_dirname(version)),
            build_dir=build_dir,
        )

    @property
    def dl_dir(self):
        return os.path.dirname(self.archive_path)

    @property
    def src_root(self):
        return os.path.dirname(self.source_dir)

    @property
    def fingerprint_path(self):
        return os.path.join(self.build_dir, FINGERPRINT_FILENAME)

    @property
    def config_path(self):
        return os.path.join(self.build_dir, '.config')

    @property
    def source_link(self):
        """
        Symlink from the build folder to the source folder, maintained by the
        kernel build system for out-of-tree builds.
        """
        return os.path.join(self.build_dir, 'source')

    @property
    def prepared_markers(self):
        """
        Files that must exist in a prepared build folder.
        """
        return [
            self.config_path,
            os.path.join(self.build_dir, 'include', 'generated', 'autoconf.h'),
            os.path.join(self.build_dir, 'include', 'config', 'kernel.release'),
        ]

    @property
    def extracted(self):
        """
        ``True`` if the sources folder exists.
        """
        return os.path.isdir(self.source_dir)

    def kernel_release(self):
        """
        Kernel release string recorded in the build folder by the kernel build
        system, or ``None`` if it cannot be found.
        """
        release_path = os.path.join(self.build_dir, 'include', 'config', 'kernel.release')
        try:
            with open(release_path) as f:
                release = f.read().strip()
        except OSError:
            release = None

        if release:
            return release

        utsrelease_path = os.path.join(self.build_dir, 'include', 'generated', 'utsrelease.h')
        try:
            with open(utsrelease_path) as f:
                content = f.read()
        except OSError:
            return None

        match = re.search(r'#define\s+UTS_RELEASE\s+"([^"]*)"', content)
        return match.group(1) if match else None

    @property
    def prepared(self):
        """
        ``True`` if the build folder contains the output of the preparation
        and that output belongs to :attr:`version`.
        """
        if not self.extracted:
            return False
        elif not all(map(os.path.isfile, self.prepared_markers)):
            return False
        else:
            release = self.kernel_release()
            return bool(release) and bool(re.match(re.escape(mirror_version(self.version)) + r'(\D|$)', release))

    @property
    def state(self):
        if self.prepared:
            return TreeState.PREPARED
        elif self.extracted:
            return TreeState.EXTRACTED
        else:
            return TreeState.MISSING


def _is_link(path):
    return os.path.islink(path)


def _walk(path, topdown):
    """
    Yield all the folders and files below ``path`` (included), never following
    nor yielding symlinks.
    """
    if topdown:
        yield path
    for dirpath, dirnames, filenames in os.walk(path, topdown=topdown, followlinks=False):
        for name in filenames + dirnames:
            entry = os.path.join(dirpath, name)
            if not _is_link(entry):
                yield entry
    if not topdown:
        yield path


def _chmod(path, update):
    mode = stat.S_IMODE(os.lstat(path).st_mode)
    new_mode = update(mode, os.path.isdir(path))
    if new_mode != mode:
        os.chmod(path, new_mode)


_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH
_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
_READ_BITS = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH


def seal_tree(path):
    """
    Make ``path`` and everything below it readable by everyone (``a+rX``)
    and then read-only.

    Symlinks are left untouched.
    """
    def update(mode, is_dir):
        mode |= _READ_BITS
        # Equivalent of chmod's "X"
        if is_dir or mode & _EXEC_BITS:
            mode |= _EXEC_BITS
        return mode & ~_WRITE_BITS

    if os.path.isdir(path) and not _is_link(path):
        # Children first, so that a failure leaves the top folder writable
        for entry in _walk(path, topdown=False):
            _chmod(entry, update)


def unseal_tree(path):
    """
    Give back write access to the owner on ``path`` and everything below it.
    """
    def update(mode, is_dir):
        return mode | stat.S_IWUSR

    if os.path.isdir(path) and not _is_link(path):
        for entry in _walk(path, topdown=True):
            _chmod(entry, update)


def is_sealed(path):
    """
    ``True`` if ``path`` is a folder without owner write access.
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    return stat.S_ISDIR(st.st_mode) and not st.st_mode & stat.S_IWUSR


@contextlib.contextmanager
def unsealed(path):
    """
    Context manager making ``path`` writable for the duration of the block.

    If ``path`` was sealed on entry, it is sealed again on exit, including
    when an exception is raised.
    """
    sealed = is_sealed(path)
    if sealed:
        unseal_tree(path)
    try:
        yield path
    finally:
        if sealed and os.path.isdir(path):
            seal_tree(path)


def remove_tree(path):
    """
    Remove ``path``, whether it is a sealed folder, a plain file or a symlink.
    """
    if _is_link(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        unseal_tree(path)
        shutil.rmtree(path)


@contextlib.contextmanager
def fresh_dir(path):
    """
    Context manager providing an empty ``path`` folder.

    Any existing content is removed first. If the block raises, the folder is
    removed so that no partial output is left behind.
    """
    remove_tree(path)
    os.makedirs(path)
    try:
        yield path
    except BaseException:
        remove_tree(path)
        raise

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
