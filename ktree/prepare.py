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
Preparation of extracted kernel sources for out-of-tree module builds.

The kernel build system is run three times against the build folder:

#. a baseline configuration is either imported from the configuration
   folder or generated with ``defconfig``,
#. ``olddefconfig`` brings it up to date with the sources,
#. ``modules_prepare`` generates the headers and tools needed to build
   modules.

The result is then scrubbed of full kernel build artifacts and sealed.
"""

import os
import shutil

from devlib.target import TypedKernelConfig

from ktree.exception import KtreeError, ConsistencyError, PipelineError
from ktree.outcome import Succeeded, Failed
from ktree.toolchain import write_fingerprint
from ktree.tree import seal_tree, unsealed, unseal_tree, remove_tree
from ktree.utils import Loggable, make_toolchain_env, kernel_series


FULL_BUILD_ARTIFACTS = (
    'vmlinux',
    'vmlinux.o',
    'vmlinux.a',
    'vmlinux.symvers',
    'Module.symvers',
    'System.map',
)
"""
Files produced by a full kernel build. If present, module builds would
resolve symbols against them instead of ignoring unresolved ones.
"""


class PreparationPipeline(Loggable):
    """
    Run the kernel build system to prepare a :class:`ktree.tree.BuildTree`.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param runner: Used to run ``make``.
    :type runner: ktree._transport.CommandRunner
    """

    def __init__(self, policy, runner):
        self.policy = policy
        self.runner = runner

    def config_candidates(self, tree):
        """
        Names of the configuration files looked up in the configuration
        folder, highest priority first.
        """
        arch = self.policy.arch.id
        version = tree.version
        series = kernel_series(version)
        return [
            f'config-{arch}-{version}',
            f'config-{arch}-{series}',
            f'config-{version}',
            f'config-{series}',
        ]

    def find_config(self, tree):
        """
        Path of the configuration to import for ``tree``, or ``None``.
        """
        config_dir = self.policy.config_dir
        if config_dir is None:
            return None

        for name in self.config_candidates(tree):
            path = os.path.join(config_dir, name)
            if os.path.isfile(path):
                return path

        return None

    def check_config_arch(self, path):
        """
        Check that the kernel configuration at ``path`` is for the selected
        architecture.

        :raises ConsistencyError: If it is not.
        """
        arch = self.policy.arch
        try:
            with open(path) as f:
                config = TypedKernelConfig.from_str(f.read())
        except (OSError, ValueError) as e:
            raise ConsistencyError(f'Could not parse kernel config: {e}', stage='prepare', path=path) from e

        if not config.is_enabled(arch.config_symbol):
            raise ConsistencyError(
                f'Kernel config is not for {arch}: {arch.config_symbol} is not enabled. Remove or rename that file, or provide a config generated with ARCH={arch.kernel_arch}',
                stage='prepare',
                path=path,
            )

    def _make(self, tree, *targets):
        policy = self.policy
        cmd = [
            'make',
            '-C', tree.source_dir,
            f'O={tree.build_dir}',
            *policy.make_vars,
            *targets,
        ]
        env = make_toolchain_env(policy.toolchain_path)
        res = self.runner.run(cmd, env=env)
        if not res.ok:
            raise PipelineError(
                f'Kernel build system failed on target {targets[-1]}',
                cmd=res.args,
                returncode=res.returncode,
                output=res.output,
            )
        return res

    def prepare(self, tree, fingerprint, series=None):
        """
        Prepare ``tree`` and seal it.

        :param tree: Tree with extracted sources.
        :type tree: ktree.tree.BuildTree

        :param fingerprint: Fingerprint of the compiler, recorded in the
            build folder.
        :type fingerprint: ktree.toolchain.ToolchainFingerprint

        :rtype: ktree.outcome.Outcome
        """
        try:
            self._prepare(tree, fingerprint)
        except KtreeError as e:
            return Failed(e.with_context(series=series, version=tree.version, stage='prepare', path=tree.build_dir))
        else:
            return Succeeded(tree)

    def _prepare(self, tree, fingerprint):
        logger = self.logger
        build_dir = tree.build_dir

        logger.info(f'Preparing kernel {tree.version}')
        logger.info(f'    SRC  : {tree.source_dir}')
        logger.info(f'    BUILD: {build_dir}')
        logger.info(f'    {" ".join(self.policy.make_vars)}')

        if self.policy.force.prepare:
            logger.info(f'Forcing preparation, removing {build_dir}')
            remove_tree(build_dir)
        else:
            # Left-overs of an interrupted or stale preparation are updated in
            # place by the build system
            unseal_tree(build_dir)

        os.makedirs(build_dir, exist_ok=True)

        with unsealed(tree.source_dir):
            config = self.find_config(tree)
            if config is None:
                if not os.path.exists(tree.config_path):
                    self._make(tree, 'defconfig')
            else:
                self.check_config_arch(config)
                logger.info(f'Importing kernel config {config}')
                shutil.copyfile(config, tree.config_path)

            self._make(tree, 'olddefconfig')
            self._make(tree, f'-j{self.policy.jobs}', 'modules_prepare')

            if not tree.prepared:
                missing = [
                    path
                    for path in tree.prepared_markers
                    if not os.path.isfile(path)
                ]
                raise PipelineError(f'Preparation did not produce the expected files: {", ".join(missing) or "kernel.release does not match the version"}')

            write_fingerprint(tree, fingerprint)
            self.purge(tree)
            self._ensure_source_link(tree)

        seal_tree(tree.source_dir)
        seal_tree(build_dir)
        logger.info(f'Kernel {tree.version} prepared: KERNELDIR={build_dir}')

    def purge(self, tree):
        """
        Remove full kernel build artifacts from the build and source folders.
        """
        for folder in (tree.build_dir, tree.source_dir):
            for name in FULL_BUILD_ARTIFACTS:
                path = os.path.join(folder, name)
                if os.path.lexists(path):
                    self.logger.info(f'Removing full build artifact {path}')
                    remove_tree(path)

    def _ensure_source_link(self, tree):
        link = tree.source_link
        if os.path.islink(link):
            if os.path.realpath(link) == os.path.realpath(tree.source_dir):
                return
            self.logger.warning(f'Fixing {link} pointing to {os.readlink(link)}')
            os.remove(link)
        elif os.path.exists(link):
            raise ConsistencyError(f'Expected a symlink to {tree.source_dir}', path=link)

        os.symlink(tree.source_dir, link)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
