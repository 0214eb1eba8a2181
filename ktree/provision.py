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
Provisioning of the build trees of a list of kernel series.

For each series, the stages run in order: version resolution, archive
fetch, extraction, toolchain arbitration and preparation. Each stage only
does work if its output is missing, invalid or forced, so that running the
same provisioning twice does nothing the second time.
"""

import os
from collections import namedtuple

from ktree.exception import KtreeError, UsageError, ResolutionError
from ktree.extract import SourceExtractor
from ktree.fetch import ArtifactFetcher
from ktree.outcome import OutcomeKind, Succeeded, Failed
from ktree.policy import LatestMode
from ktree.prepare import PreparationPipeline
from ktree.toolchain import ToolchainGuard, Decision
from ktree.tree import BuildTree, is_sealed, seal_tree
from ktree.upstream import UpstreamResolver
from ktree.utils import Loggable, memoized, which


MODULE_BUILD_EXAMPLE = 'make -C "$KERNELDIR" M=/path/to/module modules'
"""
Command building an out-of-tree module against a prepared tree.
"""


def resolve_version(series, policy, catalog, resolver):
    """
    Resolve ``series`` to a concrete version.

    :param series: Kernel series, e.g. ``5.15``.
    :type series: str

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param catalog: Pinned versions, or ``None`` if the release index is the
        only source of versions.
    :type catalog: ktree.catalog.ReleaseCatalog or None

    :param resolver: Upstream releases.
    :type resolver: ktree.upstream.UpstreamResolver

    :returns: A tuple ``(pinned, version)`` of the pinned version (or
        ``None``) and the version to use.

    :raises ResolutionError: If no version can be found.
    """
    pinned = None if catalog is None else catalog.get(series)

    if catalog is None or policy.latest is LatestMode.ALL:
        latest = resolver.latest(series)
        if latest is not None:
            return (pinned, latest)
        elif pinned is not None:
            # End-of-life series are removed from the index
            resolver.logger.info(f'Keeping pinned version {pinned} of series {series}')
            return (pinned, pinned)
        else:
            raise ResolutionError(f'No retrievable release for series {series} in {policy.index_url}', series=series, stage='resolve')

    elif pinned is None:
        if policy.latest is LatestMode.ON_BROKEN:
            latest = resolver.latest(series)
            if latest is not None:
                resolver.logger.info(f'Series {series} is not in the catalog, using upstream version {latest}')
                return (None, latest)
        # Raises the appropriate exception
        catalog.resolve(series)

    return (pinned, pinned)


def make_tree_factory(policy, fingerprint=None):
    """
    Build a function mapping a version to its :class:`ktree.tree.BuildTree`.

    :param fingerprint: Compiler fingerprint, only used to name per-compiler
        build folders.
    :type fingerprint: ktree.toolchain.ToolchainFingerprint or None
    """
    toolchain_dir = None if fingerprint is None else fingerprint.toolchain_dir

    def factory(version):
        return BuildTree.from_policy(policy, version, toolchain_dir=toolchain_dir)

    return factory


def check_host(policy):
    """
    Check that the host can provision trees with ``policy``.

    :raises UsageError: If a tool is missing or the base folder is not
        writable.
    """
    if which('make') is None:
        raise UsageError('Required command not found: make. Install it, e.g. with: apt install build-essential')

    cc = policy.compiler
    if which(cc, policy.toolchain_path) is None:
        hint = f' (also looked in {policy.toolchain_path})' if policy.toolchain_path else ''
        raise UsageError(f'Compiler not found: {cc}{hint}. Install the cross toolchain, e.g. with: apt install gcc-{policy.cross_compile.rstrip("-")}, or select another prefix')

    base_dir = policy.base_dir
    try:
        os.makedirs(base_dir, exist_ok=True)
    except OSError as e:
        raise UsageError(f'Could not create {base_dir}: {e}. Run as root (or via sudo), or select another base folder') from e

    if not os.access(base_dir, os.W_OK | os.X_OK):
        raise UsageError(f'{base_dir} is not writable. Run as root (or via sudo), or select another base folder', path=base_dir)


SeriesResult = namedtuple('SeriesResult', ['series', 'outcome'])


class RunReport:
    """
    Outcome of every series of a run.

    :param results: Result of each processed series.
    :type results: list(SeriesResult)

    :param requested: Series requested, including the ones that were not
        processed because the run was aborted.
    :type requested: list(str)
    """

    def __init__(self, results, requested):
        self.results = list(results)
        self.requested = list(requested)

    @property
    def aborted(self):
        return len(self.results) < len(self.requested)

    @property
    def succeeded(self):
        return [res for res in self.results if res.outcome]

    @property
    def unsuccessful(self):
        return [res for res in self.results if not res.outcome]

    @property
    def exit_code(self):
        """
        ``0`` if every requested series was prepared, ``1`` otherwise.
        """
        if self.aborted or self.unsuccessful:
            return 1
        else:
            return 0

    def format(self, policy):
        """
        Human readable report, with the ``KERNELDIR`` of every prepared tree.
        """
        lines = []
        for res in self.succeeded:
            tree = res.outcome.value
            lines.append(f'OK: {tree.version} prepared at:')
            lines.append(f'    KERNELDIR={tree.build_dir}')

        if self.succeeded:
            lines.extend([
                '',
                'Example build (external module):',
                f'  export ARCH={policy.arch.kernel_arch}',
                f'  export CROSS_COMPILE={policy.cross_compile}',
                f'  export KERNELDIR={policy.base_dir}/<version>/build-{policy.arch.id}',
                f'  {MODULE_BUILD_EXAMPLE} -j{policy.jobs}',
            ])

        lines.extend(['', 'Summary:'])
        for res in self.results:
            outcome = res.outcome
            if outcome.kind is OutcomeKind.SUCCEEDED:
                detail = outcome.value.version
            elif outcome.kind is OutcomeKind.SKIPPED:
                detail = outcome.reason
            else:
                detail = str(outcome.error).splitlines()[0]
            lines.append(f'  {res.series:<6} {outcome.kind.lower_name:<9} {detail}')

        processed = {res.series for res in self.results}
        for series in self.requested:
            if series not in processed:
                lines.append(f'  {series:<6} {"aborted":<9} not processed')

        nr_unsuccessful = len(self.requested) - len(self.succeeded)
        if nr_unsuccessful:
            lines.append(f'{nr_unsuccessful} of {len(self.requested)} series failed')
        else:
            lines.append('All done.')

        return '\n'.join(lines)


class Provisioner(Loggable):
    """
    Provision the build trees of kernel series.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param catalog: Pinned versions, or ``None`` to only rely on the upstream
        release index.
    :type catalog: ktree.catalog.ReleaseCatalog or None

    :param transport: Network access.
    :type transport: ktree._transport.Transport

    :param runner: Runs the compiler and the kernel build system.
    :type runner: ktree._transport.CommandRunner

    :param decider: Takes decisions on toolchain mismatch.
    :type decider: ktree.toolchain.DecisionProvider
    """

    def __init__(self, policy, catalog, transport, runner, decider):
        self.policy = policy
        self.catalog = catalog
        self.transport = transport
        self.runner = runner
        self.resolver = UpstreamResolver(policy, transport)
        self.fetcher = ArtifactFetcher(policy, transport, self.resolver)
        self.extractor = SourceExtractor(policy)
        self.guard = ToolchainGuard(policy, runner, decider)
        self.pipeline = PreparationPipeline(policy, runner)

    @memoized
    def fingerprint(self):
        """
        Fingerprint of the compiler of the run, checked against the target
        architecture.
        """
        return self.guard.fingerprint()

    def provision(self, series):
        """
        Provision the tree of ``series``.

        :returns: An outcome whose value is the prepared
            :class:`ktree.tree.BuildTree`.
        :rtype: ktree.outcome.Outcome
        """
        try:
            return self._provision(series)
        except KtreeError as e:
            return Failed(e.with_context(series=series))

    def _provision(self, series):
        policy = self.policy
        logger = self.logger

        pinned, version = resolve_version(series, policy, self.catalog, self.resolver)
        logger.info(f'Series {series} resolved to {version}' + (f' (pinned {pinned})' if pinned not in (None, version) else ''))

        fingerprint = self.fingerprint() if policy.per_toolchain_build_dir else None
        tree_factory = make_tree_factory(policy, fingerprint)

        def extract(tree):
            return self.extractor.extract(tree, series=series)

        def prepare(tree):
            fingerprint = self.fingerprint()
            if policy.force.prepare:
                decision = Decision.PREPARE
            else:
                decision = self.guard.arbitrate(tree, fingerprint)

            if decision is Decision.REUSE:
                logger.info(f'Reusing prepared tree for series {series}: {tree.build_dir}')
                # Sources extracted again on top of a prepared build
                if not is_sealed(tree.source_dir):
                    seal_tree(tree.source_dir)
                return Succeeded(tree)
            elif decision is Decision.REBUILD:
                self.guard.rebuild(tree)
                outcome = extract(tree)
                if not outcome:
                    return outcome

            return self.pipeline.prepare(tree, fingerprint, series=series)

        return self.fetcher.fetch(
            tree_factory, series, version
        ).then(extract).then(prepare)

    def run(self, series_list=None):
        """
        Provision all the series of ``series_list``, defaulting to the series
        of the policy.

        A failed series aborts the run if the policy is strict. Otherwise, the
        remaining series are still processed.

        :rtype: RunReport
        """
        policy = self.policy
        logger = self.logger
        series_list = list(policy.series if series_list is None else series_list)

        results = []
        for series in series_list:
            logger.info(f'Provisioning series {series}')
            outcome = self.provision(series)
            results.append(SeriesResult(series, outcome))

            if outcome.kind is OutcomeKind.FAILED:
                logger.error(f'Series {series} failed: {outcome.error}')
                if policy.strict:
                    logger.error('Aborting the run as strict mode is enabled')
                    break
            elif outcome.kind is OutcomeKind.SKIPPED:
                logger.warning(f'Series {series} skipped: {outcome.reason}')

        return RunReport(results, series_list)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
