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
Dry-run of a provisioning.

The :class:`Planner` follows the same decisions as
:class:`ktree.provision.Provisioner` but only looks: it reads the local
files, and only uses metadata-only requests and compiler queries. Nothing is
written to disk and nothing is downloaded apart from the release index and
mirror listings.
"""

import enum
from collections import namedtuple

from ktree.exception import KtreeError, TransportError
from ktree.fetch import ArtifactFetcher
from ktree.policy import LatestMode, MismatchPolicy
from ktree.provision import resolve_version, make_tree_factory, MODULE_BUILD_EXAMPLE
from ktree.toolchain import ToolchainGuard, NonInteractiveDecider, read_fingerprint
from ktree.tree import ArchiveState, TreeState
from ktree.upstream import archive_url
from ktree.utils import Loggable, memoized, format_table


class Action(enum.Enum):
    """
    Action a run would take for a stage.
    """
    SKIP = 'skip'
    DOWNLOAD = 'download'
    EXTRACT = 'extract'
    PREPARE = 'prepare'
    REBUILD = 'rebuild'
    ASK = 'ask'
    UNAVAILABLE = 'unavailable'

    def __str__(self):
        return self.value


PlanEntry = namedtuple('PlanEntry', [
    'series',
    'pinned',
    'version',
    'url',
    'archive_state',
    'source_state',
    'build_state',
    'actions',
    'error',
])
PlanEntry.__doc__ = """
What a run would do for a series.

:param series: Requested series.
:param pinned: Pinned version from the catalog, or ``None``.
:param version: Version that would be used, or ``None`` if it could not be
    resolved.
:param url: URL of the archive.
:param archive_state: :class:`ktree.tree.ArchiveState` of the archive.
:param source_state: :class:`ktree.tree.TreeState` of the sources.
:param build_state: :class:`ktree.tree.TreeState` of the build folder.
:param actions: Mapping of stage name to :class:`Action`.
:param error: Error that would stop that series, or ``None``.
"""


class Planner(Loggable):
    """
    Compute what a provisioning run would do, without doing it.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param catalog: Pinned versions, or ``None``.
    :type catalog: ktree.catalog.ReleaseCatalog or None

    :param resolver: Upstream releases.
    :type resolver: ktree.upstream.UpstreamResolver

    :param transport: Network access, only used for metadata requests.
    :type transport: ktree._transport.Transport

    :param runner: Used to query the compiler.
    :type runner: ktree._transport.CommandRunner
    """

    def __init__(self, policy, catalog, resolver, transport, runner):
        self.policy = policy
        self.catalog = catalog
        self.resolver = resolver
        self.transport = transport
        self.runner = runner
        self.fetcher = ArtifactFetcher(policy, transport, resolver)
        self.guard = ToolchainGuard(policy, runner, NonInteractiveDecider())

    @memoized
    def _fingerprint(self):
        """
        Fingerprint of the compiler along with the error a real run would
        fail with when querying it.

        :returns: A tuple ``(fingerprint, error)``, one of them being ``None``.
        """
        try:
            return (self.guard.fingerprint(), None)
        except KtreeError as e:
            self.logger.warning(f'Could not fingerprint the compiler: {e}')
            return (None, e)

    def plan(self, series_list=None):
        """
        Plan the provisioning of ``series_list``, defaulting to the series of
        the policy.

        :rtype: list(PlanEntry)
        """
        series_list = self.policy.series if series_list is None else series_list
        return [
            self.plan_series(series)
            for series in series_list
        ]

    def plan_series(self, series):
        """
        Plan the provisioning of one series.

        :attr:`PlanEntry.error` is set whenever a real run would fail that
        series.
        """
        policy = self.policy
        actions = {}
        pinned = None if self.catalog is None else self.catalog.get(series)

        def entry(version=None, url=None, archive_state=None, source_state=None, build_state=None, error=None):
            return PlanEntry(
                series=series,
                pinned=pinned,
                version=version,
                url=url,
                archive_state=archive_state,
                source_state=source_state,
                build_state=build_state,
                actions=actions,
                error=error,
            )

        try:
            pinned, version = resolve_version(series, policy, self.catalog, self.resolver)
        except KtreeError as e:
            return entry(error=e)

        if policy.per_toolchain_build_dir:
            fingerprint, fingerprint_error = self._fingerprint()
            if fingerprint_error is not None:
                return entry(version, archive_url(version, policy), error=fingerprint_error)
        else:
            fingerprint = None

        tree_factory = make_tree_factory(policy, fingerprint)
        tree = tree_factory(version)

        def corrupt_error(tree):
            return f'local archive is corrupted: {tree.archive_path}'

        archive_state = self.fetcher.probe(tree)
        if archive_state is ArchiveState.VALID and not policy.force.download:
            actions['download'] = Action.SKIP
        elif archive_state is ArchiveState.CORRUPT and policy.strict and not policy.force.download:
            return entry(version, archive_url(version, policy), archive_state, error=corrupt_error(tree))
        else:
            try:
                available = self._available(version)
                if not available and policy.latest is LatestMode.ON_BROKEN:
                    try:
                        alternate = self.resolver.alternate(series, exclude={version})
                    except KtreeError as e:
                        return entry(version, archive_url(version, policy), archive_state, error=e)

                    if alternate is not None and alternate != version:
                        version = alternate
                        tree = tree_factory(version)
                        archive_state = self.fetcher.probe(tree)
                        if archive_state is ArchiveState.VALID and not policy.force.download:
                            available = True
                        elif archive_state is ArchiveState.CORRUPT and policy.strict and not policy.force.download:
                            return entry(version, archive_url(version, policy), archive_state, error=corrupt_error(tree))
                        else:
                            available = self._available(version)
            except TransportError as e:
                url = archive_url(version, policy)
                actions['download'] = Action.UNAVAILABLE
                return entry(version, url, archive_state, error=f'Could not probe {url}: {e.msg}')

            if archive_state is ArchiveState.VALID and not policy.force.download:
                actions['download'] = Action.SKIP
            elif available:
                actions['download'] = Action.DOWNLOAD
            else:
                actions['download'] = Action.UNAVAILABLE

        url = archive_url(version, policy)
        source_state = TreeState.EXTRACTED if tree.extracted else TreeState.MISSING
        build_state = TreeState.PREPARED if tree.prepared else TreeState.MISSING

        if actions['download'] is Action.UNAVAILABLE:
            # Skipped in lenient runs, failed in strict ones
            error = f'archive of {version} not found at {url}' if policy.strict else None
            return entry(version, url, archive_state, source_state, build_state, error)

        if tree.extracted and not policy.force.extract:
            actions['extract'] = Action.SKIP
        else:
            actions['extract'] = Action.EXTRACT

        # The compiler is always queried before preparing or reusing a tree
        fingerprint, error = self._fingerprint()
        if policy.force.prepare or not tree.prepared:
            actions['prepare'] = Action.PREPARE
        elif error is not None:
            actions['prepare'] = Action.SKIP
        else:
            action, error = self._arbitrate(tree, fingerprint)
            if action is Action.REBUILD:
                actions['extract'] = Action.EXTRACT
            actions['prepare'] = action

        return entry(version, url, archive_state, source_state, build_state, error)

    def _available(self, version):
        """
        ``True`` if the archive of ``version`` can be downloaded.

        :raises TransportError: If the mirror could not be queried.
        """
        return self.transport.exists(archive_url(version, self.policy))

    def _arbitrate(self, tree, fingerprint):
        policy = self.policy
        stored = read_fingerprint(tree)

        if stored is None:
            if policy.strict or policy.mismatch is MismatchPolicy.REBUILD:
                return (Action.SKIP, f'prepared tree has no toolchain fingerprint: {tree.fingerprint_path}')
            else:
                return (Action.SKIP, None)
        elif stored.compatible_with(fingerprint):
            return (Action.SKIP, None)
        elif policy.mismatch is MismatchPolicy.REBUILD:
            return (Action.REBUILD, None)
        elif policy.mismatch is MismatchPolicy.KEEP:
            return (Action.SKIP, None)
        else:
            return (Action.ASK, None)

    @staticmethod
    def format_plan(entries):
        """
        Format the output of :meth:`plan` for humans.
        """
        def fmt(x):
            return '-' if x is None else str(x)

        lines = []
        for entry in entries:
            pinned = '' if entry.pinned in (None, entry.version) else f' (pinned {entry.pinned})'
            lines.append(f'{entry.series} -> {fmt(entry.version)}{pinned}')
            if entry.url:
                lines.append(f'    url     : {entry.url}')

            actions = entry.actions
            for stage, name, state in (
                ('download', 'archive', entry.archive_state),
                ('extract', 'sources', entry.source_state),
                ('prepare', 'build', entry.build_state),
            ):
                if stage in actions:
                    lines.append(f'    {name:<8}: {fmt(state)} -> {actions[stage]}')

            if entry.error is not None:
                lines.append(f'    error   : {entry.error}')

        return '\n'.join(lines)


def reference_table(policy, catalog, resolver, series_list=None):
    """
    Table of the series, their pinned and resolved version and the
    ``KERNELDIR`` to use for module builds.

    The release index is only used if a latest mode is selected or there is
    no catalog. Nothing is written.
    """
    series_list = policy.series if series_list is None else series_list
    tree_factory = make_tree_factory(policy)

    rows = []
    for series in series_list:
        pinned = None if catalog is None else catalog.get(series)
        try:
            _, version = resolve_version(series, policy, catalog, resolver)
        except KtreeError as e:
            resolver.logger.warning(str(e))
            rows.append([series, pinned or '-', '-', '-', '-'])
            continue

        tree = tree_factory(version)
        rows.append([
            series,
            pinned or '-',
            version,
            tree.build_dir,
            'yes' if tree.prepared else 'no',
        ])

    table = format_table(rows, ['SERIES', 'PINNED', 'VERSION', 'KERNELDIR', 'PREPARED'])
    return '\n'.join([
        table,
        '',
        'Example build (external module):',
        f'  {MODULE_BUILD_EXAMPLE} ARCH={policy.arch.kernel_arch} CROSS_COMPILE={policy.cross_compile}',
    ])

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
