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
Download and validation of kernel source archives.
"""

import lzma
import os
import tarfile
import zlib

from ktree.exception import KtreeError, ArtifactError, ArtifactMissingError, ArtifactCorruptError, TransportError
from ktree.outcome import Succeeded, Skipped, Failed
from ktree.policy import LatestMode
from ktree.tree import ArchiveState
from ktree.upstream import archive_url
from ktree.utils import Loggable


def validate_archive(path):
    """
    ``True`` if all the members of the tarball at ``path`` can be enumerated.
    """
    try:
        with tarfile.open(path) as f:
            f.getmembers()
    except (tarfile.TarError, OSError, EOFError, lzma.LZMAError, zlib.error):
        return False
    else:
        return True


class ArtifactFetcher(Loggable):
    """
    Obtain a validated local copy of the source archive of a kernel version.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param transport: Network access.
    :type transport: ktree._transport.Transport

    :param resolver: Used to find an alternate version when the requested one
        is not available and :attr:`ktree.policy.LatestMode.ON_BROKEN` is
        selected.
    :type resolver: ktree.upstream.UpstreamResolver
    """

    def __init__(self, policy, transport, resolver):
        self.policy = policy
        self.transport = transport
        self.resolver = resolver

    def probe(self, tree):
        """
        State of the archive of ``tree``, without modifying anything.

        :rtype: ktree.tree.ArchiveState
        """
        path = tree.archive_path
        if not os.path.exists(path):
            return ArchiveState.MISSING
        elif validate_archive(path):
            return ArchiveState.VALID
        else:
            return ArchiveState.CORRUPT

    def fetch(self, tree_factory, series, version):
        """
        Make sure the archive of ``version`` is available locally.

        :param tree_factory: Callable returning the
            :class:`ktree.tree.BuildTree` of a given version.
        :type tree_factory: collections.abc.Callable

        :param series: Series being provisioned.
        :type series: str

        :param version: Requested version.
        :type version: str

        :returns: An outcome whose value is the
            :class:`ktree.tree.BuildTree` of the selected version, which can
            differ from ``version`` if a fallback took place.
        :rtype: ktree.outcome.Outcome
        """
        policy = self.policy
        outcome = self._fetch_version(tree_factory(version), series)

        if isinstance(outcome, Skipped) and policy.latest is LatestMode.ON_BROKEN:
            logger = self.logger
            logger.info(f'Archive of {version} is not available, looking for another version of series {series}')
            try:
                alternate = self.resolver.alternate(series, exclude={version})
            except KtreeError as e:
                return Failed(e.with_context(series=series, version=version, stage='fetch'))

            if alternate is None or alternate == version:
                logger.warning(f'No alternate version available for series {series}')
            else:
                logger.info(f'Using version {alternate} instead of {version} for series {series}')
                outcome = self._fetch_version(tree_factory(alternate), series)

        if isinstance(outcome, Skipped) and policy.strict:
            return Failed(outcome.error)
        else:
            return outcome

    def _fetch_version(self, tree, series):
        policy = self.policy
        logger = self.logger
        version = tree.version
        path = tree.archive_path
        url = archive_url(version, policy)

        def context(error):
            return error.with_context(series=series, version=version, stage='fetch', path=path)

        if os.path.exists(path):
            if policy.force.download:
                logger.info(f'Forcing download of {version} for series {series}')
            elif validate_archive(path):
                logger.info(f'Reusing archive of {version} for series {series}: {path}')
                return Succeeded(tree)
            elif policy.strict:
                return Failed(context(ArtifactCorruptError('Local archive is corrupted')))
            else:
                logger.warning(f'Local archive is corrupted, removing it: {path}')
                os.remove(path)

        try:
            exists = self.transport.exists(url)
        except TransportError as e:
            return Failed(context(ArtifactError(f'Could not probe {url}: {e.msg}')))

        if not exists:
            error = context(ArtifactMissingError(f'Archive not found at {url}'))
            logger.warning(f'Skipping series {series}: {error}')
            return Skipped(f'archive of {version} not found at {url}', error=error)

        os.makedirs(tree.dl_dir, exist_ok=True)
        # A corrupted transfer is downloaded again only once
        for attempt in (1, 2):
            logger.info(f'Downloading {url} to {path}')
            try:
                self.transport.download(url, path)
            except TransportError as e:
                return Failed(context(ArtifactError(f'Could not download {url}: {e.msg}')))

            if validate_archive(path):
                return Succeeded(tree)

            os.remove(path)
            if attempt == 1:
                logger.warning(f'Downloaded archive {path} is corrupted, downloading it again')

        return Failed(context(ArtifactCorruptError(f'Archive downloaded from {url} is corrupted')))

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
