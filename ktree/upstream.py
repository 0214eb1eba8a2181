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
Discovery of the newest retrievable upstream release of a kernel series.

The release index (``releases.json`` on kernel.org) is fetched at most once
per :class:`UpstreamResolver` instance. A version is only reported if its
archive actually exists on the mirror.
"""

import json
import re

from ktree.exception import ResolutionError, TransportError
from ktree.utils import Loggable, memoized, is_stable_version, kernel_version_key


def branch_dir(version):
    """
    Folder of the mirror hosting the archives of ``version``.

    This is ``v<major>.x`` except for the 2.6 and 3.0 branches, which have
    their own folders.

    :param version: Kernel version or series, e.g. ``5.15.166``.
    :type version: str
    """
    parts = version.split('.')
    if parts[:2] == ['2', '6']:
        return 'v2.6'
    elif parts[:2] == ['3', '0']:
        return 'v3.0'
    else:
        return f'v{parts[0]}.x'


def mirror_version(version):
    """
    Version as spelled in the mirror file names, e.g. ``6.6`` for ``6.6.0``.
    """
    # Remove trailing 0 as this seems to be the pattern followed by
    # cdn.kernel.org URLs
    parts = version.split('.')
    if len(parts) > 2 and parts[-1] == '0':
        parts = parts[:-1]
    return '.'.join(parts)


def source_dirname(version):
    """
    Name of the top-level folder contained in the archive of ``version``.
    """
    return f'linux-{mirror_version(version)}'


def archive_name(version, policy):
    """
    File name of the source archive of ``version``, e.g.
    ``linux-5.15.166.tar.xz``.
    """
    return f'{source_dirname(version)}.{policy.archive_ext}'


def archive_url(version, policy):
    """
    URL of the source archive of ``version`` on the mirror configured in
    ``policy``.
    """
    return f'{policy.mirror_url}/{branch_dir(version)}/{archive_name(version, policy)}'


class UpstreamResolver(Loggable):
    """
    Find the newest version of a series known to the upstream release index
    and available on the mirror.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param transport: Network access.
    :type transport: ktree._transport.Transport
    """

    def __init__(self, policy, transport):
        self.policy = policy
        self.transport = transport

    @memoized
    def releases(self):
        """
        List of stable versions in the release index.

        If the index cannot be fetched or parsed, an empty list is returned so
        that no override is available, unless the run is strict.

        :raises ResolutionError: If the index cannot be used in a strict run.
        """
        url = self.policy.index_url
        logger = self.logger
        logger.info(f'Fetching release index {url}')
        try:
            text = self.transport.get_text(url)
            data = json.loads(text)
            versions = [
                release['version']
                for release in data['releases']
            ]
        except (TransportError, ValueError, KeyError, TypeError) as e:
            if self.policy.strict:
                raise ResolutionError(f'Could not use the release index {url}: {e}', stage='resolve') from e
            else:
                logger.warning(f'Could not use the release index {url}, no upstream version will be used: {e}')
                return []

        return [
            version
            for version in versions
            if isinstance(version, str) and is_stable_version(version)
        ]

    def candidates(self, series):
        """
        Versions of ``series`` listed in the index, oldest first.
        """
        prefix = f'{series}.'
        return sorted(
            set(
                version
                for version in self.releases()
                if version.startswith(prefix)
            ),
            key=kernel_version_key,
        )

    def _probe_newest(self, series, versions, exclude):
        logger = self.logger
        for version in reversed(versions):
            if version in exclude:
                continue
            url = archive_url(version, self.policy)
            try:
                exists = self.transport.exists(url)
            except TransportError as e:
                if self.policy.strict:
                    raise ResolutionError(str(e), series=series, version=version, stage='resolve') from e
                else:
                    logger.warning(f'Could not probe {url}, ignoring version {version}: {e}')
                    continue

            if exists:
                return version
            else:
                logger.debug(f'Version {version} of series {series} is listed but not available at {url}')

        return None

    def latest(self, series, exclude=()):
        """
        Newest version of ``series`` listed in the index whose archive exists
        on the mirror.

        :param series: Kernel series, e.g. ``5.15``.
        :type series: str

        :param exclude: Versions to ignore.
        :type exclude: collections.abc.Container

        :returns: The version, or ``None`` if the index does not list any
            retrievable version of that series.
        """
        version = self._probe_newest(series, self.candidates(series), exclude)
        if version is None:
            self.logger.info(f'No retrievable upstream release found for series {series}')
        return version

    @memoized
    def _mirror_listing(self, directory):
        url = f'{self.policy.mirror_url}/{directory}/'
        try:
            html = self.transport.get_text(url)
        except TransportError as e:
            if self.policy.strict:
                raise ResolutionError(f'Could not list {url}: {e}', stage='resolve') from e
            else:
                self.logger.warning(f'Could not list {url}: {e}')
                return []

        ext = re.escape(self.policy.archive_ext)
        return re.findall(rf'href="linux-([^"]*)\.{ext}"', html)

    def mirror_candidates(self, series):
        """
        Versions of ``series`` listed in the mirror folder, oldest first.
        """
        prefix = f'{series}.'
        return sorted(
            set(
                version
                for version in self._mirror_listing(branch_dir(series))
                if is_stable_version(version) and (version == series or version.startswith(prefix))
            ),
            key=kernel_version_key,
        )

    def alternate(self, series, exclude=()):
        """
        Find a retrievable version of ``series`` other than the ones in
        ``exclude``.

        The release index is tried first, then the mirror folder listing
        which also contains the releases that dropped out of the index.
        """
        version = self.latest(series, exclude=exclude)
        if version is None:
            self.logger.info(f'Looking for an alternate version of series {series} on the mirror')
            version = self._probe_newest(series, self.mirror_candidates(series), exclude)
        return version

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
