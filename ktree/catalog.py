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
Local release lock document, mapping kernel series to pinned versions.

Two formats are understood, either as JSON or YAML:

* The lock format::

    {"kernels": [{"series": "4.19", "version": "4.19.325"}, ...]}

* The kernel.org ``releases.json`` format, where the series is derived from
  the version::

    {"releases": [{"version": "6.12.14", ...}, ...]}
"""

import json
import os
from collections.abc import Mapping

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ktree.exception import UsageError, ResolutionError
from ktree.utils import Loggable, is_stable_version, kernel_series, kernel_version_key


class ReleaseCatalog(Loggable):
    """
    Pinned versions of kernel series.

    :param entries: Iterable of ``(series, version)`` pairs. A series can
        appear multiple times, in which case the highest version wins.
    :type entries: collections.abc.Iterable

    :param path: File the entries were loaded from, used in error messages.
    :type path: str or None
    """

    def __init__(self, entries, path=None):
        self.path = path
        self._versions = {}
        for series, version in entries:
            self._versions.setdefault(series, set()).add(version)

    @classmethod
    def from_path(cls, path):
        """
        Load a release document.

        :raises UsageError: If the file cannot be read or has an unexpected
            structure.
        """
        path = str(path)
        if not os.path.isfile(path):
            raise UsageError(f'Release catalog does not exist: {path}', path=path)

        try:
            with open(path) as f:
                if path.endswith('.json'):
                    data = json.load(f)
                else:
                    data = YAML(typ='safe').load(f)
        except (OSError, ValueError, YAMLError) as e:
            raise UsageError(f'Could not read release catalog: {e}', path=path) from e

        entries = cls._parse(data, path)
        catalog = cls(entries, path=path)
        cls.get_logger().debug(f'Loaded {len(entries)} entries from release catalog {path}')
        return catalog

    @classmethod
    def from_map(cls, data, path=None):
        """
        Build a catalog from an already parsed document.
        """
        return cls(cls._parse(data, path), path=path)

    @staticmethod
    def _parse(data, path):
        def invalid(msg):
            return UsageError(f'Invalid release catalog: {msg}', path=path)

        def check_version(version):
            if not isinstance(version, str):
                raise invalid(f'versions must be strings (quote them in YAML), got {version!r}')
            elif not is_stable_version(version):
                raise invalid(f'"{version}" is not a kernel version')
            else:
                return version

        if not isinstance(data, Mapping):
            raise invalid('top-level object must be a mapping')

        if 'kernels' in data:
            entries = []
            for entry in data['kernels'] or []:
                try:
                    series = entry['series']
                    version = entry['version']
                except (KeyError, TypeError):
                    # pylint: disable=raise-missing-from
                    raise invalid(f'entries of "kernels" need a "series" and a "version": {entry!r}')

                if not isinstance(series, str):
                    raise invalid(f'series must be strings (quote them in YAML), got {series!r}')
                version = check_version(version)
                if kernel_series(version) != series:
                    raise invalid(f'version {version} does not belong to series {series}')
                entries.append((series, version))
            return entries

        elif 'releases' in data:
            entries = []
            for entry in data['releases'] or []:
                try:
                    version = entry['version']
                except (KeyError, TypeError):
                    # pylint: disable=raise-missing-from
                    raise invalid(f'entries of "releases" need a "version": {entry!r}')

                # releases.json lists release candidates and linux-next tags
                # as well, they are not pinnable.
                if isinstance(version, str) and is_stable_version(version):
                    entries.append((kernel_series(version), version))
            return entries

        else:
            raise invalid('expected a "kernels" or "releases" top-level key')

    @property
    def series(self):
        """
        Sorted list of series present in the catalog.
        """
        return sorted(self._versions, key=kernel_version_key)

    def get(self, series):
        """
        Pinned version of ``series``, or ``None`` if it is not in the catalog.
        """
        try:
            versions = self._versions[series]
        except KeyError:
            return None
        else:
            return max(versions, key=kernel_version_key)

    def resolve(self, series):
        """
        Same as :meth:`get` but raises if the series is not in the catalog.

        :raises ResolutionError: If the series is absent.
        """
        version = self.get(series)
        if version is None:
            where = f' in {self.path}' if self.path else ''
            raise ResolutionError(f'No release for series {series}{where}', series=series, stage='resolve')
        return version

    def __contains__(self, series):
        return series in self._versions

    def __len__(self):
        return len(self._versions)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
