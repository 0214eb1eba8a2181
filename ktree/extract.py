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
Extraction of kernel source archives.
"""

import lzma
import os
import sys
import tarfile
import zlib

from ktree.exception import ExtractionError
from ktree.outcome import Succeeded, Failed
from ktree.tree import fresh_dir, remove_tree
from ktree.utils import Loggable


def _tar_extractall(f, *args, **kwargs):
    # Avoid DeprecationWarning, see:
    # https://docs.python.org/3/library/tarfile.html#extraction-filters
    if sys.version_info[:2] >= (3, 12):
        kwargs['filter'] = 'tar'
    return f.extractall(*args, **kwargs)


class SourceExtractor(Loggable):
    """
    Unpack the source archive of a :class:`ktree.tree.BuildTree`.

    The archive is extracted in a staging folder next to the final one, which
    is only moved in place once extraction succeeded. An existing sources
    folder is therefore always complete.
    """

    def __init__(self, policy):
        self.policy = policy

    def extract(self, tree, series=None):
        """
        Extract the archive of ``tree`` unless already done.

        :type tree: ktree.tree.BuildTree
        :rtype: ktree.outcome.Outcome
        """
        logger = self.logger
        version = tree.version
        src = tree.source_dir

        if tree.extracted:
            if self.policy.force.extract:
                logger.info(f'Forcing extraction of {version}, removing {src}')
                remove_tree(src)
            else:
                logger.info(f'Reusing sources of {version}: {src}')
                return Succeeded(tree)

        logger.info(f'Extracting {tree.archive_path} to {src}')
        staging = os.path.join(tree.src_root, f'.{os.path.basename(src)}.extract')
        try:
            with fresh_dir(staging):
                try:
                    with tarfile.open(tree.archive_path) as f:
                        _tar_extractall(f, staging)
                except (tarfile.TarError, OSError, EOFError, lzma.LZMAError, zlib.error) as e:
                    raise ExtractionError(f'Could not extract {tree.archive_path}: {e}')

                extracted = os.path.join(staging, os.path.basename(src))
                if not os.path.isdir(extracted):
                    content = ', '.join(sorted(os.listdir(staging))) or '<empty>'
                    raise ExtractionError(f'Archive did not contain the expected top-level folder {os.path.basename(src)}, found: {content}')

                os.rename(extracted, src)
        except ExtractionError as e:
            return Failed(e.with_context(series=series, version=version, stage='extract', path=src))
        else:
            remove_tree(staging)

        return Succeeded(tree)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
