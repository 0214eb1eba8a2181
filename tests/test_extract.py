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

import os

from ktree.exception import ExtractionError
from ktree.extract import SourceExtractor
from ktree.outcome import Succeeded, Failed
from ktree.tree import BuildTree

from .utils import StorageTestCase, make_policy, make_archive


class TestSourceExtractor(StorageTestCase):
    def make_tree(self, conf=None, version='5.15.166', **kwargs):
        policy = make_policy(self.res_dir, conf)
        tree = BuildTree.from_policy(policy, version)
        os.makedirs(tree.dl_dir, exist_ok=True)
        with open(tree.archive_path, 'wb') as f:
            f.write(make_archive(version, **kwargs))
        return (SourceExtractor(policy), tree)

    def test_extract(self):
        extractor, tree = self.make_tree()
        outcome = extractor.extract(tree, '5.15')
        self.assertIsInstance(outcome, Succeeded)
        self.assertIs(outcome.value, tree)
        self.assertTrue(tree.extracted)
        self.assertTrue(os.path.isfile(os.path.join(tree.source_dir, 'include', 'linux', 'module.h')))
        # No staging folder left behind
        self.assertEqual(os.listdir(tree.src_root), [os.path.basename(tree.source_dir)])

    def test_idempotent(self):
        extractor, tree = self.make_tree()
        extractor.extract(tree)
        marker = os.path.join(tree.source_dir, 'marker')
        with open(marker, 'w') as f:
            f.write('local change')

        self.assertIsInstance(extractor.extract(tree), Succeeded)
        self.assertTrue(os.path.exists(marker))

    def test_force(self):
        extractor, tree = self.make_tree()
        extractor.extract(tree)
        marker = os.path.join(tree.source_dir, 'marker')
        with open(marker, 'w') as f:
            f.write('local change')

        extractor, tree = self.make_tree({'force': {'extract': True}})
        self.assertIsInstance(extractor.extract(tree), Succeeded)
        self.assertFalse(os.path.exists(marker))
        self.assertTrue(tree.extracted)

    def test_wrong_top_dir(self):
        extractor, tree = self.make_tree(top='linux-5.15.165')
        outcome = extractor.extract(tree, '5.15')
        self.assertIsInstance(outcome, Failed)
        self.assertIsInstance(outcome.error, ExtractionError)
        self.assertEqual(outcome.error.stage, 'extract')
        self.assertFalse(tree.extracted)
        self.assertEqual(os.listdir(tree.src_root), [])

    def test_corrupt_archive(self):
        extractor, tree = self.make_tree()
        with open(tree.archive_path, 'wb') as f:
            f.write(b'garbage')

        outcome = extractor.extract(tree)
        self.assertIsInstance(outcome, Failed)
        self.assertFalse(tree.extracted)
        self.assertEqual(os.listdir(tree.src_root), [])

    def test_trailing_zero(self):
        extractor, tree = self.make_tree(version='6.6.0', top='linux-6.6')
        self.assertTrue(tree.source_dir.endswith(os.path.join('src', 'linux-6.6')))
        self.assertIsInstance(extractor.extract(tree), Succeeded)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
