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
import stat

from ktree.exception import ConsistencyError, PipelineError
from ktree.extract import SourceExtractor
from ktree.outcome import Succeeded, Failed
from ktree.prepare import PreparationPipeline, FULL_BUILD_ARTIFACTS
from ktree.toolchain import ToolchainFingerprint, read_fingerprint
from ktree.tree import BuildTree, is_sealed

from .utils import StorageTestCase, FakeRunner, make_policy, make_archive


class PrepareTestCase(StorageTestCase):
    VERSION = '5.15.166'

    def setUp(self):
        super().setUp()
        self.config_dir = os.path.join(self.res_dir, 'configs')
        os.makedirs(self.config_dir)

    def make_pipeline(self, conf=None, **kwargs):
        conf = dict(conf or {})
        conf.setdefault('config-dir', self.config_dir)
        self.policy = make_policy(os.path.join(self.res_dir, 'kernels'), conf)
        self.runner = FakeRunner(**kwargs)
        self.fingerprint = ToolchainFingerprint.probe(self.policy, self.runner)
        self.runner.calls.clear()
        return PreparationPipeline(self.policy, self.runner)

    def make_tree(self, version=None):
        version = version or self.VERSION
        tree = BuildTree.from_policy(self.policy, version)
        if not os.path.exists(tree.archive_path):
            os.makedirs(tree.dl_dir, exist_ok=True)
            with open(tree.archive_path, 'wb') as f:
                f.write(make_archive(version))
        SourceExtractor(self.policy).extract(tree)
        return tree

    def write_config(self, name, content):
        with open(os.path.join(self.config_dir, name), 'w') as f:
            f.write(content)


class TestConfigImport(PrepareTestCase):
    def test_candidates(self):
        pipeline = self.make_pipeline()
        tree = BuildTree.from_policy(self.policy, '5.15.166')
        self.assertEqual(pipeline.config_candidates(tree), [
            'config-arm64-5.15.166',
            'config-arm64-5.15',
            'config-5.15.166',
            'config-5.15',
        ])

    def test_find_config(self):
        pipeline = self.make_pipeline()
        tree = BuildTree.from_policy(self.policy, '5.15.166')
        self.assertIsNone(pipeline.find_config(tree))

        self.write_config('config-5.15', 'CONFIG_ARM64=y\n')
        self.assertEqual(pipeline.find_config(tree), os.path.join(self.config_dir, 'config-5.15'))

        self.write_config('config-arm64-5.15', 'CONFIG_ARM64=y\n')
        self.assertEqual(pipeline.find_config(tree), os.path.join(self.config_dir, 'config-arm64-5.15'))

        # Only exact versions are matched
        other = BuildTree.from_policy(self.policy, '5.15.167')
        self.write_config('config-arm64-5.15.166', 'CONFIG_ARM64=y\n')
        self.assertEqual(pipeline.find_config(tree), os.path.join(self.config_dir, 'config-arm64-5.15.166'))
        self.assertEqual(pipeline.find_config(other), os.path.join(self.config_dir, 'config-arm64-5.15'))

    def test_import(self):
        pipeline = self.make_pipeline()
        self.write_config('config-5.15', '# Target config\nCONFIG_ARM64=y\nCONFIG_MODVERSIONS=y\n')
        tree = self.make_tree()

        outcome = pipeline.prepare(tree, self.fingerprint, '5.15')
        self.assertIsInstance(outcome, Succeeded)
        self.assertEqual(self.runner.make_targets, ['olddefconfig', 'modules_prepare'])
        with open(tree.config_path) as f:
            self.assertIn('CONFIG_MODVERSIONS=y', f.read())

    def test_arch_mismatch(self):
        pipeline = self.make_pipeline()
        self.write_config('config-5.15', 'CONFIG_X86_64=y\n# CONFIG_ARM64 is not set\n')
        tree = self.make_tree()

        outcome = pipeline.prepare(tree, self.fingerprint, '5.15')
        self.assertIsInstance(outcome, Failed)
        self.assertIsInstance(outcome.error, ConsistencyError)
        self.assertIn('CONFIG_ARM64', str(outcome.error))
        self.assertEqual(self.runner.make_calls, [])
        self.assertFalse(tree.prepared)


class TestPreparationPipeline(PrepareTestCase):
    def test_defconfig(self):
        pipeline = self.make_pipeline()
        tree = self.make_tree()

        outcome = pipeline.prepare(tree, self.fingerprint, '5.15')
        self.assertIsInstance(outcome, Succeeded)
        self.assertTrue(tree.prepared)
        self.assertEqual(self.runner.make_targets, ['defconfig', 'olddefconfig', 'modules_prepare'])

        cmd = self.runner.make_calls[-1]
        self.assertEqual(cmd[:3], ['make', '-C', tree.source_dir])
        self.assertIn(f'O={tree.build_dir}', cmd)
        self.assertIn('ARCH=arm64', cmd)
        self.assertIn('CROSS_COMPILE=aarch64-linux-gnu-', cmd)
        self.assertIn('-j2', cmd)

    def test_result(self):
        pipeline = self.make_pipeline()
        tree = self.make_tree()
        pipeline.prepare(tree, self.fingerprint)

        self.assertEqual(read_fingerprint(tree), self.fingerprint)
        self.assertTrue(os.path.islink(tree.source_link))
        self.assertEqual(os.path.realpath(tree.source_link), os.path.realpath(tree.source_dir))

        self.assertTrue(is_sealed(tree.source_dir))
        self.assertTrue(is_sealed(tree.build_dir))
        config_mode = stat.S_IMODE(os.stat(tree.config_path).st_mode)
        self.assertEqual(config_mode & 0o222, 0)
        self.assertEqual(config_mode & 0o444, 0o444)
        # The archive is not sealed
        self.assertFalse(is_sealed(tree.dl_dir))

    def test_purge(self):
        pipeline = self.make_pipeline(leftovers=True)
        tree = self.make_tree()
        self.assertIsInstance(pipeline.prepare(tree, self.fingerprint), Succeeded)

        for folder in (tree.build_dir, tree.source_dir):
            for name in FULL_BUILD_ARTIFACTS:
                self.assertFalse(os.path.lexists(os.path.join(folder, name)))

    def test_make_failure(self):
        pipeline = self.make_pipeline(fail_target='modules_prepare')
        tree = self.make_tree()

        outcome = pipeline.prepare(tree, self.fingerprint, '5.15')
        self.assertIsInstance(outcome, Failed)
        error = outcome.error
        self.assertIsInstance(error, PipelineError)
        self.assertEqual(error.returncode, 2)
        self.assertEqual(error.stage, 'prepare')
        self.assertEqual(error.series, '5.15')
        self.assertIn('Error 2', error.output)
        self.assertFalse(tree.prepared)
        self.assertIsNone(read_fingerprint(tree))

    def test_prepare_again(self):
        pipeline = self.make_pipeline()
        tree = self.make_tree()
        pipeline.prepare(tree, self.fingerprint)
        self.runner.calls.clear()

        # A sealed tree can be prepared again, keeping the existing config
        self.assertIsInstance(pipeline.prepare(tree, self.fingerprint), Succeeded)
        self.assertEqual(self.runner.make_targets, ['olddefconfig', 'modules_prepare'])
        self.assertTrue(is_sealed(tree.build_dir))

    def test_force(self):
        pipeline = self.make_pipeline()
        tree = self.make_tree()
        pipeline.prepare(tree, self.fingerprint)

        pipeline = self.make_pipeline({'force': {'prepare': True}})
        self.assertIsInstance(pipeline.prepare(tree, self.fingerprint), Succeeded)
        self.assertEqual(self.runner.make_targets, ['defconfig', 'olddefconfig', 'modules_prepare'])

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
