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

import contextlib
import io
import logging
import os

from ktree.exception import UsageError
from ktree.policy import Policy, Architecture
from ktree._cli_tools.ktree_prepare import make_parser, make_conf, _main

from .utils import StorageTestCase


class TestCli(StorageTestCase):
    def setUp(self):
        super().setUp()
        self.logger = logging.getLogger('ktree-prepare')
        self.conf_path = os.path.join(self.res_dir, 'ktree.yml')
        with open(self.conf_path, 'w') as f:
            f.write('\n'.join([
                'ktree-conf:',
                '    arch: riscv',
                '    jobs: 3',
                '    strict: true',
                '    series: ["5.15", "6.6"]',
                '    force:',
                '        extract: true',
                '',
            ]))

    def parse(self, *argv):
        return make_parser().parse_args(list(argv))

    def test_series(self):
        args = self.parse('-s', '5.15,6.6', '--series', '6.1', '6.12')
        policy = Policy.from_conf(make_conf(args, env={}))
        self.assertEqual(policy.series, ('5.15', '6.6', '6.1', '6.12'))

    def test_priority(self):
        args = self.parse('--conf', self.conf_path, '--jobs', '5')
        policy = Policy.from_conf(make_conf(args, env={'ARCH': 'arm', 'JOBS': '4'}))
        self.assertIs(policy.arch, Architecture.ARM)
        self.assertEqual(policy.jobs, 5)
        self.assertEqual(policy.series, ('5.15', '6.6'))
        self.assertTrue(policy.strict)
        self.assertTrue(policy.force.extract)
        self.assertFalse(policy.force.download)

    def test_lenient(self):
        args = self.parse('--conf', self.conf_path, '--lenient', '--force-prepare')
        policy = Policy.from_conf(make_conf(args, env={}))
        self.assertFalse(policy.strict)
        self.assertTrue(policy.force.extract)
        self.assertTrue(policy.force.prepare)

    def test_defaults(self):
        policy = Policy.from_conf(make_conf(self.parse(), env={}))
        self.assertIs(policy.arch, Architecture.ARM64)
        self.assertIsNone(policy.catalog)

    def test_print_conf(self):
        args = self.parse('--conf', self.conf_path, '--print-conf')
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            self.assertEqual(_main(args, self.logger, env={}), 0)

        text = out.getvalue()
        self.assertTrue(text.startswith('ktree-conf:'))
        self.assertIn('jobs: 3', text)

    def test_invalid_arch(self):
        args = self.parse('--arch', 'sparc', '--print-table')
        with self.assertRaises(UsageError):
            _main(args, self.logger, env={})

    def test_missing_catalog(self):
        args = self.parse('--releases-json', os.path.join(self.res_dir, 'releases.json'), '--dry-run')
        with self.assertRaises(UsageError):
            _main(args, self.logger, env={})

    def test_invalid_conf(self):
        with open(self.conf_path, 'w') as f:
            f.write('ktree-conf:\n    architecture: arm64\n')
        args = self.parse('--conf', self.conf_path, '--print-conf')
        with self.assertRaises(UsageError):
            _main(args, self.logger, env={})

    def test_missing_conf(self):
        args = self.parse('--conf', os.path.join(self.res_dir, 'nope.yml'), '--print-conf')
        with self.assertRaises(UsageError):
            _main(args, self.logger, env={})

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
