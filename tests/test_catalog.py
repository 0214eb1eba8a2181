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

import json
import os

from ktree.catalog import ReleaseCatalog
from ktree.exception import UsageError, ResolutionError

from .utils import StorageTestCase


class TestReleaseCatalog(StorageTestCase):
    def write(self, name, content):
        path = os.path.join(self.res_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_kernels_format(self):
        path = self.write('releases.json', json.dumps({
            'kernels': [
                {'series': '4.19', 'version': '4.19.325'},
                {'series': '6.6', 'version': '6.6.9'},
                {'series': '6.6', 'version': '6.6.10'},
            ]
        }))
        catalog = ReleaseCatalog.from_path(path)
        self.assertEqual(catalog.get('4.19'), '4.19.325')
        # Numeric comparison, not lexicographic
        self.assertEqual(catalog.get('6.6'), '6.6.10')
        self.assertEqual(catalog.series, ['4.19', '6.6'])
        self.assertIn('6.6', catalog)
        self.assertNotIn('5.4', catalog)
        self.assertIsNone(catalog.get('5.4'))
        self.assertEqual(len(catalog), 2)

    def test_releases_format(self):
        catalog = ReleaseCatalog.from_map({
            'releases': [
                {'moniker': 'mainline', 'version': '6.19-rc3'},
                {'moniker': 'stable', 'version': '6.18.2'},
                {'moniker': 'longterm', 'version': '6.12.63'},
                {'moniker': 'linux-next', 'version': 'next-20251230'},
            ]
        })
        self.assertEqual(catalog.series, ['6.12', '6.18'])
        self.assertEqual(catalog.resolve('6.18'), '6.18.2')

    def test_yaml(self):
        path = self.write('releases.yml', '\n'.join([
            'kernels:',
            '  - series: "5.10"',
            '    version: "5.10.245"',
            '',
        ]))
        catalog = ReleaseCatalog.from_path(path)
        self.assertEqual(catalog.resolve('5.10'), '5.10.245')

    def test_yaml_float(self):
        # 5.10 is read as the float 5.1 by YAML
        path = self.write('releases.yml', '\n'.join([
            'kernels:',
            '  - series: 5.10',
            '    version: "5.10.245"',
            '',
        ]))
        with self.assertRaises(UsageError):
            ReleaseCatalog.from_path(path)

    def test_missing_file(self):
        with self.assertRaises(UsageError):
            ReleaseCatalog.from_path(os.path.join(self.res_dir, 'nope.json'))

    def test_invalid(self):
        for data in (
            [],
            {'foo': []},
            {'kernels': [{'series': '5.15'}]},
            {'kernels': [{'series': '5.15', 'version': '6.1.2'}]},
            {'kernels': [{'series': '5.15', 'version': 'v5.15.1'}]},
        ):
            with self.subTest(data=data):
                with self.assertRaises(UsageError):
                    ReleaseCatalog.from_map(data)

    def test_resolve_missing(self):
        catalog = ReleaseCatalog([('5.15', '5.15.166')], path='/etc/releases.json')
        with self.assertRaises(ResolutionError) as cm:
            catalog.resolve('6.1')

        exc = cm.exception
        self.assertEqual(exc.series, '6.1')
        self.assertIn('/etc/releases.json', str(exc))

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
