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
import copy
from unittest import TestCase

from ktree.conf import SimpleMultiSrcConf, KeyDesc, LevelKeyDesc, TopLevelKeyDesc, ConfigKeyError, TopLevelKeyError
from .utils import StorageTestCase

""" A test suite for the SimpleMultiSrcConf subclasses."""


INTERNAL_STRUCTURE = (
    KeyDesc('foo', 'foo help', [int]),
    KeyDesc('bar', 'bar help', [list]),
    KeyDesc('multitypes', 'multitypes help', [list, str, None]),
    LevelKeyDesc('sublevel', 'sublevel help', (
        KeyDesc('subkey', 'subkey help', [int]),
    )),
)

class TestConf(SimpleMultiSrcConf):
    STRUCTURE = TopLevelKeyDesc('ktree-self-test-test-conf', 'ktree self test',
        INTERNAL_STRUCTURE
    )

class TestConfWithDefault(SimpleMultiSrcConf):
    STRUCTURE = TopLevelKeyDesc('ktree-self-test-test-conf-with-default', 'ktree self test',
        INTERNAL_STRUCTURE
    )

    DEFAULT_SRC = {
        'bar': [0, 1, 2],
    }


class MultiSrcConfBase:
    """
    A test class that exercise various APIs of SimpleMultiSrcConf
    """
    def test_add_src(self):
        updated_conf = copy.deepcopy(self.conf)
        # Add the same values in a new source. This is guaranteed to be valid
        updated_conf.add_src('foo', self.conf)
        self.assertEqual(dict(updated_conf), dict(self.conf))

    def test_disallowed_key(self):
        with self.assertRaises(KeyError):
            self.conf['this-key-does-not-exists-and-is-not-allowed']

    def test_deepcopy(self):
        self.assertEqual(dict(self.conf), dict(copy.deepcopy(self.conf)))

    def test_add_src_one_key(self):
        conf = copy.deepcopy(self.conf)
        conf_src = {'foo': 22}

        conf.add_src('mysrc', conf_src)

        goal = dict(self.conf)
        goal.update(conf_src)
        self.assertEqual(dict(conf), goal)

        self.assertEqual(conf.resolve_src('foo'), 'mysrc')

    def test_disallowed_val(self):
        with self.assertRaises(TypeError):
            self.conf.add_src('bar', {'foo': ['a', 'b']})

    def test_bool_is_not_int(self):
        with self.assertRaises(TypeError):
            self.conf.add_src('bar', {'foo': True})

    def test_multitypes(self):
        conf = copy.deepcopy(self.conf)
        conf.add_src('mysrc', {'multitypes': 'a'})
        conf.add_src('mysrc', {'multitypes': [1, 2]})
        conf.add_src('mysrc', {'multitypes': None})
        self.assertIsNone(conf['multitypes'])

    def test_filter_none(self):
        conf = copy.deepcopy(self.conf)
        conf.add_src('mysrc', {'foo': 1})
        conf.add_src('cli', {'foo': None, 'sublevel': {'subkey': None}}, filter_none=True)
        self.assertEqual(conf['foo'], 1)
        self.assertEqual(conf.resolve_src('foo'), 'mysrc')
        self.assertNotIn('subkey', conf['sublevel'])

    def test_did_you_mean(self):
        with self.assertRaises(ConfigKeyError) as ctx:
            self.conf.add_src('mysrc', {'fooo': 1})
        self.assertIn('maybe you meant "foo"', str(ctx.exception))


class TestTestConf(StorageTestCase, MultiSrcConfBase):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.conf = TestConf()

    def test_unset_key(self):
        with self.assertRaises(KeyError):
            self.conf['foo']

    def test_src_priority(self):
        conf = copy.deepcopy(self.conf)
        conf.add_src('mysrc', {'bar': [6, 7]})
        conf.add_src('mysrc2', {'bar': [99, 100]})
        self.assertEqual(conf['bar'], [99, 100])

        conf.add_src('fallback', {'bar': [1]}, fallback=True)
        self.assertEqual(conf['bar'], [99, 100])

        self.assertEqual(conf.resolve_src('bar'), 'mysrc2')
        self.assertEqual(conf.get_key('bar', src='fallback'), [1])

    def test_nested(self):
        conf = copy.deepcopy(self.conf)
        conf.add_src('mysrc', {'sublevel': {'subkey': 42}})
        self.assertEqual(conf['sublevel']['subkey'], 42)
        self.assertEqual(conf['sublevel'].resolve_src('subkey'), 'mysrc')
        self.assertEqual(conf.to_map(), {'sublevel': {'subkey': 42}})

    def test_yaml_map(self):
        path = os.path.join(self.res_dir, 'conf.yml')
        with open(path, 'w') as f:
            f.write('ktree-self-test-test-conf:\n    foo: 3\n    sublevel:\n        subkey: 4\n')

        conf = TestConf.from_yaml_map(path)
        self.assertEqual(conf['foo'], 3)
        self.assertEqual(conf['sublevel']['subkey'], 4)
        self.assertEqual(conf.resolve_src('foo'), path)

        # Round trip through the YAML representation
        path2 = os.path.join(self.res_dir, 'conf2.yml')
        with open(path2, 'w') as f:
            f.write(conf.to_yaml_map_str())
        self.assertEqual(TestConf.from_yaml_map(path2).to_map(), conf.to_map())

    def test_yaml_map_toplevel(self):
        path = os.path.join(self.res_dir, 'conf.yml')
        with open(path, 'w') as f:
            f.write('another-conf:\n    foo: 3\n')

        with self.assertRaises(TopLevelKeyError):
            TestConf.from_yaml_map(path)


class TestTestConfWithDefault(StorageTestCase, MultiSrcConfBase):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.conf = TestConfWithDefault()

    def test_default_src(self):
        ref = dict(TestConfWithDefault.DEFAULT_SRC)
        # A freshly built object still has all the level keys, even if it has
        # no leaves
        ref['sublevel'] = {}
        self.assertEqual(dict(self.conf), ref)

    def test_add_src_one_key_fallback(self):
        conf = copy.deepcopy(self.conf)
        # Since there is a default value for this key, it should not impact the
        # result
        conf_src = {'bar': [1,2]}

        conf.add_src('bar', conf_src, fallback=True)

        self.assertEqual(dict(conf), dict(self.conf))
        self.assertEqual(conf.resolve_src('bar'), 'default')


class TestKeyDesc(TestCase):
    def test_qualname(self):
        structure = TopLevelKeyDesc('top', 'top help', (
            LevelKeyDesc('level', 'level help', (
                KeyDesc('key', 'key help', [int]),
            )),
        ))
        self.assertEqual(structure['level']['key'].qualname, 'top/level/key')

    def test_invalid_name(self):
        with self.assertRaises(ValueError):
            KeyDesc('invalid name', 'help', [int])

    def test_invalid_type_help(self):
        with self.assertRaises(TypeError) as ctx:
            TestConf.STRUCTURE['sublevel']['subkey'].validate_val('a')
        self.assertIn('subkey help', str(ctx.exception))

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
