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
Layered configuration management.

Configuration classes describe the keys they accept using
:class:`KeyDesc` and :class:`LevelKeyDesc`. Values can then be provided by
multiple named sources (defaults, a YAML file, the environment, the command
line), the highest priority source serving each key.
"""

import abc
import copy
import difflib
import io
import logging
import pprint
import re
from collections.abc import Mapping

from ruamel.yaml import YAML

from ktree.utils import Loggable, get_nested_key


class TopLevelKeyError(ValueError):
    """
    Exception raised when no top-level key matches the expected one in the
    given configuration file.
    """
    def __init__(self, key):
        self.key = key

    def __str__(self):
        return f'Key "{self.key}" needs to appear at the top level'


class ConfigKeyError(KeyError):
    """
    Exception raised when a key is not found in the config instance.
    """
    def __init__(self, msg, key=None, src=None):
        super().__init__(msg)
        self.key = key
        self.src = src
        self.msg = msg

    def __str__(self):
        return self.msg


class KeyDescBase(abc.ABC):
    """
    Base class for configuration files key descriptor.

    This allows defining the structure of the configuration file, in order
    to sanitize user input.
    """
    _VALID_NAME_PATTERN = r'^[a-zA-Z0-9-]+$'

    def __init__(self, name, help):
        # pylint: disable=redefined-builtin

        self._check_name(name)
        self.name = name
        self.help = help
        self.parent = None

    @classmethod
    def _check_name(cls, name):
        if not re.match(cls._VALID_NAME_PATTERN, name):
            raise ValueError(f'Invalid key name "{name}". Key names must match: {cls._VALID_NAME_PATTERN}')

    @property
    def qualname(self):
        """
        "Qualified" name of the key.

        This is a slash-separated path in the config file from the root to that
        key:
        <parent qualname>/<name>
        """
        return '/'.join(self.path)

    @property
    def path(self):
        """
        Path in the config file from the root to that key.
        """
        curr = [self.name]
        if self.parent is None:
            return curr
        return self.parent.path + curr

    @abc.abstractmethod
    def validate_val(self, val):
        """
        Validate a value to be used for that key.

        :raises TypeError: When the value has the wrong type
        """


class KeyDesc(KeyDescBase):
    """
    Key descriptor describing a leaf key in the configuration.

    :param name: Name of the key

    :param help: Short help message describing the use of that key

    :param classinfo: sequence of allowed types for that key. As a special
        case, `None` is allowed in that sequence of types, even though it is
        not strictly speaking a type.
    :type classinfo: collections.abc.Sequence
    """

    def __init__(self, name, help, classinfo):
        # pylint: disable=redefined-builtin
        super().__init__(name=name, help=help)
        # isinstance's style classinfo
        self.classinfo = tuple(classinfo)

    def validate_val(self, val):
        """
        Check that the value is an instance of one of the type specified in the
        ``self.classinfo``.

        If the value is not an instance of any of these types, then a
        :exc:`TypeError` is raised corresponding to the first type in the
        tuple, which is assumed to be the main one.
        """
        def is_instance(val, cls):
            if cls is None:
                return val is None
            # bool is a subclass of int, but we never want True to be accepted
            # as a number of jobs
            elif cls is int and isinstance(val, bool):
                return False
            else:
                return isinstance(val, cls)

        if not any(is_instance(val, cls) for cls in self.classinfo):
            classinfo = ' or '.join(
                'None' if cls is None else cls.__qualname__
                for cls in self.classinfo
            )
            raise TypeError(f'Key "{self.qualname}" is an instance of {type(val).__qualname__}, but should be instance of {classinfo}. Help: {self.help}')

    @staticmethod
    def pretty_format(v):
        """
        Format the value for pretty printing.
        """
        return str(v)


class LevelKeyDesc(KeyDescBase, Mapping):
    """
    Key descriptor defining a hierarchical level in the configuration.

    :param name: name of the key in the configuration

    :param help: Short help describing the use of the keys inside that level

    :param children: collections.abc.Sequence of :class:`KeyDescBase` defining
        the allowed keys under that level
    :type children: collections.abc.Sequence

    Children keys will get this key assigned as a parent when passed to the
    constructor.
    """

    def __init__(self, name, help, children):
        # pylint: disable=redefined-builtin
        super().__init__(name=name, help=help)
        self.children = children

        # Fixup parent for easy nested declaration
        for key_desc in self.children:
            key_desc.parent = self

    @property
    def _key_map(self):
        return {
            key_desc.name: key_desc
            for key_desc in self.children
        }

    def __iter__(self):
        return iter(self._key_map)

    def __len__(self):
        return len(self._key_map)

    def __getitem__(self, key):
        self.check_allowed_key(key)
        return self._key_map[key]

    def check_allowed_key(self, key):
        """
        Checks that a given key is allowed under that levels
        """
        if key not in self._key_map:
            try:
                closest_match = difflib.get_close_matches(
                    word=str(key),
                    possibilities=self._key_map.keys(),
                    n=1,
                )[0]
            except IndexError:
                closest_match = ''
            else:
                closest_match = f', maybe you meant "{closest_match}" ?'

            parent = self.qualname
            raise ConfigKeyError(
                f'Key "{key}" is not allowed in {parent}{closest_match}',
                key=key,
            )

    def validate_val(self, conf):
        """Validate a mapping to be used as a configuration source"""
        if not isinstance(conf, Mapping):
            raise TypeError(f'Configuration of {self.qualname} must be a Mapping')
        for key, val in conf.items():
            self[key].validate_val(val)


class TopLevelKeyDesc(LevelKeyDesc):
    """
    Top-level key descriptor, which defines the top-level key to use in the
    configuration files.

    This top-level key is omitted in all interfaces except for the
    configuration file, since it only reflects the configuration class
    """


class SimpleMultiSrcConf(Loggable, Mapping):
    """
    Base class providing layered configuration management.

    :param conf: Mapping to initialize the configuration with.
    :type conf: collections.abc.Mapping or None

    :param src: Name of the source added when passing ``conf``
    :type src: str

    :param add_default_src: Add :attr:`DEFAULT_SRC` as the lowest priority
        source.
    :type add_default_src: bool

    The class inherits from :class:`collections.abc.Mapping`, which means it
    can be used like a readonly dict. Writing to it is handled by
    :meth:`add_src` that allows naming the source of values that are stored.

    Each leaf key can hold different values coming from different named
    sources. The last added source will have the highest priority and will be
    served when looking up that key, unless it was added as a fallback.
    """

    @property
    @abc.abstractmethod
    def STRUCTURE(self):
        """
        Class attribute defining the structure of the configuration file, as a
        instance of :class:`TopLevelKeyDesc`
        """

    DEFAULT_SRC = {}
    """
    Source added automatically under the name ``default`` when instances are
    built.
    """

    def __init__(self, conf=None, src='user', add_default_src=True):
        self._nested_init(
            key_desc_path=[],
            src_prio=[],
            parent=None,
        )
        self.add_src(src, conf)

        # Give some preset in the the lowest prio source
        if self.DEFAULT_SRC and add_default_src:
            self.add_src('default', self.DEFAULT_SRC, fallback=True)

    def _nested_init(self, key_desc_path, src_prio, parent):
        self._key_desc_path = key_desc_path
        # List of sources in priority order (1st item is highest prio)
        self._src_prio = src_prio
        # Map of keys to map of source to values
        self._key_map = {}
        # Key/sublevel map of nested configuration objects
        self._sublevel_map = {}
        self._parent = parent

        # Build the tree of objects for nested configuration mappings
        for key, key_desc in self._structure.items():
            if isinstance(key_desc, LevelKeyDesc):
                self._sublevel_map[key] = self._nested_new(
                    key_desc_path=key_desc.path,
                    # Sublevels share the priority list of the root, so that
                    # adding a source is seen consistently at all levels
                    src_prio=self._src_prio,
                    parent=self,
                )

    @property
    def _structure(self):
        # The first level in the path is the top-level key, which must be
        # skipped
        path = self._key_desc_path[1:]
        return get_nested_key(self.STRUCTURE, path)

    @classmethod
    def _nested_new(cls, *args, **kwargs):
        new = cls.__new__(cls)
        new._nested_init(*args, **kwargs)
        return new

    def __deepcopy__(self, memo):
        cls = type(self)
        new = cls.__new__(cls)
        new._nested_init(
            key_desc_path=self._key_desc_path,
            src_prio=list(self._src_prio),
            parent=None,
        )
        new._copy_values(self)
        return new

    def _copy_values(self, other):
        self._key_map = copy.deepcopy(other._key_map)
        for key, sublevel in self._sublevel_map.items():
            sublevel._copy_values(other._sublevel_map[key])

    @classmethod
    def from_map(cls, mapping, add_default_src=True):
        """
        Create a new configuration instance from a plain mapping.
        """
        return cls(mapping, add_default_src=add_default_src)

    def to_map(self):
        """
        Export the effective configuration as a nested :class:`dict`.
        """
        return self._get_effective_map()

    @classmethod
    def from_yaml_map(cls, path, add_default_src=True):
        """
        Load the configuration from a YAML file. The content is hosted under
        the top-level key specified in ``STRUCTURE``.

        :param path: Path to the YAML file
        :type path: str or pathlib.Path
        """
        yaml = YAML(typ='safe')
        with open(path) as f:
            mapping = yaml.load(f)

        if not isinstance(mapping, Mapping):
            raise ValueError(f'Top-level object is expected to be a mapping but got: {mapping.__class__.__qualname__}')

        toplevel = cls.STRUCTURE.name
        try:
            data = mapping[toplevel]
        except KeyError:
            # pylint: disable=raise-missing-from
            raise TopLevelKeyError(toplevel)

        conf = cls(add_default_src=add_default_src)
        conf.add_src(str(path), data or {})
        return conf

    def to_yaml_map_str(self):
        """
        Return the effective configuration as a YAML document, with the
        top-level key.
        """
        yaml = YAML()
        yaml.default_flow_style = False
        content = io.StringIO()
        yaml.dump({self.STRUCTURE.name: self.to_map()}, content)
        return content.getvalue()

    def add_src(self, src, conf, filter_none=False, fallback=False):
        """
        Add a source of configuration.

        :param src: Name of the source to add
        :type src: str

        :param conf: Nested mapping of key/values to overlay
        :type conf: collections.abc.Mapping

        :param filter_none: Ignores the keys that have a ``None`` value. That
            simplifies the creation of the mapping, by having keys always
            present. That should not be used if ``None`` value for a key is
            expected, as opposite to not having that key set at all.
        :type filter_none: bool

        :param fallback: If True, the source will be added as a fallback, which
            means at the end of the priority list. By default, the source will
            have the highest priority.
        :type fallback: bool
        """
        logger = self.logger
        if logger.isEnabledFor(logging.DEBUG):
            formatted = pprint.pformat(conf, indent=4, compact=True)
            logger.debug(f'Source "{src}" set:\n{formatted}')

        self._add_src(src, conf, filter_none=filter_none)

        if src not in self._src_prio:
            if fallback:
                self._src_prio.append(src)
            else:
                self._src_prio.insert(0, src)

        return self

    def _add_src(self, src, conf, filter_none=False):
        conf = {} if conf is None else conf

        if not isinstance(conf, Mapping):
            raise TypeError(f'Configuration of {self._structure.qualname} must be a Mapping')

        # Filter-out None values, so they won't override actual data from
        # another source
        if filter_none:
            conf = {
                k: v for k, v in conf.items()
                if v is not None
            }

        # only validate at that level, since sublevel will take care of
        # filtering then validating their own level
        self._structure.validate_val({
            k: v for k, v in conf.items()
            if not isinstance(self._structure[k], LevelKeyDesc)
        })

        for key, val in conf.items():
            key_desc = self._structure[key]
            # Dispatch the nested mapping to the right sublevel
            if isinstance(key_desc, LevelKeyDesc):
                self._sublevel_map[key]._add_src(src, val, filter_none=filter_none)
            # Otherwise that is a leaf value that we store at that level
            else:
                self._key_map.setdefault(key, {})[src] = val

    def _get_effective_map(self):
        """
        Return the effective mapping by taking values from the highest
        priority source for each key, recursively.
        """
        mapping = {
            key: self.get_key(key, quiet=True)
            for key in self._key_map.keys()
        }
        mapping.update(
            (key, sublevel._get_effective_map())
            for key, sublevel in self._sublevel_map.items()
        )
        return mapping

    def _resolve_prio(self, key):
        if key not in self._key_map:
            return []
        else:
            # Only include a source if it holds an actual value for that key
            return [
                src for src in self._src_prio
                if src in self._key_map[key]
            ]

    def resolve_src(self, key):
        """
        Get the source name that will be used to serve the value of ``key``.
        """
        key_desc = self._structure[key]

        if isinstance(key_desc, LevelKeyDesc):
            raise ValueError(f'Key "{key_desc.qualname}" is a nested configuration level, it does not have a source on its own.')

        src_prio = self._resolve_prio(key)
        if src_prio:
            return src_prio[0]
        else:
            raise ConfigKeyError(
                f'Could not find any source for key "{key_desc.qualname}"',
                key=key_desc.qualname,
            )

    def get_key(self, key, src=None, quiet=False):
        """
        Get the value of the given key. It returns a deepcopy of the value.

        :param key: name of the key to lookup
        :type key: str

        :param src: If not None, look up the value of the key in that source
        :type src: str or None

        :param quiet: Avoid logging the access
        :type quiet: bool
        """
        key_desc = self._structure[key]

        if isinstance(key_desc, LevelKeyDesc):
            return self._sublevel_map[key]

        if src is None:
            src = self.resolve_src(key)

        try:
            val = self._key_map[key][src]
        except KeyError:
            # pylint: disable=raise-missing-from
            raise ConfigKeyError(
                f'Key "{key_desc.qualname}" is not available from source "{src}"',
                key=key_desc.qualname,
                src=src,
            )

        logger = self.logger
        if not quiet and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f'Using key {key_desc.qualname} from source "{src}": {key_desc.pretty_format(val)}')

        return copy.deepcopy(val)

    def __getitem__(self, key):
        return self.get_key(key)

    def get(self, key, default=None):
        try:
            return self[key]
        except KeyError:
            return default

    def _get_key_names(self):
        return list(self._key_map.keys()) + list(self._sublevel_map.keys())

    def __iter__(self):
        return iter(self._get_key_names())

    def __len__(self):
        return len(self._get_key_names())

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
