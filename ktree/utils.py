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
Miscellaneous utilities that don't fit anywhere else.
"""

import functools
import inspect
import logging
import logging.config
import operator
import os
import re
import shutil
import sys

from devlib.target import KernelVersion


KTREE_DEFAULT_BASE_DIR = '/opt/kernels'
"""
Default folder hosting one sub-folder per prepared kernel version.
"""

_STABLE_VERSION_REGEX = re.compile(r'^[0-9]+\.[0-9]+(\.[0-9]+)?$')


def is_stable_version(version):
    """
    ``True`` if ``version`` is a released kernel version such as ``5.15`` or
    ``5.15.166``, as opposed to a release candidate or a git describe string.
    """
    return bool(_STABLE_VERSION_REGEX.match(version))


def kernel_version_key(version):
    """
    Sort key of a kernel version string, comparing components numerically.

    A missing sublevel sorts as 0, so ``6.6`` sorts before ``6.6.1``.

    :raises ValueError: If ``version`` is not a kernel version.
    """
    parts = KernelVersion(version).parts
    if parts[0] is None:
        raise ValueError(f'Invalid kernel version: {version}')

    return tuple(
        0 if x is None else x
        for x in parts
    )


def kernel_series(version):
    """
    Series of a kernel version, e.g. ``5.15`` for ``5.15.166``.
    """
    return '.'.join(version.split('.')[:2])


class _DummyLogger:
    def __getattr__(self, attr):
        x = getattr(logging, attr)
        if callable(x):
            return lambda *args, **kwargs: None
        else:
            return None


class Loggable:
    """
    A simple class for uniformly named loggers
    """

    # This cannot be memoized, as we behave differently based on the call stack
    @property
    def logger(self):
        """
        Convenience short-hand for ``self.get_logger()``.
        """
        return self.get_logger()

    @classmethod
    def get_logger(cls, suffix=None):
        if any (
            frame.function == '__del__'
            for frame in inspect.stack()
        ):
            return _DummyLogger()
        else:
            cls_name = cls.__name__
            module = inspect.getmodule(cls)
            if module:
                name = module.__name__ + '.' + cls_name
            else:
                name = cls_name
            if suffix:
                name += '.' + suffix
            return logging.getLogger(name)


def memoized(f):
    """
    Decorator to memoize the result of a method, based on
    :func:`functools.lru_cache`.

    The cache is stored on the instance, so that it goes away with it and two
    instances never share cached values.
    """
    attr = f'_memoized_{f.__name__}'

    @functools.wraps(f)
    def wrapper(self, *args, **kwargs):
        try:
            cached = self.__dict__[attr]
        except KeyError:
            cached = functools.lru_cache(maxsize=None)(
                functools.partial(f, self)
            )
            self.__dict__[attr] = cached
        return cached(*args, **kwargs)

    return wrapper


def setup_logging(filepath=None, level=None):
    """
    Initialize logging used for all the ktree modules.

    :param filepath: Path to a logging configuration file, loaded with
        :func:`logging.config.fileConfig`. If ``None``, a basic console
        configuration is used.
    :type filepath: str or None

    :param level: Override the conf file and force logging level. Defaults to
        ``logging.INFO``.
    :type level: int or str
    """
    resolved_level = logging.INFO if level is None else level

    # Ensure basicConfig will have effects again by getting rid of the existing
    # handlers
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Capture the warnings as log entries
    logging.captureWarnings(True)

    # urllib3 and friends are too chatty at DEBUG level
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    if filepath is None:
        log_format = '[%(asctime)s][%(name)s] %(levelname)s  %(message)s'
        logging.basicConfig(level=resolved_level, format=log_format)
    else:
        # Set the level first, so the config file can override with more details
        logging.getLogger().setLevel(resolved_level)

        if os.path.exists(filepath):
            logging.config.fileConfig(filepath)
            logging.info(f'Using ktree logging configuration: {filepath}')
        else:
            raise FileNotFoundError(f'Logging configuration file not found: {filepath}')


def get_nested_key(mapping, key_path, getitem=operator.getitem):
    """
    Get a key in a nested mapping

    :param mapping: The mapping to lookup in
    :type mapping: collections.abc.Mapping

    :param key_path: Path to the key in the mapping, in the form of a list of
        keys.
    :type key_path: list

    :param getitem: Function used to get items on the mapping. Defaults to
        :func:`operator.getitem`.
    :type getitem: collections.abc.Callable
    """
    for key in key_path:
        mapping = getitem(mapping, key)

    return mapping


def set_nested_key(mapping, key_path, val, level=None):
    """
    Set a key in a nested mapping

    :param mapping: The mapping to update
    :type mapping: collections.abc.MutableMapping

    :param key_path: Path to the key in the mapping, in the form of a list of
        keys.
    :type key_path: list

    :param level: Factory used when creating a level is needed. By default,
        ``type(mapping)`` will be called without any parameter.
    :type level: collections.abc.Callable
    """
    assert key_path

    if level is None:
        # This should work for dict and most basic structures
        level = type(mapping)

    for key in key_path[:-1]:
        try:
            mapping = mapping[key]
        except KeyError:
            new_level = level()
            mapping[key] = new_level
            mapping = new_level

    mapping[key_path[-1]] = val


def make_toolchain_env(toolchain_path=None, env=None):
    """
    Build the environment used to run the toolchain.

    :param toolchain_path: Folder to prepend to ``PATH``.
    :type toolchain_path: str or None

    :param env: Base environment, defaults to :data:`os.environ`.
    :type env: collections.abc.Mapping or None
    """
    env = dict(os.environ if env is None else env)
    if toolchain_path is not None:
        assert toolchain_path
        path = env.get('PATH', '')
        env['PATH'] = ':'.join(filter(bool, (str(toolchain_path), path)))

    return env


def which(cmd, toolchain_path=None):
    """
    Same as :func:`shutil.which` but also looks into ``toolchain_path``
    first.
    """
    env = make_toolchain_env(toolchain_path)
    return shutil.which(cmd, path=env.get('PATH'))


def is_interactive():
    """
    ``True`` if both stdin and stdout are attached to a terminal.
    """
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def format_table(rows, header):
    """
    Format a list of rows as a left-aligned text table.

    :param rows: Rows of cells, converted to strings.
    :type rows: list(list)

    :param header: Column names.
    :type header: list(str)
    """
    rows = [list(map(str, row)) for row in rows]
    header = list(map(str, header))
    widths = [
        max(len(cell) for cell in column)
        for column in zip(header, *rows)
    ]

    def fmt(row):
        return '  '.join(
            cell.ljust(width)
            for cell, width in zip(row, widths)
        ).rstrip()

    sep = '  '.join('-' * width for width in widths)
    return '\n'.join([fmt(header), sep, *map(fmt, rows)])

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
