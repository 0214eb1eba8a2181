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
Compiler identification and arbitration of prepared trees built by another
compiler.

A tree prepared by a compiler is considered reusable by another compiler of
the same major version. Otherwise, a decision is taken by a
:class:`DecisionProvider`, which is either fixed by the configuration or
asked to the user.
"""

import abc
import enum
import os
import re
from collections import namedtuple

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ktree.exception import ConsistencyError, ArbitrationError
from ktree.policy import MismatchPolicy
from ktree.tree import remove_tree
from ktree.utils import Loggable, make_toolchain_env, is_interactive


class ToolchainFingerprint(namedtuple('ToolchainFingerprint', [
    'binary_name',
    'full_version_string',
    'dumpversion',
    'target_triple',
])):
    """
    Identity of a C compiler.

    :param binary_name: Name of the compiler binary, e.g.
        ``aarch64-linux-gnu-gcc``.
    :param full_version_string: First line of ``--version`` output.
    :param dumpversion: Output of ``-dumpversion``.
    :param target_triple: Output of ``-dumpmachine``.
    """
    __slots__ = ()

    _MAP_KEYS = {
        'binary_name': 'binary-name',
        'full_version_string': 'full-version',
        'dumpversion': 'dumpversion',
        'target_triple': 'target-triple',
    }

    @classmethod
    def probe(cls, policy, runner):
        """
        Fingerprint the compiler selected by ``policy``.

        :param policy: Policy of the run.
        :type policy: ktree.policy.Policy

        :param runner: Used to run the compiler.
        :type runner: ktree._transport.CommandRunner

        :raises ConsistencyError: If the compiler cannot be run.
        """
        cc = policy.compiler
        env = make_toolchain_env(policy.toolchain_path)

        def query(option):
            res = runner.run([cc, option], env=env)
            if not res.ok:
                raise ConsistencyError(f'Could not run "{cc} {option}": {res.output.strip()}', stage='toolchain')
            return res.output.strip()

        version = query('--version').splitlines()
        return cls(
            binary_name=cc,
            full_version_string=version[0].strip() if version else '',
            dumpversion=query('-dumpversion'),
            target_triple=query('-dumpmachine'),
        )

    @property
    def major(self):
        """
        Major version of the compiler, or ``None`` if it cannot be found.
        """
        match = re.match(r'^([0-9]+)', self.dumpversion or '')
        if not match:
            # e.g. "aarch64-linux-gnu-gcc (Debian 12.2.0-14) 12.2.0"
            match = re.search(r'([0-9]+)\.[0-9]+(\.[0-9]+)?\s*$', self.full_version_string or '')
        return int(match.group(1)) if match else None

    @property
    def toolchain_dir(self):
        """
        Name identifying the compiler in per-compiler build folders.
        """
        name = os.path.basename(self.binary_name)
        major = self.major
        return name if major is None else f'{name}-{major}'

    def compatible_with(self, other):
        """
        ``True`` if a tree prepared with ``other`` can be used with ``self``.

        Compilers sharing the same major version are compatible. If the major
        version of either of them is unknown, the full version strings must be
        identical.
        """
        major, other_major = self.major, other.major
        if major is None or other_major is None:
            return self.full_version_string == other.full_version_string
        else:
            return major == other_major

    def to_map(self):
        return {
            key: getattr(self, attr)
            for attr, key in self._MAP_KEYS.items()
        }

    @classmethod
    def from_map(cls, mapping):
        """
        :raises ValueError: If a key is missing.
        """
        try:
            return cls(**{
                attr: str(mapping[key])
                for attr, key in cls._MAP_KEYS.items()
            })
        except (KeyError, TypeError) as e:
            raise ValueError(f'Invalid toolchain fingerprint: {e}') from e

    def __str__(self):
        return f'{self.full_version_string} ({self.target_triple})'


def write_fingerprint(tree, fingerprint):
    """
    Record ``fingerprint`` in the build folder of ``tree``.
    """
    yaml = YAML()
    yaml.default_flow_style = False
    with open(tree.fingerprint_path, 'w') as f:
        yaml.dump(fingerprint.to_map(), f)


def read_fingerprint(tree):
    """
    Fingerprint recorded in the build folder of ``tree``, or ``None`` if
    there is none or it cannot be parsed.
    """
    path = tree.fingerprint_path
    try:
        with open(path) as f:
            mapping = YAML(typ='safe').load(f)
    except FileNotFoundError:
        return None
    except (OSError, YAMLError) as e:
        ToolchainGuard.get_logger().warning(f'Could not read toolchain fingerprint {path}: {e}')
        return None

    try:
        return ToolchainFingerprint.from_map(mapping)
    except ValueError as e:
        ToolchainGuard.get_logger().warning(f'Ignoring {path}: {e}')
        return None


class Decision(enum.Enum):
    """
    What to do with a build tree before the preparation stage.
    """
    REUSE = 'reuse'
    """
    Keep the prepared tree untouched.
    """

    PREPARE = 'prepare'
    """
    The tree is not prepared yet, run the preparation.
    """

    REBUILD = 'rebuild'
    """
    Delete the extracted sources and the build folder, and start again from
    extraction.
    """


class DecisionProvider(Loggable, abc.ABC):
    """
    Decide whether a tree prepared by an incompatible compiler is rebuilt.
    """

    @abc.abstractmethod
    def decide(self, tree, stored, current):
        """
        :param tree: Prepared tree.
        :type tree: ktree.tree.BuildTree

        :param stored: Fingerprint of the compiler that prepared the tree.
        :type stored: ToolchainFingerprint

        :param current: Fingerprint of the compiler of the run.
        :type current: ToolchainFingerprint

        :returns: :attr:`Decision.REUSE` or :attr:`Decision.REBUILD`
        """


class FixedDecider(DecisionProvider):
    """
    Always take the same decision.

    :param mode: Either :attr:`ktree.policy.MismatchPolicy.REBUILD` or
        :attr:`ktree.policy.MismatchPolicy.KEEP`.
    :type mode: ktree.policy.MismatchPolicy
    """
    def __init__(self, mode):
        if mode is MismatchPolicy.REBUILD:
            self.decision = Decision.REBUILD
        elif mode is MismatchPolicy.KEEP:
            self.decision = Decision.REUSE
        else:
            raise ValueError(f'Cannot take fixed decisions for mismatch policy: {mode}')

    def decide(self, tree, stored, current):
        return self.decision


class NonInteractiveDecider(DecisionProvider):
    """
    Refuse to guess: raises :exc:`ktree.exception.ArbitrationError`.
    """
    def decide(self, tree, stored, current):
        raise ArbitrationError(
            f'Tree was prepared with "{stored}" but the compiler is "{current}". Select a mismatch policy to rebuild or keep it in non-interactive runs',
            version=tree.version,
            stage='toolchain',
            path=tree.build_dir,
        )


class InteractiveDecider(DecisionProvider):
    """
    Ask the user.

    :param input_func: Mirrors :func:`input`, defaults to it.
    :type input_func: collections.abc.Callable or None

    :param print_func: Mirrors :func:`print`, defaults to it.
    :type print_func: collections.abc.Callable
    """
    def __init__(self, input_func=None, print_func=print):
        self.input_func = input if input_func is None else input_func
        self.print_func = print_func

    def decide(self, tree, stored, current):
        print_ = self.print_func
        print_(f'Kernel tree {tree.version} was prepared with a different compiler:')
        print_(f'  prepared with: {stored}')
        print_(f'  current:       {current}')
        try:
            answer = self.input_func(f'Rebuild {tree.build_dir}? The archive will be kept [y/N]: ')
        except EOFError:
            answer = ''

        if answer.strip().lower() in ('y', 'yes'):
            return Decision.REBUILD
        else:
            self.logger.info(f'Keeping tree {tree.build_dir} as requested')
            return Decision.REUSE


def make_decider(policy, interactive=None):
    """
    Build the :class:`DecisionProvider` matching ``policy``.

    :param interactive: Whether the user can be asked. Defaults to
        :func:`ktree.utils.is_interactive`.
    :type interactive: bool or None
    """
    if policy.mismatch is MismatchPolicy.ASK:
        interactive = is_interactive() if interactive is None else interactive
        if interactive:
            return InteractiveDecider()
        else:
            return NonInteractiveDecider()
    else:
        return FixedDecider(policy.mismatch)


class ToolchainGuard(Loggable):
    """
    Check the compiler of the run against the target architecture and against
    the compiler that prepared existing trees.

    :param policy: Policy of the run.
    :type policy: ktree.policy.Policy

    :param runner: Used to fingerprint the compiler.
    :type runner: ktree._transport.CommandRunner

    :param decider: Takes the decision on mismatch.
    :type decider: DecisionProvider
    """

    def __init__(self, policy, runner, decider):
        self.policy = policy
        self.runner = runner
        self.decider = decider

    def fingerprint(self):
        """
        Fingerprint of the compiler selected by the policy, checked against
        the target architecture.
        """
        fingerprint = ToolchainFingerprint.probe(self.policy, self.runner)
        self.check_triple(fingerprint)
        return fingerprint

    def check_triple(self, fingerprint):
        """
        Check that the compiler targets the selected architecture.

        :raises ConsistencyError: On mismatch, regardless of the policy.
        """
        arch = self.policy.arch
        machine = fingerprint.target_triple.split('-')[0]
        if not machine.startswith(arch.triple_token):
            raise ConsistencyError(
                f'Compiler {fingerprint.binary_name} targets "{fingerprint.target_triple}" but the architecture is {arch} (expected a {arch.triple_token} compiler). Check the cross compiler prefix',
                stage='toolchain',
            )

    def arbitrate(self, tree, fingerprint):
        """
        Decide what to do with ``tree`` given the compiler of the run.

        :param tree: Tree to check.
        :type tree: ktree.tree.BuildTree

        :param fingerprint: Fingerprint of the compiler of the run.
        :type fingerprint: ToolchainFingerprint

        :rtype: Decision

        :raises ConsistencyError: If the tree is prepared but has no
            fingerprint, and the policy requires rebuilding on mismatch or is
            strict.
        """
        logger = self.logger
        if not tree.prepared:
            return Decision.PREPARE

        stored = read_fingerprint(tree)
        if stored is None:
            msg = f'Prepared tree {tree.version} has no toolchain fingerprint'
            if self.policy.strict or self.policy.mismatch is MismatchPolicy.REBUILD:
                raise ConsistencyError(msg, version=tree.version, stage='toolchain', path=tree.fingerprint_path)
            else:
                logger.warning(f'{msg}, reusing it: {tree.build_dir}')
                return Decision.REUSE

        if stored.compatible_with(fingerprint):
            logger.info(f'Tree {tree.version} was prepared with a compatible compiler ({stored.full_version_string}), reusing it: {tree.build_dir}')
            return Decision.REUSE

        logger.warning(f'Tree {tree.version} was prepared with "{stored}" but the compiler is "{fingerprint}"')
        decision = self.decider.decide(tree, stored, fingerprint)
        logger.info(f'Decision for tree {tree.version}: {decision.value}')
        return decision

    def rebuild(self, tree):
        """
        Delete the extracted sources and the build folder of ``tree``. The
        archive is kept.
        """
        self.logger.info(f'Removing {tree.source_dir} and {tree.build_dir} to rebuild {tree.version}')
        remove_tree(tree.build_dir)
        remove_tree(tree.source_dir)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
