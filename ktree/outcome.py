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
Tagged outcome of a provisioning stage.

Stages return one of :class:`Succeeded`, :class:`Skipped` or :class:`Failed`
rather than raising or returning a sentinel, so that a skip can never be
mistaken for a success or for a generic failure.
"""

import enum


class OutcomeKind(enum.Enum):
    """
    A classification of a stage outcome
    """
    SUCCEEDED = 1
    """
    The stage completed and produced a value
    """

    SKIPPED = 2
    """
    The stage did not run, e.g. because the archive is not available on the
    mirror. This is not an error in lenient runs.
    """

    FAILED = 3
    """
    The stage raised an error
    """

    @property
    def lower_name(self):
        """Return the name in lower case"""
        return self.name.lower()


class Outcome:
    """
    Base class for all outcomes.

    .. note:: ``__init__`` is not provided as each subclass carries a
        different payload.
    """
    kind = None

    def __bool__(self):
        """
        ``True`` if the outcome is :attr:`OutcomeKind.SUCCEEDED`, ``False``
        otherwise.
        """
        return self.kind is OutcomeKind.SUCCEEDED

    def then(self, f):
        """
        Chain another stage: call ``f(value)`` if that outcome succeeded,
        otherwise return the outcome as-is.

        :param f: Callable taking the success value and returning an
            :class:`Outcome`.
        :type f: collections.abc.Callable
        """
        if self:
            return f(self.value)
        else:
            return self

    def __repr__(self):
        return f'{self.__class__.__qualname__}({self._payload()!r})'

    def __str__(self):
        return f'{self.kind.lower_name}: {self._payload()}'

    def __eq__(self, other):
        return (
            type(self) is type(other) and
            self._payload() == other._payload()
        )

    def __hash__(self):
        return hash((type(self), self._payload()))


class Succeeded(Outcome):
    """
    :param value: Value produced by the stage.
    """
    kind = OutcomeKind.SUCCEEDED

    def __init__(self, value=None):
        self.value = value

    def _payload(self):
        return self.value


class Skipped(Outcome):
    """
    :param reason: Human readable reason for skipping.
    :type reason: str

    :param error: Exception that lead to the skip, if any.
    :type error: Exception or None
    """
    kind = OutcomeKind.SKIPPED

    def __init__(self, reason, error=None):
        self.reason = reason
        self.error = error

    def _payload(self):
        return self.reason


class Failed(Outcome):
    """
    :param error: Exception describing the failure.
    :type error: Exception
    """
    kind = OutcomeKind.FAILED

    def __init__(self, error):
        self.error = error

    def _payload(self):
        return str(self.error)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
