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
Exceptions raised while provisioning kernel build trees.
"""


class KtreeError(Exception):
    """
    Base class for all ktree exceptions.

    :param msg: Human readable description of the issue.
    :type msg: str

    :param series: Kernel series being processed, if any.
    :type series: str or None

    :param version: Resolved kernel version being processed, if any.
    :type version: str or None

    :param stage: Name of the stage that failed, e.g. ``"fetch"``.
    :type stage: str or None

    :param path: Path that was found inconsistent, if any.
    :type path: str or None
    """

    always_fatal = False
    """
    If ``True``, the error fails the series it was raised for, regardless
    of the strictness of the run.
    """

    def __init__(self, msg, series=None, version=None, stage=None, path=None):
        super().__init__(msg)
        self.msg = msg
        self.series = series
        self.version = version
        self.stage = stage
        self.path = path

    def _context(self):
        return [
            (name, val)
            for name, val in (
                ('stage', self.stage),
                ('series', self.series),
                ('version', self.version),
                ('path', self.path),
            )
            if val is not None
        ]

    def __str__(self):
        ctx = ', '.join(
            f'{name}={val}'
            for name, val in self._context()
        )
        if ctx:
            return f'{self.msg} ({ctx})'
        else:
            return self.msg

    def with_context(self, **kwargs):
        """
        Fill the context attributes that are not already set, and return the
        exception itself so it can be re-raised.
        """
        for name, val in kwargs.items():
            if getattr(self, name) is None:
                setattr(self, name, val)
        return self


class UsageError(KtreeError):
    """Invalid arguments or host setup, detected before any stage runs."""
    pass


class ResolutionError(KtreeError):
    """A series could not be resolved to a concrete version."""
    pass


class ArtifactError(KtreeError):
    """Issue with a kernel source archive."""
    pass


class ArtifactMissingError(ArtifactError):
    """The archive is not available on the mirror."""
    pass


class ArtifactCorruptError(ArtifactError):
    """The archive cannot be enumerated as a valid tarball."""
    pass


class ExtractionError(KtreeError):
    """Extracting an archive did not produce the expected source folder."""
    pass


class PipelineError(KtreeError):
    """
    An invocation of the kernel build system failed.

    :param cmd: Command that failed.
    :type cmd: list(str)

    :param returncode: Exit status of the command.
    :type returncode: int

    :param output: Merged stdout and stderr of the command.
    :type output: str
    """
    def __init__(self, msg, cmd=None, returncode=None, output=None, **kwargs):
        super().__init__(msg, **kwargs)
        self.cmd = cmd
        self.returncode = returncode
        self.output = output

    def __str__(self):
        msg = super().__str__()
        lines = [msg]
        if self.cmd is not None:
            lines.append(f'COMMAND: {" ".join(map(str, self.cmd))}')
        if self.returncode is not None:
            lines.append(f'EXIT STATUS: {self.returncode}')
        if self.output:
            lines.append(f'OUTPUT:\n{self.output.strip()}')
        return '\n'.join(lines)


class ConsistencyError(KtreeError):
    """
    Architecture, compiler or configuration mismatch. Proceeding would
    produce a build tree that cannot be used, so the series always fails.
    """
    always_fatal = True


class ArbitrationError(ConsistencyError):
    """
    A toolchain mismatch needs a decision but none can be taken, e.g. when
    the run is not interactive and no mismatch policy was configured.
    """
    pass


class TransportError(KtreeError):
    """Network error that is not a plain "not found" answer."""
    pass

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
