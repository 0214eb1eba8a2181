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
Boundary with the outside world: network access to the kernel mirror and
release index, and execution of external commands.

Components only talk to :class:`Transport` and :class:`CommandRunner`, so
that tests can substitute in-memory implementations.
"""

import abc
import os
import shlex
import shutil
import subprocess
import time
import urllib.error
import urllib.request
from collections import namedtuple

from ktree.exception import TransportError
from ktree.utils import Loggable


class Transport(Loggable, abc.ABC):
    """
    Abstract access to HTTP resources.
    """

    @abc.abstractmethod
    def exists(self, url):
        """
        Check that ``url`` exists with a metadata-only request.

        :returns: ``False`` if the server answered that the resource does not
            exist, ``True`` if it does.
        :raises TransportError: On any other network error.
        """

    @abc.abstractmethod
    def download(self, url, dest):
        """
        Download ``url`` into the ``dest`` file.

        The content is first written to ``dest.part`` which is then renamed,
        so that ``dest`` never holds a truncated transfer.

        :raises TransportError: If the download failed.
        """

    @abc.abstractmethod
    def get_text(self, url):
        """
        Get the content of ``url`` as a string.

        :raises TransportError: If the resource could not be fetched.
        """


class UrllibTransport(Transport):
    """
    :class:`Transport` implemented with :mod:`urllib.request`.

    :param timeout: Timeout in seconds of each request.
    :type timeout: int or float

    :param retries: Number of extra attempts for a failed download.
    :type retries: int

    :param retry_delay: Delay in seconds between download attempts.
    :type retry_delay: int or float
    """

    _NOT_FOUND = (404, 410)

    def __init__(self, timeout=60, retries=3, retry_delay=2):
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

    @classmethod
    def from_policy(cls, policy):
        """
        Build an instance using the download settings of a
        :class:`ktree.policy.Policy`.
        """
        return cls(
            timeout=policy.timeout,
            retries=policy.retries,
            retry_delay=policy.retry_delay,
        )

    def exists(self, url):
        request = urllib.request.Request(url, method='HEAD')
        self.logger.debug(f'Probing {url}')
        try:
            with urllib.request.urlopen(request, timeout=self.timeout):
                return True
        except urllib.error.HTTPError as e:
            if e.code in self._NOT_FOUND:
                return False
            else:
                raise TransportError(f'Could not probe {url}: HTTP error {e.code}') from e
        except (urllib.error.URLError, OSError) as e:
            raise TransportError(f'Could not probe {url}: {e}') from e

    def download(self, url, dest):
        dest = str(dest)
        part = f'{dest}.part'
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            self.logger.info(f'Downloading {url} (attempt {attempt}/{attempts})')
            try:
                with urllib.request.urlopen(url, timeout=self.timeout) as response, open(part, 'wb') as f:
                    shutil.copyfileobj(response, f)
            except urllib.error.HTTPError as e:
                _remove_file(part)
                # The resource is not there, trying again will not help
                if e.code in self._NOT_FOUND:
                    raise TransportError(f'Could not download {url}: HTTP error {e.code}') from e
                error = e
            except (urllib.error.URLError, OSError) as e:
                _remove_file(part)
                error = e
            else:
                os.replace(part, dest)
                return

            if attempt < attempts:
                self.logger.warning(f'Download of {url} failed: {error}, retrying in {self.retry_delay}s')
                time.sleep(self.retry_delay)

        raise TransportError(f'Could not download {url} after {attempts} attempts: {error}')

    def get_text(self, url):
        self.logger.debug(f'Fetching {url}')
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                content = response.read()
        except (urllib.error.URLError, OSError) as e:
            raise TransportError(f'Could not fetch {url}: {e}') from e

        return content.decode('utf-8', errors='replace')


def _remove_file(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class CommandResult(namedtuple('CommandResult', ['args', 'returncode', 'output'])):
    """
    Result of a command executed by a :class:`CommandRunner`.

    :param args: Command that was executed.
    :param returncode: Exit status of the command.
    :param output: Merged stdout and stderr.
    """
    __slots__ = ()

    @property
    def ok(self):
        return self.returncode == 0


class CommandRunner(Loggable, abc.ABC):
    """
    Abstract executor of external commands.
    """

    @abc.abstractmethod
    def run(self, cmd, cwd=None, env=None):
        """
        Run ``cmd`` and wait for its completion.

        :param cmd: Command to run.
        :type cmd: list(str)

        :param cwd: Working directory.
        :type cwd: str or None

        :param env: Environment of the command, defaults to the current one.
        :type env: collections.abc.Mapping or None

        :rtype: CommandResult
        """


class SubprocessRunner(CommandRunner):
    """
    :class:`CommandRunner` implemented with :mod:`subprocess`.

    A command that cannot be found is reported with the exit status 127, as
    a shell would do.
    """

    def run(self, cmd, cwd=None, env=None):
        cmd = list(map(str, cmd))
        logger = self.logger
        logger.info(f'Running: {" ".join(map(shlex.quote, cmd))}')

        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                check=False,
            )
        except FileNotFoundError as e:
            logger.debug(f'Command not found: {e}')
            return CommandResult(cmd, 127, str(e))

        output = completed.stdout.decode('utf-8', errors='replace')
        if output:
            logger.debug(f'Output of {cmd[0]}:\n{output}')

        return CommandResult(cmd, completed.returncode, output)

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
