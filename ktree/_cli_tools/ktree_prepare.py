#! /usr/bin/env python3

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

import argparse
import itertools
import logging
import os
import sys
import textwrap

from ktree.catalog import ReleaseCatalog
from ktree.conf import ConfigKeyError, TopLevelKeyError
from ktree.exception import UsageError
from ktree.plan import Planner, reference_table
from ktree.policy import ProvisionConf, Policy, LatestMode, MismatchPolicy, Architecture
from ktree.provision import Provisioner, check_host
from ktree.toolchain import make_decider
from ktree.upstream import UpstreamResolver
from ktree.utils import setup_logging
from ktree._transport import UrllibTransport, SubprocessRunner


def make_parser():
    parser = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Prepare Linux kernel build trees for external module builds
            (modules_prepare), one per kernel series.

            Output layout:
              <base-dir>/<version>/_dl/linux-<version>.tar.xz
              <base-dir>/<version>/src/linux-<version>
              <base-dir>/<version>/build-<arch>

            Environment overrides:
              ARCH, CROSS_COMPILE, BASE_DIR, JOBS, RELEASES_JSON,
              KTREE_CONFIG_DIR, KTREE_MIRROR_URL

            Options take precedence over the environment, which takes
            precedence over the --conf file.

            EXAMPLES

            $ {script} --series 5.15 6.6 --dry-run
            $ {script} --releases-json /etc/kernel-build/releases.json --strict
            $ {script} --latest on-broken --toolchain-mismatch rebuild
            """.format(
                script=os.path.basename(sys.argv[0])
            )))

    parser.add_argument('--conf', '-c',
        help='Path to a YAML file with a "ktree-conf" top-level key.')

    parser.add_argument('--arch',
        help=f'Target architecture, one of: {", ".join(arch.id for arch in Architecture)}.')
    parser.add_argument('--cross-compile',
        help='Cross compiler prefix, e.g. "aarch64-linux-gnu-".')
    parser.add_argument('--toolchain-path',
        help='Folder prepended to PATH to find the compiler.')

    parser.add_argument('--series', '-s',
        action='append',
        nargs='+',
        help='Kernel series to prepare, e.g. "5.15". Can be repeated or comma-separated.')
    parser.add_argument('--releases-json', '--catalog',
        dest='catalog',
        help='Local release lock document mapping series to pinned versions.')

    parser.add_argument('--base-dir',
        help='Folder hosting the prepared trees.')
    parser.add_argument('--jobs', '-j',
        type=int,
        help='Number of parallel make jobs.')
    parser.add_argument('--mirror-url',
        help='Base URL of the kernel archives mirror.')
    parser.add_argument('--index-url',
        help='URL of the upstream releases index.')
    parser.add_argument('--config-dir',
        help='Folder with kernel configs to import, named config-<arch>-<version>, config-<arch>-<series>, config-<version> or config-<series>.')

    strict_group = parser.add_mutually_exclusive_group()
    strict_group.add_argument('--strict',
        action='store_true',
        default=None,
        help='Abort on the first missing or corrupted archive, or resolution failure.')
    strict_group.add_argument('--lenient',
        dest='strict',
        action='store_false',
        default=None,
        help='Skip or fail only the affected series and carry on with the others.')

    for stage in ('download', 'extract', 'prepare', 'all'):
        parser.add_argument(f'--force-{stage}',
            action='store_true',
            default=None,
            help=f'Redo {"all the stages" if stage == "all" else f"the {stage} stage"} even if its output looks valid.')

    parser.add_argument('--latest',
        choices=[mode.value for mode in LatestMode],
        help='Use the newest upstream release for all series, or only when the pinned archive is not available (on-broken).')
    parser.add_argument('--toolchain-mismatch',
        choices=[mode.value for mode in MismatchPolicy],
        help='Action on trees prepared by a compiler of another major version.')
    parser.add_argument('--per-toolchain-build-dir',
        action='store_true',
        default=None,
        help='Use a build folder per compiler under build-<arch>/.')

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument('--dry-run', '-n',
        action='store_true',
        help='Show what would be done without changing anything.')
    mode_group.add_argument('--print-table',
        action='store_true',
        help='Print the series, versions and KERNELDIR of the trees, then exit.')
    mode_group.add_argument('--print-conf',
        action='store_true',
        help='Print the effective configuration as YAML, then exit.')

    parser.add_argument('--log-level',
        default='info',
        choices=('warning', 'info', 'debug'),
        help='Verbosity level of the logs.')
    parser.add_argument('--log-conf',
        help='Logging configuration file, see logging.config.fileConfig().')

    return parser


def _parse_series(series):
    if series is None:
        return None
    return [
        s.strip()
        for s in itertools.chain.from_iterable(
            item.split(',')
            for item in itertools.chain.from_iterable(series)
        )
        if s.strip()
    ]


def make_conf(args, env=None):
    """
    Build the :class:`ktree.policy.ProvisionConf` out of the ``--conf`` file,
    the environment and the command line, in increasing priority order.
    """
    conf = ProvisionConf()

    if args.conf:
        try:
            file_conf = ProvisionConf.from_yaml_map(args.conf, add_default_src=False)
        except OSError as e:
            raise UsageError(f'Could not read configuration file: {e}', path=args.conf) from e
        conf.add_src(args.conf, file_conf.to_map())

    conf.add_src('env', ProvisionConf.env_src(env))

    conf.add_src('command-line', {
        'arch': args.arch,
        'cross-compile': args.cross_compile,
        'toolchain-path': args.toolchain_path,
        'base-dir': args.base_dir,
        'jobs': args.jobs,
        'mirror-url': args.mirror_url,
        'index-url': args.index_url,
        'catalog': args.catalog,
        'config-dir': args.config_dir,
        'series': _parse_series(args.series),
        'strict': args.strict,
        'force': {
            'download': args.force_download,
            'extract': args.force_extract,
            'prepare': args.force_prepare,
            'all': args.force_all,
        },
        'latest': args.latest,
        'toolchain-mismatch': args.toolchain_mismatch,
        'per-toolchain-build-dir': args.per_toolchain_build_dir,
    }, filter_none=True)

    return conf


def main(argv=None):
    parser = make_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_conf, level=args.log_level.upper())
    logger = logging.getLogger('ktree-prepare')

    try:
        return _main(args, logger)
    except UsageError as e:
        logger.error(str(e))
        return 2
    except KeyboardInterrupt:
        logger.error('Interrupted')
        return 130


def _main(args, logger, env=None):
    try:
        conf = make_conf(args, env)
    except (ConfigKeyError, TopLevelKeyError, TypeError, ValueError) as e:
        raise UsageError(f'Invalid configuration: {e}') from e

    if args.print_conf:
        print(conf.to_yaml_map_str(), end='')
        return 0

    policy = Policy.from_conf(conf)
    catalog = None if policy.catalog is None else ReleaseCatalog.from_path(policy.catalog)
    if catalog is None:
        logger.info(f'No release catalog, versions are resolved with {policy.index_url}')
    else:
        logger.info(f'Using release catalog {policy.catalog}')

    transport = UrllibTransport.from_policy(policy)
    runner = SubprocessRunner()

    if args.print_table:
        resolver = UpstreamResolver(policy, transport)
        print(reference_table(policy, catalog, resolver))
        return 0
    elif args.dry_run:
        resolver = UpstreamResolver(policy, transport)
        planner = Planner(policy, catalog, resolver, transport, runner)
        print(planner.format_plan(planner.plan()))
        return 0
    else:
        check_host(policy)
        provisioner = Provisioner(
            policy=policy,
            catalog=catalog,
            transport=transport,
            runner=runner,
            decider=make_decider(policy),
        )
        report = provisioner.run()
        print(report.format(policy))
        return report.exit_code


if __name__ == '__main__':
    sys.exit(main())

# vim :set tabstop=4 shiftwidth=4 textwidth=80 expandtab
