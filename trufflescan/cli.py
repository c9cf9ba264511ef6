"""Command line entry point."""

import argparse
import logging
import os
import sys
from functools import partial
from typing import List, Optional

from trufflescan import __version__
from trufflescan.config import (
    DEFAULT_GITHUB_ENDPOINT,
    DEFAULT_GITLAB_ENDPOINT,
    EXIT_CODE_ERROR,
    EXIT_CODE_INTERRUPTED,
    Settings,
)
from trufflescan.errors import TruffleScanError
from trufflescan.lifecycle import (
    DEV_VERSION,
    ProcessState,
    Supervisor,
    UpdateFetcher,
    run_until_signal,
)
from trufflescan.logging_setup import resolve_level, setup_logging
from trufflescan.orchestrator import run

logger = logging.getLogger(__name__)


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def normalize_flag_names(argv: List[str]) -> List[str]:
    """Accept --flag_name spellings by rewriting them to --flag-name."""
    normalized = []
    for arg in argv:
        if arg.startswith("--"):
            name, sep, value = arg.partition("=")
            arg = name.replace("_", "-") + sep + value
        normalized.append(arg)
    return normalized


def existing_file(value: str) -> str:
    if not os.path.isfile(value):
        raise argparse.ArgumentTypeError(f"path '{value}' does not exist or is not a file")
    return value


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _add_global_flags(parser: argparse.ArgumentParser, suppress: bool = False):
    """
    Global flags live on the top-level parser and again on every subcommand
    so they can be given before or after the command name. Subcommand copies
    default to SUPPRESS and only override values that were actually passed.
    """
    def default(value):
        return argparse.SUPPRESS if suppress else value

    parser.add_argument('--debug', action='store_true', default=default(False), help='Run in debug mode.')
    parser.add_argument('--trace', action='store_true', default=default(False), help='Run in trace mode.')
    parser.add_argument(
        '-j', '--json',
        action='store_true',
        default=default(False),
        help='Output in JSON format.'
    )
    parser.add_argument(
        '--json-legacy',
        action='store_true',
        default=default(False),
        help='Use the pre-v3.0 JSON format. Only works with git, gitlab, and github sources.'
    )
    parser.add_argument(
        '--concurrency',
        type=positive_int,
        default=default(None),
        help=f'Number of concurrent workers (default: {os.cpu_count() or 1})'
    )
    parser.add_argument(
        '--no-verification',
        action='store_true',
        default=default(False),
        help="Don't verify the results."
    )
    parser.add_argument(
        '--only-verified',
        action='store_true',
        default=default(False),
        help='Only output verified results.'
    )
    parser.add_argument(
        '--filter-unverified',
        action='store_true',
        default=default(False),
        help='Only output the first unverified result per chunk if there is more than one.'
    )
    parser.add_argument(
        '--config',
        type=existing_file,
        metavar='FILE',
        default=default(None),
        help='Path to detector configuration file.'
    )
    parser.add_argument(
        '--print-avg-detector-time',
        action='store_true',
        default=default(False),
        help='Print the average time spent on each detector.'
    )
    parser.add_argument(
        '--no-update',
        action='store_true',
        default=default(False),
        help="Don't check for updates."
    )
    parser.add_argument(
        '--fail',
        action='store_true',
        default=default(False),
        help='Exit with code 183 if results are found.'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='trufflescan',
        description='TruffleScan is a tool for finding credentials.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  GITHUB_TOKEN            GitHub token (github)
  GITLAB_TOKEN            GitLab token (gitlab)
  AWS_ACCESS_KEY_ID       S3 key (s3)
  AWS_SECRET_ACCESS_KEY   S3 secret (s3)
  CIRCLECI_TOKEN          CircleCI token (circleci)
  TRUFFLESCAN_LOG_FORMAT  Logging format, text or json (default: text)

EXIT CODES:
  0   Success
  1   Error (missing config, failed clone, etc.)
  130 Interrupted by user (Ctrl+C)
  183 Results found and --fail given
        '''
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    _add_global_flags(parser)

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    # git
    git = commands.add_parser('git', help='Find credentials in git repositories.')
    _add_global_flags(git, suppress=True)
    git.add_argument('uri', help='Git repository URL or local path. https://, file://, or ssh:// schema expected for URLs.')
    git.add_argument(
        '-i', '--include-paths',
        metavar='FILE',
        help='Path to file with newline separated regexes for files to include in scan.'
    )
    git.add_argument(
        '-x', '--exclude-paths',
        metavar='FILE',
        help='Path to file with newline separated regexes for files to exclude in scan.'
    )
    git.add_argument('--since-commit', help='Commit to start scan from.')
    git.add_argument('--branch', help='Branch to scan.')
    git.add_argument('--max-depth', type=int, default=0, help='Maximum depth of commits to scan.')
    for legacy in ('--allow', '--entropy', '--regex'):
        git.add_argument(legacy, action='store_true', help='No-op flag for backwards compat.')

    # github
    github = commands.add_parser('github', help='Find credentials in GitHub repositories.')
    _add_global_flags(github, suppress=True)
    github.add_argument('--endpoint', default=DEFAULT_GITHUB_ENDPOINT, help='GitHub endpoint.')
    github.add_argument(
        '--repo',
        action='append',
        help='GitHub repository to scan. You can repeat this flag.'
    )
    github.add_argument(
        '--org',
        action='append',
        help='GitHub organization to scan. You can repeat this flag.'
    )
    github.add_argument('--token', help='GitHub token. Can be provided with environment variable GITHUB_TOKEN.')
    github.add_argument('--include-forks', action='store_true', help='Include forks in scan.')
    github.add_argument(
        '--include-members',
        action='store_true',
        help='Include organization member repositories in scan.'
    )
    github.add_argument(
        '--include-repos',
        action='append',
        metavar='GLOB',
        help='Repositories to include in an org scan, by full name or glob. You can repeat this flag.'
    )
    github.add_argument(
        '--exclude-repos',
        action='append',
        metavar='GLOB',
        help='Repositories to exclude in an org scan, by full name or glob. You can repeat this flag.'
    )

    # gitlab
    gitlab = commands.add_parser('gitlab', help='Find credentials in GitLab repositories.')
    _add_global_flags(gitlab, suppress=True)
    gitlab.add_argument('--endpoint', default=DEFAULT_GITLAB_ENDPOINT, help='GitLab endpoint.')
    gitlab.add_argument(
        '--repo',
        action='append',
        help='GitLab repo url. You can repeat this flag. Leave empty to scan all accessible repos.'
    )
    gitlab.add_argument('--token', help='GitLab token. Can be provided with environment variable GITLAB_TOKEN.')
    gitlab.add_argument(
        '-i', '--include-paths',
        metavar='FILE',
        help='Path to file with newline separated regexes for files to include in scan.'
    )
    gitlab.add_argument(
        '-x', '--exclude-paths',
        metavar='FILE',
        help='Path to file with newline separated regexes for files to exclude in scan.'
    )

    # filesystem
    filesystem = commands.add_parser('filesystem', help='Find credentials in a filesystem.')
    _add_global_flags(filesystem, suppress=True)
    filesystem.add_argument(
        '--directory',
        action='append',
        help='Path to directory to scan. You can repeat this flag.'
    )

    # s3
    s3 = commands.add_parser('s3', help='Find credentials in S3 buckets.')
    _add_global_flags(s3, suppress=True)
    s3.add_argument('--key', help='S3 key. Can be provided with environment variable AWS_ACCESS_KEY_ID.')
    s3.add_argument('--secret', help='S3 secret. Can be provided with environment variable AWS_SECRET_ACCESS_KEY.')
    s3.add_argument('--cloud-environment', action='store_true', help='Use IAM credentials in cloud environment.')
    s3.add_argument('--bucket', action='append', help='Name of S3 bucket to scan. You can repeat this flag.')

    # syslog
    syslog = commands.add_parser('syslog', help='Scan syslog.')
    _add_global_flags(syslog, suppress=True)
    syslog.add_argument('--address', help='Address and port to listen on for syslog. Example: 127.0.0.1:514')
    syslog.add_argument('--protocol', help='Protocol to listen on. udp or tcp')
    syslog.add_argument('--cert', help='Path to TLS cert.')
    syslog.add_argument('--key', help='Path to TLS key.')
    syslog.add_argument('--format', help='Log format. Can be rfc3164 or rfc5424')

    # circleci
    circleci = commands.add_parser('circleci', help='Scan CircleCI.')
    _add_global_flags(circleci, suppress=True)
    circleci.add_argument('--token', help='CircleCI token. Can be provided with environment variable CIRCLECI_TOKEN.')

    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments; --flag_name spellings are accepted."""
    argv = sys.argv[1:] if argv is None else argv
    return build_parser().parse_args(normalize_flag_names(argv))


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def run_scan(settings: Settings, state: ProcessState) -> int:
    """Run one scan under the supervisor and map failures to exit codes."""
    if state.update_version:
        logger.debug(f"Update {state.update_version} will be used on restart")
    try:
        return run_until_signal(run(settings), state.restart_signal)
    except TruffleScanError as e:
        logger.error(str(e))
        return EXIT_CODE_ERROR
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return EXIT_CODE_INTERRUPTED


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    try:
        settings = Settings.from_args(args)
    except TruffleScanError as e:
        setup_logging()
        logger.error(str(e))
        return EXIT_CODE_ERROR

    setup_logging(settings.log_format, resolve_level(settings.debug, settings.trace))
    if settings.debug or settings.trace:
        logger.debug(f"running version {__version__}")

    fetcher = None
    if not settings.no_update and __version__ != DEV_VERSION:
        fetcher = UpdateFetcher(__version__)

    supervisor = Supervisor(partial(run_scan, settings), __version__, fetcher=fetcher)
    return supervisor.run()
