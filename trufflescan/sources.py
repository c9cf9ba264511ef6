"""
SourceConfig and the per-kind builders that populate it.

Each builder returns a fully populated, immutable SourceConfig. Only the
fields relevant to the kind are set; everything else keeps its zero value.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from trufflescan.config import (
    CircleCIOptions,
    FilesystemOptions,
    GitHubOptions,
    GitLabOptions,
    GitOptions,
    S3Options,
    SyslogOptions,
)
from trufflescan.errors import ConfigurationError
from trufflescan.filters import PathFilter, filter_from_files

SYSLOG_PROTOCOLS = ("tcp", "udp")
SYSLOG_FORMATS = ("rfc3164", "rfc5424")


@dataclass(frozen=True)
class SourceConfig:
    # identity / location
    repo_path: str = ""
    endpoint: str = ""
    repos: Tuple[str, ...] = ()
    orgs: Tuple[str, ...] = ()
    directories: Tuple[str, ...] = ()
    buckets: Tuple[str, ...] = ()
    address: str = ""
    protocol: str = ""
    format: str = ""
    cert_path: str = ""
    key_path: str = ""

    # filtering
    filter: Optional[PathFilter] = None
    include_repos: Tuple[str, ...] = ()
    exclude_repos: Tuple[str, ...] = ()
    include_forks: bool = False
    include_members: bool = False

    # scan bounds
    head_ref: str = ""
    base_ref: str = ""
    max_depth: int = 0

    # auth
    token: str = ""
    key: str = ""
    secret: str = ""
    cloud_environment: bool = False

    concurrency: int = 0


def build_git_config(options: GitOptions, repo_path: str, path_filter: PathFilter) -> SourceConfig:
    """
    Config for a local working path prepared from the git URI.

    The path filter is compiled by the caller before the repository is
    resolved so unreadable filter files fail before any clone starts.

    Raises:
        ConfigurationError: negative max depth
    """
    if options.max_depth < 0:
        raise ConfigurationError(f"max depth must not be negative, got {options.max_depth}")

    return SourceConfig(
        repo_path=repo_path,
        head_ref=options.branch,
        base_ref=options.since_commit,
        max_depth=options.max_depth,
        filter=path_filter,
    )


def build_github_config(options: GitHubOptions, concurrency: int) -> SourceConfig:
    if not options.orgs and not options.repos:
        raise ConfigurationError("You must specify at least one organization or repository.")

    return SourceConfig(
        endpoint=options.endpoint,
        repos=options.repos,
        orgs=options.orgs,
        token=options.token,
        include_forks=options.include_forks,
        include_members=options.include_members,
        include_repos=options.include_repos,
        exclude_repos=options.exclude_repos,
        concurrency=concurrency,
    )


def build_gitlab_config(options: GitLabOptions) -> SourceConfig:
    if not options.token:
        raise ConfigurationError("A GitLab token is required (--token or GITLAB_TOKEN).")

    return SourceConfig(
        endpoint=options.endpoint,
        token=options.token,
        repos=options.repos,
        filter=filter_from_files(options.include_paths, options.exclude_paths),
    )


def build_filesystem_config(options: FilesystemOptions) -> SourceConfig:
    if not options.directories:
        raise ConfigurationError("You must specify at least one directory.")

    return SourceConfig(directories=options.directories)


def build_s3_config(options: S3Options) -> SourceConfig:
    """
    Object storage config with at most one credential source.

    Ambient cloud credentials take precedence over an explicit key pair;
    a key without a secret (or the reverse) is rejected.
    """
    if options.cloud_environment:
        return SourceConfig(cloud_environment=True, buckets=options.buckets)

    if bool(options.key) != bool(options.secret):
        raise ConfigurationError("S3 key and secret must be provided together.")

    return SourceConfig(
        key=options.key,
        secret=options.secret,
        buckets=options.buckets,
    )


def build_syslog_config(options: SyslogOptions, concurrency: int) -> SourceConfig:
    if not options.address:
        raise ConfigurationError("A syslog listen address is required (--address).")
    if options.protocol not in SYSLOG_PROTOCOLS:
        raise ConfigurationError(
            f"syslog protocol must be one of {', '.join(SYSLOG_PROTOCOLS)}, got {options.protocol!r}"
        )
    if options.format not in SYSLOG_FORMATS:
        raise ConfigurationError(
            f"syslog format must be one of {', '.join(SYSLOG_FORMATS)}, got {options.format!r}"
        )
    if bool(options.cert_path) != bool(options.key_path):
        raise ConfigurationError("TLS cert and key must be provided together.")

    return SourceConfig(
        address=options.address,
        protocol=options.protocol,
        cert_path=options.cert_path,
        key_path=options.key_path,
        format=options.format,
        concurrency=concurrency,
    )


def circleci_token(options: CircleCIOptions) -> str:
    """CircleCI is scanned with a bare token rather than a SourceConfig."""
    if not options.token:
        raise ConfigurationError("A CircleCI token is required (--token or CIRCLECI_TOKEN).")
    return options.token
