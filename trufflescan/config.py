"""
Process configuration.

Settings is built once from the parsed command line and the environment,
then passed explicitly to everything that needs it.
"""

import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple, Union

from trufflescan.errors import ConfigurationError

# ===================================================================
# CONSTANTS
# ===================================================================

EXIT_CODE_SUCCESS = 0
EXIT_CODE_ERROR = 1
EXIT_CODE_INTERRUPTED = 130
# Reserved for "findings present and --fail requested"
EXIT_CODE_RESULTS_FOUND = 183

DEFAULT_GITHUB_ENDPOINT = "https://api.github.com"
DEFAULT_GITLAB_ENDPOINT = "https://gitlab.com"
DEFAULT_CIRCLECI_ENDPOINT = "https://circleci.com/api/v1.1"

# Environment fallbacks, read only when the flag is empty
ENV_GITHUB_TOKEN = "GITHUB_TOKEN"
ENV_GITLAB_TOKEN = "GITLAB_TOKEN"
ENV_AWS_ACCESS_KEY_ID = "AWS_ACCESS_KEY_ID"
ENV_AWS_SECRET_ACCESS_KEY = "AWS_SECRET_ACCESS_KEY"
ENV_CIRCLECI_TOKEN = "CIRCLECI_TOKEN"
ENV_LOG_FORMAT = "TRUFFLESCAN_LOG_FORMAT"


class OutputMode(Enum):
    PLAIN = "plain"
    LEGACY_JSON = "legacy-json"
    JSON = "json"


# ===================================================================
# COMMAND OPTIONS
# ===================================================================

@dataclass(frozen=True)
class GitOptions:
    uri: str
    include_paths: str = ""
    exclude_paths: str = ""
    since_commit: str = ""
    branch: str = ""
    max_depth: int = 0


@dataclass(frozen=True)
class GitHubOptions:
    endpoint: str = DEFAULT_GITHUB_ENDPOINT
    repos: Tuple[str, ...] = ()
    orgs: Tuple[str, ...] = ()
    token: str = ""
    include_forks: bool = False
    include_members: bool = False
    include_repos: Tuple[str, ...] = ()
    exclude_repos: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GitLabOptions:
    endpoint: str = DEFAULT_GITLAB_ENDPOINT
    repos: Tuple[str, ...] = ()
    token: str = ""
    include_paths: str = ""
    exclude_paths: str = ""


@dataclass(frozen=True)
class FilesystemOptions:
    directories: Tuple[str, ...] = ()


@dataclass(frozen=True)
class S3Options:
    key: str = ""
    secret: str = ""
    cloud_environment: bool = False
    buckets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SyslogOptions:
    address: str = ""
    protocol: str = ""
    cert_path: str = ""
    key_path: str = ""
    format: str = ""


@dataclass(frozen=True)
class CircleCIOptions:
    token: str = ""


CommandOptions = Union[
    GitOptions, GitHubOptions, GitLabOptions, FilesystemOptions,
    S3Options, SyslogOptions, CircleCIOptions,
]


# ===================================================================
# SETTINGS
# ===================================================================

@dataclass(frozen=True)
class Settings:
    """Immutable view of every global flag plus the selected command."""
    command: str
    options: CommandOptions
    debug: bool = False
    trace: bool = False
    output_mode: OutputMode = OutputMode.PLAIN
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    no_verification: bool = False
    only_verified: bool = False
    filter_unverified: bool = False
    config_file: str = ""
    print_avg_detector_time: bool = False
    no_update: bool = False
    fail: bool = False
    log_format: str = "text"

    @property
    def verify(self) -> bool:
        return not self.no_verification

    @classmethod
    def from_args(cls, args: Any, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build Settings from an argparse namespace and an environment mapping.

        Concurrency is forced to 1 when a git starting commit is given so the
        history is walked strictly in order.

        Args:
            args: Parsed argparse namespace
            environ: Environment used for credential fallbacks (default: os.environ)

        Returns:
            Fully resolved Settings

        Raises:
            ConfigurationError: concurrency below 1 or unknown command
        """
        environ = os.environ if environ is None else environ
        options = _build_options(args, environ)

        concurrency = args.concurrency
        if concurrency is None:
            concurrency = os.cpu_count() or 1
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {concurrency}")
        if isinstance(options, GitOptions) and options.since_commit:
            concurrency = 1

        if args.json_legacy:
            output_mode = OutputMode.LEGACY_JSON
        elif args.json:
            output_mode = OutputMode.JSON
        else:
            output_mode = OutputMode.PLAIN

        log_format = environ.get(ENV_LOG_FORMAT, "") or "text"
        if output_mode is OutputMode.JSON:
            log_format = "json"

        return cls(
            command=args.command,
            options=options,
            debug=args.debug,
            trace=args.trace,
            output_mode=output_mode,
            concurrency=concurrency,
            no_verification=args.no_verification,
            only_verified=args.only_verified,
            filter_unverified=args.filter_unverified,
            config_file=args.config or "",
            print_avg_detector_time=args.print_avg_detector_time,
            no_update=args.no_update,
            fail=args.fail,
            log_format=log_format,
        )


def _fallback(value: Optional[str], environ: Mapping[str, str], name: str) -> str:
    return value or environ.get(name, "")


def _build_options(args: Any, environ: Mapping[str, str]) -> CommandOptions:
    command = args.command

    if command == "git":
        return GitOptions(
            uri=args.uri,
            include_paths=args.include_paths or "",
            exclude_paths=args.exclude_paths or "",
            since_commit=args.since_commit or "",
            branch=args.branch or "",
            max_depth=args.max_depth or 0,
        )
    if command == "github":
        return GitHubOptions(
            endpoint=args.endpoint,
            repos=tuple(args.repo or ()),
            orgs=tuple(args.org or ()),
            token=_fallback(args.token, environ, ENV_GITHUB_TOKEN),
            include_forks=args.include_forks,
            include_members=args.include_members,
            include_repos=tuple(args.include_repos or ()),
            exclude_repos=tuple(args.exclude_repos or ()),
        )
    if command == "gitlab":
        return GitLabOptions(
            endpoint=args.endpoint,
            repos=tuple(args.repo or ()),
            token=_fallback(args.token, environ, ENV_GITLAB_TOKEN),
            include_paths=args.include_paths or "",
            exclude_paths=args.exclude_paths or "",
        )
    if command == "filesystem":
        return FilesystemOptions(directories=tuple(args.directory or ()))
    if command == "s3":
        return S3Options(
            key=_fallback(args.key, environ, ENV_AWS_ACCESS_KEY_ID),
            secret=_fallback(args.secret, environ, ENV_AWS_SECRET_ACCESS_KEY),
            cloud_environment=args.cloud_environment,
            buckets=tuple(args.bucket or ()),
        )
    if command == "syslog":
        return SyslogOptions(
            address=args.address or "",
            protocol=args.protocol or "",
            cert_path=args.cert or "",
            key_path=args.key or "",
            format=args.format or "",
        )
    if command == "circleci":
        return CircleCIOptions(token=_fallback(args.token, environ, ENV_CIRCLECI_TOKEN))

    raise ConfigurationError(f"unknown command: {command}")


# ===================================================================
# DETECTOR CONFIGURATION FILE
# ===================================================================

@dataclass(frozen=True)
class DetectorSpec:
    name: str
    regex: str
    keywords: Tuple[str, ...] = ()
    description: str = ""


def read_detector_config(filepath: str) -> List[DetectorSpec]:
    """
    Load custom detector definitions from a JSON file.

    Expected format:
    {
      "detectors": [
        {
          "name": "CUSTOM_API_KEY",
          "regex": "myapi_[A-Za-z0-9]{32}",
          "keywords": ["myapi_"],
          "description": "My custom API key format"
        }
      ]
    }

    A top-level "patterns" list is accepted as an alias of "detectors".

    Args:
        filepath: Path to the configuration file

    Returns:
        List of validated detector definitions

    Raises:
        ConfigurationError: unreadable file, invalid JSON, or an invalid entry
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"could not read configuration file {filepath}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON in configuration file {filepath}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration file {filepath} must contain a JSON object")

    entries = data.get("detectors", data.get("patterns", []))
    if not isinstance(entries, list):
        raise ConfigurationError(f"detectors in {filepath} must be a JSON list")

    specs = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"detector entry {index} in {filepath} must be a JSON object")
        name = entry.get("name") or f"CUSTOM_DETECTOR_{index}"
        regex = entry.get("regex")
        if not regex:
            raise ConfigurationError(f"detector {name} has no regex")
        if not isinstance(regex, str):
            raise ConfigurationError(f"detector {name} regex must be a string")
        keywords = entry.get("keywords", [])
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ConfigurationError(f"detector {name} keywords must be a list of strings")
        try:
            re.compile(regex)
        except re.error as e:
            raise ConfigurationError(f"invalid regex for detector {name}: {e}") from e

        specs.append(DetectorSpec(
            name=name,
            regex=regex,
            keywords=tuple(keywords),
            description=entry.get("description", ""),
        ))
    return specs
