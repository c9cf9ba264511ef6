"""
Scan orchestration.

Maps the selected command onto exactly one engine scan call, drains the
result stream while the engine finishes in the background, and decides the
exit code from what was rendered.
"""

import asyncio
import logging
import shutil
import sys
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, TextIO

from trufflescan.config import (
    EXIT_CODE_RESULTS_FOUND,
    EXIT_CODE_SUCCESS,
    OutputMode,
    Settings,
    read_detector_config,
)
from trufflescan.decoders import default_decoders
from trufflescan.detectors import default_detectors, detectors_from_specs
from trufflescan.engine import Engine, EngineOptions
from trufflescan.errors import DispatchError, EngineError
from trufflescan.filters import filter_from_files
from trufflescan.gitutil import prepare_repo
from trufflescan.output import BANNER, render
from trufflescan.sources import (
    build_filesystem_config,
    build_git_config,
    build_github_config,
    build_gitlab_config,
    build_s3_config,
    build_syslog_config,
    circleci_token,
)

logger = logging.getLogger(__name__)

AVERAGE_TIME_HEADER = (
    "Average detector time is the measurement of average time spent on each "
    "detector when results are returned."
)


# ===================================================================
# COMMAND DISPATCH
# ===================================================================

async def _prepare_git(settings: Settings, cleanup: ExitStack) -> Any:
    options = settings.options
    path_filter = filter_from_files(options.include_paths, options.exclude_paths)

    repo_path, remote = await prepare_repo(options.uri, options.since_commit)
    if remote:
        cleanup.callback(shutil.rmtree, repo_path, ignore_errors=True)
        logger.debug(f"Cloned {options.uri} to {repo_path}")

    return build_git_config(options, repo_path, path_filter)


async def _prepare_github(settings: Settings, cleanup: ExitStack) -> Any:
    return build_github_config(settings.options, settings.concurrency)


async def _prepare_gitlab(settings: Settings, cleanup: ExitStack) -> Any:
    return build_gitlab_config(settings.options)


async def _prepare_filesystem(settings: Settings, cleanup: ExitStack) -> Any:
    return build_filesystem_config(settings.options)


async def _prepare_s3(settings: Settings, cleanup: ExitStack) -> Any:
    return build_s3_config(settings.options)


async def _prepare_syslog(settings: Settings, cleanup: ExitStack) -> Any:
    return build_syslog_config(settings.options, settings.concurrency)


async def _prepare_circleci(settings: Settings, cleanup: ExitStack) -> Any:
    return circleci_token(settings.options)


@dataclass(frozen=True)
class SourceCommand:
    """How one command turns Settings into a scan target and which engine call takes it."""
    label: str
    prepare: Callable[[Settings, ExitStack], Awaitable[Any]]
    scan: Callable[[Any, Any], Awaitable[None]]


SOURCE_COMMANDS: Dict[str, SourceCommand] = {
    "git": SourceCommand("Git", _prepare_git, lambda engine, target: engine.scan_git(target)),
    "github": SourceCommand("GitHub", _prepare_github, lambda engine, target: engine.scan_github(target)),
    "gitlab": SourceCommand("GitLab", _prepare_gitlab, lambda engine, target: engine.scan_gitlab(target)),
    "filesystem": SourceCommand(
        "filesystem", _prepare_filesystem, lambda engine, target: engine.scan_filesystem(target)
    ),
    "s3": SourceCommand("S3", _prepare_s3, lambda engine, target: engine.scan_s3(target)),
    "syslog": SourceCommand("syslog", _prepare_syslog, lambda engine, target: engine.scan_syslog(target)),
    "circleci": SourceCommand("CircleCI", _prepare_circleci, lambda engine, target: engine.scan_circleci(target)),
}


# ===================================================================
# ENGINE CONFIGURATION
# ===================================================================

def build_engine_options(settings: Settings) -> EngineOptions:
    """
    Engine options for one run: default detectors plus any defined in the
    detector configuration file.

    Raises:
        ConfigurationError: unreadable or invalid detector configuration file
    """
    detectors = default_detectors()
    if settings.config_file:
        custom = detectors_from_specs(read_detector_config(settings.config_file))
        logger.info(f"Loaded {len(custom)} detectors from {settings.config_file}")
        detectors.extend(custom)

    return EngineOptions(
        concurrency=settings.concurrency,
        decoders=tuple(default_decoders()),
        detectors=tuple(detectors),
        verify=settings.verify,
        filter_unverified=settings.filter_unverified,
    )


# ===================================================================
# RESULT DRAINING
# ===================================================================

async def drain_results(engine: Any, settings: Settings, stream: Optional[TextIO] = None) -> bool:
    """
    Render every result in arrival order until the engine closes the stream.

    Returns:
        True if at least one result survived the only-verified filter
    """
    found = False
    async for result in engine.results():
        if settings.only_verified and not result.verified:
            continue
        found = True
        render(result, settings.output_mode, stream)
    return found


def average_detector_times(samples: Mapping[str, Sequence[float]]) -> Dict[str, float]:
    """Mean seconds per detector; detectors without samples are left out."""
    return {
        name: sum(durations) / len(durations)
        for name, durations in samples.items()
        if durations
    }


def format_duration(seconds: float) -> str:
    return f"{seconds:g}s"


def print_average_detector_time(samples: Mapping[str, Sequence[float]], stream: Optional[TextIO] = None) -> None:
    out = stream if stream is not None else sys.stderr
    print(AVERAGE_TIME_HEADER, file=out)
    for name, average in average_detector_times(samples).items():
        print(f"{name}: {format_duration(average)}", file=out)


def decide_exit_code(found: bool, fail: bool) -> int:
    if found and fail:
        return EXIT_CODE_RESULTS_FOUND
    return EXIT_CODE_SUCCESS


# ===================================================================
# RUN
# ===================================================================

async def run(
    settings: Settings,
    engine_factory: Callable[[EngineOptions], Any] = Engine.start,
    stream: Optional[TextIO] = None,
    err_stream: Optional[TextIO] = None
) -> int:
    """
    Execute one scan run end to end.

    Args:
        settings: Resolved process settings
        engine_factory: Builds and starts the engine (Engine.start by default)
        stream: Result sink stream (default: stdout)
        err_stream: Banner and report stream (default: stderr)

    Returns:
        Process exit code (EXIT_CODE_RESULTS_FOUND or EXIT_CODE_SUCCESS)

    Raises:
        ConfigurationError: invalid command values or detector configuration
        ResolutionError: git working path could not be prepared
        DispatchError: the engine rejected the scan
    """
    err = err_stream if err_stream is not None else sys.stderr

    command = SOURCE_COMMANDS.get(settings.command)
    if command is None:
        raise DispatchError(f"unknown command: {settings.command}")

    engine_options = build_engine_options(settings)

    with ExitStack() as cleanup:
        target = await command.prepare(settings, cleanup)
        engine = engine_factory(engine_options)

        try:
            await command.scan(engine, target)
        except (DispatchError, EngineError) as e:
            raise DispatchError(f"Failed to scan {command.label}: {e}") from e

        # Completion is observed through the result stream closing
        finisher = asyncio.ensure_future(engine.finish())

        if settings.output_mode is OutputMode.PLAIN:
            err.write(BANNER)
            err.flush()

        try:
            found = await drain_results(engine, settings, stream)
        except BaseException:
            finisher.cancel()
            engine.abort()
            raise

        logger.debug(f"scanned chunks: {engine.chunks_scanned}")
        logger.debug(f"scanned bytes: {engine.bytes_scanned}")

        if settings.print_avg_detector_time:
            print_average_detector_time(engine.detector_avg_time(), err)

    return decide_exit_code(found, settings.fail)
