"""Include/exclude path filters compiled from newline separated regex files."""

import fnmatch
import re
from dataclasses import dataclass
from typing import Iterable, Pattern, Tuple

from trufflescan.errors import ConfigurationError


@dataclass(frozen=True)
class PathFilter:
    """
    Compiled include and exclude regex sets.

    A path passes when it matches no exclude pattern and, if any include
    patterns exist, at least one of them.
    """
    include: Tuple[Pattern, ...] = ()
    exclude: Tuple[Pattern, ...] = ()

    def passes(self, path: str) -> bool:
        if any(pattern.search(path) for pattern in self.exclude):
            return False
        if not self.include:
            return True
        return any(pattern.search(path) for pattern in self.include)

    def __bool__(self) -> bool:
        return bool(self.include or self.exclude)


def _read_patterns(filename: str) -> Tuple[Pattern, ...]:
    if not filename:
        return ()

    try:
        with open(filename, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ConfigurationError(f"could not read filter file {filename}: {e}") from e

    patterns = []
    for line_num, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            patterns.append(re.compile(line))
        except re.error as e:
            raise ConfigurationError(
                f"invalid regex in {filename} line {line_num}: {e}"
            ) from e
    return tuple(patterns)


def filter_from_files(include_file: str = "", exclude_file: str = "") -> PathFilter:
    """
    Build a PathFilter from two optional files of newline separated regexes.

    Empty filenames mean "no patterns". An unreadable file or an invalid
    regex raises ConfigurationError.
    """
    return PathFilter(
        include=_read_patterns(include_file),
        exclude=_read_patterns(exclude_file),
    )


def match_repo_globs(
    full_name: str,
    include_globs: Iterable[str],
    exclude_globs: Iterable[str]
) -> bool:
    """Glob filter on a hosting platform repository full name (org/repo)."""
    include_globs = list(include_globs)
    if any(fnmatch.fnmatch(full_name, pattern) for pattern in exclude_globs):
        return False
    if not include_globs:
        return True
    return any(fnmatch.fnmatch(full_name, pattern) for pattern in include_globs)

