"""
Git helpers: resolving a scan URI to a local working path and walking
commit history into chunks of added lines.
"""

import asyncio
import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from trufflescan.errors import ResolutionError
from trufflescan.filters import PathFilter
from trufflescan.logging_setup import TRACE
from trufflescan.models import Chunk, SourceType

logger = logging.getLogger(__name__)

CLONE_TIMEOUT_SECONDS = 600
REMOTE_SCHEMES = ("http", "https", "ssh")

# Record separator + unit separators keep commit headers unambiguous
COMMIT_MARKER = "\x1ecommit\x1f"
LOG_FORMAT = "%x1ecommit%x1f%H%x1f%ae%x1f%aI%x1f%s"
HUNK_HEADER = re.compile(r'^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@')


# ===================================================================
# REPOSITORY PREPARATION
# ===================================================================

def is_remote_uri(uri: str) -> bool:
    if uri.startswith("git@"):
        return True
    return urlsplit(uri).scheme in REMOTE_SCHEMES


def with_token(uri: str, token: str, username: str = "x-access-token") -> str:
    """Embed a token as basic-auth credentials in an https clone URL."""
    if not token:
        return uri
    parts = urlsplit(uri)
    if parts.scheme != "https" or "@" in parts.netloc:
        return uri
    return urlunsplit(parts._replace(netloc=f"{username}:{token}@{parts.netloc}"))


async def _run_git(*args: str, timeout: Optional[float] = None) -> Tuple[int, bytes, bytes]:
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout, stderr


async def clone_repo(uri: str, dest: Path, token: str = "", attempts: int = 1) -> Path:
    """
    Clone a repository with its full history into dest.

    Args:
        uri: Remote clone URL
        dest: Target directory (must not exist or be empty)
        token: Optional token embedded into https URLs
        attempts: Number of tries before giving up

    Returns:
        The clone directory

    Raises:
        ResolutionError: every attempt failed or timed out
    """
    clone_url = with_token(uri, token)
    last_error = ""

    for attempt in range(attempts):
        logger.debug(f"Cloning {uri} (attempt {attempt + 1}/{attempts})")
        try:
            returncode, _, stderr = await _run_git(
                "clone", "--quiet", "--no-checkout", clone_url, str(dest),
                timeout=CLONE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            last_error = f"timed out after {CLONE_TIMEOUT_SECONDS}s"
            logger.warning(f"Clone timeout for {uri}")
            continue
        except OSError as e:
            raise ResolutionError(f"could not run git: {e}") from e

        if returncode == 0:
            logger.debug(f"Cloned {uri} into {dest}")
            return dest

        # Never echo the tokenised URL back
        last_error = stderr.decode('utf-8', errors='ignore').replace(clone_url, uri)[:200].strip()
        logger.warning(f"Clone failed for {uri}: {last_error}")
        shutil.rmtree(dest, ignore_errors=True)

    raise ResolutionError(f"failed to clone {uri}: {last_error}")


async def commit_exists(repo_path: str, commit: str) -> bool:
    returncode, _, _ = await _run_git("-C", repo_path, "cat-file", "-e", f"{commit}^{{commit}}")
    return returncode == 0


async def prepare_repo(uri: str, since_commit: str = "", token: str = "") -> Tuple[str, bool]:
    """
    Resolve a git URI to a local working path.

    file:// URIs and plain directory paths are used in place. Remote URIs
    are cloned into a fresh temporary directory, and the caller owns its
    removal.

    Args:
        uri: Local directory, file://, https://, http://, ssh:// or git@ URI
        since_commit: Optional starting commit that must exist in the repo
        token: Optional token for https clones

    Returns:
        Tuple of (path, remote) where remote marks a temporary clone

    Raises:
        ResolutionError: unsupported scheme, missing path, failed clone, or
            a starting commit that is not in the repository
    """
    if "://" not in uri and Path(uri).is_dir():
        path = uri
        remote = False
    elif uri.startswith("file://"):
        path = uri[len("file://"):]
        if not Path(path).is_dir():
            raise ResolutionError(f"repository path does not exist: {path}")
        remote = False
    elif is_remote_uri(uri):
        path = tempfile.mkdtemp(prefix="trufflescan_")
        try:
            await clone_repo(uri, Path(path), token=token)
        except ResolutionError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        remote = True
    else:
        raise ResolutionError(
            f"unsupported URI {uri!r}: https://, file://, or ssh:// schema expected"
        )

    if since_commit and not await commit_exists(path, since_commit):
        if remote:
            shutil.rmtree(path, ignore_errors=True)
        raise ResolutionError(f"commit {since_commit} not found in {uri}")

    return path, remote


# ===================================================================
# HISTORY WALK
# ===================================================================

def build_log_args(repo_path: str, head_ref: str = "", base_ref: str = "", max_depth: int = 0) -> List[str]:
    args = [
        "-C", repo_path, "log", "-p", "-U0", "--no-color", "--no-renames",
        f"--format={LOG_FORMAT}",
    ]
    if base_ref:
        # Oldest first so the base bound is walked in order
        args.append("--reverse")
    if max_depth > 0:
        args.append(f"--max-count={max_depth}")

    if base_ref:
        args.append(f"{base_ref}..{head_ref or 'HEAD'}")
    elif head_ref:
        args.append(head_ref)
    else:
        args.append("--all")
    return args


class HistoryParser:
    """
    Incremental parser for `git log -p -U0` output.

    Feed lines one at a time; completed (commit, file) sections come back
    as chunks of added lines.
    """

    def __init__(self, source_name: str, source_type: SourceType = SourceType.GIT,
                 path_filter: Optional[PathFilter] = None):
        self.source_name = source_name
        self.source_type = source_type
        self.path_filter = path_filter
        self.commit = ""
        self.email = ""
        self.timestamp = ""
        self.message = ""
        self.file: Optional[str] = None
        self.in_header = False
        self.new_line = 0
        self.added: List[Tuple[int, str]] = []

    def feed(self, line: str) -> Optional[Chunk]:
        if line.startswith(COMMIT_MARKER):
            chunk = self._flush()
            fields = line[len(COMMIT_MARKER):].split("\x1f", 3)
            fields += [""] * (4 - len(fields))
            self.commit, self.email, self.timestamp, self.message = fields
            self.file = None
            return chunk

        if line.startswith("diff --git "):
            chunk = self._flush()
            self.file = None
            self.in_header = True
            return chunk

        if self.in_header:
            if line.startswith("+++ "):
                target = line[4:]
                self.file = None if target == "/dev/null" else target[2:] if target.startswith("b/") else target
            elif line.startswith("@@"):
                self.in_header = False
                self._start_hunk(line)
            return None

        if line.startswith("@@"):
            self._start_hunk(line)
        elif line.startswith("+"):
            self.added.append((self.new_line, line[1:]))
            self.new_line += 1
        elif line.startswith(" "):
            self.new_line += 1
        return None

    def close(self) -> Optional[Chunk]:
        return self._flush()

    def _start_hunk(self, line: str) -> None:
        match = HUNK_HEADER.match(line)
        self.new_line = int(match.group(1)) if match else 0

    def _flush(self) -> Optional[Chunk]:
        added, self.added = self.added, []
        if not added or self.file is None:
            return None
        if self.path_filter is not None and not self.path_filter.passes(self.file):
            logger.log(TRACE, f"filtered out {self.file}")
            return None

        return Chunk(
            data="\n".join(text for _, text in added).encode('utf-8'),
            source_type=self.source_type,
            source_name=self.source_name,
            metadata={
                "commit": self.commit,
                "email": self.email,
                "timestamp": self.timestamp,
                "message": self.message,
                "file": self.file,
                "line": added[0][0],
                "repository": self.source_name,
            },
        )


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """Read one line of any length; empty bytes at end of stream."""
    pieces = []
    while True:
        try:
            pieces.append(await reader.readuntil(b"\n"))
            break
        except asyncio.IncompleteReadError as e:
            pieces.append(e.partial)
            break
        except asyncio.LimitOverrunError as e:
            # Line longer than the buffer limit: take what is buffered and keep going
            pieces.append(await reader.readexactly(e.consumed))
    return b"".join(pieces)


async def iter_history(
    repo_path: str,
    source_name: str,
    head_ref: str = "",
    base_ref: str = "",
    max_depth: int = 0,
    path_filter: Optional[PathFilter] = None,
    source_type: SourceType = SourceType.GIT,
) -> AsyncIterator[Chunk]:
    """Stream one chunk per (commit, file) of added lines."""
    proc = await asyncio.create_subprocess_exec(
        "git", *build_log_args(repo_path, head_ref, base_ref, max_depth),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    stderr_reader = asyncio.ensure_future(proc.stderr.read())
    parser = HistoryParser(source_name, source_type, path_filter)

    try:
        while True:
            raw = await _read_line(proc.stdout)
            if not raw:
                break
            chunk = parser.feed(raw.decode('utf-8', errors='replace').rstrip("\n"))
            if chunk is not None:
                yield chunk
        chunk = parser.close()
        if chunk is not None:
            yield chunk
        await proc.wait()
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            stderr_reader.cancel()

    stderr = (await stderr_reader).decode('utf-8', errors='ignore')[:200].strip()
    if proc.returncode != 0:
        logger.warning(f"git log exited with {proc.returncode} for {source_name}: {stderr}")
