"""
Source readers that turn a SourceConfig into a stream of chunks.

Git history, local filesystems, S3 buckets and syslog listeners live here;
the hosting platform and CI readers are in hosting.py.
"""

import asyncio
import logging
import os
import re
import shutil
import ssl
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import aiofiles
import boto3
import botocore
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from trufflescan.errors import ResolutionError
from trufflescan.filters import PathFilter
from trufflescan.gitutil import clone_repo, iter_history, with_token
from trufflescan.models import Chunk, SourceType
from trufflescan.sources import SourceConfig

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * 1024
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
CLONE_ATTEMPTS = 3

# Path fragments never worth reading
SKIP_PATH_PATTERNS = [
    ".git/", "node_modules/", "vendor/", "__pycache__/", ".venv/", "venv/",
]

# Binary file extensions to skip
BINARY_FILE_EXTENSIONS = {
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.webp', '.tiff', '.psd',
    '.mp4', '.avi', '.mov', '.mkv', '.webm', '.mp3', '.wav', '.flac', '.ogg',
    '.zip', '.tar', '.gz', '.bz2', '.7z', '.rar', '.xz', '.tgz',
    '.exe', '.dll', '.so', '.dylib', '.bin', '.deb', '.rpm',
    '.pyc', '.pyo', '.class', '.o', '.a', '.obj', '.lib',
    '.pdf', '.ttf', '.otf', '.woff', '.woff2', '.eot',
    '.iso', '.dmg', '.img', '.pickle', '.pkl', '.parquet',
}

BINARY_SAMPLE_SIZE = 8192
BINARY_NON_TEXT_THRESHOLD = 0.30

ChunkStream = AsyncIterator[Chunk]


# ===================================================================
# SHARED HELPERS
# ===================================================================

def split_chunks(data: bytes, size: int = CHUNK_SIZE) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)] if data else []


def should_skip_path(path: str) -> bool:
    """Relative path check; a trailing slash lets directory names match."""
    normalized = "/" + path.replace(os.sep, "/").lower().strip("/") + "/"
    return any("/" + pattern in normalized for pattern in SKIP_PATH_PATTERNS)


def is_binary_file(file_path: Path, sample_size: int = BINARY_SAMPLE_SIZE) -> bool:
    """
    Detect if a file is binary by checking its first bytes.

    Args:
        file_path: Path to the file to check
        sample_size: Number of bytes to sample

    Returns:
        True if file appears to be binary, False otherwise
    """
    try:
        with open(file_path, 'rb') as f:
            chunk = f.read(sample_size)
    except OSError as e:
        logger.debug(f"Cannot read file for binary check {file_path}: {e}")
        return False

    if not chunk:
        return False
    if b'\x00' in chunk:
        return True

    text_chars = bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7f})
    non_text_count = sum(1 for byte in chunk if byte not in text_chars)
    return (non_text_count / len(chunk)) > BINARY_NON_TEXT_THRESHOLD


async def merge_streams(
    factories: Sequence[Callable[[], ChunkStream]],
    limit: int,
    desc: Optional[str] = None
) -> ChunkStream:
    """
    Run up to `limit` chunk streams at once and yield their chunks as they
    arrive. A failing stream is logged and does not stop the others.
    """
    if not factories:
        return

    queue: asyncio.Queue = asyncio.Queue(maxsize=max(limit, 1) * 4)
    semaphore = asyncio.Semaphore(max(limit, 1))
    done = object()

    async def pump(factory: Callable[[], ChunkStream]) -> None:
        try:
            async with semaphore:
                async for chunk in factory():
                    await queue.put(chunk)
        except (ResolutionError, OSError) as e:
            logger.error(f"Source stream failed: {e}")
        finally:
            await queue.put(done)

    tasks = [asyncio.ensure_future(pump(factory)) for factory in factories]
    remaining = len(tasks)

    try:
        with tqdm(total=len(tasks), desc=desc, unit="repo", disable=desc is None) as pbar:
            while remaining:
                item = await queue.get()
                if item is done:
                    remaining -= 1
                    pbar.update(1)
                    continue
                yield item
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def cloned_history(
    uri: str,
    source_type: SourceType,
    token: str = "",
    token_user: str = "x-access-token",
    path_filter: Optional[PathFilter] = None
) -> ChunkStream:
    """Clone a remote repository into a scratch directory, walk it, remove it."""
    clone_base = Path(tempfile.mkdtemp(prefix="trufflescan_"))
    try:
        await clone_repo(with_token(uri, token, username=token_user), clone_base, attempts=CLONE_ATTEMPTS)
        async for chunk in iter_history(str(clone_base), uri, path_filter=path_filter,
                                        source_type=source_type):
            yield chunk
    finally:
        shutil.rmtree(clone_base, ignore_errors=True)


# ===================================================================
# GIT
# ===================================================================

def git_chunks(config: SourceConfig) -> ChunkStream:
    return iter_history(
        config.repo_path,
        config.repo_path,
        head_ref=config.head_ref,
        base_ref=config.base_ref,
        max_depth=config.max_depth,
        path_filter=config.filter,
    )


# ===================================================================
# FILESYSTEM
# ===================================================================

def collect_files(root: Path) -> List[Path]:
    """Walk a directory tree, pruning skipped directories in place."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        relative_dir = os.path.relpath(dirpath, root)
        dirnames[:] = [d for d in dirnames if not should_skip_path(os.path.join(relative_dir, d))]
        for filename in filenames:
            file_path = Path(dirpath) / filename
            if should_skip_path(os.path.join(relative_dir, filename)):
                continue
            files.append(file_path)
    return files


async def read_file_chunks(file_path: Path) -> ChunkStream:
    if file_path.suffix.lower() in BINARY_FILE_EXTENSIONS:
        logger.debug(f"Skipping binary file (extension): {file_path}")
        return

    try:
        file_size = file_path.stat().st_size
    except OSError as e:
        logger.debug(f"Cannot stat {file_path}: {e}")
        return
    if file_size > MAX_FILE_SIZE_BYTES:
        logger.debug(f"Skipping large file: {file_path} ({file_size} bytes)")
        return
    if is_binary_file(file_path):
        logger.debug(f"Skipping binary file (content): {file_path}")
        return

    try:
        async with aiofiles.open(file_path, 'rb') as f:
            offset = 0
            while True:
                data = await f.read(CHUNK_SIZE)
                if not data:
                    break
                yield Chunk(
                    data=data,
                    source_type=SourceType.FILESYSTEM,
                    source_name=str(file_path),
                    metadata={"file": str(file_path), "offset": offset},
                )
                offset += len(data)
    except OSError as e:
        logger.warning(f"Failed to read {file_path}: {e}")


async def filesystem_chunks(config: SourceConfig) -> ChunkStream:
    loop = asyncio.get_running_loop()
    for directory in config.directories:
        root = Path(directory)
        files = await loop.run_in_executor(None, collect_files, root)
        logger.debug(f"Found {len(files)} files to scan in {root}")
        for file_path in files:
            async for chunk in read_file_chunks(file_path):
                yield chunk


# ===================================================================
# S3
# ===================================================================

def make_s3_client(config: SourceConfig) -> Any:
    """
    Explicit keys, the ambient credential chain, or unsigned access.

    Raises:
        BotoCoreError: the client could not be created
    """
    if config.cloud_environment:
        return boto3.client("s3")
    if config.key:
        return boto3.client(
            "s3",
            aws_access_key_id=config.key,
            aws_secret_access_key=config.secret,
        )
    return boto3.client("s3", config=BotoConfig(signature_version=botocore.UNSIGNED))


def _list_buckets(client: Any) -> List[str]:
    return [bucket["Name"] for bucket in client.list_buckets().get("Buckets", [])]


def _list_objects(client: Any, bucket: str) -> List[Tuple[str, int]]:
    objects = []
    paginator = client.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket):
        for obj in page.get("Contents", []):
            objects.append((obj["Key"], obj.get("Size", 0)))
    return objects


def _get_object(client: Any, bucket: str, key: str) -> bytes:
    return client.get_object(Bucket=bucket, Key=key)["Body"].read()


async def s3_chunks(client: Any, config: SourceConfig) -> ChunkStream:
    loop = asyncio.get_running_loop()
    buckets = list(config.buckets)
    if not buckets:
        buckets = await loop.run_in_executor(None, _list_buckets, client)
        logger.debug(f"Scanning all {len(buckets)} accessible buckets")

    for bucket in buckets:
        try:
            objects = await loop.run_in_executor(None, _list_objects, client, bucket)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Could not list bucket {bucket}: {e}")
            continue

        for key, size in objects:
            if key.endswith("/") or size > MAX_FILE_SIZE_BYTES:
                continue
            try:
                body = await loop.run_in_executor(None, _get_object, client, bucket, key)
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Could not read s3://{bucket}/{key}: {e}")
                continue

            for index, data in enumerate(split_chunks(body)):
                yield Chunk(
                    data=data,
                    source_type=SourceType.S3,
                    source_name=bucket,
                    metadata={
                        "bucket": bucket,
                        "file": key,
                        "link": f"https://{bucket}.s3.amazonaws.com/{key}",
                        "offset": index * CHUNK_SIZE,
                    },
                )


# ===================================================================
# SYSLOG
# ===================================================================

RFC3164_HEADER = re.compile(
    r'^<(?P<pri>\d{1,3})>(?P<timestamp>[A-Z][a-z]{2} [ \d]\d \d\d:\d\d:\d\d) '
    r'(?P<hostname>\S+) (?P<appname>[^:\[\s]+)'
)
RFC5424_HEADER = re.compile(
    r'^<(?P<pri>\d{1,3})>\d+ (?P<timestamp>\S+) (?P<hostname>\S+) '
    r'(?P<appname>\S+) (?P<procid>\S+) (?P<msgid>\S+)'
)


def parse_syslog_header(message: str, fmt: str) -> Dict[str, Any]:
    """Header fields as metadata; an unparseable header yields {}."""
    pattern = RFC5424_HEADER if fmt == "rfc5424" else RFC3164_HEADER
    match = pattern.match(message)
    if not match:
        return {}

    fields = {k: v for k, v in match.groupdict().items() if v and v != "-"}
    pri = int(fields.pop("pri"))
    fields["facility"] = pri // 8
    fields["severity"] = pri % 8
    return fields


def split_address(address: str) -> Tuple[str, int]:
    host, _, port = address.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"syslog address must be host:port, got {address!r}")
    return host, int(port)


class _SyslogDatagramProtocol(asyncio.DatagramProtocol):

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.queue.put_nowait((data, addr[0]))


class SyslogListener:
    """
    TCP (optionally TLS) or UDP syslog listener.

    start() binds the socket so bind failures surface immediately;
    chunks() then yields one chunk per received message until cancelled.
    """

    def __init__(self, config: SourceConfig):
        self.config = config
        self.queue: asyncio.Queue = asyncio.Queue()
        self._server: Optional[asyncio.AbstractServer] = None
        self._transport: Optional[asyncio.BaseTransport] = None

    async def start(self) -> None:
        host, port = split_address(self.config.address)

        if self.config.protocol == "udp":
            loop = asyncio.get_running_loop()
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _SyslogDatagramProtocol(self.queue),
                local_addr=(host, port),
            )
        else:
            ssl_context = None
            if self.config.cert_path:
                ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
                ssl_context.load_cert_chain(self.config.cert_path, self.config.key_path)
            self._server = await asyncio.start_server(self._handle_client, host, port, ssl=ssl_context)

        logger.info(f"Listening for syslog on {self.config.protocol}://{self.config.address}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        peer_host = peer[0] if peer else ""
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self.queue.put_nowait((line.rstrip(b"\r\n"), peer_host))
        finally:
            writer.close()

    async def chunks(self) -> ChunkStream:
        try:
            while True:
                data, peer_host = await self.queue.get()
                if not data:
                    continue
                metadata = parse_syslog_header(data.decode('utf-8', errors='replace'), self.config.format)
                metadata.setdefault("hostname", peer_host)
                yield Chunk(
                    data=data,
                    source_type=SourceType.SYSLOG,
                    source_name=self.config.address,
                    metadata=metadata,
                )
        finally:
            self.close()

    def close(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
