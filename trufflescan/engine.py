"""
Concurrent scanning engine.

Sources enqueue chunks; a pool of worker tasks decodes each chunk, runs
the detectors and puts results on a bounded result stream. finish() waits
for all enqueued work and then closes the stream.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

import aiohttp
from botocore.exceptions import BotoCoreError

from trufflescan.decoders import Decoder
from trufflescan.detectors import Detector
from trufflescan.errors import DispatchError, EngineError, TruffleScanError
from trufflescan.hosting import (
    circleci_chunks,
    circleci_session,
    github_chunks,
    gitlab_chunks,
    gitlab_session,
)
from trufflescan.logging_setup import TRACE
from trufflescan.models import Chunk, Result, redact
from trufflescan.readers import (
    ChunkStream,
    SyslogListener,
    filesystem_chunks,
    git_chunks,
    make_s3_client,
    s3_chunks,
)
from trufflescan.sources import SourceConfig

logger = logging.getLogger(__name__)

# Queue depth per worker; keeps memory bounded and lets a slow sink
# push back on the sources
QUEUE_DEPTH_PER_WORKER = 8

_CLOSED = object()


@dataclass(frozen=True)
class EngineOptions:
    concurrency: int
    decoders: Tuple[Decoder, ...]
    detectors: Tuple[Detector, ...]
    verify: bool = True
    filter_unverified: bool = False


class Engine:
    """
    One scan run. Create with Engine.start() inside a running event loop.

    Exactly one scan_* call is expected per run, followed by finish() in a
    background task while the caller drains results().
    """

    def __init__(self, options: EngineOptions):
        if options.concurrency < 1:
            raise EngineError(f"concurrency must be at least 1, got {options.concurrency}")
        self.options = options
        depth = options.concurrency * QUEUE_DEPTH_PER_WORKER
        self._chunks: asyncio.Queue = asyncio.Queue(maxsize=depth)
        self._results: asyncio.Queue = asyncio.Queue(maxsize=depth)
        self._producers: List[asyncio.Task] = []
        self._workers: List[asyncio.Task] = []
        self._finishing = False
        self._chunks_scanned = 0
        self._bytes_scanned = 0
        self._detector_times: Dict[str, List[float]] = defaultdict(list)
        self._verify_session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def start(cls, options: EngineOptions) -> "Engine":
        engine = cls(options)
        engine._workers = [
            asyncio.ensure_future(engine._worker(index))
            for index in range(options.concurrency)
        ]
        logger.debug(
            f"Engine started with {options.concurrency} workers, "
            f"{len(options.decoders)} decoders, {len(options.detectors)} detectors"
        )
        return engine

    # ===============================================================
    # SCAN ENTRY POINTS
    # ===============================================================

    async def scan_git(self, config: SourceConfig) -> None:
        self._check_open()
        if not config.repo_path:
            raise DispatchError("git scan requires a repository path")
        self._spawn("git", git_chunks(config))

    async def scan_github(self, config: SourceConfig) -> None:
        self._check_open()
        if not config.orgs and not config.repos:
            raise DispatchError("github scan requires at least one organization or repository")
        self._spawn("github", github_chunks(config))

    async def scan_gitlab(self, config: SourceConfig) -> None:
        self._check_open()
        if not config.token:
            raise DispatchError("gitlab scan requires a token")
        self._spawn("gitlab", gitlab_chunks(gitlab_session(config.token), config))

    async def scan_filesystem(self, config: SourceConfig) -> None:
        self._check_open()
        missing = [d for d in config.directories if not Path(d).is_dir()]
        if missing:
            raise DispatchError(f"not a directory: {', '.join(missing)}")
        self._spawn("filesystem", filesystem_chunks(config))

    async def scan_s3(self, config: SourceConfig) -> None:
        self._check_open()
        try:
            client = make_s3_client(config)
        except BotoCoreError as e:
            raise DispatchError(f"could not create S3 client: {e}") from e
        self._spawn("s3", s3_chunks(client, config))

    async def scan_syslog(self, config: SourceConfig) -> None:
        self._check_open()
        listener = SyslogListener(config)
        try:
            await listener.start()
        except (OSError, ValueError) as e:
            raise DispatchError(f"could not listen on {config.address}: {e}") from e
        self._spawn("syslog", listener.chunks())

    async def scan_circleci(self, token: str) -> None:
        self._check_open()
        if not token:
            raise DispatchError("circleci scan requires a token")
        self._spawn("circleci", circleci_chunks(circleci_session(token)))

    # ===============================================================
    # LIFECYCLE
    # ===============================================================

    async def finish(self) -> None:
        """
        Wait for every source and queued chunk, stop the workers and close
        the result stream.
        """
        if self._finishing:
            return
        self._finishing = True

        await asyncio.gather(*self._producers)
        await self._chunks.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        if self._verify_session is not None:
            await self._verify_session.close()
            self._verify_session = None

        await self._results.put(_CLOSED)
        logger.debug("Engine finished, result stream closed")

    def abort(self) -> None:
        """Cancel every source and worker without draining; the stream stays open."""
        self._finishing = True
        for task in self._producers + self._workers:
            task.cancel()

    async def results(self) -> AsyncIterator[Result]:
        """Results in emission order; ends when finish() closes the stream."""
        while True:
            item = await self._results.get()
            if item is _CLOSED:
                return
            yield item

    @property
    def chunks_scanned(self) -> int:
        return self._chunks_scanned

    @property
    def bytes_scanned(self) -> int:
        return self._bytes_scanned

    def detector_avg_time(self) -> Dict[str, List[float]]:
        """Elapsed seconds per detector call that returned results."""
        return {name: list(samples) for name, samples in self._detector_times.items()}

    # ===============================================================
    # INTERNALS
    # ===============================================================

    def _check_open(self) -> None:
        if self._finishing:
            raise EngineError("cannot enqueue a scan after finish()")

    def _spawn(self, name: str, stream: ChunkStream) -> None:
        self._producers.append(asyncio.ensure_future(self._produce(name, stream)))

    async def _produce(self, name: str, stream: ChunkStream) -> None:
        count = 0
        try:
            async for chunk in stream:
                await self._chunks.put(chunk)
                count += 1
        except (TruffleScanError, OSError, aiohttp.ClientError, BotoCoreError) as e:
            logger.error(f"{name} source failed: {e}", extra={"source": name})
        except Exception as e:
            logger.error(f"{name} source failed: {e}", exc_info=True, extra={"source": name})
        logger.debug(f"{name} source enqueued {count} chunks", extra={"source": name, "chunk_count": count})

    async def _worker(self, index: int) -> None:
        while True:
            chunk = await self._chunks.get()
            try:
                for result in await self._scan_chunk(chunk):
                    await self._results.put(result)
            except Exception as e:
                logger.error(f"worker {index} failed on chunk from {chunk.source_name}: {e}")
            finally:
                self._chunks.task_done()

    async def _scan_chunk(self, chunk: Chunk) -> List[Result]:
        self._chunks_scanned += 1
        self._bytes_scanned += len(chunk.data)

        results: List[Result] = []
        seen: Set[Tuple[str, str]] = set()

        for decoder in self.options.decoders:
            text = decoder.decode(chunk.data)
            if not text:
                continue

            for detector in self.options.detectors:
                started = time.monotonic()
                found = detector.find(text)
                if not found:
                    continue

                for raw in found:
                    if (detector.name, raw) in seen:
                        continue
                    seen.add((detector.name, raw))
                    verified = await self._verify(detector, raw)
                    results.append(Result(
                        detector_name=detector.name,
                        verified=verified,
                        raw=raw,
                        redacted=redact(raw),
                        source_type=chunk.source_type,
                        source_name=chunk.source_name,
                        metadata=dict(chunk.metadata),
                        decoder_name=decoder.name,
                    ))
                self._detector_times[detector.name].append(time.monotonic() - started)

        if self.options.filter_unverified:
            results = filter_unverified(results)
        if results:
            logger.log(TRACE, f"{len(results)} results in chunk from {chunk.source_name}")
        return results

    async def _verify(self, detector: Detector, raw: str) -> bool:
        if not self.options.verify or detector.verifier is None:
            return False
        if self._verify_session is None:
            self._verify_session = aiohttp.ClientSession()
        try:
            return await detector.verifier(self._verify_session, raw)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"{detector.name} verification failed: {e}", extra={"detector": detector.name})
            return False


def filter_unverified(results: Sequence[Result]) -> List[Result]:
    """Keep every verified result and only the first unverified one."""
    kept = []
    seen_unverified = False
    for result in results:
        if not result.verified:
            if seen_unverified:
                continue
            seen_unverified = True
        kept.append(result)
    return kept
