"""
Process lifecycle: update check and install, and restart-aware supervision
of the scan entry point.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import aiohttp

logger = logging.getLogger(__name__)

PACKAGE_INDEX_URL = "https://pypi.org/pypi/{name}/json"
UPDATE_CHECK_TIMEOUT_SECONDS = 5
INSTALL_TIMEOUT_SECONDS = 300
DEV_VERSION = "dev"

T = TypeVar("T")


class RestartRequested(BaseException):
    """Raised in the main thread when the restart signal arrives."""

    def __init__(self, signum: int):
        super().__init__(signum)
        self.signum = signum


@dataclass(frozen=True)
class ProcessState:
    """What the supervised program is told about its own process."""
    pid: int
    version: str
    update_version: Optional[str] = None
    restart_signal: int = signal.SIGTERM


def parse_version(version: str) -> Tuple[int, ...]:
    parts = []
    for part in version.split("."):
        digits = ""
        for char in part:
            if not char.isdigit():
                break
            digits += char
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


class UpdateFetcher:
    """Looks up the latest released version on the package index and installs it."""

    def __init__(self, current_version: str, package: str = "trufflescan"):
        self.current_version = current_version
        self.package = package

    async def latest_version(self) -> Optional[str]:
        timeout = aiohttp.ClientTimeout(total=UPDATE_CHECK_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(PACKAGE_INDEX_URL.format(name=self.package)) as response:
                if response.status != 200:
                    logger.debug(f"Update check returned HTTP {response.status}")
                    return None
                data = await response.json()
        return data.get("info", {}).get("version")

    def check(self) -> Optional[str]:
        """
        Newer released version, or None when up to date or the index is
        unreachable.
        """
        if self.current_version == DEV_VERSION:
            return None
        try:
            latest = asyncio.run(self.latest_version())
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"error occurred with updater: {e}")
            return None

        if latest and parse_version(latest) > parse_version(self.current_version):
            logger.info(f"Update available: {self.current_version} -> {latest}")
            return latest
        return None

    async def install(self, version: str) -> bool:
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "pip", "install", "--quiet", f"{self.package}=={version}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=INSTALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Installing {self.package} {version} timed out")
            return False

        if proc.returncode != 0:
            logger.warning(
                f"Installing {self.package} {version} failed: "
                f"{stderr.decode('utf-8', errors='ignore')[:200].strip()}"
            )
            return False
        return True

    def apply(self, version: str) -> bool:
        """Install the given release into the running interpreter; True on success."""
        try:
            return asyncio.run(self.install(version))
        except OSError as e:
            logger.warning(f"Installing {self.package} {version} failed: {e}")
            return False


def run_until_signal(main: Awaitable[T], signum: int) -> T:
    """
    Run a coroutine to completion, turning signum into RestartRequested.

    The signal cancels the main task, so the coroutine unwinds through its
    own cleanup inside the event loop before RestartRequested is raised.
    """
    received = []

    async def guarded() -> T:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        previous = signal.getsignal(signum)

        def on_signal() -> None:
            received.append(signum)
            task.cancel()

        try:
            loop.add_signal_handler(signum, on_signal)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"signal {signum} cannot be handled by this event loop")
            return await main

        try:
            return await main
        finally:
            loop.remove_signal_handler(signum)
            if previous is not None:
                signal.signal(signum, previous)

    try:
        return asyncio.run(guarded())
    except asyncio.CancelledError:
        if received:
            raise RestartRequested(signum) from None
        raise


class Supervisor:
    """
    Runs the program once under a restart-signal handler.

    The handler raises RestartRequested so the program unwinds through its
    own cleanup before the supervisor decides to re-execute or exit. Async
    programs hand the signal to their event loop with run_until_signal.
    """

    def __init__(
        self,
        program: Callable[[ProcessState], int],
        version: str,
        restart_signal: int = signal.SIGTERM,
        fetcher: Optional[UpdateFetcher] = None
    ):
        self.program = program
        self.version = version
        self.restart_signal = restart_signal
        self.fetcher = fetcher

    def _on_restart_signal(self, signum, frame):
        raise RestartRequested(signum)

    def run(self) -> int:
        update_version = self.fetcher.check() if self.fetcher is not None else None
        state = ProcessState(
            pid=os.getpid(),
            version=self.version,
            update_version=update_version,
            restart_signal=self.restart_signal,
        )

        previous = signal.signal(self.restart_signal, self._on_restart_signal)
        try:
            return self.program(state)
        except RestartRequested as e:
            # A second signal during the update stops the process
            signal.signal(self.restart_signal, previous)
            if update_version:
                if self.fetcher.apply(update_version):
                    logger.info(f"Restarting into version {update_version}")
                    self.restart()
                else:
                    logger.warning(
                        f"Version {update_version} is available; "
                        f"upgrade with: pip install --upgrade {self.fetcher.package}"
                    )
            return 128 + e.signum
        finally:
            signal.signal(self.restart_signal, previous)

    def restart(self) -> None:
        python_executable = sys.executable
        os.execv(python_executable, [python_executable, "-m", "trufflescan"] + sys.argv[1:])
