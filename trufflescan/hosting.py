"""
Hosting platform and CI readers: GitHub (PyGithub), GitLab and CircleCI
(REST over aiohttp).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import aiohttp
from github import Auth, Github, GithubException, RateLimitExceededException

from trufflescan.config import DEFAULT_CIRCLECI_ENDPOINT
from trufflescan.errors import ResolutionError
from trufflescan.filters import match_repo_globs
from trufflescan.models import Chunk, SourceType
from trufflescan.readers import ChunkStream, cloned_history, merge_streams
from trufflescan.sources import SourceConfig

logger = logging.getLogger(__name__)

# GitHub API rate limiting
GITHUB_API_RATE_LIMIT = 5000  # requests per hour
GITHUB_API_BACKOFF_BASE = 2.0
GITHUB_API_MAX_RETRIES = 5

HTTP_TIMEOUT_SECONDS = 30
GITLAB_PAGE_SIZE = 100
CIRCLECI_BUILD_LIMIT = 100


# ===================================================================
# RATE LIMITING & BACKOFF
# ===================================================================

@dataclass
class RateLimitState:
    """Track rate limit state for GitHub API."""
    requests_remaining: int = GITHUB_API_RATE_LIMIT
    reset_time: datetime = field(default_factory=datetime.now)
    total_requests: int = 0
    total_waits: int = 0


class GitHubRateLimiter:
    """Rate limiter with exponential backoff for GitHub API."""

    def __init__(self, requests_per_hour: int = GITHUB_API_RATE_LIMIT):
        self.requests_per_hour = requests_per_hour
        self.min_interval = 3600.0 / requests_per_hour  # seconds between requests
        self.last_request_time = 0.0
        self.state = RateLimitState()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire permission to make a request with rate limiting."""
        async with self.lock:
            now = time.time()

            time_since_last = now - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self.state.total_waits += 1

            self.last_request_time = time.time()
            self.state.total_requests += 1
            self.state.requests_remaining -= 1

            # Reset counter every hour
            if datetime.now() >= self.state.reset_time:
                self.state.requests_remaining = self.requests_per_hour
                self.state.reset_time = datetime.now() + timedelta(hours=1)

    async def handle_rate_limit_error(self, reset_timestamp: Optional[int] = None):
        """Sleep until the advertised reset time (at least one second)."""
        if reset_timestamp:
            wait_until = datetime.fromtimestamp(reset_timestamp)
            wait_seconds = (wait_until - datetime.now()).total_seconds()
        else:
            wait_seconds = 60

        wait_seconds = max(wait_seconds, 1)
        logger.warning(f"Rate limit exceeded. Waiting {wait_seconds:.0f}s until reset")
        await asyncio.sleep(wait_seconds)

        self.state.requests_remaining = self.requests_per_hour
        self.state.reset_time = datetime.now() + timedelta(hours=1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_requests": self.state.total_requests,
            "requests_remaining": self.state.requests_remaining,
            "total_waits": self.state.total_waits,
            "reset_time": self.state.reset_time.isoformat()
        }


async def github_api_call_with_backoff(
    func,
    *args,
    rate_limiter: GitHubRateLimiter,
    max_retries: int = GITHUB_API_MAX_RETRIES,
    **kwargs
):
    """
    Execute GitHub API call with exponential backoff on rate limit errors.

    Args:
        func: Function to call (can be sync or async)
        *args: Positional arguments for func
        rate_limiter: Limiter shared by every call of one scan
        max_retries: Maximum number of retry attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call

    Raises:
        GithubException: non rate-limit API errors, or rate limiting that
            outlasts every retry
    """
    for attempt in range(max_retries):
        try:
            await rate_limiter.acquire()

            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return func(*args, **kwargs)

        except RateLimitExceededException as e:
            if attempt == max_retries - 1:
                raise
            reset_timestamp = None
            if e.headers and "x-ratelimit-reset" in e.headers:
                reset_timestamp = int(e.headers["x-ratelimit-reset"])
            await rate_limiter.handle_rate_limit_error(reset_timestamp)

        except GithubException as e:
            if e.status == 403 and 'rate limit' in str(e).lower() and attempt < max_retries - 1:
                wait_time = GITHUB_API_BACKOFF_BASE ** attempt
                logger.warning(f"GitHub API error (attempt {attempt + 1}/{max_retries}): {e}")
                logger.info(f"Backing off for {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
            else:
                raise

    raise ResolutionError(f"GitHub API call failed after {max_retries} attempts")


# ===================================================================
# GITHUB
# ===================================================================

def make_github_client(config: SourceConfig) -> Github:
    if config.token:
        return Github(auth=Auth.Token(config.token), base_url=config.endpoint)
    return Github(base_url=config.endpoint)


async def list_github_repos(
    client: Github,
    config: SourceConfig,
    rate_limiter: GitHubRateLimiter
) -> List[str]:
    """
    Clone URLs for every explicit repository plus each organization's
    repositories that pass the fork and glob filters.
    """
    urls = list(config.repos)
    call = partial(github_api_call_with_backoff, rate_limiter=rate_limiter)

    for org_name in config.orgs:
        try:
            org = await call(client.get_organization, org_name)
            repos = await call(lambda: list(org.get_repos()))
            logger.info(f"Found {len(repos)} repositories in organization {org_name}")
        except GithubException as e:
            if e.status != 404:
                raise
            # Not an organization, try as user
            logger.info(f"Not an organization, trying {org_name} as user...")
            org = await call(client.get_user, org_name)
            repos = await call(lambda: list(org.get_repos()))

        if config.include_members and hasattr(org, "get_members"):
            members = await call(lambda: list(org.get_members()))
            for member in members:
                repos.extend(await call(lambda: list(member.get_repos())))

        for repo in repos:
            if repo.fork and not config.include_forks:
                continue
            if not match_repo_globs(repo.full_name, config.include_repos, config.exclude_repos):
                logger.debug(f"Skipping {repo.full_name} (include/exclude filter)")
                continue
            if repo.clone_url not in urls:
                urls.append(repo.clone_url)

    return urls


async def github_chunks(config: SourceConfig) -> ChunkStream:
    rate_limiter = GitHubRateLimiter()
    client = make_github_client(config)
    try:
        urls = await list_github_repos(client, config, rate_limiter)
    finally:
        client.close()

    logger.info(f"Scanning {len(urls)} GitHub repositories")
    logger.debug(f"Rate limiter stats: {rate_limiter.get_stats()}")

    factories = [
        partial(cloned_history, url, SourceType.GITHUB, config.token)
        for url in urls
    ]
    async for chunk in merge_streams(factories, config.concurrency or 1, desc="Scanning repos"):
        yield chunk


# ===================================================================
# GITLAB
# ===================================================================

async def list_gitlab_repos(session: aiohttp.ClientSession, config: SourceConfig) -> List[str]:
    """Every project the token is a member of, following X-Next-Page."""
    urls = []
    page = "1"
    while page:
        async with session.get(
            f"{config.endpoint.rstrip('/')}/api/v4/projects",
            params={"membership": "true", "per_page": str(GITLAB_PAGE_SIZE), "page": page},
        ) as response:
            response.raise_for_status()
            projects = await response.json()
            page = response.headers.get("X-Next-Page", "")

        urls.extend(project["http_url_to_repo"] for project in projects)
    return urls


async def gitlab_chunks(session: aiohttp.ClientSession, config: SourceConfig) -> ChunkStream:
    try:
        urls = list(config.repos)
        if not urls:
            urls = await list_gitlab_repos(session, config)
    finally:
        await session.close()

    logger.info(f"Scanning {len(urls)} GitLab repositories")
    factories = [
        partial(cloned_history, url, SourceType.GITLAB, config.token, "oauth2", config.filter)
        for url in urls
    ]
    async for chunk in merge_streams(factories, 1, desc="Scanning repos"):
        yield chunk


# ===================================================================
# CIRCLECI
# ===================================================================

def _vcs_type(vcs_url: str) -> str:
    host = urlsplit(vcs_url).netloc
    return "bitbucket" if "bitbucket" in host else "github"


async def _get_json(session: aiohttp.ClientSession, url: str) -> Any:
    async with session.get(url) as response:
        response.raise_for_status()
        return await response.json(content_type=None)


async def circleci_chunks(
    session: aiohttp.ClientSession,
    endpoint: str = DEFAULT_CIRCLECI_ENDPOINT
) -> ChunkStream:
    """One chunk per build step output of every followed project."""
    try:
        projects = await _get_json(session, f"{endpoint}/projects")
        logger.info(f"Found {len(projects)} CircleCI projects")

        for project in projects:
            slug = f"{_vcs_type(project.get('vcs_url', ''))}/{project['username']}/{project['reponame']}"
            try:
                builds = await _get_json(
                    session, f"{endpoint}/project/{slug}?limit={CIRCLECI_BUILD_LIMIT}&shallow=true"
                )
            except aiohttp.ClientError as e:
                logger.warning(f"Could not list builds for {slug}: {e}")
                continue

            for build in builds:
                async for chunk in _build_chunks(session, endpoint, slug, build["build_num"]):
                    yield chunk
    finally:
        await session.close()


async def _build_chunks(
    session: aiohttp.ClientSession,
    endpoint: str,
    slug: str,
    build_num: int
) -> ChunkStream:
    try:
        build = await _get_json(session, f"{endpoint}/project/{slug}/{build_num}")
    except aiohttp.ClientError as e:
        logger.warning(f"Could not fetch build {slug}#{build_num}: {e}")
        return

    for step in build.get("steps", []):
        for action in step.get("actions", []):
            output_url = action.get("output_url")
            if not output_url:
                continue
            try:
                messages = await _get_json(session, output_url)
            except aiohttp.ClientError as e:
                logger.debug(f"Could not fetch step output for {slug}#{build_num}: {e}")
                continue

            text = "".join(message.get("message", "") for message in messages or [])
            if not text:
                continue
            yield Chunk(
                data=text.encode('utf-8'),
                source_type=SourceType.CIRCLECI,
                source_name=slug,
                metadata={
                    "project": slug,
                    "build_number": build_num,
                    "step": step.get("name", ""),
                    "link": build.get("build_url", ""),
                },
            )


def circleci_session(token: str) -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        headers={"Circle-Token": token, "Accept": "application/json"},
        timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS),
    )


def gitlab_session(token: str) -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        headers={"PRIVATE-TOKEN": token},
        timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS),
    )
