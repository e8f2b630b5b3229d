# kwmon_cli/fetcher.py
"""
Read access to commit, branch and blob data from the GitHub REST API.

Every request is bounded by a timeout. Failures surface as FetchError (or its
RateLimitError / BlobSkippedError subclasses) so callers can treat them as
non-fatal for the current pass.
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests

from .exceptions import BlobSkippedError, FetchError, RateLimitError
from .models import Commit, FileChange

logger = logging.getLogger('kwmon-cli.fetcher')

DEFAULT_API_URL = 'https://api.github.com'
DEFAULT_TIMEOUT = 15
DEFAULT_MAX_FILE_SIZE = 1_000_000
RAW_MEDIA_TYPE = 'application/vnd.github.raw'
BLOB_CHUNK_SIZE = 64 * 1024


class GitHubFetcher:
    """Thin client over the GitHub endpoints the scan engine needs."""

    SERVICE_NAME = "GitHub"

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = str(api_url).rstrip('/')
        self.timeout = timeout
        self.max_retries = max(0, int(max_retries))
        self.session = session or requests.Session()

        from . import __version__ as kwmon_version
        self.session.headers.update({
            'User-Agent': f'kwmon-cli/{kwmon_version}',
            'Accept': 'application/vnd.github+json',
        })
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'
        else:
            logger.warning("No GitHub token configured; requests are unauthenticated and heavily rate limited.")

    # --- HTTP helpers ---

    def _request_with_retries(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
        initial_wait: float = 1.5,
        max_wait: float = 30.0,
    ) -> requests.Response:
        """GET ``path`` and return the successful response. Retries timeouts and 5xx; raises FetchError otherwise."""
        url = f"{self.api_url}{path}"
        wait_time = initial_wait
        last_exception: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.get(url, params=params, headers=headers, stream=stream, timeout=self.timeout)
            except requests.exceptions.Timeout as e:
                last_exception = e
                if attempt < self.max_retries:
                    logger.warning(
                        f"⏳ Timeout requesting {path}. Retrying in {wait_time:.1f}s "
                        f"({attempt+1}/{self.max_retries+1})..."
                    )
                    time.sleep(wait_time + random.uniform(0.1, 0.5))
                    wait_time = min(wait_time * 1.8, max_wait)
                    continue
                break
            except requests.exceptions.RequestException as e:
                last_exception = e
                logger.error(f"❌ Network error requesting {path}: {e}")
                break

            last_status = resp.status_code
            if resp.status_code < 400:
                return resp

            body = resp.text[:100]
            resp.close()

            if resp.status_code in (403, 429) and resp.headers.get('X-RateLimit-Remaining') == '0':
                reset_header = resp.headers.get('X-RateLimit-Reset')
                reset_time = int(reset_header) if reset_header and reset_header.isdigit() else None
                raise RateLimitError(self.SERVICE_NAME, reset_time=reset_time, status_code=resp.status_code)

            if 500 <= resp.status_code < 600:
                if attempt < self.max_retries:
                    sleep_time = wait_time + random.uniform(0.1, 0.5)
                    logger.warning(
                        f"⏳ {self.SERVICE_NAME} server error ({resp.status_code}) for {path}. "
                        f"Retrying in {sleep_time:.1f}s (Attempt {attempt+1}/{self.max_retries+1})..."
                    )
                    time.sleep(sleep_time)
                    wait_time = min(wait_time * 2, max_wait)
                    continue
                break

            raise FetchError(
                f"{self.SERVICE_NAME} request failed for {path}: {body}",
                target=path,
                status_code=resp.status_code,
            )

        message = f"{self.SERVICE_NAME} request for {path} failed after {attempt+1} attempts."
        if last_exception:
            message += f" Last error: {type(last_exception).__name__}: {last_exception}"
        raise FetchError(message, target=path, status_code=last_status, original_error=last_exception)

    def _get_with_retries(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``path`` and return decoded JSON."""
        resp = self._request_with_retries(path, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {path}", target=path, original_error=e)

    # --- Conversion helpers ---

    @staticmethod
    def _to_commit(item: Dict[str, Any], with_files: bool = False) -> Commit:
        commit_data = item.get('commit') or {}
        author = commit_data.get('author') or {}
        files = ()
        if with_files:
            files = tuple(
                FileChange(
                    filename=f.get('filename', ''),
                    status=f.get('status', 'modified'),
                    blob_sha=None if f.get('status') == 'removed' else f.get('sha'),
                    size_bytes=f.get('size'),
                )
                for f in item.get('files') or []
            )
        return Commit(
            sha=item['sha'],
            author_name=author.get('name') or '',
            message=commit_data.get('message') or '',
            html_url=item.get('html_url') or '',
            changed_files=files,
        )

    # --- Operations ---

    def list_recent_commits(self, owner: str, repo: str, branch: str, limit: int = 10) -> List[Commit]:
        """Most recent ``limit`` commits on ``branch``, newest first."""
        data = self._get_with_retries(
            f"/repos/{owner}/{repo}/commits",
            params={'sha': branch, 'per_page': limit},
        )
        if not isinstance(data, list):
            raise FetchError(f"Unexpected commit list payload for {owner}/{repo}@{branch}", target=f"{owner}/{repo}")
        try:
            commits = [self._to_commit(item) for item in data[:limit]]
        except (KeyError, TypeError, AttributeError) as e:
            raise FetchError(f"Malformed commit entry for {owner}/{repo}@{branch}", target=f"{owner}/{repo}", original_error=e)
        logger.debug(f"Fetched {len(commits)} commits for {owner}/{repo}@{branch}")
        return commits

    def get_commit_detail(self, owner: str, repo: str, sha: str) -> Commit:
        """The commit with its changed files populated."""
        data = self._get_with_retries(f"/repos/{owner}/{repo}/commits/{sha}")
        if not isinstance(data, dict):
            raise FetchError(f"Unexpected commit payload for {owner}/{repo}@{sha[:12]}", target=f"{owner}/{repo}")
        try:
            return self._to_commit(data, with_files=True)
        except (KeyError, TypeError, AttributeError) as e:
            raise FetchError(f"Malformed commit detail for {owner}/{repo}@{sha[:12]}", target=f"{owner}/{repo}", original_error=e)

    def get_blob_content(self, owner: str, repo: str, blob_sha: str, max_size: Optional[int] = None) -> str:
        """Decoded text of a blob. Raises BlobSkippedError for oversize or binary blobs.

        The raw body is streamed so that a blob over ``max_size`` is abandoned
        as soon as its declared length (or the bytes read so far) exceed it.
        """
        resp = self._request_with_retries(
            f"/repos/{owner}/{repo}/git/blobs/{blob_sha}",
            headers={'Accept': RAW_MEDIA_TYPE},
            stream=True,
        )
        try:
            declared = resp.headers.get('Content-Length')
            if max_size is not None and declared and declared.isdigit() and int(declared) > max_size:
                raise BlobSkippedError(blob_sha, f"size {declared} exceeds limit {max_size}")

            chunks: List[bytes] = []
            received = 0
            try:
                for chunk in resp.iter_content(chunk_size=BLOB_CHUNK_SIZE):
                    received += len(chunk)
                    if max_size is not None and received > max_size:
                        raise BlobSkippedError(blob_sha, f"size exceeds limit {max_size}")
                    chunks.append(chunk)
            except requests.exceptions.RequestException as e:
                raise FetchError(f"Could not read blob {blob_sha[:12]}", target=f"{owner}/{repo}", original_error=e)
        finally:
            resp.close()

        raw = b''.join(chunks)
        if b'\x00' in raw:
            raise BlobSkippedError(blob_sha, "binary content")
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError:
            raise BlobSkippedError(blob_sha, "not valid UTF-8 text")

    def resolve_default_branch(self, owner: str, repo: str) -> str:
        data = self._get_with_retries(f"/repos/{owner}/{repo}")
        branch = data.get('default_branch') if isinstance(data, dict) else None
        if not branch:
            raise FetchError(f"No default branch reported for {owner}/{repo}", target=f"{owner}/{repo}")
        return branch

    def close(self) -> None:
        self.session.close()
