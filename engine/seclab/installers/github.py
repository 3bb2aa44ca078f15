"""GitHub releases — latest-release lookup, asset selection, downloads.

Uses the REST API v3 (https://docs.github.com/rest/releases/releases).
Anonymous requests are limited to 60/hour; set SECLAB_GITHUB_TOKEN to lift it.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .. import __version__
from ..common import log_quiet, print_step, print_success
from ..errors import GitHubError
from ..resilience import call_with_retry

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
USER_AGENT = f"seclab/{__version__}"

# HTTPError is a URLError, so 4xx answers are turned into GitHubError
# before they reach the retry wrapper.
NETWORK_ERRORS = (URLError, ConnectionError, TimeoutError)

# Only API calls carry the token, and never past a redirect (zipballs land on codeload)
_TOKEN_HOSTS = {"api.github.com"}


class GitHubClient:
    """Thin REST client for the few release endpoints the installers need."""

    def __init__(self, token: Optional[str] = None, api: str = GITHUB_API, timeout: float = 60.0):
        if token is None:
            from ..config import settings
            token = settings.github_token
        self._token = token or None
        self.api = api.rstrip("/")
        self.timeout = timeout

    def _request(self, url: str, accept: str) -> Request:
        req = Request(url, headers={"Accept": accept, "User-Agent": USER_AGENT}, method="GET")
        if self._token and urlparse(url).hostname in _TOKEN_HOSTS:
            req.add_unredirected_header("Authorization", f"Bearer {self._token}")
        return req

    def _open(self, url: str, accept: str):
        req = self._request(url, accept)
        try:
            return urlopen(req, timeout=self.timeout)
        except HTTPError as e:
            if e.code >= 500:
                raise
            error_body = e.read().decode(errors="replace") if e.fp else str(e)
            logger.error("GitHub error %s %s: %s", e.code, url, error_body)
            message = f"GET {url} returned HTTP {e.code}"
            if e.code == 403 and "rate limit" in error_body.lower():
                message += " (API rate limit exceeded; set SECLAB_GITHUB_TOKEN)"
            elif e.code == 404:
                message += " (not found)"
            raise GitHubError(message, status=e.code) from e

    def _api(self, path: str) -> Any:
        url = f"{self.api}{path}"

        def fetch() -> Any:
            with self._open(url, "application/vnd.github+json") as resp:
                return json.loads(resp.read())

        fetch.__name__ = f"GET {path}"
        return call_with_retry(fetch, retryable_exceptions=NETWORK_ERRORS)

    # ── Releases ──────────────────────────────────────────────────────────

    def latest_release(self, repo: str) -> dict[str, Any]:
        """``GET /repos/{repo}/releases/latest`` (drafts and prereleases excluded)."""
        release = self._api(f"/repos/{repo}/releases/latest")
        log_quiet(f"{repo} latest release: {release.get('tag_name')}")
        return release

    @staticmethod
    def find_asset(release: dict[str, Any], pattern: str) -> dict[str, Any]:
        """First release asset whose name matches the glob *pattern*."""
        assets = release.get("assets") or []
        for asset in assets:
            if fnmatch.fnmatch(asset.get("name", ""), pattern):
                return asset
        names = ", ".join(a.get("name", "?") for a in assets) or "none"
        raise GitHubError(
            f"No asset matching {pattern!r} in release {release.get('tag_name', '?')} "
            f"(available: {names})"
        )

    @staticmethod
    def zipball_url(release: dict[str, Any]) -> str:
        url = release.get("zipball_url")
        if not url:
            raise GitHubError(f"Release {release.get('tag_name', '?')} has no zipball")
        return url

    # ── Downloads ─────────────────────────────────────────────────────────

    def download(self, url: str, dest: Path) -> Path:
        """Stream *url* to *dest*, retrying network failures. Returns *dest*."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        print_step(f"Downloading {url}")

        def fetch() -> None:
            with self._open(url, "application/octet-stream") as resp, partial.open("wb") as fh:
                shutil.copyfileobj(resp, fh)

        fetch.__name__ = f"download {dest.name}"
        try:
            call_with_retry(fetch, retryable_exceptions=NETWORK_ERRORS)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(dest)
        size_kb = dest.stat().st_size // 1024
        print_success(f"Downloaded {dest.name} ({size_kb} KiB)")
        return dest
