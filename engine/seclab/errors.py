"""Exception hierarchy — everything the CLI turns into a red message and exit 1."""

from __future__ import annotations


class SeclabError(Exception):
    """Base class for expected, user-facing failures."""


class DeploymentError(SeclabError):
    """An ARM deployment or validation reported an error."""

    def __init__(self, message: str, code: str = "", details: list[str] | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or []

    def __str__(self) -> str:
        base = super().__str__()
        if self.code:
            base = f"[{self.code}] {base}"
        if self.details:
            base += "\n" + "\n".join(f"  - {d}" for d in self.details)
        return base


class GitHubError(SeclabError):
    """GitHub API returned a non-retryable error (404, 403 rate limit, ...)."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class InstallError(SeclabError):
    """A tool could not be downloaded, extracted, copied or verified."""


class UnsafeArchiveError(InstallError):
    """An archive member would be written outside the extraction directory."""
