"""Error taxonomy for synchronization failures."""

from typing import Optional


class SyncError(Exception):
    """Base class for failures raised by the sync engine."""

    def __init__(self, message: str, context: str = ""):
        super().__init__(message)
        self.context = context


class NotFound(SyncError):
    """Raised when an organization or repository does not exist upstream."""

    def __init__(self, context: str):
        super().__init__(f"{context} not found", context)


class Unauthorized(SyncError):
    """Raised when the credential is missing, invalid or lacks access."""

    def __init__(self, context: str, detail: str = ""):
        message = f"Invalid GitHub token for {context}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, context)


class RateLimited(SyncError):
    """Raised when waiting for the rate-limit window would take too long."""

    def __init__(self, context: str, reset_at: float, wait_seconds: float):
        super().__init__(
            f"Rate limit exceeded for {context}; quota resets in {int(wait_seconds)}s",
            context,
        )
        self.reset_at = reset_at
        self.wait_seconds = wait_seconds


class UpstreamServerError(SyncError):
    """Raised when the upstream API keeps answering with server errors."""

    def __init__(self, context: str, status_code: Optional[int] = None, attempts: int = 1):
        status = status_code if status_code is not None else "no response"
        super().__init__(
            f"Failed to fetch {context} (status {status}, {attempts} attempt(s))",
            context,
        )
        self.status_code = status_code
        self.attempts = attempts


class ApiError(SyncError):
    """Raised for client errors that are neither auth nor not-found."""

    def __init__(self, context: str, status_code: int, detail: str = ""):
        super().__init__(f"GitHub API error {status_code} for {context}: {detail}", context)
        self.status_code = status_code


class NoRepositories(SyncError):
    """Raised when an organization yields no repositories to synchronize."""

    def __init__(self, org: str):
        super().__init__(f"No repositories found for {org}", org)


class CacheCorrupt(SyncError):
    """The persisted cache snapshot could not be parsed."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Cache snapshot {path} is unreadable: {cause}", path)
        self.cause = cause


def describe_failure(error: Exception, org: str) -> str:
    """Map a sync failure to the message shown to dashboard users."""
    if isinstance(error, NotFound):
        return f'Organization "{org}" not found. Please check the organization name and try again.'
    if isinstance(error, Unauthorized):
        return "Invalid or missing GitHub token. Please check your token and try again."
    if isinstance(error, RateLimited):
        minutes = max(1, int(error.wait_seconds // 60))
        return f"GitHub API rate limit exceeded. Please try again in {minutes} minutes or use a GitHub token."
    if isinstance(error, NoRepositories):
        return f'No repositories found for "{org}".'
    return "Failed to fetch repositories. Please try again."
