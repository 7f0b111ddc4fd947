"""Error taxonomy for promotion reconciliation.

Every error raised inside a reconcile attempt derives from PromotionError.
There is no retryable/permanent split at this layer: any PromotionError
aborts the current attempt, is written to the Promotion's Ready condition,
and the controller retries the whole attempt later with backoff.
"""

from __future__ import annotations


class PromotionError(Exception):
    """Base exception for failures that abort a reconcile attempt."""

    pass


class AuthConfigurationError(PromotionError):
    """Raised when credentials for an environment are missing or invalid."""

    pass


class CloneError(PromotionError):
    """Raised when cloning or fetching an environment repository fails."""

    pass


class CheckoutError(PromotionError):
    """Raised when a promotion branch cannot be checked out."""

    pass


class ProviderError(PromotionError):
    """Raised when the git hosting provider rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PathEscapeError(PromotionError):
    """Raised when a copy path resolves outside its environment root."""

    pass


class SourceNotFoundError(PromotionError):
    """Raised when a copy operation's source path does not exist."""

    pass


class CommitError(PromotionError):
    """Raised when staging or committing in the target workspace fails."""

    pass


class PushError(PromotionError):
    """Raised when pushing the promotion branch to the target remote fails."""

    pass


class CopyError(PromotionError):
    """Raised when copying a path into the target workspace fails."""

    pass
