"""Exception hierarchy for the commit crawler."""

from typing import Optional, Tuple


class CrawlerError(Exception):
    """Base exception for all crawler-related errors."""


class ConfigError(CrawlerError):
    """Raised when the execution configuration is invalid."""


class PlatformError(CrawlerError):
    """Raised when the GitHub API fails or returns something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StorageError(CrawlerError):
    """Raised when a database operation fails."""


class TraversalError(CrawlerError):
    """Raised when the traversal reaches a state it can never legally be in."""


class ContinuationRegressionError(CrawlerError):
    """Raised when a continuation would move a lineage backwards.

    ``stored`` and ``attempted`` are ``(repository_id, cursor)`` pairs.
    """

    def __init__(self, lineage: str, stored: Tuple[int, int], attempted: Tuple[int, int]):
        self.lineage = lineage
        self.stored = stored
        self.attempted = attempted
        super().__init__(
            f"Continuation for lineage {lineage} would regress "
            f"from repository {stored[0]} (cursor {stored[1]}) "
            f"to repository {attempted[0]} (cursor {attempted[1]})"
        )
