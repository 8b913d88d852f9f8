"""
Error taxonomy shared by the workflows, the API and the Celery tasks.

Interactive callers (API endpoints) let the first of these propagate and map
it to an HTTP status. Batch agents catch them per item and keep going.
"""

from __future__ import annotations


class TriageError(RuntimeError):
    """Base type for every error raised on purpose by this package."""


class IssueValidationError(TriageError):
    """Caller input is missing or malformed. Always recoverable by the caller."""

    def __init__(self, errors: dict[str, list[str]], message: str = "Invalid input"):
        super().__init__(message)
        self.errors = errors


class IssueNotFoundError(TriageError):
    def __init__(self, issue_id: int):
        super().__init__(f"Issue {issue_id} not found")
        self.issue_id = issue_id


class PersistenceError(TriageError):
    """A database read or write failed."""


class ProviderError(TriageError):
    """Base model-server error type for retry decisions."""


class UpstreamUnavailableError(ProviderError):
    """Model server unreachable or answered with a non-success status."""


class UpstreamTimeoutError(UpstreamUnavailableError):
    """Model server did not answer within the caller-enforced timeout."""


class MalformedResponseError(ProviderError):
    """Model server answered, but the payload lacks the expected fields."""


class InvalidModelOutputError(ProviderError):
    """Model answered, but the content failed JSON parsing or schema validation."""
