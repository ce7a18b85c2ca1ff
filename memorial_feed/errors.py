"""
Error taxonomy for the feed engine.

Routers translate these into HTTP responses (see ``main.py``); the service
layer raises them and never returns error sentinels.
"""
from typing import Iterable


class FeedError(Exception):
    """Base class for every error the feed engine surfaces."""


class ValidationError(FeedError):
    """Caller-supplied input can never succeed as given. Not retried."""


class TemplateValidationError(ValidationError):
    def __init__(self, statement_type: str, missing_paths: Iterable[str]) -> None:
        self.statement_type = statement_type
        self.missing_paths = list(missing_paths)
        super().__init__(
            f"Missing required fields for {statement_type}: "
            f"{', '.join(self.missing_paths)}"
        )


class TemplateNotFoundError(ValidationError):
    def __init__(self, statement_type: str) -> None:
        self.statement_type = statement_type
        super().__init__(f"No template registered for type {statement_type}")


class NotFoundError(FeedError):
    def __init__(self, kind: str, ident: str) -> None:
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} {ident} not found")


class DependencyUnavailable(FeedError):
    """A backing service (cache or persistence) timed out or refused."""

    def __init__(self, dependency: str, detail: str = "", retryable: bool = True) -> None:
        self.dependency = dependency
        self.retryable = retryable
        message = f"{dependency} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
