from __future__ import annotations
"""Pipeline error taxonomy.

Every failure the scene workflow can observe is raised as one of these, so the
orchestrator decides retry-vs-fail from ``retryable`` alone and the Generation
Log records ``code`` verbatim.
"""


class PipelineError(Exception):
    """Base class for all scene pipeline failures."""

    code: str = "PipelineError"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retryable: bool | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        return self.message


class InvalidInput(PipelineError):
    """Required inputs are missing or malformed. Never retried."""

    code = "InvalidInput"


class ProviderRejected(PipelineError):
    """The remote service declined the request (policy, auth, quota)."""

    code = "ProviderRejected"


class ProviderTimeout(PipelineError):
    """A submitted job did not finish within the stage's maximum wait."""

    code = "ProviderTimeout"
    retryable = True


class TransientNetwork(PipelineError):
    """Connection failures, 5xx responses and similar blips."""

    code = "TransientNetwork"
    retryable = True


class StorageFailure(PipelineError):
    """The artifact store could not read or write an object."""

    code = "StorageFailure"
    retryable = True


class NotFound(PipelineError):
    """A scene, asset or stored object does not exist."""

    code = "NotFound"


class ConcurrencyConflict(PipelineError):
    """Another workflow run already holds the scene."""

    code = "ConcurrencyConflict"


class InvalidTransition(PipelineError):
    """A status change that the scene state machine does not allow."""

    code = "InvalidTransition"
