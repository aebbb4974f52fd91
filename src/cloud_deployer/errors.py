"""Exception taxonomy shared by the client, reconciler and orchestrator."""

from __future__ import annotations

from typing import Optional


class CloudDeployerError(RuntimeError):
    """Base class for every error raised by cloud-deployer."""


class ValidationError(CloudDeployerError):
    """Raised when a resource specification is missing mandatory fields."""

    def __init__(self, resource: str, missing: list[str]) -> None:
        self.resource = resource
        self.missing = missing
        super().__init__(f"Invalid {resource} configuration, missing: {', '.join(missing)}")


class AuthError(CloudDeployerError):
    """Raised when credentials are invalid or an access token cannot be obtained."""


class ApiError(CloudDeployerError):
    """Raised for any non-2xx response from the cloud provider."""

    def __init__(self, status: int, body: str, *, method: str = "", url: str = "") -> None:
        self.status = status
        self.body = body
        self.method = method
        self.url = url
        target = f" {method} {url}".rstrip() if method or url else ""
        super().__init__(f"API request{target} failed with status {status}: {body}")


class NotFoundError(ApiError):
    """Raised when the requested remote resource does not exist (HTTP 404)."""


class OperationTimeoutError(CloudDeployerError):
    """Raised when a poll loop does not observe a terminal state in time."""

    def __init__(self, reference: str, timeout: float) -> None:
        self.reference = reference
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {reference}")


class OperationFailedError(CloudDeployerError):
    """Raised when a long-running operation finishes with an embedded error."""

    def __init__(self, reference: str, message: Optional[str]) -> None:
        self.reference = reference
        self.message = message or "unknown error"
        super().__init__(f"Operation {reference} failed: {self.message}")


class RemoteConditionError(CloudDeployerError):
    """Raised when a resource reports one of its readiness conditions as False."""

    def __init__(self, condition_type: str, message: Optional[str]) -> None:
        self.condition_type = condition_type
        self.message = message or f"{condition_type} condition is False"
        super().__init__(self.message)


class InvalidConditionError(CloudDeployerError):
    """Raised when a required status condition is absent from a resource."""

    def __init__(self, condition_type: str) -> None:
        self.condition_type = condition_type
        super().__init__(f"{condition_type} is not a valid condition")


class StepTransitionError(CloudDeployerError):
    """Raised on an illegal deployment or step state transition."""
