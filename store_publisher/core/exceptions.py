"""Deployment error taxonomy for store-publisher."""

from typing import Any


class DeploymentError(Exception):
    """Base exception for every failure surfaced by the publisher.

    ``retryable`` may be ``None`` when retryability is decided case by case;
    the deployer boundary resolves it with the shared heuristic.
    """

    default_code = "DEPLOYMENT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool | None = False,
    ):
        self.message = message
        self.code = code or self.default_code
        self.platform = str(platform) if platform is not None else None
        self.details = details or {}
        self.retryable = retryable
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the deployment summary."""
        return {
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "retryable": bool(self.retryable),
        }


class ValidationError(DeploymentError):
    """Malformed or missing input or credential structure."""

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        validation_errors: list[str] | None = None,
        code: str | None = None,
        platform: str | None = None,
    ):
        self.validation_errors = validation_errors or []
        super().__init__(
            message,
            code,
            platform,
            {"validation_errors": self.validation_errors} if self.validation_errors else None,
            retryable=False,
        )


class AuthenticationError(DeploymentError):
    """Credentials rejected, or signing/verification failed."""

    default_code = "AUTHENTICATION_ERROR"

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, None, platform, details, retryable=False)


class ArtifactError(DeploymentError):
    """Artifact missing, of the wrong type, or oversized."""

    default_code = "ARTIFACT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, platform, details, retryable=False)


class NetworkError(DeploymentError):
    """Transport failure or a 5xx/429/rate-limit response."""

    default_code = "NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = True,
    ):
        super().__init__(message, None, platform, details, retryable=retryable)


class OperationTimeoutError(DeploymentError):
    """A bounded operation exceeded its deadline."""

    default_code = "TIMEOUT_ERROR"

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, None, platform, details, retryable=True)


class AbortedError(DeploymentError):
    """An operation was cancelled through its cancellation token."""

    default_code = "ABORTED"

    def __init__(self, message: str = "Operation was aborted", platform: str | None = None):
        super().__init__(message, None, platform, None, retryable=False)
