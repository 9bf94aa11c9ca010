"""Core functionality for store-publisher.

The orchestrator and action live in ``store_publisher.core.orchestrator``
and ``store_publisher.core.action``; they are not re-exported here because
the models and settings import from this package.
"""

from store_publisher.core.exceptions import (
    AbortedError,
    ArtifactError,
    AuthenticationError,
    DeploymentError,
    NetworkError,
    OperationTimeoutError,
    ValidationError,
)

__all__ = [
    "AbortedError",
    "ArtifactError",
    "AuthenticationError",
    "DeploymentError",
    "NetworkError",
    "OperationTimeoutError",
    "ValidationError",
]
