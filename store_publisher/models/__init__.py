"""Data models for store-publisher."""

from store_publisher.models.deployment import (
    ActionOutputs,
    AndroidTarget,
    ArtifactDescriptor,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    IOSTarget,
    Platform,
    RetryPolicy,
    UploadOutcome,
    ValidationReport,
)

__all__ = [
    "ActionOutputs",
    "AndroidTarget",
    "ArtifactDescriptor",
    "DeploymentRequest",
    "DeploymentResult",
    "DeploymentStatus",
    "IOSTarget",
    "Platform",
    "RetryPolicy",
    "UploadOutcome",
    "ValidationReport",
]
