"""Deployment data models."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from store_publisher.core.exceptions import (
    DeploymentError,
    NetworkError,
    OperationTimeoutError,
)

MIB = 1024 * 1024


class Platform(str, Enum):
    """Supported distribution platforms."""

    ANDROID = "android"
    IOS = "ios"

    def __str__(self) -> str:
        return self.value


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    IN_PROGRESS = "in-progress"


GooglePlayTrack = Literal["production", "beta", "alpha", "internal"]

GOOGLE_PLAY_TRACKS: tuple[str, ...] = ("production", "beta", "alpha", "internal")


class AndroidTarget(BaseModel):
    """Google Play credentials and target."""

    model_config = ConfigDict(frozen=True)

    service_account_json: SecretStr = Field(..., description="Base64-encoded service account key")
    package_name: str = Field(..., min_length=1)
    track: GooglePlayTrack = "internal"


class IOSTarget(BaseModel):
    """App Store Connect credentials and target."""

    model_config = ConfigDict(frozen=True)

    api_key_id: str = Field(..., min_length=1)
    api_issuer_id: str = Field(..., min_length=1)
    api_private_key: SecretStr = Field(..., description="Base64-encoded .p8 private key")
    bundle_id: str = Field(..., min_length=1)


class DeploymentRequest(BaseModel):
    """Immutable input for one deployment attempt."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    app_version: str = Field(..., min_length=1)
    build_number: str | None = None
    release_notes: str = ""
    artifact_path: str = Field(..., min_length=1)
    dry_run: bool = False
    timeout_minutes: int = Field(default=30, ge=1, le=120)

    android: AndroidTarget | None = None
    ios: IOSTarget | None = None

    @model_validator(mode="after")
    def _check_platform_target(self) -> "DeploymentRequest":
        if self.platform == Platform.ANDROID:
            if self.android is None or self.ios is not None:
                raise ValueError("android deployments require exactly the android target")
        elif self.ios is None or self.android is not None:
            raise ValueError("ios deployments require exactly the ios target")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60.0


class ArtifactDescriptor(BaseModel):
    """Read-only facts about the artifact file, computed once per attempt."""

    model_config = ConfigDict(frozen=True)

    path: str
    size: int
    checksum: str
    extension: str
    basename: str
    directory: str

    @property
    def size_mb(self) -> float:
        return self.size / MIB


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentResult(BaseModel):
    """Result of a deployment attempt.

    Terminal results are copies of the in-progress result made with
    ``model_copy(update=...)``; an instance is never mutated.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS
    platform: Platform
    deployment_id: str
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: datetime | None = None
    duration_ms: int = 0

    deployment_url: str | None = None
    version_code: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    error: DeploymentError | None = None

    def finish(self, status: DeploymentStatus, **update: Any) -> "DeploymentResult":
        """Return a terminal copy stamped with end time and duration."""
        end_time = _utcnow()
        duration_ms = int((end_time - self.start_time).total_seconds() * 1000)
        return self.model_copy(
            update={
                "status": status,
                "end_time": end_time,
                "duration_ms": duration_ms,
                **update,
            }
        )

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCESS

    def summary(self) -> dict[str, Any]:
        """JSON-serializable deployment summary for the reporting layer."""
        return {
            "platform": self.platform.value,
            "status": self.status.value,
            "deployment_id": self.deployment_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "deployment_url": self.deployment_url,
            "version_code": self.version_code,
            "metadata": self.metadata,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class UploadOutcome:
    """What a platform upload protocol hands back to the shared lifecycle."""

    deployment_url: str
    version_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def default_should_retry(error: BaseException) -> bool:
    """Only transport-level failures and timeouts are retried."""
    return isinstance(error, (NetworkError, OperationTimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff configuration shared by every HTTP call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    should_retry: Callable[[BaseException], bool] = default_should_retry

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based) before the next one."""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


class ValidationReport(BaseModel):
    """Outcome of the pre-flight input validation pass."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ActionOutputs(BaseModel):
    """Values handed to the CI pipeline after a run."""

    deployment_status: DeploymentStatus
    deployment_id: str
    deployment_summary: str
    deployment_url: str | None = None
    version_code: str | None = None
