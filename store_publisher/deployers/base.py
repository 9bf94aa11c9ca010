"""Shared deployment lifecycle for every platform.

Platforms do not subclass anything here. Each deployer owns a
``DeploymentPipeline`` configured with its ``PlatformProfile`` and hands the
pipeline an object implementing ``PlatformSteps``. The pipeline runs the
common lifecycle:

    dry run:  validate artifact -> check credentials -> synthetic result
    real run: validate artifact -> authenticate -> upload -> result

and converts whatever escapes into exactly one enriched DeploymentError.
"""

import re
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from store_publisher.core.exceptions import ArtifactError, DeploymentError, NetworkError
from store_publisher.models.deployment import (
    MIB,
    ArtifactDescriptor,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    Platform,
    UploadOutcome,
)
from store_publisher.services.filesystem import FileSystemService
from store_publisher.services.http_client import describe_http_error, http_status
from store_publisher.utils.helpers import format_duration, format_file_size, generate_id
from store_publisher.utils.logging import get_logger

RETRYABLE_MARKERS = (
    # transport
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "connection reset",
    # rate limiting
    "rate limit",
    "too many requests",
)

# Status codes only count as whole numbers, not digits inside tool error codes
RETRYABLE_STATUS = re.compile(r"\b(429|50[0234])\b")


@dataclass(frozen=True)
class PlatformProfile:
    """Per-platform parameters of the shared lifecycle."""

    platform: Platform
    store_name: str
    artifact_extension: str
    max_artifact_size: int
    dry_run_url: str


ANDROID_PROFILE = PlatformProfile(
    platform=Platform.ANDROID,
    store_name="Google Play Store",
    artifact_extension=".aab",
    max_artifact_size=200 * MIB,
    dry_run_url="https://play.google.com/console/developers (dry run - no actual deployment)",
)

IOS_PROFILE = PlatformProfile(
    platform=Platform.IOS,
    store_name="App Store Connect",
    artifact_extension=".ipa",
    max_artifact_size=250 * MIB,
    dry_run_url="https://appstoreconnect.apple.com (dry run - no actual deployment)",
)

PROFILES = {profile.platform: profile for profile in (ANDROID_PROFILE, IOS_PROFILE)}


class PlatformSteps(Protocol):
    """Platform-specific steps plugged into the shared lifecycle."""

    async def check_credentials(self, request: DeploymentRequest) -> None:
        """Prove credentials work without mutating anything remotely."""
        ...

    async def authenticate(self, request: DeploymentRequest) -> None: ...

    async def upload(
        self, request: DeploymentRequest, artifact: ArtifactDescriptor
    ) -> UploadOutcome: ...


class Deployer(Protocol):
    """Interface the orchestrator uses; satisfied by AndroidDeployer and IOSDeployer."""

    platform: Platform

    async def deploy(
        self, request: DeploymentRequest, deployment_id: str | None = None
    ) -> DeploymentResult: ...

    async def validate_artifact(self, artifact_path: str) -> ArtifactDescriptor: ...

    def progress(self) -> dict[str, Any]:
        """How far the current attempt got, for failure reporting."""
        ...


def is_retryable_error(error: BaseException) -> bool:
    """Guess retryability from the error message."""
    message = str(error).lower()
    if any(marker in message for marker in RETRYABLE_MARKERS):
        return True
    return RETRYABLE_STATUS.search(message) is not None


def wrap_deployment_error(
    error: BaseException,
    *,
    platform: Platform,
    request: DeploymentRequest,
    started: float,
    operation: str,
) -> DeploymentError:
    """Enrich ``error`` with deployment context, exactly once.

    Typed publisher errors keep their kind and code; anything else becomes a
    plain DeploymentError coded with the original exception class name.
    """
    if isinstance(error, DeploymentError) and "operation" in error.details:
        return error

    context = {
        "operation": operation,
        "duration_ms": int((time.monotonic() - started) * 1000),
        "version": request.app_version,
        "build_number": request.build_number,
        "dry_run": request.dry_run,
    }

    if isinstance(error, DeploymentError):
        error.details = {**error.details, **context}
        error.platform = error.platform or platform.value
        if error.retryable is None:
            error.retryable = is_retryable_error(error)
        return error

    wrapped = DeploymentError(
        str(error) or type(error).__name__,
        code=type(error).__name__,
        platform=platform.value,
        details=context,
        retryable=is_retryable_error(error),
    )
    wrapped.__cause__ = error
    return wrapped


class DeploymentPipeline:
    """The validate -> authenticate -> upload -> report lifecycle."""

    def __init__(
        self,
        profile: PlatformProfile,
        filesystem: FileSystemService | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.profile = profile
        self.logger = logger or get_logger(f"deployer.{profile.platform.value}")
        self.filesystem = filesystem or FileSystemService(self.logger)

    async def validate_artifact(self, artifact_path: str) -> ArtifactDescriptor:
        """Check existence, extension and hard size ceiling; raise ArtifactError."""
        platform = self.profile.platform.value

        if not self.filesystem.exists(artifact_path):
            raise ArtifactError(
                f"Artifact file not found: {artifact_path}",
                code="ARTIFACT_NOT_FOUND",
                platform=platform,
                details={"artifact_path": artifact_path},
            )

        artifact = await self.filesystem.get_file_info(artifact_path)
        self.logger.info(
            "artifact.info",
            path=artifact.path,
            size=format_file_size(artifact.size),
            checksum=artifact.checksum,
        )

        expected = self.profile.artifact_extension
        if artifact.extension.lower() != expected:
            raise ArtifactError(
                f"Invalid artifact type for {platform}. "
                f"Expected {expected}, got {artifact.extension or '(none)'}",
                code="INVALID_ARTIFACT_TYPE",
                platform=platform,
                details={"extension": artifact.extension, "expected": expected},
            )

        max_size = self.profile.max_artifact_size
        if artifact.size > max_size:
            raise ArtifactError(
                f"Artifact size ({round(artifact.size / MIB)}MB) exceeds maximum "
                f"allowed size ({round(max_size / MIB)}MB)",
                code="ARTIFACT_TOO_LARGE",
                platform=platform,
                details={"size": artifact.size, "max_size": max_size},
            )

        self.logger.info("artifact.validated", checksum=artifact.checksum)
        return artifact

    async def run(
        self,
        request: DeploymentRequest,
        steps: PlatformSteps,
        deployment_id: str | None = None,
    ) -> DeploymentResult:
        """Run one attempt of the lifecycle."""
        if request.platform != self.profile.platform:
            raise DeploymentError(
                f"Invalid platform for {self.profile.store_name} deployer: {request.platform.value}",
                code="INVALID_PLATFORM",
                platform=self.profile.platform.value,
            )

        started = time.monotonic()
        result = DeploymentResult(
            platform=self.profile.platform,
            deployment_id=deployment_id or generate_id(f"{self.profile.platform.value}-deploy"),
        )
        operation = "validate_artifact"

        self.logger.info(
            "deployment.started",
            store=self.profile.store_name,
            version=request.app_version,
            dry_run=request.dry_run,
        )

        try:
            artifact = await self.validate_artifact(request.artifact_path)

            if request.dry_run:
                operation = "dry_run"
                self.logger.info("deployment.dry_run", detail="no remote state will change")
                await steps.check_credentials(request)
                final = result.finish(
                    DeploymentStatus.SUCCESS,
                    deployment_url=self.profile.dry_run_url,
                    version_code=request.app_version,
                    metadata={
                        "dry_run": True,
                        "validations_passed": True,
                        "artifact_checksum": artifact.checksum,
                        "artifact_size": artifact.size,
                    },
                )
            else:
                operation = "authenticate"
                await steps.authenticate(request)

                operation = "upload"
                outcome = await steps.upload(request, artifact)

                final = result.finish(
                    DeploymentStatus.SUCCESS,
                    deployment_url=outcome.deployment_url,
                    version_code=outcome.version_code,
                    metadata={
                        **outcome.metadata,
                        "artifact_checksum": artifact.checksum,
                        "artifact_size": artifact.size,
                    },
                )
        except Exception as e:
            error = wrap_deployment_error(
                e,
                platform=self.profile.platform,
                request=request,
                started=started,
                operation=operation,
            )
            self.logger.error(
                "deployment.failed",
                operation=operation,
                error=error.message,
                code=error.code,
                retryable=error.retryable,
                duration=format_duration(error.details.get("duration_ms", 0)),
            )
            if error is e:
                raise
            raise error from e

        self.logger.info(
            "deployment.completed",
            url=final.deployment_url,
            version_code=final.version_code,
            duration=format_duration(final.duration_ms),
        )
        return final


def outcome_metadata(**values: Any) -> dict[str, Any]:
    """Drop empty values so metadata only carries what the store reported."""
    return {key: value for key, value in values.items() if value is not None}


async def run_step(name: str, call: Awaitable[Any], platform: Platform) -> Any:
    """Await one remote sub-operation, reporting its failure as NetworkError.

    Transient failures stay retryable; a rejected request (4xx) does not.
    """
    try:
        return await call
    except (DeploymentError, httpx.HTTPError) as e:
        retryable = e.retryable if isinstance(e, NetworkError) else is_retryable_error(e)
        raise NetworkError(
            f"Failed to {name}: {describe_http_error(e)}",
            platform=platform.value,
            details=outcome_metadata(step=name, status_code=http_status(e)),
            retryable=bool(retryable),
        ) from e
