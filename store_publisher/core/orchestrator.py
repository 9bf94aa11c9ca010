"""Deployment Orchestrator.

Runs one deployment attempt end to end: hard artifact check, platform
deployer under the global deadline, and normalization of every failure
into a single failed DeploymentResult.
"""

from collections.abc import Callable
from typing import Any

import structlog

from store_publisher.config import Settings, get_settings
from store_publisher.core.exceptions import DeploymentError
from store_publisher.core.resilience import CancellationToken, with_timeout
from store_publisher.deployers.base import Deployer, is_retryable_error
from store_publisher.deployers.factory import create_deployer
from store_publisher.models.deployment import (
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
)
from store_publisher.utils.helpers import format_duration, generate_id
from store_publisher.utils.logging import get_logger

DeployerFactory = Callable[..., Deployer]


class DeploymentOrchestrator:
    """Selects the platform deployer and supervises one attempt.

    Holds no per-run state, so one instance can serve concurrent runs for
    independent requests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        deployer_factory: DeployerFactory | None = None,
        **deployer_options: Any,
    ):
        self.settings = settings or get_settings()
        self.logger = logger or get_logger("orchestrator")
        self.deployer_factory = deployer_factory or create_deployer
        self.deployer_options = deployer_options

    async def run(
        self,
        request: DeploymentRequest,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        """Run the deployment described by ``request``.

        Never raises for deployment failures: the returned result is either
        ``success`` or ``failed`` with exactly one error attached.
        """
        result = DeploymentResult(
            platform=request.platform,
            deployment_id=generate_id(f"{request.platform.value}-deploy"),
        )
        logger = self.logger.bind(
            deployment_id=result.deployment_id, platform=request.platform.value
        )
        logger.info(
            "orchestrator.deployment.started",
            version=request.app_version,
            build_number=request.build_number,
            dry_run=request.dry_run,
            timeout=format_duration(request.timeout_seconds * 1000),
        )

        deployer: Deployer | None = None
        try:
            deployer = self.deployer_factory(
                request.platform,
                settings=self.settings,
                logger=logger,
                cancel_token=cancel_token,
                **self.deployer_options,
            )
            # Hard size and type check before any network call
            await deployer.validate_artifact(request.artifact_path)

            final = await with_timeout(
                deployer.deploy(request, deployment_id=result.deployment_id),
                request.timeout_seconds,
                cancel_token,
            )
        except DeploymentError as e:
            return self._failed(result, e, deployer, logger)
        except Exception as e:
            error = DeploymentError(
                str(e) or type(e).__name__,
                code=type(e).__name__,
                platform=request.platform.value,
                retryable=is_retryable_error(e),
            )
            error.__cause__ = e
            return self._failed(result, error, deployer, logger)

        logger.info(
            "orchestrator.deployment.completed",
            status=final.status.value,
            url=final.deployment_url,
            duration=format_duration(final.duration_ms),
        )
        return final

    def _failed(
        self,
        result: DeploymentResult,
        error: DeploymentError,
        deployer: Deployer | None,
        logger: structlog.stdlib.BoundLogger,
    ) -> DeploymentResult:
        error.platform = error.platform or result.platform.value

        metadata: dict[str, Any] = deployer.progress() if deployer is not None else {}
        for key in (
            "operation",
            "edit_id",
            "version_code",
            "app_id",
            "build_id",
            "processing_state",
            "last_state",
        ):
            if key in error.details:
                metadata[key] = error.details[key]

        failed = result.finish(
            DeploymentStatus.FAILED,
            error=error,
            metadata=metadata,
            version_code=metadata.get("version_code"),
        )
        logger.error(
            "orchestrator.deployment.failed",
            error=error.message,
            kind=error.kind,
            code=error.code,
            retryable=bool(error.retryable),
            duration=format_duration(failed.duration_ms),
        )
        return failed

