"""Publish action: the pipeline-facing entry point.

Validates inputs, runs the orchestrator, and reports the outcome through
the GitHub Actions output file and the process exit code.
"""

import json
import uuid
from pathlib import Path

import structlog

from store_publisher.config import Settings, get_settings
from store_publisher.core.exceptions import ValidationError
from store_publisher.core.orchestrator import DeploymentOrchestrator
from store_publisher.core.resilience import CancellationToken
from store_publisher.models.deployment import (
    ActionOutputs,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    ValidationReport,
)
from store_publisher.services.validator import InputValidator
from store_publisher.utils.helpers import format_duration, generate_id
from store_publisher.utils.logging import get_logger


def build_outputs(result: DeploymentResult) -> ActionOutputs:
    """Map a terminal result onto the action's declared outputs."""
    return ActionOutputs(
        deployment_status=result.status,
        deployment_id=result.deployment_id,
        deployment_summary=json.dumps(result.summary(), indent=2, default=str),
        deployment_url=result.deployment_url,
        version_code=result.version_code,
    )


def write_github_outputs(outputs: ActionOutputs, path: str | Path) -> None:
    """Append outputs to a ``$GITHUB_OUTPUT`` file.

    Multi-line values use the ``name<<DELIMITER`` heredoc form.
    """
    with open(path, "a", encoding="utf-8") as f:
        for name, value in outputs.model_dump(mode="json").items():
            if value is None:
                continue
            value = str(value)
            if "\n" in value:
                delimiter = f"ghadelimiter_{uuid.uuid4()}"
                f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
            else:
                f.write(f"{name}={value}\n")


def exit_code(result: DeploymentResult) -> int:
    return 0 if result.status in (DeploymentStatus.SUCCESS, DeploymentStatus.SKIPPED) else 1


class PublishAction:
    """Validate -> deploy -> report, for one request."""

    def __init__(
        self,
        settings: Settings | None = None,
        validator: InputValidator | None = None,
        orchestrator: DeploymentOrchestrator | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.settings = settings or get_settings()
        self.logger = logger or get_logger("action")
        self.validator = validator or InputValidator(logger=self.logger)
        self.orchestrator = orchestrator or DeploymentOrchestrator(
            settings=self.settings, logger=self.logger
        )

    def validate(self, request: DeploymentRequest) -> ValidationReport:
        report = self.validator.validate(request)
        for warning in report.warnings:
            self.logger.warning("action.validation.warning", warning=warning)
        for error in report.errors:
            self.logger.error("action.validation.error", error=error)
        self.logger.info(
            "action.validation.completed",
            is_valid=report.is_valid,
            errors_count=len(report.errors),
            warnings_count=len(report.warnings),
        )
        return report

    async def run(
        self,
        request: DeploymentRequest,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        """Run one deployment and publish its outputs. Never raises for deploy failures."""
        self.logger.info(
            "action.started",
            platform=request.platform.value,
            version=request.app_version,
            dry_run=request.dry_run,
        )

        report = self.validate(request)
        if report.is_valid:
            result = await self.orchestrator.run(request, cancel_token)
        else:
            result = self.rejected(request, report)

        if report.warnings:
            result = result.model_copy(
                update={"metadata": {**result.metadata, "validation_warnings": report.warnings}}
            )

        self.report(result)
        return result

    def rejected(self, request: DeploymentRequest, report: ValidationReport) -> DeploymentResult:
        """Failed result for a request that did not pass validation."""
        error = ValidationError(
            "Input validation failed",
            validation_errors=report.errors,
            platform=request.platform.value,
        )
        return DeploymentResult(
            platform=request.platform,
            deployment_id=generate_id(f"{request.platform.value}-deploy"),
        ).finish(
            DeploymentStatus.FAILED,
            error=error,
            metadata={"validation_errors": report.errors},
        )

    def report(self, result: DeploymentResult) -> ActionOutputs:
        outputs = build_outputs(result)
        if self.settings.github_output_path:
            write_github_outputs(outputs, self.settings.github_output_path)
            self.logger.debug("action.outputs.written", path=self.settings.github_output_path)

        if result.succeeded:
            self.logger.info(
                "action.completed",
                status=result.status.value,
                url=result.deployment_url,
                duration=format_duration(result.duration_ms),
            )
        else:
            self.logger.error(
                "action.failed",
                status=result.status.value,
                error=result.error.message if result.error else None,
                code=result.error.code if result.error else None,
                duration=format_duration(result.duration_ms),
            )
        return outputs
