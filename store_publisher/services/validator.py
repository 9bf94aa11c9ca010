"""Pre-flight input validation.

Runs before the orchestrator and never touches the network. Hard failures
become errors; conditions that merely look suspicious (a production track,
an artifact above the recommended size) become warnings so that a dry run
surfaces them before a real run would fail.
"""

import json
import re
from pathlib import Path

import structlog

from store_publisher.models.deployment import (
    GOOGLE_PLAY_TRACKS,
    MIB,
    AndroidTarget,
    DeploymentRequest,
    IOSTarget,
    Platform,
    ValidationReport,
)
from store_publisher.services.filesystem import FileSystemService
from store_publisher.utils.helpers import decode_base64
from store_publisher.utils.logging import get_logger

EXPECTED_EXTENSIONS = {Platform.ANDROID: ".aab", Platform.IOS: ".ipa"}

# Recommended sizes; the orchestrator enforces higher hard ceilings.
ADVISORY_MAX_SIZE = {Platform.ANDROID: 150 * MIB, Platform.IOS: 200 * MIB}

SERVICE_ACCOUNT_FIELDS = ("project_id", "private_key", "client_email")

_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)
_BASIC_VERSION = re.compile(r"^\d+\.\d+(\.\d+)?$")
_ANDROID_PACKAGE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")
_IOS_BUNDLE_ID = re.compile(r"^[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)+$")
_API_KEY_ID = re.compile(r"^[A-Z0-9]{10}$")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

DEV_KEYWORDS = ("dev", "debug", "test")


class InputValidator:
    """Validates a DeploymentRequest and reports errors and warnings."""

    def __init__(
        self,
        filesystem: FileSystemService | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.logger = logger or get_logger("validator")
        self.filesystem = filesystem or FileSystemService(self.logger)

    def validate(self, request: DeploymentRequest) -> ValidationReport:
        errors: list[str] = []
        warnings: list[str] = []

        self.logger.debug(
            "validator.started",
            platform=request.platform.value,
            version=request.app_version,
            dry_run=request.dry_run,
        )

        if request.android is not None:
            self._validate_android(request.android, request.dry_run, errors, warnings)
        if request.ios is not None:
            self._validate_ios(request.ios, errors, warnings)

        self._validate_artifact(request.artifact_path, request.platform, errors, warnings)
        self._validate_version(request.app_version, errors, warnings)
        self._validate_timeout(request.timeout_minutes, warnings)

        self.logger.debug(
            "validator.completed", errors_count=len(errors), warnings_count=len(warnings)
        )
        return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)

    def _validate_android(
        self, target: AndroidTarget, dry_run: bool, errors: list[str], warnings: list[str]
    ) -> None:
        try:
            account = json.loads(decode_base64(target.service_account_json.get_secret_value()))
        except ValueError:
            errors.append("Invalid Google Play service account JSON format")
        else:
            if not isinstance(account, dict):
                errors.append("Invalid Google Play service account JSON format")
            else:
                if account.get("type") != "service_account":
                    errors.append("Google Play service account JSON must be a service account key")
                for field in SERVICE_ACCOUNT_FIELDS:
                    if not account.get(field):
                        errors.append(f"Google Play service account JSON must contain {field}")

        if not _ANDROID_PACKAGE.match(target.package_name):
            errors.append("Invalid Android package name format")

        if target.track not in GOOGLE_PLAY_TRACKS:
            errors.append(
                "Invalid Google Play track. Must be one of: " + ", ".join(GOOGLE_PLAY_TRACKS)
            )

        if target.track == "production" and not dry_run:
            warnings.append(
                "Deploying to production track. Consider using beta or alpha track for testing"
            )

    def _validate_ios(self, target: IOSTarget, errors: list[str], warnings: list[str]) -> None:
        if not _API_KEY_ID.match(target.api_key_id):
            errors.append("Invalid App Store Connect API Key ID format")

        if not _UUID.match(target.api_issuer_id):
            errors.append("Invalid App Store Connect API Issuer ID format (must be UUID)")

        try:
            private_key = decode_base64(target.api_private_key.get_secret_value())
        except ValueError:
            errors.append("Invalid App Store Connect API Private Key encoding")
        else:
            if "BEGIN PRIVATE KEY" not in private_key or "END PRIVATE KEY" not in private_key:
                errors.append("Invalid App Store Connect API Private Key format")

        if not _IOS_BUNDLE_ID.match(target.bundle_id):
            errors.append("Invalid iOS bundle ID format")

        lowered = target.bundle_id.lower()
        if "test" in lowered or "debug" in lowered:
            warnings.append(
                "Bundle ID contains test/debug keywords. Ensure this is correct for production"
            )

    def _validate_artifact(
        self, artifact_path: str, platform: Platform, errors: list[str], warnings: list[str]
    ) -> None:
        if not self.filesystem.exists(artifact_path):
            errors.append(f"Artifact file not found: {artifact_path}")
            return

        expected = EXPECTED_EXTENSIONS[platform]
        if Path(artifact_path).suffix.lower() != expected:
            errors.append(f"Invalid artifact type for {platform.value}. Expected {expected} file")

        try:
            size = self.filesystem.get_file_size(artifact_path)
        except OSError:
            warnings.append("Could not determine artifact file size")
            return

        advisory = ADVISORY_MAX_SIZE[platform]
        if size > advisory:
            warnings.append(
                f"Artifact size ({round(size / MIB)}MB) is larger than recommended "
                f"({round(advisory / MIB)}MB)"
            )

    def _validate_version(self, version: str, errors: list[str], warnings: list[str]) -> None:
        if not _SEMVER.match(version):
            if not _BASIC_VERSION.match(version):
                errors.append(
                    f"Invalid version format: {version}. Expected semantic version (e.g., 1.2.3)"
                )
            else:
                warnings.append(
                    "Version format could be improved. Consider using semantic versioning "
                    f"(e.g., {version}.0)"
                )

        if any(keyword in version.lower() for keyword in DEV_KEYWORDS):
            warnings.append(
                "Version contains development keywords. Ensure this is intended for production"
            )

    def _validate_timeout(self, timeout_minutes: int, warnings: list[str]) -> None:
        if timeout_minutes < 5:
            warnings.append(
                "Timeout value is very low, deployments might fail due to insufficient time"
            )
        if timeout_minutes > 60:
            warnings.append("Timeout value is very high, consider if this is necessary")
