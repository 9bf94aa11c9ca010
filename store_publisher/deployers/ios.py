"""App Store Connect deployer.

Uploads an .ipa with the Xcode upload tool and waits for App Store Connect
to finish processing the build:

    unauthenticated -> authenticated -> app_resolved -> uploaded
        -> processing -> valid | invalid | failed

The API private key only touches disk for the duration of the upload tool
run, inside an owner-only temporary directory that is removed afterwards.
"""

import asyncio
import contextlib
import math
import os
import re
import shutil
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx
import jwt
import structlog

from store_publisher.config import Settings, get_settings
from store_publisher.core.exceptions import (
    AuthenticationError,
    DeploymentError,
    NetworkError,
    OperationTimeoutError,
    ValidationError,
)
from store_publisher.core.resilience import CancellationToken, SleepFn
from store_publisher.deployers.base import (
    IOS_PROFILE,
    DeploymentPipeline,
    outcome_metadata,
    run_step,
)
from store_publisher.models.deployment import (
    ArtifactDescriptor,
    DeploymentRequest,
    DeploymentResult,
    IOSTarget,
    Platform,
    UploadOutcome,
)
from store_publisher.services.filesystem import FileSystemService
from store_publisher.services.http_client import HttpClient, describe_http_error
from store_publisher.utils.helpers import decode_base64, format_duration, format_file_size
from store_publisher.utils.logging import get_logger

TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_LIFETIME_SECONDS = 20 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 60

UPLOAD_METHOD = "xcrun altool"
TESTFLIGHT_URL = "https://appstoreconnect.apple.com/apps/{app_id}/testflight/ios"

TERMINAL_FAILURE_STATES = frozenset({"INVALID", "FAILED"})

_OUTPUT_REDACTIONS = (
    (re.compile(r'apiKey="[^"]*"'), 'apiKey="***"'),
    (re.compile(r'apiIssuer="[^"]*"'), 'apiIssuer="***"'),
    (re.compile(r"--apiKey\s+\S+"), "--apiKey ***"),
    (re.compile(r"--apiIssuer\s+\S+"), "--apiIssuer ***"),
    (re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+"), "***"),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "***",
    ),
)


class IOSUploadState(str, Enum):
    """Progress of one App Store Connect upload."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    APP_RESOLVED = "app_resolved"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass(frozen=True)
class ToolResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class UploadTool(Protocol):
    """Out-of-process binary uploader."""

    async def ensure_available(self) -> None: ...

    async def run(self, args: list[str], env: Mapping[str, str], timeout: float) -> ToolResult: ...


class AltoolUploader:
    """Runs ``xcrun altool`` (or a configured replacement) as a subprocess."""

    def __init__(self, command: list[str], logger: structlog.stdlib.BoundLogger | None = None):
        self.command = command
        self.logger = logger or get_logger("altool")

    async def ensure_available(self) -> None:
        if sys.platform != "darwin":
            self.logger.warning(
                "ios.upload_tool.non_macos_host",
                host_platform=sys.platform,
                detail="App Store uploads require macOS with Xcode command line tools",
            )
        if shutil.which(self.command[0]) is None:
            raise DeploymentError(
                f"Upload tool not available: {' '.join(self.command)}. "
                "Install Xcode command line tools.",
                code="MISSING_UPLOAD_TOOL",
                platform=Platform.IOS.value,
            )

    async def run(self, args: list[str], env: Mapping[str, str], timeout: float) -> ToolResult:
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env),
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise OperationTimeoutError(
                f"Upload tool did not finish within {format_duration(timeout * 1000)}",
                platform=Platform.IOS.value,
                details={"timeout_seconds": timeout},
            ) from None
        except asyncio.CancelledError:
            # Reap the child even though the caller is going away
            await asyncio.shield(self._terminate(proc))
            raise
        return ToolResult(
            proc.returncode or 0,
            out.decode(errors="replace"),
            err.decode(errors="replace"),
        )

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


def redact_tool_output(output: str, secrets: tuple[str, ...] = ()) -> str:
    """Scrub key identifiers, tokens and key material from upload tool output."""
    for pattern, replacement in _OUTPUT_REDACTIONS:
        output = pattern.sub(replacement, output)
    for secret in secrets:
        if secret:
            output = output.replace(secret, "***")
    return output


def classify_upload_failure(output: str) -> DeploymentError:
    """Map (already redacted) upload tool diagnostics to a publisher error."""
    platform = Platform.IOS.value
    lowered = output.lower()

    if "unable to authenticate" in lowered:
        return AuthenticationError(
            "App Store Connect authentication failed. Please verify your API credentials.",
            platform=platform,
            details={"suggestion": "Check API Key ID, Issuer ID, and Private Key are correct"},
        )

    if "invalid bundle identifier" in lowered or "bundle identifier mismatch" in lowered:
        return DeploymentError(
            "Invalid bundle identifier in IPA file",
            code="INVALID_BUNDLE_ID",
            platform=platform,
            details={"suggestion": "Ensure the IPA bundle ID matches your App Store Connect app"},
        )

    if any(
        marker in lowered
        for marker in (
            "entity name is not unique",
            "already been uploaded",
            "bundle version must be higher",
        )
    ):
        return DeploymentError(
            "A build with this version already exists",
            code="DUPLICATE_VERSION",
            platform=platform,
            details={"suggestion": "Increment the build number in your app and rebuild"},
        )

    if "invalid provisioning profile" in lowered or "invalid signature" in lowered:
        return DeploymentError(
            "Invalid provisioning profile in IPA",
            code="INVALID_PROVISIONING_PROFILE",
            platform=platform,
            details={
                "suggestion": "Ensure your IPA is signed with a valid App Store distribution profile"
            },
        )

    if "network error" in lowered or "connection was lost" in lowered:
        return NetworkError(
            "Network error during upload. Please check your internet connection and try again.",
            platform=platform,
        )

    return DeploymentError(
        f"App Store upload failed: {output}",
        code="ALTOOL_ERROR",
        platform=platform,
        details={"raw_error": output},
        retryable=None,
    )


def load_private_key(encoded: str) -> str:
    """Decode a base64 ``.p8`` key and check its PEM delimiters."""
    try:
        key = decode_base64(encoded)
    except ValueError as e:
        raise ValidationError(
            "Invalid App Store Connect API Private Key encoding", platform=Platform.IOS.value
        ) from e

    if "BEGIN PRIVATE KEY" not in key or "END PRIVATE KEY" not in key:
        raise ValidationError(
            "Invalid App Store Connect API Private Key format", platform=Platform.IOS.value
        )
    return key


def build_api_token(key_id: str, issuer_id: str, private_key: str, now: int | None = None) -> str:
    """Sign the ES256 bearer token for the App Store Connect API."""
    issued_at = int(time.time()) if now is None else now
    claims = {
        "iss": issuer_id,
        "iat": issued_at,
        "exp": issued_at + TOKEN_LIFETIME_SECONDS,
        "aud": TOKEN_AUDIENCE,
    }
    return jwt.encode(
        claims, private_key, algorithm="ES256", headers={"kid": key_id, "typ": "JWT"}
    )


class IOSDeployer:
    """Deploys .ipa builds to App Store Connect / TestFlight."""

    platform = Platform.IOS

    def __init__(
        self,
        settings: Settings | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        filesystem: FileSystemService | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        cancel_token: CancellationToken | None = None,
        upload_tool: UploadTool | None = None,
    ):
        self.settings = settings or get_settings()
        self.logger = (logger or get_logger("deployer")).bind(platform=self.platform.value)
        self.pipeline = DeploymentPipeline(IOS_PROFILE, filesystem, self.logger)
        self.filesystem = self.pipeline.filesystem
        self.upload_tool = upload_tool or AltoolUploader(
            self.settings.upload_tool_command, self.logger
        )
        self.state = IOSUploadState.UNAUTHENTICATED
        self.app_id: str | None = None
        self.build_id: str | None = None

        self._transport = transport
        self._sleep = sleep
        self._cancel_token = cancel_token
        self._private_key: str | None = None
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def deploy(
        self, request: DeploymentRequest, deployment_id: str | None = None
    ) -> DeploymentResult:
        return await self.pipeline.run(request, self, deployment_id)

    async def validate_artifact(self, artifact_path: str) -> ArtifactDescriptor:
        return await self.pipeline.validate_artifact(artifact_path)

    def progress(self) -> dict[str, Any]:
        return outcome_metadata(
            app_id=self.app_id, build_id=self.build_id, last_state=self.state.value
        )

    # -- lifecycle steps -----------------------------------------------------

    async def check_credentials(self, request: DeploymentRequest) -> None:
        """Dry run: key structure, token signing and one read-only API call."""
        await self.authenticate(request)
        self.logger.info("ios.dry_run.credentials_valid", bundle_id=self._target(request).bundle_id)

    async def authenticate(self, request: DeploymentRequest) -> None:
        target = self._target(request)
        self._private_key = load_private_key(target.api_private_key.get_secret_value())

        try:
            headers = self._auth_headers(target)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(
                f"Failed to sign App Store Connect token: {type(e).__name__}",
                platform=self.platform.value,
            ) from e

        try:
            async with self._client() as client:
                await client.get("/v1/apps", params={"limit": 1}, headers=headers)
        except (DeploymentError, httpx.HTTPError) as e:
            raise AuthenticationError(
                f"App Store Connect rejected the API key: {describe_http_error(e)}",
                platform=self.platform.value,
            ) from e

        self.state = IOSUploadState.AUTHENTICATED
        self.logger.info("ios.authenticated", key_id=target.api_key_id)

    async def upload(self, request: DeploymentRequest, artifact: ArtifactDescriptor) -> UploadOutcome:
        target = self._target(request)
        try:
            async with self._client() as client:
                app_id = await self._resolve_app(client, target)

                await self.upload_tool.ensure_available()
                await self._upload_binary(target, artifact)

                build = await self._wait_for_processing(client, target, app_id, request)
        except Exception as e:
            if isinstance(e, DeploymentError):
                e.details = {**e.details, **self.progress()}
            raise

        attributes = build.get("attributes") or {}
        build_version = attributes.get("version")
        self.logger.info(
            "ios.deployment.completed",
            app_id=app_id,
            build_id=build.get("id"),
            build_version=build_version,
        )
        return UploadOutcome(
            deployment_url=TESTFLIGHT_URL.format(app_id=app_id),
            version_code=str(build_version) if build_version is not None else request.build_number,
            metadata=outcome_metadata(
                bundle_id=target.bundle_id,
                app_id=app_id,
                build_id=build.get("id"),
                build_version=build_version,
                app_version=request.app_version,
                processing_state=attributes.get("processingState"),
                upload_method=UPLOAD_METHOD,
            ),
        )

    # -- upload protocol -----------------------------------------------------

    async def _resolve_app(self, client: HttpClient, target: IOSTarget) -> str:
        body = await run_step(
            "look up app",
            client.get(
                "/v1/apps",
                params={"filter[bundleId]": target.bundle_id, "limit": 1},
                headers=self._auth_headers(target),
            ),
            self.platform,
        )
        apps = body.get("data") if isinstance(body, dict) else None
        if not apps:
            raise NetworkError(
                f"No App Store Connect app found for bundle ID {target.bundle_id}",
                platform=self.platform.value,
                details={"bundle_id": target.bundle_id},
                retryable=False,
            )

        self.app_id = app_id = str(apps[0]["id"])
        self.state = IOSUploadState.APP_RESOLVED
        self.logger.info("ios.app.resolved", bundle_id=target.bundle_id, app_id=app_id)
        return app_id

    async def _upload_binary(self, target: IOSTarget, artifact: ArtifactDescriptor) -> None:
        args = [
            "--upload-app",
            "--file",
            artifact.path,
            "--type",
            "ios",
            "--apiKey",
            target.api_key_id,
            "--apiIssuer",
            target.api_issuer_id,
        ]
        self.logger.info(
            "ios.upload.started",
            file=artifact.basename,
            size=format_file_size(artifact.size),
            method=UPLOAD_METHOD,
        )

        key_filename = f"AuthKey_{target.api_key_id}.p8"
        with self.filesystem.private_temp_file(key_filename, self._private_key or "") as key_path:
            env = {**os.environ, "API_PRIVATE_KEYS_DIR": str(key_path.parent)}
            result = await self.upload_tool.run(
                args, env, self.settings.upload_tool_timeout_seconds
            )

        output = redact_tool_output(
            result.output, (target.api_key_id, target.api_issuer_id, self._token or "")
        )
        if result.returncode != 0:
            self.logger.error("ios.upload.failed", returncode=result.returncode, output=output)
            raise classify_upload_failure(output or f"exit status {result.returncode}")

        if output:
            self.logger.debug("ios.upload.output", output=output)
        self.state = IOSUploadState.UPLOADED
        self.logger.info("ios.upload.completed", file=artifact.basename)

    async def _wait_for_processing(
        self,
        client: HttpClient,
        target: IOSTarget,
        app_id: str,
        request: DeploymentRequest,
    ) -> dict[str, Any]:
        """Poll the newest matching build until processing settles."""
        interval = self.settings.ios_processing_poll_interval_seconds
        max_wait = self.settings.ios_processing_max_wait_seconds
        max_polls = max(1, math.ceil(max_wait / interval))

        params: dict[str, Any] = {
            "filter[app]": app_id,
            "sort": "-uploadedDate",
            "limit": 1,
        }
        if request.build_number:
            params["filter[version]"] = request.build_number
        else:
            params["filter[preReleaseVersion.version]"] = request.app_version

        last_state = None
        for poll in range(1, max_polls + 1):
            body = await run_step(
                "check build status",
                client.get("/v1/builds", params=params, headers=self._auth_headers(target)),
                self.platform,
            )
            builds = body.get("data") if isinstance(body, dict) else None

            if builds:
                build = builds[0]
                self.build_id = build.get("id")
                last_state = (build.get("attributes") or {}).get("processingState")
                self.state = IOSUploadState.PROCESSING
                self.logger.info(
                    "ios.build.status",
                    build_id=build.get("id"),
                    processing_state=last_state,
                    poll=poll,
                )

                if last_state == "VALID":
                    self.state = IOSUploadState.VALID
                    return build
                if last_state in TERMINAL_FAILURE_STATES:
                    self.state = IOSUploadState(last_state.lower())
                    raise DeploymentError(
                        f"Build processing ended in state {last_state}",
                        code="BUILD_PROCESSING_FAILED",
                        platform=self.platform.value,
                        details={"processing_state": last_state, "build_id": build.get("id")},
                    )
            else:
                self.logger.info("ios.build.not_visible_yet", poll=poll)

            if poll < max_polls:
                await self._wait(interval)

        raise OperationTimeoutError(
            f"Build was not processed within {format_duration(max_wait * 1000)}",
            platform=self.platform.value,
            details={"processing_state": last_state, "max_wait_seconds": max_wait},
        )

    # -- helpers -------------------------------------------------------------

    async def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
        elif self._cancel_token is not None:
            await self._cancel_token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    def _auth_headers(self, target: IOSTarget) -> dict[str, str]:
        """Bearer header, re-signing the token shortly before it expires."""
        now = time.time()
        if self._token is None or now >= self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            self._token = build_api_token(
                target.api_key_id, target.api_issuer_id, self._private_key or "", int(now)
            )
            self._token_expires_at = now + TOKEN_LIFETIME_SECONDS
        return {"Authorization": f"Bearer {self._token}"}

    def _client(self) -> HttpClient:
        return HttpClient(
            base_url=self.settings.app_store_connect_api_url,
            timeout=self.settings.http_timeout_seconds,
            retry_policy=self.settings.retry_policy(),
            logger=self.logger,
            transport=self._transport,
            sleep=self._sleep,
            cancel_token=self._cancel_token,
        )

    def _target(self, request: DeploymentRequest) -> IOSTarget:
        if request.ios is None:
            raise ValidationError(
                "App Store Connect target is required for iOS deployments",
                platform=self.platform.value,
            )
        return request.ios
