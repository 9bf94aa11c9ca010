"""Google Play deployer.

Publishes an Android App Bundle through the Play Developer API edit
protocol. An edit is a server-side transaction:

    no_session -> session_open -> bundle_uploaded -> track_assigned -> committed

Any failure after the edit is opened deletes it (best effort), so nothing
half-applied ever becomes visible on the store.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import jwt
import structlog

from store_publisher.config import Settings, get_settings
from store_publisher.core.exceptions import (
    AuthenticationError,
    DeploymentError,
    NetworkError,
    ValidationError,
)
from store_publisher.core.resilience import CancellationToken, SleepFn
from store_publisher.deployers.base import (
    ANDROID_PROFILE,
    DeploymentPipeline,
    outcome_metadata,
    run_step,
)
from store_publisher.models.deployment import (
    AndroidTarget,
    ArtifactDescriptor,
    DeploymentRequest,
    DeploymentResult,
    Platform,
    UploadOutcome,
)
from store_publisher.services.filesystem import FileSystemService
from store_publisher.services.http_client import HttpClient, describe_http_error
from store_publisher.utils.helpers import decode_base64, format_file_size
from store_publisher.utils.logging import get_logger

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600

REQUIRED_SERVICE_ACCOUNT_FIELDS = ("type", "project_id", "private_key", "client_email")

BUNDLE_CONTENT_TYPE = "application/octet-stream"
RELEASE_NOTES_LANGUAGE = "en-US"

PLAY_STORE_URL = "https://play.google.com/store/apps/details?id={package_name}"


class EditSessionState(str, Enum):
    """Progress of one Play edit transaction."""

    NO_SESSION = "no_session"
    SESSION_OPEN = "session_open"
    BUNDLE_UPLOADED = "bundle_uploaded"
    TRACK_ASSIGNED = "track_assigned"
    COMMITTED = "committed"
    DELETED = "deleted"


@dataclass
class EditSession:
    """Mutable record of how far the edit protocol got."""

    state: EditSessionState = EditSessionState.NO_SESSION
    edit_id: str | None = None
    version_code: str | None = None

    @property
    def is_open(self) -> bool:
        return self.edit_id is not None and self.state not in (
            EditSessionState.COMMITTED,
            EditSessionState.DELETED,
        )

    def progress(self) -> dict[str, Any]:
        return outcome_metadata(
            edit_id=self.edit_id,
            version_code=self.version_code,
            last_state=self.state.value,
        )


def load_service_account(encoded: str) -> dict[str, Any]:
    """Decode and structurally check a base64 service account key.

    Raises:
        ValidationError: If the key cannot be decoded or is not a service account key.
    """
    platform = Platform.ANDROID.value
    try:
        account = json.loads(decode_base64(encoded))
    except ValueError as e:
        raise ValidationError(
            "Invalid Google Play service account JSON format", platform=platform
        ) from e

    if not isinstance(account, dict):
        raise ValidationError(
            "Invalid Google Play service account JSON format", platform=platform
        )

    missing = [name for name in REQUIRED_SERVICE_ACCOUNT_FIELDS if not account.get(name)]
    if missing:
        raise ValidationError(
            "Google Play service account JSON is missing required fields",
            validation_errors=[f"missing field: {name}" for name in missing],
            platform=platform,
        )

    if account["type"] != "service_account":
        raise ValidationError(
            "Google Play credentials must be a service account key",
            validation_errors=[f"unexpected type: {account['type']}"],
            platform=platform,
        )

    return account


def build_jwt_assertion(account: dict[str, Any], audience: str, now: int | None = None) -> str:
    """Sign the RS256 assertion exchanged for an access token."""
    issued_at = int(time.time()) if now is None else now
    claims = {
        "iss": account["client_email"],
        "scope": ANDROID_PUBLISHER_SCOPE,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
    }
    headers = {"kid": account["private_key_id"]} if account.get("private_key_id") else None
    return jwt.encode(claims, account["private_key"], algorithm="RS256", headers=headers)


class AndroidDeployer:
    """Deploys Android App Bundles to a Google Play track."""

    platform = Platform.ANDROID

    def __init__(
        self,
        settings: Settings | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        filesystem: FileSystemService | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.settings = settings or get_settings()
        self.logger = (logger or get_logger("deployer")).bind(platform=self.platform.value)
        self.pipeline = DeploymentPipeline(ANDROID_PROFILE, filesystem, self.logger)
        self.session = EditSession()

        self._transport = transport
        self._sleep = sleep
        self._cancel_token = cancel_token
        self._access_token: str | None = None

    async def deploy(
        self, request: DeploymentRequest, deployment_id: str | None = None
    ) -> DeploymentResult:
        return await self.pipeline.run(request, self, deployment_id)

    async def validate_artifact(self, artifact_path: str) -> ArtifactDescriptor:
        return await self.pipeline.validate_artifact(artifact_path)

    def progress(self) -> dict[str, Any]:
        return self.session.progress()

    # -- lifecycle steps -----------------------------------------------------

    async def check_credentials(self, request: DeploymentRequest) -> None:
        """Dry run: prove the key parses and is accepted, without opening an edit."""
        await self.authenticate(request)
        self.logger.info(
            "android.dry_run.credentials_valid",
            package_name=self._target(request).package_name,
            track=self._target(request).track,
        )

    async def authenticate(self, request: DeploymentRequest) -> None:
        target = self._target(request)
        account = load_service_account(target.service_account_json.get_secret_value())
        token_url = self.settings.google_oauth_token_url

        try:
            assertion = build_jwt_assertion(account, token_url)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(
                f"Failed to sign Google Play credentials: {type(e).__name__}",
                platform=self.platform.value,
            ) from e

        try:
            async with self._client() as client:
                body = await client.post(
                    token_url,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
        except (DeploymentError, httpx.HTTPError) as e:
            raise AuthenticationError(
                f"Failed to authenticate with Google Play: {describe_http_error(e)}",
                platform=self.platform.value,
            ) from e

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError(
                "Google Play token endpoint returned no access token",
                platform=self.platform.value,
            )

        self._access_token = token
        self.logger.info(
            "android.authenticated",
            client_email=account["client_email"],
            project_id=account["project_id"],
        )

    async def upload(self, request: DeploymentRequest, artifact: ArtifactDescriptor) -> UploadOutcome:
        target = self._target(request)
        self.session = session = EditSession()

        async with self._client(self._access_token) as client:
            try:
                await self._create_edit(client, target, session)
                await self._upload_bundle(client, target, session, artifact)
                await self._assign_track(client, target, session, request)
                await self._commit_edit(client, target, session)
            except Exception as e:
                progress = session.progress()
                if session.is_open:
                    await self._delete_edit(client, target, session)
                if isinstance(e, DeploymentError):
                    e.details = {**e.details, **progress}
                raise

        self.logger.info(
            "android.deployment.committed",
            package_name=target.package_name,
            track=target.track,
            version_code=session.version_code,
        )
        return UploadOutcome(
            deployment_url=PLAY_STORE_URL.format(package_name=target.package_name),
            version_code=session.version_code,
            metadata=outcome_metadata(
                package_name=target.package_name,
                track=target.track,
                version_code=session.version_code,
                edit_id=session.edit_id,
            ),
        )

    # -- edit protocol -------------------------------------------------------

    async def _create_edit(
        self, client: HttpClient, target: AndroidTarget, session: EditSession
    ) -> None:
        body = await run_step(
            "create edit", client.post(self._edits_path(target.package_name)), self.platform
        )
        edit_id = body.get("id") if isinstance(body, dict) else None
        if not edit_id:
            raise NetworkError(
                "Failed to create edit: no edit ID returned", platform=self.platform.value
            )

        session.edit_id = str(edit_id)
        session.state = EditSessionState.SESSION_OPEN
        self.logger.info("android.edit.created", edit_id=session.edit_id)

    async def _upload_bundle(
        self,
        client: HttpClient,
        target: AndroidTarget,
        session: EditSession,
        artifact: ArtifactDescriptor,
    ) -> None:
        self.logger.info(
            "android.bundle.uploading",
            file=artifact.basename,
            size=format_file_size(artifact.size),
        )
        url = (
            f"/upload{self._edits_path(target.package_name)}/{session.edit_id}/bundles"
        )
        body = await run_step(
            "upload bundle",
            client.send_file(
                "POST",
                url,
                artifact.path,
                content_type=BUNDLE_CONTENT_TYPE,
                on_progress=self._progress_logger(),
                params={"uploadType": "media"},
            ),
            self.platform,
        )
        version_code = body.get("versionCode") if isinstance(body, dict) else None
        if version_code is None:
            raise NetworkError(
                "Failed to upload bundle: no version code returned",
                platform=self.platform.value,
            )

        session.version_code = str(version_code)
        session.state = EditSessionState.BUNDLE_UPLOADED
        self.logger.info("android.bundle.uploaded", version_code=session.version_code)

    async def _assign_track(
        self,
        client: HttpClient,
        target: AndroidTarget,
        session: EditSession,
        request: DeploymentRequest,
    ) -> None:
        release: dict[str, Any] = {
            "name": f"Release {request.app_version}",
            "versionCodes": [session.version_code],
            "status": "completed",
        }
        if request.release_notes:
            release["releaseNotes"] = [
                {"language": RELEASE_NOTES_LANGUAGE, "text": request.release_notes}
            ]

        url = f"{self._edit_path(target.package_name, session.edit_id)}/tracks/{target.track}"
        await run_step(
            "update track",
            client.put(url, json={"track": target.track, "releases": [release]}),
            self.platform,
        )

        session.state = EditSessionState.TRACK_ASSIGNED
        self.logger.info(
            "android.track.updated", track=target.track, version_code=session.version_code
        )

    async def _commit_edit(
        self, client: HttpClient, target: AndroidTarget, session: EditSession
    ) -> None:
        url = f"{self._edit_path(target.package_name, session.edit_id)}:commit"
        await run_step("commit edit", client.post(url), self.platform)
        session.state = EditSessionState.COMMITTED
        self.logger.info("android.edit.committed", edit_id=session.edit_id)

    async def _delete_edit(
        self, client: HttpClient, target: AndroidTarget, session: EditSession
    ) -> None:
        """Compensate a failed edit. Failures here are logged, never raised."""
        try:
            await client.delete(self._edit_path(target.package_name, session.edit_id))
        except (DeploymentError, httpx.HTTPError) as e:
            self.logger.warning(
                "android.edit.cleanup_failed",
                edit_id=session.edit_id,
                error=describe_http_error(e),
            )
            return

        self.logger.info(
            "android.edit.deleted", edit_id=session.edit_id, last_state=session.state.value
        )
        session.state = EditSessionState.DELETED

    # -- helpers -------------------------------------------------------------

    def _progress_logger(self) -> Callable[[int, int], None]:
        reported = 0

        def on_progress(sent: int, total: int) -> None:
            nonlocal reported
            if not total:
                return
            quarter = sent * 4 // total
            if quarter > reported:
                reported = quarter
                self.logger.info(
                    "android.bundle.progress",
                    percent=quarter * 25,
                    sent=format_file_size(sent),
                    total=format_file_size(total),
                )

        return on_progress

    def _client(self, access_token: str | None = None) -> HttpClient:
        kwargs: dict[str, Any] = {
            "base_url": self.settings.google_play_api_url,
            "timeout": self.settings.http_timeout_seconds,
            "retry_policy": self.settings.retry_policy(),
            "logger": self.logger,
            "transport": self._transport,
            "sleep": self._sleep,
            "cancel_token": self._cancel_token,
        }
        if access_token:
            return HttpClient.with_bearer_token(access_token, **kwargs)
        return HttpClient(**kwargs)

    def _target(self, request: DeploymentRequest) -> AndroidTarget:
        if request.android is None:
            raise ValidationError(
                "Google Play target is required for Android deployments",
                platform=self.platform.value,
            )
        return request.android

    @staticmethod
    def _edits_path(package_name: str) -> str:
        return f"/androidpublisher/v3/applications/{package_name}/edits"

    def _edit_path(self, package_name: str, edit_id: str | None) -> str:
        return f"{self._edits_path(package_name)}/{edit_id}"
