"""Integration tests for the deployment orchestrator."""

import asyncio
from pathlib import Path

import httpx
import pytest

from store_publisher.core.exceptions import AbortedError
from store_publisher.core.orchestrator import DeploymentOrchestrator
from store_publisher.core.resilience import CancellationToken
from store_publisher.deployers.ios import ToolResult
from store_publisher.models.deployment import (
    MIB,
    DeploymentRequest,
    DeploymentStatus,
    Platform,
)

EDITS = "/androidpublisher/v3/applications/com.example.app/edits"


@pytest.fixture
def play(router):
    router.add("POST", "/token", httpx.Response(200, json={"access_token": "ya29.token"}))
    router.add("POST", EDITS, httpx.Response(200, json={"id": "edit-7"}))
    router.add("POST", f"/upload{EDITS}/edit-7/bundles", httpx.Response(200, json={"versionCode": 108}))
    router.add("PUT", f"{EDITS}/edit-7/tracks/internal", httpx.Response(200, json={}))
    router.add("POST", f"{EDITS}/edit-7:commit", httpx.Response(200, json={}))
    router.add("DELETE", f"{EDITS}/edit-7", httpx.Response(204))
    return router


@pytest.fixture
def android_orchestrator(settings, play, sleeper) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(settings=settings, transport=play.transport, sleep=sleeper)


class StubDeployer:
    """Deployer double whose deploy step is supplied by the test."""

    platform = Platform.ANDROID

    def __init__(self, deploy):
        self._deploy = deploy

    async def validate_artifact(self, artifact_path):
        return None

    async def deploy(self, request, deployment_id=None):
        return await self._deploy()

    def progress(self):
        return {"edit_id": "edit-9", "version_code": "9", "last_state": "bundle_uploaded"}


def stub_factory(deploy):
    return lambda platform, **kwargs: StubDeployer(deploy)


class HangingUploadTool:
    """Upload tool double that never finishes; remembers the key directory."""

    def __init__(self):
        self.key_dir: Path | None = None
        self.cancelled = False

    async def ensure_available(self) -> None:
        return None

    async def run(self, args, env, timeout) -> ToolResult:
        self.key_dir = Path(env["API_PRIVATE_KEYS_DIR"])
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult(0, "", "")


class TestAndroidThroughOrchestrator:
    """End-to-end Android runs against a fake Play API."""

    @pytest.mark.asyncio
    async def test_dry_run(self, android_orchestrator, play, android_request):
        """Test a dry run validates, checks credentials and publishes nothing."""
        result = await android_orchestrator.run(android_request(dry_run=True))

        assert result.status == DeploymentStatus.SUCCESS
        assert result.metadata["dry_run"] is True
        assert result.metadata["validations_passed"] is True
        assert result.version_code == "1.2.3"
        assert result.deployment_id.startswith("android-deploy-")
        assert [r.url.path for r in play.requests] == ["/token"]

    @pytest.mark.asyncio
    async def test_real_run(self, android_orchestrator, play, android_request):
        result = await android_orchestrator.run(android_request())

        assert result.status == DeploymentStatus.SUCCESS
        assert result.version_code == "108"
        assert result.metadata["edit_id"] == "edit-7"
        assert result.error is None
        assert result.summary()["error"] is None

    @pytest.mark.asyncio
    async def test_oversized_artifact_makes_no_requests(
        self, android_orchestrator, play, android_request, make_artifact
    ):
        artifact = make_artifact("huge.aab", size=200 * MIB + 1)

        result = await android_orchestrator.run(android_request(artifact))

        assert result.status == DeploymentStatus.FAILED
        assert result.error.code == "ARTIFACT_TOO_LARGE"
        assert result.error.retryable is False
        assert result.end_time is not None
        assert play.requests == []

    @pytest.mark.asyncio
    async def test_failed_commit_reports_edit(self, android_orchestrator, play, android_request):
        play.add("POST", f"{EDITS}/edit-7:commit", httpx.Response(409, json={"error": {"message": "conflict"}}))

        result = await android_orchestrator.run(android_request())

        assert result.status == DeploymentStatus.FAILED
        assert result.error.kind == "NetworkError"
        assert result.error.retryable is False
        assert result.metadata["edit_id"] == "edit-7"
        assert result.metadata["version_code"] == "108"
        assert result.metadata["last_state"] == "track_assigned"
        assert result.metadata["operation"] == "upload"
        assert result.version_code == "108"
        assert len(play.calls("DELETE", f"{EDITS}/edit-7")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self, android_orchestrator, android_request):
        first, second = await asyncio.gather(
            android_orchestrator.run(android_request(dry_run=True)),
            android_orchestrator.run(android_request(dry_run=True)),
        )

        assert first.status == second.status == DeploymentStatus.SUCCESS
        assert first.deployment_id != second.deployment_id


class TestIOSThroughOrchestrator:
    @pytest.mark.asyncio
    async def test_upload_tool_authentication_failure(
        self, settings, router, sleeper, upload_tool, ios_request
    ):
        """Test an upload tool auth failure becomes a non-retryable failed result."""
        router.add("GET", "/v1/apps", httpx.Response(200, json={"data": [{"id": "app-3"}]}))
        tool = upload_tool(result=ToolResult(1, "", "Error: Unable to authenticate. (-19209)"))
        orchestrator = DeploymentOrchestrator(
            settings=settings, transport=router.transport, sleep=sleeper, upload_tool=tool
        )

        result = await orchestrator.run(ios_request())

        assert result.status == DeploymentStatus.FAILED
        assert result.error.kind == "AuthenticationError"
        assert result.error.retryable is False
        assert result.metadata["app_id"] == "app-3"
        assert result.metadata["last_state"] == "app_resolved"
        assert not tool.key_path.exists()
        assert router.calls("GET", "/v1/builds") == []

    @pytest.mark.asyncio
    async def test_timeout_removes_key_directory(
        self, settings, router, sleeper, ios_request, monkeypatch
    ):
        """Test the key directory is gone by the time a timed-out run returns."""
        monkeypatch.setattr(DeploymentRequest, "timeout_seconds", property(lambda self: 0.3))
        router.add("GET", "/v1/apps", httpx.Response(200, json={"data": [{"id": "app-3"}]}))
        tool = HangingUploadTool()
        orchestrator = DeploymentOrchestrator(
            settings=settings, transport=router.transport, sleep=sleeper, upload_tool=tool
        )

        result = await orchestrator.run(ios_request())

        assert result.status == DeploymentStatus.FAILED
        assert result.error.kind == "OperationTimeoutError"
        assert tool.cancelled is True
        assert tool.key_dir is not None
        assert not tool.key_dir.exists()

    @pytest.mark.asyncio
    async def test_cancellation_removes_key_directory(self, settings, router, sleeper, ios_request):
        """Test the key directory is gone by the time a cancelled run returns."""
        router.add("GET", "/v1/apps", httpx.Response(200, json={"data": [{"id": "app-3"}]}))
        tool = HangingUploadTool()
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel, "cancelled by runner")
        orchestrator = DeploymentOrchestrator(
            settings=settings, transport=router.transport, sleep=sleeper, upload_tool=tool
        )

        result = await orchestrator.run(ios_request(), cancel_token=token)

        assert isinstance(result.error, AbortedError)
        assert tool.key_dir is not None
        assert not tool.key_dir.exists()


class TestFailureNormalization:
    """Tests for timeout, cancellation and unexpected errors."""

    @pytest.mark.asyncio
    async def test_global_timeout_keeps_progress(self, settings, android_request, monkeypatch):
        monkeypatch.setattr(DeploymentRequest, "timeout_seconds", property(lambda self: 0.05))

        async def slow():
            await asyncio.sleep(10)

        orchestrator = DeploymentOrchestrator(settings=settings, deployer_factory=stub_factory(slow))
        result = await orchestrator.run(android_request())

        assert result.status == DeploymentStatus.FAILED
        assert result.error.kind == "OperationTimeoutError"
        assert result.error.retryable is True
        assert result.metadata["edit_id"] == "edit-9"
        assert result.version_code == "9"
        assert result.duration_ms >= 40

    @pytest.mark.asyncio
    async def test_cancellation(self, settings, android_request):
        token = CancellationToken()

        async def slow():
            await asyncio.sleep(10)

        asyncio.get_running_loop().call_later(0.01, token.cancel, "cancelled by runner")
        orchestrator = DeploymentOrchestrator(settings=settings, deployer_factory=stub_factory(slow))

        result = await orchestrator.run(android_request(), cancel_token=token)

        assert result.status == DeploymentStatus.FAILED
        assert isinstance(result.error, AbortedError)
        assert result.error.message == "cancelled by runner"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, settings, android_request):
        async def broken():
            raise RuntimeError("connection reset by peer")

        orchestrator = DeploymentOrchestrator(settings=settings, deployer_factory=stub_factory(broken))
        result = await orchestrator.run(android_request())

        assert result.status == DeploymentStatus.FAILED
        assert result.error.kind == "DeploymentError"
        assert result.error.code == "RuntimeError"
        assert result.error.retryable is True
        assert result.error.platform == "android"
