"""Unit tests for the shared deployment lifecycle."""

import time

import httpx
import pytest

from store_publisher.core.exceptions import (
    ArtifactError,
    AuthenticationError,
    DeploymentError,
    NetworkError,
)
from store_publisher.deployers.base import (
    ANDROID_PROFILE,
    IOS_PROFILE,
    DeploymentPipeline,
    is_retryable_error,
    outcome_metadata,
    run_step,
    wrap_deployment_error,
)
from store_publisher.models.deployment import (
    MIB,
    DeploymentStatus,
    Platform,
    UploadOutcome,
)


class StubSteps:
    """Records which lifecycle steps ran."""

    def __init__(self, upload_error: Exception | None = None):
        self.calls: list[str] = []
        self.upload_error = upload_error

    async def check_credentials(self, request):
        self.calls.append("check_credentials")

    async def authenticate(self, request):
        self.calls.append("authenticate")

    async def upload(self, request, artifact):
        self.calls.append("upload")
        if self.upload_error is not None:
            raise self.upload_error
        return UploadOutcome(
            deployment_url="https://store.test/app",
            version_code="77",
            metadata={"track": "internal"},
        )


class TestArtifactValidation:
    """Tests for the hard artifact checks."""

    @pytest.mark.asyncio
    async def test_android_hard_ceiling(self, make_artifact):
        """Test a bundle one byte over 200 MiB is rejected."""
        pipeline = DeploymentPipeline(ANDROID_PROFILE)
        artifact = make_artifact("big.aab", size=200 * MIB + 1)

        with pytest.raises(ArtifactError) as exc_info:
            await pipeline.validate_artifact(str(artifact))

        assert exc_info.value.code == "ARTIFACT_TOO_LARGE"
        assert exc_info.value.retryable is False
        assert exc_info.value.platform == "android"

    @pytest.mark.asyncio
    async def test_android_exact_ceiling_passes(self, make_artifact):
        pipeline = DeploymentPipeline(ANDROID_PROFILE)
        artifact = await pipeline.validate_artifact(str(make_artifact("max.aab", size=200 * MIB)))
        assert artifact.size == 200 * MIB

    @pytest.mark.asyncio
    async def test_ios_hard_ceiling(self, make_artifact):
        pipeline = DeploymentPipeline(IOS_PROFILE)

        with pytest.raises(ArtifactError) as exc_info:
            await pipeline.validate_artifact(str(make_artifact("big.ipa", size=250 * MIB + 1)))

        assert exc_info.value.code == "ARTIFACT_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_extension_case_insensitive(self, make_artifact):
        pipeline = DeploymentPipeline(IOS_PROFILE)
        artifact = await pipeline.validate_artifact(str(make_artifact("APP.IPA")))
        assert artifact.extension == ".IPA"

    @pytest.mark.asyncio
    async def test_wrong_extension(self, make_artifact):
        pipeline = DeploymentPipeline(ANDROID_PROFILE)

        with pytest.raises(ArtifactError) as exc_info:
            await pipeline.validate_artifact(str(make_artifact("app.apk")))

        assert exc_info.value.code == "INVALID_ARTIFACT_TYPE"
        assert "Expected .aab, got .apk" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_artifact(self, tmp_path):
        pipeline = DeploymentPipeline(ANDROID_PROFILE)

        with pytest.raises(ArtifactError) as exc_info:
            await pipeline.validate_artifact(str(tmp_path / "nope.aab"))

        assert exc_info.value.code == "ARTIFACT_NOT_FOUND"


class TestPipelineRun:
    """Tests for DeploymentPipeline.run."""

    @pytest.mark.asyncio
    async def test_dry_run_only_checks_credentials(self, android_request):
        steps = StubSteps()
        result = await DeploymentPipeline(ANDROID_PROFILE).run(
            android_request(dry_run=True), steps, "dep-1"
        )

        assert steps.calls == ["check_credentials"]
        assert result.status == DeploymentStatus.SUCCESS
        assert result.deployment_id == "dep-1"
        assert result.version_code == "1.2.3"
        assert "dry run" in result.deployment_url
        assert result.metadata["dry_run"] is True
        assert result.metadata["validations_passed"] is True

    @pytest.mark.asyncio
    async def test_real_run_merges_outcome(self, android_request):
        steps = StubSteps()
        result = await DeploymentPipeline(ANDROID_PROFILE).run(android_request(), steps)

        assert steps.calls == ["authenticate", "upload"]
        assert result.deployment_id.startswith("android-deploy-")
        assert result.deployment_url == "https://store.test/app"
        assert result.version_code == "77"
        assert result.metadata["track"] == "internal"
        assert "artifact_checksum" in result.metadata
        assert result.end_time is not None

    @pytest.mark.asyncio
    async def test_platform_mismatch(self, ios_request):
        with pytest.raises(DeploymentError) as exc_info:
            await DeploymentPipeline(ANDROID_PROFILE).run(ios_request(), StubSteps())
        assert exc_info.value.code == "INVALID_PLATFORM"

    @pytest.mark.asyncio
    async def test_typed_error_keeps_kind_and_gains_context(self, android_request):
        """Test a typed failure is enriched once and keeps its class."""
        error = AuthenticationError("bad key")
        steps = StubSteps(upload_error=error)

        with pytest.raises(AuthenticationError) as exc_info:
            await DeploymentPipeline(ANDROID_PROFILE).run(android_request(), steps)

        assert exc_info.value is error
        assert error.details["operation"] == "upload"
        assert error.details["version"] == "1.2.3"
        assert error.details["build_number"] == "42"
        assert error.platform == "android"

    @pytest.mark.asyncio
    async def test_untyped_error_is_wrapped(self, android_request):
        steps = StubSteps(upload_error=RuntimeError("socket timeout"))

        with pytest.raises(DeploymentError) as exc_info:
            await DeploymentPipeline(ANDROID_PROFILE).run(android_request(), steps)

        error = exc_info.value
        assert type(error) is DeploymentError
        assert error.code == "RuntimeError"
        assert error.retryable is True
        assert isinstance(error.__cause__, RuntimeError)


class TestErrorHelpers:
    """Tests for retryability and wrapping helpers."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("socket timeout", True),
            ("HTTP 503 Service Unavailable", True),
            ("Rate limit exceeded", True),
            ("ECONNRESET", True),
            ("permission denied", False),
            ("status 429", True),
            ("altool exited with code -19500", False),
            ("file size 15029 bytes", False),
        ],
    )
    def test_is_retryable_error(self, message, expected):
        assert is_retryable_error(RuntimeError(message)) is expected

    def test_wrap_is_idempotent(self, android_request):
        request = android_request()
        first = wrap_deployment_error(
            ValueError("boom"),
            platform=Platform.ANDROID,
            request=request,
            started=time.monotonic(),
            operation="upload",
        )
        second = wrap_deployment_error(
            first,
            platform=Platform.ANDROID,
            request=request,
            started=time.monotonic(),
            operation="authenticate",
        )

        assert second is first
        assert second.details["operation"] == "upload"

    def test_wrap_resolves_undecided_retryability(self, android_request):
        error = DeploymentError("upload failed: 502 bad gateway", retryable=None)
        wrapped = wrap_deployment_error(
            error,
            platform=Platform.IOS,
            request=android_request(),
            started=time.monotonic(),
            operation="upload",
        )
        assert wrapped.retryable is True

    def test_outcome_metadata_drops_none(self):
        assert outcome_metadata(a=1, b=None, c="") == {"a": 1, "c": ""}


class TestRunStep:
    """Tests for run_step error conversion."""

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_retryable(self):
        request = httpx.Request("POST", "https://play.test/edits")
        response = httpx.Response(
            400, request=request, json={"error": {"message": "Package not found"}}
        )

        async def call():
            raise httpx.HTTPStatusError("bad", request=request, response=response)

        with pytest.raises(NetworkError) as exc_info:
            await run_step("create edit", call(), Platform.ANDROID)

        error = exc_info.value
        assert error.message == "Failed to create edit: HTTP 400 Bad Request: Package not found"
        assert error.retryable is False
        assert error.details == {"step": "create edit", "status_code": 400}

    @pytest.mark.asyncio
    async def test_transient_failure_stays_retryable(self):
        async def call():
            raise NetworkError("network error: connection reset", details={"status_code": 503})

        with pytest.raises(NetworkError) as exc_info:
            await run_step("commit edit", call(), Platform.ANDROID)

        assert exc_info.value.retryable is True
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        async def call():
            return {"id": "e1"}

        assert await run_step("create edit", call(), Platform.ANDROID) == {"id": "e1"}
