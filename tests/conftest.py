"""Pytest configuration and fixtures."""

import json
import os
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from store_publisher.config import Settings, get_settings
from store_publisher.deployers.ios import ToolResult
from store_publisher.models.deployment import (
    AndroidTarget,
    DeploymentRequest,
    IOSTarget,
    Platform,
)
from store_publisher.utils.helpers import encode_base64

API_KEY_ID = "ABC123DEF4"
API_ISSUER_ID = "69a6de7e-1a2b-47e3-a053-5b8c7c11a4d1"
TOKEN_URL = "https://oauth2.test/token"


def _pkcs8(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def service_account(rsa_key) -> dict:
    """A structurally valid Google service account key."""
    return {
        "type": "service_account",
        "project_id": "store-publisher-test",
        "private_key_id": "key-1",
        "private_key": _pkcs8(rsa_key),
        "client_email": "publisher@store-publisher-test.iam.gserviceaccount.com",
        "token_uri": TOKEN_URL,
    }


@pytest.fixture(scope="session")
def service_account_b64(service_account) -> str:
    return encode_base64(json.dumps(service_account))


@pytest.fixture(scope="session")
def ios_private_key_pem(ec_key) -> str:
    return _pkcs8(ec_key)


@pytest.fixture(scope="session")
def ios_private_key_b64(ios_private_key_pem) -> str:
    return encode_base64(ios_private_key_pem)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; tests change the environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_structlog():
    """CLI tests configure logging against streams that close after the test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> Settings:
    """Settings pointed at fake endpoints, with short polling."""
    return Settings(
        log_level="DEBUG",
        google_play_api_url="https://play.test",
        google_oauth_token_url=TOKEN_URL,
        app_store_connect_api_url="https://asc.test",
        ios_processing_poll_interval_seconds=1.0,
        ios_processing_max_wait_seconds=3.0,
        github_output_path=None,
    )


@pytest.fixture
def make_artifact(tmp_path: Path) -> Callable[..., Path]:
    """Create an artifact file; large sizes are sparse so tests stay cheap."""

    def _make(name: str = "app.aab", size: int = 4096) -> Path:
        path = tmp_path / name
        with path.open("wb") as f:
            if size > 1024 * 1024:
                f.truncate(size)
            else:
                f.write(os.urandom(size))
        return path

    return _make


@pytest.fixture
def android_request(make_artifact, service_account_b64) -> Callable[..., DeploymentRequest]:
    def _build(artifact: Path | None = None, **overrides) -> DeploymentRequest:
        target = AndroidTarget(
            service_account_json=overrides.pop("service_account_json", service_account_b64),
            package_name=overrides.pop("package_name", "com.example.app"),
            track=overrides.pop("track", "internal"),
        )
        values = {
            "platform": Platform.ANDROID,
            "app_version": "1.2.3",
            "build_number": "42",
            "release_notes": "Bug fixes",
            "artifact_path": str(artifact or make_artifact("app.aab")),
            "android": target,
            **overrides,
        }
        return DeploymentRequest(**values)

    return _build


@pytest.fixture
def ios_request(make_artifact, ios_private_key_b64) -> Callable[..., DeploymentRequest]:
    def _build(artifact: Path | None = None, **overrides) -> DeploymentRequest:
        target = IOSTarget(
            api_key_id=overrides.pop("api_key_id", API_KEY_ID),
            api_issuer_id=overrides.pop("api_issuer_id", API_ISSUER_ID),
            api_private_key=overrides.pop("api_private_key", ios_private_key_b64),
            bundle_id=overrides.pop("bundle_id", "com.example.app"),
        )
        values = {
            "platform": Platform.IOS,
            "app_version": "1.2.3",
            "build_number": "42",
            "artifact_path": str(artifact or make_artifact("app.ipa")),
            "ios": target,
            **overrides,
        }
        return DeploymentRequest(**values)

    return _build


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


class Router:
    """httpx.MockTransport handler dispatching on (method, path).

    Each route holds a list of responses consumed in order; the last one
    repeats. Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses) -> "Router":
        self.routes[(method, path)] = list(responses)
        return self

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"error": {"message": "no route"}})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            response = response(request)
        if isinstance(response, Exception):
            raise response
        # Fresh copy so a repeated route never hands out a consumed response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def router() -> Router:
    return Router()


class FakeUploadTool:
    """Stands in for the upload tool binary; checks the key file while running."""

    def __init__(self, result: ToolResult | None = None, error: Exception | None = None):
        self.result = result or ToolResult(0, "No errors uploading 'app.ipa'", "")
        self.error = error
        self.calls: list[list[str]] = []
        self.key_path: Path | None = None
        self.key_mode: int | None = None
        self.key_contents: str | None = None

    async def ensure_available(self) -> None:
        return None

    async def run(self, args, env, timeout) -> ToolResult:
        self.calls.append(list(args))
        key_dir = Path(env["API_PRIVATE_KEYS_DIR"])
        self.key_path = key_dir / f"AuthKey_{API_KEY_ID}.p8"
        assert self.key_path.exists()
        self.key_mode = self.key_path.stat().st_mode & 0o777
        self.key_contents = self.key_path.read_text()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def upload_tool() -> Callable[..., FakeUploadTool]:
    return FakeUploadTool
