"""Command line entry point.

Entry point: ``store-publisher`` (configured via pyproject.toml scripts).
Every option can also be supplied through the ``INPUT_<NAME>`` environment
variable that GitHub Actions sets for action inputs.
"""

import asyncio
import json

import pydantic
import typer

from store_publisher.config import get_settings
from store_publisher.core.action import PublishAction, exit_code
from store_publisher.models.deployment import (
    AndroidTarget,
    DeploymentRequest,
    IOSTarget,
    Platform,
)
from store_publisher.utils.logging import configure_logging

app = typer.Typer(
    name="store-publisher",
    help="Publish mobile app builds to Google Play and App Store Connect.",
    no_args_is_help=True,
    add_completion=False,
)

# Shared options
PLATFORM = typer.Option(..., envvar="INPUT_PLATFORM", case_sensitive=False, help="Target platform.")
APP_VERSION = typer.Option(..., envvar="INPUT_APP_VERSION", help="Semantic app version.")
BUILD_NUMBER = typer.Option(None, envvar="INPUT_BUILD_NUMBER", help="Store build number.")
RELEASE_NOTES = typer.Option("", envvar="INPUT_RELEASE_NOTES", help="Release notes (en-US).")
ARTIFACT_PATH = typer.Option(
    ..., envvar="INPUT_ARTIFACT_PATH", help="Path to the .aab or .ipa artifact."
)
DRY_RUN = typer.Option(
    False,
    "--dry-run/--no-dry-run",
    envvar="INPUT_DRY_RUN",
    help="Validate everything without publishing.",
)
TIMEOUT_MINUTES = typer.Option(
    30, min=1, max=120, envvar="INPUT_TIMEOUT_MINUTES", help="Overall deadline in minutes."
)
SERVICE_ACCOUNT_JSON = typer.Option(
    None,
    envvar="INPUT_GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
    help="Base64-encoded Google Play service account key.",
    show_default=False,
)
PACKAGE_NAME = typer.Option(
    None, envvar="INPUT_GOOGLE_PLAY_PACKAGE_NAME", help="Android package name."
)
TRACK = typer.Option("internal", envvar="INPUT_GOOGLE_PLAY_TRACK", help="Google Play track.")
API_KEY_ID = typer.Option(
    None, envvar="INPUT_APP_STORE_CONNECT_API_KEY_ID", help="App Store Connect API key ID."
)
API_ISSUER_ID = typer.Option(
    None, envvar="INPUT_APP_STORE_CONNECT_API_ISSUER_ID", help="App Store Connect issuer ID."
)
API_PRIVATE_KEY = typer.Option(
    None,
    envvar="INPUT_APP_STORE_CONNECT_API_PRIVATE_KEY",
    help="Base64-encoded App Store Connect .p8 private key.",
    show_default=False,
)
BUNDLE_ID = typer.Option(None, envvar="INPUT_IOS_BUNDLE_ID", help="iOS bundle identifier.")


def build_request(
    platform: Platform,
    app_version: str,
    build_number: str | None,
    release_notes: str,
    artifact_path: str,
    dry_run: bool,
    timeout_minutes: int,
    google_play_service_account_json: str | None,
    google_play_package_name: str | None,
    google_play_track: str,
    app_store_connect_api_key_id: str | None,
    app_store_connect_api_issuer_id: str | None,
    app_store_connect_api_private_key: str | None,
    ios_bundle_id: str | None,
) -> DeploymentRequest:
    """Bind raw inputs to a request, exiting with status 1 if they do not fit."""
    try:
        android = ios = None
        if platform == Platform.ANDROID:
            android = AndroidTarget(
                service_account_json=google_play_service_account_json or "",
                package_name=google_play_package_name or "",
                track=google_play_track,
            )
        else:
            ios = IOSTarget(
                api_key_id=app_store_connect_api_key_id or "",
                api_issuer_id=app_store_connect_api_issuer_id or "",
                api_private_key=app_store_connect_api_private_key or "",
                bundle_id=ios_bundle_id or "",
            )
        return DeploymentRequest(
            platform=platform,
            app_version=app_version,
            build_number=build_number or None,
            release_notes=release_notes,
            artifact_path=artifact_path,
            dry_run=dry_run,
            timeout_minutes=timeout_minutes,
            android=android,
            ios=ios,
        )
    except pydantic.ValidationError as e:
        # Field names only; input values may be credentials
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "request"
            typer.echo(f"Invalid input {field}: {error['msg']}", err=True)
        raise typer.Exit(code=1) from None


@app.command(name="deploy", help="Validate inputs and publish the artifact.")
def deploy_cmd(
    platform: Platform = PLATFORM,
    app_version: str = APP_VERSION,
    build_number: str = BUILD_NUMBER,
    release_notes: str = RELEASE_NOTES,
    artifact_path: str = ARTIFACT_PATH,
    dry_run: bool = DRY_RUN,
    timeout_minutes: int = TIMEOUT_MINUTES,
    google_play_service_account_json: str = SERVICE_ACCOUNT_JSON,
    google_play_package_name: str = PACKAGE_NAME,
    google_play_track: str = TRACK,
    app_store_connect_api_key_id: str = API_KEY_ID,
    app_store_connect_api_issuer_id: str = API_ISSUER_ID,
    app_store_connect_api_private_key: str = API_PRIVATE_KEY,
    ios_bundle_id: str = BUNDLE_ID,
) -> None:
    """Publish an artifact; prints the deployment summary JSON to stdout."""
    settings = get_settings()
    configure_logging(settings)

    request = build_request(
        platform,
        app_version,
        build_number,
        release_notes,
        artifact_path,
        dry_run,
        timeout_minutes,
        google_play_service_account_json,
        google_play_package_name,
        google_play_track,
        app_store_connect_api_key_id,
        app_store_connect_api_issuer_id,
        app_store_connect_api_private_key,
        ios_bundle_id,
    )

    result = asyncio.run(PublishAction(settings=settings).run(request))
    typer.echo(json.dumps(result.summary(), indent=2, default=str))
    raise typer.Exit(code=exit_code(result))


@app.command(name="validate", help="Check inputs and artifact without contacting any store.")
def validate_cmd(
    platform: Platform = PLATFORM,
    app_version: str = APP_VERSION,
    build_number: str = BUILD_NUMBER,
    release_notes: str = RELEASE_NOTES,
    artifact_path: str = ARTIFACT_PATH,
    dry_run: bool = DRY_RUN,
    timeout_minutes: int = TIMEOUT_MINUTES,
    google_play_service_account_json: str = SERVICE_ACCOUNT_JSON,
    google_play_package_name: str = PACKAGE_NAME,
    google_play_track: str = TRACK,
    app_store_connect_api_key_id: str = API_KEY_ID,
    app_store_connect_api_issuer_id: str = API_ISSUER_ID,
    app_store_connect_api_private_key: str = API_PRIVATE_KEY,
    ios_bundle_id: str = BUNDLE_ID,
) -> None:
    """Run the pre-flight validation only; prints the report JSON to stdout."""
    settings = get_settings()
    configure_logging(settings)

    request = build_request(
        platform,
        app_version,
        build_number,
        release_notes,
        artifact_path,
        dry_run,
        timeout_minutes,
        google_play_service_account_json,
        google_play_package_name,
        google_play_track,
        app_store_connect_api_key_id,
        app_store_connect_api_issuer_id,
        app_store_connect_api_private_key,
        ios_bundle_id,
    )

    report = PublishAction(settings=settings).validate(request)
    typer.echo(report.model_dump_json(indent=2))
    raise typer.Exit(code=0 if report.is_valid else 1)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
