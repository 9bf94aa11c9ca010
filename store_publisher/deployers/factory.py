"""Deployer factory over the closed set of supported platforms."""

from typing import Any

from store_publisher.core.exceptions import ValidationError
from store_publisher.deployers.android import AndroidDeployer
from store_publisher.deployers.ios import IOSDeployer
from store_publisher.models.deployment import Platform
from store_publisher.utils.logging import get_logger

logger = get_logger(__name__)

_DEPLOYERS: dict[Platform, type[AndroidDeployer] | type[IOSDeployer]] = {
    Platform.ANDROID: AndroidDeployer,
    Platform.IOS: IOSDeployer,
}


def _coerce_platform(platform: Platform | str) -> Platform:
    try:
        return Platform(str(platform).lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported platform: {platform}. Supported platforms: "
            + ", ".join(supported_platforms()),
            code="UNSUPPORTED_PLATFORM",
        ) from None


def create_deployer(platform: Platform | str, **kwargs: Any) -> AndroidDeployer | IOSDeployer:
    """Create a fresh, single-use deployer for ``platform``.

    Keyword arguments (settings, logger, transport, ...) are passed through
    to the deployer constructor.
    """
    resolved = _coerce_platform(platform)
    logger.debug("deployer.created", platform=resolved.value)
    return _DEPLOYERS[resolved](**kwargs)


def supported_platforms() -> list[str]:
    """List platform names accepted by ``create_deployer``."""
    return [platform.value for platform in _DEPLOYERS]


def is_platform_supported(platform: str) -> bool:
    return platform.lower() in supported_platforms()
