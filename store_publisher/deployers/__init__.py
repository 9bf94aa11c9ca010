"""Platform deployers."""

from store_publisher.deployers.android import AndroidDeployer
from store_publisher.deployers.base import Deployer, DeploymentPipeline, PlatformProfile
from store_publisher.deployers.factory import (
    create_deployer,
    is_platform_supported,
    supported_platforms,
)
from store_publisher.deployers.ios import IOSDeployer

__all__ = [
    "AndroidDeployer",
    "Deployer",
    "DeploymentPipeline",
    "IOSDeployer",
    "PlatformProfile",
    "create_deployer",
    "is_platform_supported",
    "supported_platforms",
]
