"""Utility functions for store-publisher."""

from store_publisher.utils.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
