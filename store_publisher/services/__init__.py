"""Services for store-publisher."""

from store_publisher.services.filesystem import FileSystemService
from store_publisher.services.http_client import HttpClient
from store_publisher.services.validator import InputValidator

__all__ = [
    "FileSystemService",
    "HttpClient",
    "InputValidator",
]
