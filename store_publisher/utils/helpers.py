"""Small formatting and encoding helpers."""

import base64
import binascii
import secrets
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def format_duration(ms: float) -> str:
    """Format milliseconds as ``850ms``, ``12s``, ``3m 5s`` or ``1h 2m``."""
    ms = int(ms)
    if ms < 1000:
        return f"{ms}ms"

    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"

    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s" if seconds else f"{minutes}m"

    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_id(prefix: str = "") -> str:
    """Generate a sortable, collision-resistant identifier."""
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    core = f"{timestamp}-{random_part}"
    return f"{prefix}-{core}" if prefix else core


def decode_base64(encoded: str) -> str:
    """Strictly decode a base64 string to UTF-8 text."""
    try:
        return base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError("Invalid base64 string") from e


def encode_base64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def format_file_size(size: int) -> str:
    """Format a byte count as ``12.34 MB``."""
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {units[unit]}"

