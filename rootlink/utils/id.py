"""
ID generation utilities
"""

import secrets
import string
import uuid
from typing import Optional


def generate_id(prefix: Optional[str] = None, length: int = 8) -> str:
    """
    Generate a short random ID.

    Args:
        prefix: Optional prefix for the ID
        length: Length of random part (default 8)

    Returns:
        Generated ID string
    """
    # Lowercase alphanumerics without the easily confused 0/1/l
    chars = string.ascii_lowercase + string.digits
    chars = chars.replace("0", "").replace("1", "").replace("l", "")

    random_part = "".join(secrets.choice(chars) for _ in range(length))

    if prefix:
        return f"{prefix}-{random_part}"
    return random_part


def generate_tunnel_id() -> str:
    """Generate a tunnel ID"""
    return generate_id(length=8)


def generate_request_id() -> str:
    """Generate a globally unique request correlation ID"""
    return uuid.uuid4().hex
