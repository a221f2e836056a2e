from __future__ import annotations
import uuid
from shared.utils import is_uuid_v4

GUEST_PREFIX = "guest-"


def generate_connection_id() -> str:
    """Generate a new UUID v4 for connection identification"""
    return str(uuid.uuid4())


def display_name_for(connection_id: str) -> str:
    """Display identity assigned by the relay, e.g. 'guest-1f0c9a2b'"""
    return GUEST_PREFIX + connection_id.replace("-", "")[:8]


def validate_connection_id(connection_id: str) -> bool:
    """Validate that a connection ID is a proper UUID v4"""
    return is_uuid_v4(connection_id)
