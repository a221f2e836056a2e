from __future__ import annotations
import uuid
from urllib.parse import urlsplit

# ========================================
#           INPUT VALIDATION HELPERS
# ========================================
"""
Small helpers shared by the relay, the session and the configuration layer.
"""

def is_uuid_v4(s: str) -> bool:
    """
    enforces that connection ids are valid UUIDv4s in canonical string form
    """
    try:
        u = uuid.UUID(s)
        return u.version == 4 and str(u) == s.lower()
    except Exception:
        return False

def is_hostport(s: str) -> bool:
    """
    Accepts 'hostname:port' or 'A.B.C.D:port'.

    Validates that:
    - String contains a colon
    - Port is a valid integer between 1 and 65535
    - Hostname is non-empty

    Examples: "localhost:1337", "192.168.1.5:8080", "example.com:443"
    """
    try:
        if ':' not in s:
            return False
        host, port_s = s.rsplit(':', 1)
        if not host:
            return False
        port = int(port_s)
        return 0 < port <= 65535
    except Exception:
        return False

def is_ws_url(s: str) -> bool:
    """True for ws:// or wss:// URLs with a host part."""
    try:
        parts = urlsplit(s)
    except ValueError:
        return False
    return parts.scheme in ("ws", "wss") and bool(parts.hostname)

def build_ws_url(host: str, port: int, path: str = "/") -> str:
    """Build ws://host:port/path, bracketing IPv6 literals."""
    if ':' in host and not host.startswith('['):
        host = f"[{host}]"
    if not path.startswith('/'):
        path = '/' + path
    return f"ws://{host}:{port}{path}"

def normalize_server(s: str, path: str = "/") -> str:
    """
    Turn a user-supplied server into a WebSocket URL.

    'host:port' becomes 'ws://host:port/'; ws:// and wss:// URLs pass
    through unchanged. Anything else raises ValueError.
    """
    if is_ws_url(s):
        return s
    if is_hostport(s):
        host, port_s = s.rsplit(':', 1)
        return build_ws_url(host, int(port_s), path)
    raise ValueError(f"Not a WebSocket URL or host:port: {s!r}")
