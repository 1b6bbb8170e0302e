"""ACL policy evaluation, API key handling and CLI output helpers for a mesh VPN control server."""

__version__ = "0.1.0"

__all__ = [
    "acls",
    "apikeys",
    "app",
    "auth",
    "models",
    "output",
    "policy",
    "tables",
]