"""Router package exports."""

from . import auth, config, health, snapshots, users

__all__ = [
    "auth",
    "config",
    "health",
    "snapshots",
    "users",
]
