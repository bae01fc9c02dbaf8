"""
Signaling relay: directory store and FastAPI application.
"""

from __future__ import annotations

from .directory import ClientSession, DirectoryStore
from .server import RelayChannel, RelayManager, create_app

__all__ = ["ClientSession", "DirectoryStore", "RelayChannel", "RelayManager", "create_app"]
