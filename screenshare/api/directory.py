"""
In-memory directory of connected signaling clients.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from .. import DEFAULT_USERNAME

ID_ATTEMPTS = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _random_id() -> str:
    return secrets.token_hex(8)


def normalise_name(value: object) -> str:
    name = str(value).strip() if value is not None else ""
    return name or DEFAULT_USERNAME


@dataclass
class ClientSession:
    id: str
    display_name: str = DEFAULT_USERNAME
    is_sharing: bool = False
    connected_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.display_name,
            "isSharing": bool(self.is_sharing),
            "connectedAt": self.connected_at.isoformat(),
        }

    def apply(self, patch: Mapping[str, object]) -> bool:
        changed = False
        for key in ("username", "displayName"):
            if key in patch:
                name = normalise_name(patch.get(key))
                if name != self.display_name:
                    self.display_name = name
                    changed = True
        if "isSharing" in patch:
            sharing = bool(patch.get("isSharing"))
            if sharing != self.is_sharing:
                self.is_sharing = sharing
                changed = True
        return changed


class DirectoryStore:
    """
    Map of client id to :class:`ClientSession`, kept in connect order.

    Not thread-safe; the relay serialises every access behind its own lock.
    """

    def __init__(
        self,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._sessions: Dict[str, ClientSession] = {}
        self._id_factory = id_factory or _random_id
        self._clock = clock or _utcnow

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._sessions

    def new_id(self) -> str:
        for _ in range(ID_ATTEMPTS):
            candidate = self._id_factory()
            if candidate and candidate not in self._sessions:
                return candidate
        raise RuntimeError("unable to allocate a unique client id")

    def get(self, client_id: str) -> Optional[ClientSession]:
        return self._sessions.get(client_id)

    def upsert(self, client_id: str, patch: Optional[Mapping[str, object]] = None) -> ClientSession:
        session = self._sessions.get(client_id)
        if session is None:
            session = ClientSession(id=client_id, connected_at=self._clock())
            self._sessions[client_id] = session
        if patch:
            session.apply(patch)
        return session

    def remove(self, client_id: str) -> Optional[ClientSession]:
        return self._sessions.pop(client_id, None)

    def snapshot(self) -> List[dict]:
        return [session.to_dict() for session in self._sessions.values()]
