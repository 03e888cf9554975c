"""Explicit session context passed to every pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from roomsync.services.crypto_engine import CryptoEngine


@dataclass(frozen=True)
class SessionData:
    """Credential snapshot handed to the session store."""

    user_id: str
    device_id: str
    access_token: str
    homeserver: str
    sync_token: str = ""


class SessionStore(Protocol):
    """Credential persistence collaborator. Storage format is not our concern."""

    def load(self) -> SessionData | None: ...

    def save(self, session: SessionData) -> None: ...

    def clear(self) -> None: ...


@dataclass
class SessionContext:
    """Authenticated session state.

    Only ``sync_token`` changes during the life of a context; it is advanced
    by the sync coordinator.
    """

    homeserver: str
    access_token: str
    user_id: str = ""
    device_id: str = ""
    sync_token: str = ""
    engine: CryptoEngine | None = None

    def to_session_data(self) -> SessionData:
        return SessionData(
            user_id=self.user_id,
            device_id=self.device_id,
            access_token=self.access_token,
            homeserver=self.homeserver,
            sync_token=self.sync_token,
        )

    @classmethod
    def from_session_data(
        cls, data: SessionData, engine: CryptoEngine | None = None
    ) -> SessionContext:
        return cls(
            homeserver=data.homeserver,
            access_token=data.access_token,
            user_id=data.user_id,
            device_id=data.device_id,
            sync_token=data.sync_token,
            engine=engine,
        )
