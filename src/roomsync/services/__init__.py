# src/roomsync/services/__init__.py
"""Pipeline services for the roomsync client."""

from .crypto_engine import CryptoEngine, EngineError, EngineErrorKind, classify_engine_error
from .decryption import DecryptionOrchestrator
from .key_throttle import KeyRequestThrottle
from .messages import MessagePipeline
from .room_encryption import RoomEncryptionService
from .send import SendPipeline
from .sync import SyncCoordinator, SyncWorker
from .timeline_cache import TimelineCache
from .transport import HomeserverClient, TransportError, TransportResponse

__all__ = [
    "CryptoEngine",
    "DecryptionOrchestrator",
    "EngineError",
    "EngineErrorKind",
    "HomeserverClient",
    "KeyRequestThrottle",
    "MessagePipeline",
    "RoomEncryptionService",
    "SendPipeline",
    "SyncCoordinator",
    "SyncWorker",
    "TimelineCache",
    "TransportError",
    "TransportResponse",
    "classify_engine_error",
]
