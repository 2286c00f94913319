"""Real-time chat synchronization layer for the Rally client."""

from .client import SyncClient
from .config import SyncConfig
from .credentials import CredentialCoordinator
from .errors import ApiError, AuthorizationError, HandshakeError, RenewalError, TransportError
from .session_store import Session, SessionHolder, SessionStore
from .store import ConversationStore
from .transport import ConnectionState, ReconnectBackoff, TransportEvent, TransportManager

__all__ = [
    "ApiError",
    "AuthorizationError",
    "ConnectionState",
    "ConversationStore",
    "CredentialCoordinator",
    "HandshakeError",
    "ReconnectBackoff",
    "RenewalError",
    "Session",
    "SessionHolder",
    "SessionStore",
    "SyncClient",
    "SyncConfig",
    "TransportError",
    "TransportEvent",
    "TransportManager",
]
