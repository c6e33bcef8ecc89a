"""Network transports: the backend side channel and the recognition stream."""

from .backend import BackendConnection, ConnectionState
from .backoff import Backoff, BackoffState, ReconnectPolicy
from .recognition import RecognitionClient, validate_audio_frame

__all__ = [
    "Backoff",
    "BackoffState",
    "BackendConnection",
    "ConnectionState",
    "ReconnectPolicy",
    "RecognitionClient",
    "validate_audio_frame",
]
