"""gpurelay: remote GPU inference over HTTP, client SDK."""

from gpurelay.client.client import (
    RemoteConnectionError,
    RemoteEngine,
    RemoteHTTPError,
    RemoteInferenceError,
    RemoteTimeoutError,
)
from gpurelay.engine import InferenceEngine, get_engine

__all__ = [
    "InferenceEngine",
    "RemoteConnectionError",
    "RemoteEngine",
    "RemoteHTTPError",
    "RemoteInferenceError",
    "RemoteTimeoutError",
    "get_engine",
]
