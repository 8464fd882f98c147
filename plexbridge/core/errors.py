"""Error taxonomy for the bridge.

- ProtocolError: malformed wire data from either leg
- StateError: operation invoked outside its required lifecycle state
- EngineConnectionError: engine socket failure after the retry budget is spent
- CodecError: the perceptual codec failed on a frame or packet
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ProtocolError(BridgeError, ValueError):
    """Malformed message on the telephony or engine leg."""


class StateError(BridgeError, RuntimeError):
    """Operation is not allowed in the current lifecycle state."""


class SessionClosedError(StateError):
    """Audio or control submitted to a session that has already closed."""


class EngineConnectionError(BridgeError, ConnectionError):
    """Engine connection could not be (re)established."""

    def __init__(self, message: str, attempts: Optional[int] = None) -> None:
        super().__init__(message)
        self.attempts = attempts


class EngineError(BridgeError):
    """Error message reported by the engine itself."""


class CodecError(BridgeError):
    """Perceptual codec failure."""
