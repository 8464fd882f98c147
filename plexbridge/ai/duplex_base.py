"""Base protocol and types for the engine duplex connection."""

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


class ClientState(Enum):
    """Engine connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    AWAITING_HANDSHAKE = auto()
    READY = auto()
    CLOSING = auto()


class EngineEventType(Enum):
    """Events emitted by the engine client."""

    CONNECTED = auto()      # socket open, handshake pending
    READY = auto()          # handshake observed
    DISCONNECTED = auto()   # socket lost after READY
    ERROR = auto()
    AUDIO = auto()
    TEXT = auto()
    CONTROL = auto()
    METADATA = auto()
    MESSAGE = auto()        # every decoded message


@runtime_checkable
class EngineTransport(Protocol):
    """Duplex binary socket to the engine.

    Iteration yields received frames and ends when the socket closes.
    """

    @abstractmethod
    async def send(self, message: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[Union[bytes, str]]:
        ...


Connector = Callable[[str], Awaitable[EngineTransport]]


@dataclass
class EngineSettings:
    """Engine endpoint and persona prompts.

    ``handshake_timeout`` bounds the wait between socket open and the engine
    handshake; ``None`` waits indefinitely.
    """

    url: str = "wss://localhost:8998/api/chat"
    voice_prompt: str = "NATF2.pt"
    text_prompt: str = "You enjoy having a good conversation."
    verify_ssl: bool = False
    handshake_timeout: Optional[float] = 60.0

    def build_url(self) -> str:
        """Endpoint URL with the prompts embedded as query parameters."""
        parts = urlsplit(self.url)
        query = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key not in ("voice_prompt", "text_prompt")
        ]
        query.append(("voice_prompt", self.voice_prompt))
        query.append(("text_prompt", self.text_prompt))
        return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass
class ReconnectPolicy:
    """Bounded reconnect backoff.

    Drops before the handshake grow by ``connect_multiplier`` per attempt,
    drops after READY by ``reconnect_multiplier``; both share ``max_attempts``.
    """

    enabled: bool = False
    max_attempts: int = 5
    base_delay: float = 1.0
    connect_multiplier: float = 1.5
    reconnect_multiplier: float = 2.0

    def connect_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based) after a pre-handshake close."""
        return self.base_delay * self.connect_multiplier ** attempt

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based) after losing a READY connection."""
        return self.base_delay * self.reconnect_multiplier ** (attempt - 1)
