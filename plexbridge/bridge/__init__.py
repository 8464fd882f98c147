"""Bridging layer between the telephony leg and the engine leg.

- BridgeSession: engine connection, codec and buffers for one call
- CallBridge: binds one telephony websocket to one BridgeSession
"""

__all__ = [
    "BridgeSession",
    "CallBridge",
    "SessionEventType",
    "SessionState",
]

from plexbridge.bridge.session import BridgeSession, SessionEventType, SessionState
from plexbridge.bridge.call_bridge import CallBridge
