"""Telephony provider media streams (JSON over websocket) and TwiML."""

__all__ = [
    "TelephonyEventType",
    "TelephonyLegHandler",
    "generate_stream_twiml",
]

from plexbridge.telephony.media_stream import TelephonyEventType, TelephonyLegHandler
from plexbridge.telephony.twiml import generate_stream_twiml
