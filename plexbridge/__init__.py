"""Bridge between telephony media streams and a full-duplex speech engine."""

__version__ = "0.1.0"
