"""TwiML documents returned to the telephony provider's voice webhook."""

from typing import Optional
from xml.sax.saxutils import escape

DEFAULT_VOICE = "Polly.Joanna"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}

_XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>'


def escape_xml(text: str) -> str:
    """Escape text for use in XML content and attribute values."""
    return escape(text, _XML_ENTITIES)


def generate_stream_twiml(ws_url: str, welcome_message: Optional[str] = None) -> str:
    """TwiML that connects the call to a media stream websocket.

    Args:
        ws_url: Websocket URL for the media stream (wss:// in production)
        welcome_message: Optional message spoken before the stream starts

    Returns:
        TwiML XML document
    """
    say = ""
    if welcome_message:
        say = f'\n  <Say voice="{DEFAULT_VOICE}">{escape_xml(welcome_message)}</Say>'

    return (
        f"{_XML_HEADER}\n"
        f"<Response>{say}\n"
        "  <Connect>\n"
        f'    <Stream url="{escape_xml(ws_url)}">\n'
        '      <Parameter name="codec" value="audio/x-mulaw"/>\n'
        "    </Stream>\n"
        "  </Connect>\n"
        "</Response>"
    )


def generate_say_twiml(message: str, voice: str = DEFAULT_VOICE) -> str:
    return (
        f"{_XML_HEADER}\n"
        "<Response>\n"
        f'  <Say voice="{escape_xml(voice)}">{escape_xml(message)}</Say>\n'
        "</Response>"
    )


def generate_say_and_hangup_twiml(message: str, voice: str = DEFAULT_VOICE) -> str:
    """TwiML that speaks a message and then hangs up."""
    return (
        f"{_XML_HEADER}\n"
        "<Response>\n"
        f'  <Say voice="{escape_xml(voice)}">{escape_xml(message)}</Say>\n'
        "  <Hangup/>\n"
        "</Response>"
    )
