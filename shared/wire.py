from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union
import json


class MessageType(str, Enum):
    """Wire message types. Anything else on the wire is ignored by both ends."""

    MESSAGE = "message"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if string is a valid message type."""
        try:
            cls(value)
            return True
        except ValueError:
            return False


class ProtocolError(Exception):
    """Inbound frame failed validation; the frame is dropped."""
    pass
class MalformedPayloadError(ProtocolError):
    """Frame is not UTF-8, not JSON, or not a JSON object."""
    pass
class UnknownTypeError(ProtocolError):
    """Frame has no 'type' or a type other than "message"."""
    pass
class BadFieldError(ProtocolError):
    """'data', 'author' or 'text' is missing, mistyped or empty."""
    pass


@dataclass(frozen=True)
class Event:
    """
    One chat event as carried on the wire:
    {
    "type": "message",
    "data": {"author": "STRING", "text": "STRING"}
    }

    ``text`` normally holds a single emoji glyph (possibly several code
    points) and ``author`` the sender's display name.
    """
    author: str
    text: str
    type: str = MessageType.MESSAGE.value

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'Event':
        """Parse a text frame into an Event, validating structure"""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = bytes(raw).decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedPayloadError(f"Payload is not UTF-8: {e}")
        try:
            data = json.loads(raw)
        except (ValueError, TypeError) as e:
            raise MalformedPayloadError(f"Invalid JSON: {e}")
        except RecursionError:
            raise MalformedPayloadError("Invalid JSON: nested too deeply")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'Event':
        """Create Event from a decoded JSON value, short-circuiting on the first failure"""
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Payload must be a JSON object, got {type(data).__name__}")

        msg_type = data.get('type')
        if not isinstance(msg_type, str):
            raise UnknownTypeError("Missing message type")
        if msg_type != MessageType.MESSAGE.value:
            raise UnknownTypeError(f"Invalid message type: {msg_type!r}, expected {MessageType.MESSAGE.value!r}")

        body = data.get('data')
        if not isinstance(body, dict):
            raise BadFieldError("'data' must be an object")

        author = body.get('author')
        if not isinstance(author, str):
            raise BadFieldError("'data.author' must be a string")
        text = body.get('text')
        if not isinstance(text, str):
            raise BadFieldError("'data.text' must be a string")
        if not author:
            raise BadFieldError("'data.author' must not be empty")
        if not text:
            raise BadFieldError("'data.text' must not be empty")
        for name, value in (('author', author), ('text', text)):
            try:
                value.encode("utf-8")
            except UnicodeEncodeError:
                # lone surrogates survive json.loads but can never be sent
                raise BadFieldError(f"'data.{name}' is not valid Unicode")

        return cls(author=author, text=text)

    def to_dict(self) -> Dict[str, Any]:
        """Convert Event back to its wire dictionary"""
        return {
            'type': self.type,
            'data': {
                'author': self.author,
                'text': self.text,
            },
        }

    def to_json(self) -> str:
        """Convert Event to a UTF-8 JSON text frame"""
        return json.dumps(self.to_dict(), separators=(',', ':'), ensure_ascii=False)


def create_event(author: str, text: str) -> Event:
    """Helper to build an outbound Event, applying the same checks as inbound frames"""
    return Event.from_dict({'type': MessageType.MESSAGE.value, 'data': {'author': author, 'text': text}})
