from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Union
import json

_REQUIRED_FIELDS = ('version', 'channel', 'payload')


class MalformedEnvelopeError(Exception):
    """Raised when an inbound frame is not a valid envelope."""
    pass


@dataclass
class Envelope:
    """
    Every frame exchanged after the handshake uses the envelope:
    {
    "version": "protocol version (fixed per build)",
    "channel": "STRING, the routing key and emitted event name",
    "payload": "any JSON value"
    }

    A field holding JSON null counts as missing.
    """
    version: Any
    channel: str
    payload: Any

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> 'Envelope':
        """Parse a text or binary frame into an Envelope, validating structure"""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError as e:
                raise MalformedEnvelopeError(f"Frame is not UTF-8: {e}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEnvelopeError(f"Invalid JSON: {e}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Envelope':
        """Create Envelope from dictionary, validating required fields"""
        if not isinstance(data, dict):
            raise MalformedEnvelopeError(f"Envelope must be an object, got {type(data).__name__}")

        missing = [name for name in _REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            raise MalformedEnvelopeError(f"Missing required fields: {missing}")

        if not isinstance(data['channel'], str) or not data['channel']:
            raise MalformedEnvelopeError("'channel' must be a non-empty string")

        return cls(
            version=data['version'],
            channel=data['channel'],
            payload=data['payload'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'channel': self.channel,
            'payload': self.payload,
        }

    def to_json(self) -> str:
        """Convert Envelope to a compact JSON string"""
        return json.dumps(self.to_dict(), separators=(',', ':'))
