"""
Message definitions for the rootlink tunnel protocol

Every frame on the tunnel connection carries one message. Text frames
hold JSON with base64 encoded bodies, binary frames hold msgpack with raw
byte bodies. The codec is picked once per connection.
"""

import base64
import binascii
import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import msgpack  # type: ignore[import-untyped]
from msgpack.exceptions import UnpackException  # type: ignore[import-untyped]

from .exceptions import ProtocolError

Headers = Dict[str, Union[str, List[str]]]

CODEC_JSON = "json"
CODEC_MSGPACK = "msgpack"
CODECS = (CODEC_JSON, CODEC_MSGPACK)


@dataclass
class Message:
    """Base class for all protocol messages"""

    type: str


@dataclass
class Connected(Message):
    """Registration confirmation from relay to client"""

    type: str = field(default="connected", init=False)
    tunnel_id: str = ""


@dataclass
class Request(Message):
    """Tunneled HTTP request from relay to client"""

    type: str = field(default="request", init=False)
    req_id: str = ""
    method: str = "GET"
    path: str = "/"
    headers: Headers = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass
class Response(Message):
    """Response from client to relay, paired to a Request by req_id"""

    type: str = field(default="response", init=False)
    req_id: str = ""
    status: int = 200
    headers: Headers = field(default_factory=dict)
    body: Optional[bytes] = None


# Message type registry for deserialization
MESSAGE_TYPES = {
    "connected": Connected,
    "request": Request,
    "response": Response,
}

# Attribute name -> field name on the wire
WIRE_NAMES = {
    "tunnel_id": "tunnelId",
    "req_id": "reqId",
}


def collect_headers(items: Iterable[Tuple[str, str]]) -> Headers:
    """Fold (name, value) pairs into a lowercase-keyed header mapping.

    Repeated headers (set-cookie, vary, ...) become lists so no value is lost.
    """
    headers: Headers = {}
    for name, value in items:
        key = name.lower()
        existing = headers.get(key)
        if existing is None:
            headers[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            headers[key] = [existing, value]
    return headers


def iter_headers(headers: Headers) -> Iterable[Tuple[str, str]]:
    """Flatten a header mapping back into (name, value) pairs."""
    for name, value in headers.items():
        if isinstance(value, list):
            for item in value:
                yield name, item
        else:
            yield name, value


def serialize_message(msg: Message, codec: str = CODEC_JSON) -> Union[str, bytes]:
    """Serialize a message to a JSON string or msgpack bytes"""
    if codec not in CODECS:
        raise ProtocolError(f"Unknown codec: {codec}")

    data: Dict[str, Any] = {}
    for f in fields(msg):
        value = getattr(msg, f.name)
        if f.name == "body" and value is not None and codec == CODEC_JSON:
            value = base64.b64encode(value).decode("ascii")
        data[WIRE_NAMES.get(f.name, f.name)] = value

    try:
        if codec == CODEC_MSGPACK:
            # Header values may carry raw obs-text bytes as lone surrogates
            return bytes(
                msgpack.packb(
                    data, use_bin_type=True, unicode_errors="surrogateescape"
                )
            )
        return json.dumps(data)
    except (TypeError, ValueError, OverflowError) as e:
        raise ProtocolError(f"Unserializable {msg.type} message: {e}")


def deserialize_message(data: Union[str, bytes]) -> Message:
    """Deserialize a text or binary frame to a message object"""
    try:
        if isinstance(data, (bytes, bytearray)):
            msg_dict = msgpack.unpackb(
                data, raw=False, unicode_errors="surrogateescape"
            )
        else:
            msg_dict = json.loads(data)
    except (ValueError, UnpackException) as e:
        raise ProtocolError(f"Undecodable message: {e}")

    if not isinstance(msg_dict, dict):
        raise ProtocolError("Message is not a mapping")

    msg_type = msg_dict.get("type")
    if not msg_type:
        raise ProtocolError("Message missing type field")

    msg_class = MESSAGE_TYPES.get(msg_type)
    if not msg_class:
        raise ProtocolError(f"Unknown message type: {msg_type}")

    kwargs: Dict[str, Any] = {}
    for f in fields(msg_class):
        if not f.init:
            continue
        value = msg_dict.get(WIRE_NAMES.get(f.name, f.name))
        if value is None:
            continue
        kwargs[f.name] = _coerce(f.name, value)

    return msg_class(**kwargs)  # type: ignore[no-any-return]


def _coerce(name: str, value: Any) -> Any:
    """Check a single wire field and convert it to its attribute type."""
    if name == "body":
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except binascii.Error as e:
                raise ProtocolError(f"Invalid base64 body: {e}")
        raise ProtocolError("Body must be bytes or base64 text")

    if name == "headers":
        if not isinstance(value, dict):
            raise ProtocolError("Headers must be a mapping")
        headers: Headers = {}
        for key, item in value.items():
            if isinstance(item, list):
                headers[str(key).lower()] = [str(v) for v in item]
            else:
                headers[str(key).lower()] = str(item)
        return headers

    if name == "status":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ProtocolError(f"Invalid status: {value!r}")
        if not 100 <= value <= 999:
            raise ProtocolError(f"Status out of range: {value}")
        return value

    if not isinstance(value, str):
        raise ProtocolError(f"Field {name} must be a string")
    return value
