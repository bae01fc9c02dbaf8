"""
Signaling message contract shared by the relay and its clients.

Every frame on a signaling channel is one JSON object whose ``type`` field
selects a variant of :data:`SignalingMessage`.  Session descriptions and ICE
candidates are carried as opaque values; only the two peers interpret them.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from . import DEFAULT_USERNAME


class ProtocolError(ValueError):
    """Base class for signaling protocol errors."""


class MalformedMessage(ProtocolError):
    """Raised when a frame cannot be decoded into a known message."""


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Connected(_Message):
    type: Literal["connected"] = "connected"
    client_id: str = Field(alias="clientId")
    message: Optional[str] = None


class SetUsername(_Message):
    type: Literal["set-username"] = "set-username"
    username: str = Field(default=DEFAULT_USERNAME, validation_alias=AliasChoices("username", "displayName"))

    @field_validator("username", mode="before")
    @classmethod
    def _default_name(cls, value: object) -> str:
        name = str(value).strip() if value is not None else ""
        return name or DEFAULT_USERNAME


class StartSharing(_Message):
    type: Literal["start-sharing"] = "start-sharing"


class StopSharing(_Message):
    type: Literal["stop-sharing"] = "stop-sharing"


class UserEntry(_Message):
    id: str
    username: str = DEFAULT_USERNAME
    is_sharing: bool = Field(default=False, alias="isSharing")
    connected_at: Optional[str] = Field(default=None, alias="connectedAt")


class UserList(_Message):
    type: Literal["user-list"] = "user-list"
    users: List[UserEntry] = Field(default_factory=list)


class RequestStream(_Message):
    type: Literal["request-stream"] = "request-stream"
    target_id: str = Field(alias="targetId")


class StreamRequest(_Message):
    type: Literal["stream-request"] = "stream-request"
    viewer_id: str = Field(alias="viewerId")
    viewer_username: str = Field(default=DEFAULT_USERNAME, alias="viewerUsername")


class Offer(_Message):
    type: Literal["offer"] = "offer"
    target_id: str = Field(alias="targetId")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    offer: Any = None


class Answer(_Message):
    type: Literal["answer"] = "answer"
    target_id: str = Field(alias="targetId")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    answer: Any = None


class IceCandidate(_Message):
    type: Literal["ice-candidate"] = "ice-candidate"
    target_id: str = Field(alias="targetId")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    candidate: Any = None


class Ping(_Message):
    type: Literal["ping"] = "ping"
    ts: Optional[float] = None


class Pong(_Message):
    type: Literal["pong"] = "pong"
    ts: Optional[float] = None


SignalingMessage = Annotated[
    Union[
        Connected,
        SetUsername,
        StartSharing,
        StopSharing,
        UserList,
        RequestStream,
        StreamRequest,
        Offer,
        Answer,
        IceCandidate,
        Ping,
        Pong,
    ],
    Field(discriminator="type"),
]

# Variants the relay forwards to a single addressed channel.
ROUTED_TYPES = frozenset({"offer", "answer", "ice-candidate"})

# Variants only the relay may originate.
RELAY_ONLY_TYPES = frozenset({"connected", "user-list", "stream-request"})

_ADAPTER: TypeAdapter = TypeAdapter(SignalingMessage)


def decode_frame(frame: Union[str, bytes, bytearray, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Turn a text/binary frame into a JSON object, raising :class:`MalformedMessage`.
    """

    if isinstance(frame, Mapping):
        return dict(frame)
    try:
        decoded = json.loads(frame)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"undecodable frame: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedMessage("signaling frame must be a JSON object")
    return decoded


def parse_message(frame: Union[str, bytes, bytearray, Mapping[str, Any]]) -> SignalingMessage:
    """
    Validate a frame against the closed set of signaling variants.
    """

    raw = decode_frame(frame)
    try:
        return _ADAPTER.validate_python(raw)
    except ValidationError as exc:
        kind = raw.get("type")
        raise MalformedMessage(f"invalid {kind!r} message: {exc.error_count()} error(s)") from exc


def encode_message(message: BaseModel) -> Dict[str, Any]:
    """Return the wire representation of ``message``."""

    return message.model_dump(by_alias=True, exclude_none=True)


__all__ = [
    "Answer",
    "Connected",
    "IceCandidate",
    "MalformedMessage",
    "Offer",
    "Ping",
    "Pong",
    "ProtocolError",
    "RELAY_ONLY_TYPES",
    "ROUTED_TYPES",
    "RequestStream",
    "SetUsername",
    "SignalingMessage",
    "StartSharing",
    "StopSharing",
    "StreamRequest",
    "UserEntry",
    "UserList",
    "decode_frame",
    "encode_message",
    "parse_message",
]
