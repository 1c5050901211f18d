"""Wire format for a session connection.

Every binary frame starts with a one-byte tag:

* ``0x00`` — raw terminal bytes, passed through unmodified
* ``0x01`` — a JSON control frame (resize, exit, ping, pong)

Text frames are always raw terminal data. Data-plane bytes are never parsed,
so terminal output that happens to look like a control frame stays data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from termbridge.exceptions import ProtocolError

DATA_TAG = 0x00
CONTROL_TAG = 0x01

# Close codes and reasons shared by server and clients
CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_INTERNAL = 1011
CLOSE_REPLACED = 4001
CLOSE_HEARTBEAT = 4002
CLOSE_BACKPRESSURE = 4003

REASON_SESSION_NOT_FOUND = "session-not-found"
REASON_SPAWN_FAILED = "terminal-spawn-failed"
REASON_REPLACED = "session-replaced"
REASON_EXITED = "session-exited"
REASON_DESTROYED = "session-destroyed"
REASON_HEARTBEAT_TIMEOUT = "heartbeat-timeout"
REASON_UNAUTHENTICATED = "unauthenticated"
REASON_PROJECT_FORBIDDEN = "project-forbidden"
REASON_SCOPE_FORBIDDEN = "scope-forbidden"
REASON_BACKPRESSURE = "backpressure"

# Window sizes travel to the pty as unsigned shorts
MAX_WINDOW_DIMENSION = 65535


class ResizeFrame(BaseModel):
    """Client → server: the viewer's terminal size changed."""

    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0, le=MAX_WINDOW_DIMENSION)
    rows: int = Field(gt=0, le=MAX_WINDOW_DIMENSION)


class ExitFrame(BaseModel):
    """Server → client: the session's process exited. Always the last frame."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["exit"] = "exit"
    exit_code: int | None = Field(default=None, alias="exitCode")


class PingFrame(BaseModel):
    type: Literal["ping"] = "ping"


class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"


ControlFrame = Annotated[
    Union[ResizeFrame, ExitFrame, PingFrame, PongFrame],
    Field(discriminator="type"),
]

_control_adapter: TypeAdapter[ControlFrame] = TypeAdapter(ControlFrame)


@dataclass(frozen=True)
class DataFrame:
    """Raw terminal bytes."""

    data: bytes


def encode_data(data: bytes) -> bytes:
    """Wrap terminal bytes in a data frame."""
    return bytes([DATA_TAG]) + data


def encode_control(frame: BaseModel) -> bytes:
    """Serialize a control frame."""
    return bytes([CONTROL_TAG]) + frame.model_dump_json(by_alias=True).encode("utf-8")


def decode_frame(payload: bytes) -> DataFrame | ControlFrame:
    """
    Decode one binary frame.

    Raises ProtocolError for empty payloads, unknown tags and control frames
    that are not valid JSON or carry an unknown ``type``.
    """
    if not payload:
        raise ProtocolError("empty frame")

    tag, body = payload[0], payload[1:]
    if tag == DATA_TAG:
        return DataFrame(body)
    if tag == CONTROL_TAG:
        try:
            return _control_adapter.validate_json(body)
        except ValidationError as exc:
            raise ProtocolError(f"invalid control frame: {body[:80]!r}") from exc
    raise ProtocolError(f"unknown frame tag 0x{tag:02x}")
