"""Length-prefixed MessagePack framing for the kopsd socket.

Frame format::

    +----------------+---------------------------+
    | len (4 bytes)  |   msgpack payload (len)   |
    | u32 big-endian |                           |
    +----------------+---------------------------+

The payload is one request or response model dumped to a map carrying a
``type`` discriminator. Every error raised here is fatal to the connection:
callers close the stream and never try to resynchronize.
"""

from __future__ import annotations

import struct
from typing import Any, BinaryIO, cast

import msgpack
from pydantic import BaseModel, ValidationError

from kops.models import REQUEST_ADAPTER, RESPONSE_ADAPTER

LENGTH_PREFIX = struct.Struct(">I")

# 16 MiB. A pod listing of a large cluster fits comfortably.
MAX_FRAME_SIZE = 16 * 1024 * 1024


class WireError(Exception):
    """Base class for framing errors on the daemon socket."""


class FrameLengthError(WireError):
    """Raised when a length prefix is out of bounds."""


class FrameDecodeError(WireError):
    """Raised when a payload cannot be encoded or decoded."""


class WireIOError(WireError):
    """Raised on I/O failure, including a peer closing mid-frame."""


def encode_message(message: BaseModel) -> bytes:
    """Serialize a message into a complete frame (prefix + payload)."""
    try:
        payload = msgpack.packb(message.model_dump(mode="json"), use_bin_type=True)
    except (TypeError, ValueError) as exc:
        raise FrameDecodeError(f"failed to encode {type(message).__name__}: {exc}") from exc
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameLengthError(
            f"frame of {len(payload)} bytes exceeds limit of {MAX_FRAME_SIZE}"
        )
    return LENGTH_PREFIX.pack(len(payload)) + payload


def write_message(stream: BinaryIO, message: BaseModel) -> None:
    """Write one framed message and flush.

    Prefix and payload go out in a single write so a frame either lands
    whole or the connection is treated as broken.
    """
    frame = encode_message(message)
    try:
        stream.write(frame)
        stream.flush()
    except OSError as exc:
        raise WireIOError(f"failed to write frame: {exc}") from exc


def read_frame(stream: BinaryIO) -> bytes | None:
    """Read one frame payload.

    Returns ``None`` if the peer closed cleanly before sending any byte of
    a new frame.
    """
    prefix = _read_exact(stream, LENGTH_PREFIX.size, allow_eof=True)
    if prefix is None:
        return None
    (length,) = LENGTH_PREFIX.unpack(prefix)
    if length > MAX_FRAME_SIZE:
        raise FrameLengthError(
            f"frame length {length} exceeds limit of {MAX_FRAME_SIZE}"
        )
    # allow_eof=False never yields None.
    return cast(bytes, _read_exact(stream, length, allow_eof=False))


def read_request(stream: BinaryIO) -> Any | None:
    """Read and validate one request; ``None`` on clean end-of-stream."""
    payload = read_frame(stream)
    if payload is None:
        return None
    return _decode(payload, REQUEST_ADAPTER)


def read_response(stream: BinaryIO) -> Any | None:
    """Read and validate one response; ``None`` on clean end-of-stream."""
    payload = read_frame(stream)
    if payload is None:
        return None
    return _decode(payload, RESPONSE_ADAPTER)


def _decode(payload: bytes, adapter: Any) -> Any:
    try:
        data = msgpack.unpackb(payload, raw=False)
    except (msgpack.exceptions.UnpackException, ValueError, TypeError) as exc:
        raise FrameDecodeError(f"malformed msgpack payload: {exc}") from exc
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        raise FrameDecodeError(f"invalid message: {exc}") from exc


def _read_exact(stream: BinaryIO, size: int, *, allow_eof: bool) -> bytes | None:
    """Read exactly *size* bytes, looping over short reads.

    EOF before the first byte returns ``None`` when *allow_eof* is set;
    EOF anywhere else is a truncated frame.
    """
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = stream.read(size - len(buf))
        except OSError as exc:
            raise WireIOError(f"failed to read frame: {exc}") from exc
        if not chunk:
            if allow_eof and not buf:
                return None
            raise WireIOError(
                f"truncated frame: expected {size} bytes, got {len(buf)}"
            )
        buf.extend(chunk)
    return bytes(buf)
