"""Wire protocol between kopsctl and kopsd."""

from kops.protocol.wire import (
    MAX_FRAME_SIZE,
    FrameDecodeError,
    FrameLengthError,
    WireError,
    WireIOError,
    read_request,
    read_response,
    write_message,
)

__all__ = [
    "FrameDecodeError",
    "FrameLengthError",
    "MAX_FRAME_SIZE",
    "WireError",
    "WireIOError",
    "read_request",
    "read_response",
    "write_message",
]
