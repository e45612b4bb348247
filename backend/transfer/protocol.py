"""
Wire protocol helpers for the transfer connection.

Control phase: one newline-terminated JSON record each way.
Data phase: frames of a 4-byte big-endian length followed by that many
bytes of file content; a zero length is the end-of-transfer sentinel.
"""

import asyncio
import json
import struct

from pydantic import ValidationError

from config import MAX_FRAME_SIZE
from transfer.errors import ProtocolError
from transfer.models import (
    TransferCompleteMessage,
    TransferErrorMessage,
    TransferRequestMessage,
    TransferResponseMessage,
    WireModel,
)

HEADER_FORMAT = "!I"  # 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
END_OF_TRANSFER = struct.pack(HEADER_FORMAT, 0)


def parse_record(line: bytes, *models: type[WireModel]) -> WireModel:
    """Decode one control record into whichever of ``models`` its kind names."""
    try:
        payload = json.loads(line)
    except ValueError as e:
        raise ProtocolError(f"Malformed control record: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Control record is not an object")

    kind = payload.get("kind")
    for model in models:
        if model.model_fields["kind"].default == kind:
            try:
                return model.model_validate(payload)
            except ValidationError as e:
                raise ProtocolError(f"Invalid {kind} record: {e.errors()[0]['msg']}") from e
    raise ProtocolError(f"Unexpected record kind {kind!r}")


async def send_record(writer: asyncio.StreamWriter, message: WireModel) -> None:
    writer.write(message.encode())
    await writer.drain()


async def read_line(reader: asyncio.StreamReader) -> bytes:
    """Read one control line. An empty result means the peer closed cleanly."""
    try:
        line = await reader.readline()
    except ValueError as e:
        # StreamReader limit overrun
        raise ProtocolError(f"Control record too long: {e}") from e
    if line and not line.endswith(b"\n"):
        raise ProtocolError("Connection closed in the middle of a control record")
    return line


async def read_request(reader: asyncio.StreamReader) -> TransferRequestMessage:
    line = await read_line(reader)
    if not line:
        raise ProtocolError("Connection closed before a transfer request arrived")
    return parse_record(line, TransferRequestMessage)


async def read_response(reader: asyncio.StreamReader) -> TransferResponseMessage:
    line = await read_line(reader)
    if not line:
        raise ProtocolError("Connection closed before a transfer response arrived")
    return parse_record(line, TransferResponseMessage)


async def read_ack(
    reader: asyncio.StreamReader,
) -> TransferCompleteMessage | TransferErrorMessage | None:
    """Read the receiver's final word. None means it just closed the connection."""
    line = await read_line(reader)
    if not line:
        return None
    return parse_record(line, TransferCompleteMessage, TransferErrorMessage)


async def send_chunk(writer: asyncio.StreamWriter, data: bytes) -> None:
    """Send one length-prefixed chunk of file content."""
    if not data:
        raise ValueError("Empty chunk would be read as the end-of-transfer sentinel")
    writer.write(struct.pack(HEADER_FORMAT, len(data)) + data)
    await writer.drain()


async def send_end(writer: asyncio.StreamWriter) -> None:
    writer.write(END_OF_TRANSFER)
    await writer.drain()


async def read_frame(
    reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE
) -> bytes | None:
    """
    Receive one data frame. Returns None for the end-of-transfer sentinel.

    Buffers until the full declared length is available; wire read
    boundaries never matter.
    """
    header = await reader.readexactly(HEADER_SIZE)
    (length,) = struct.unpack(HEADER_FORMAT, header)
    if length == 0:
        return None
    if length > max_size:
        raise ProtocolError(f"Frame of {length} bytes exceeds limit of {max_size}")
    return await reader.readexactly(length)
