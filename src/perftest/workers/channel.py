"""
Message framing between the controller and a worker process.

Each message is a 4-byte big-endian payload length followed by a pickled
Python object. Messages are (kind, payload) tuples:

    controller -> worker:  ('init', WorkerInfo) ('run', pickled task) ('stop', None)
    worker -> controller:  ('ready', None) ('done', None) ('failed', traceback text)

Tasks travel pre-pickled inside 'run' so that a task which cannot be
unpickled on the worker fails that task instead of the channel.
"""

import pickle
import struct
from typing import IO, Any, Tuple

HEADER = struct.Struct('>I')


def send_message(stream: IO[bytes], kind: str, payload: Any = None) -> None:
    """Write one framed message and flush the stream."""
    data = pickle.dumps((kind, payload), protocol=pickle.DEFAULT_PROTOCOL)
    stream.write(HEADER.pack(len(data)))
    stream.write(data)
    stream.flush()


def receive_message(stream: IO[bytes]) -> Tuple[str, Any]:
    """
    Read one framed message.

    Raises:
        EOFError: If the stream ends before a full message was read
    """
    (length,) = HEADER.unpack(_read_exactly(stream, HEADER.size))
    return pickle.loads(_read_exactly(stream, length))


def _read_exactly(stream: IO[bytes], size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        data = stream.read(remaining)
        if not data:
            raise EOFError(f"Channel closed with {remaining} of {size} bytes unread")
        chunks.append(data)
        remaining -= len(data)
    return b''.join(chunks)
