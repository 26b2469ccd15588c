"""
Framing helpers for length-prefixed JSON messages.
Format: 4-byte big-endian length header followed by UTF-8 JSON bytes
encoding {"type": <kind>, "payload": {...}}.
"""
import json
import logging
import socket
import struct
import threading
import time

from pydantic import ValidationError

from common.config import HEADER_SIZE, MAX_FRAME_SIZE, READ_IDLE_TIMEOUT, SEND_RETRY_DELAY
from common.errors import ClosedError, ConnectionClosed, ProtocolError, ReadTimeoutError
from common.messages import Message

logger = logging.getLogger(__name__)

_HEADER = struct.Struct('!I')


def encode_record(message):
    """JSON body of a frame, without the length prefix."""
    return json.dumps(message.to_record(), separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def encode(message):
    raw = encode_record(message)
    if len(raw) > MAX_FRAME_SIZE:
        raise ProtocolError('Message too large', {'length': len(raw)})
    return _HEADER.pack(len(raw)) + raw


def parse_record(data):
    try:
        obj = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError('Malformed JSON record', {'error': str(e)}) from e
    if not isinstance(obj, dict):
        raise ProtocolError('Record is not a JSON object')
    try:
        return Message.model_validate(obj)
    except ValidationError as e:
        raise ProtocolError('Invalid message record', {'type': obj.get('type'), 'errors': e.error_count()}) from e


def decode(conn):
    """Read exactly one message from a socket-like object exposing recv()."""
    def _recvall(n):
        buf = b''
        while len(buf) < n:
            try:
                chunk = conn.recv(n - len(buf))
            except socket.timeout as e:
                raise ReadTimeoutError('No data within read-idle timeout') from e
            if not chunk:
                raise ConnectionClosed('Connection closed by peer')
            buf += chunk
        return buf

    (n,) = _HEADER.unpack(_recvall(HEADER_SIZE))
    if n <= 0 or n > MAX_FRAME_SIZE:
        raise ProtocolError(f'Invalid message length: {n}')
    return parse_record(_recvall(n))


class FramedSocket:
    """
    A socket carrying framed messages.

    Writes go through a lock so concurrent senders never interleave a length
    header with another frame's body. A failed write is retried once after
    a short delay, resuming at the first unsent byte.
    """

    def __init__(self, sock, read_timeout=READ_IDLE_TIMEOUT, retry_delay=SEND_RETRY_DELAY):
        self.sock = sock
        self.retry_delay = retry_delay
        self._send_lock = threading.Lock()
        self._closed = False
        if read_timeout is not None:
            sock.settimeout(read_timeout)

    @property
    def closed(self):
        return self._closed

    def send(self, message):
        if self._closed:
            raise ClosedError('Socket already closed')
        data = encode(message)
        with self._send_lock:
            self._write_all(data)

    def _write_all(self, data):
        view = memoryview(data)
        offset = 0
        retried = False
        while offset < len(view):
            try:
                offset += self.sock.send(view[offset:])
            except OSError as e:
                if retried or self._closed:
                    raise
                retried = True
                logger.warning('send failed (%s), retrying once in %.0fms', e, self.retry_delay * 1000)
                time.sleep(self.retry_delay)

    def recv(self):
        return decode(self.sock)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
