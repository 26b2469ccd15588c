"""
Per-connection session transport.

Outgoing messages go through a bounded queue drained by one writer thread so
producers never block on socket writes. When the queue is full the oldest
message is dropped to make room. A second thread reads and dispatches
incoming messages. Any read or write failure tears the session down.
"""
import logging
import threading
from collections import deque

from common.config import (OUTGOING_QUEUE_CAPACITY, READ_IDLE_TIMEOUT,
                           WRITER_POLL_INTERVAL)
from common.errors import ClosedError, ProtocolError
from common.framing import FramedSocket

logger = logging.getLogger(__name__)


class DropOldestQueue:
    """Bounded FIFO that evicts its head instead of blocking when full."""

    def __init__(self, capacity=OUTGOING_QUEUE_CAPACITY):
        self.capacity = capacity
        self._items = deque()
        self._cond = threading.Condition()
        self._closed = False

    def __len__(self):
        with self._cond:
            return len(self._items)

    def put(self, item):
        """Append item; returns the evicted head, or None."""
        with self._cond:
            dropped = None
            if len(self._items) >= self.capacity:
                dropped = self._items.popleft()
            self._items.append(item)
            self._cond.notify()
            return dropped

    def get(self, timeout=None):
        """Pop the head, waiting up to timeout. None when empty or closed."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if self._items:
                return self._items.popleft()
            return None

    def snapshot(self):
        with self._cond:
            return list(self._items)

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class SessionTransport:
    """
    One connection: a read loop thread plus a writer thread draining the
    outgoing queue.

    on_message(session, message) is called from the read thread in arrival
    order; on_close(session) is called exactly once when the session ends.
    """

    def __init__(self, session_id, sock, on_message=None, on_close=None, display_name=None,
                 capacity=OUTGOING_QUEUE_CAPACITY, read_timeout=READ_IDLE_TIMEOUT,
                 poll_interval=WRITER_POLL_INTERVAL):
        self.id = session_id
        self.display_name = display_name or f'Client-{session_id}'
        self.conn = FramedSocket(sock, read_timeout=read_timeout)
        self.queue = DropOldestQueue(capacity)
        self.poll_interval = poll_interval
        self.read_timeout = read_timeout
        self.dropped = 0
        self._on_message = on_message
        self._on_close = on_close
        self._close_lock = threading.Lock()
        self._running = threading.Event()
        self._closed = False
        self._reader = threading.Thread(target=self._read_loop, name=f'session-{session_id}-reader', daemon=True)
        self._writer = threading.Thread(target=self._write_loop, name=f'session-{session_id}-writer', daemon=True)

    def start(self, read=True):
        self._running.set()
        self._writer.start()
        if read:
            self._reader.start()
        return self

    @property
    def closed(self):
        return self._closed

    def enqueue(self, message):
        if self._closed:
            logger.debug('session %s closed, ignoring %s', self.id, message.kind.value)
            return
        dropped = self.queue.put(message)
        if dropped is not None:
            self.dropped += 1
            logger.warning('session %s outgoing queue full (%d/%d), dropped oldest %s',
                           self.id, len(self.queue), self.queue.capacity, dropped.kind.value)

    def has_backlog(self):
        size = len(self.queue)
        if size > self.queue.capacity // 2:
            logger.warning('session %s backlog: %d/%d messages queued', self.id, size, self.queue.capacity)
            return True
        return False

    def _write_loop(self):
        while self._running.is_set() and not self._closed:
            msg = self.queue.get(timeout=self.poll_interval)
            if msg is None or self._closed:
                continue
            try:
                self.conn.send(msg)
            except (OSError, ClosedError, ProtocolError) as e:
                if not self._closed:
                    logger.info('session %s send failed: %s', self.id, e)
                self.close()
                return

    def _read_loop(self):
        try:
            while not self._closed:
                msg = self.conn.recv()
                if self._on_message is not None:
                    self._on_message(self, msg)
        except ProtocolError as e:
            logger.warning('session %s protocol error: %s', self.id, e)
        except TimeoutError:
            logger.info('session %s idle for %ss, closing', self.id, self.read_timeout)
        except OSError as e:
            if not self._closed:
                logger.info('session %s disconnected: %s', self.id, e)
        finally:
            self.close()

    def close(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._running.clear()
        self.queue.close()
        self.conn.close()
        if self._on_close is not None:
            self._on_close(self)
