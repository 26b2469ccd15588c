# server.py
# Collaborative whiteboard server: keeps a registry of live sessions and routes
# chat, drawing and file messages between them.
# Use: python server.py [port]
import argparse
import logging
import socket
import threading

from common.config import HOST, LISTEN_BACKLOG, PORT, READ_IDLE_TIMEOUT
from common.logging_setup import setup_logging
from common.messages import Message, MessageKind
from common.session import SessionTransport

logger = logging.getLogger('server')


class ServerCore:
    def __init__(self, host=HOST, port=PORT, read_timeout=READ_IDLE_TIMEOUT):
        self.addr = (host, port)
        self.read_timeout = read_timeout
        self.sock = None
        self.clients = {}        # id -> SessionTransport
        self.lock = threading.Lock()
        self._next_id = 1
        self._running = threading.Event()
        # history so late joiners see the current chat and board
        self.chat_history = []
        self.board_events = []

    @property
    def address(self):
        """Bound (host, port); useful when started on port 0."""
        return self.sock.getsockname() if self.sock else self.addr

    def bind(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(self.addr)
        self.sock.listen(LISTEN_BACKLOG)
        self._running.set()
        logger.info('listening on %s:%s', *self.address)
        return self

    def serve_forever(self):
        if self.sock is None:
            self.bind()
        try:
            while self._running.is_set():
                try:
                    conn, addr = self.sock.accept()
                except OSError:
                    if self._running.is_set():
                        logger.exception('accept failed')
                    break
                self._accept(conn, addr)
        finally:
            self.shutdown()

    def start(self):
        """Bind and serve from a background thread."""
        self.bind()
        threading.Thread(target=self.serve_forever, name='server-accept', daemon=True).start()
        return self

    def shutdown(self):
        if not self._running.is_set() and self.sock is None:
            return
        self._running.clear()
        if self.sock is not None:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None
        for session in self.sessions():
            session.close()

    def _accept(self, conn, addr):
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        with self.lock:
            client_id = self._next_id
            self._next_id += 1
            session = SessionTransport(client_id, conn, on_message=self.handle_incoming,
                                       on_close=self.remove_client, read_timeout=self.read_timeout)
            self.clients[client_id] = session
        logger.info('client %s connected from %s', client_id, addr)
        session.start()
        self.broadcast_client_list()
        self.send_server_info(f'Client {client_id} connected.')

    # --- registry ---

    def sessions(self):
        with self.lock:
            return list(self.clients.values())

    def get(self, client_id):
        with self.lock:
            return self.clients.get(client_id)

    def remove_client(self, session):
        with self.lock:
            if self.clients.pop(session.id, None) is None:
                return
        logger.info('client %s (%s) disconnected', session.id, session.display_name)
        if self._running.is_set():
            self.broadcast_client_list()
            self.send_server_info(f'Client {session.id} disconnected.')

    def roster(self):
        return [{'id': s.id, 'name': s.display_name} for s in self.sessions()]

    # --- routing ---

    def handle_incoming(self, session, msg):
        kind = msg.kind
        if kind is MessageKind.HELLO:
            self._handle_hello(session, msg)
        elif kind is MessageKind.CHAT:
            with self.lock:
                self.chat_history.append(dict(msg.payload))
            self.broadcast(msg)
        elif kind is MessageKind.DRAW_EVENT:
            with self.lock:
                self.board_events.append(dict(msg.payload))
            self.broadcast(msg)
        elif kind is MessageKind.CLEAR_BOARD:
            with self.lock:
                self.board_events.clear()
            self.broadcast(msg)
        elif kind is MessageKind.BOARD_SNAPSHOT:
            self.broadcast(msg)
        elif kind in (MessageKind.FILE_META, MessageKind.FILE_CHUNK, MessageKind.FILE_COMPLETE):
            self._route_file(session, msg)
        elif kind is MessageKind.SERVER_INFO and msg.payload.get('heartbeat'):
            session.enqueue(Message.of(MessageKind.SERVER_INFO, heartbeat=True))
        else:
            logger.debug('ignoring %s from client %s', kind.value, session.id)

    def _handle_hello(self, session, msg):
        name = msg.payload.get('name')
        if isinstance(name, str) and name.strip():
            session.display_name = name.strip()
        session.enqueue(Message.of(MessageKind.WELCOME, clientId=session.id))
        with self.lock:
            chat = list(self.chat_history)
            board = list(self.board_events)
        session.enqueue(Message.of(MessageKind.CHAT_HISTORY, items=chat))
        session.enqueue(Message.of(MessageKind.BOARD_HISTORY, items=board))
        self.broadcast_client_list()

    def _route_file(self, session, msg):
        targets = msg.payload.get('targetIds')
        if not isinstance(targets, list):
            self.broadcast(msg)
            return
        for target_id in targets:
            target = self.get(target_id) if isinstance(target_id, int) else None
            if target is not None:
                target.enqueue(msg)
            else:
                logger.debug('file message from %s for unknown client %r', session.id, target_id)

    def broadcast(self, msg):
        for s in self.sessions():
            s.enqueue(msg)
            s.has_backlog()

    def broadcast_client_list(self):
        self.broadcast(Message.of(MessageKind.CLIENT_LIST, clients=self.roster()))

    def send_server_info(self, info):
        logger.info(info)
        self.broadcast(Message.of(MessageKind.SERVER_INFO, info=info))


def main():
    parser = argparse.ArgumentParser(description='Collaborative whiteboard server')
    parser.add_argument('port', nargs='?', type=int, default=PORT)
    parser.add_argument('--host', default=HOST)
    args = parser.parse_args()
    setup_logging()
    server = ServerCore(args.host, args.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info('shutting down')
        server.shutdown()


if __name__ == '__main__':
    main()
