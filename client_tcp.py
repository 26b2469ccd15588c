#!/usr/bin/env python3
"""
client_tcp.py
Terminal client for the collaborative whiteboard (length-prefixed JSON framing).
Usage: python3 client_tcp.py --name Alice --simulate reno --loss 5 --delay 80

Chat and draw messages always go to the server unchanged. With --simulate the
congestion simulator watches them and charts what a Tahoe or Reno sender's
window would do; --dashboard-port serves that chart data over HTTP.
"""
import argparse
import logging
import socket
import threading

from common.config import DEFAULT_DELAY_MS, DEFAULT_LOSS_RATE, HEARTBEAT_INTERVAL, HOST, PORT
from common.logging_setup import setup_logging
from common.messages import Message, MessageKind
from common.session import SessionTransport

from backend.app import StatsHub, create_app
from backend.models import Algorithm
from tools.tcp_simulator import CongestionSimulator

logger = logging.getLogger('client')

HELP = """Commands:
  /chat <text>            (or just type text)
  /draw <x1> <y1> <x2> <y2> [color]
  /clear
  /loss <percent>
  /delay <ms>
  /algo <tahoe|reno|off>
  /stats
  /quit
"""


class WhiteboardClient:
    def __init__(self, name, host=HOST, port=PORT, loss_rate=DEFAULT_LOSS_RATE, delay_ms=DEFAULT_DELAY_MS,
                 hub=None, output=print):
        self.name = name
        self.addr = (host, port)
        # the hub holds the simulation settings so the CLI and the dashboard share them
        self.hub = hub or StatsHub()
        self.hub.apply(loss_rate=loss_rate, delay_ms=delay_ms)
        self.output = output
        self.client_id = None
        self.transport = None
        self.simulator = None
        self.connected = threading.Event()
        self.disconnected = threading.Event()
        self._stop = threading.Event()
        self._sim_lock = threading.Lock()

    @property
    def loss_rate(self):
        return self.hub.config.loss_rate

    @property
    def delay_ms(self):
        return self.hub.config.delay_ms

    def connect(self, timeout=5.0):
        sock = socket.create_connection(self.addr, timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.transport = SessionTransport(0, sock, on_message=self._on_message, on_close=self._on_close,
                                          display_name=self.name).start()
        self.transport.enqueue(Message.of(MessageKind.HELLO, name=self.name))
        threading.Thread(target=self._heartbeat_loop, name='client-heartbeat', daemon=True).start()
        return self.connected.wait(timeout)

    def close(self):
        self._stop.set()
        self.disable_simulation()
        if self.transport is not None:
            self.transport.close()

    # --- congestion simulation ---

    def enable_simulation(self, algorithm):
        algorithm = Algorithm(algorithm)
        with self._sim_lock:
            if self.simulator is not None:
                # restarts the engine only when the algorithm actually changes
                self.hub.apply(algorithm=algorithm)
                return self.simulator
            config = self.hub.apply(algorithm=algorithm)
            self.simulator = CongestionSimulator(self.transport.enqueue, algorithm=config.algorithm,
                                                 loss_rate=config.loss_rate, delay_ms=config.delay_ms)
            self.hub.attach(self.simulator)
            self.simulator.start()
            return self.simulator

    def disable_simulation(self):
        with self._sim_lock:
            sim, self.simulator = self.simulator, None
        if sim is not None:
            self.hub.detach(sim)
            sim.shutdown()

    def set_loss_percent(self, percent):
        self.hub.apply(loss_rate=percent / 100.0)

    def set_delay(self, delay_ms):
        self.hub.apply(delay_ms=delay_ms)

    # --- sending ---

    def send(self, message):
        if self.simulator is not None:
            self.simulator.send_message(message)
        else:
            self.transport.enqueue(message)

    def send_chat(self, text):
        self.send(Message.of(MessageKind.CHAT, sender=self.name, senderId=self.client_id, text=text))

    def send_draw(self, x1, y1, x2, y2, color='#000000', width=2.0):
        self.send(Message.of(MessageKind.DRAW_EVENT, x1=x1, y1=y1, x2=x2, y2=y2, color=color, width=width))

    def clear_board(self):
        self.send(Message.of(MessageKind.CLEAR_BOARD, by=self.name))

    def _heartbeat_loop(self):
        while not self._stop.wait(HEARTBEAT_INTERVAL):
            if self.transport is None or self.transport.closed:
                return
            # straight to the transport so the chart only shows user traffic
            self.transport.enqueue(Message.of(MessageKind.SERVER_INFO, heartbeat=True))

    # --- receiving ---

    def _on_message(self, session, msg):
        kind = msg.kind
        p = msg.payload
        if kind is MessageKind.WELCOME:
            self.client_id = p.get('clientId')
            self.output(f"Connected as {self.name} (id {self.client_id})")
            self.connected.set()
        elif kind is MessageKind.CLIENT_LIST:
            clients = [c for c in p.get('clients', []) if isinstance(c, dict) and 'id' in c and 'name' in c]
            self.hub.set_roster(clients)
            self.output('Online: ' + ', '.join(f"{c['name']}#{c['id']}" for c in clients))
        elif kind is MessageKind.CHAT:
            self.output(f"<{p.get('sender', '?')}> {p.get('text', '')}")
        elif kind is MessageKind.CHAT_HISTORY:
            for item in p.get('items', []):
                if isinstance(item, dict):
                    self.output(f"<{item.get('sender', '?')}> {item.get('text', '')}  (history)")
        elif kind is MessageKind.BOARD_HISTORY:
            self.output(f"Board has {len(p.get('items', []))} strokes")
        elif kind is MessageKind.DRAW_EVENT:
            self.output(f"[draw] ({p.get('x1')},{p.get('y1')}) -> ({p.get('x2')},{p.get('y2')}) {p.get('color', '')}")
        elif kind is MessageKind.CLEAR_BOARD:
            self.output(f"[board cleared by {p.get('by', '?')}]")
        elif kind is MessageKind.SERVER_INFO:
            if not p.get('heartbeat'):
                self.output(f"[server] {p.get('info', '')}")
        elif kind is MessageKind.ERROR:
            self.output(f"Error from server: {p.get('why') or p}")
        else:
            logger.debug('unhandled %s: %s', kind.value, p)

    def _on_close(self, session):
        self._stop.set()
        # the simulation belongs to this connection
        self.disable_simulation()
        self.disconnected.set()
        self.output('Disconnected from server')


def format_stats(stats):
    t = stats.totals
    return (f"{stats.algorithm.value} cwnd={stats.window_size} ssthresh={stats.threshold} "
            f"phase={stats.phase.value} rtt={stats.estimated_rtt:.1f}ms round={stats.round} "
            f"sent={t.sent} acked={t.acked} timeouts={t.timeouts} dupacks={t.duplicates}")


def handle_command(client, line):
    """Run one input line. Returns False when the user asked to quit."""
    if not line.startswith('/'):
        client.send_chat(line)
        return True
    parts = line.split()
    cmd, args = parts[0], parts[1:]
    try:
        if cmd == '/chat' and args:
            client.send_chat(line.split(' ', 1)[1])
        elif cmd == '/draw' and len(args) >= 4:
            x1, y1, x2, y2 = (float(a) for a in args[:4])
            client.send_draw(x1, y1, x2, y2, *(args[4:5] or ['#000000']))
        elif cmd == '/clear':
            client.clear_board()
        elif cmd == '/loss' and args:
            client.set_loss_percent(float(args[0]))
            print(f"loss rate {client.loss_rate * 100:.1f}%")
        elif cmd == '/delay' and args:
            client.set_delay(float(args[0]))
            print(f"delay {client.delay_ms:.0f}ms")
        elif cmd == '/algo' and args:
            if args[0].lower() == 'off':
                client.disable_simulation()
                print('congestion simulation off')
            else:
                client.enable_simulation(args[0].upper())
                print(f'congestion simulation: {args[0].upper()}')
        elif cmd == '/stats':
            if client.simulator is None:
                print('congestion simulation is off')
            else:
                print(format_stats(client.simulator.get_stats()))
        elif cmd == '/quit':
            return False
        else:
            print(HELP)
    except ValueError as e:
        print(f"Bad arguments: {e}")
    return True


def serve_dashboard(hub, port):
    import uvicorn

    config = uvicorn.Config(create_app(hub), host='127.0.0.1', port=port, log_level='warning')
    server = uvicorn.Server(config)
    threading.Thread(target=server.run, name='dashboard', daemon=True).start()
    logger.info('dashboard on http://127.0.0.1:%s', port)
    return server


def run_client(args):
    client = WhiteboardClient(args.name, args.host, args.port, loss_rate=args.loss / 100.0, delay_ms=args.delay)
    try:
        ok = client.connect()
    except OSError as e:
        print(f"Failed to connect to {args.host}:{args.port}: {e}")
        return 1
    if not ok:
        print("Failed to connect: no WELCOME from server")
        client.close()
        return 1
    if args.simulate != 'off':
        client.enable_simulation(args.simulate.upper())
    if args.dashboard_port:
        serve_dashboard(client.hub, args.dashboard_port)

    print(HELP)
    try:
        while not client.disconnected.is_set():
            try:
                line = input('> ').strip()
            except EOFError:
                break
            if line and not handle_command(client, line):
                break
    except KeyboardInterrupt:
        pass
    finally:
        client.close()
    return 0


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--name', required=True)
    parser.add_argument('--host', default=HOST)
    parser.add_argument('--port', type=int, default=PORT)
    parser.add_argument('--simulate', choices=['off', 'tahoe', 'reno'], default='off')
    parser.add_argument('--loss', type=float, default=DEFAULT_LOSS_RATE * 100, help='simulated loss in percent')
    parser.add_argument('--delay', type=float, default=DEFAULT_DELAY_MS, help='simulated delay in ms')
    parser.add_argument('--dashboard-port', type=int, default=0)
    args = parser.parse_args()
    setup_logging()
    raise SystemExit(run_client(args))


if __name__ == '__main__':
    main()
