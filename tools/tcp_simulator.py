# tcp_simulator.py
"""
Congestion control simulation that runs alongside real message traffic.

Real messages are forwarded to the sink unchanged. For every message the
simulator fabricates MSS-sized segments and later fabricates ACKs, losses and
timeouts for them, feeding a CongestionController so its window can be
charted. Nothing here changes what goes on the wire.

All simulator state is owned by a single actor thread. Sends, loss reports and
timer ticks are posted to its mailbox and handled one at a time.
"""
import argparse
import logging
import math
import queue
import random
import threading
import time
from dataclasses import dataclass

from common.config import (ACK_INTERVAL, DEFAULT_DELAY_MS, DEFAULT_LOSS_RATE, MAX_SEND_DELAY_MS, MSS,
                           SEGMENT_RETENTION, STATS_INTERVAL, TIMEOUT_CHECK_INTERVAL)
from common.errors import ClosedError
from common.framing import encode_record
from common.logging_setup import setup_logging
from common.messages import Message, MessageKind

from backend.congestion import CongestionController
from backend.models import Algorithm, SimulationConfig

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class SimulatedSegment:
    sequence_number: int
    created_at: float
    acknowledged: bool = False
    retransmit_count: int = 0

    def age_ms(self, now):
        return (now - self.created_at) * 1000.0


def segment_count(byte_length, mss=MSS):
    return max(1, math.ceil(byte_length / mss))


class CongestionSimulator:

    def __init__(self, sink, algorithm=Algorithm.RENO, loss_rate=DEFAULT_LOSS_RATE, delay_ms=DEFAULT_DELAY_MS,
                 observer=None, clock=time.monotonic, rng=None, ack_interval=ACK_INTERVAL,
                 timeout_interval=TIMEOUT_CHECK_INTERVAL, stats_interval=STATS_INTERVAL):
        self._sink = sink
        self.config = SimulationConfig(algorithm=algorithm, loss_rate=loss_rate, delay_ms=delay_ms)
        self.controller = CongestionController(self.config.algorithm, observer=self._forward)
        self.segments = {}        # seq -> SimulatedSegment, in send order
        self._ack_numbers = {}    # seq -> ACK number that acknowledges it
        self._next_seq = 1
        self._expected_next_ack = 1
        self._observer = observer
        self._latest = self.controller.get_stats()
        self._clock = clock
        self._rng = rng or random.Random()
        self._intervals = (ack_interval, timeout_interval, stats_interval)

        self._mailbox = queue.Queue()
        self._outbox = queue.Queue()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._threads = []

    # --- lifecycle ---

    def start(self):
        with self._lock:
            if self._closed:
                raise ClosedError('Simulator is shut down')
            if self._threads:
                return self
            ack_interval, timeout_interval, stats_interval = self._intervals
            self._threads = [
                threading.Thread(target=self._run_actor, name='sim-actor', daemon=True),
                threading.Thread(target=self._run_sender, name='sim-sender', daemon=True),
                threading.Thread(target=self._every, args=(ack_interval, self.tick_acks), name='sim-acks', daemon=True),
                threading.Thread(target=self._every, args=(timeout_interval, self.tick_timeouts),
                                 name='sim-timeouts', daemon=True),
                threading.Thread(target=self._every, args=(stats_interval, self.tick_stats), name='sim-stats', daemon=True),
            ]
        for t in self._threads:
            t.start()
        logger.info('congestion simulation started: %s loss=%.1f%% delay=%.0fms',
                    self.config.algorithm.value, self.config.loss_rate * 100, self.config.delay_ms)
        return self

    @property
    def closed(self):
        return self._closed

    def shutdown(self, timeout=2.0):
        """Stop timers, send worker and actor. Messages already accepted are still sent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = self._threads
        self._stop.set()
        self._outbox.put(_STOP)
        self._mailbox.put(_STOP)
        for t in threads:
            if t is not threading.current_thread():
                t.join(timeout)
        logger.info('congestion simulation stopped')

    def sync(self, timeout=5.0):
        """Block until everything posted so far has been sent and processed."""
        sent = threading.Event()
        self._outbox.put(sent)
        if not sent.wait(timeout):
            return False
        handled = threading.Event()
        self._mailbox.put((handled.set, ()))
        return handled.wait(timeout)

    # --- configuration ---

    def set_loss_rate(self, rate):
        self.config = SimulationConfig(algorithm=self.config.algorithm, loss_rate=rate, delay_ms=self.config.delay_ms)

    def set_network_delay(self, delay_ms):
        self.config = SimulationConfig(algorithm=self.config.algorithm, loss_rate=self.config.loss_rate,
                                       delay_ms=delay_ms)

    def set_algorithm(self, algorithm):
        """Switch algorithm. The engine restarts from its initial state."""
        algorithm = Algorithm(algorithm)
        self.config = SimulationConfig(algorithm=algorithm, loss_rate=self.config.loss_rate,
                                       delay_ms=self.config.delay_ms)
        self._post(self._rebuild_controller, algorithm)

    def set_observer(self, observer):
        self._observer = observer

    def get_stats(self):
        return self._latest

    # --- sending ---

    def send_message(self, message):
        if self._closed:
            raise ClosedError('Simulator is shut down', {'kind': message.kind.value})
        count = segment_count(len(encode_record(message)))
        batch = []
        self._post(self._record_segments, count, batch)
        self._outbox.put((message, batch))

    def _run_sender(self):
        while True:
            item = self._outbox.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            message, batch = item
            delay_ms = min(self.config.delay_ms, MAX_SEND_DELAY_MS)
            if delay_ms > 0:
                self._stop.wait(delay_ms / 1000.0)
            try:
                self._sink(message)
            except (OSError, ClosedError) as e:
                logger.warning('real send of %s failed, stopping simulation: %s', message.kind.value, e)
                self._closed = True
                self._stop.set()
                self._mailbox.put(_STOP)
                return
            if self._rng.random() < self.config.loss_rate:
                self._post(self._mark_lost, batch)

    # --- timers ---

    def _every(self, interval, tick):
        while not self._stop.wait(interval):
            tick()

    def tick_acks(self):
        self._post(self._simulate_acks)

    def tick_timeouts(self):
        self._post(self._check_timeouts)

    def tick_stats(self):
        self._post(self._publish_stats)

    # --- actor ---

    def _post(self, fn, *args):
        if not self._stop.is_set():
            self._mailbox.put((fn, args))

    def _run_actor(self):
        while True:
            item = self._mailbox.get()
            if item is _STOP:
                return
            fn, args = item
            try:
                fn(*args)
            except Exception:
                logger.exception('simulation step %s failed', getattr(fn, '__name__', fn))

    def _forward(self, stats):
        self._latest = stats
        if self._observer is not None:
            self._observer(stats)

    def _rebuild_controller(self, algorithm):
        self.controller = CongestionController(algorithm, observer=self._forward)
        self.controller.notify()

    def _record_segments(self, count, batch):
        now = self._clock()
        for _ in range(count):
            seq = self._next_seq
            self._next_seq += 1
            self.segments[seq] = SimulatedSegment(seq, now)
            self._ack_numbers[seq] = seq + 1
            batch.append(seq)
            self.controller.on_segment_sent()

    def _mark_lost(self, batch):
        for seq in batch:
            seg = self.segments.get(seq)
            if seg is not None:
                seg.retransmit_count += 1
        logger.debug('simulated loss of segments %s', batch)
        self.controller.on_timeout()

    def _simulate_acks(self):
        now = self._clock()
        config = self.config
        for seg in list(self.segments.values()):
            if seg.acknowledged or seg.age_ms(now) <= config.delay_ms:
                continue
            # a retransmitted segment always gets through
            if seg.retransmit_count == 0 and self._rng.random() < config.loss_rate:
                continue
            seg.acknowledged = True
            ack_number = self._ack_numbers.get(seg.sequence_number, seg.sequence_number + 1)
            duplicate = ack_number < self._expected_next_ack
            if not duplicate:
                self._expected_next_ack = ack_number + 1
            self.controller.update_rtt(seg.age_ms(now))
            self.controller.on_ack_received(ack_number, duplicate)
        self._evict(now)

    def _evict(self, now):
        for seq, seg in list(self.segments.items()):
            if seg.acknowledged and now - seg.created_at > SEGMENT_RETENTION:
                del self.segments[seq]
                self._ack_numbers.pop(seq, None)

    def _check_timeouts(self):
        now = self._clock()
        limit = self.controller.timeout_threshold
        for seg in list(self.segments.values()):
            if not seg.acknowledged and seg.age_ms(now) > limit:
                self.controller.on_timeout()
                # simulated retransmission
                seg.retransmit_count += 1
                seg.created_at = now
                self.controller.on_segment_sent()

    def _publish_stats(self):
        self._forward(self.controller.get_stats())


def main():
    parser = argparse.ArgumentParser(description='Run the congestion simulator against synthetic chat traffic.')
    parser.add_argument('--algo', choices=['tahoe', 'reno'], default='reno')
    parser.add_argument('--loss', type=float, default=DEFAULT_LOSS_RATE * 100, help='loss rate in percent')
    parser.add_argument('--delay', type=float, default=DEFAULT_DELAY_MS, help='network delay in ms')
    parser.add_argument('--rate', type=float, default=20.0, help='messages per second')
    parser.add_argument('--duration', type=float, default=30.0, help='seconds to run')
    args = parser.parse_args()
    setup_logging()

    sim = CongestionSimulator(lambda m: None, algorithm=Algorithm(args.algo.upper()),
                              loss_rate=args.loss / 100.0, delay_ms=args.delay).start()
    deadline = time.monotonic() + args.duration
    last_print = 0.0
    n = 0
    try:
        while time.monotonic() < deadline:
            n += 1
            sim.send_message(Message.of(MessageKind.CHAT, sender='sim', text='x' * random.randint(10, 4000), n=n))
            if time.monotonic() - last_print >= 1.0:
                s = sim.get_stats()
                print(f"round={s.round:4d} cwnd={s.window_size:4d} ssthresh={s.threshold:4d} "
                      f"phase={s.phase.value:<20} rtt={s.estimated_rtt:6.1f}ms timeouts={s.totals.timeouts}")
                last_print = time.monotonic()
            time.sleep(1.0 / args.rate)
    except KeyboardInterrupt:
        pass
    finally:
        sim.shutdown()


if __name__ == '__main__':
    main()
