"""Tests for the congestion simulation harness."""
import math

import pytest

from backend.models import Algorithm, CongestionPhase
from common.config import MSS
from common.errors import ClosedError
from common.framing import encode_record
from common.messages import Message, MessageKind
from tools.tcp_simulator import CongestionSimulator, segment_count

pytestmark = [pytest.mark.unit, pytest.mark.simulation]

NEVER = 3600.0


class ScriptedRandom:
    """random.Random stand-in returning a fixed sequence, then 0.99."""

    def __init__(self, values=()):
        self.values = list(values)

    def random(self):
        return self.values.pop(0) if self.values else 0.99


@pytest.fixture
def make_sim(clock):
    sims = []

    def factory(sink=None, **kwargs):
        kwargs.setdefault('loss_rate', 0.0)
        kwargs.setdefault('delay_ms', 0.0)
        kwargs.setdefault('clock', clock)
        for name in ('ack_interval', 'timeout_interval', 'stats_interval'):
            kwargs.setdefault(name, NEVER)
        sent = []
        sim = CongestionSimulator(sink if sink is not None else sent.append, **kwargs).start()
        sim.sent = sent
        sims.append(sim)
        return sim

    yield factory
    for sim in sims:
        sim.shutdown()


def test_segment_count():
    assert segment_count(1) == 1
    assert segment_count(MSS) == 1
    assert segment_count(MSS + 1) == 2
    assert segment_count(10 * MSS) == 10


def test_small_message_is_one_segment(make_sim):
    sim = make_sim()
    msg = Message.of(MessageKind.CHAT, text='hello world!')
    sim.send_message(msg)
    assert sim.sync()
    assert list(sim.segments) == [1]
    assert sim.controller.total_sent == 1
    assert sim.sent == [msg]
    assert sim.sent[0] is msg


def test_large_message_spans_segments_with_increasing_sequence(make_sim):
    sim = make_sim()
    first = Message.of(MessageKind.BOARD_SNAPSHOT, png='x' * 5000)
    second = Message.of(MessageKind.CHAT, text='after')
    sim.send_message(first)
    sim.send_message(second)
    assert sim.sync()
    n = math.ceil(len(encode_record(first)) / MSS)
    assert n == 4
    assert list(sim.segments) == list(range(1, n + 2))
    assert sim.controller.total_sent == n + 1
    assert sim.controller.next_seq == n + 2
    assert sim.sent == [first, second]


def test_acks_grow_window_and_sample_rtt(make_sim, clock):
    sim = make_sim()
    for i in range(3):
        sim.send_message(Message.of(MessageKind.CHAT, i=i))
    assert sim.sync()
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    stats = sim.get_stats()
    assert all(seg.acknowledged for seg in sim.segments.values())
    assert stats.totals.acked == 3
    assert stats.totals.duplicates == 0
    assert stats.window_size == 4
    assert stats.phase is CongestionPhase.SLOW_START
    assert stats.estimated_rtt < 100.0


def test_segments_younger_than_delay_are_not_acked(make_sim, clock):
    sim = make_sim(delay_ms=80.0)
    sim.send_message(Message.of(MessageKind.CHAT, text='slow'))
    assert sim.sync()
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    assert sim.controller.total_acked == 0
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    assert sim.controller.total_acked == 1


def test_loss_after_send_triggers_timeout(make_sim):
    sim = make_sim(loss_rate=1.0)
    sim.send_message(Message.of(MessageKind.CHAT, text='doomed'))
    assert sim.sync()
    stats = sim.get_stats()
    assert stats.totals.timeouts == 1
    assert stats.window_size == 1
    assert stats.phase is CongestionPhase.SLOW_START
    assert sim.segments[1].retransmit_count == 1
    # the real message still went out unchanged
    assert len(sim.sent) == 1


def test_stale_segments_time_out_and_are_retransmitted(make_sim, clock):
    sim = make_sim()
    sim.send_message(Message.of(MessageKind.CHAT, text='a'))
    sim.send_message(Message.of(MessageKind.CHAT, text='b'))
    assert sim.sync()
    sim.set_loss_rate(1.0)
    clock.advance(0.1)
    sim.tick_acks()
    assert sim.sync()
    assert sim.controller.total_acked == 0

    clock.advance(0.2)      # 300ms > 2 * 100ms estimated RTT
    sim.tick_timeouts()
    assert sim.sync()
    stats = sim.get_stats()
    assert stats.totals.timeouts == 2
    assert stats.totals.sent == 4
    for seg in sim.segments.values():
        assert seg.retransmit_count == 1
        assert seg.created_at == clock.now

    # retransmitted segments always get through, even at 100% loss
    clock.advance(0.01)
    sim.tick_acks()
    assert sim.sync()
    assert sim.controller.total_acked == 2


def test_fresh_segments_do_not_time_out(make_sim, clock):
    sim = make_sim()
    sim.send_message(Message.of(MessageKind.CHAT, text='a'))
    assert sim.sync()
    clock.advance(0.15)
    sim.tick_timeouts()
    assert sim.sync()
    assert sim.controller.total_timeouts == 0


def test_out_of_order_ack_is_duplicate(make_sim, clock):
    # two sends draw "delivered", then segment 1 is lost on the first ACK pass
    rng = ScriptedRandom([0.9, 0.9, 0.1, 0.9])
    sim = make_sim(loss_rate=0.3, rng=rng)
    sim.send_message(Message.of(MessageKind.CHAT, text='one'))
    sim.send_message(Message.of(MessageKind.CHAT, text='two'))
    assert sim.sync()
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    assert not sim.segments[1].acknowledged
    assert sim.segments[2].acknowledged
    assert sim.controller.expected_ack == 4

    sim.tick_acks()
    assert sim.sync()
    stats = sim.get_stats()
    assert stats.totals.acked == 2
    assert stats.totals.duplicates == 1
    assert stats.duplicate_ack_run == 1


def test_acked_segments_evicted_after_retention(make_sim, clock):
    sim = make_sim()
    sim.send_message(Message.of(MessageKind.CHAT, text='a'))
    assert sim.sync()
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    assert len(sim.segments) == 1
    clock.advance(6.0)
    sim.tick_acks()
    assert sim.sync()
    assert sim.segments == {}


def test_stats_published_even_without_change(make_sim):
    seen = []
    sim = make_sim(observer=seen.append)
    sim.tick_stats()
    sim.tick_stats()
    assert sim.sync()
    assert len(seen) == 2
    assert seen[0].window_size == seen[1].window_size == 1


def test_observer_sees_engine_transitions(make_sim):
    seen = []
    sim = make_sim(observer=seen.append)
    sim.send_message(Message.of(MessageKind.CHAT, text='a'))
    assert sim.sync()
    assert [s.totals.sent for s in seen] == [1]


def test_config_is_clamped(make_sim):
    sim = make_sim()
    sim.set_loss_rate(-0.5)
    assert sim.config.loss_rate == 0.0
    sim.set_loss_rate(3)
    assert sim.config.loss_rate == 1.0
    sim.set_network_delay(-10)
    assert sim.config.delay_ms == 0.0
    sim.set_network_delay(250)
    assert sim.config.delay_ms == 250.0


def test_switching_algorithm_restarts_engine(make_sim, clock):
    sim = make_sim(algorithm=Algorithm.RENO)
    for i in range(4):
        sim.send_message(Message.of(MessageKind.CHAT, i=i))
    assert sim.sync()
    clock.advance(0.05)
    sim.tick_acks()
    assert sim.sync()
    assert sim.get_stats().window_size == 5

    sim.set_algorithm('TAHOE')
    assert sim.sync()
    stats = sim.get_stats()
    assert stats.algorithm is Algorithm.TAHOE
    assert stats.window_size == 1
    assert sim.config.algorithm is Algorithm.TAHOE


def test_send_after_shutdown_raises(make_sim):
    sim = make_sim()
    sim.shutdown()
    sim.shutdown()
    assert sim.closed
    with pytest.raises(ClosedError):
        sim.send_message(Message.of(MessageKind.CHAT, text='late'))


def test_sink_failure_stops_simulation(make_sim, eventually):
    def broken(message):
        raise OSError('socket gone')

    sim = make_sim(sink=broken)
    sim.send_message(Message.of(MessageKind.CHAT, text='x'))
    assert eventually(lambda: sim.closed)
    with pytest.raises(ClosedError):
        sim.send_message(Message.of(MessageKind.CHAT, text='y'))


def test_timers_drive_the_simulation(eventually):
    seen = []
    sim = CongestionSimulator(lambda m: None, loss_rate=0.0, delay_ms=0.0, observer=seen.append,
                              ack_interval=0.02, timeout_interval=0.02, stats_interval=0.02).start()
    try:
        sim.send_message(Message.of(MessageKind.CHAT, text='real clock'))
        assert sim.sync()
        assert eventually(lambda: sim.get_stats().totals.acked >= 1)
        assert eventually(lambda: len(seen) > 2)
    finally:
        sim.shutdown()
