"""
TCP congestion control state machine (Tahoe and Reno), measured in segments.

The engine does no I/O: it is driven by on_segment_sent / on_ack_received /
on_timeout / update_rtt and reports every transition to an observer so a
chart can draw the slow-start ramps, the linear avoidance slope and the drops
on loss. One engine belongs to one connection; never share it.
"""
from common.config import (DUP_ACK_THRESHOLD, INITIAL_CWND, INITIAL_RTT_MS, INITIAL_SSTHRESH,
                           MAX_CWND, MIN_CWND, MIN_SSTHRESH, RTT_ALPHA)

from backend.models import Algorithm, CongestionPhase, CongestionStats, Totals


class CongestionController:

    def __init__(self, algorithm=Algorithm.RENO, window_size=INITIAL_CWND, threshold=INITIAL_SSTHRESH,
                 phase=CongestionPhase.SLOW_START, estimated_rtt=INITIAL_RTT_MS, observer=None):
        algorithm = Algorithm(algorithm)
        phase = CongestionPhase(phase)
        if algorithm is Algorithm.TAHOE and phase is CongestionPhase.FAST_RECOVERY:
            raise ValueError('Tahoe has no fast recovery phase')
        self.algorithm = algorithm
        self.window_size = min(max(int(window_size), MIN_CWND), MAX_CWND)
        self.threshold = max(int(threshold), MIN_SSTHRESH)
        self.phase = phase
        self.estimated_rtt = float(estimated_rtt)
        self.duplicate_ack_run = 0
        self.next_seq = 1
        self.expected_ack = 1
        self.avoidance_fraction = 0.0
        self.round = 0
        self.acks_this_round = 0
        # statistics
        self.total_sent = 0
        self.total_acked = 0
        self.total_timeouts = 0
        self.total_duplicates = 0
        self._observer = observer

    def set_observer(self, observer):
        self._observer = observer

    @property
    def timeout_threshold(self):
        """Milliseconds an unacknowledged segment may age before it times out."""
        return 2 * self.estimated_rtt

    def on_segment_sent(self):
        self.total_sent += 1
        self.next_seq += 1
        self.notify()

    def on_ack_received(self, ack_number, is_duplicate=False):
        """
        Process one ACK.

        An ACK counts as duplicate when the caller says so or when it is below
        the next expected ACK number. The simulator only ever derives the flag
        from its own expectation, so the two signals agree in practice.
        """
        self.total_acked += 1
        if is_duplicate or ack_number < self.expected_ack:
            self._on_duplicate_ack()
        else:
            self._on_new_ack(ack_number)
        self.notify()

    def _on_duplicate_ack(self):
        self.duplicate_ack_run += 1
        self.total_duplicates += 1
        if self.phase is CongestionPhase.FAST_RECOVERY:
            # window inflation, one segment per extra duplicate
            self.window_size = min(self.window_size + 1, MAX_CWND)
        elif self.duplicate_ack_run == DUP_ACK_THRESHOLD:
            if self.algorithm is Algorithm.RENO:
                self._fast_retransmit()
            else:
                self._collapse()

    def _on_new_ack(self, ack_number):
        self.duplicate_ack_run = 0
        self.expected_ack = ack_number + 1

        self.acks_this_round += 1
        if self.acks_this_round >= self.window_size:
            self.round += 1
            self.acks_this_round = 0

        if self.phase is CongestionPhase.SLOW_START:
            self.window_size = min(self.window_size + 1, MAX_CWND)
            if self.window_size >= self.threshold:
                self.phase = CongestionPhase.CONGESTION_AVOIDANCE
                self.avoidance_fraction = 0.0
        elif self.phase is CongestionPhase.CONGESTION_AVOIDANCE:
            # 1/cwnd per ACK adds up to one segment per round
            self.avoidance_fraction += 1.0 / self.window_size
            if self.avoidance_fraction >= 1.0:
                self.window_size = min(self.window_size + 1, MAX_CWND)
                self.avoidance_fraction -= 1.0
        else:
            # new data acknowledged, leave fast recovery
            self.window_size = self.threshold
            self.phase = CongestionPhase.CONGESTION_AVOIDANCE
            self.duplicate_ack_run = 0
            self.avoidance_fraction = 0.0

    def _fast_retransmit(self):
        self.threshold = max(self.window_size // 2, MIN_SSTHRESH)
        self.window_size = self.threshold
        self.phase = CongestionPhase.FAST_RECOVERY
        self.avoidance_fraction = 0.0
        self.acks_this_round = 0

    def _collapse(self):
        self.threshold = max(self.window_size // 2, MIN_SSTHRESH)
        self.window_size = MIN_CWND
        self.phase = CongestionPhase.SLOW_START
        self.duplicate_ack_run = 0
        self.avoidance_fraction = 0.0
        self.acks_this_round = 0

    def on_timeout(self):
        """Same reaction for Tahoe and Reno: back to one segment and slow start."""
        self.total_timeouts += 1
        self._collapse()
        self.notify()

    def update_rtt(self, sample_ms):
        self.estimated_rtt = (1 - RTT_ALPHA) * self.estimated_rtt + RTT_ALPHA * float(sample_ms)
        self.notify()

    def get_stats(self):
        return CongestionStats(
            algorithm=self.algorithm,
            window_size=self.window_size,
            threshold=self.threshold,
            phase=self.phase,
            estimated_rtt=self.estimated_rtt,
            duplicate_ack_run=self.duplicate_ack_run,
            next_seq=self.next_seq,
            expected_ack=self.expected_ack,
            round=self.round,
            acks_this_round=self.acks_this_round,
            totals=Totals(
                sent=self.total_sent,
                acked=self.total_acked,
                timeouts=self.total_timeouts,
                duplicates=self.total_duplicates,
            ),
        )

    def notify(self):
        if self._observer is not None:
            self._observer(self.get_stats())
