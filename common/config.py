"""
Shared settings for the whiteboard server, client and congestion simulator.

Values can be overridden from the environment, e.g.
    WHITEBOARD_PORT=6000 python server.py
"""
import os


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# --- connection ---
HOST = os.environ.get('WHITEBOARD_HOST', '127.0.0.1')
PORT = int(_env_float('WHITEBOARD_PORT', 5050))
LISTEN_BACKLOG = 50

# --- framing ---
HEADER_SIZE = 4
MAX_FRAME_SIZE = 10_000_000
READ_IDLE_TIMEOUT = _env_float('WHITEBOARD_READ_TIMEOUT', 30.0)   # seconds
SEND_RETRY_DELAY = 0.05                                            # seconds
HEARTBEAT_INTERVAL = 10.0                                          # seconds

# --- session transport ---
OUTGOING_QUEUE_CAPACITY = 256
WRITER_POLL_INTERVAL = 0.5                                         # seconds

# --- congestion engine ---
INITIAL_CWND = 1
INITIAL_SSTHRESH = 64
INITIAL_RTT_MS = 100.0
MIN_CWND = 1
MAX_CWND = 1000
MIN_SSTHRESH = 2
DUP_ACK_THRESHOLD = 3
RTT_ALPHA = 0.125

# --- simulation harness ---
MSS = 1460                      # bytes per simulated segment
DEFAULT_LOSS_RATE = _env_float('WHITEBOARD_LOSS_RATE', 0.02)
DEFAULT_DELAY_MS = _env_float('WHITEBOARD_DELAY_MS', 50.0)
MAX_SEND_DELAY_MS = 100.0       # cap on the simulated delay before a real send
ACK_INTERVAL = 0.2              # seconds
TIMEOUT_CHECK_INTERVAL = 0.1
STATS_INTERVAL = 0.1
SEGMENT_RETENTION = 5.0         # seconds an acked segment is kept around

# --- dashboard ---
STATS_HISTORY_SIZE = 600
