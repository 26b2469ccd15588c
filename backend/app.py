"""
Stats dashboard for the congestion simulator.

The client process serves this app next to its whiteboard connection so a
browser chart can follow cwnd/ssthresh over time and tune the simulated
network. Snapshots arrive from the simulator thread through StatsHub.
"""
import asyncio
import threading
from collections import deque

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from common.config import STATS_HISTORY_SIZE, STATS_INTERVAL

from backend.models import ClientInfo, ConfigUpdate, Roster, SimulationConfig


class StatsHub:
    """Thread-safe mailbox between the simulator observer and the web app."""

    def __init__(self, history_size=STATS_HISTORY_SIZE):
        self._lock = threading.Lock()
        self._history = deque(maxlen=history_size)
        self._roster = []
        self.simulator = None
        self._config = SimulationConfig()

    def publish(self, stats):
        with self._lock:
            self._history.append(stats)

    def latest(self):
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self, limit=None):
        with self._lock:
            items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def set_roster(self, clients):
        roster = [ClientInfo(id=c['id'], name=c['name']) for c in clients]
        with self._lock:
            self._roster = roster

    def roster(self):
        with self._lock:
            return list(self._roster)

    @property
    def config(self):
        """Current settings; an attached simulator's own config wins."""
        sim = self.simulator
        return sim.config if sim is not None else self._config

    def attach(self, simulator):
        self.simulator = simulator
        self._config = simulator.config
        simulator.set_observer(self.publish)

    def detach(self, simulator=None):
        sim = self.simulator
        if sim is None or (simulator is not None and simulator is not sim):
            return
        # keep the last live settings for the next simulator
        self._config = sim.config
        self.simulator = None

    def apply(self, algorithm=None, loss_rate=None, delay_ms=None):
        """Change only the given settings and push them to an attached simulator."""
        current = self.config
        config = SimulationConfig(
            algorithm=algorithm or current.algorithm,
            loss_rate=current.loss_rate if loss_rate is None else loss_rate,
            delay_ms=current.delay_ms if delay_ms is None else delay_ms,
        )
        self._config = config
        sim = self.simulator
        if sim is not None:
            if config.algorithm != sim.config.algorithm:
                sim.set_algorithm(config.algorithm)
            if loss_rate is not None:
                sim.set_loss_rate(config.loss_rate)
            if delay_ms is not None:
                sim.set_network_delay(config.delay_ms)
        return config

    def update_config(self, update):
        loss_rate = None if update.loss_rate_percent is None else update.loss_rate_percent / 100.0
        return self.apply(update.algorithm, loss_rate, update.delay_ms)


def create_app(hub):
    app = FastAPI(title='Whiteboard congestion dashboard')
    app.state.hub = hub

    # let a locally served chart page call the API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def index():
        state = 'running' if hub.simulator is not None else 'idle'
        return HTMLResponse(f'<h3>Congestion dashboard ({state}). Stream stats from /ws/stats</h3>')

    @app.get('/stats')
    async def latest_stats():
        stats = hub.latest()
        if stats is None:
            raise HTTPException(status_code=404, detail='no stats yet')
        return stats

    @app.get('/stats/history')
    async def stats_history(limit: int = Query(100, ge=0, le=STATS_HISTORY_SIZE)):
        return hub.history(limit)

    @app.get('/config', response_model=SimulationConfig)
    async def get_config():
        return hub.config

    @app.post('/config', response_model=SimulationConfig)
    async def post_config(update: ConfigUpdate):
        return hub.update_config(update)

    @app.get('/clients', response_model=Roster)
    async def list_clients():
        return Roster(clients=hub.roster())

    @app.websocket('/ws/stats')
    async def stats_stream(websocket: WebSocket):
        await websocket.accept()
        closed = asyncio.Event()

        async def watch_disconnect():
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                closed.set()

        watcher = asyncio.ensure_future(watch_disconnect())
        last = None
        try:
            while not closed.is_set():
                stats = hub.latest()
                if stats is not None and stats is not last:
                    await websocket.send_json(stats.model_dump(mode='json'))
                    last = stats
                try:
                    await asyncio.wait_for(closed.wait(), STATS_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        finally:
            watcher.cancel()

    return app


hub = StatsHub()
app = create_app(hub)
