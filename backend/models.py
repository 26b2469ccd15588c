# Pydantic models shared by the congestion engine, the simulator and the stats API.
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Algorithm(str, Enum):
    TAHOE = 'TAHOE'
    RENO = 'RENO'


class CongestionPhase(str, Enum):
    SLOW_START = 'SLOW_START'
    CONGESTION_AVOIDANCE = 'CONGESTION_AVOIDANCE'
    FAST_RECOVERY = 'FAST_RECOVERY'   # Reno only


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    sent: int = 0
    acked: int = 0
    timeouts: int = 0
    duplicates: int = 0


class CongestionStats(BaseModel):
    """Read-only snapshot of one congestion engine."""
    model_config = ConfigDict(frozen=True)

    algorithm: Algorithm
    window_size: int
    threshold: int
    phase: CongestionPhase
    estimated_rtt: float            # milliseconds
    duplicate_ack_run: int
    next_seq: int
    expected_ack: int
    round: int
    acks_this_round: int
    totals: Totals
    timestamp: float = Field(default_factory=time.time)


class SimulationConfig(BaseModel):
    """Runtime knobs of the simulator. Out of range values are clamped, not rejected."""
    algorithm: Algorithm = Algorithm.RENO
    loss_rate: float = 0.02
    delay_ms: float = 50.0

    @field_validator('loss_rate', mode='before')
    @classmethod
    def _clamp_loss(cls, v):
        return min(1.0, max(0.0, float(v)))

    @field_validator('delay_ms', mode='before')
    @classmethod
    def _clamp_delay(cls, v):
        return max(0.0, float(v))


class ConfigUpdate(BaseModel):
    """Body of POST /config. Loss is expressed in percent like the client sliders."""
    algorithm: Optional[Algorithm] = None
    loss_rate_percent: Optional[float] = None
    delay_ms: Optional[float] = None


class ClientInfo(BaseModel):
    id: int
    name: str


class Roster(BaseModel):
    clients: List[ClientInfo] = Field(default_factory=list)
