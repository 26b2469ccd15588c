"""
Typed protocol messages exchanged between whiteboard clients and the server.
"""
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    HELLO = 'HELLO'                        # client -> server handshake, carries display name
    WELCOME = 'WELCOME'                    # server -> client, assigned client id
    CLIENT_LIST = 'CLIENT_LIST'            # roster update
    CHAT = 'CHAT'
    CHAT_HISTORY = 'CHAT_HISTORY'
    DRAW_EVENT = 'DRAW_EVENT'
    BOARD_HISTORY = 'BOARD_HISTORY'
    CLEAR_BOARD = 'CLEAR_BOARD'
    BOARD_SNAPSHOT = 'BOARD_SNAPSHOT'
    FILE_META = 'FILE_META'
    FILE_CHUNK = 'FILE_CHUNK'
    FILE_COMPLETE = 'FILE_COMPLETE'
    SERVER_INFO = 'SERVER_INFO'
    ERROR = 'ERROR'
    # reserved for a wire-level congestion protocol, never sent today
    PACKET = 'PACKET'
    ACK = 'ACK'
    CONGESTION_STATS = 'CONGESTION_STATS'


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: MessageKind = Field(..., alias='type')
    payload: Dict[str, Any]

    @classmethod
    def of(cls, kind, **payload):
        return cls(kind=kind, payload=payload)

    def to_record(self):
        """Plain dict in wire shape: {"type": ..., "payload": {...}}."""
        return self.model_dump(mode='json', by_alias=True)
