from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, model_validator


# --- Recognition events: backend -> gateway ---

class WordEvent(BaseModel):
    word: str
    punctuated_word: str = ""
    start: float
    end: float
    confidence: float = 0.0
    speaker: int = 0

    @model_validator(mode="before")
    @classmethod
    def _default_punctuated(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("punctuated_word"):
            data = {**data, "punctuated_word": data.get("word", "")}
        return data


class TranscriptBatch(BaseModel):
    words: list[WordEvent]
    is_final: bool = False

    @property
    def caption(self) -> str:
        return " ".join(w.punctuated_word for w in self.words)

    @classmethod
    def from_payload(cls, payload: Any) -> Optional[TranscriptBatch]:
        """Parse a live results payload; returns None for anything malformed."""
        try:
            words = payload["channel"]["alternatives"][0]["words"]
            return cls(words=words, is_final=bool(payload.get("is_final", False)))
        except (KeyError, IndexError, TypeError, AttributeError, ValidationError):
            return None


class ChannelState(str, Enum):
    connecting = "connecting"
    open = "open"
    closed = "closed"


class FinalizedSentence(BaseModel):
    speaker: str
    transcript: str
    start: float
    end: float
    meeting_id: str


# --- WebSocket messages: client <-> gateway ---

class ClientMessageType(str, Enum):
    start = "start"
    stop = "stop"
    reconnect = "reconnect"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    meeting_id: str


class StopMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.stop
    meeting_id: str


class ServerMessageType(str, Enum):
    history = "history"
    channel = "channel"
    transcript = "transcript"
    blocked = "blocked"
    stopped = "stopped"
    error = "error"


class HistoryMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.history
    meeting_id: str
    sentences: list[FinalizedSentence]


class ChannelMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.channel
    meeting_id: str
    state: ChannelState


class TranscriptMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript
    meeting_id: str
    sentences: list[FinalizedSentence]
    caption: str = ""


class BlockedMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.blocked
    meeting_id: str
    detail: str


class StoppedMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.stopped
    meeting_id: str
    sentences: list[FinalizedSentence]
    persisted: int = 0
    discarded: int = 0


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    meeting_id: str
    detail: str
