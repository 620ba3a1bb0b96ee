"""Session events. Every input to a live session is one of these, handled in order."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from common.schemas import TranscriptBatch


@dataclass(frozen=True)
class ChunkCaptured:
    chunk: bytes


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelClosed:
    reason: str = ""


@dataclass(frozen=True)
class TranscriptReceived:
    batch: TranscriptBatch


SessionEvent = Union[ChunkCaptured, ChannelOpened, ChannelClosed, TranscriptReceived]
