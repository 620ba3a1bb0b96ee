from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from common.config import GatewaySettings, RecognitionSettings
from common.schemas import ChannelState, FinalizedSentence
from meeting_gateway.assembler import TranscriptAssembler
from meeting_gateway.channel import RecognitionChannel
from meeting_gateway.credentials import KeySource, TemporaryKey
from meeting_gateway.dispatcher import ChunkDispatcher
from meeting_gateway.events import (
    ChannelClosed,
    ChannelOpened,
    ChunkCaptured,
    SessionEvent,
    TranscriptReceived,
)
from meeting_gateway.exceptions import PersistenceError, ProvisioningError
from meeting_gateway.persistence import SentenceStore

logger = logging.getLogger(__name__)


@dataclass
class SessionUpdate:
    kind: str  # channel / transcript / blocked
    state: ChannelState | None = None
    sentences: list[FinalizedSentence] = field(default_factory=list)
    caption: str = ""
    detail: str = ""


UpdateFn = Callable[[SessionUpdate], Awaitable[None]]
ChannelFactory = Callable[[TemporaryKey, Callable[[SessionEvent], None]], object]


class LiveSession:
    """Everything one recording session owns, from mic-open to mic-close.

    Inputs (captured chunks, channel transitions, recognition results) are
    posted as events and handled one at a time by a single loop, so the
    dispatcher and assembler never see concurrent mutation.
    """

    def __init__(
        self,
        meeting_id: str,
        key_provider: KeySource,
        store: SentenceStore,
        settings: GatewaySettings | None = None,
        recognition: RecognitionSettings | None = None,
        channel_factory: Optional[ChannelFactory] = None,
        on_update: Optional[UpdateFn] = None,
    ) -> None:
        self.meeting_id = meeting_id
        self.settings = settings or GatewaySettings()
        self.recognition = recognition or RecognitionSettings()
        self._key_provider = key_provider
        self._store = store
        self._channel_factory = channel_factory or self._default_channel
        self._on_update = on_update

        self.assembler = TranscriptAssembler(
            meeting_id, fold_tail_speaker_change=self.settings.fold_tail_speaker_change
        )
        self.dispatcher = ChunkDispatcher(
            interval=self.settings.dispatch_interval_s,
            warn_depth=self.settings.dispatch_warn_depth,
        )
        self.channel = None
        self.key: TemporaryKey | None = None
        self.listening = False
        self.recording = False
        self.blocked = False

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._loop_task: asyncio.Task | None = None
        self._generation = 0
        self._stopped = False
        self.persisted_count = 0
        self.discarded_count = 0

    def _default_channel(self, key: TemporaryKey, on_event: Callable[[SessionEvent], None]):
        return RecognitionChannel(self.recognition, key, on_event)

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def start(self, connect: bool = True) -> None:
        try:
            history = await self._store.list_by_meeting(self.meeting_id)
        except PersistenceError:
            logger.warning("No history for %s; starting with an empty transcript", self.meeting_id, exc_info=True)
            history = []
        self.assembler.load_history(history)
        self.recording = True
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Session started: %s (%d sentences of history)", self.meeting_id, len(history))
        if connect:
            await self.connect()

    async def connect(self) -> bool:
        """Provision a fresh key and open a channel. No-op while a channel exists."""
        if self._stopped or self.channel is not None:
            return False
        try:
            self.key = await self._key_provider.fetch()
        except ProvisioningError as exc:
            self.blocked = True
            logger.warning("Session %s blocked: %s", self.meeting_id, exc)
            await self._notify(SessionUpdate(kind="blocked", detail=str(exc)))
            return False
        self.blocked = False

        self._generation += 1
        generation = self._generation

        def on_event(event: SessionEvent) -> None:
            if generation == self._generation:
                self.post(event)

        self.channel = self._channel_factory(self.key, on_event)
        self.dispatcher.set_channel_state(ChannelState.connecting)
        await self._notify(SessionUpdate(kind="channel", state=ChannelState.connecting))
        await self.channel.open()
        return True

    reconnect = connect

    def post(self, event: SessionEvent) -> None:
        self._events.put_nowait(event)

    def capture(self, chunk: bytes) -> None:
        if not self.recording:
            return
        self.post(ChunkCaptured(chunk))

    async def drain(self) -> None:
        """Wait until every event posted so far has been handled."""
        if self._loop_task is not None:
            await self._events.join()

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle(event)
            except Exception:
                logger.exception("Session %s failed to handle %s", self.meeting_id, type(event).__name__)
            finally:
                self._events.task_done()

    async def handle(self, event: SessionEvent) -> None:
        if isinstance(event, ChunkCaptured):
            self.dispatcher.enqueue(event.chunk)

        elif isinstance(event, ChannelOpened):
            if self.channel is None:
                return
            self.listening = True
            self.dispatcher.attach(self.channel.send)
            self.dispatcher.set_channel_state(ChannelState.open)
            await self._notify(SessionUpdate(kind="channel", state=ChannelState.open))

        elif isinstance(event, ChannelClosed):
            self.listening = False
            self.key = None
            self.channel = None
            self.dispatcher.set_channel_state(ChannelState.closed)
            self.dispatcher.attach(None)
            logger.info(
                "Channel closed for %s (%s); %d chunks held",
                self.meeting_id,
                event.reason,
                self.dispatcher.pending,
            )
            await self._notify(
                SessionUpdate(kind="channel", state=ChannelState.closed, detail=event.reason)
            )

        elif isinstance(event, TranscriptReceived):
            if self.assembler.add_batch(event.batch):
                await self._notify(
                    SessionUpdate(
                        kind="transcript",
                        sentences=self.assembler.display(),
                        caption=self.assembler.caption,
                    )
                )

    async def stop(self) -> list[FinalizedSentence]:
        """Stop capture, persist the finalized sentences, then release the channel."""
        if self._stopped:
            return self.assembler.sentences
        self._stopped = True
        self.recording = False

        await self.drain()
        if self.settings.stop_drain_timeout_s > 0 and self.listening:
            await self.dispatcher.drain(self.settings.stop_drain_timeout_s)
        self.discarded_count = await self.dispatcher.stop()
        await self.drain()
        if self.discarded_count:
            logger.warning(
                "Session %s stopped with %d chunks (~%.1fs of audio) never sent",
                self.meeting_id,
                self.discarded_count,
                self.discarded_count * self.settings.capture_timeslice_ms / 1000,
            )

        sentences = self.assembler.finalize()
        self.persisted_count = len(await self._flush(sentences))

        channel, self.channel = self.channel, None
        self._generation += 1
        if channel is not None:
            await channel.close()
        self.listening = False
        self.key = None

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        logger.info("Session stopped: %s", self.meeting_id)
        return sentences

    async def _flush(self, sentences: list[FinalizedSentence]) -> list[FinalizedSentence]:
        stored: list[FinalizedSentence] = []
        for sentence in sentences:
            try:
                await self._store.store(sentence)
            except Exception:
                logger.warning("Failed to persist sentence for %s", self.meeting_id, exc_info=True)
                continue
            stored.append(sentence)
        if len(stored) < len(sentences):
            logger.warning(
                "Persisted %d of %d sentences for %s", len(stored), len(sentences), self.meeting_id
            )
        return stored

    async def _notify(self, update: SessionUpdate) -> None:
        if self._on_update is None:
            return
        try:
            await self._on_update(update)
        except Exception:
            logger.warning("Update listener failed for %s", self.meeting_id, exc_info=True)


class SessionManager:
    def __init__(
        self,
        max_sessions: int = 10,
        session_factory: Callable[..., LiveSession] = LiveSession,
    ) -> None:
        self._max = max_sessions
        self._factory = session_factory
        self._sessions: dict[str, LiveSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, meeting_id: str, **kwargs) -> LiveSession:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if meeting_id in self._sessions:
                raise RuntimeError(f"Session {meeting_id} already exists")
            session = self._factory(meeting_id=meeting_id, **kwargs)
            self._sessions[meeting_id] = session
            logger.info("Session created: %s (%d active)", meeting_id, len(self._sessions))
            return session

    async def remove(self, meeting_id: str) -> None:
        async with self._lock:
            self._sessions.pop(meeting_id, None)
            logger.info("Session removed: %s (%d active)", meeting_id, len(self._sessions))

    def get(self, meeting_id: str) -> LiveSession | None:
        return self._sessions.get(meeting_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
