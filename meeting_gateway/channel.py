from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable
from urllib.parse import urlencode

import websockets

from common.config import RecognitionSettings
from common.schemas import ChannelState, TranscriptBatch
from meeting_gateway.credentials import TemporaryKey
from meeting_gateway.events import (
    ChannelClosed,
    ChannelOpened,
    SessionEvent,
    TranscriptReceived,
)

logger = logging.getLogger(__name__)

CLOSE_STREAM = json.dumps({"type": "CloseStream"})


def build_listen_url(settings: RecognitionSettings) -> str:
    params: dict[str, str] = {
        "model": settings.model,
        "diarize": str(settings.diarize).lower(),
        "interim_results": str(settings.interim_results).lower(),
        "smart_format": str(settings.smart_format).lower(),
    }
    if settings.language:
        params["language"] = settings.language
    return f"{settings.listen_url}?{urlencode(params)}"


class RecognitionChannel:
    """Live websocket to the streaming recognizer.

    Audio goes out as binary frames; results come back as JSON text frames and
    are reported as session events together with open/close transitions.
    Failures never raise into the caller: they surface as ``ChannelClosed``.
    """

    def __init__(
        self,
        settings: RecognitionSettings,
        key: TemporaryKey,
        on_event: Callable[[SessionEvent], None],
    ) -> None:
        self.settings = settings
        self.key = key
        self._on_event = on_event
        self._ws = None  # websockets client connection
        self._reader: asyncio.Task | None = None
        self._state = ChannelState.closed
        self._close_reported = False

    @property
    def state(self) -> ChannelState:
        return self._state

    async def open(self) -> None:
        self._state = ChannelState.connecting
        url = build_listen_url(self.settings)
        try:
            self._ws = await websockets.connect(
                url,
                additional_headers={"Authorization": f"Token {self.key.key}"},
                ping_interval=self.settings.ping_interval,
            )
        except Exception as exc:
            logger.warning("Recognition channel failed to open: %s", exc)
            self._report_closed(f"connect failed: {exc}")
            return

        self._state = ChannelState.open
        logger.info("Recognition channel open (%s)", self.settings.model)
        self._on_event(ChannelOpened())
        self._reader = asyncio.create_task(self._read())

    async def send(self, chunk: bytes) -> None:
        if self._ws is None or self._state is not ChannelState.open:
            raise ConnectionError("Recognition channel is not open")
        await self._ws.send(chunk)

    async def close(self) -> None:
        ws = self._ws
        if ws is not None:
            try:
                await ws.send(CLOSE_STREAM)
            except websockets.ConnectionClosed:
                pass
            await ws.close()
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._report_closed("closed by gateway")

    async def _read(self) -> None:
        reason = "closed by server"
        try:
            async for message in self._ws:
                if not isinstance(message, str):
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON message from recognizer")
                    continue
                batch = TranscriptBatch.from_payload(payload)
                if batch is None:
                    logger.debug(
                        "Ignoring recognizer message: %s",
                        payload.get("type") if isinstance(payload, dict) else type(payload).__name__,
                    )
                    continue
                self._on_event(TranscriptReceived(batch))
        except websockets.ConnectionClosed as exc:
            reason = f"connection lost: {exc}"
            logger.info("Recognition channel %s", reason)
        except Exception:
            reason = "reader error"
            logger.exception("Recognition channel reader failed")
        finally:
            self._report_closed(reason)

    def _report_closed(self, reason: str) -> None:
        self._state = ChannelState.closed
        if self._close_reported:
            return
        self._close_reported = True
        self._on_event(ChannelClosed(reason))
