from __future__ import annotations

import json
import logging
from functools import partial

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from common.config import GatewaySettings, PersistenceSettings, RecognitionSettings
from common.schemas import (
    BlockedMessage,
    ChannelMessage,
    ClientMessageType,
    ErrorMessage,
    FinalizedSentence,
    HistoryMessage,
    StartMessage,
    StoppedMessage,
    TranscriptMessage,
)
from meeting_gateway.credentials import get_key_provider
from meeting_gateway.exceptions import PersistenceError
from meeting_gateway.persistence import get_sentence_store
from meeting_gateway.session import LiveSession, SessionManager, SessionUpdate

logger = logging.getLogger(__name__)

settings = GatewaySettings()
recognition = RecognitionSettings()
store = get_sentence_store(PersistenceSettings())
app = FastAPI(title="Live Meeting Transcriber Gateway")
manager = SessionManager(
    max_sessions=settings.max_sessions,
    session_factory=partial(
        LiveSession,
        key_provider=get_key_provider(recognition),
        store=store,
        settings=settings,
        recognition=recognition,
    ),
)


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.get("/meetings/{meeting_id}/sentences", response_model=list[FinalizedSentence])
async def meeting_sentences(meeting_id: str):
    try:
        return await store.list_by_meeting(meeting_id)
    except PersistenceError:
        logger.exception("Could not load sentences for %s", meeting_id)
        raise HTTPException(status_code=502, detail="Transcript store unavailable")


@app.websocket("/audio")
async def audio_endpoint(ws: WebSocket):
    await ws.accept()
    meeting_id: str | None = None
    session: LiveSession | None = None
    client_gone = False
    try:
        # Expect a start message first (text frame)
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(meeting_id="", detail="Expected start message").model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        meeting_id = start.meeting_id
        session = await manager.create(
            meeting_id,
            on_update=partial(_forward_update, ws, meeting_id),
        )
        await session.start(connect=False)
        await ws.send_text(
            HistoryMessage(meeting_id=meeting_id, sentences=session.assembler.history).model_dump_json()
        )
        await session.connect()

        # Main loop: audio chunks and control messages from the capture client
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                client_gone = True
                break

            if message.get("bytes") is not None:
                session.capture(message["bytes"])
            elif message.get("text"):
                try:
                    data = json.loads(message["text"])
                except ValueError:
                    logger.warning("Ignoring malformed control message for %s", meeting_id)
                    continue
                kind = data.get("type") if isinstance(data, dict) else None
                if kind == ClientMessageType.stop:
                    break
                if kind == ClientMessageType.reconnect:
                    await session.reconnect()

    except WebSocketDisconnect:
        client_gone = True
        logger.info("Client disconnected: %s", meeting_id)
    except RuntimeError as exc:
        logger.warning("Session error: %s", exc)
        await ws.send_text(ErrorMessage(meeting_id=meeting_id or "", detail=str(exc)).model_dump_json())
    except Exception:
        logger.exception("Unexpected error in audio endpoint")
    finally:
        if session is not None:
            sentences = await session.stop()
            await manager.remove(session.meeting_id)
            if not client_gone:
                try:
                    await ws.send_text(
                        StoppedMessage(
                            meeting_id=session.meeting_id,
                            sentences=sentences,
                            persisted=session.persisted_count,
                            discarded=session.discarded_count,
                        ).model_dump_json()
                    )
                    await ws.close()
                except Exception:
                    logger.info("Client left before stop acknowledgement: %s", meeting_id)


async def _forward_update(ws: WebSocket, meeting_id: str, update: SessionUpdate) -> None:
    """Relay a session update to the capture client."""
    if update.kind == "transcript":
        message = TranscriptMessage(meeting_id=meeting_id, sentences=update.sentences, caption=update.caption)
    elif update.kind == "blocked":
        message = BlockedMessage(meeting_id=meeting_id, detail=update.detail)
    else:
        message = ChannelMessage(meeting_id=meeting_id, state=update.state)
    await ws.send_text(message.model_dump_json())


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)
