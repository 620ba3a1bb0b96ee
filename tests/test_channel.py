import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.asyncio.server import serve

from common.config import RecognitionSettings
from common.schemas import ChannelState
from meeting_gateway.channel import RecognitionChannel, build_listen_url
from meeting_gateway.credentials import TemporaryKey
from meeting_gateway.events import ChannelClosed, ChannelOpened, TranscriptReceived

RESULTS = {
    "type": "Results",
    "is_final": True,
    "channel": {
        "alternatives": [
            {"words": [{"word": "hi", "punctuated_word": "Hi.", "start": 0.0, "end": 0.3, "confidence": 0.9, "speaker": 1}]}
        ]
    },
}


class TestListenUrl:
    def test_query_parameters(self):
        url = build_listen_url(RecognitionSettings(listen_url="wss://example.test/v1/listen"))
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "example.test"
        assert query == {
            "model": ["nova-2"],
            "diarize": ["true"],
            "interim_results": ["true"],
            "smart_format": ["true"],
        }

    def test_language_included_when_set(self):
        url = build_listen_url(RecognitionSettings(language="en-US", diarize=False))
        query = parse_qs(urlparse(url).query)
        assert query["language"] == ["en-US"]
        assert query["diarize"] == ["false"]


async def wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestRecognitionChannel:
    @pytest.mark.asyncio
    async def test_round_trip_against_local_server(self):
        received = []
        headers = {}

        async def handler(ws):
            headers["auth"] = ws.request.headers.get("Authorization")
            headers["path"] = ws.request.path
            await ws.send(json.dumps({"type": "Metadata", "request_id": "r1"}))
            await ws.send("not json")
            async for message in ws:
                received.append(message)
                if isinstance(message, bytes):
                    await ws.send(json.dumps(RESULTS))
                elif json.loads(message).get("type") == "CloseStream":
                    break

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            settings = RecognitionSettings(listen_url=f"ws://127.0.0.1:{port}/v1/listen")
            events = []
            channel = RecognitionChannel(settings, TemporaryKey(key="secret"), events.append)

            await channel.open()
            assert channel.state is ChannelState.open
            assert isinstance(events[0], ChannelOpened)

            await channel.send(b"\x00\x01")
            await wait_until(lambda: any(isinstance(e, TranscriptReceived) for e in events))
            await channel.close()

        transcripts = [e for e in events if isinstance(e, TranscriptReceived)]
        assert len(transcripts) == 1
        assert transcripts[0].batch.words[0].punctuated_word == "Hi."
        assert transcripts[0].batch.words[0].speaker == 1
        assert isinstance(events[-1], ChannelClosed)
        assert sum(isinstance(e, ChannelClosed) for e in events) == 1
        assert channel.state is ChannelState.closed
        assert headers["auth"] == "Token secret"
        assert headers["path"].startswith("/v1/listen?model=nova-2")
        assert received[0] == b"\x00\x01"
        assert json.loads(received[-1]) == {"type": "CloseStream"}

    @pytest.mark.asyncio
    async def test_server_disconnect_reports_closed(self):
        async def handler(ws):
            await ws.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            settings = RecognitionSettings(listen_url=f"ws://127.0.0.1:{port}/v1/listen")
            events = []
            channel = RecognitionChannel(settings, TemporaryKey(key="k"), events.append)
            await channel.open()
            await wait_until(lambda: any(isinstance(e, ChannelClosed) for e in events))

        assert channel.state is ChannelState.closed
        with pytest.raises(ConnectionError):
            await channel.send(b"late")

    @pytest.mark.asyncio
    async def test_connect_failure_reports_closed(self):
        async with serve(lambda ws: ws.close(), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
        # Server is gone; nothing listens on the port any more
        settings = RecognitionSettings(listen_url=f"ws://127.0.0.1:{port}/v1/listen")
        events = []
        channel = RecognitionChannel(settings, TemporaryKey(key="k"), events.append)
        await channel.open()
        assert channel.state is ChannelState.closed
        assert len(events) == 1
        assert isinstance(events[0], ChannelClosed)
        assert events[0].reason.startswith("connect failed")
