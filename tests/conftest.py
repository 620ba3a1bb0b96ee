import pytest

from common.schemas import TranscriptBatch, WordEvent
from meeting_gateway.credentials import TemporaryKey
from meeting_gateway.events import ChannelClosed, ChannelOpened, TranscriptReceived
from meeting_gateway.exceptions import ProvisioningError


class FakeKeyProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.issued = 0

    async def fetch(self):
        if self.fail:
            raise ProvisioningError("No api key returned")
        self.issued += 1
        return TemporaryKey(key=f"key-{self.issued}")


class FakeChannel:
    """Stands in for the recognizer socket; optionally answers each chunk with a final word."""

    def __init__(self, key, on_event, echo=False, opens=True):
        self.key = key
        self.on_event = on_event
        self.echo = echo
        self.opens = opens
        self.sent = []
        self.closed = False

    async def open(self):
        if self.opens:
            self.on_event(ChannelOpened())
        else:
            self.on_event(ChannelClosed("connect failed"))

    async def send(self, chunk):
        self.sent.append(chunk)
        if self.echo:
            n = len(self.sent)
            word = WordEvent(word=chunk.decode(), start=(n - 1) * 0.2, end=n * 0.2, confidence=0.9, speaker=0)
            self.emit(TranscriptBatch(words=[word], is_final=True))

    async def close(self):
        self.closed = True
        self.on_event(ChannelClosed("closed by gateway"))

    def emit(self, batch):
        self.on_event(TranscriptReceived(batch))

    def drop(self, reason="connection lost"):
        self.on_event(ChannelClosed(reason))


class ChannelFactory:
    def __init__(self, **options):
        self.options = options
        self.channels = []

    def __call__(self, key, on_event):
        channel = FakeChannel(key, on_event, **self.options)
        self.channels.append(channel)
        return channel

    @property
    def last(self):
        return self.channels[-1]


@pytest.fixture
def key_provider():
    return FakeKeyProvider()


@pytest.fixture
def channel_factory():
    return ChannelFactory()
