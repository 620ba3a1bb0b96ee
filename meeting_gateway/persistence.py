from __future__ import annotations

import logging
from collections import defaultdict
from typing import Protocol, runtime_checkable

import httpx
from pydantic import TypeAdapter, ValidationError

from common.config import PersistenceSettings
from common.schemas import FinalizedSentence
from meeting_gateway.exceptions import PersistenceError

logger = logging.getLogger(__name__)

_sentence_rows = TypeAdapter(list[FinalizedSentence])


@runtime_checkable
class SentenceStore(Protocol):
    async def store(self, sentence: FinalizedSentence) -> None: ...

    async def list_by_meeting(self, meeting_id: str) -> list[FinalizedSentence]: ...


class InMemorySentenceStore:
    """Process-local store, keyed by meeting id in insertion order."""

    def __init__(self) -> None:
        self._sentences: dict[str, list[FinalizedSentence]] = defaultdict(list)

    async def store(self, sentence: FinalizedSentence) -> None:
        self._sentences[sentence.meeting_id].append(sentence)

    async def list_by_meeting(self, meeting_id: str) -> list[FinalizedSentence]:
        return list(self._sentences.get(meeting_id, []))


class HttpSentenceStore:
    """Stores sentences through a remote transcript API."""

    def __init__(
        self,
        settings: PersistenceSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._base = settings.url.rstrip("/")

    def _url(self, meeting_id: str) -> str:
        return f"{self._base}/meetings/{meeting_id}/sentences"

    async def store(self, sentence: FinalizedSentence) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout_s, transport=self._transport) as client:
                resp = await client.post(self._url(sentence.meeting_id), json=sentence.model_dump())
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Could not store sentence: {exc}") from exc

    async def list_by_meeting(self, meeting_id: str) -> list[FinalizedSentence]:
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout_s, transport=self._transport) as client:
                resp = await client.get(self._url(meeting_id))
                resp.raise_for_status()
                return _sentence_rows.validate_python(resp.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise PersistenceError(f"Could not load sentences for {meeting_id}: {exc}") from exc


def get_sentence_store(settings: PersistenceSettings | None = None) -> SentenceStore:
    settings = settings or PersistenceSettings()
    if settings.url:
        logger.info("Persisting sentences to %s", settings.url)
        return HttpSentenceStore(settings)
    return InMemorySentenceStore()
