from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from common.config import RecognitionSettings
from meeting_gateway.exceptions import ProvisioningError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporaryKey:
    key: str
    key_id: str | None = None
    expiration_date: str | None = None


@runtime_checkable
class KeySource(Protocol):
    async def fetch(self) -> TemporaryKey: ...


class KeyProvider:
    """Fetches a short-lived recognizer key from the key endpoint.

    Keys are never cached: every call returns a fresh one, so a closed channel
    can always be reopened with new credentials.
    """

    def __init__(
        self,
        settings: RecognitionSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or RecognitionSettings()
        self._transport = transport

    async def fetch(self) -> TemporaryKey:
        url = self.settings.key_url
        if not url:
            raise ProvisioningError("No key endpoint configured")
        try:
            async with httpx.AsyncClient(timeout=self.settings.key_timeout_s, transport=self._transport) as client:
                resp = await client.get(url, headers={"Cache-Control": "no-store"})
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProvisioningError(f"Key request failed: {exc}") from exc

        if not isinstance(data, dict) or not data.get("key"):
            raise ProvisioningError("No api key returned")
        logger.info("Obtained temporary recognizer key %s", data.get("api_key_id", "<unnamed>"))
        return TemporaryKey(
            key=data["key"],
            key_id=data.get("api_key_id"),
            expiration_date=data.get("expiration_date"),
        )


class StaticKeyProvider:
    """Serves a fixed key, for deployments with a long-lived recognizer key."""

    def __init__(self, key: str) -> None:
        self._key = key

    async def fetch(self) -> TemporaryKey:
        if not self._key:
            raise ProvisioningError("No api key configured")
        return TemporaryKey(key=self._key)


def get_key_provider(settings: RecognitionSettings | None = None) -> KeySource:
    settings = settings or RecognitionSettings()
    if settings.key_url:
        return KeyProvider(settings)
    return StaticKeyProvider(settings.api_key)
