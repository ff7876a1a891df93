"""HTTP client for the object storage service holding proofs and photos."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx

from slotbook.core.config import settings
from slotbook.core.errors import UpstreamFailure

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=30.0, pool=5.0)


@dataclass(frozen=True)
class StoredObject:
    url: str
    ref: str


class ObjectStorage(Protocol):
    def upload(self, content: bytes, folder: str, content_type: str) -> StoredObject:
        ...

    def delete(self, ref: str) -> None:
        ...


class HttpObjectStorage:
    """Upload and delete opaque objects through the storage REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        mock_mode: bool | None = None,
    ) -> None:
        self.base_url = (base_url or settings.storage_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.storage_api_key
        self.mock_mode = settings.storage_mock_mode if mock_mode is None else mock_mode

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise UpstreamFailure("STORAGE_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.api_key}"}

    def upload(self, content: bytes, folder: str, content_type: str) -> StoredObject:
        if self.mock_mode:
            ref = f"{folder}/mocked-{uuid.uuid4()}"
            logger.debug("Mocking storage upload", extra={"ref": ref, "size": len(content)})
            return StoredObject(url=f"{self.base_url}/objects/{ref}", ref=ref)

        try:
            with httpx.Client(timeout=_TIMEOUT) as client:
                response = client.post(
                    f"{self.base_url}/objects",
                    headers=self._headers(),
                    data={"folder": folder},
                    files={"file": ("upload", content, content_type)},
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamFailure("Object upload failed", folder=folder) from exc

        url = data.get("secure_url") or data.get("url")
        ref = data.get("public_id") or data.get("ref")
        if not url or not ref:
            raise UpstreamFailure("Storage response did not include url and ref", folder=folder)
        return StoredObject(url=url, ref=ref)

    def delete(self, ref: str) -> None:
        if self.mock_mode:
            logger.debug("Mocking storage delete", extra={"ref": ref})
            return

        try:
            with httpx.Client(timeout=_TIMEOUT) as client:
                response = client.delete(
                    f"{self.base_url}/objects/{quote(ref, safe='')}",
                    headers=self._headers(),
                )
            if response.status_code != httpx.codes.NOT_FOUND:
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamFailure("Object delete failed", ref=ref) from exc


__all__ = ["HttpObjectStorage", "ObjectStorage", "StoredObject"]
