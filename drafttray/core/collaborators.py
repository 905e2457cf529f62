from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Protocol, Union

import httpx

logger = logging.getLogger(__name__)


class SaveError(RuntimeError):
    """Save or fetch rejected by the record store; the message is operator-facing."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        detail = message.strip() if message and message.strip() else "Save failed"
        super().__init__(detail)
        self.status_code = status_code


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class SaveCollaborator(Protocol):
    def __call__(
        self,
        existing_id: Optional[str],
        payload: Dict[str, Any],
        file: Optional[UploadedFile],
        credential: Optional[str],
    ) -> Union[Awaitable[Dict[str, Any]], Dict[str, Any]]:
        ...


class FetchCollaborator(Protocol):
    def __call__(
        self, entity_id: str, credential: Optional[str]
    ) -> Union[Awaitable[Dict[str, Any]], Dict[str, Any]]:
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = response.text.strip()
    return text[:200] if text else f"Record store returned HTTP {response.status_code}"


def _unwrap_entity(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        body = body["data"]
    if not isinstance(body, dict):
        raise SaveError("Record store returned an unexpected response body")
    entity = dict(body)
    if "id" not in entity and entity.get("_id") is not None:
        entity["id"] = str(entity["_id"])
    return entity


class HttpRecordClient:
    """REST record store for one entity kind: POST /<kind> creates, PUT
    /<kind>/<id> updates, GET /<kind>/<id> fetches. Credentials are passed
    through as a bearer token."""

    def __init__(
        self,
        base_url: str,
        entity_kind: str,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.entity_kind = entity_kind
        self.timeout_s = timeout_s
        self._transport = transport

    def _url(self, entity_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{self.entity_kind}"
        return f"{url}/{entity_id}" if entity_id else url

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": "DraftTray-Records/1.0"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    async def save(
        self,
        existing_id: Optional[str],
        payload: Dict[str, Any],
        file: Optional[UploadedFile] = None,
        credential: Optional[str] = None,
    ) -> Dict[str, Any]:
        method = "PUT" if existing_id else "POST"
        url = self._url(existing_id)
        request_kwargs: Dict[str, Any] = {"headers": self._headers(credential)}
        if file is not None:
            request_kwargs["data"] = {"payload": json.dumps(payload, ensure_ascii=False)}
            request_kwargs["files"] = {"file": (file.filename, file.content, file.content_type)}
        else:
            request_kwargs["json"] = payload

        try:
            async with self._client() as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.RequestError as exc:
            logger.warning("Record save failed (%s %s): %s", method, url, exc)
            raise SaveError(f"Could not reach record store: {exc}") from exc

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.warning("Record save returned HTTP %s (%s %s): %s", response.status_code, method, url, message)
            raise SaveError(message, status_code=response.status_code)

        logger.info("Record save succeeded (%s %s code=%s)", method, url, response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise SaveError("Record store returned invalid JSON") from exc
        return _unwrap_entity(body)

    async def fetch(self, entity_id: str, credential: Optional[str] = None) -> Dict[str, Any]:
        url = self._url(entity_id)
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers(credential))
        except httpx.RequestError as exc:
            logger.warning("Record fetch failed (GET %s): %s", url, exc)
            raise SaveError(f"Could not reach record store: {exc}") from exc

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.warning("Record fetch returned HTTP %s (GET %s): %s", response.status_code, url, message)
            raise SaveError(message, status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise SaveError("Record store returned invalid JSON") from exc
        return _unwrap_entity(body)
