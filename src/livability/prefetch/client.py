"""
Batch tile clients used by the prefetch orchestrator.

Every call carries its own timeout, independent of the caller's cancel token;
whichever fires first aborts the call:
- timeout or HTTP/transport error -> `FetchFailed` (user-visible)
- cancellation                    -> `FetchCancelled` (silently discarded)
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Protocol, TypeVar

import httpx
import msgpack
from pydantic import ValidationError

from livability.domain.models import BatchTileRequest, BatchTileResponse
from livability.heatmap.batch import BatchTileService
from livability.ingestion.errors import POIFetchError
from livability.prefetch.cancel import CancelToken

MSGPACK_MEDIA_TYPE = "application/msgpack"

T = TypeVar("T")


class FetchFailed(RuntimeError):
    """A batch request failed (network, HTTP status, bad payload or timeout)."""


class FetchCancelled(Exception):
    """A batch request was cancelled by its token."""


class BatchClient(Protocol):
    async def fetch(self, request: BatchTileRequest, cancel: CancelToken) -> BatchTileResponse: ...


async def run_cancellable(aw: Awaitable[T], cancel: CancelToken, timeout_seconds: float) -> T:
    """Await `aw` unless `cancel` fires or `timeout_seconds` elapse first."""
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if cancel.cancelled:
            raise FetchCancelled(cancel.reason or "cancelled")
        if task in done:
            return task.result()
        raise FetchFailed(f"Batch request timed out after {timeout_seconds:g}s")
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()


def decode_response(content: bytes, content_type: str) -> BatchTileResponse:
    if content_type.split(";")[0].strip() == MSGPACK_MEDIA_TYPE:
        data: Any = msgpack.unpackb(content, raw=False)
    else:
        data = json.loads(content)
    return BatchTileResponse.model_validate(data)


class HttpBatchClient:
    """POSTs batch requests to the batch tile endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30,
        binary: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = url
        self._timeout_seconds = float(timeout_seconds)
        self._binary = binary
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def _post(self, request: BatchTileRequest) -> BatchTileResponse:
        headers = {"Accept": MSGPACK_MEDIA_TYPE if self._binary else "application/json"}
        try:
            resp = await self._client.post(
                self._url, json=request.model_dump(mode="json"), headers=headers, timeout=None
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchFailed(f"Batch request failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise FetchFailed(f"Batch request failed: {exc}") from exc
        try:
            return decode_response(resp.content, resp.headers.get("content-type", ""))
        except (ValueError, ValidationError, msgpack.UnpackException) as exc:
            raise FetchFailed(f"Batch response could not be decoded: {exc}") from exc

    async def fetch(self, request: BatchTileRequest, cancel: CancelToken) -> BatchTileResponse:
        return await run_cancellable(self._post(request), cancel, self._timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LocalBatchClient:
    """Calls an in-process `BatchTileService` on a worker thread."""

    def __init__(self, service: BatchTileService, *, timeout_seconds: float = 30):
        self._service = service
        self._timeout_seconds = float(timeout_seconds)

    async def _run(self, request: BatchTileRequest) -> BatchTileResponse:
        try:
            return await asyncio.to_thread(self._service.run, request)
        except (ValueError, POIFetchError) as exc:
            raise FetchFailed(str(exc)) from exc

    async def fetch(self, request: BatchTileRequest, cancel: CancelToken) -> BatchTileResponse:
        return await run_cancellable(self._run(request), cancel, self._timeout_seconds)
