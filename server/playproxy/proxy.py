from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import httpx

from .coordinator import Resolution, ResolutionCoordinator
from .store import ResolvedStream


logger = logging.getLogger(__name__)

PASSTHROUGH_STATUSES = {200, 206}
EXPIRED_STATUSES = {403, 404}
MAX_ATTEMPTS = 2


class StreamFailed(RuntimeError):
    """Raised when the upstream byte stream cannot be served."""

    def __init__(
        self, message: str, *, status_code: int | None = None, resolving: bool = False
    ):
        super().__init__(message)
        self.status_code = status_code
        self.resolving = resolving


@dataclass
class UpstreamStream:
    media_id: str
    response: httpx.Response
    attempts: int

    @property
    def status_code(self) -> int:
        return self.response.status_code


class StreamProxy:
    def __init__(
        self,
        coordinator: ResolutionCoordinator,
        client: httpx.AsyncClient,
        *,
        content_type: str = "audio/mpeg",
        chunk_size: int = 64 * 1024,
        wait_attempts: int = 20,
        wait_interval_s: float = 0.5,
    ) -> None:
        self._coordinator = coordinator
        self._client = client
        self._content_type = content_type
        self._chunk_size = chunk_size
        self._wait_attempts = wait_attempts
        self._wait_interval_s = wait_interval_s

    async def open(self, media_id: str, range_header: Optional[str] = None) -> UpstreamStream:
        """Resolve ``media_id`` and open the upstream response.

        An upstream 403/404 is taken to mean the cached URL expired: the URL is
        re-resolved once and the request retried. Anything else that is not a
        200/206 raises ``StreamFailed``.
        """
        stream = await self._usable(media_id, await self._coordinator.ensure_resolved(media_id))
        for attempt in range(1, MAX_ATTEMPTS + 1):
            response = await self._request(media_id, stream.url, range_header)
            status = response.status_code
            if status in PASSTHROUGH_STATUSES:
                return UpstreamStream(media_id=media_id, response=response, attempts=attempt)
            await response.aclose()
            if status in EXPIRED_STATUSES and attempt < MAX_ATTEMPTS:
                logger.warning(
                    "Upstream %s for %s (attempt %s/%s); re-resolving",
                    status,
                    media_id,
                    attempt,
                    MAX_ATTEMPTS,
                )
                stream = await self._usable(
                    media_id, await self._coordinator.refresh(media_id, stream.url)
                )
                continue
            raise StreamFailed(
                f"Upstream returned HTTP {status} for {media_id} (attempt {attempt})",
                status_code=status,
            )
        raise StreamFailed(f"Upstream retries exhausted for {media_id}")

    def response_headers(self, upstream: UpstreamStream) -> Dict[str, str]:
        headers = {"Content-Type": self._content_type, "Accept-Ranges": "bytes"}
        content_length = upstream.response.headers.get("content-length")
        if content_length is not None:
            headers["Content-Length"] = content_length
        content_range = upstream.response.headers.get("content-range")
        if content_range is not None:
            headers["Content-Range"] = content_range
        return headers

    async def iter_body(self, upstream: UpstreamStream) -> AsyncIterator[bytes]:
        sent = 0
        try:
            async for chunk in upstream.response.aiter_bytes(self._chunk_size):
                sent += len(chunk)
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as err:
            # Status line is already out; ending the body is all that is left.
            logger.warning(
                "Upstream read error for %s after %s bytes: %s", upstream.media_id, sent, err
            )
            return
        finally:
            # Also runs when the client disconnects and the generator is closed.
            await upstream.response.aclose()
            logger.info("Stream closed for %s after %s bytes", upstream.media_id, sent)

    async def _usable(self, media_id: str, resolution: Resolution) -> ResolvedStream:
        if resolution.ready:
            return resolution.stream
        stream = await self._coordinator.wait_for_stream(
            media_id, attempts=self._wait_attempts, interval_s=self._wait_interval_s
        )
        if stream is None:
            raise StreamFailed(f"{media_id} is still being resolved", resolving=True)
        return stream

    async def _request(
        self, media_id: str, url: str, range_header: Optional[str]
    ) -> httpx.Response:
        headers = {"Accept-Encoding": "identity"}
        if range_header:
            headers["Range"] = range_header
        request = self._client.build_request("GET", url, headers=headers)
        try:
            return await self._client.send(request, stream=True)
        except httpx.HTTPError as err:
            raise StreamFailed(f"Upstream request failed for {media_id}: {err}") from err
