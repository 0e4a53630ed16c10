from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..coordinator import CACHED, RESOLVING, ResolutionCoordinator
from ..proxy import StreamFailed, StreamProxy
from ..resolver import ResolutionFailed, SearchFailed
from ..store import ResolutionCache, StoreUnavailable


router = APIRouter(prefix="/api", tags=["playback"])
logger = logging.getLogger(__name__)


class SongUrlRequest(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None


def _cache(request: Request) -> ResolutionCache:
    return request.app.state.cache


def _coordinator(request: Request) -> ResolutionCoordinator:
    return request.app.state.coordinator


def _proxy(request: Request) -> StreamProxy:
    return request.app.state.proxy


def _resolver(request: Request):
    return request.app.state.resolver


def _error(
    status: int, code: str, message: str, headers: Optional[Dict[str, str]] = None
) -> HTTPException:
    return HTTPException(
        status_code=status,
        detail={"error": {"code": code, "message": message}},
        headers=headers,
    )


async def lookup_media_id(cache: ResolutionCache, resolver, title: str, artist: str) -> str:
    """Cached search for ``title``/``artist``; raises a 404 when nothing matches."""
    try:
        media_id = await cache.get_media_id(title, artist)
        if media_id:
            logger.info("Search cache HIT: %s / %s -> %s", title, artist, media_id)
            return media_id
        candidates = await resolver.search(f"{title} {artist} audio")
        if not candidates:
            raise _error(404, "NOT_FOUND", "No media found for that title and artist.")
        media_id = candidates[0]
        await cache.set_media_id(title, artist, media_id)
        logger.info("Search cache STORE: %s / %s -> %s", title, artist, media_id)
        return media_id
    except SearchFailed as err:
        raise _error(500, "SEARCH_FAILED", str(err)) from err
    except StoreUnavailable as err:
        raise _error(500, "STORE_UNAVAILABLE", str(err)) from err


@router.post("/song-url")
async def song_url(
    payload: SongUrlRequest,
    request: Request,
    cache: ResolutionCache = Depends(_cache),
    resolver=Depends(_resolver),
) -> Dict[str, Any]:
    title = (payload.title or "").strip()
    artist = (payload.artist or "").strip()
    if not title or not artist:
        raise _error(400, "MISSING_INFO", "Both title and artist are required.")
    media_id = await lookup_media_id(cache, resolver, title, artist)
    return {
        "url": str(request.url_for("stream_media", media_id=media_id)),
        "mediaId": media_id,
        "title": title,
        "artist": artist,
    }


@router.post("/prefetch/{media_id}")
async def prefetch(
    media_id: str,
    cache: ResolutionCache = Depends(_cache),
    coordinator: ResolutionCoordinator = Depends(_coordinator),
) -> JSONResponse:
    media_id = media_id.strip()
    if not media_id:
        raise _error(400, "MISSING_MEDIA_ID", "A media id is required.")
    try:
        resolution = await coordinator.prefetch(media_id)
        stream = resolution.stream
        if stream is None and resolution.status == CACHED:
            stream = await cache.get_stream(media_id)
    except ResolutionFailed as err:
        raise _error(500, "RESOLUTION_FAILED", str(err)) from err
    except StoreUnavailable as err:
        raise _error(500, "STORE_UNAVAILABLE", str(err)) from err
    if resolution.status == RESOLVING:
        return JSONResponse(
            status_code=202, content={"status": resolution.status, "mediaId": media_id}
        )
    content: Dict[str, Any] = {"status": resolution.status, "mediaId": media_id}
    if stream is not None:
        content.update(
            {
                "title": stream.title,
                "duration": stream.duration,
                "thumbnail": stream.thumbnail,
                "videoUrl": stream.webpage_url,
            }
        )
    return JSONResponse(status_code=200, content=content)


@router.get("/stream/{media_id}", name="stream_media")
async def stream_media(
    media_id: str,
    request: Request,
    proxy: StreamProxy = Depends(_proxy),
) -> StreamingResponse:
    try:
        upstream = await proxy.open(media_id, request.headers.get("range"))
    except StreamFailed as err:
        if err.resolving:
            raise _error(503, "RESOLVING", str(err), headers={"Retry-After": "1"}) from err
        raise _error(500, "STREAM_FAILED", str(err)) from err
    except ResolutionFailed as err:
        raise _error(500, "RESOLUTION_FAILED", str(err)) from err
    except StoreUnavailable as err:
        raise _error(500, "STORE_UNAVAILABLE", str(err)) from err
    return StreamingResponse(
        proxy.iter_body(upstream),
        status_code=upstream.status_code,
        headers=proxy.response_headers(upstream),
    )
