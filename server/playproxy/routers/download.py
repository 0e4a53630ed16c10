from __future__ import annotations

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from ..config import Settings
from ..resolver import DownloadFailed
from ..store import ResolutionCache
from .playback import lookup_media_id


router = APIRouter(prefix="/api", tags=["download"])
logger = logging.getLogger(__name__)

_SONG_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class DownloadRequest(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None
    songId: Optional[str] = None


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _cache(request: Request) -> ResolutionCache:
    return request.app.state.cache


def _resolver(request: Request):
    return request.app.state.resolver


def _error(status: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status, detail={"error": {"code": code, "message": message}})


def _cleanup(work_dir: Path, song_id: str) -> None:
    shutil.rmtree(work_dir, ignore_errors=True)
    logger.info("Download sent and cleaned: %s", song_id)


@router.post("/download")
async def download(
    payload: DownloadRequest,
    settings: Settings = Depends(_settings),
    cache: ResolutionCache = Depends(_cache),
    resolver=Depends(_resolver),
) -> FileResponse:
    title = (payload.title or "").strip()
    artist = (payload.artist or "").strip()
    song_id = (payload.songId or "").strip()
    if not title or not artist or not song_id:
        raise _error(400, "MISSING_INFO", "title, artist and songId are required.")
    if not _SONG_ID_RE.match(song_id):
        raise _error(400, "INVALID_SONG_ID", "songId may only contain letters, digits, '-' and '_'.")

    media_id = await lookup_media_id(cache, resolver, title, artist)
    root = Path(settings.download_dir)
    root.mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix=f"{song_id}-", dir=root))
    logger.info("Downloading %s - %s (%s)", title, artist, media_id)
    try:
        output = await resolver.download(media_id, work_dir, song_id)
    except DownloadFailed as err:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise _error(500, "DOWNLOAD_FAILED", str(err)) from err

    return FileResponse(
        output,
        media_type="audio/mpeg",
        filename=f"{song_id}.mp3",
        background=BackgroundTask(_cleanup, work_dir, song_id),
    )
