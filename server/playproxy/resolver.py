from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from .store import ResolvedStream


logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={media_id}"
_HTTP_HEADERS = {
    "Referer": "https://www.youtube.com/",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
}


class ResolutionFailed(RuntimeError):
    """Raised when a media identifier cannot be turned into a playable URL."""


class SearchFailed(RuntimeError):
    """Raised when the search extractor errors out."""


class DownloadFailed(RuntimeError):
    """Raised when saving a track to disk fails."""


def _base_opts() -> Dict[str, Any]:
    return {
        "quiet": True,
        "no_warnings": True,
        "nocheckcertificate": True,
        "noplaylist": True,
        "http_headers": dict(_HTTP_HEADERS),
    }


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def normalize_info(info: Optional[Dict[str, Any]]) -> ResolvedStream:
    if not isinstance(info, dict):
        raise ResolutionFailed("Extractor returned no metadata.")
    url = info.get("url")
    if not url:
        # Merged formats carry the playable URL on the chosen format entry.
        requested = info.get("requested_formats") or []
        url = next((f.get("url") for f in requested if f.get("url")), None)
    if not url:
        raise ResolutionFailed(f"No audio URL found for {info.get('id') or 'unknown id'}")
    ext = info.get("audio_ext") or info.get("ext")
    return ResolvedStream(
        url=str(url),
        content_type=f"audio/{ext}" if ext and ext != "none" else None,
        content_length=_optional_int(info.get("filesize") or info.get("filesize_approx")),
        title=info.get("title"),
        duration=info.get("duration"),
        thumbnail=info.get("thumbnail"),
        webpage_url=info.get("webpage_url"),
    )


class YtDlpResolver:
    def __init__(self, *, timeout_s: float = 20.0):
        self._timeout_s = timeout_s

    def _extract(self, target: str, opts: Dict[str, Any], *, download: bool = False) -> Dict:
        with YoutubeDL(opts) as ydl:
            return ydl.extract_info(target, download=download)

    async def _run(self, target: str, opts: Dict[str, Any], *, download: bool = False) -> Dict:
        return await asyncio.wait_for(
            asyncio.to_thread(self._extract, target, opts, download=download),
            timeout=self._timeout_s,
        )

    async def resolve(self, media_id: str) -> ResolvedStream:
        opts = _base_opts()
        opts.update({"format": "bestaudio/best", "prefer_free_formats": True})
        start = time.monotonic()
        try:
            info = await self._run(WATCH_URL.format(media_id=media_id), opts)
        except asyncio.TimeoutError as err:
            raise ResolutionFailed(
                f"Resolver timed out after {self._timeout_s:.0f}s for {media_id}"
            ) from err
        except (DownloadError, ExtractorError) as err:
            raise ResolutionFailed(f"Resolver failed for {media_id}: {err}") from err
        stream = normalize_info(info)
        logger.info("Resolved %s in %.1fs", media_id, time.monotonic() - start)
        return stream

    async def search(self, query: str, *, limit: int = 1) -> List[str]:
        opts = _base_opts()
        opts.update({"extract_flat": "in_playlist", "default_search": "ytsearch"})
        try:
            result = await self._run(f"ytsearch{limit}:{query}", opts)
        except asyncio.TimeoutError as err:
            raise SearchFailed(f"Search timed out for {query!r}") from err
        except (DownloadError, ExtractorError) as err:
            raise SearchFailed(f"Search failed for {query!r}: {err}") from err
        entries = (result or {}).get("entries") or []
        return [str(e["id"]) for e in entries if isinstance(e, dict) and e.get("id")]

    async def download(self, media_id: str, destination_dir: Path, basename: str) -> Path:
        destination_dir.mkdir(parents=True, exist_ok=True)
        opts = _base_opts()
        opts.update(
            {
                "format": "bestaudio[ext=m4a]/bestaudio",
                "outtmpl": str(destination_dir / f"{basename}.%(ext)s"),
                "postprocessors": [
                    {
                        "key": "FFmpegExtractAudio",
                        "preferredcodec": "mp3",
                        "preferredquality": "0",
                    }
                ],
            }
        )
        # Downloads run well past the resolve budget.
        try:
            await asyncio.to_thread(
                self._extract, WATCH_URL.format(media_id=media_id), opts, download=True
            )
        except (DownloadError, ExtractorError) as err:
            raise DownloadFailed(f"Download failed for {media_id}: {err}") from err
        output = destination_dir / f"{basename}.mp3"
        if not output.exists() or output.stat().st_size <= 0:
            raise DownloadFailed(f"Download produced no file for {media_id}")
        return output
