"""FastAPI backend for ClipCutter.

This service exposes:
- GET  /api/info                   : title, duration, uploader and thumbnail for a video ID
- POST /api/download-video         : the full video as an mp4 attachment
- POST /api/download-audio         : the full audio track as an mp3 attachment
- POST /api/download-audio-segment : a trimmed mp3 between startTime and endTime
- POST /api/get-audio              : extracts audio for in-browser preview, served from /temp
- GET  /api/health                 : whether yt-dlp and ffmpeg are available

Run with:
    uvicorn server:app --host 0.0.0.0 --port 3000
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.types import Receive, Scope, Send

from config import Settings, configure_logging
from tempstore import TempFiles, TempStorage
from toolchain import CommandRunner, ToolChain, video_url

logger = logging.getLogger("clipcutter")

INFO_KEYS = ("title", "duration", "uploader", "thumbnail")


class MediaError(Exception):
    """The external tools reported success but did not produce what was expected."""


class VideoRequest(BaseModel):
    videoId: Optional[str] = None


class SegmentRequest(VideoRequest):
    startTime: Optional[float] = Field(default=None, allow_inf_nan=False)
    endTime: Optional[float] = Field(default=None, allow_inf_nan=False)


def sanitize_filename(title: str) -> str:
    """Replace anything but word characters, whitespace, dots and hyphens with ``_``."""
    safe = re.sub(r"[^\w\s.-]", "_", title, flags=re.ASCII)
    return safe if safe.strip() else "download"


def output_template(path: Path) -> str:
    """yt-dlp output template that lands on ``path`` once post-processing is done."""
    return str(path.with_suffix("")) + ".%(ext)s"


def require_video_id(video_id: Optional[str]) -> str:
    if video_id is None or not video_id.strip():
        raise HTTPException(status_code=400, detail="Video ID is required")
    return video_id.strip()


class TempFileResponse(FileResponse):
    """FileResponse that deletes its temp files when sending ends, however it ends."""

    def __init__(self, path: Path, *, storage: TempStorage, cleanup: TempFiles, **kwargs: Any) -> None:
        super().__init__(path, **kwargs)
        self._storage = storage
        self._cleanup = list(cleanup.paths)
        cleanup.release()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except Exception:
            logger.exception("Error sending file %s", self.path)
        finally:
            self._storage.discard(*self._cleanup)


class MediaService:
    """One method per API operation; raises HTTPException for anything the client should see."""

    def __init__(self, storage: TempStorage, tools: ToolChain) -> None:
        self.storage = storage
        self.tools = tools

    async def _require_tools(self, need_transcoder: bool) -> None:
        message = await self.tools.missing(need_transcoder=need_transcoder)
        if message:
            raise HTTPException(status_code=500, detail=message)

    def _produced(self, path: Path) -> Path:
        if not path.is_file():
            raise MediaError(f"expected output {path.name} was not created")
        return path

    async def _title(self, url: str) -> str:
        return await self.tools.fetch_title(url) or "download"

    async def info(self, video_id: Optional[str]) -> Dict[str, Any]:
        video_id = require_video_id(video_id)
        await self._require_tools(need_transcoder=False)
        try:
            info = json.loads(await self.tools.dump_metadata(video_url(video_id)))
            return {key: info.get(key) for key in INFO_KEYS}
        except Exception:
            logger.exception("Error fetching video info for %s", video_id)
            raise HTTPException(status_code=500, detail="Failed to fetch video information")

    async def download_video(self, video_id: Optional[str]) -> TempFileResponse:
        video_id = require_video_id(video_id)
        await self._require_tools(need_transcoder=False)
        url = video_url(video_id)
        with self.storage.allocate(".mp4") as files:
            try:
                logger.info("Downloading video %s", video_id)
                await self.tools.download_video(url, output_template(files.paths[0]))
                output = self._produced(files.paths[0])
                filename = sanitize_filename(await self._title(url)) + ".mp4"
                return TempFileResponse(
                    output, storage=self.storage, cleanup=files, media_type="video/mp4", filename=filename
                )
            except Exception:
                logger.exception("Error downloading video %s", video_id)
                raise HTTPException(status_code=500, detail="Failed to download video")

    async def download_audio(self, video_id: Optional[str]) -> TempFileResponse:
        video_id = require_video_id(video_id)
        await self._require_tools(need_transcoder=True)
        url = video_url(video_id)
        with self.storage.allocate(".mp3") as files:
            try:
                logger.info("Extracting audio for %s", video_id)
                await self.tools.extract_audio(url, output_template(files.paths[0]))
                output = self._produced(files.paths[0])
                filename = sanitize_filename(await self._title(url)) + ".mp3"
                return TempFileResponse(
                    output, storage=self.storage, cleanup=files, media_type="audio/mpeg", filename=filename
                )
            except Exception:
                logger.exception("Error extracting audio for %s", video_id)
                raise HTTPException(status_code=500, detail="Failed to extract audio")

    async def download_segment(
        self, video_id: Optional[str], start: Optional[float], end: Optional[float]
    ) -> TempFileResponse:
        video_id = require_video_id(video_id)
        if start is None or end is None:
            raise HTTPException(status_code=400, detail="Start time and end time are required")
        if not (math.isfinite(start) and math.isfinite(end)):
            raise HTTPException(status_code=400, detail="Start time and end time must be finite numbers")
        if start < 0:
            raise HTTPException(status_code=400, detail="Start time must not be negative")
        if end <= start:
            raise HTTPException(status_code=400, detail="End time must be greater than start time")
        await self._require_tools(need_transcoder=True)
        url = video_url(video_id)
        with self.storage.allocate("_full.mp3", "_segment.mp3") as files:
            full_path, segment_path = files.paths
            try:
                logger.info("Extracting audio for %s", video_id)
                await self.tools.extract_audio(url, output_template(full_path))
                self._produced(full_path)
                logger.info("Trimming audio segment %s-%s of %s", start, end, video_id)
                await self.tools.trim_audio(str(full_path), str(segment_path), start, end - start)
                self.storage.discard(full_path)
                output = self._produced(segment_path)
                filename = sanitize_filename(await self._title(url)) + "_segment.mp3"
                return TempFileResponse(
                    output, storage=self.storage, cleanup=files, media_type="audio/mpeg", filename=filename
                )
            except Exception:
                logger.exception("Error extracting audio segment for %s", video_id)
                raise HTTPException(status_code=500, detail="Failed to extract audio segment")

    async def preview(self, video_id: Optional[str]) -> Dict[str, str]:
        """Extract audio into the public temp mount; the sweep removes it later."""
        video_id = require_video_id(video_id)
        await self._require_tools(need_transcoder=True)
        url = video_url(video_id)
        with self.storage.allocate(".mp3") as files:
            try:
                logger.info("Extracting audio preview for %s", video_id)
                await self.tools.extract_audio(url, output_template(files.paths[0]))
                output = self._produced(files.paths[0])
            except Exception:
                logger.exception("Error extracting audio preview for %s", video_id)
                raise HTTPException(status_code=500, detail="Failed to extract audio")
            files.release()
        return {"audioPath": f"/temp/{output.name}"}

    async def health(self) -> Dict[str, Any]:
        yt_dlp_ok, ffmpeg_ok, version = await asyncio.gather(
            self.tools.probe_fetcher(), self.tools.probe_transcoder(), self.tools.fetcher_version()
        )
        return {
            "status": "ok",
            "ytDlp": yt_dlp_ok,
            "ffmpeg": ffmpeg_ok,
            "ytDlpVersion": version,
        }


async def _log_dependencies(tools: ToolChain) -> None:
    yt_dlp_ok, ffmpeg_ok = await asyncio.gather(tools.probe_fetcher(), tools.probe_transcoder())
    logger.info("yt-dlp: %s", "installed" if yt_dlp_ok else "not found")
    if not yt_dlp_ok:
        logger.warning("yt-dlp is required for every operation. Install with: pip install yt-dlp")
    logger.info("ffmpeg: %s", "installed" if ffmpeg_ok else "not found")
    if not ffmpeg_ok:
        logger.warning("ffmpeg is required for audio operations. Install with: brew install ffmpeg (macOS)")


def create_app(
    settings: Optional[Settings] = None,
    runner: Optional[CommandRunner] = None,
    storage: Optional[TempStorage] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    storage = storage or TempStorage(settings.temp_dir, settings.retention_seconds, settings.sweep_interval_seconds)
    storage.ensure_directory()
    runner = runner or CommandRunner(timeout=settings.command_timeout)
    tools = ToolChain(runner, yt_dlp_bin=settings.yt_dlp_bin, ffmpeg_bin=settings.ffmpeg_bin)
    service = MediaService(storage, tools)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _log_dependencies(tools)
        sweeper = asyncio.create_task(storage.run_sweeper())
        logger.info("Temp directory %s, sweeping every %ss", storage.path, storage.sweep_interval_seconds)
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="ClipCutter API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage
    app.state.service = service

    # The browser client may be served from another origin during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        loc = errors[0].get("loc", ()) if errors else ()
        field = ".".join(part for part in loc[1:] if isinstance(part, str))
        detail = f"Invalid value for {field}" if field else "Invalid request body"
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.get("/api/info")
    async def get_info(videoId: Optional[str] = Query(None, description="Video ID")) -> Dict[str, Any]:
        return await service.info(videoId)

    @app.post("/api/download-video")
    async def download_video(body: Optional[VideoRequest] = None):
        return await service.download_video(body.videoId if body else None)

    @app.post("/api/download-audio")
    async def download_audio(body: Optional[VideoRequest] = None):
        return await service.download_audio(body.videoId if body else None)

    @app.post("/api/download-audio-segment")
    async def download_audio_segment(body: Optional[SegmentRequest] = None):
        body = body or SegmentRequest()
        return await service.download_segment(body.videoId, body.startTime, body.endTime)

    @app.post("/api/get-audio")
    async def get_audio(body: Optional[VideoRequest] = None) -> Dict[str, str]:
        return await service.preview(body.videoId if body else None)

    @app.get("/api/health")
    async def healthcheck() -> Dict[str, Any]:
        return await service.health()

    app.mount("/temp", StaticFiles(directory=storage.path), name="temp")
    if settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
    else:
        logger.warning("Static directory %s not found; front-end will not be served", settings.static_dir)
    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host=settings.host, port=settings.port, reload=False)
