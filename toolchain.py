"""Running yt-dlp and ffmpeg as child processes.

``CommandRunner`` is the only place a process gets spawned; ``ToolChain``
turns media operations into argument lists for it. Arguments are always
passed as a list, never through a shell.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence
from urllib.parse import quote

logger = logging.getLogger("clipcutter.toolchain")

VIDEO_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
VIDEO_FORMAT = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
PROBE_TIMEOUT = 5.0
STDERR_TAIL_LINES = 6

YT_DLP_HINT = "Install with: pip install yt-dlp"
FFMPEG_HINT = "Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Debian/Ubuntu)"


class CommandError(Exception):
    """An external process could not be started, failed, or timed out."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], detail: str) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.detail = detail
        super().__init__(f"{self.command[0] if self.command else '?'} failed (exit {returncode}): {detail}")


class CommandRunner:
    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    async def run(self, args: Sequence[str], timeout: Optional[float] = None) -> str:
        """Run ``args`` to completion and return its stdout as text."""
        timeout = self.timeout if timeout is None else timeout
        logger.debug("Running %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandError(args, None, str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            _kill(proc)
            await proc.wait()
            raise CommandError(args, None, f"timed out after {timeout:g}s") from exc
        except BaseException:
            # cancelled with the request; do not leave the child running
            _kill(proc)
            raise

        if proc.returncode != 0:
            lines = stderr.decode("utf-8", "ignore").strip().splitlines()
            detail = "\n".join(lines[-STDERR_TAIL_LINES:]) or f"exited with code {proc.returncode}"
            raise CommandError(args, proc.returncode, detail)
        return stdout.decode("utf-8", "ignore")

    async def probe(self, args: Sequence[str]) -> bool:
        """Return True if ``args`` exits successfully; any failure counts as absent."""
        try:
            await self.run(args, timeout=PROBE_TIMEOUT)
        except CommandError:
            return False
        except Exception:
            logger.exception("Probe %s failed unexpectedly", args[0] if args else "?")
            return False
        return True


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def video_url(video_id: str) -> str:
    return VIDEO_URL_TEMPLATE.format(video_id=quote(video_id.strip(), safe=""))


def format_seconds(value: float) -> str:
    """Render a time offset for ffmpeg without float noise (``15.0`` -> ``15``)."""
    return f"{value:.3f}".rstrip("0").rstrip(".")


class ToolChain:
    """Binds the configured binaries and builds their command lines."""

    def __init__(self, runner: CommandRunner, yt_dlp_bin: str = "yt-dlp", ffmpeg_bin: str = "ffmpeg") -> None:
        self.runner = runner
        self.yt_dlp_bin = yt_dlp_bin
        self.ffmpeg_bin = ffmpeg_bin

    async def probe_fetcher(self) -> bool:
        return await self.runner.probe([self.yt_dlp_bin, "--version"])

    async def probe_transcoder(self) -> bool:
        return await self.runner.probe([self.ffmpeg_bin, "-version"])

    async def fetcher_version(self) -> Optional[str]:
        """Version string reported by the configured yt-dlp binary, or None if it cannot run."""
        try:
            stdout = await self.runner.run([self.yt_dlp_bin, "--version"], timeout=PROBE_TIMEOUT)
        except CommandError:
            return None
        return stdout.strip() or None

    async def missing(self, need_transcoder: bool = False) -> Optional[str]:
        """Return an error message naming the first unavailable tool, if any."""
        if not await self.probe_fetcher():
            return f"yt-dlp is not installed. {YT_DLP_HINT}"
        if need_transcoder and not await self.probe_transcoder():
            return f"ffmpeg is not installed. {FFMPEG_HINT}"
        return None

    def _fetch_base(self) -> List[str]:
        args = [self.yt_dlp_bin, "--no-playlist", "--no-warnings"]
        if self.ffmpeg_bin != "ffmpeg":
            args.extend(["--ffmpeg-location", self.ffmpeg_bin])
        return args

    async def dump_metadata(self, url: str) -> str:
        return await self.runner.run([self.yt_dlp_bin, "--dump-json", "--no-playlist", "--no-warnings", url])

    async def fetch_title(self, url: str) -> str:
        stdout = await self.runner.run([self.yt_dlp_bin, "--print", "title", "--no-playlist", "--no-warnings", url])
        return stdout.strip()

    async def download_video(self, url: str, output_template: str) -> None:
        args = self._fetch_base() + [
            "-f",
            VIDEO_FORMAT,
            "--merge-output-format",
            "mp4",
            # the "best" fallback may not be mp4 and is never merged
            "--remux-video",
            "mp4",
            "-o",
            output_template,
            url,
        ]
        await self.runner.run(args)

    async def extract_audio(self, url: str, output_template: str) -> None:
        args = self._fetch_base() + [
            "-x",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "0",
            "-o",
            output_template,
            url,
        ]
        await self.runner.run(args)

    async def trim_audio(self, source: str, output: str, start: float, duration: float) -> None:
        """Copy ``[start, start + duration)`` of ``source`` into ``output`` without re-encoding."""
        args = [
            self.ffmpeg_bin,
            "-y",
            "-i",
            source,
            "-ss",
            format_seconds(start),
            "-t",
            format_seconds(duration),
            "-acodec",
            "copy",
            output,
        ]
        await self.runner.run(args)
