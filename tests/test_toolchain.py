import asyncio
import sys

import pytest

from toolchain import CommandError, CommandRunner, ToolChain, format_seconds, video_url


def run(coro):
    return asyncio.run(coro)


def python(code):
    return [sys.executable, "-c", code]


def test_run_returns_stdout():
    out = run(CommandRunner().run(python("print('hello')")))
    assert out.strip() == "hello"


def test_run_raises_with_stderr_tail():
    runner = CommandRunner()
    with pytest.raises(CommandError) as excinfo:
        run(runner.run(python("import sys; sys.stderr.write('ERROR: unavailable\\n'); sys.exit(3)")))
    assert excinfo.value.returncode == 3
    assert "ERROR: unavailable" in excinfo.value.detail


def test_run_reports_missing_binary():
    with pytest.raises(CommandError) as excinfo:
        run(CommandRunner().run(["clipcutter-no-such-tool", "--version"]))
    assert excinfo.value.returncode is None


def test_run_times_out():
    with pytest.raises(CommandError) as excinfo:
        run(CommandRunner(timeout=0.5).run(python("import time; time.sleep(10)")))
    assert "timed out" in excinfo.value.detail


def test_probe_never_raises():
    runner = CommandRunner()
    assert run(runner.probe(python("pass"))) is True
    assert run(runner.probe(python("raise SystemExit(1)"))) is False
    assert run(runner.probe(["clipcutter-no-such-tool"])) is False


class RecordingRunner:
    def __init__(self, available=True):
        self.available = available
        self.calls = []

    async def run(self, args, timeout=None):
        self.calls.append(list(args))
        return "  A Title \n"

    async def probe(self, args):
        self.calls.append(list(args))
        return self.available


def test_download_video_command():
    runner = RecordingRunner()
    run(ToolChain(runner).download_video("https://example.com/v", "/tmp/x.%(ext)s"))
    args = runner.calls[0]
    assert args[0] == "yt-dlp"
    assert "--no-playlist" in args
    assert args[args.index("-f") + 1] == "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
    assert args[args.index("-o") + 1] == "/tmp/x.%(ext)s"
    assert args[-1] == "https://example.com/v"
    assert "--ffmpeg-location" not in args


def test_custom_ffmpeg_is_passed_to_fetcher():
    runner = RecordingRunner()
    tools = ToolChain(runner, yt_dlp_bin="/opt/yt-dlp", ffmpeg_bin="/opt/ffmpeg/bin/ffmpeg")
    run(tools.extract_audio("https://example.com/v", "/tmp/x.%(ext)s"))
    args = runner.calls[0]
    assert args[0] == "/opt/yt-dlp"
    assert args[args.index("--ffmpeg-location") + 1] == "/opt/ffmpeg/bin/ffmpeg"
    assert args[args.index("--audio-format") + 1] == "mp3"


def test_trim_audio_command():
    runner = RecordingRunner()
    run(ToolChain(runner).trim_audio("/tmp/a_full.mp3", "/tmp/a_segment.mp3", 1.25, 30.0))
    assert runner.calls[0] == [
        "ffmpeg", "-y", "-i", "/tmp/a_full.mp3", "-ss", "1.25", "-t", "30", "-acodec", "copy", "/tmp/a_segment.mp3",
    ]


def test_fetch_title_strips_output():
    assert run(ToolChain(RecordingRunner()).fetch_title("https://example.com/v")) == "A Title"


def test_missing_names_the_tool():
    tools = ToolChain(RecordingRunner(available=False))
    assert "yt-dlp" in run(tools.missing())
    assert run(ToolChain(RecordingRunner()).missing(need_transcoder=True)) is None


@pytest.mark.parametrize("value, expected", [(0, "0"), (15.0, "15"), (2.5, "2.5"), (0.1 + 0.2, "0.3")])
def test_format_seconds(value, expected):
    assert format_seconds(value) == expected


def test_video_url_quotes_identifier():
    assert video_url("dQw4w9WgXcQ") == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert video_url(" a&b=c ") == "https://www.youtube.com/watch?v=a%26b%3Dc"
