import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import server
from config import Settings
from toolchain import CommandError

METADATA = {
    "id": "abc123",
    "title": "My:Video?",
    "duration": 212,
    "uploader": "Some Channel",
    "thumbnail": "https://i.ytimg.com/vi/abc123/maxresdefault.jpg",
    "view_count": 1000,
    "formats": [],
}


class StubRunner:
    """Stands in for CommandRunner: records calls and fakes the tools' output files."""

    def __init__(self, title="My:Video?", missing=(), fail_on=None):
        self.title = title
        self.missing = set(missing)
        self.fail_on = fail_on
        self.calls = []
        self.probes = []

    async def run(self, args, timeout=None):
        args = list(args)
        self.calls.append(args)
        if args[0] in self.missing:
            raise CommandError(args, None, "No such file or directory")
        if self.fail_on and (args[0] == self.fail_on or self.fail_on in args):
            raise CommandError(args, 1, "ERROR: simulated failure")
        if "--version" in args:
            return "2024.08.06\n"
        if "--dump-json" in args:
            return json.dumps(METADATA)
        if "--print" in args:
            return self.title + "\n"
        if "-o" in args:
            template = args[args.index("-o") + 1]
            ext = "mp3" if "-x" in args else "mp4"
            Path(template.replace("%(ext)s", ext)).write_bytes(b"fetched-media")
        elif args[0] == "ffmpeg":
            Path(args[-1]).write_bytes(b"trimmed-media")
        return ""

    async def probe(self, args):
        self.probes.append(args[0])
        return args[0] not in self.missing


@pytest.fixture
def settings(tmp_path):
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<h1>ClipCutter</h1>", encoding="utf-8")
    return Settings(temp_dir=tmp_path / "temp", static_dir=static_dir)


@pytest.fixture
def runner():
    return StubRunner()


@pytest.fixture
def temp_dir(settings):
    return settings.temp_dir


@pytest.fixture
def make_client(settings):
    def _make(runner):
        return TestClient(server.create_app(settings, runner=runner))

    return _make


@pytest.fixture
def client(make_client, runner):
    return make_client(runner)
