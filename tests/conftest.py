"""
Shared fixtures: config, stub command runner, in-memory object store and a
mock identity service.
"""

import json
from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

import main

SAMPLE_INFO = {
    "id": "abc",
    "title": "My Video",
    "duration": 3725,
    "channel": "Some Channel",
    "channel_follower_count": 1500,
    "view_count": "12345",
    "like_count": 321,
    "comment_count": None,
    "upload_date": "20240131",
    "thumbnail": "https://i.example.com/abc.jpg",
    "formats": [
        {"format_id": "140", "ext": "m4a", "resolution": "audio only", "filesize": 3000},
        {"format_id": "18", "ext": "mp4", "resolution": "640x360", "filesize": 1000},
        {"format_id": "134", "ext": "mp4", "resolution": "640x360", "filesize": 2000},
        {"format_id": "22", "ext": "mp4", "resolution": "1280x720", "filesize": 5000},
        {"format_id": "136", "ext": "mp4", "resolution": "1280x720", "filesize": 5000},
        {"format_id": "135", "ext": "mp4", "resolution": "854x480"},
        {"format_id": "248", "ext": "webm", "resolution": "1920x1080", "filesize": 9000},
    ],
}


class FakeRunner(main.CommandRunner):
    """
    Stands in for yt-dlp.

    Metadata calls answer with `info` as JSON. Download calls write `produce`
    into the directory of the -o template, then report `exit_code`.
    """

    def __init__(self, config: main.ServiceConfig, info: dict | None = None):
        super().__init__(config)
        self.info = dict(SAMPLE_INFO) if info is None else info
        self.produce: str | None = "My Video.mp3"
        self.exit_code = 0
        self.stderr = ""
        self.timeout = False
        self.calls: list[tuple[str, list[str]]] = []

    @property
    def download_calls(self) -> list[list[str]]:
        return [args for _, args in self.calls if "--dump-json" not in args]

    def run(self, executable, args, timeout=None):
        args = list(args)
        self.calls.append((executable, args))
        if "--dump-json" in args:
            return main.CommandResult(exit_code=0, stdout=json.dumps(self.info))
        if args == ["--version"]:
            return main.CommandResult(exit_code=0, stdout="2025.01.15\n")
        if args == ["-version"]:
            return main.CommandResult(exit_code=0, stdout="ffmpeg version 6.1.1 Copyright\n")
        if self.timeout:
            raise main.CommandTimeout(executable, timeout or 1.0)
        output_dir = Path(args[args.index("-o") + 1]).parent
        if self.produce:
            (output_dir / self.produce).write_bytes(b"media-bytes")
        return main.CommandResult(exit_code=self.exit_code, stderr=self.stderr)


class MemoryStore:
    """In-memory ObjectStore; flip `unreachable` to simulate a partitioned store."""

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.unreachable = False
        self.fail_upload = False
        self.uploads: list[str] = []

    def put(self, bucket: str, key: str, data: bytes = b"stored") -> None:
        self.objects[(bucket, key)] = data

    def exists(self, bucket, key):
        if self.unreachable:
            return main.StoreResult.failure("connection refused")
        data = self.objects.get((bucket, key))
        if data is None:
            return main.StoreResult.success(main.ObjectStat(present=False))
        return main.StoreResult.success(main.ObjectStat(present=True, size=len(data)))

    def upload(self, bucket, key, stream, length):
        if self.unreachable or self.fail_upload:
            return main.StoreResult.failure("upload rejected")
        data = stream.read()
        assert len(data) == length
        self.objects[(bucket, key)] = data
        self.uploads.append(key)
        return main.StoreResult.success()

    def download(self, bucket, key):
        if self.unreachable:
            return main.StoreResult.failure("connection refused")
        if (bucket, key) not in self.objects:
            return main.StoreResult.missing()
        return main.StoreResult.success(self.objects[(bucket, key)])

    def list(self, bucket):
        if self.unreachable:
            return main.StoreResult.failure("connection refused")
        return main.StoreResult.success([k for b, k in self.objects if b == bucket])

    def delete(self, bucket, key):
        if self.unreachable:
            return main.StoreResult.failure("connection refused")
        if self.objects.pop((bucket, key), None) is None:
            return main.StoreResult.missing()
        return main.StoreResult.success()

    def bucket_stats(self, bucket):
        sizes = [len(v) for (b, _), v in self.objects.items() if b == bucket]
        return main.StoreResult.success(main.BucketStats(count=len(sizes), total_bytes=sum(sizes)))


def _auth_handler(request: httpx.Request) -> httpx.Response:
    token = main.parse_bearer(request.headers.get("Authorization"))
    if token == "premium-token":
        return httpx.Response(200, json={"id": "u-1", "role": "Premium"})
    if token == "user-token":
        return httpx.Response(200, json={"id": "u-2", "role": "User"})
    if token == "admin-token":
        return httpx.Response(200, json={"id": "u-3", "roles": ["User", "Admin"]})
    return httpx.Response(401, json={"error": "invalid token"})


@pytest.fixture
def sample_video_url() -> str:
    return "https://example.com/watch?v=abc"


@pytest.fixture
def retry_config() -> main.RetryConfig:
    """Fast retry config for tests."""
    return main.RetryConfig(max_retries=2, backoff_base=0.01, backoff_multiplier=2.0, jitter=False)


@pytest.fixture
def test_config(tmp_path: Path) -> main.ServiceConfig:
    return main.ServiceConfig(
        scratch_dir=tmp_path / "scratch",
        default_bucket="media",
        store_retry=main.RetryConfig(max_retries=0, backoff_base=0.0, jitter=False),
    )


@pytest.fixture
def fake_runner(test_config: main.ServiceConfig) -> FakeRunner:
    return FakeRunner(test_config)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def identity_client(test_config: main.ServiceConfig) -> main.IdentityClient:
    return main.IdentityClient(
        test_config, client=httpx.Client(transport=httpx.MockTransport(_auth_handler))
    )


@pytest.fixture
def orchestrator(test_config, fake_runner, memory_store) -> main.DownloadOrchestrator:
    resolver = main.MetadataResolver(fake_runner, test_config)
    return main.DownloadOrchestrator(fake_runner, resolver, memory_store, test_config)


@pytest.fixture
def test_services(
    test_config, fake_runner, memory_store, identity_client, orchestrator, monkeypatch
) -> main.Services:
    """Swap the module-level services for fakes so routes never touch the network."""
    services = main.Services(
        config=test_config,
        runner=fake_runner,
        resolver=orchestrator.resolver,
        store=memory_store,
        identity=identity_client,
        orchestrator=orchestrator,
    )
    monkeypatch.setattr(main, "services", services)
    return services


@pytest.fixture
async def client(test_services) -> AsyncGenerator[AsyncClient]:
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def scratch_leftovers(config: main.ServiceConfig) -> list[Path]:
    if not config.scratch_dir.exists():
        return []
    return list(config.scratch_dir.rglob("*"))
