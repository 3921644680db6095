from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from vidrelay.config.settings import config
from vidrelay.infra.rate_limit import rate_limiter
from vidrelay.main import app
from vidrelay.models.internal import LocalTempFile, VideoInfo
from vidrelay.services.extractor import ExtractorError, InvocationOutcome, get_extractor

RICK_TITLE = "Rick Astley - Never Gonna Give You Up (Official Music Video)"


class FakeExtractor:
    """Extractor double that writes a small file instead of running yt-dlp"""

    def __init__(
        self,
        temp_dir: Path,
        fail: bool = False,
        outcome: InvocationOutcome = InvocationOutcome.FAILED_EXIT_CODE,
    ):
        self.temp_dir = temp_dir
        self.fail = fail
        self.outcome = outcome
        self.probed = []
        self.downloaded = []

    async def probe(self, url: str) -> VideoInfo:
        self.probed.append(url)
        if self.fail:
            raise ExtractorError(InvocationOutcome.FAILED_EXIT_CODE, "ERROR: Video unavailable")
        return VideoInfo(title=RICK_TITLE, container_ext="webm", duration_seconds=212.0)

    async def download(self, url: str, audio_only: bool) -> LocalTempFile:
        self.downloaded.append((url, audio_only))
        if self.fail:
            if self.outcome == InvocationOutcome.FAILED_TIMEOUT:
                raise ExtractorError(self.outcome, "Download timeout")
            raise ExtractorError(self.outcome, "Download failed: ERROR: Video unavailable")
        path = self.temp_dir / ("ytdlp_fake.mp3" if audio_only else "ytdlp_fake.mp4")
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1000)
        return LocalTempFile(path=path, size_bytes=path.stat().st_size)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture(autouse=True)
def offline_policy(monkeypatch):
    """Relay checks must not depend on real DNS"""
    monkeypatch.setattr(config.security, "resolve_dns", False)


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    downloads = tmp_path / "downloads"
    downloads.mkdir()
    monkeypatch.setattr(config.extractor, "temp_dir", str(downloads))
    return downloads


@pytest.fixture
def fake_extractor(temp_dir):
    fake = FakeExtractor(temp_dir)
    app.dependency_overrides[get_extractor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_extractor, None)


@pytest_asyncio.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def failing_extractor(temp_dir):
    fake = FakeExtractor(temp_dir, fail=True)
    app.dependency_overrides[get_extractor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_extractor, None)


@pytest.fixture
def timed_out_extractor(temp_dir):
    fake = FakeExtractor(temp_dir, fail=True, outcome=InvocationOutcome.FAILED_TIMEOUT)
    app.dependency_overrides[get_extractor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_extractor, None)
