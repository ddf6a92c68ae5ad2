"""
Shared fixtures for the recorder tests.

Recording pipeline tests run against in-memory stand-ins for the parts that
need Discord or native libraries:
- FakeVoiceTransport: a voice connection whose frames are pushed by the test
- FakeOpusDecoder: passes frames through unchanged (frames *are* PCM)
- FakeFFmpegManagerService: "transcodes" by copying the staging file
Everything else (logging, file layout, staging sink, registry) is real.
"""

import asyncio
import os
import shutil
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from voice_recorder.context import Context
from voice_recorder.services.discord_recorder.exceptions import TranscodeError
from voice_recorder.services.discord_recorder.manager import DiscordRecorderManagerService
from voice_recorder.services.discord_recorder.pcm import DiscordRecorderConstants
from voice_recorder.services.discord_recorder.transport import BaseVoiceTransport
from voice_recorder.services.logger import AsyncLoggingService
from voice_recorder.services.manager import BaseFFmpegServiceManager, ServicesManager
from voice_recorder.services.recording_file_manager.manager import RecordingFileManagerService

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom settings and markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (need a real ffmpeg)")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Apply timeout to all tests except those marked as slow."""
    for item in items:
        if "slow" not in item.keywords:
            item.add_marker(pytest.mark.timeout(30))


@pytest.fixture(scope="session")
def ffmpeg_path() -> str:
    """Path of a real ffmpeg binary; skips the test when none is installed."""
    path = os.getenv("MAC_FFMPEG_PATH") or shutil.which("ffmpeg")
    if not path:
        pytest.skip("FFmpeg not installed")
    return path


# ============================================================================
# Recording Stand-ins
# ============================================================================


class FakeVoiceTransport(BaseVoiceTransport):
    """Voice connection driven by the test instead of Discord."""

    def __init__(self, guild_id: str = "G1"):
        super().__init__(guild_id)
        self.connected = True
        self.destroy_calls = 0

    def is_connected(self) -> bool:
        return self.connected

    async def destroy(self) -> None:
        self.destroy_calls += 1
        self.connected = False
        for subscription in list(self._subscriptions.values()):
            subscription.unsubscribe()

    def feed(self, speaker_id: str, frames: list[bytes]) -> None:
        subscription = self.get_subscription(speaker_id)
        assert subscription is not None, f"{speaker_id} is not subscribed"
        for frame in frames:
            subscription.push(frame)


class FakeOpusDecoder:
    """Identity decoder. Frames starting with b"BAD" are treated as corrupt."""

    def decode(self, data: bytes | None, *, fec: bool = False) -> bytes:
        if data is None or data.startswith(b"BAD"):
            raise ValueError("corrupted stream")
        return bytes(data)


class FakeFFmpegManagerService(BaseFFmpegServiceManager):
    """Copies staging PCM to the output path.

    Fails for output names containing an entry of `fail_for`; holds every
    transcode while `gate` is set and not yet released.
    """

    def __init__(self, context: Context):
        super().__init__(context)
        self.fail_for: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None

    def get_ffmpeg_path(self) -> str:
        return "fake-ffmpeg"

    async def transcode_pcm_to_mp3(self, staging_path: str, output_path: str) -> str:
        self.calls.append((staging_path, output_path))
        files = self.services.recording_file_service_manager
        try:
            if self.gate is not None:
                await self.gate.wait()
            if any(name in os.path.basename(output_path) for name in self.fail_for):
                raise TranscodeError(f"simulated failure for {output_path}")
            shutil.copyfile(staging_path, output_path)
        finally:
            await files.delete_staging_file(staging_path)
        return output_path


def pcm_frames(seconds: float, fill: int = 1) -> list[bytes]:
    """Whole 20ms frames of constant PCM."""
    count = int(seconds * 1000) // DiscordRecorderConstants.FRAME_MS
    return [bytes([fill]) * DiscordRecorderConstants.FRAME_BYTES for _ in range(count)]


# ============================================================================
# Services Fixtures
# ============================================================================


@pytest.fixture
def frames() -> Callable[..., list[bytes]]:
    return pcm_frames


@pytest.fixture
def fake_decoder_factory() -> type[FakeOpusDecoder]:
    return FakeOpusDecoder


@pytest.fixture
def make_transport() -> Callable[[str], FakeVoiceTransport]:
    return FakeVoiceTransport


@pytest.fixture
def recordings_path(tmp_path) -> str:
    return str(tmp_path / "recordings")


@pytest.fixture
async def services_manager(tmp_path, recordings_path) -> ServicesManager:
    """Fully started services with the recording stand-ins wired in."""
    context = Context()

    logging_service = AsyncLoggingService(
        context=context,
        log_dir=str(tmp_path / "logs"),
        log_file="test.log",
        console_output=False,
    )
    services = ServicesManager(
        context=context,
        logging_service=logging_service,
        recording_file_service_manager=RecordingFileManagerService(
            context=context, recording_storage_path=recordings_path
        ),
        ffmpeg_service_manager=FakeFFmpegManagerService(context),
        discord_recorder_service_manager=DiscordRecorderManagerService(
            context=context, decoder_factory=FakeOpusDecoder
        ),
    )
    context.set_services_manager(services)
    await services.initialize_all()

    yield services

    await services.shutdown_all(timeout=10.0)


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate on the event loop until it holds."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return _wait_until


# ============================================================================
# Discord Mocks
# ============================================================================

MOCK_GUILD_ID = 111222333


@pytest.fixture
def mock_discord_bot() -> MagicMock:
    bot = MagicMock(name="bot", guilds=[])
    bot.user.configure_mock(name="RecorderBot", id=5550001)
    return bot


@pytest.fixture
def mock_voice_channel() -> MagicMock:
    """A voice channel nobody has joined yet; connect() is awaitable."""
    channel = MagicMock(name="voice_channel", members=[], connect=AsyncMock())
    channel.configure_mock(name="General", id=444555666)
    return channel


@pytest.fixture
def mock_discord_context() -> MagicMock:
    """py-cord ApplicationContext for a caller who is not in voice."""
    ctx = MagicMock(name="ctx")
    for method in ("defer", "respond", "edit"):
        setattr(ctx, method, AsyncMock())
    ctx.author.configure_mock(name="caller", id=987654321, voice=None)
    ctx.guild.configure_mock(name="Recording Guild", id=MOCK_GUILD_ID, voice_client=None)
    return ctx


@pytest.fixture
def mock_discord_user_in_voice(
    mock_discord_context: MagicMock,
    mock_voice_channel: MagicMock,
) -> MagicMock:
    """Same context, with the caller sitting in mock_voice_channel."""
    mock_discord_context.author.voice = MagicMock(channel=mock_voice_channel)
    return mock_discord_context
