"""
Unit tests for the Discord Recorder Manager Service.

The manager owns one voice connection per guild and drives the session
registry; these tests check that the connection is torn down exactly once,
after every speaker of the guild has been finalized.
"""

import asyncio
import os

import pytest

from voice_recorder.services.discord_recorder.manager import DiscordRecorderManagerService
from voice_recorder.services.discord_recorder.speaker_stream import SpeakerState


@pytest.fixture
def recorder(services_manager):
    return services_manager.discord_recorder_service_manager


@pytest.fixture
def transport(recorder, make_transport):
    transport = make_transport("G1")
    recorder.attach_transport("G1", transport)
    return transport


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecorderSpeakers:
    async def test_single_speaker_recording_is_saved(
        self, recorder, transport, frames, recordings_path
    ):
        assert await recorder.start_speaker("G1", "U1", "Alice") is True
        assert recorder.is_guild_active("G1") is True

        transport.feed("U1", frames(5.0))
        output = await recorder.stop_speaker("G1", "U1")

        assert os.path.dirname(output) == recordings_path
        assert os.path.basename(output).startswith("G1-Alice-")
        assert os.path.getsize(output) == 5 * 192_000
        assert recorder.is_guild_active("G1") is False

    async def test_stopping_last_speaker_keeps_the_connection(self, recorder, transport):
        await recorder.start_speaker("G1", "U1", "Alice")

        await recorder.stop_speaker("G1", "U1")

        assert transport.destroy_calls == 0
        assert recorder.get_transport("G1") is transport

    async def test_start_without_connection_fails(self, recorder):
        assert await recorder.start_speaker("G1", "U1", "Alice") is False
        assert recorder.is_guild_active("G1") is False

    async def test_start_is_refused_during_shutdown(self, recorder, transport):
        recorder.context.mark_shutdown_started()

        assert await recorder.start_speaker("G1", "U1", "Alice") is False
        assert transport.get_subscription("U1") is None

    async def test_active_speakers_lists_running_streams(self, recorder, transport):
        await recorder.start_speaker("G1", "U1", "Alice")
        await recorder.start_speaker("G1", "U2", "Bob")

        speakers = recorder.active_speakers("G1")

        assert sorted(s.display_name for s in speakers) == ["Alice", "Bob"]
        assert all(s.state is SpeakerState.CAPTURING for s in speakers)
        await recorder.stop_guild("G1")


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecorderGuildStop:
    async def test_stop_guild_saves_all_and_destroys_connection_once(
        self, recorder, transport, frames
    ):
        for speaker_id, name in [("U1", "Alice"), ("U2", "Bob")]:
            await recorder.start_speaker("G1", speaker_id, name)
            transport.feed(speaker_id, frames(0.2))

        paths = await recorder.stop_guild("G1")

        assert len(paths) == 2
        assert transport.destroy_calls == 1
        assert recorder.get_transport("G1") is None
        assert recorder.is_guild_active("G1") is False

    async def test_second_stop_guild_is_a_noop(self, recorder, transport):
        await recorder.start_speaker("G1", "U1", "Alice")
        await recorder.stop_guild("G1")

        assert await recorder.stop_guild("G1") == []
        assert transport.destroy_calls == 1

    async def test_stop_guild_without_recordings_still_leaves(self, recorder, transport):
        assert await recorder.stop_guild("G1") == []
        assert transport.destroy_calls == 1

    async def test_connection_is_destroyed_after_transcoding(
        self, recorder, transport, frames, services_manager
    ):
        ffmpeg = services_manager.ffmpeg_service_manager
        await recorder.start_speaker("G1", "U1", "Alice")
        transport.feed("U1", frames(0.1))

        transcoded_before_destroy = []
        original_destroy = transport.destroy

        async def destroy():
            transcoded_before_destroy.append(
                len(ffmpeg.calls) == 1 and os.path.exists(ffmpeg.calls[0][1])
            )
            await original_destroy()

        transport.destroy = destroy
        await recorder.stop_guild("G1")

        assert transcoded_before_destroy == [True]


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecorderTransports:
    async def test_release_transport_refuses_while_recording(self, recorder, transport):
        await recorder.start_speaker("G1", "U1", "Alice")

        assert await recorder.release_transport("G1") is False
        assert transport.destroy_calls == 0
        await recorder.stop_guild("G1")

    async def test_release_transport_when_idle(self, recorder, transport):
        assert await recorder.release_transport("G1") is True
        assert transport.destroy_calls == 1
        assert await recorder.release_transport("G1") is False

    async def test_failing_destroy_is_logged_not_raised(self, recorder, transport):
        async def destroy():
            raise RuntimeError("socket already gone")

        transport.destroy = destroy

        assert await recorder.stop_guild("G1") == []
        assert recorder.get_transport("G1") is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecorderShutdown:
    async def test_on_close_saves_recordings_and_releases_connections(
        self, recorder, make_transport, frames, recordings_path
    ):
        transports = {}
        for guild_id in ("G1", "G2"):
            transports[guild_id] = make_transport(guild_id)
            recorder.attach_transport(guild_id, transports[guild_id])
            await recorder.start_speaker(guild_id, "U1", "Alice")
            transports[guild_id].feed("U1", frames(0.1))

        await recorder.on_close()

        assert all(t.destroy_calls == 1 for t in transports.values())
        saved = [name for name in os.listdir(recordings_path) if name.endswith(".mp3")]
        assert sorted(name.split("-")[0] for name in saved) == ["G1", "G2"]
        assert recorder.is_guild_active("G1") is False
        assert await recorder.start_speaker("G1", "U2", "Bob") is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestRecorderFinalizingGuard:
    async def test_release_refused_while_error_stop_is_transcoding(
        self, recorder, transport, frames, services_manager, wait_until
    ):
        ffmpeg = services_manager.ffmpeg_service_manager
        ffmpeg.gate = asyncio.Event()
        await recorder.start_speaker("G1", "U1", "Alice")
        transport.feed("U1", frames(1.0))
        transport.get_subscription("U1").fail(ConnectionError("voice socket closed"))
        await wait_until(lambda: len(ffmpeg.calls) == 1)

        assert recorder.is_guild_active("G1") is True
        assert await recorder.release_transport("G1") is False
        assert transport.destroy_calls == 0

        stop_task = asyncio.create_task(recorder.stop_guild("G1"))
        await asyncio.sleep(0)
        assert recorder.is_guild_stopping("G1") is True
        assert await recorder.release_transport("G1") is False

        ffmpeg.gate.set()
        paths = await stop_task

        assert len(paths) == 1
        assert os.path.basename(paths[0]).startswith("G1-Alice-")
        assert transport.destroy_calls == 1
        assert recorder.is_guild_stopping("G1") is False

    async def test_clock_sets_recording_start_time(
        self, services_manager, make_transport, fake_decoder_factory, frames, recordings_path
    ):
        recorder = DiscordRecorderManagerService(
            services_manager.context, decoder_factory=fake_decoder_factory, clock=lambda: 1000
        )
        await recorder.on_start(services_manager)
        transport = make_transport("G1")
        recorder.attach_transport("G1", transport)

        await recorder.start_speaker("G1", "U1", "Alice")
        transport.feed("U1", frames(0.5))
        paths = await recorder.stop_guild("G1")

        assert paths == [os.path.join(recordings_path, "G1-Alice-1000.mp3")]
        await recorder.on_close()
