from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from voice_recorder.services.discord_recorder.decoder import DecoderFactory
from voice_recorder.services.discord_recorder.speaker_stream import SpeakerStream
from voice_recorder.services.discord_recorder.transport import BaseVoiceTransport

if TYPE_CHECKING:
    from voice_recorder.services.manager import ServicesManager


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


# -------------------------------------------------------------- #
# Session Registry
# -------------------------------------------------------------- #


@dataclass
class RecordingSession:
    """All speaker streams of one guild that have not finalized yet."""

    guild_id: str
    speakers: dict[str, SpeakerStream] = field(default_factory=dict)


class SessionRegistry:
    """
    Authoritative map of guild -> RecordingSession -> SpeakerStream.

    Every mutation of the map happens in one synchronous step between awaits,
    so two coroutines can never both insert or both remove the same stream.
    A session only exists while it holds at least one stream.

    A stream stays in its session until it reaches FINALIZED, including while
    an error-driven stop is still transcoding. The exception is stop_guild(),
    which takes the whole session out up front and marks the guild as
    stopping until every stream it took is finalized.
    """

    def __init__(
        self,
        services: ServicesManager,
        transport_provider: Callable[[str], BaseVoiceTransport | None],
        decoder_factory: DecoderFactory | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.services = services
        self.transport_provider = transport_provider
        self.decoder_factory = decoder_factory
        self.clock = clock

        self._sessions: dict[str, RecordingSession] = {}
        self._stops: dict[SpeakerStream, asyncio.Future] = {}
        self._closing: set[str] = set()

    # -------------------------------------------------------------- #
    # Introspection
    # -------------------------------------------------------------- #

    def is_guild_active(self, guild_id: str) -> bool:
        return guild_id in self._sessions

    def is_guild_stopping(self, guild_id: str) -> bool:
        return guild_id in self._closing

    def active_guilds(self) -> list[str]:
        return list(self._sessions.keys())

    def active_speakers(self, guild_id: str) -> list[SpeakerStream]:
        session = self._sessions.get(guild_id)
        return list(session.speakers.values()) if session else []

    def get_speaker(self, guild_id: str, speaker_id: str) -> SpeakerStream | None:
        session = self._sessions.get(guild_id)
        return session.speakers.get(speaker_id) if session else None

    # -------------------------------------------------------------- #
    # Speaker Methods
    # -------------------------------------------------------------- #

    async def start_speaker(self, guild_id: str, speaker_id: str, display_name: str) -> bool:
        """
        Start recording one speaker.

        Returns:
            True if a new stream started, False if one is still active or
            finalizing, the guild is being stopped, or the start failed
        """
        if guild_id in self._closing:
            await self.services.logging_service.warning(
                f"Refusing to start speaker {speaker_id}: guild {guild_id} is stopping"
            )
            return False

        if self.get_speaker(guild_id, speaker_id) is not None:
            return False

        stream = SpeakerStream(
            guild_id=guild_id,
            speaker_id=speaker_id,
            display_name=display_name,
            transport=self.transport_provider(guild_id),
            services=self.services,
            decoder_factory=self.decoder_factory,
            on_error=self._on_stream_error,
            started_at_ms=self.clock(),
        )

        # Insert before the first await so a concurrent duplicate sees it
        session = self._sessions.setdefault(guild_id, RecordingSession(guild_id))
        session.speakers[speaker_id] = stream

        try:
            await stream.start()
        except Exception:
            # Already logged and cleaned up by the stream
            self._remove(stream)
            return False

        return True

    async def stop_speaker(self, guild_id: str, speaker_id: str) -> str | None:
        """
        Stop one speaker and finalize its recording.

        Returns:
            The MP3 path, or None if nothing was active or the recording failed
        """
        stream = self.get_speaker(guild_id, speaker_id)
        if stream is None:
            return None

        return await self._begin_finalize(stream)

    # -------------------------------------------------------------- #
    # Guild Methods
    # -------------------------------------------------------------- #

    async def stop_guild(self, guild_id: str) -> list[str]:
        """
        Stop every speaker of a guild concurrently.

        One speaker failing never affects the others and this method never
        raises; failed speakers are simply missing from the result.

        Returns:
            Paths of the recordings that were produced
        """
        self._closing.add(guild_id)
        try:
            session = self._sessions.pop(guild_id, None)
            streams = list(session.speakers.values()) if session else []

            # Streams already finalizing share their running stop
            pending = [self._begin_finalize(stream) for stream in streams]
            if not pending:
                return []

            await self.services.logging_service.info(
                f"Stopping {len(pending)} speaker stream(s) in guild {guild_id}"
            )

            results = await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._closing.discard(guild_id)

        paths = [result for result in results if isinstance(result, str)]
        await self.services.logging_service.info(
            f"Guild {guild_id} stopped: {len(paths)}/{len(pending)} recording(s) saved"
        )
        return paths

    async def stop_all(self) -> dict[str, list[str]]:
        """Stop every active guild. Used on service shutdown."""
        guild_ids = list(self._sessions.keys())
        results = await asyncio.gather(*(self.stop_guild(guild_id) for guild_id in guild_ids))

        # Stops started by a stop_guild() that is still running elsewhere
        if self._stops:
            await asyncio.gather(*self._stops.values(), return_exceptions=True)

        return dict(zip(guild_ids, results))

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    def _remove(self, stream: SpeakerStream) -> None:
        session = self._sessions.get(stream.guild_id)
        if session is None or session.speakers.get(stream.speaker_id) is not stream:
            return

        del session.speakers[stream.speaker_id]
        if not session.speakers:
            del self._sessions[stream.guild_id]

    def _begin_finalize(self, stream: SpeakerStream) -> asyncio.Future:
        """The stream's single stop task, created on first request."""
        task = self._stops.get(stream)
        if task is None:
            task = asyncio.ensure_future(self._run_finalize(stream))
            self._stops[stream] = task
        return task

    async def _run_finalize(self, stream: SpeakerStream) -> str | None:
        try:
            return await stream.stop()
        except Exception as e:
            await self.services.logging_service.error(
                f"CRITICAL RECORDING ERROR: Failed to finalize speaker - "
                f"Guild: {stream.guild_id}, Speaker: {stream.speaker_id}, "
                f"Error Type: {type(e).__name__}, Details: {str(e)}"
            )
            return None
        finally:
            # FINALIZED: only now does the speaker leave its session
            self._remove(stream)
            self._stops.pop(stream, None)

    def _on_stream_error(self, stream: SpeakerStream) -> None:
        # Streams are only finalized while they are still registered or
        # while stop_guild holds them
        self._begin_finalize(stream)
