import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from voice_recorder.services.discord_recorder.decoder import DecoderFactory
from voice_recorder.services.discord_recorder.registry import SessionRegistry, wall_clock_ms
from voice_recorder.services.discord_recorder.speaker_stream import SpeakerStream
from voice_recorder.services.discord_recorder.transport import BaseVoiceTransport
from voice_recorder.services.manager import BaseDiscordRecorderServiceManager, ServicesManager

if TYPE_CHECKING:
    from voice_recorder.context import Context

# -------------------------------------------------------------- #
# Discord Recorder Manager Service
# -------------------------------------------------------------- #


class DiscordRecorderManagerService(BaseDiscordRecorderServiceManager):
    """
    Recording coordinator for every guild.

    Owns:
    - The session registry (one RecordingSession per guild)
    - The voice connection attached to each recording guild
    - Teardown of that connection once every speaker is finalized

    It never looks at audio; frames only flow inside each SpeakerStream.
    """

    def __init__(
        self,
        context: "Context",
        decoder_factory: DecoderFactory | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        super().__init__(context)

        self.decoder_factory = decoder_factory
        self.clock = clock
        self.registry: SessionRegistry | None = None
        self._transports: dict[str, BaseVoiceTransport] = {}

    # -------------------------------------------------------------- #
    # Discord Recorder Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services_manager: ServicesManager) -> None:
        await super().on_start(services_manager)

        self.registry = SessionRegistry(
            services=self.services,
            transport_provider=self.get_transport,
            decoder_factory=self.decoder_factory,
            clock=self.clock,
        )
        await self.services.logging_service.info("DiscordRecorderManagerService started")

    async def on_close(self) -> bool:
        """Stop every recording, then release every voice connection."""
        if self.registry is not None:
            results = await self.registry.stop_all()
            saved = sum(len(paths) for paths in results.values())
            await self.services.logging_service.info(
                f"Stopped {len(results)} recording guild(s), {saved} recording(s) saved"
            )

        for guild_id in list(self._transports.keys()):
            await self._destroy_transport(guild_id)

        self.registry = None
        await self.services.logging_service.info("DiscordRecorderManagerService stopped")
        return True

    # -------------------------------------------------------------- #
    # Transport Methods
    # -------------------------------------------------------------- #

    def attach_transport(self, guild_id: str, transport: BaseVoiceTransport) -> None:
        """Register the voice connection used to record a guild."""
        self._transports[guild_id] = transport

    def get_transport(self, guild_id: str) -> BaseVoiceTransport | None:
        return self._transports.get(guild_id)

    async def release_transport(self, guild_id: str) -> bool:
        """
        Destroy a guild's voice connection if nothing is recording there.

        Returns:
            True if a connection was destroyed
        """
        if self.is_guild_active(guild_id) or self.is_guild_stopping(guild_id):
            await self.services.logging_service.warning(
                f"Not releasing voice connection for guild {guild_id}: recordings not finalized"
            )
            return False
        return await self._destroy_transport(guild_id)

    # -------------------------------------------------------------- #
    # Recording Methods
    # -------------------------------------------------------------- #

    async def start_speaker(self, guild_id: str, speaker_id: str, display_name: str) -> bool:
        """
        Start recording one speaker in a guild.

        Returns:
            True if a new recording started
        """
        if self.registry is None or self.context.is_shutting_down():
            return False
        return await self.registry.start_speaker(guild_id, speaker_id, display_name)

    async def stop_speaker(self, guild_id: str, speaker_id: str) -> str | None:
        """Stop one speaker, leaving the guild's other speakers recording."""
        if self.registry is None:
            return None
        return await self.registry.stop_speaker(guild_id, speaker_id)

    async def stop_guild(self, guild_id: str) -> list[str]:
        """
        Stop every recording in a guild and release its voice connection.

        Returns:
            Paths of the recordings that were saved
        """
        paths = await self.registry.stop_guild(guild_id) if self.registry else []

        if not await self._destroy_transport(guild_id):
            await self.services.logging_service.warning(
                f"No voice connection attached for guild {guild_id}"
            )

        return paths

    def is_guild_active(self, guild_id: str) -> bool:
        return self.registry is not None and self.registry.is_guild_active(guild_id)

    def is_guild_stopping(self, guild_id: str) -> bool:
        """True while stop_guild() is still finalizing the guild's speakers."""
        return self.registry is not None and self.registry.is_guild_stopping(guild_id)

    def active_speakers(self, guild_id: str) -> list[SpeakerStream]:
        return self.registry.active_speakers(guild_id) if self.registry else []

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _destroy_transport(self, guild_id: str) -> bool:
        # Pop before awaiting so the connection is destroyed at most once
        transport = self._transports.pop(guild_id, None)
        if transport is None:
            return False

        try:
            await asyncio.wait_for(transport.destroy(), timeout=10.0)
        except Exception as e:
            await self.services.logging_service.error(
                f"CRITICAL VOICE ERROR: Failed to destroy voice connection - "
                f"Guild: {guild_id}, Error Type: {type(e).__name__}, Details: {str(e)}"
            )
        else:
            await self.services.logging_service.info(f"Released voice connection for guild {guild_id}")
        return True
