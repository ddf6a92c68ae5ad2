from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from voice_recorder.context import Context
    from voice_recorder.services.discord_recorder.transport import BaseVoiceTransport


# -------------------------------------------------------------- #
# Services Manager Class
# -------------------------------------------------------------- #


class ServicesManager:
    """
    Owns every service of the recorder and their start/stop order.

    Start order: logging, recording files, ffmpeg, discord recorder.
    Shutdown runs the other way round, with logging closed last so the
    shutdown itself is still logged.
    """

    def __init__(
        self,
        context: Context,
        logging_service: BaseAsyncLoggingService,
        recording_file_service_manager: BaseRecordingFileServiceManager,
        ffmpeg_service_manager: BaseFFmpegServiceManager,
        discord_recorder_service_manager: BaseDiscordRecorderServiceManager | None = None,
    ):
        self.context = context
        self.logging_service = logging_service
        self.recording_file_service_manager = recording_file_service_manager
        self.ffmpeg_service_manager = ffmpeg_service_manager
        self.discord_recorder_service_manager = discord_recorder_service_manager

    def _startup_order(self) -> list[Manager]:
        services = [
            self.logging_service,
            self.recording_file_service_manager,
            self.ffmpeg_service_manager,
        ]
        if self.discord_recorder_service_manager is not None:
            services.append(self.discord_recorder_service_manager)
        return services

    async def initialize_all(self) -> None:
        """Start every service, logging first."""
        for service in self._startup_order():
            await service.on_start(self)

    async def shutdown_all(self, timeout: float = 60.0) -> None:
        """
        Stop the recorder cleanly.

        New recordings are refused from the first moment. Active recordings
        are finalized and transcoded before anything they depend on closes.

        Args:
            timeout: Overall time limit in seconds. Finalizing recordings gets 80%
                of it, the ffmpeg service 10%. Logging gets its own 5s.
        """
        log = self.logging_service

        await log.info("=" * 60)
        await log.info("Shutting down services...")
        if self.context:
            self.context.mark_shutdown_started()
            await log.info("✓ New recordings are now refused")

        phases = []
        if self.discord_recorder_service_manager is not None:
            phases.append(
                ("Finalizing active recordings", self.discord_recorder_service_manager, 0.8)
            )
        phases.append(("Closing FFmpeg service", self.ffmpeg_service_manager, 0.1))
        phases.append(("Purging staging files", self.recording_file_service_manager, None))

        try:
            for step, (label, service, share) in enumerate(phases, start=1):
                await log.info(f"Phase {step}: {label}...")
                if share is None:
                    await service.on_close()
                else:
                    await asyncio.wait_for(service.on_close(), timeout=timeout * share)
                await log.info(f"✓ {label} done")

            await log.info("✓ Shutdown completed")
            await log.info("=" * 60)
        except asyncio.TimeoutError:
            await log.error(f"⚠️  Shutdown exceeded {timeout}s, forcing exit")
        except Exception as e:
            await log.error(f"⚠️  Error during shutdown: {type(e).__name__}: {e}")

        # The log is flushed even when a phase failed
        with contextlib.suppress(Exception):
            await asyncio.wait_for(log.on_close(), timeout=5.0)


# -------------------------------------------------------------- #
# Base Service Manager Class
# -------------------------------------------------------------- #


class Manager(ABC):
    """A service with a start/close lifecycle driven by ServicesManager."""

    def __init__(self, context: Context):
        self.context = context
        self.services: ServicesManager | None = None

    async def on_start(self, services: ServicesManager) -> None:
        self.services = services

    async def on_close(self) -> None:
        pass


# -------------------------------------------------------------- #
# Specialized Manager Classes
# -------------------------------------------------------------- #


class BaseAsyncLoggingService(Manager):
    """Non-blocking log sink shared by every service."""

    @abstractmethod
    async def log(self, message: str, level: str = "INFO") -> None:
        pass

    @abstractmethod
    async def debug(self, message: str) -> None:
        pass

    @abstractmethod
    async def info(self, message: str) -> None:
        pass

    @abstractmethod
    async def warning(self, message: str) -> None:
        pass

    @abstractmethod
    async def error(self, message: str) -> None:
        pass

    @abstractmethod
    async def critical(self, message: str) -> None:
        pass


class BaseRecordingFileServiceManager(Manager):
    """Where recordings and their staging files live on disk."""

    @abstractmethod
    def get_recordings_path(self) -> str:
        """Folder that receives finished MP3 files."""

    @abstractmethod
    def get_temporary_storage_path(self) -> str:
        """Absolute folder for in-progress staging files."""

    @abstractmethod
    def build_output_path(self, guild_id: str, display_name: str, started_at_ms: int) -> str:
        pass

    @abstractmethod
    def build_staging_path(self, guild_id: str, speaker_id: str, started_at_ms: int) -> str:
        pass

    @abstractmethod
    async def delete_staging_file(self, staging_path: str) -> bool:
        """Remove a staging file. Best-effort; False when removal failed."""

    @abstractmethod
    async def delete_output_file(self, output_path: str) -> bool:
        """Remove a (partial) output file. Best-effort; False when removal failed."""


class BaseFFmpegServiceManager(Manager):
    """Turns staged PCM into the final audio file."""

    @abstractmethod
    def get_ffmpeg_path(self) -> str:
        pass

    @abstractmethod
    async def transcode_pcm_to_mp3(self, staging_path: str, output_path: str) -> str:
        """
        Encode a finished s16le/48kHz/stereo staging file as MP3.

        The staging file is gone afterwards, whether or not encoding worked.

        Returns:
            output_path

        Raises:
            TranscodeError: If no output was produced
        """


class BaseDiscordRecorderServiceManager(Manager):
    """Per-guild recording sessions and the voice connections behind them."""

    @abstractmethod
    def attach_transport(self, guild_id: str, transport: BaseVoiceTransport) -> None:
        pass

    @abstractmethod
    async def start_speaker(self, guild_id: str, speaker_id: str, display_name: str) -> bool:
        pass

    @abstractmethod
    async def stop_guild(self, guild_id: str) -> list[str]:
        pass

    @abstractmethod
    def is_guild_active(self, guild_id: str) -> bool:
        pass
